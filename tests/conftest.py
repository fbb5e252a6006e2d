"""Shared pytest fixtures: run configs and two-shard fake clusters."""

import pytest
from bson.max_key import MaxKey
from bson.min_key import MinKey

from config import RunConfig
from shard_mapper import ShardMap
from tests.fake_cluster import FakeCluster

NS = "db1.coll"


@pytest.fixture
def make_config():
    """Factory for RunConfig with test URIs; keyword args override fields."""

    def _make(**overrides) -> RunConfig:
        values = {"source_uri": "mongodb://source:27017", "dest_uri": "mongodb://dest:27017"}
        values.update(overrides)
        return RunConfig(**values)

    return _make


@pytest.fixture
def config(make_config) -> RunConfig:
    return make_config()


@pytest.fixture
def source() -> FakeCluster:
    """Source with shards sh0/sh1 and ``db1.coll`` in four chunks on ``_id``.

    Chunks alternate sh0, sh1, sh0, sh1 across the key space.
    """
    cluster = FakeCluster("source")
    cluster.add_shard("sh0")
    cluster.add_shard("sh1")
    cluster.add_database("db1", "sh0")
    cluster.add_collection(NS, {"_id": 1})
    bounds = [MinKey(), 100, 200, 300, MaxKey()]
    for i in range(4):
        cluster.add_chunk(NS, {"_id": bounds[i]}, {"_id": bounds[i + 1]},
                          "sh0" if i % 2 == 0 else "sh1")
    return cluster


@pytest.fixture
def dest() -> FakeCluster:
    """Empty destination with shards d0/d1."""
    cluster = FakeCluster("dest")
    cluster.add_shard("d0")
    cluster.add_shard("d1")
    return cluster


@pytest.fixture
def shard_map() -> ShardMap:
    return ShardMap({"sh0": "d0", "sh1": "d1"})
