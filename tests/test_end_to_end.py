"""
tests/test_end_to_end.py
------------------------
Full metadata migration between two in-memory clusters, in both
privilege modes: enable sharding, replicate metadata, move chunks.
Run with: python -m pytest tests/
"""

import pytest

from balancer import stop_balancers
from chunk_reconciler import ChunkReconciler
from metadata_sync import MetadataReplicator
from shard_mapper import build_shard_map
from tests.conftest import NS


@pytest.mark.parametrize("non_privileged", [False, True])
def test_migrate_two_shard_cluster(make_config, source, dest, non_privileged) -> None:
    config = make_config(non_privileged=non_privileged)
    shard_map = build_shard_map(source.list_shards(), dest.list_shards(), config.shard_map)
    assert dict(shard_map) == {"sh0": "d0", "sh1": "d1"}

    stop_balancers(source, dest)
    replicator = MetadataReplicator(config, source, dest, shard_map)
    replicator.enable_destination_sharding()
    replicator.replicate()
    reconciler = ChunkReconciler(config, source, dest, shard_map)
    reconciler.compare_and_move_chunks(do_move=True)
    replicator.flush_router_config()

    assert source.balancer_stopped and dest.balancer_stopped
    assert dest.databases["db1"]["primary"] == "d0"
    assert dest.collections[NS]["key"] == {"_id": 1}

    dest_chunks = dest.chunks_for(NS)
    assert len(dest_chunks) == 4
    expected = {c["_id"]: shard_map.lookup(c["shard"]) for c in source.chunks}
    assert {c["_id"]: c["shard"] for c in dest_chunks} == expected

    report = reconciler.report
    assert (report.matched, report.mismatched, report.missing) == (4, 0, 0)
    assert report.moved == (2 if non_privileged else 0)

    verify = reconciler.compare_chunks()
    assert (verify.matched, verify.mismatched, verify.missing) == (4, 0, 0)


@pytest.mark.parametrize("non_privileged", [False, True])
def test_rerun_is_idempotent(make_config, source, dest, shard_map, non_privileged) -> None:
    config = make_config(non_privileged=non_privileged)
    replicator = MetadataReplicator(config, source, dest, shard_map)
    replicator.enable_destination_sharding()
    replicator.replicate()
    ChunkReconciler(config, source, dest, shard_map).compare_and_move_chunks(do_move=True)
    chunks_before = dest.chunks_for(NS)
    issued = len(dest.commands)

    replicator.replicate()
    assert replicator.create_chunks() == 0
    assert dest.chunks_for(NS) == chunks_before
    assert not {"split", "moveChunk"} & set(dest.command_names()[issued:])
