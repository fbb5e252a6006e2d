"""
tests/test_shard_mapper.py
--------------------------
Unit tests for shard_mapper.py.
Run with: python -m pytest tests/
"""

import pytest

from cluster_client import Shard
from errors import ConfigError, UnmappedShardError
from shard_mapper import ShardMap, build_shard_map, parse_mapping_entries


def _shards(*ids: str) -> list[Shard]:
    return [Shard(shard_id, f"{shard_id}/{shard_id}:27018") for shard_id in ids]


# ---------------------------------------------------------------------------
# Default 1:1 mapping
# ---------------------------------------------------------------------------

class TestDefaultMapping:
    def test_pairs_in_listing_order(self) -> None:
        shard_map = build_shard_map(_shards("a", "b"), _shards("x", "y"))
        assert dict(shard_map) == {"a": "x", "b": "y"}

    def test_more_source_shards_leaves_extra_unmapped(self) -> None:
        shard_map = build_shard_map(_shards("a", "b", "c"), _shards("x", "y"))
        assert len(shard_map) == 2
        with pytest.raises(UnmappedShardError) as excinfo:
            shard_map.lookup("c")
        assert excinfo.value.shard_id == "c"

    def test_more_dest_shards(self) -> None:
        shard_map = build_shard_map(_shards("a"), _shards("x", "y", "z"))
        assert dict(shard_map) == {"a": "x"}

    def test_size_is_min_of_both(self) -> None:
        for n_source, n_dest in [(0, 3), (3, 0), (2, 5), (5, 2)]:
            source = _shards(*[f"s{i}" for i in range(n_source)])
            dest = _shards(*[f"d{i}" for i in range(n_dest)])
            assert len(build_shard_map(source, dest)) == min(n_source, n_dest)


# ---------------------------------------------------------------------------
# Explicit n:m mapping
# ---------------------------------------------------------------------------

class TestExplicitMapping:
    def test_explicit_pairs_replace_default(self) -> None:
        shard_map = build_shard_map(_shards("a", "b", "c"), _shards("x"),
                                    ["a|x", "b|x", "c|x"])
        assert dict(shard_map) == {"a": "x", "b": "x", "c": "x"}

    def test_duplicate_source_rejected(self) -> None:
        with pytest.raises(ConfigError, match="Duplicate"):
            parse_mapping_entries(["a|x", "a|y"])

    @pytest.mark.parametrize("entry", ["a", "a|", "|x", "a|x|y"])
    def test_malformed_entry_rejected(self, entry: str) -> None:
        with pytest.raises(ConfigError):
            parse_mapping_entries([entry])

    def test_whitespace_is_trimmed(self) -> None:
        assert parse_mapping_entries([" a | x "]) == {"a": "x"}

    def test_unknown_ids_only_warn(self, caplog) -> None:
        shard_map = build_shard_map(_shards("a"), _shards("x"), ["zz|x", "a|nope"])
        assert dict(shard_map) == {"zz": "x", "a": "nope"}
        assert "not in the source topology" in caplog.text
        assert "not in the destination topology" in caplog.text


class TestShardMap:
    def test_is_read_only(self) -> None:
        shard_map = ShardMap({"a": "x"})
        with pytest.raises(TypeError):
            shard_map["b"] = "y"

    def test_lookup(self) -> None:
        assert ShardMap({"a": "x"}).lookup("a") == "x"
