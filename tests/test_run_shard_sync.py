"""
tests/test_run_shard_sync.py
----------------------------
Tests for the run_shard_sync.py entry point: argument handling, config
errors, and mode dispatch against fake clusters.
Run with: python -m pytest tests/
"""

from unittest.mock import patch

import pytest

import run_shard_sync
from tests.conftest import NS

URIS = ["--source-uri", "mongodb://src:27017", "--dest-uri", "mongodb://dst:27017"]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("SOURCE_URI", "DEST_URI", "SHARDSYNC_FILTER", "SHARDSYNC_SHARD_MAP",
                "SHARDSYNC_NON_PRIVILEGED"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def connected(source, dest):
    with patch("run_shard_sync._connect", return_value=(source, dest)) as connect:
        yield connect


def test_parser_collects_repeatable_options() -> None:
    args = run_shard_sync.build_parser().parse_args(
        ["mirror", "--filter", "db1", "--filter", "db2.c", "--shard-map", "a|x", "--drop"])
    assert args.filters == ["db1", "db2.c"]
    assert args.shard_map == ["a|x"]
    assert args.drop is True
    assert args.tail_only is None


def test_missing_uri_exits_with_message() -> None:
    with pytest.raises(SystemExit) as excinfo:
        run_shard_sync.main(["map-shards"])
    assert "SOURCE_URI" in str(excinfo.value.code)


def test_migrate_metadata(connected, source, dest, capsys) -> None:
    run_shard_sync.main(["migrate-metadata", *URIS])
    assert [c["shard"] for c in dest.chunks_for(NS)] == ["d0", "d1", "d0", "d1"]
    assert dest.balancer_stopped
    assert dest.router_flushes == 1
    assert source.closed and dest.closed
    out = capsys.readouterr().out
    assert "sh0 ==> d0" in out
    assert "matched: 4" in out


def test_migrate_metadata_non_privileged(connected, dest) -> None:
    run_shard_sync.main(["migrate-metadata", "--non-privileged", *URIS])
    assert "split" in dest.command_names()
    assert [c["shard"] for c in dest.chunks_for(NS)] == ["d0", "d1", "d0", "d1"]


def test_unmapped_shard_exits(connected, source, dest) -> None:
    with pytest.raises(SystemExit) as excinfo:
        run_shard_sync.main(["compare-chunks", "--shard-map", "sh0|d0", *URIS])
    assert "sh1" in str(excinfo.value.code)
    assert source.closed and dest.closed


def test_diff_chunks_requires_database(connected) -> None:
    with pytest.raises(SystemExit):
        run_shard_sync.main(["diff-chunks", *URIS])


def test_cleanup_orphans_on_destination(connected, source, dest) -> None:
    dest.add_collection(NS, {"_id": 1})
    run_shard_sync.main(["cleanup-orphans", "--dest", *URIS])
    assert dest.shard_commands
    assert not source.shard_commands


def test_drop_dest_dbs(connected, dest, capsys) -> None:
    run_shard_sync.main(["drop-dest-dbs", *URIS])
    assert dest.dropped == ["db1"]
    assert "Dropped 1 database(s)" in capsys.readouterr().out


def test_compare_collection_uuids(connected, dest, capsys) -> None:
    dest.add_shard_collection("d0", NS, "u-1")
    dest.add_shard_collection("d1", NS, "u-2")
    run_shard_sync.main(["compare-collection-uuids", *URIS])
    out = capsys.readouterr().out
    assert "MISMATCH db1.coll:" in out
    assert "u-1 on d0" in out
    assert "u-2 on d1" in out


def test_shard_to_rs_targets_destination_replica_set(connected, source, dest) -> None:
    dest.replica_set_host = "rsdest/r1:27017,r2:27017"
    with patch("run_shard_sync.MirrorOrchestrator") as orchestrator_cls, \
            patch("run_shard_sync.signal.signal"):
        run_shard_sync.main(["shard-to-rs", *URIS])
    args, kwargs = orchestrator_cls.call_args
    assert args[1:] == (source, dest, None)
    assert kwargs == {"dest_host": "rsdest/r1:27017,r2:27017"}
    orchestrator_cls.return_value.run.assert_called_once()
