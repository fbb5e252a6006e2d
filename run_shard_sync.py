#!/usr/bin/env python3
"""Sharded MongoDB cluster migration tool: operator entry point.

Copies the sharding layout of a source cluster (databases, sharded
collections, chunk boundaries and placement, zones) onto a destination
cluster, then keeps the data in sync with one ``mongomirror`` process per
source shard until the operator cuts over.

FULL MIGRATION (ASCII Diagram)
==============================

Each box is a run mode; a complete migration runs them top to bottom.
``migrate-metadata`` chains the first four metadata boxes in one go.

::

    +----------------------------------------------------------+
    |  map-shards                                               |
    |  - listShards on both sides, 1:1 by listing order or     |
    |    explicit "src|dst" entries (--shard-map)              |
    +------------------------------+---------------------------+
                                   v
    +----------------------------------------------------------+
    |  stop-balancers  (+ disable-autosplit)                   |
    |  - source best effort, destination mandatory             |
    +------------------------------+---------------------------+
                                   v
    +----------------------------------------------------------+
    |  enable-sharding                                          |
    |  - enableSharding + movePrimary per in-scope database     |
    +------------------------------+---------------------------+
                                   v
    +----------------------------------------------------------+
    |  shard-collections -> chunks -> zones                     |
    |    privileged:      raw config.collections / chunks rows  |
    |    --non-privileged: shardCollection + split commands     |
    +------------------------------+---------------------------+
                                   v
    +----------------------------------------------------------+
    |  move-chunks   (compare-chunks = read-only variant)       |
    |  - moveChunk every chunk not on its mapped shard          |
    +------------------------------+---------------------------+
                                   v
    +----------------------------------------------------------+
    |  mirror                                                   |
    |  - one mongomirror per source shard, status polled until  |
    |    Ctrl-C / SIGTERM (cutover is the operator's call)      |
    +----------------------------------------------------------+

Diagnostics and cleanup modes: diff-chunks, diff-sharded-collections,
compare-counts, compare-collection-uuids, drop-dest-dbs, flush-router-config,
cleanup-orphans.

shard-to-rs runs the mirror step alone against a destination that is a plain
replica set: every source shard mirrors into that one set.

Usage
=====

::

    python run_shard_sync.py map-shards
    python run_shard_sync.py migrate-metadata --filter mydb --shard-map sh0|dst0
    python run_shard_sync.py compare-chunks --non-privileged
    python run_shard_sync.py mirror --bookmark-prefix run1 --drop
    python run_shard_sync.py diff-chunks --database mydb
    python run_shard_sync.py cleanup-orphans --dest

Environment Variables (in .env)
-------------------------------
See :mod:`config`.  ``SOURCE_URI`` and ``DEST_URI`` are required; every
CLI option below overrides its environment variable.

Dependencies
------------
- mongomirror binary on PATH (or MONGOMIRROR_BINARY)
- pymongo[srv], python-dotenv, requests (see pyproject.toml)
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path

from dotenv import load_dotenv

from balancer import disable_source_autosplit, stop_balancers
from chunk_reconciler import ChunkReconciler
from cluster_client import ClusterClient
from config import RunConfig, load_config
from errors import ConfigError
from metadata_sync import MetadataReplicator
from mirror_orchestrator import MirrorOrchestrator
from orphans import cleanup_orphans
from shard_mapper import ShardMap, build_shard_map

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Paths / logging
# ---------------------------------------------------------------------------
BASE_DIR = Path(__file__).resolve().parent
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _banner(msg: str) -> None:
    """Print a visually distinct section banner to stdout.

    Args:
        msg: Banner text to display.
    """
    line = "=" * 60
    print(f"\n{line}\n  {msg}\n{line}")


def _connect(config: RunConfig) -> tuple[ClusterClient, ClusterClient]:
    tls = dict(
        tls_allow_invalid_hostnames=config.tls_allow_invalid_hostnames,
        tls_allow_invalid_certificates=config.tls_allow_invalid_certificates,
    )
    return (ClusterClient("source", config.source_uri, **tls),
            ClusterClient("dest", config.dest_uri, **tls))


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def step_map_shards(config: RunConfig, source: ClusterClient, dest: ClusterClient) -> ShardMap:
    """Build the ShardMap and print it.

    Returns:
        The run's ShardMap.
    """
    _banner("Shard mapping")
    source_shards = source.list_shards()
    dest_shards = dest.list_shards()
    print(f"  Source shards: {len(source_shards)}, destination shards: {len(dest_shards)}")
    shard_map = build_shard_map(source_shards, dest_shards, config.shard_map)
    for source_id, dest_id in shard_map.items():
        print(f"  {source_id} ==> {dest_id}")
    return shard_map


def step_stop_balancers(source: ClusterClient, dest: ClusterClient) -> None:
    _banner("Stop balancers")
    stop_balancers(source, dest)


def step_disable_autosplit(source: ClusterClient) -> None:
    _banner("Disable source autosplit")
    disable_source_autosplit(source)


def step_enable_sharding(replicator: MetadataReplicator) -> None:
    _banner("Enable sharding on destination databases")
    replicator.enable_destination_sharding()


def step_replicate_metadata(replicator: MetadataReplicator) -> None:
    _banner(f"Replicate collections, chunks and zones ({replicator.strategy.name})")
    replicator.replicate()


def step_reconcile_chunks(reconciler: ChunkReconciler, do_move: bool) -> None:
    """Compare (and optionally move) chunks, then print the counters.

    Args:
        reconciler: ChunkReconciler for this run.
        do_move: Issue moveChunk for misplaced chunks.
    """
    _banner("Move chunks" if do_move else "Compare chunks")
    reconciler.compare_and_move_chunks(do_move)
    print(f"  {reconciler.report.summary()}")


def step_flush_router_config(replicator: MetadataReplicator) -> None:
    _banner("Flush router config")
    replicator.flush_router_config()


# ---------------------------------------------------------------------------
# Run modes
# ---------------------------------------------------------------------------
# Every mode has the signature (args, config, source, dest).

def mode_map_shards(args, config, source, dest) -> None:
    step_map_shards(config, source, dest)


def mode_stop_balancers(args, config, source, dest) -> None:
    step_stop_balancers(source, dest)


def mode_disable_autosplit(args, config, source, dest) -> None:
    step_disable_autosplit(source)


def mode_enable_sharding(args, config, source, dest) -> None:
    shard_map = step_map_shards(config, source, dest)
    step_enable_sharding(MetadataReplicator(config, source, dest, shard_map))


def mode_shard_collections(args, config, source, dest) -> None:
    shard_map = step_map_shards(config, source, dest)
    _banner("Shard destination collections")
    MetadataReplicator(config, source, dest, shard_map).shard_destination_collections()


def mode_migrate_metadata(args, config, source, dest) -> None:
    """Full metadata migration: balancers, databases, metadata, placement."""
    shard_map = step_map_shards(config, source, dest)
    replicator = MetadataReplicator(config, source, dest, shard_map)
    step_stop_balancers(source, dest)
    step_enable_sharding(replicator)
    step_replicate_metadata(replicator)
    step_reconcile_chunks(ChunkReconciler(config, source, dest, shard_map), do_move=True)
    step_flush_router_config(replicator)


def mode_compare_chunks(args, config, source, dest) -> None:
    shard_map = step_map_shards(config, source, dest)
    step_reconcile_chunks(ChunkReconciler(config, source, dest, shard_map), do_move=False)


def mode_move_chunks(args, config, source, dest) -> None:
    shard_map = step_map_shards(config, source, dest)
    step_reconcile_chunks(ChunkReconciler(config, source, dest, shard_map), do_move=True)


def mode_diff_chunks(args, config, source, dest) -> None:
    if not args.database:
        sys.exit("diff-chunks requires --database")
    shard_map = step_map_shards(config, source, dest)
    _banner(f"Diff chunks for database '{args.database}'")
    counts = ChunkReconciler(config, source, dest, shard_map).diff_chunks(args.database)
    print(f"  source: {counts['source']}, dest: {counts['dest']}, "
          f"not on source: {counts['not_on_source']}, wrong shard: {counts['wrong_shard']}")


def mode_diff_sharded_collections(args, config, source, dest) -> None:
    shard_map = step_map_shards(config, source, dest)
    _banner("Diff sharded collections" + (" (sync)" if args.sync else ""))
    counts = MetadataReplicator(config, source, dest, shard_map).diff_sharded_collections(
        sync=args.sync)
    print(f"  matched: {counts['matched']}, mismatched: {counts['mismatched']}, "
          f"missing: {counts['missing']}, sharded: {counts['sharded']}")


def mode_compare_counts(args, config, source, dest) -> None:
    shard_map = step_map_shards(config, source, dest)
    _banner("Compare collection counts")
    mismatches = ChunkReconciler(config, source, dest, shard_map).compare_collection_counts()
    if not mismatches:
        print("  All counts match.")
    for ns, (source_count, dest_count) in sorted(mismatches.items()):
        print(f"  MISMATCH {ns}: source {source_count}, dest {dest_count}")


def mode_compare_collection_uuids(args, config, source, dest) -> None:
    _banner("Compare collection UUIDs across destination shards")
    reconciler = ChunkReconciler(config, source, dest, ShardMap({}))
    mismatches = reconciler.compare_collection_uuids()
    if not mismatches:
        print("  All collection UUIDs consistent.")
    for ns, by_uuid in sorted(mismatches.items()):
        print(f"  MISMATCH {ns}:")
        for uuid, shards in by_uuid.items():
            print(f"    {uuid} on {', '.join(shards)}")


def mode_drop_dest_dbs(args, config, source, dest) -> None:
    _banner("Drop destination databases")
    replicator = MetadataReplicator(config, source, dest, ShardMap({}))
    dropped = replicator.drop_destination_databases(
        include_config_metadata=args.with_config_metadata)
    print(f"  Dropped {len(dropped)} database(s): {dropped}")


def mode_flush_router_config(args, config, source, dest) -> None:
    step_flush_router_config(MetadataReplicator(config, source, dest, ShardMap({})))


def _run_mirrors(config, orchestrator: MirrorOrchestrator) -> None:
    cancel = threading.Event()

    def _request_stop(signum, frame):
        logger.info("Signal %s received, stopping mirrors", signum)
        cancel.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    _banner("Start mongomirror")
    orchestrator.run(cancel)
    print(f"  Mirror output is in: {config.log_dir}/")


def mode_mirror(args, config, source, dest) -> None:
    """Start one mongomirror per source shard and watch them until stopped."""
    shard_map = step_map_shards(config, source, dest)
    _run_mirrors(config, MirrorOrchestrator(config, source, dest, shard_map))


def mode_shard_to_rs(args, config, source, dest) -> None:
    """Mirror every source shard into one destination replica set."""
    dest_host = dest.replica_set_host
    print(f"  Destination replica set: {dest_host}")
    _run_mirrors(config, MirrorOrchestrator(config, source, dest, None, dest_host=dest_host))


def mode_cleanup_orphans(args, config, source, dest) -> None:
    cluster = dest if args.dest else source
    _banner(f"Cleanup orphans on {cluster.name}")
    rounds = cleanup_orphans(cluster, config.namespace_filter,
                             config.cleanup_orphans_sleep_seconds)
    print(f"  {rounds} cleanupOrphaned round(s) completed")


MODES = {
    "map-shards": mode_map_shards,
    "stop-balancers": mode_stop_balancers,
    "disable-autosplit": mode_disable_autosplit,
    "enable-sharding": mode_enable_sharding,
    "shard-collections": mode_shard_collections,
    "migrate-metadata": mode_migrate_metadata,
    "compare-chunks": mode_compare_chunks,
    "move-chunks": mode_move_chunks,
    "diff-chunks": mode_diff_chunks,
    "diff-sharded-collections": mode_diff_sharded_collections,
    "compare-counts": mode_compare_counts,
    "compare-collection-uuids": mode_compare_collection_uuids,
    "drop-dest-dbs": mode_drop_dest_dbs,
    "flush-router-config": mode_flush_router_config,
    "mirror": mode_mirror,
    "shard-to-rs": mode_shard_to_rs,
    "cleanup-orphans": mode_cleanup_orphans,
}


def build_parser() -> argparse.ArgumentParser:
    """CLI definition.  Option ``dest`` names match RunConfig fields."""
    parser = argparse.ArgumentParser(
        description="Sharded MongoDB cluster migration: metadata sync + mongomirror")
    parser.add_argument("mode", choices=sorted(MODES), help="Run mode")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    conn = parser.add_argument_group("connection")
    conn.add_argument("--source-uri", dest="source_uri", help="Source mongos URI")
    conn.add_argument("--dest-uri", dest="dest_uri", help="Destination mongos URI")
    conn.add_argument("--tls-allow-invalid-hostnames", dest="tls_allow_invalid_hostnames",
                      action="store_true", default=None)
    conn.add_argument("--tls-allow-invalid-certificates",
                      dest="tls_allow_invalid_certificates", action="store_true", default=None)

    scope = parser.add_argument_group("scope")
    scope.add_argument("--filter", dest="filters", action="append",
                       help="Include db or db.coll (repeatable)")
    scope.add_argument("--shard-map", dest="shard_map", action="append",
                       help="sourceShard|destShard (repeatable)")
    scope.add_argument("--non-privileged", dest="non_privileged",
                       action="store_true", default=None,
                       help="Use admin commands instead of config writes")

    mirror = parser.add_argument_group("mongomirror")
    mirror.add_argument("--mongomirror-binary", dest="mongomirror_binary")
    mirror.add_argument("--launch-delay", dest="launch_delay_seconds", type=float)
    mirror.add_argument("--parallel-collections", dest="num_parallel_collections", type=int)
    mirror.add_argument("--status-port", dest="status_base_port", type=int)
    mirror.add_argument("--poll-interval", dest="status_poll_interval", type=float)
    mirror.add_argument("--status-timeout", dest="status_timeout", type=float)
    mirror.add_argument("--write-concern", dest="write_concern")
    mirror.add_argument("--compressors", dest="compressors")
    mirror.add_argument("--oplog-base-path", dest="oplog_base_path")
    mirror.add_argument("--bookmark-prefix", dest="bookmark_file_prefix")
    mirror.add_argument("--tail-only", dest="tail_only", action="store_true", default=None)
    mirror.add_argument("--preserve-uuids", dest="preserve_uuids",
                        action="store_true", default=None)
    mirror.add_argument("--drop", dest="drop", action="store_true", default=None)
    mirror.add_argument("--log-dir", dest="log_dir")

    modes = parser.add_argument_group("mode options")
    modes.add_argument("--database", help="Database for diff-chunks")
    modes.add_argument("--sync", action="store_true",
                       help="diff-sharded-collections: shard missing collections")
    modes.add_argument("--with-config-metadata", action="store_true",
                       help="drop-dest-dbs: also delete destination config rows")
    modes.add_argument("--dest", action="store_true",
                       help="cleanup-orphans: clean the destination instead of the source")
    modes.add_argument("--orphan-sleep", dest="cleanup_orphans_sleep_seconds", type=float)
    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point: load config, connect both clusters, run one mode.

    Usage::

        python run_shard_sync.py migrate-metadata
        python run_shard_sync.py mirror --drop
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    load_dotenv(BASE_DIR / ".env")
    try:
        config = load_config(vars(args))
    except ConfigError as exc:
        sys.exit(str(exc))

    source, dest = _connect(config)
    logger.info("Source: %r, destination: %r", source, dest)
    try:
        MODES[args.mode](args, config, source, dest)
    except ConfigError as exc:
        sys.exit(str(exc))
    finally:
        source.close()
        dest.close()

    print(f"\n{'=' * 60}")
    print(f"  Done: {args.mode}")
    print(f"{'=' * 60}")


if __name__ == "__main__":
    main()
