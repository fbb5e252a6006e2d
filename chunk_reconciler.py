"""Compare chunk placement between the clusters and fix it with moveChunk.

The destination's full chunk set is the ground truth: it is indexed once
(chunk ``_id`` -> owning shard), then source chunks are streamed in
``(ns, min)`` order and each in-scope chunk is checked against the image
of its source owner under the ShardMap.

Counters
--------
    total       every source chunk read
    processed   per-namespace count of in-scope chunks compared
    matched     in-scope chunks found on the destination
    mismatched  found, but on the wrong shard (compare mode)
    moved       found on the wrong shard and moveChunk issued (move mode)
    missing     not present on the destination at all
"""

import logging
from collections import Counter
from dataclasses import dataclass, field

from bson.son import SON

from cluster_client import NS_MIN_SORT
from errors import CommandError
from namespace_filter import Namespace

logger = logging.getLogger(__name__)

# Progress line interval within one namespace.
PROGRESS_EVERY = 10000


@dataclass
class ChunkReport:
    """Running counters of one reconciliation pass."""

    total: int = 0
    matched: int = 0
    mismatched: int = 0
    missing: int = 0
    moved: int = 0
    dest_total: int = 0
    processed: Counter = field(default_factory=Counter)

    def summary(self) -> str:
        return (f"sourceCount: {self.total}, destCount: {self.dest_total}, "
                f"matched: {self.matched}, mismatched: {self.mismatched}, "
                f"missing: {self.missing}, moved: {self.moved}")


class ChunkReconciler:
    """Check (and optionally repair) destination chunk ownership.

    Attributes:
        config: RunConfig for this run.
        source: Source ClusterClient.
        dest: Destination ClusterClient.
        shard_map: Source -> destination ShardMap (read only).
        report: Counters of the most recent pass.
    """

    def __init__(self, config, source, dest, shard_map):
        self.config = config
        self.source = source
        self.dest = dest
        self.shard_map = shard_map
        self.report = ChunkReport()

    def compare_chunks(self) -> ChunkReport:
        """Read-only pass: report placement differences, move nothing."""
        self.compare_and_move_chunks(do_move=False)
        return self.report

    def compare_and_move_chunks(self, do_move: bool) -> bool:
        """Compare every in-scope source chunk with its destination copy.

        Args:
            do_move: Issue moveChunk for chunks on the wrong shard.

        Returns:
            Always True; inspect :attr:`report` for mismatches and
            missing chunks.

        Raises:
            UnmappedShardError: If a source chunk's owner has no mapping.
        """
        logger.debug("Reading destination chunks, doMove: %s", do_move)
        dest_owner = {chunk["_id"]: chunk["shard"] for chunk in self.dest.get_chunks()}
        report = self.report = ChunkReport(dest_total=len(dest_owner))
        logger.debug("Done reading destination chunks, count = %s", report.dest_total)

        ns_filter = self.config.namespace_filter
        last_ns = None
        for chunk in self.source.get_chunks(sort=NS_MIN_SORT, no_cursor_timeout=True):
            report.total += 1
            ns = chunk["ns"]
            if not ns_filter.included(Namespace.parse(ns)):
                continue

            if ns != last_ns:
                if last_ns is not None:
                    self._log_namespace_done(last_ns)
                logger.debug("compareAndMoveChunks - %s - starting", ns)
                last_ns = ns
            elif report.processed[ns] and report.processed[ns] % PROGRESS_EVERY == 0:
                logger.info("compareAndMoveChunks - %s - currentCount: %s chunks",
                            ns, report.processed[ns])
            report.processed[ns] += 1

            mapped_shard = self.shard_map.lookup(chunk["shard"])
            dest_shard = dest_owner.get(chunk["_id"])

            if dest_shard is None:
                logger.error("Chunk with _id %s not found on destination", chunk["_id"])
                report.missing += 1
                continue

            report.matched += 1
            if dest_shard == mapped_shard:
                continue
            if do_move:
                self.move_chunk(ns, chunk["min"], chunk["max"], mapped_shard)
                report.moved += 1
            else:
                logger.debug("dest chunk is on wrong shard for sourceChunk: %s "
                             "(dest: %s, expected: %s)", chunk["_id"], dest_shard, mapped_shard)
                report.mismatched += 1

        if last_ns is not None:
            self._log_namespace_done(last_ns)
        logger.info("compareAndMoveChunks complete, %s", report.summary())
        return True

    def _log_namespace_done(self, ns: str) -> None:
        logger.info("compareAndMoveChunks - %s - complete, compared %s chunks",
                    ns, self.report.processed[ns])

    def move_chunk(self, ns: str, min_bound: dict, max_bound: dict, to_shard: str) -> bool:
        """Move one destination chunk; failures are logged, not raised.

        Returns:
            True if the command succeeded.
        """
        command = SON([("moveChunk", ns), ("bounds", [min_bound, max_bound]), ("to", to_shard)])
        try:
            self.dest.run_admin_command(command)
        except CommandError as exc:
            logger.warning("moveChunk error for %s %s -> %s: %s", ns, min_bound, to_shard, exc)
            return False
        return True

    # -- Diagnostics ---------------------------------------------------------

    def diff_chunks(self, database: str) -> dict[str, int]:
        """Compare destination chunks of one database against the source by id.

        Returns:
            Counters: ``source``, ``dest``, ``not_on_source``, ``wrong_shard``.
        """
        prefix = f"{database}."
        source_chunks = {c["_id"]: c for c in self.source.get_chunks(sort=NS_MIN_SORT)
                         if c["ns"].startswith(prefix)}
        logger.debug("Done reading source chunks, count = %s", len(source_chunks))

        counts = {"source": len(source_chunks), "dest": 0, "not_on_source": 0, "wrong_shard": 0}
        for dest_chunk in self.dest.get_chunks(sort=NS_MIN_SORT):
            if not dest_chunk["ns"].startswith(prefix):
                continue
            counts["dest"] += 1
            source_chunk = source_chunks.get(dest_chunk["_id"])
            if source_chunk is None:
                logger.debug("Source chunk not found: %s", dest_chunk["_id"])
                counts["not_on_source"] += 1
                continue
            mapped_shard = self.shard_map.lookup(source_chunk["shard"])
            if dest_chunk["shard"] != mapped_shard:
                logger.warning("Chunk on wrong shard: %s", dest_chunk["_id"])
                counts["wrong_shard"] += 1
        logger.debug("Done reading destination chunks, count = %s", counts["dest"])
        return counts

    def compare_collection_counts(self) -> dict[str, tuple[int, int]]:
        """Compare per-collection document counts for databases on both sides.

        A mismatch is re-counted once before being reported, since the
        mirrors may still be applying writes.

        Returns:
            Mapping of ``"db.coll"`` -> ``(source_count, dest_count)`` for
            collections that still differ.
        """
        logger.debug("Starting compareShardCounts mode")
        ns_filter = self.config.namespace_filter
        dest_databases = set(self.dest.list_database_names())
        mismatches = {}
        for database in self.source.list_database_names():
            if database in ("admin", "config", "local") or not ns_filter.database_included(database):
                logger.debug("Ignore %s for compare, filtered", database)
                continue
            if database not in dest_databases:
                logger.warning("Destination db not found, name: %s", database)
                continue

            for collection in self.source.list_collection_names(database):
                if collection.startswith("system."):
                    continue
                ns = f"{database}.{collection}"
                if not ns_filter.included(Namespace(database, collection)):
                    continue
                counts = self._counts(database, collection)
                if counts[0] != counts[1]:
                    counts = self._counts(database, collection)
                if counts[0] == counts[1]:
                    logger.info("%s count matches: %s", ns, counts[0])
                else:
                    logger.warning("%s count MISMATCH - source: %s, dest: %s", ns, *counts)
                    mismatches[ns] = counts
        return mismatches

    def _counts(self, database: str, collection: str) -> tuple[int, int]:
        return (self.source.count_documents(database, collection),
                self.dest.count_documents(database, collection))

    def compare_collection_uuids(self) -> dict[str, dict[str, list[str]]]:
        """Check that each destination collection has one UUID on every shard.

        Reads ``listCollections`` from each destination shard directly.  A
        collection whose copies carry different UUIDs was created separately
        on those shards instead of through the router.

        Returns:
            Mapping of ``"db.coll"`` -> ``{uuid: [shard ids]}`` for namespaces
            seen with more than one UUID.
        """
        logger.debug("Starting compareCollectionUuids")
        ns_filter = self.config.namespace_filter
        uuids: dict[str, dict[str, list[str]]] = {}
        for shard in self.dest.list_shards():
            for database in self.dest.shard_database_names(shard.id):
                if database in ("admin", "config", "local") or not ns_filter.database_included(database):
                    continue
                for info in self.dest.shard_collection_infos(shard.id, database):
                    name = info["name"]
                    # scratch collections left behind by database creation
                    if name.endswith(".create") or name.startswith("system."):
                        continue
                    uuid = (info.get("info") or {}).get("uuid")
                    if uuid is None or not ns_filter.included(Namespace(database, name)):
                        continue
                    ns = f"{database}.{name}"
                    uuids.setdefault(ns, {}).setdefault(str(uuid), []).append(shard.id)

        mismatches = {}
        for ns, by_uuid in sorted(uuids.items()):
            if len(by_uuid) == 1:
                logger.debug("%s uuid consistent across %s shard(s)", ns,
                             len(next(iter(by_uuid.values()))))
                continue
            logger.warning("%s uuid MISMATCH - %s", ns,
                           ", ".join(f"{u}: {shards}" for u, shards in by_uuid.items()))
            mismatches[ns] = by_uuid
        logger.info("compareCollectionUuids complete, collections: %s, mismatched: %s",
                    len(uuids), len(mismatches))
        return mismatches
