#!/usr/bin/env python3
"""Replicate sharding metadata from the source cluster to the destination.

Steps, in the order a migration runs them::

    +---------------------------------------------------------------+
    |  enable_destination_sharding()                                 |
    |  - enableSharding for every in-scope source database           |
    |  - create the destination database, movePrimary to the image   |
    |    of the source primary under the ShardMap                    |
    +-------------------------------+-------------------------------+
                                    v
    +---------------------------------------------------------------+
    |  shard_destination_collections()   (strategy)                  |
    |    privileged:      upsert config.collections rows (raw BSON)  |
    |    non-privileged:  shardCollection admin command              |
    +-------------------------------+-------------------------------+
                                    v
    +---------------------------------------------------------------+
    |  create_chunks()                   (strategy)                  |
    |    privileged:      insert remapped config.chunks rows         |
    |    non-privileged:  split at every source chunk's max bound    |
    +-------------------------------+-------------------------------+
                                    v
    +---------------------------------------------------------------+
    |  replicate_zones()                                             |
    |  - addShardToZone for each tagged source shard's image         |
    |  - updateZoneKeyRange for each in-scope zone range             |
    +-------------------------------+-------------------------------+
                                    v
                       flush_router_config()

The privileged path writes the destination's config database directly.
It is an order of magnitude faster but needs storage-level access that
managed hosting usually withholds; the non-privileged path only issues
administrative commands, and every split takes a distributed lock.

Per-item failures (a split, an insert, one shardCollection) are logged
with their namespace and the batch moves on.  Configuration errors
(an unmapped shard) abort before anything is written where possible.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from bson.max_key import MaxKey
from bson.son import SON
from pymongo.errors import DuplicateKeyError, PyMongoError

from cluster_client import NS_MIN_SORT
from errors import CommandError
from namespace_filter import Namespace

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

SYSTEM_DB = "config"

# Databases never replicated by enable_destination_sharding().
_SKIP_DATABASES = {"admin", "system", "local", SYSTEM_DB}

# Server error codes recognized as "already done".
ALREADY_SHARDED_CODE = 20
ALREADY_ENABLED_CODE = 23

SIMPLE_COLLATION = {"locale": "simple"}


def _is_system_namespace(ns: Namespace) -> bool:
    return ns.database == SYSTEM_DB


def _mapped_chunks(source, shard_map, ns_filter, **kwargs) -> list[tuple[dict, str]]:
    """In-scope source chunks paired with their destination shard, in ns/min order.

    Every owner is looked up before anything is returned.

    Raises:
        UnmappedShardError: If any in-scope chunk lives on an unmapped shard.
    """
    chunks = []
    for chunk in source.get_chunks(sort=NS_MIN_SORT, **kwargs):
        ns = Namespace.parse(chunk["ns"])
        if not ns_filter.included(ns) or _is_system_namespace(ns):
            continue
        chunks.append((chunk, shard_map.lookup(chunk["shard"])))
    return chunks


def has_max_key(bound: dict) -> bool:
    """Return True if any field of a chunk bound is the MaxKey sentinel."""
    return any(isinstance(value, MaxKey) for value in bound.values())


# ---------------------------------------------------------------------------
# Collection sharding configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CollectionSpec:
    """Sharding configuration of one collection, built from a source row.

    Attributes:
        namespace: Collection namespace.
        key: Shard key document, field order preserved.
        unique: Whether the shard key is unique.
        collation: Source default collation, if any.
        no_balance: Balancing disabled on the source collection.
        document: The full source ``config.collections`` row.
    """

    namespace: Namespace
    key: dict
    unique: bool = False
    collation: dict | None = None
    no_balance: bool = False
    document: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_document(cls, doc: dict) -> "CollectionSpec":
        return cls(
            namespace=Namespace.parse(doc["_id"]),
            key=dict(doc["key"]),
            unique=bool(doc.get("unique", False)),
            collation=doc.get("defaultCollation"),
            no_balance=bool(doc.get("noBalance", False)),
            document=doc,
        )

    @property
    def hashed(self) -> bool:
        first = next(iter(self.key.values()), None)
        return first == "hashed"

    def shard_command(self) -> SON:
        """Build the ``shardCollection`` command from the source settings."""
        command = SON([("shardCollection", str(self.namespace)), ("key", self.key)])
        # unique is not always reliable on the source row; the underlying
        # index may be unique while this flag says otherwise
        command["unique"] = self.unique
        if self.hashed:
            command["numInitialChunks"] = 1
        if self.collation:
            command["collation"] = SIMPLE_COLLATION
        return command


def shard_collection(dest, spec: CollectionSpec) -> dict | None:
    """Shard ``spec.namespace`` on the destination.

    Args:
        dest: Destination ClusterClient.
        spec: Collection spec taken from the source.

    Returns:
        Command result, or ``None`` if the collection was already sharded.

    Raises:
        CommandError: For any failure other than "already sharded".
    """
    try:
        return dest.run_admin_command(spec.shard_command())
    except CommandError as exc:
        if exc.code == ALREADY_SHARDED_CODE or "already sharded" in exc.message:
            logger.debug("Sharding already enabled for %s", spec.namespace)
            return None
        raise


# ============================================================================
# Strategies
# ============================================================================

class MetadataStrategy(ABC):
    """How collection and chunk metadata get onto the destination.

    Chosen once per run by :func:`select_strategy`; never re-checked per
    item.
    """

    name = "base"

    @abstractmethod
    def shard_collections(self, dest, specs: list[CollectionSpec]) -> None:
        """Register every spec as a sharded collection on the destination."""

    @abstractmethod
    def create_chunks(self, source, dest, shard_map, ns_filter) -> int:
        """Recreate source chunks on the destination; returns how many were made."""


class PrivilegedStrategy(MetadataStrategy):
    """Write config.collections / config.chunks rows directly."""

    name = "privileged"

    def shard_collections(self, dest, specs: list[CollectionSpec]) -> None:
        logger.debug("shardDestinationCollections(), privileged mode")
        for spec in specs:
            dest.replace_collection_raw(spec.document)
        logger.debug("shardDestinationCollections() complete")

    def create_chunks(self, source, dest, shard_map, ns_filter) -> int:
        """Insert every in-scope source chunk with its shard remapped.

        All owners are resolved through the ShardMap before the first
        insert, so an unmapped shard aborts without partial writes.

        Returns:
            Number of chunks inserted.
        """
        logger.debug("createDestChunksUsingInsert started")
        chunks = _mapped_chunks(source, shard_map, ns_filter)

        inserted = 0
        last_ns = None
        current = 0
        for chunk, mapped_shard in chunks:
            ns = chunk["ns"]
            if ns != last_ns and last_ns is not None:
                logger.info("%s - created %s chunks", last_ns, current)
                current = 0
            last_ns = ns

            doc = dict(chunk)
            doc["shard"] = mapped_shard
            try:
                dest.insert_chunk_raw(doc)
            except DuplicateKeyError:
                logger.debug("Chunk already exists on destination, skipping: _id: %s",
                             chunk["_id"])
                continue
            except PyMongoError as exc:
                logger.error("insert error for namespace %s, chunk %s: %s",
                             ns, chunk["_id"], exc)
                continue
            inserted += 1
            current += 1

        if last_ns is not None:
            logger.info("%s - created %s chunks", last_ns, current)
        logger.debug("createDestChunksUsingInsert complete")
        return inserted


class CommandStrategy(MetadataStrategy):
    """Drive the destination with shardCollection and split commands only."""

    name = "non-privileged"

    def shard_collections(self, dest, specs: list[CollectionSpec]) -> None:
        logger.debug("shardDestinationCollections(), non-privileged mode")
        for spec in specs:
            try:
                shard_collection(dest, spec)
            except CommandError as exc:
                logger.error("shardCollection failed for %s: %s", spec.namespace, exc)
                continue
            if spec.no_balance:
                logger.warning("Balancing is disabled for %s, this cannot be "
                               "replicated with admin commands", spec.namespace)
        logger.debug("shardDestinationCollections() complete")

    def create_chunks(self, source, dest, shard_map, ns_filter) -> int:
        """Recreate source chunk boundaries by splitting at each max bound.

        Very slow: every split is a synchronous, locking operation on the
        destination.  Owners are resolved up front so an unmapped shard
        aborts before the first split.  Chunks already present (same
        ``_id``, ``min`` and ``max``) are skipped, so re-runs issue no
        commands.

        Returns:
            Number of split commands that succeeded.
        """
        logger.debug("createDestChunksUsingSplitCommand started")
        chunks = _mapped_chunks(source, shard_map, ns_filter, no_cursor_timeout=True)
        splits = 0
        last_ns = None
        current = 0
        for chunk, _ in chunks:
            ns = chunk["ns"]
            if ns != last_ns and last_ns is not None:
                logger.info("%s - created %s chunks", last_ns, current)
                current = 0
            last_ns = ns

            existing = dest.count_chunks({"_id": chunk["_id"], "min": chunk["min"],
                                          "max": chunk["max"]})
            if existing > 0:
                logger.debug("Chunk already exists on destination, skipping: _id: %s, "
                             "min: %s, max: %s", chunk["_id"], chunk["min"], chunk["max"])
                continue

            # cannot split at an open-ended upper bound
            if has_max_key(chunk["max"]):
                continue

            try:
                dest.run_admin_command(SON([("split", ns), ("middle", chunk["max"])]))
            except CommandError as exc:
                logger.error("split error for namespace %s at %s: %s", ns, chunk["max"], exc)
                continue

            if dest.count_chunks({"_id": chunk["_id"]}) != 1:
                logger.debug("Chunk create failed for %s, chunks at min: %s", chunk["_id"],
                             dest.count_chunks({"ns": ns, "min": chunk["min"]}))
            splits += 1
            current += 1

        if last_ns is not None:
            logger.info("%s - created %s chunks", last_ns, current)
        logger.debug("createDestChunksUsingSplitCommand complete")
        return splits


def select_strategy(config) -> MetadataStrategy:
    """Resolve the run's privilege mode into a strategy object."""
    if config.non_privileged:
        return CommandStrategy()
    return PrivilegedStrategy()


# ============================================================================
# MetadataReplicator
# ============================================================================

class MetadataReplicator:
    """Copy database, collection, chunk and zone metadata to the destination.

    The ShardMap is only read, never modified.

    Attributes:
        config: RunConfig for this run.
        source: Source ClusterClient.
        dest: Destination ClusterClient.
        shard_map: Source -> destination ShardMap.
        strategy: Privileged or command-driven metadata strategy.
    """

    def __init__(self, config, source, dest, shard_map, strategy: MetadataStrategy | None = None):
        self.config = config
        self.source = source
        self.dest = dest
        self.shard_map = shard_map
        self.strategy = strategy or select_strategy(config)

    @property
    def ns_filter(self):
        return self.config.namespace_filter

    # -- Databases -----------------------------------------------------------

    def _source_databases(self) -> list[dict]:
        databases = []
        for database in self.source.list_databases():
            name = database["_id"]
            if name in _SKIP_DATABASES or "$" in name:
                continue
            if not self.ns_filter.database_included(name):
                logger.debug("Database %s filtered, not sharding on destination", name)
                continue
            databases.append(database)
        return databases

    def enable_destination_sharding(self) -> None:
        """Enable sharding and align primary shards for in-scope databases.

        Raises:
            UnmappedShardError: If a database's source primary is unmapped
                (checked for every database before the first command).
            CommandError: If enableSharding fails for a reason other than
                "already enabled".
        """
        logger.debug("enableDestinationSharding()")
        databases = self._source_databases()
        mapped_primaries = {db["_id"]: self.shard_map.lookup(db["primary"]) for db in databases}

        for database in databases:
            name = database["_id"]
            primary = database["primary"]
            mapped_primary = mapped_primaries[name]
            logger.debug("database: %s, primary: %s, mappedPrimary: %s",
                         name, primary, mapped_primary)

            if database.get("partitioned", True):
                self._enable_sharding(name)

            if name not in self.source.shard_database_names(primary):
                logger.warning("Database: %s does not exist on source shard %s, skipping",
                               name, primary)
                continue

            dest_db = self.dest.get_database(name)
            if dest_db is None:
                self.dest.create_database(name)
                dest_db = self.dest.get_database(name)
            if dest_db is None:
                logger.error("Database %s could not be created on destination", name)
                continue

            dest_primary = dest_db.get("primary")
            if dest_primary == mapped_primary:
                logger.debug("Primary shard already matches for database: %s", name)
                continue

            logger.info("movePrimary for database: %s from %s to %s",
                        name, dest_primary, mapped_primary)
            try:
                self.dest.run_admin_command(SON([("movePrimary", name), ("to", mapped_primary)]))
            except CommandError as exc:
                logger.warning("movePrimary for database: %s failed: %s", name, exc)
        logger.debug("enableDestinationSharding() complete")

    def _enable_sharding(self, name: str) -> None:
        logger.debug("enableSharding: %s", name)
        try:
            self.dest.run_admin_command(SON([("enableSharding", name)]))
        except CommandError as exc:
            if exc.code == ALREADY_ENABLED_CODE and "already enabled" in exc.message:
                logger.debug("Sharding already enabled: %s", name)
            else:
                raise

    # -- Collections ---------------------------------------------------------

    def source_collection_specs(self) -> list[CollectionSpec]:
        """In-scope sharded collections of the source, outside ``config``."""
        specs = []
        for doc in self.source.list_collections():
            spec = CollectionSpec.from_document(doc)
            if not self.ns_filter.included(spec.namespace):
                logger.debug("Namespace %s filtered, not sharding on destination",
                             spec.namespace)
                continue
            if _is_system_namespace(spec.namespace):
                continue
            specs.append(spec)
        return specs

    def shard_destination_collections(self) -> None:
        self.strategy.shard_collections(self.dest, self.source_collection_specs())

    # -- Chunks and zones ----------------------------------------------------

    def create_chunks(self) -> int:
        return self.strategy.create_chunks(self.source, self.dest, self.shard_map, self.ns_filter)

    def replicate_zones(self) -> None:
        """Copy shard zone membership and zone key ranges.

        Shard membership and key ranges land in different destination
        collections, so the two passes do not depend on each other.
        """
        logger.debug("replicateZones started")
        for shard in self.source.list_shards():
            if not shard.tags:
                continue
            mapped_shard = self.shard_map.lookup(shard.id)
            for tag in shard.tags:
                logger.debug("addShardToZone('%s', '%s')", mapped_shard, tag)
                try:
                    self.dest.run_admin_command(
                        SON([("addShardToZone", mapped_shard), ("zone", tag)]))
                except CommandError as exc:
                    logger.error("addShardToZone('%s', '%s') failed: %s", mapped_shard, tag, exc)

        for zone_range in self.source.get_zone_ranges(sort=NS_MIN_SORT):
            ns = Namespace.parse(zone_range["ns"])
            if not self.ns_filter.included(ns) or _is_system_namespace(ns):
                continue
            command = SON([
                ("updateZoneKeyRange", zone_range["ns"]),
                ("min", zone_range["min"]),
                ("max", zone_range["max"]),
                ("zone", zone_range["tag"]),
            ])
            try:
                self.dest.run_admin_command(command)
            except CommandError as exc:
                logger.error("updateZoneKeyRange failed for namespace %s, zone %s: %s",
                             ns, zone_range["tag"], exc)
        logger.debug("replicateZones complete")

    def flush_router_config(self) -> None:
        self.dest.flush_router_config()

    def replicate(self) -> None:
        """Run the collection, chunk and zone steps (not enable-sharding)."""
        logger.info("Replicating metadata using the %s strategy", self.strategy.name)
        self.shard_destination_collections()
        self.create_chunks()
        self.replicate_zones()

    # -- Diagnostics and cleanup ---------------------------------------------

    def diff_sharded_collections(self, sync: bool = False) -> dict[str, int]:
        """Compare sharded-collection metadata between the two clusters.

        Args:
            sync: Shard destination collections that are missing.

        Returns:
            Counters: ``matched``, ``mismatched``, ``missing``, ``sharded``.
        """
        logger.debug("diffShardedCollections()")
        dest_collections = {doc["_id"]: doc for doc in self.dest.list_collections()}
        counts = {"matched": 0, "mismatched": 0, "missing": 0, "sharded": 0}

        for spec in self.source_collection_specs():
            dest_doc = dest_collections.get(str(spec.namespace))
            if dest_doc is None:
                counts["missing"] += 1
                logger.info("Destination collection not found: %s sourceKey: %s",
                            spec.namespace, spec.key)
                if sync:
                    try:
                        result = shard_collection(self.dest, spec)
                        counts["sharded"] += 1
                        logger.debug("Sharded: %s", result)
                    except CommandError as exc:
                        logger.error("Error sharding %s: %s", spec.namespace, exc)
            elif dict(dest_doc.get("key", {})) == spec.key:
                counts["matched"] += 1
                logger.debug("Shard key match for %s", spec.namespace)
            else:
                counts["mismatched"] += 1
                logger.warning("Shard key MISMATCH for %s sourceKey: %s destKey: %s",
                               spec.namespace, spec.key, dest_doc.get("key"))
        return counts

    def drop_destination_databases(self, include_config_metadata: bool = False) -> list[str]:
        """Drop every in-scope source database on the destination.

        Args:
            include_config_metadata: Also delete the destination's config
                rows for those databases.

        Returns:
            Names of the databases dropped.
        """
        logger.debug("dropDestinationDatabases()")
        dropped = []
        for database in self._source_databases():
            name = database["_id"]
            self.dest.drop_database(name)
            if include_config_metadata:
                self.dest.delete_config_metadata(name)
            dropped.append(name)
        logger.debug("dropDestinationDatabases() complete")
        return dropped
