#!/usr/bin/env python3
"""Sharded-cluster client wrapper used for both source and destination.

This module is the only place that talks to a cluster.  One
:class:`ClusterClient` is created per side of the migration; it connects to
a ``mongos`` router and exposes the metadata reads and administrative
commands the rest of shard-sync needs.

Architecture
------------
::

    ClusterClient("source", uri)        ClusterClient("dest", uri)
        |                                   |
        +-- mongos MongoClient              +-- mongos MongoClient
        |     config.shards / databases /   |     config.* reads
        |     collections / chunks / tags   |     admin commands
        |                                   |     raw config writes
        +-- per-shard MongoClients          +-- per-shard MongoClients
              (lazily, from the shard's           (lazily)
               "rs/host1,host2" string)

Both sides expose the same surface, so test doubles only need to quack
like this class (see ``tests/fake_cluster.py``).

Raw writes
----------
Shard keys may contain dotted field names (``{"a.b": 1}``), which then show
up as field names inside chunk bounds.  Documents holding them are encoded
to BSON once and written as :class:`bson.raw_bson.RawBSONDocument`, which
PyMongo sends as-is without re-validating field names.

Usage
-----
::

    from cluster_client import ClusterClient

    source = ClusterClient("source", "mongodb://user:pw@mongos1:27017/")
    for shard in source.list_shards():
        print(shard.id, shard.host)
"""

import logging
import re
from dataclasses import dataclass, field

import bson
from bson.raw_bson import RawBSONDocument
from bson.son import SON
from pymongo import ASCENDING, MongoClient
from pymongo.errors import OperationFailure
from pymongo.uri_parser import parse_uri

from errors import CommandError, ConfigError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

CONFIG_DB = "config"

# Sort order used for every chunk and zone-range scan.
NS_MIN_SORT = [("ns", ASCENDING), ("min", ASCENDING)]

# Scratch collection used to force creation of a database on the router.
CREATE_DB_COLLECTION = "shardsync.create"


def _uri_option(options, name: str):
    """Look up a connection-string option by lower-case name, ignoring key case."""
    return next((value for key, value in options.items() if key.lower() == name), None)


def redact_uri(text: str) -> str:
    """Replace credentials in MongoDB URIs with '***' for safe logging.

    Args:
        text: String that may contain mongodb:// or mongodb+srv:// URIs.

    Returns:
        Text with credentials replaced by ``***:***``.
    """
    return re.sub(
        r"mongodb(\+srv)?://[^:/@]+:[^@]+@",
        r"mongodb\1://***:***@",
        text,
    )


# ---------------------------------------------------------------------------
# Topology value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Shard:
    """One shard as listed by the cluster at the start of a run.

    Attributes:
        id: Shard id (e.g. ``"shard01"``).
        host: Connection string as stored in ``config.shards``,
            usually ``"replSetName/host1:port,host2:port"``.
        tags: Zone names the shard belongs to.
    """

    id: str
    host: str
    tags: tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def from_document(cls, doc: dict) -> "Shard":
        return cls(doc["_id"], doc["host"], tuple(doc.get("tags", ())))

    @property
    def replica_set(self) -> str | None:
        name, sep, _ = self.host.partition("/")
        return name if sep else None

    @property
    def hosts(self) -> list[str]:
        _, sep, seeds = self.host.partition("/")
        return (seeds if sep else self.host).split(",")


@dataclass(frozen=True)
class Credentials:
    """Username/password/auth-source triple from a connection string."""

    username: str
    password: str
    auth_source: str = "admin"


# ============================================================================
# ClusterClient
# ============================================================================

class ClusterClient:
    """Administrative client for one sharded cluster.

    The mongos connection is opened lazily on first use.  Connections to
    individual shards (needed for per-shard database listings and
    ``cleanupOrphaned``) reuse this cluster's credentials and TLS settings.

    Attributes:
        name: Label used in log lines ("source" / "dest").
        uri: Connection string of the mongos router.
    """

    def __init__(
        self,
        name: str,
        uri: str,
        tls_allow_invalid_hostnames: bool = False,
        tls_allow_invalid_certificates: bool = False,
    ):
        """Initialize the client.

        Args:
            name: Label used in log lines.
            uri: MongoDB connection string of a mongos router.
            tls_allow_invalid_hostnames: Relax TLS hostname checks.
            tls_allow_invalid_certificates: Accept self-signed certificates.
        """
        self.name = name
        self.uri = uri
        self._tls_options = {}
        if tls_allow_invalid_hostnames:
            self._tls_options["tlsAllowInvalidHostnames"] = True
        if tls_allow_invalid_certificates:
            self._tls_options["tlsAllowInvalidCertificates"] = True
        self._client: MongoClient | None = None
        self._shard_clients: dict[str, MongoClient] = {}
        self._shards: dict[str, Shard] | None = None
        self._uri_info: dict | None = None

    @property
    def _parsed(self) -> dict:
        # Resolved on demand; SRV URIs need a DNS lookup.
        if self._uri_info is None:
            self._uri_info = parse_uri(self.uri)
        return self._uri_info

    def __repr__(self) -> str:
        return f"ClusterClient({self.name!r}, {redact_uri(self.uri)!r})"

    # -- Connection details --------------------------------------------------

    @property
    def client(self) -> MongoClient:
        if self._client is None:
            logger.debug("%s: connecting to %s", self.name, redact_uri(self.uri))
            self._client = MongoClient(self.uri, **self._tls_options)
        return self._client

    @property
    def config_db(self):
        return self.client[CONFIG_DB]

    @property
    def credentials(self) -> Credentials | None:
        """Credentials embedded in the connection string, if any."""
        username = self._parsed.get("username")
        if not username:
            return None
        options = self._parsed.get("options") or {}
        auth_source = _uri_option(options, "authsource") or self._parsed.get("database") or "admin"
        return Credentials(username, self._parsed.get("password") or "", auth_source)

    @property
    def tls_enabled(self) -> bool | None:
        """TLS flag from the connection string, ``None`` when unspecified."""
        options = self._parsed.get("options") or {}
        for key in ("tls", "ssl"):
            value = _uri_option(options, key)
            if value is not None:
                return bool(value)
        if self.uri.startswith("mongodb+srv://"):
            return True
        return None

    @property
    def replica_set_host(self) -> str:
        """``"setName/host:port,..."`` for a replica-set connection string.

        The set name comes from the ``replicaSet`` URI option, or from the
        server's ``isMaster`` reply when the URI does not name it.

        Raises:
            ConfigError: If the server is not a replica-set member.
        """
        hosts = ",".join(f"{host}:{port}" for host, port in self._parsed.get("nodelist") or [])
        set_name = _uri_option(self._parsed.get("options") or {}, "replicaset")
        if not set_name:
            set_name = self.run_admin_command(SON([("isMaster", 1)])).get("setName")
        if not set_name:
            raise ConfigError(f"{self.name}: not connected to a replica set")
        return f"{set_name}/{hosts}"

    def close(self) -> None:
        for client in self._shard_clients.values():
            client.close()
        self._shard_clients.clear()
        if self._client is not None:
            self._client.close()
            self._client = None

    # -- Topology ------------------------------------------------------------

    def list_shards(self) -> list[Shard]:
        """List shards in the cluster's natural listing order.

        The result is snapshotted on first call and reused for the rest
        of the run.

        Returns:
            List of Shard instances.
        """
        if self._shards is None:
            result = self.run_admin_command(SON([("listShards", 1)]))
            self._shards = {}
            for doc in result.get("shards", []):
                shard = Shard.from_document(doc)
                self._shards[shard.id] = shard
            logger.debug("%s: %d shard(s): %s", self.name, len(self._shards),
                          list(self._shards))
        return list(self._shards.values())

    def get_shard(self, shard_id: str) -> Shard | None:
        self.list_shards()
        return self._shards.get(shard_id)

    def cluster_version(self) -> tuple[int, ...]:
        """Return the server version as a tuple, e.g. ``(4, 4, 18)``."""
        info = self.client.admin.command("buildInfo")
        version = info.get("versionArray") or [int(p) for p in info["version"].split(".")[:3]]
        return tuple(int(p) for p in version[:3])

    def is_version_36_or_later(self) -> bool:
        return self.cluster_version() >= (3, 6)

    # -- Metadata reads (config database) -------------------------------------

    def list_databases(self) -> list[dict]:
        """Return every ``config.databases`` row (``_id``, ``primary``, ...)."""
        return list(self.config_db["databases"].find().sort("_id", ASCENDING))

    def get_database(self, name: str) -> dict | None:
        return self.config_db["databases"].find_one({"_id": name})

    def list_collections(self, query: dict | None = None) -> list[dict]:
        """Return sharded-collection metadata rows from ``config.collections``.

        Args:
            query: Extra filter; dropped collections are always excluded.

        Returns:
            List of collection metadata documents, ordered by namespace.
        """
        criteria = {"dropped": {"$ne": True}}
        if query:
            criteria.update(query)
        return list(self.config_db["collections"].find(criteria).sort("_id", ASCENDING))

    def get_chunks(self, query: dict | None = None, sort: list | None = None,
                   no_cursor_timeout: bool = False):
        """Iterate ``config.chunks`` documents.

        Args:
            query: Optional filter.
            sort: Optional sort spec, usually :data:`NS_MIN_SORT`.
            no_cursor_timeout: Keep the server cursor alive for long scans.

        Returns:
            Cursor over chunk documents.
        """
        cursor = self.config_db["chunks"].find(query or {}, no_cursor_timeout=no_cursor_timeout)
        if sort:
            cursor = cursor.sort(sort)
        return cursor

    def count_chunks(self, query: dict) -> int:
        return self.config_db["chunks"].count_documents(query)

    def get_zone_ranges(self, query: dict | None = None, sort: list | None = None):
        """Iterate ``config.tags`` zone-range documents."""
        cursor = self.config_db["tags"].find(query or {})
        if sort:
            cursor = cursor.sort(sort)
        return cursor

    def list_database_names(self) -> list[str]:
        return self.client.list_database_names()

    def list_collection_names(self, database: str) -> list[str]:
        return self.client[database].list_collection_names()

    def count_documents(self, database: str, collection: str) -> int:
        return self.client[database][collection].estimated_document_count()

    # -- Administrative commands ---------------------------------------------

    def run_admin_command(self, command) -> dict:
        """Run a command against the ``admin`` database of the router.

        Args:
            command: Ordered command document (SON or dict; the command
                name must be the first key).

        Returns:
            Command result document.

        Raises:
            CommandError: If the server rejects the command.
        """
        try:
            return self.client.admin.command(command)
        except OperationFailure as exc:
            details = exc.details or {}
            raise CommandError(exc.code or 0, details.get("errmsg", str(exc))) from exc

    def create_database(self, name: str) -> None:
        """Make sure ``name`` exists on the router so it gets a primary shard."""
        coll = self.client[name][CREATE_DB_COLLECTION]
        coll.insert_one({"_id": 1})
        coll.drop()

    def drop_database(self, name: str) -> None:
        logger.debug("%s: dropping database %s", self.name, name)
        self.client.drop_database(name)

    def delete_config_metadata(self, database: str) -> None:
        """Remove every config row describing ``database`` and its collections."""
        ns_regex = {"$regex": f"^{re.escape(database)}\\."}
        self.config_db["collections"].delete_many({"_id": ns_regex})
        self.config_db["chunks"].delete_many({"ns": ns_regex})
        self.config_db["tags"].delete_many({"ns": ns_regex})
        self.config_db["databases"].delete_one({"_id": database})

    def flush_router_config(self) -> None:
        logger.debug("%s: flushRouterConfig", self.name)
        self.run_admin_command(SON([("flushRouterConfig", 1)]))

    def stop_balancer(self) -> None:
        logger.debug("%s: stopping balancer", self.name)
        self.run_admin_command(SON([("balancerStop", 1)]))

    def set_autosplit(self, enabled: bool) -> None:
        self.config_db["settings"].update_one(
            {"_id": "autosplit"}, {"$set": {"enabled": enabled}}, upsert=True
        )

    # -- Raw config writes ----------------------------------------------------

    def insert_chunk_raw(self, chunk: dict) -> None:
        """Insert a chunk document without field-name validation."""
        self.config_db["chunks"].insert_one(RawBSONDocument(bson.encode(chunk)))

    def replace_collection_raw(self, collection_doc: dict) -> None:
        """Upsert a ``config.collections`` row keyed by namespace, as raw BSON."""
        self.config_db["collections"].replace_one(
            {"_id": collection_doc["_id"]},
            RawBSONDocument(bson.encode(collection_doc)),
            upsert=True,
        )

    # -- Per-shard access ----------------------------------------------------

    def shard_client(self, shard_id: str) -> MongoClient:
        """Return a direct connection to one shard's replica set.

        Raises:
            KeyError: If the shard is not part of this cluster.
        """
        if shard_id not in self._shard_clients:
            shard = self.get_shard(shard_id)
            if shard is None:
                raise KeyError(f"{self.name}: unknown shard {shard_id}")
            kwargs = dict(self._tls_options)
            if shard.replica_set:
                kwargs["replicaSet"] = shard.replica_set
            creds = self.credentials
            if creds is not None:
                kwargs.update(username=creds.username, password=creds.password,
                              authSource=creds.auth_source)
            if self.tls_enabled:
                kwargs["tls"] = True
            self._shard_clients[shard_id] = MongoClient(shard.hosts, **kwargs)
        return self._shard_clients[shard_id]

    def shard_database_names(self, shard_id: str) -> list[str]:
        return self.shard_client(shard_id).list_database_names()

    def shard_collection_infos(self, shard_id: str, database: str) -> list[dict]:
        """Return ``listCollections`` output for one database on one shard."""
        return list(self.shard_client(shard_id)[database].list_collections())

    def run_shard_command(self, shard_id: str, command) -> dict:
        """Run an admin command directly on one shard's primary."""
        try:
            return self.shard_client(shard_id).admin.command(command)
        except OperationFailure as exc:
            details = exc.details or {}
            raise CommandError(exc.code or 0, details.get("errmsg", str(exc))) from exc
