"""Run configuration for shard-sync.

All settings for one run live in an immutable :class:`RunConfig`, built
once by :func:`load_config` and handed to every component.  Nothing reads
the environment after that point.

Precedence (lowest to highest): defaults, environment variables (the entry
point loads ``.env`` with python-dotenv first), CLI overrides.

Environment Variables (in .env)
-------------------------------
Required:
    SOURCE_URI                  mongos connection string of the source
    DEST_URI                    mongos connection string of the destination

Optional:
    SHARDSYNC_FILTER            comma list of ``db`` / ``db.coll`` includes
    SHARDSYNC_SHARD_MAP         comma list of ``sourceShard|destShard``
    SHARDSYNC_NON_PRIVILEGED    use admin commands instead of config writes
    MONGOMIRROR_BINARY          path to the mongomirror executable
    SHARDSYNC_LAUNCH_DELAY      seconds to wait between mirror launches
    SHARDSYNC_PARALLEL_COLLECTIONS
    SHARDSYNC_STATUS_PORT       first mirror HTTP status port (default 9001)
    SHARDSYNC_POLL_INTERVAL     seconds between status polls (default 5)
    SHARDSYNC_STATUS_TIMEOUT    per-poll HTTP timeout in seconds (default 2)
    SHARDSYNC_WRITE_CONCERN, SHARDSYNC_COMPRESSORS,
    SHARDSYNC_OPLOG_BASE_PATH, SHARDSYNC_BOOKMARK_PREFIX,
    SHARDSYNC_TAIL_ONLY, SHARDSYNC_PRESERVE_UUIDS, SHARDSYNC_DROP,
    SHARDSYNC_TLS_INVALID_HOSTS, SHARDSYNC_TLS_INVALID_CERTS,
    SHARDSYNC_ORPHAN_SLEEP, SHARDSYNC_LOG_DIR
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from functools import cached_property
from typing import get_args, get_origin

from errors import ConfigError
from namespace_filter import NamespaceFilter

# Field name -> environment variable.
_ENV_VARS = {
    "source_uri": "SOURCE_URI",
    "dest_uri": "DEST_URI",
    "filters": "SHARDSYNC_FILTER",
    "shard_map": "SHARDSYNC_SHARD_MAP",
    "non_privileged": "SHARDSYNC_NON_PRIVILEGED",
    "mongomirror_binary": "MONGOMIRROR_BINARY",
    "launch_delay_seconds": "SHARDSYNC_LAUNCH_DELAY",
    "num_parallel_collections": "SHARDSYNC_PARALLEL_COLLECTIONS",
    "status_base_port": "SHARDSYNC_STATUS_PORT",
    "status_poll_interval": "SHARDSYNC_POLL_INTERVAL",
    "status_timeout": "SHARDSYNC_STATUS_TIMEOUT",
    "write_concern": "SHARDSYNC_WRITE_CONCERN",
    "compressors": "SHARDSYNC_COMPRESSORS",
    "oplog_base_path": "SHARDSYNC_OPLOG_BASE_PATH",
    "bookmark_file_prefix": "SHARDSYNC_BOOKMARK_PREFIX",
    "tail_only": "SHARDSYNC_TAIL_ONLY",
    "preserve_uuids": "SHARDSYNC_PRESERVE_UUIDS",
    "drop": "SHARDSYNC_DROP",
    "tls_allow_invalid_hostnames": "SHARDSYNC_TLS_INVALID_HOSTS",
    "tls_allow_invalid_certificates": "SHARDSYNC_TLS_INVALID_CERTS",
    "cleanup_orphans_sleep_seconds": "SHARDSYNC_ORPHAN_SLEEP",
    "log_dir": "SHARDSYNC_LOG_DIR",
}

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings for one shard-sync run."""

    source_uri: str
    dest_uri: str
    filters: tuple[str, ...] = ()
    shard_map: tuple[str, ...] = ()
    non_privileged: bool = False

    # mongomirror
    mongomirror_binary: str = "mongomirror"
    launch_delay_seconds: float = 0.0
    num_parallel_collections: int | None = None
    status_base_port: int = 9001
    status_poll_interval: float = 5.0
    status_timeout: float = 2.0
    write_concern: str | None = None
    compressors: str | None = None
    oplog_base_path: str | None = None
    bookmark_file_prefix: str | None = None
    tail_only: bool = False
    preserve_uuids: bool = False
    drop: bool = False
    log_dir: str = "mongomirror_logs"

    # TLS
    tls_allow_invalid_hostnames: bool = False
    tls_allow_invalid_certificates: bool = False

    cleanup_orphans_sleep_seconds: float = 0.0

    @cached_property
    def namespace_filter(self) -> NamespaceFilter:
        return NamespaceFilter.from_strings(self.filters)


def _coerce(name: str, kind, raw):
    """Convert an env/CLI value to the type of RunConfig field ``name``."""
    if raw is None:
        return None
    try:
        if kind is bool:
            if isinstance(raw, bool):
                return raw
            value = str(raw).strip().lower()
            if value in _TRUE:
                return True
            if value in _FALSE:
                return False
            raise ValueError(raw)
        if kind is tuple:
            if isinstance(raw, str):
                return tuple(p.strip() for p in raw.split(",") if p.strip())
            return tuple(raw)
        if kind is int:
            return int(raw)
        if kind is float:
            return float(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid value for {name}: {raw!r}") from None
    return str(raw)


def _field_kind(f) -> type:
    kind = f.type
    if get_origin(kind) is tuple:
        return tuple
    args = [a for a in get_args(kind) if a is not type(None)]
    if args:
        kind = args[0]
    return kind if kind in (bool, int, float) else str


def load_config(overrides: Mapping | None = None,
                environ: Mapping | None = None) -> RunConfig:
    """Build a RunConfig from the environment plus explicit overrides.

    Args:
        overrides: Values that win over the environment, typically
            ``vars(args)`` from the CLI.  ``None`` values are ignored.
        environ: Environment mapping (default ``os.environ``).

    Returns:
        RunConfig instance.

    Raises:
        ConfigError: If a required URI is missing or a value is malformed.
    """
    environ = os.environ if environ is None else environ
    overrides = overrides or {}
    values = {}
    for f in fields(RunConfig):
        kind = _field_kind(f)
        raw = overrides.get(f.name)
        if raw is None or (isinstance(raw, (list, tuple)) and not raw):
            raw = environ.get(_ENV_VARS[f.name])
        value = _coerce(f.name, kind, raw)
        if value is not None:
            values[f.name] = value

    for required in ("source_uri", "dest_uri"):
        if not values.get(required):
            raise ConfigError(
                f"Missing {_ENV_VARS[required]} (set it in .env or pass "
                f"--{required.replace('_', '-')})"
            )
    if values.get("status_base_port", 9001) <= 0:
        raise ConfigError("status_base_port must be positive")
    return RunConfig(**values)
