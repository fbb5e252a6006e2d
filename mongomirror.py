#!/usr/bin/env python3
"""One mongomirror process per source shard.

A :class:`MirrorTask` holds everything needed to run the external
``mongomirror`` binary for a single source shard: endpoints, credentials,
include filters, bookmark file, HTTP status port and the process handle.
The binary does the copying and oplog tailing; this module only builds
its command line, starts it, and reads its HTTP status endpoint.

State machine
-------------
::

    CREATED --start()--> RUNNING --status--> INITIAL_SYNC --> OPLOG_SYNC
                            |                     |               |
                            +---------------------+---------------+
                            |  status has errorMessage     process exited
                            v                                     v
                          ERROR                              TERMINATED

ERROR does not stop the process; the operator decides what to do.

Status endpoint
---------------
``GET http://localhost:{port}`` returns JSON such as::

    {"stage": "initial sync", "phase": "copying collection data",
     "details": {"copiedBytes": 1024, "totalBytes": 4096}}

    {"stage": "oplog sync", "phase": "applying oplog entries",
     "details": {"currentTimestamp": ..., "latestTimestamp": ...}}

    {"errorMessage": "..."}
"""

import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import requests

from cluster_client import Credentials

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STAGE_INITIAL_SYNC = "initial sync"
STAGE_OPLOG_SYNC = "oplog sync"
PHASE_COPYING_INDEXES = "copying indexes"

# Flags whose following argument must never be logged.
_SECRET_FLAGS = {"--password", "--destinationPassword"}


class MirrorState(Enum):
    CREATED = "created"
    RUNNING = "running"
    INITIAL_SYNC = "initial sync"
    OPLOG_SYNC = "oplog sync"
    TERMINATED = "terminated"
    ERROR = "error"


def redact_command(cmd: list[str]) -> str:
    """Join a command line for logging with password values masked."""
    parts = []
    hide_next = False
    for arg in cmd:
        parts.append("***" if hide_next else arg)
        hide_next = arg in _SECRET_FLAGS
    return " ".join(parts)


def _timestamp_seconds(value) -> int | None:
    """Seconds part of a timestamp as mongomirror reports it.

    Accepts ``{"T": s, "I": i}``, extended JSON ``{"$timestamp": {"t": s}}``,
    a packed 64-bit BSON timestamp, or plain seconds.  Anything else
    (an ISO date string, say) yields ``None``.
    """
    if value is None:
        return None
    try:
        if isinstance(value, dict):
            if "$timestamp" in value:
                return int(value["$timestamp"]["t"])
            for key in ("T", "t"):
                if key in value:
                    return int(value[key])
            return None
        seconds = int(value)
    except (KeyError, TypeError, ValueError):
        return None
    if seconds >= 1 << 32:
        seconds >>= 32
    return seconds


# ---------------------------------------------------------------------------
# Status documents
# ---------------------------------------------------------------------------

@dataclass
class MirrorStatus:
    """Parsed status of one mongomirror process.

    Attributes:
        stage: e.g. ``"initial sync"`` or ``"oplog sync"``.
        phase: e.g. ``"copying collection data"``.
        error_message: Non-empty when mongomirror reports a failure.
    """

    stage: str = ""
    phase: str = ""
    error_message: str | None = None
    details: dict = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict) -> "MirrorStatus":
        """Build the right status subclass from a status endpoint response."""
        stage = str(data.get("stage") or "")
        phase = str(data.get("phase") or "")
        error = data.get("errorMessage") or data.get("error") or None
        details = data.get("details")
        if not isinstance(details, dict):
            details = {}
        if error:
            return cls(stage, phase, str(error), details)
        if stage == STAGE_INITIAL_SYNC:
            return InitialSyncStatus(stage, phase, None, details)
        if stage == STAGE_OPLOG_SYNC:
            return OplogSyncStatus(stage, phase, None, details)
        return cls(stage, phase, None, details)

    @property
    def is_initial_sync(self) -> bool:
        return False

    @property
    def is_oplog_sync(self) -> bool:
        return False


@dataclass
class InitialSyncStatus(MirrorStatus):

    @property
    def is_initial_sync(self) -> bool:
        return True

    @property
    def copying_indexes(self) -> bool:
        return self.phase == PHASE_COPYING_INDEXES

    @property
    def completion_percent(self) -> float:
        try:
            total = float(self.details.get("totalBytes") or 0)
            copied = float(self.details.get("copiedBytes") or 0)
        except (TypeError, ValueError):
            return 0.0
        if total <= 0:
            return 0.0
        return min(100.0, copied * 100.0 / total)


@dataclass
class OplogSyncStatus(MirrorStatus):

    @property
    def is_oplog_sync(self) -> bool:
        return True

    @property
    def lag_seconds(self) -> int | None:
        current = _timestamp_seconds(self.details.get("currentTimestamp"))
        latest = _timestamp_seconds(self.details.get("latestTimestamp"))
        if current is None or latest is None:
            return None
        return max(0, latest - current)

    @property
    def lag_pretty(self) -> str:
        lag = self.lag_seconds
        if lag is None:
            return "unknown"
        hours, rem = divmod(lag, 3600)
        minutes, seconds = divmod(rem, 60)
        if hours:
            return f"{hours}h {minutes:02d}m {seconds:02d}s"
        if minutes:
            return f"{minutes}m {seconds:02d}s"
        return f"{seconds}s"


# ============================================================================
# MirrorTask
# ============================================================================

@dataclass
class MirrorTask:
    """Everything needed to run and watch mongomirror for one source shard.

    The process handle and status session belong to this task alone.
    """

    shard_id: str
    source_host: str
    dest_host: str
    bookmark_file: str
    status_port: int
    binary: str = "mongomirror"
    source_credentials: Credentials | None = None
    source_tls: bool | None = None
    dest_credentials: Credentials | None = None
    dest_tls: bool | None = None
    include_namespaces: tuple[str, ...] = ()
    include_databases: tuple[str, ...] = ()
    num_parallel_collections: int | None = None
    write_concern: str | None = None
    compressors: str | None = None
    oplog_path: str | None = None
    tail_only: bool = False
    preserve_uuids: bool = False
    drop: bool = False
    log_dir: str = "mongomirror_logs"

    state: MirrorState = MirrorState.CREATED
    process: subprocess.Popen | None = field(default=None, repr=False)
    last_status: MirrorStatus | None = field(default=None, repr=False)
    session: requests.Session | None = field(default=None, repr=False)

    @property
    def status_url(self) -> str:
        return f"http://localhost:{self.status_port}"

    @property
    def log_file(self) -> Path:
        return Path(self.log_dir) / f"mongomirror_{self.shard_id}.log"

    def command_line(self) -> list[str]:
        """Build the mongomirror argument list."""
        cmd = [self.binary, "--host", self.source_host]
        if self.source_credentials is not None:
            cmd += ["--username", self.source_credentials.username,
                    "--password", self.source_credentials.password,
                    "--authenticationDatabase", self.source_credentials.auth_source]
        if self.source_tls:
            cmd.append("--ssl")

        cmd += ["--destination", self.dest_host]
        if self.dest_credentials is not None:
            cmd += ["--destinationUsername", self.dest_credentials.username,
                    "--destinationPassword", self.dest_credentials.password,
                    "--destinationAuthenticationDatabase", self.dest_credentials.auth_source]
        if not self.dest_tls:
            cmd.append("--destinationNoSSL")

        for ns in self.include_namespaces:
            cmd += ["--includeNamespace", ns]
        for db in self.include_databases:
            cmd += ["--includeDB", db]

        cmd += ["--bookmarkFile", self.bookmark_file,
                "--httpStatusPort", str(self.status_port)]
        if self.num_parallel_collections:
            cmd += ["--numParallelCollections", str(self.num_parallel_collections)]
        if self.write_concern:
            cmd += ["--writeConcern", self.write_concern]
        if self.compressors:
            cmd += ["--compressors", self.compressors]
        if self.oplog_path:
            cmd += ["--oplogPath", self.oplog_path]
        if self.preserve_uuids:
            cmd.append("--preserveUUIDs")
        if self.tail_only:
            cmd.append("--tailOnly")
        if self.drop:
            cmd.append("--drop")
        return cmd

    # -- Process control -----------------------------------------------------

    def start(self, popen=subprocess.Popen) -> None:
        """Launch mongomirror with output appended to :attr:`log_file`."""
        cmd = self.command_line()
        logger.info("%s: starting mongomirror -> %s", self.shard_id, redact_command(cmd))
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "ab") as log:
            self.process = popen(cmd, stdout=log, stderr=subprocess.STDOUT)
        self.state = MirrorState.RUNNING

    def terminate(self) -> None:
        """Ask the process to exit (SIGTERM); it is not waited on."""
        if self.process is not None and self.process.poll() is None:
            logger.info("%s: signalling mongomirror to stop", self.shard_id)
            self.process.terminate()

    # -- Status --------------------------------------------------------------

    def check_status(self, timeout: float = 2.0) -> MirrorStatus | None:
        """Fetch the current status; ``None`` if the process did not answer.

        An unreachable or slow endpoint is not an error: the caller just
        tries again next tick.
        """
        if self.process is not None and self.process.poll() is not None:
            if self.state is not MirrorState.TERMINATED:
                logger.warning("%s: mongomirror exited with code %s",
                               self.shard_id, self.process.returncode)
            self.state = MirrorState.TERMINATED
            return None

        if self.session is None:
            self.session = requests.Session()
        try:
            resp = self.session.get(self.status_url, timeout=timeout)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.debug("%s: no status this tick: %s", self.shard_id, exc)
            return None
        if not isinstance(data, dict):
            logger.debug("%s: ignoring status payload of type %s",
                         self.shard_id, type(data).__name__)
            return None
        return MirrorStatus.from_json(data)

    def apply_status(self, status: MirrorStatus | None) -> MirrorState:
        """Advance the state machine from a polled status."""
        if status is None or self.state is MirrorState.TERMINATED:
            return self.state
        self.last_status = status
        if status.error_message:
            self.state = MirrorState.ERROR
        elif status.is_initial_sync:
            self.state = MirrorState.INITIAL_SYNC
        elif status.is_oplog_sync:
            self.state = MirrorState.OPLOG_SYNC
        return self.state
