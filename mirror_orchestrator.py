#!/usr/bin/env python3
"""Launch and supervise one mongomirror per source shard.

Launch
------
For every source shard, in listing order, a :class:`mongomirror.MirrorTask`
is derived:

    source host         the shard's own ``rs/host,...`` string
    destination host    the mapped destination shard's host string
    credentials / TLS   copied from each side's ClusterClient
    filters             the run's include namespaces / databases, verbatim
    status port         base port + launch index (one port per task)
    bookmark file       ``{prefix}_{shardId}.timestamp``; the prefix is a
                        timestamp unless the operator supplies one, which
                        lets a restarted run resume from the same bookmarks

Tasks start one at a time with a configurable delay between launches so a
destination with many shards is not hit by a burst of connections.

Supervision
-----------
Every ``status_poll_interval`` seconds all tasks are polled concurrently
(one thread per task, each fetch with its own timeout) and the results are
joined before the next tick.  The loop never ends on its own: cutover is an
operator decision.  Setting the cancellation event stops the loop, after
which every process is sent SIGTERM and left to exit on its own.
"""

import logging
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path

from errors import ConfigError
from mongomirror import MirrorState, MirrorStatus, MirrorTask

logger = logging.getLogger(__name__)

BOOKMARK_DATE_FORMAT = "%Y%m%d_%H%M_%S"


def bookmark_file_name(prefix: str, shard_id: str) -> str:
    return f"{prefix}_{shard_id}.timestamp"


def format_status_line(task: MirrorTask, status: MirrorStatus) -> tuple[int, str]:
    """Classify a status into a log level and a progress line.

    Returns:
        ``(logging level, message)``.
    """
    if status.error_message:
        return logging.ERROR, f"{task.shard_id} - mongomirror error {status.error_message}"
    head = f"{task.shard_id:<15} - {status.stage:<18} {status.phase:<22}"
    if status.is_initial_sync:
        if status.copying_indexes:
            return logging.INFO, head
        return logging.INFO, f"{head} {status.completion_percent:6.2f}% complete"
    if status.is_oplog_sync:
        return logging.INFO, f"{head} {status.lag_pretty} lag from source"
    return logging.INFO, head


class MirrorOrchestrator:
    """Owns the MirrorTasks of a run and their process handles.

    Attributes:
        config: RunConfig for this run.
        source: Source ClusterClient.
        dest: Destination ClusterClient.
        shard_map: Source -> destination ShardMap (read only).
        dest_host: When set, every source shard mirrors into this one
            ``"setName/host:port"`` replica set and ``shard_map`` is unused.
        tasks: One MirrorTask per source shard, after :meth:`build_tasks`.
    """

    def __init__(self, config, source, dest, shard_map, popen=subprocess.Popen,
                 dest_host: str | None = None):
        self.config = config
        self.source = source
        self.dest = dest
        self.shard_map = shard_map
        self.dest_host = dest_host
        self.tasks: list[MirrorTask] = []
        self._popen = popen

    def _preserve_uuids(self) -> bool:
        if self.config.preserve_uuids:
            return True
        if self.config.non_privileged:
            return False
        if self.dest.is_version_36_or_later():
            logger.debug("Version 3.6 or later, not nonPrivilegedMode, setting preserveUUIDs true")
            return True
        return False

    def build_tasks(self) -> list[MirrorTask]:
        """Derive one MirrorTask per source shard.

        Each task targets the mapped destination shard, or ``dest_host``
        for a replica-set destination.

        Raises:
            UnmappedShardError: If a source shard has no destination.
            ConfigError: If the mapped destination shard does not exist.
        """
        config = self.config
        ns_filter = config.namespace_filter
        prefix = config.bookmark_file_prefix or datetime.now().strftime(BOOKMARK_DATE_FORMAT)
        preserve_uuids = self._preserve_uuids()
        source_creds = self.source.credentials
        dest_creds = self.dest.credentials
        dropped_dests = set()

        tasks = []
        port = config.status_base_port
        for shard in self.source.list_shards():
            if self.dest_host:
                dest_host = self.dest_host
            else:
                dest_shard_id = self.shard_map.lookup(shard.id)
                dest_shard = self.dest.get_shard(dest_shard_id)
                if dest_shard is None:
                    raise ConfigError(f"Mapped destination shard {dest_shard_id} not found on destination")
                dest_host = dest_shard.host
            logger.debug("Creating MirrorTask for %s ==> %s", shard.id, dest_host)

            # only the first mirror into a destination may drop,
            # later ones would drop data already copied by another
            drop = config.drop and dest_host not in dropped_dests
            if drop:
                dropped_dests.add(dest_host)

            tasks.append(MirrorTask(
                shard_id=shard.id,
                source_host=shard.host,
                dest_host=dest_host,
                bookmark_file=bookmark_file_name(prefix, shard.id),
                status_port=port,
                binary=config.mongomirror_binary,
                source_credentials=source_creds,
                source_tls=self.source.tls_enabled,
                dest_credentials=dest_creds,
                dest_tls=self.dest.tls_enabled,
                include_namespaces=tuple(sorted(str(ns) for ns in ns_filter.namespaces)),
                include_databases=tuple(sorted(ns_filter.databases)),
                num_parallel_collections=config.num_parallel_collections,
                write_concern=config.write_concern,
                compressors=config.compressors,
                oplog_path=(str(Path(config.oplog_base_path) / shard.id)
                            if config.oplog_base_path else None),
                tail_only=config.tail_only,
                preserve_uuids=preserve_uuids,
                drop=drop,
                log_dir=config.log_dir,
            ))
            port += 1
        self.tasks = tasks
        return tasks

    def launch(self, cancel: threading.Event | None = None) -> list[MirrorTask]:
        """Build and start every task, one after another.

        Args:
            cancel: Stops launching further tasks when set.

        Returns:
            The tasks that were started.
        """
        cancel = cancel or threading.Event()
        self.build_tasks()
        started = []
        for index, task in enumerate(self.tasks):
            if cancel.is_set():
                break
            task.start(self._popen)
            started.append(task)
            if index < len(self.tasks) - 1 and self.config.launch_delay_seconds > 0:
                cancel.wait(self.config.launch_delay_seconds)
        return started

    def poll_once(self, pool: ThreadPoolExecutor) -> dict[str, MirrorState]:
        """Poll every task concurrently and log one line per shard.

        Returns:
            Mapping of shard id -> state after this tick.
        """
        timeout = self.config.status_timeout
        futures = [(task, pool.submit(task.check_status, timeout)) for task in self.tasks]
        states = {}
        for task, future in futures:
            try:
                status = future.result()
                states[task.shard_id] = task.apply_status(status)
                if status is None:
                    continue
                level, line = format_status_line(task, status)
                logger.log(level, line)
            except Exception:
                # One bad tick for one shard must not end supervision.
                logger.exception("%s: status poll failed", task.shard_id)
                states[task.shard_id] = task.state
        return states

    def supervise(self, cancel: threading.Event) -> None:
        """Poll all tasks on a fixed interval until ``cancel`` is set."""
        if not self.tasks:
            logger.warning("No mirror tasks to supervise")
            return
        with ThreadPoolExecutor(max_workers=len(self.tasks),
                                thread_name_prefix="mirror-status") as pool:
            while not cancel.wait(self.config.status_poll_interval):
                self.poll_once(pool)
        logger.info("Supervision cancelled")

    def stop(self) -> None:
        for task in self.tasks:
            task.terminate()

    def run(self, cancel: threading.Event) -> None:
        """Launch all mirrors and supervise them until cancelled."""
        try:
            self.launch(cancel)
            self.supervise(cancel)
        finally:
            self.stop()
