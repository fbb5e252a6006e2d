"""cleanup-orphans run mode.

Runs ``cleanupOrphaned`` directly on every shard for every in-scope
sharded collection, resuming from the ``stoppedAtKey`` the shard returns
until the whole key space has been swept.
"""

import logging
import time

from bson.son import SON

from errors import CommandError
from namespace_filter import Namespace

logger = logging.getLogger(__name__)


def cleanup_orphans(cluster, ns_filter, sleep_seconds: float = 0.0, sleep=time.sleep) -> int:
    """Remove orphaned documents from every shard of ``cluster``.

    Args:
        cluster: ClusterClient to clean (source or destination).
        ns_filter: NamespaceFilter of the run.
        sleep_seconds: Pause between cleanupOrphaned rounds on a shard.
        sleep: Sleep function.

    Returns:
        Number of cleanupOrphaned commands that succeeded.
    """
    logger.info("cleanupOrphans() on %s", cluster.name)
    rounds = 0
    shards = cluster.list_shards()
    for doc in cluster.list_collections():
        ns = Namespace.parse(doc["_id"])
        if ns.database == "config" or not ns_filter.included(ns):
            continue
        for shard in shards:
            next_key = {}
            while next_key is not None:
                command = SON([("cleanupOrphaned", str(ns)), ("startingFromKey", next_key)])
                try:
                    result = cluster.run_shard_command(shard.id, command)
                except CommandError as exc:
                    logger.error("cleanupOrphaned failed for %s on %s: %s", ns, shard.id, exc)
                    break
                rounds += 1
                next_key = result.get("stoppedAtKey")
                if next_key is not None and sleep_seconds > 0:
                    sleep(sleep_seconds)
            logger.debug("%s: orphans cleaned on %s", ns, shard.id)
    logger.info("cleanupOrphans() on %s complete, %s round(s)", cluster.name, rounds)
    return rounds
