"""Balancer and autosplit control for both clusters.

Chunk metadata written by shard-sync must not race the balancer, so both
balancers are stopped before any metadata is replicated.  The source is
best effort (the operator may not control it fully); the destination is
mandatory.
"""

import logging

from errors import CommandError

logger = logging.getLogger(__name__)


def stop_balancers(source, dest) -> None:
    """Stop the balancer on both clusters.

    Args:
        source: Source ClusterClient.
        dest: Destination ClusterClient.

    Raises:
        CommandError: If the destination balancer cannot be stopped.
    """
    logger.debug("stopBalancers started")
    try:
        source.stop_balancer()
    except CommandError as exc:
        logger.error("Could not stop balancer on source shard: %s", exc.message)

    dest.stop_balancer()
    logger.debug("stopBalancers complete")


def disable_source_autosplit(source) -> None:
    """Turn off automatic chunk splitting on the source cluster."""
    logger.info("Disabling autosplit on %s", source.name)
    source.set_autosplit(False)
