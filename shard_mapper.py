"""Source-to-destination shard mapping.

Two ways to build a :class:`ShardMap`:

    Default 1:1      -- the i-th source shard pairs with the i-th
                        destination shard, both in listing order.  Extra
                        source shards stay unmapped.
    Explicit n:m     -- operator-supplied ``"sourceId|destId"`` entries,
                        e.g. ten source shards folded onto five.

The map is built once per run and never mutated afterwards.  Looking up a
source shard that has no destination raises :class:`UnmappedShardError`;
callers must not skip such items, since that would silently drop data.
"""

import logging
from collections.abc import Iterator, Mapping
from types import MappingProxyType

from errors import ConfigError, UnmappedShardError

logger = logging.getLogger(__name__)

MAPPING_SEPARATOR = "|"


class ShardMap(Mapping):
    """Immutable mapping of source shard id -> destination shard id."""

    def __init__(self, pairs: Mapping[str, str]):
        self._pairs = MappingProxyType(dict(pairs))

    def __getitem__(self, source_id: str) -> str:
        return self._pairs[source_id]

    def __iter__(self) -> Iterator[str]:
        return iter(self._pairs)

    def __len__(self) -> int:
        return len(self._pairs)

    def __repr__(self) -> str:
        return f"ShardMap({dict(self._pairs)!r})"

    def lookup(self, source_id: str) -> str:
        """Return the destination shard for ``source_id``.

        Raises:
            UnmappedShardError: If the source shard has no mapping.
        """
        try:
            return self._pairs[source_id]
        except KeyError:
            raise UnmappedShardError(source_id) from None


def parse_mapping_entries(entries: list[str] | tuple[str, ...]) -> dict[str, str]:
    """Parse ``"sourceId|destId"`` strings into a dict.

    Args:
        entries: Raw mapping strings.

    Returns:
        Ordered dict of source id -> destination id.

    Raises:
        ConfigError: On a malformed entry or a repeated source id.
    """
    pairs: dict[str, str] = {}
    for entry in entries:
        source_id, sep, dest_id = entry.strip().partition(MAPPING_SEPARATOR)
        source_id, dest_id = source_id.strip(), dest_id.strip()
        if not sep or not source_id or not dest_id or MAPPING_SEPARATOR in dest_id:
            raise ConfigError(
                f"Invalid shard mapping {entry!r}, expected 'sourceShard|destShard'"
            )
        if source_id in pairs:
            raise ConfigError(
                f"Duplicate shard mapping for source shard {source_id!r}: "
                f"{pairs[source_id]!r} and {dest_id!r}"
            )
        pairs[source_id] = dest_id
    return pairs


def build_shard_map(
    source_shards: list,
    dest_shards: list,
    explicit_entries: list[str] | tuple[str, ...] | None = None,
) -> ShardMap:
    """Compute the shard mapping for a run.

    Args:
        source_shards: Source :class:`cluster_client.Shard` list, in listing order.
        dest_shards: Destination shard list, in listing order.
        explicit_entries: Optional ``"src|dst"`` entries; when given they are
            the whole mapping and the default pairing is not used.

    Returns:
        ShardMap instance.

    Raises:
        ConfigError: If explicit entries are malformed or repeat a source id.
    """
    if explicit_entries:
        logger.debug("Custom n:m shard mapping")
        pairs = parse_mapping_entries(explicit_entries)
        source_ids = {s.id for s in source_shards}
        dest_ids = {s.id for s in dest_shards}
        for source_id, dest_id in pairs.items():
            logger.debug("%s ==> %s", source_id, dest_id)
            if source_id not in source_ids:
                logger.warning("Mapped source shard %s is not in the source topology", source_id)
            if dest_id not in dest_ids:
                logger.warning("Mapped destination shard %s is not in the destination topology", dest_id)
        return ShardMap(pairs)

    logger.debug("Default 1:1 shard mapping, source shard count: %s", len(source_shards))
    pairs = {}
    for source, dest in zip(source_shards, dest_shards):
        logger.debug("%s ==> %s", source.id, dest.id)
        pairs[source.id] = dest.id
    for source in source_shards[len(dest_shards):]:
        logger.warning(
            "Source shard %s has no destination counterpart and is unmapped", source.id
        )
    return ShardMap(pairs)
