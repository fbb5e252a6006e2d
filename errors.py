"""Exception types shared across the shard-sync modules."""


class ShardSyncError(Exception):
    """Base class for all shard-sync errors."""


class ConfigError(ShardSyncError):
    """Invalid run configuration; fatal before any cluster is modified."""


class UnmappedShardError(ConfigError):
    """A source shard has no destination shard in the ShardMap."""

    def __init__(self, shard_id: str):
        super().__init__(
            f"No destination shard mapping found for source shard: {shard_id}"
        )
        self.shard_id = shard_id


class CommandError(ShardSyncError):
    """An administrative command was rejected by the cluster.

    Attributes:
        code: Server error code (0 when unknown).
        message: Server error message.
    """

    def __init__(self, code: int, message: str):
        super().__init__(f"[{code}] {message}")
        self.code = code
        self.message = message
