"""Namespace scoping for a shard-sync run.

A run may be restricted to a set of databases and/or fully-qualified
collection names.  Every component that iterates collections, chunks or
zone ranges asks :class:`NamespaceFilter` whether an item is in scope,
one item at a time.

Filter strings use the operator-facing syntax::

    mydb              -> every collection in database "mydb"
    mydb.users        -> just the "users" collection in "mydb"
"""

from dataclasses import dataclass, field


@dataclass(frozen=True, order=True)
class Namespace:
    """A ``(database, collection)`` pair.

    Attributes:
        database: Database name.
        collection: Collection name (may itself contain dots).
    """

    database: str
    collection: str

    @classmethod
    def parse(cls, ns: str) -> "Namespace":
        """Split ``"db.coll"`` on the first dot.

        Args:
            ns: Fully-qualified namespace string.

        Returns:
            Namespace instance.

        Raises:
            ValueError: If ``ns`` has no dot separator.
        """
        database, sep, collection = ns.partition(".")
        if not sep:
            raise ValueError(f"Not a fully-qualified namespace: {ns!r}")
        return cls(database, collection)

    def __str__(self) -> str:
        return f"{self.database}.{self.collection}"


@dataclass(frozen=True)
class NamespaceFilter:
    """Include-list of namespaces and databases.

    With no entries configured every namespace is in scope.  Otherwise a
    namespace is in scope iff it is listed explicitly, or its database is.

    Attributes:
        namespaces: Explicitly included collections.
        databases: Explicitly included databases.
    """

    namespaces: frozenset[Namespace] = field(default_factory=frozenset)
    databases: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_strings(cls, filters: list[str] | tuple[str, ...] | None) -> "NamespaceFilter":
        """Build a filter from operator-supplied ``db`` / ``db.coll`` strings.

        Args:
            filters: Filter strings; ``None`` or empty means unfiltered.

        Returns:
            NamespaceFilter instance.
        """
        namespaces = set()
        databases = set()
        for raw in filters or ():
            raw = raw.strip()
            if not raw:
                continue
            if "." in raw:
                namespaces.add(Namespace.parse(raw))
            else:
                databases.add(raw)
        return cls(frozenset(namespaces), frozenset(databases))

    @property
    def filtered(self) -> bool:
        return bool(self.namespaces or self.databases)

    def included(self, ns: Namespace | str) -> bool:
        """Return True if ``ns`` is in scope for this run."""
        if not self.filtered:
            return True
        if isinstance(ns, str):
            ns = Namespace.parse(ns)
        return ns in self.namespaces or ns.database in self.databases

    def database_included(self, database: str) -> bool:
        """Return True if any part of ``database`` is in scope.

        A database is touched by the run when it is listed itself or when
        one of its collections is listed.  Used for database-level work
        (enable sharding, primary placement, drops).
        """
        if not self.filtered:
            return True
        if database in self.databases:
            return True
        return any(ns.database == database for ns in self.namespaces)
