"""
tests/test_namespace_filter.py
------------------------------
Unit tests for namespace_filter.py.
Run with: python -m pytest tests/
"""

import pytest

from namespace_filter import Namespace, NamespaceFilter

SAMPLE = ["db1.coll", "db1.other", "db2.coll", "db2.sub.coll", "config.chunks"]


# ---------------------------------------------------------------------------
# Namespace
# ---------------------------------------------------------------------------

class TestNamespace:
    def test_parse_splits_on_first_dot(self) -> None:
        ns = Namespace.parse("db2.sub.coll")
        assert ns.database == "db2"
        assert ns.collection == "sub.coll"

    def test_str_round_trips(self) -> None:
        assert str(Namespace.parse("db1.coll")) == "db1.coll"

    def test_parse_without_dot_raises(self) -> None:
        with pytest.raises(ValueError):
            Namespace.parse("db1")

    def test_hashable_and_ordered(self) -> None:
        assert {Namespace("a", "b"), Namespace("a", "b")} == {Namespace("a", "b")}
        assert Namespace("a", "b") < Namespace("a", "c") < Namespace("b", "a")


# ---------------------------------------------------------------------------
# NamespaceFilter.included
# ---------------------------------------------------------------------------

class TestIncluded:
    def test_no_filters_includes_everything(self) -> None:
        ns_filter = NamespaceFilter.from_strings([])
        assert not ns_filter.filtered
        assert all(ns_filter.included(ns) for ns in SAMPLE)

    def test_none_means_unfiltered(self) -> None:
        assert NamespaceFilter.from_strings(None).included("any.thing")

    def test_database_filter(self) -> None:
        ns_filter = NamespaceFilter.from_strings(["db1"])
        included = [ns for ns in SAMPLE if ns_filter.included(ns)]
        assert included == ["db1.coll", "db1.other"]

    def test_namespace_filter(self) -> None:
        ns_filter = NamespaceFilter.from_strings(["db2.sub.coll"])
        included = [ns for ns in SAMPLE if ns_filter.included(ns)]
        assert included == ["db2.sub.coll"]

    def test_mixed_filters(self) -> None:
        ns_filter = NamespaceFilter.from_strings(["db1", "db2.coll"])
        assert ns_filter.included("db1.other")
        assert ns_filter.included(Namespace("db2", "coll"))
        assert not ns_filter.included("db2.sub.coll")

    def test_blank_entries_ignored(self) -> None:
        ns_filter = NamespaceFilter.from_strings(["", "  "])
        assert not ns_filter.filtered


# ---------------------------------------------------------------------------
# NamespaceFilter.database_included
# ---------------------------------------------------------------------------

class TestDatabaseIncluded:
    def test_unfiltered(self) -> None:
        assert NamespaceFilter.from_strings([]).database_included("anything")

    def test_listed_database(self) -> None:
        assert NamespaceFilter.from_strings(["db1"]).database_included("db1")

    def test_database_of_listed_namespace(self) -> None:
        ns_filter = NamespaceFilter.from_strings(["db2.coll"])
        assert ns_filter.database_included("db2")
        assert not ns_filter.database_included("db1")
