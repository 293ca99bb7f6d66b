"""
Query Tests
===========

Tests for filter matching and in-memory query evaluation.

Version: 0.1.0
"""

from datetime import UTC, datetime

import pytest

from shared.backend import DatabaseError, FilterOperator, OrderBy, QueryFilter, QueryOptions
from shared.backend.query import apply_query, matches, normalize_filters, validate_identifier


ROWS = [
    {"id": "a", "name": "alice", "score": 72, "created_at": "2024-03-01T09:00:00+00:00"},
    {"id": "b", "name": "bob", "score": 45, "created_at": "2024-03-02T09:00:00+00:00"},
    {"id": "c", "name": "carol", "score": None, "created_at": "2024-03-03T09:00:00+00:00"},
    {"id": "d", "name": "dave", "score": 90, "created_at": "2024-03-04T09:00:00+00:00"},
]


class TestNormalizeFilters:
    """Tests for filter normalization."""

    def test_plain_values_become_equality(self):
        filters = normalize_filters({"user_id": "u1"})
        assert filters["user_id"].operator == FilterOperator.EQ
        assert filters["user_id"].value == "u1"

    def test_query_filter_kept(self):
        flt = QueryFilter(operator="gt", value=5)
        assert normalize_filters({"score": flt})["score"] is flt

    def test_operator_dicts_parsed(self):
        filters = normalize_filters({"status": {"operator": "in", "value": ["a", "b"]}})
        assert filters["status"].operator == FilterOperator.IN

    def test_empty(self):
        assert normalize_filters(None) == {}

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValueError):
            normalize_filters({"score": {"operator": "between", "value": [1, 2]}})


class TestValidateIdentifier:
    """Tests for identifier validation."""

    @pytest.mark.parametrize("name", ["profiles", "user_roles", "_private", "t2"])
    def test_valid(self, name):
        assert validate_identifier(name) == name

    @pytest.mark.parametrize("name", ["", "2fast", "profiles; drop table x", "a-b", "a.b"])
    def test_invalid(self, name):
        with pytest.raises(DatabaseError):
            validate_identifier(name, "table")


class TestMatches:
    """Tests for single-row predicate evaluation."""

    def test_eq_and_neq(self):
        row = ROWS[0]
        assert matches(row, normalize_filters({"name": "alice"}))
        assert not matches(row, {"name": QueryFilter(operator="neq", value="alice")})

    def test_comparisons(self):
        row = ROWS[0]
        assert matches(row, {"score": QueryFilter(operator="gt", value=70)})
        assert matches(row, {"score": QueryFilter(operator="lte", value=72)})
        assert not matches(row, {"score": QueryFilter(operator="lt", value=72)})

    def test_comparison_with_null_never_matches(self):
        assert not matches(ROWS[2], {"score": QueryFilter(operator="gte", value=0)})

    def test_in(self):
        flt = {"id": QueryFilter(operator="in", value=["a", "d"])}
        assert [r["id"] for r in ROWS if matches(r, flt)] == ["a", "d"]

    def test_like(self):
        flt = {"name": QueryFilter(operator="like", value="%a%")}
        assert [r["id"] for r in ROWS if matches(r, flt)] == ["a", "c", "d"]

    def test_datetime_compares_with_iso_string(self):
        cutoff = datetime(2024, 3, 2, 12, 0, tzinfo=UTC)
        flt = {"created_at": QueryFilter(operator="gt", value=cutoff)}
        assert [r["id"] for r in ROWS if matches(r, flt)] == ["c", "d"]

    def test_mismatched_types_do_not_match(self):
        assert not matches(ROWS[0], {"score": QueryFilter(operator="gt", value="high")})


class TestApplyQuery:
    """Tests for filtering, ordering and paging."""

    def test_order_descending_puts_nulls_first(self):
        result = apply_query(ROWS, QueryOptions(order_by=[OrderBy(column="score", ascending=False)]))
        assert [r["id"] for r in result.data] == ["c", "d", "a", "b"]

    def test_order_ascending_puts_nulls_last(self):
        result = apply_query(ROWS, QueryOptions(order_by=[OrderBy(column="score")]))
        assert [r["id"] for r in result.data] == ["b", "a", "d", "c"]

    def test_limit_offset_keep_total_count(self):
        options = QueryOptions(order_by=[OrderBy(column="id")], limit=2, offset=1)
        result = apply_query(ROWS, options)
        assert [r["id"] for r in result.data] == ["b", "c"]
        assert result.count == 4

    def test_columns_projection(self):
        result = apply_query(ROWS, QueryOptions(columns=["id"], limit=1))
        assert result.data == [{"id": "a"}]

    def test_first(self):
        assert apply_query(ROWS, QueryOptions.where(name="bob")).first()["id"] == "b"
        assert apply_query(ROWS, QueryOptions.where(name="zed")).first() is None

    def test_rows_are_copies(self):
        result = apply_query(ROWS, QueryOptions.where(id="a"))
        result.data[0]["name"] = "changed"
        assert ROWS[0]["name"] == "alice"
