"""
Tests for ResultStore persistence.

Tests cover:
- Row preparation and truncation with a visible marker
- Idempotent upsert statement (full overwrite, updated_at refresh)
- Single-transaction batch with row-by-row fallback on constraint errors
- Consecutive-error abort cap
- Reporting queries
"""

from unittest.mock import patch

import psycopg2
import pytest
from psycopg2.extras import Json

from conftest import success_result

from sales_intel.db.result_store import (
    COLUMNS,
    MAX_LENGTHS,
    TRUNCATION_MARKER,
    UPSERT_SQL,
    ResultStore,
    prepare_row,
    truncate_string,
)

EXECUTE_VALUES = "sales_intel.db.result_store.execute_values"


class TestTruncateString:

    def test_long_value_truncated_with_marker(self):
        value = truncate_string("x" * 300, 255)
        assert len(value) == 255
        assert value.endswith(TRUNCATION_MARKER)

    def test_value_at_limit_unchanged(self):
        assert truncate_string("x" * 20, 20) == "x" * 20

    def test_none_passthrough(self):
        assert truncate_string(None, 10) is None


class TestPrepareRow:

    def test_one_value_per_column_except_analysis_time(self):
        assert len(prepare_row(success_result("c1"))) == len(COLUMNS) - 1

    def test_overlong_strings_truncated_not_rejected(self):
        result = success_result("c1", customer_name="N" * 1000, sales_status="S" * 500)
        row = prepare_row(result)
        name = row[COLUMNS.index("customer_name") - 1]
        status = row[COLUMNS.index("sales_status") - 1]
        assert len(name) == MAX_LENGTHS["customer_name"]
        assert name.endswith(TRUNCATION_MARKER)
        assert len(status) == MAX_LENGTHS["sales_status"]

    def test_json_fields_are_structured(self):
        result = success_result("c1", specific_products=["iPad"], product_specifications={"gb": 64})
        row = prepare_row(result)
        products = row[COLUMNS.index("specific_products") - 1]
        specs = row[COLUMNS.index("product_specifications") - 1]
        assert isinstance(products, Json)
        assert products.adapted == ["iPad"]
        assert specs.adapted == {"gb": 64}

    def test_confidence_rounded_for_decimal_column(self):
        row = prepare_row(success_result("c1", analysis_confidence=0.876))
        assert row[COLUMNS.index("analysis_confidence") - 1] == 0.88


class TestUpsertStatement:

    def test_conflict_overwrites_every_field(self):
        assert 'ON CONFLICT ("remoteJid") DO UPDATE SET' in UPSERT_SQL
        for col in COLUMNS[1:]:
            assert f"{col} = EXCLUDED.{col}" in UPSERT_SQL
        assert "updated_at = NOW()" in UPSERT_SQL


class TestBulkUpsert:

    def test_empty_batch_touches_nothing(self, mock_db):
        outcome = ResultStore(mock_db).bulk_upsert([])
        assert outcome.succeeded == 0
        mock_db.connection.assert_not_called()

    def test_single_transaction_success(self, mock_db):
        results = [success_result("a"), success_result("b")]
        with patch(EXECUTE_VALUES) as execute_values:
            outcome = ResultStore(mock_db).bulk_upsert(results)

        execute_values.assert_called_once()
        assert len(execute_values.call_args.args[2]) == 2
        assert outcome.succeeded == 2
        assert outcome.failed == 0
        assert outcome.succeeded_ids == ["a", "b"]

    def test_same_batch_twice_sends_identical_rows(self, mock_db):
        results = [success_result("a", customer_name="Ana")]
        store = ResultStore(mock_db)
        with patch(EXECUTE_VALUES) as execute_values:
            store.bulk_upsert(results)
            store.bulk_upsert(results)

        def plain(row):
            return [v.adapted if isinstance(v, Json) else v for v in row]

        first, second = execute_values.call_args_list
        assert first.args[1] == second.args[1] == UPSERT_SQL
        assert plain(first.args[2][0]) == plain(second.args[2][0])

    def test_duplicate_ids_collapse_to_latest(self, mock_db):
        results = [success_result("a", customer_name="old"), success_result("a", customer_name="new")]
        with patch(EXECUTE_VALUES) as execute_values:
            outcome = ResultStore(mock_db).bulk_upsert(results)

        rows = execute_values.call_args.args[2]
        assert len(rows) == 1
        assert "new" in rows[0]
        assert outcome.succeeded == 1

    def test_constraint_error_falls_back_to_single_rows(self, mock_db):
        results = [success_result("a"), success_result("bad"), success_result("c")]

        def fake_execute_values(cur, sql, rows, **kwargs):
            if len(rows) > 1:
                raise psycopg2.IntegrityError("duplicate key")
            if rows[0][0] == "bad":
                raise psycopg2.DataError("value too long")

        with patch(EXECUTE_VALUES, side_effect=fake_execute_values):
            outcome = ResultStore(mock_db).bulk_upsert(results)

        assert outcome.succeeded == 2
        assert outcome.failed == 1
        assert outcome.succeeded_ids == ["a", "c"]
        assert [e.conversation_id for e in outcome.errors] == ["bad"]
        assert not outcome.aborted
        mock_db._conn.rollback.assert_called()
        assert mock_db._conn.commit.call_count == 2

    def test_consecutive_errors_abort_the_call(self, mock_db):
        results = [success_result(f"r{i}") for i in range(5)]

        with patch(EXECUTE_VALUES, side_effect=psycopg2.IntegrityError("bad")) as execute_values:
            outcome = ResultStore(mock_db, max_consecutive_errors=2).bulk_upsert(results)

        assert outcome.aborted
        assert outcome.succeeded == 0
        assert outcome.failed == 5
        assert len(outcome.errors) == 2
        assert execute_values.call_count == 1 + 2

    def test_success_resets_consecutive_counter(self, mock_db):
        results = [success_result(i) for i in ["bad1", "ok1", "bad2", "ok2"]]

        def fake_execute_values(cur, sql, rows, **kwargs):
            if len(rows) > 1 or rows[0][0].startswith("bad"):
                raise psycopg2.IntegrityError("bad")

        with patch(EXECUTE_VALUES, side_effect=fake_execute_values):
            outcome = ResultStore(mock_db, max_consecutive_errors=2).bulk_upsert(results)

        assert not outcome.aborted
        assert outcome.succeeded == 2
        assert outcome.failed == 2

    def test_database_unavailable_fails_whole_batch(self, mock_db):
        results = [success_result("a"), success_result("b")]
        with patch(EXECUTE_VALUES, side_effect=psycopg2.OperationalError("server closed")):
            outcome = ResultStore(mock_db).bulk_upsert(results)

        assert outcome.succeeded == 0
        assert outcome.failed == 2
        assert outcome.aborted
        # Systemic errors are not attributed to a row
        assert outcome.errors[0].conversation_id is None


class TestReporting:

    def test_analysis_stats(self, mock_db):
        mock_db._cursor.fetchall.return_value = [{"total_analyzed": 7, "avg_confidence": 0.71}]
        stats = ResultStore(mock_db).get_analysis_stats()
        assert stats["total_analyzed"] == 7

    def test_analysis_stats_empty(self, mock_db):
        mock_db._cursor.fetchall.return_value = []
        assert ResultStore(mock_db).get_analysis_stats() == {}

    def test_high_priority_leads_limit_is_parameterized(self, mock_db):
        mock_db._cursor.fetchall.return_value = [{"conversation_id": "a", "urgency_level": "High"}]
        leads = ResultStore(mock_db).get_high_priority_leads(limit=5)
        sql, params = mock_db._cursor.execute.call_args.args
        assert params == (5,)
        assert "LIMIT %s" in sql
        assert leads[0]["conversation_id"] == "a"

    def test_category_breakdown(self, mock_db):
        mock_db._cursor.fetchall.return_value = [{"product_category": "Phones", "count": 3, "percentage": 100}]
        assert ResultStore(mock_db).get_category_breakdown()[0]["count"] == 3

    def test_cleanup_uses_parameterized_interval(self, mock_db):
        mock_db._cursor.rowcount = 4
        deleted = ResultStore(mock_db).cleanup_old_analysis(days_to_keep=30)
        sql, params = mock_db._cursor.execute.call_args.args
        assert "make_interval(days => %s)" in sql
        assert params == (30,)
        assert deleted == 4


@pytest.mark.parametrize("name", sorted(MAX_LENGTHS))
def test_every_limited_column_exists(name):
    assert name in COLUMNS
