"""
Unit tests for the loader and the PostgreSQL document store.
"""

from unittest.mock import MagicMock, patch

import psycopg2
import pytest
from psycopg2 import sql

from poc_etl.domain import MergeRule, Record
from poc_etl.errors import LoadError
from poc_etl.load.document_store import DocumentStore, merged_document_sql
from poc_etl.load.loader import Loader
from poc_etl.tests.conftest import T0, descriptor
from poc_etl.transform.poc_reports import (
    BEACON_COLLECTION,
    FILES_COLLECTION,
    HOTSPOT_COLLECTION,
    MERGE_RULES,
)

HOTSPOT_RULE = MERGE_RULES[HOTSPOT_COLLECTION]


class TestLoader:
    """Test batching and idempotency of the loader."""

    def test_records_are_batched_per_collection(self, document_store):
        """Test records are grouped by collection and split into batches."""
        records = [Record("hotspots", f"hs-{i}", {"i": i}) for i in range(5)]
        records.append(Record("beacons", "poc-1", {"poc_id": "poc-1"}))

        Loader(document_store, batch_size=2).load_records(records)

        assert document_store.calls == [
            ("hotspots", ["hs-0", "hs-1"]),
            ("hotspots", ["hs-2", "hs-3"]),
            ("hotspots", ["hs-4"]),
            ("beacons", ["poc-1"]),
        ]

    def test_load_file_writes_ledger_last(self, document_store):
        """Test the files ledger document follows the file's records."""
        file = descriptor(T0)
        records = [Record("beacons", "poc-1", {"poc_id": "poc-1"})]

        count = Loader(document_store, batch_size=10).load_file(file, records)

        assert count == 1
        assert document_store.calls[-1] == (FILES_COLLECTION, [file.key])
        assert document_store.collections[FILES_COLLECTION][file.key]["done"] is True

    def test_loading_twice_converges(self, document_store):
        """Test replaying the same records leaves the same end state."""
        loader = Loader(document_store, batch_size=2)
        records = [Record("hotspots", f"hs-{i}", {"i": i}) for i in range(3)]

        loader.load_records(records)
        first = {c: dict(docs) for c, docs in document_store.collections.items()}
        loader.load_records(records)

        assert document_store.collections == first

    def test_failure_raises_load_error(self, document_store):
        """Test a store failure surfaces as LoadError and skips the ledger."""
        document_store.fail_collections.add("beacons")
        file = descriptor(T0)

        with pytest.raises(LoadError):
            Loader(document_store, batch_size=10).load_file(
                file, [Record("beacons", "poc-1", {})]
            )

        assert FILES_COLLECTION not in document_store.collections

    def test_unexpected_error_is_wrapped(self):
        """Test non-LoadError failures are wrapped in LoadError."""
        store = MagicMock()
        store.upsert_many.side_effect = RuntimeError("socket closed")

        with pytest.raises(LoadError) as exc_info:
            Loader(store, batch_size=1).load(Record("beacons", "poc-1", {}))

        assert "socket closed" in str(exc_info.value)

    def test_merge_rule_passed_per_collection(self):
        """Test hotspots are written with their merge rule and beacons without one."""
        store = MagicMock()
        loader = Loader(store, batch_size=10)

        loader.load(Record(HOTSPOT_COLLECTION, "hs-1", {"last_seen_unix": 1}))
        assert store.upsert_many.call_args[0][2] is HOTSPOT_RULE

        loader.load(Record(BEACON_COLLECTION, "poc-1", {}))
        assert store.upsert_many.call_args[0][2] is None

    def test_batch_size_must_be_positive(self, document_store):
        """Test a zero batch size is rejected."""
        with pytest.raises(ValueError):
            Loader(document_store, batch_size=0)


class TestDocumentStore:
    """Test the PostgreSQL upsert statements."""

    def _connection(self):
        conn = MagicMock()
        conn.closed = 0
        return conn

    @patch("poc_etl.load.document_store.execute_values")
    def test_upsert_many_deduplicates_keys(self, mock_execute_values):
        """Test duplicate keys collapse so one statement never hits a row twice."""
        conn = self._connection()
        store = DocumentStore(connection=conn)

        written = store.upsert_many("hotspots", [("hs-1", {"v": 1}), ("hs-1", {"v": 2})])

        assert written == 1
        rows = mock_execute_values.call_args[0][2]
        assert len(rows) == 1
        assert rows[0][0] == "hs-1"
        assert rows[0][1].adapted == {"v": 2}
        conn.commit.assert_called()

    @patch("poc_etl.load.document_store.execute_values")
    def test_collection_is_created_once(self, mock_execute_values):
        """Test the collection table is only created on first use."""
        conn = self._connection()
        store = DocumentStore(connection=conn)

        store.upsert("beacons", "poc-1", {})
        store.upsert("beacons", "poc-2", {})

        cursor = conn.cursor.return_value.__enter__.return_value
        assert cursor.execute.call_count == 1
        assert mock_execute_values.call_count == 2

    @patch("poc_etl.load.document_store.execute_values")
    def test_database_error_rolls_back(self, mock_execute_values):
        """Test a failed upsert rolls back and raises LoadError."""
        conn = self._connection()
        mock_execute_values.side_effect = psycopg2.OperationalError("server closed the connection")
        store = DocumentStore(connection=conn)

        with pytest.raises(LoadError):
            store.upsert("beacons", "poc-1", {})

        conn.rollback.assert_called_once()

    def test_empty_upsert_is_noop(self):
        """Test nothing is written for an empty batch."""
        conn = self._connection()
        assert DocumentStore(connection=conn).upsert_many("beacons", []) == 0
        conn.cursor.assert_not_called()

    @patch("poc_etl.load.document_store.execute_values")
    def test_upsert_many_merges_keys_with_rule(self, mock_execute_values):
        """Test duplicate keys in one batch are merged by the collection's rule."""
        store = DocumentStore(connection=self._connection())

        store.upsert_many(
            HOTSPOT_COLLECTION,
            [
                ("hs-1", {"last_seen_unix": 20, "gain": 9, "poc_ids": ["poc-b"]}),
                ("hs-1", {"last_seen_unix": 10, "gain": 1, "poc_ids": ["poc-a"]}),
            ],
            HOTSPOT_RULE,
        )

        rows = mock_execute_values.call_args[0][2]
        assert rows[0][1].adapted == {"last_seen_unix": 20, "gain": 9, "poc_ids": ["poc-a", "poc-b"]}

    def test_merged_document_sql(self):
        """Test the conflict update keeps the newer row and unions poc_ids."""
        table = sql.Identifier(HOTSPOT_COLLECTION)

        plain = repr(merged_document_sql(table, None))
        merged = repr(merged_document_sql(table, HOTSPOT_RULE))

        assert "EXCLUDED.document" in plain
        assert "Literal('last_seen_unix')" in merged
        assert "Literal('poc_ids')" in merged
        assert "jsonb_agg(DISTINCT v ORDER BY v)" in merged


class TestMergeRule:
    """Test how two documents with the same key are combined."""

    def test_newer_document_wins_in_either_order(self):
        old = {"last_seen_unix": 10, "gain": 1, "poc_ids": ["poc-a"]}
        new = {"last_seen_unix": 20, "gain": 9, "poc_ids": ["poc-b"]}

        assert HOTSPOT_RULE.merge(old, new) == HOTSPOT_RULE.merge(new, old)
        assert HOTSPOT_RULE.merge(new, old)["gain"] == 9

    def test_union_fields_are_distinct_and_sorted(self):
        merged = HOTSPOT_RULE.merge(
            {"last_seen_unix": 1, "poc_ids": ["poc-c", "poc-a"]},
            {"last_seen_unix": 1, "poc_ids": ["poc-a", "poc-b"]},
        )
        assert merged["poc_ids"] == ["poc-a", "poc-b", "poc-c"]

    def test_tie_goes_to_incoming(self):
        rule = MergeRule("seen")
        assert rule.merge({"seen": 5, "v": "old"}, {"seen": 5, "v": "new"})["v"] == "new"

    def test_missing_order_field_counts_as_oldest(self):
        rule = MergeRule("seen")
        assert rule.merge({"seen": 5, "v": "kept"}, {"v": "incoming"})["v"] == "kept"
