"""
PostgreSQL-backed document store.

Each collection is a table of (key TEXT PRIMARY KEY, document JSONB,
updated_at TIMESTAMPTZ). Writes are INSERT ... ON CONFLICT (key) DO UPDATE,
so applying the same document twice leaves the same end state. Collections
with a MergeRule resolve conflicts by that rule instead of overwriting.
"""

import threading
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, execute_values

from poc_etl.config import Config
from poc_etl.domain import MergeRule
from poc_etl.errors import LoadError
from poc_etl.utils.logging_utils import log_progress


def get_db_connection(details: Optional[Dict[str, Any]] = None):
    """Open a connection using the configured connection details."""
    details = details or Config.get_db_connection_details()
    return psycopg2.connect(
        host=details["host"],
        port=details["port"],
        dbname=details["database"],
        user=details["user"],
        password=details["password"],
        connect_timeout=30,
    )


def merged_document_sql(table: sql.Identifier, rule: Optional[MergeRule]) -> sql.Composable:
    """
    Right-hand side of `SET document = ...` for an ON CONFLICT update.

    Mirrors MergeRule.merge: the row with the larger order field is kept
    (ties go to EXCLUDED) and union fields become the sorted distinct union
    of both sides.
    """
    if rule is None:
        return sql.SQL("EXCLUDED.document")

    order = sql.Literal(rule.order_field)
    merged = sql.SQL(
        "CASE WHEN COALESCE((EXCLUDED.document->>{order})::numeric, 0)"
        " >= COALESCE(({table}.document->>{order})::numeric, 0)"
        " THEN EXCLUDED.document ELSE {table}.document END"
    ).format(order=order, table=table)
    for name in rule.union_fields:
        field = sql.Literal(name)
        merged = sql.SQL(
            "({merged} || jsonb_build_object({field}, ("
            "SELECT COALESCE(jsonb_agg(DISTINCT v ORDER BY v), '[]'::jsonb)"
            " FROM jsonb_array_elements("
            "COALESCE({table}.document->{field}, '[]'::jsonb)"
            " || COALESCE(EXCLUDED.document->{field}, '[]'::jsonb)) AS v)))"
        ).format(merged=merged, field=field, table=table)
    return merged


class DocumentStore:
    """Idempotent upserts of JSON documents keyed by natural key."""

    def __init__(self, connection=None, page_size: int = 500):
        self._connection = connection
        self._page_size = page_size
        self._known_collections: set[str] = set()
        self._lock = threading.Lock()

    @property
    def connection(self):
        if self._connection is None or self._connection.closed:
            try:
                self._connection = get_db_connection()
            except psycopg2.Error as e:
                raise LoadError(f"Failed to connect to document store: {e}") from e
        return self._connection

    def close(self) -> None:
        if self._connection is not None and not self._connection.closed:
            self._connection.close()
        self._connection = None

    def ensure_collection(self, collection: str) -> None:
        """Create the collection table if it does not exist yet."""
        if collection in self._known_collections:
            return
        conn = self.connection
        with conn.cursor() as cursor:
            cursor.execute(
                sql.SQL(
                    """
                    CREATE TABLE IF NOT EXISTS {} (
                        key        TEXT PRIMARY KEY,
                        document   JSONB NOT NULL,
                        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                    )
                    """
                ).format(sql.Identifier(collection))
            )
        conn.commit()
        self._known_collections.add(collection)
        log_progress("Document Store", f"Collection {collection} ready")

    def upsert(
        self,
        collection: str,
        key: str,
        document: Mapping[str, Any],
        rule: Optional[MergeRule] = None,
    ) -> None:
        self.upsert_many(collection, [(key, document)], rule)

    def upsert_many(
        self,
        collection: str,
        documents: Iterable[Tuple[str, Mapping[str, Any]]],
        rule: Optional[MergeRule] = None,
    ) -> int:
        """
        Upsert documents in one transaction.

        Duplicate keys are collapsed first because a single ON CONFLICT DO
        UPDATE statement may not touch the same row twice. Without a rule the
        last document wins outright; with one, documents are combined with
        rule.merge here and with the equivalent SQL against the stored row.

        Returns:
            Number of distinct keys written

        Raises:
            LoadError: If the write fails; the transaction is rolled back
        """
        unique: Dict[str, Mapping[str, Any]] = {}
        for key, document in documents:
            if rule is not None and key in unique:
                unique[key] = rule.merge(unique[key], document)
            else:
                unique[key] = document
        if not unique:
            return 0

        table = sql.Identifier(collection)
        with self._lock:
            conn = self.connection
            try:
                self.ensure_collection(collection)
                with conn.cursor() as cursor:
                    execute_values(
                        cursor,
                        sql.SQL(
                            """
                            INSERT INTO {table} (key, document)
                            VALUES %s
                            ON CONFLICT (key) DO UPDATE
                            SET document = {document}, updated_at = now()
                            """
                        ).format(table=table, document=merged_document_sql(table, rule)),
                        [(key, Json(dict(doc))) for key, doc in unique.items()],
                        page_size=self._page_size,
                    )
                conn.commit()
            except psycopg2.Error as e:
                if not conn.closed:
                    conn.rollback()
                raise LoadError(f"Failed to upsert into {collection}: {e}") from e
        return len(unique)
