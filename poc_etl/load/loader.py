"""
Loader: turns records into batched upserts against the document store.
"""

from collections import defaultdict
from typing import Dict, List, Sequence

from poc_etl.domain import FileDescriptor, Record
from poc_etl.errors import LoadError
from poc_etl.load.document_store import DocumentStore
from poc_etl.transform.poc_reports import MERGE_RULES, file_record
from poc_etl.utils.logging_utils import log_progress


class Loader:
    """
    Idempotent loader.

    Every batch is keyed by natural key and committed on its own, so a batch
    that fails halfway and is retried in full converges to the same state.
    Collections with a merge rule also converge whatever order files load in.
    """

    def __init__(self, document_store: DocumentStore, batch_size: int):
        if batch_size <= 0:
            raise ValueError("batch_size must be greater than zero")
        self.document_store = document_store
        self.batch_size = batch_size

    def load(self, record: Record) -> None:
        """Upsert a single record."""
        self._upsert(record.collection, [record])

    def load_records(self, records: Sequence[Record]) -> int:
        """
        Upsert records grouped by collection, batch_size at a time.

        Returns:
            Number of records handed to the store
        """
        by_collection: Dict[str, List[Record]] = defaultdict(list)
        for record in records:
            by_collection[record.collection].append(record)

        for collection, items in by_collection.items():
            for i in range(0, len(items), self.batch_size):
                self._upsert(collection, items[i : i + self.batch_size])
        return len(records)

    def load_file(self, file: FileDescriptor, records: Sequence[Record]) -> int:
        """
        Load a file's records, then its ledger document.

        The ledger document is written last so it only exists once every
        record of the file is in the store.

        Raises:
            LoadError: If any batch fails
        """
        count = self.load_records(records)
        self.load(file_record(file))
        log_progress(f"Loader - {file.key}", f"Loaded {count} records")
        return count

    def _upsert(self, collection: str, records: Sequence[Record]) -> None:
        try:
            self.document_store.upsert_many(
                collection,
                [(r.key, r.document) for r in records],
                MERGE_RULES.get(collection),
            )
        except LoadError:
            raise
        except Exception as e:
            raise LoadError(f"Failed to load {len(records)} records into {collection}: {e}") from e
