"""
Shared fixtures and in-memory stand-ins for S3, the checkpoint backend and
the document store.
"""

import gzip
import json
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import h3
import pytest

from poc_etl.domain import FileDescriptor, to_millis
from poc_etl.engine import IngestEngine
from poc_etl.errors import CheckpointError, FetchError, LoadError
from poc_etl.extract.file_index import FileIndex
from poc_etl.extract.object_store import ObjectInfo
from poc_etl.extract.pipeline import FetchTransformPipeline
from poc_etl.load.loader import Loader
from poc_etl.utils.state import CheckpointStore

T0 = datetime(2023, 4, 1, 12, 0, 0, tzinfo=timezone.utc)
NOW = datetime(2023, 4, 2, 0, 0, 0, tzinfo=timezone.utc)
BEACON_CELL = h3.latlng_to_cell(37.769377, -122.388903, 12)


def poc_key(ts: datetime, prefix: str = "iot_poc") -> str:
    return f"{prefix}.{to_millis(ts)}.gz"


def make_report(
    poc_id: str,
    beacon: str = "beacon-hs",
    witnesses=("witness-hs",),
    received: datetime = T0,
) -> dict:
    return {
        "poc_id": poc_id,
        "beacon_report": {
            "pub_key": beacon,
            "received_timestamp": to_millis(received),
            "location": BEACON_CELL,
            "latitude": 37.7694,
            "longitude": -122.3889,
            "gain": 12,
            "elevation": 5,
            "frequency": 904100000,
            "channel": 2,
            "tx_power": 27,
        },
        "selected_witnesses": [
            {
                "pub_key": w,
                "received_timestamp": to_millis(received) + 250,
                "latitude": 37.7749,
                "longitude": -122.4194,
                "signal": -98,
                "snr": 7,
                "status": "valid",
            }
            for w in witnesses
        ],
        "unselected_witnesses": [],
    }


def make_file_bytes(reports: List[dict]) -> bytes:
    return gzip.compress("\n".join(json.dumps(r) for r in reports).encode("utf-8"))


class FakeObjectStore:
    """In-memory bucket. Listing order is deliberately reversed."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.fail_keys: set[str] = set()
        self.delays: Dict[str, float] = {}
        self.list_error: Optional[Exception] = None
        self.gets: List[str] = []
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes) -> None:
        self.objects[key] = data

    def put_poc_file(self, ts: datetime, poc_id: Optional[str] = None) -> str:
        key = poc_key(ts)
        self.put(key, make_file_bytes([make_report(poc_id or f"poc-{to_millis(ts)}", received=ts)]))
        return key

    def list(self, prefix: str, start_after: Optional[str] = None):
        if self.list_error is not None:
            raise self.list_error
        keys = sorted(
            k for k in self.objects if k.startswith(prefix) and (not start_after or k > start_after)
        )
        return [ObjectInfo(key=k, size=len(self.objects[k])) for k in reversed(keys)]

    def get(self, key: str) -> bytes:
        with self._lock:
            self.gets.append(key)
        time.sleep(self.delays.get(key, 0))
        if key in self.fail_keys:
            raise FetchError(f"{key}: simulated read failure")
        return self.objects[key]


class InMemoryCheckpointBackend:
    def __init__(self):
        self.values: Dict[str, str] = {}
        self.sets: Dict[str, Dict[str, float]] = {}
        self.unreachable = False

    def _check(self):
        if self.unreachable:
            raise CheckpointError("checkpoint backend unreachable")

    def get(self, key):
        self._check()
        return self.values.get(key)

    def set(self, key, value):
        self._check()
        self.values[key] = value

    def get_set(self, key):
        self._check()
        return dict(self.sets.get(key, {}))

    def add_to_bounded_set(self, key, member, score, min_score):
        self._check()
        members = self.sets.setdefault(key, {})
        members[member] = score
        self.sets[key] = {m: s for m, s in members.items() if s >= min_score}

    def trim_set(self, key, min_score):
        self._check()
        self.sets[key] = {m: s for m, s in self.sets.get(key, {}).items() if s >= min_score}


class FakeDocumentStore:
    def __init__(self):
        self.collections: Dict[str, Dict[str, dict]] = {}
        self.calls: List[tuple] = []
        self.fail_collections: set[str] = set()

    def upsert(self, collection, key, document, rule=None):
        self.upsert_many(collection, [(key, document)], rule)

    def upsert_many(self, collection, documents, rule=None):
        documents = list(documents)
        self.calls.append((collection, [k for k, _ in documents]))
        if collection in self.fail_collections:
            raise LoadError(f"simulated failure writing {collection}")
        table = self.collections.setdefault(collection, {})
        for key, document in documents:
            if rule is not None and key in table:
                table[key] = rule.merge(table[key], document)
            else:
                table[key] = dict(document)
        return len(documents)


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def checkpoint_backend():
    return InMemoryCheckpointBackend()


@pytest.fixture
def checkpoints(checkpoint_backend):
    return CheckpointStore(checkpoint_backend, window=timedelta(hours=6))


@pytest.fixture
def document_store():
    return FakeDocumentStore()


@pytest.fixture
def engine(object_store, checkpoints, document_store):
    return IngestEngine(
        file_index=FileIndex(object_store, "iot_poc", now=lambda: NOW),
        pipeline=FetchTransformPipeline(object_store, max_workers=4),
        loader=Loader(document_store, batch_size=2),
        checkpoints=checkpoints,
        history_stream="iot_poc-history",
        current_stream="iot_poc-current",
    )


def descriptor(ts: datetime) -> FileDescriptor:
    return FileDescriptor(key=poc_key(ts), timestamp=ts)
