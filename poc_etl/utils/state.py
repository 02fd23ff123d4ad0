"""
State store module for ingestion checkpoints.

A checkpoint per logical stream holds a high watermark and the set of file
keys processed near that watermark. The backing data lives in S3 as small
JSON objects under CHECKPOINT_PREFIX.

Every failure to read or write a checkpoint is raised as CheckpointError;
an unreadable checkpoint is never treated as an empty one.
"""

import json
import threading
from contextlib import closing
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Protocol

from botocore.exceptions import BotoCoreError, ClientError

from poc_etl.config import Config
from poc_etl.domain import EPOCH, Checkpoint, FileDescriptor, from_millis, to_millis, to_utc
from poc_etl.errors import CheckpointError
from poc_etl.extract.object_store import get_s3_client
from poc_etl.utils.logging_utils import log_progress


class CheckpointBackend(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def get_set(self, key: str) -> Dict[str, float]:
        ...

    def add_to_bounded_set(self, key: str, member: str, score: float, min_score: float) -> None:
        """Add member with score, dropping every member scored below min_score."""
        ...

    def trim_set(self, key: str, min_score: float) -> None:
        ...


class S3CheckpointBackend:
    """
    Checkpoint backend storing one JSON object per key in S3.

    Set updates are read-modify-write under a process-local lock; a single
    driver owns each stream, so no cross-process writers exist.
    """

    def __init__(self, bucket: Optional[str] = None, prefix: Optional[str] = None, client=None):
        self.bucket = bucket or Config.S3_BUCKET_NAME
        self.prefix = (prefix or Config.CHECKPOINT_PREFIX).strip("/")
        self._client = client
        self._lock = threading.Lock()

    @property
    def client(self):
        if self._client is None:
            self._client = get_s3_client()
        return self._client

    def _object_key(self, key: str) -> str:
        return f"{self.prefix}/{key}.json"

    def get(self, key: str) -> Optional[str]:
        object_key = self._object_key(key)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=object_key)
            with closing(response["Body"]) as body:
                return body.read().decode("utf-8")
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                return None
            raise CheckpointError(f"Failed to read checkpoint {object_key}: {e}") from e
        except BotoCoreError as e:
            raise CheckpointError(f"Failed to read checkpoint {object_key}: {e}") from e

    def set(self, key: str, value: str) -> None:
        object_key = self._object_key(key)
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=object_key,
                Body=value.encode("utf-8"),
                ContentType="application/json",
            )
        except (ClientError, BotoCoreError) as e:
            raise CheckpointError(f"Failed to write checkpoint {object_key}: {e}") from e

    def get_set(self, key: str) -> Dict[str, float]:
        raw = self.get(key)
        if raw is None:
            return {}
        try:
            members = json.loads(raw)
            return {str(m): float(s) for m, s in members.items()}
        except (ValueError, AttributeError, TypeError) as e:
            raise CheckpointError(f"Corrupt checkpoint set {key}: {e}") from e

    def add_to_bounded_set(self, key: str, member: str, score: float, min_score: float) -> None:
        with self._lock:
            members = self.get_set(key)
            members[member] = score
            self._write_set(key, members, min_score)

    def trim_set(self, key: str, min_score: float) -> None:
        with self._lock:
            members = self.get_set(key)
            if any(s < min_score for s in members.values()):
                self._write_set(key, members, min_score)

    def _write_set(self, key: str, members: Dict[str, float], min_score: float) -> None:
        kept = {m: s for m, s in members.items() if s >= min_score}
        self.set(key, json.dumps(kept, indent=2, sort_keys=True))


class CheckpointStore:
    """Reads and mutates per-stream checkpoints through a backend."""

    def __init__(self, backend: CheckpointBackend, window: timedelta):
        if window < timedelta(0):
            raise ValueError("window must not be negative")
        self.backend = backend
        self.window = window

    @staticmethod
    def _watermark_key(stream_id: str) -> str:
        return f"{stream_id}/watermark"

    @staticmethod
    def _recent_key(stream_id: str) -> str:
        return f"{stream_id}/recent_processed"

    def _read_watermark(self, stream_id: str) -> datetime:
        raw = self.backend.get(self._watermark_key(stream_id))
        if raw is None:
            return EPOCH
        try:
            payload = json.loads(raw)
            return to_utc(datetime.fromisoformat(payload["watermark"]))
        except (ValueError, KeyError, TypeError) as e:
            raise CheckpointError(f"Corrupt watermark for stream {stream_id}: {e}") from e

    def load(self, stream_id: str) -> Checkpoint:
        """
        Load a stream's checkpoint.

        Returns:
            The stored checkpoint, or a zero-value checkpoint if none exists

        Raises:
            CheckpointError: If the backend is unreachable or the data is corrupt
        """
        watermark = self._read_watermark(stream_id)
        members = self.backend.get_set(self._recent_key(stream_id))
        checkpoint = Checkpoint(
            stream_id=stream_id,
            watermark=watermark,
            recent_processed={key: from_millis(int(score)) for key, score in members.items()},
        )
        # Drop anything a crashed writer left behind the horizon
        return checkpoint.advanced(watermark, self.window)

    def is_processed(self, stream_id: str, file: FileDescriptor) -> bool:
        return self.load(stream_id).has_processed(file)

    def mark_processed(self, stream_id: str, file: FileDescriptor) -> None:
        """
        Record a file as processed. Safe to call more than once.

        Files already behind the recency horizon are not recorded; reloading
        them later is covered by the document store's upserts.
        """
        watermark = self._read_watermark(stream_id)
        horizon = Checkpoint(stream_id, watermark).horizon(self.window)
        if file.timestamp < horizon:
            log_progress(
                f"State Store - {stream_id}",
                f"{file.key} is behind the recency horizon {horizon.isoformat()}, not recorded",
            )
            return
        self.backend.add_to_bounded_set(
            self._recent_key(stream_id),
            file.key,
            float(to_millis(file.timestamp)),
            float(to_millis(horizon)),
        )

    def advance_watermark(self, stream_id: str, candidate: datetime) -> Checkpoint:
        """
        Move the watermark to max(current, candidate) and evict entries that
        fall out of the recency window.

        Returns:
            The checkpoint after the update
        """
        current = self._read_watermark(stream_id)
        candidate = to_utc(candidate)
        if candidate > current:
            self.backend.set(
                self._watermark_key(stream_id),
                json.dumps(
                    {
                        "watermark": candidate.isoformat(),
                        "updated_at": datetime.now(timezone.utc).isoformat(),
                    },
                    indent=2,
                ),
            )
            horizon = Checkpoint(stream_id, candidate).horizon(self.window)
            self.backend.trim_set(self._recent_key(stream_id), float(to_millis(horizon)))
            log_progress(
                f"State Store - {stream_id}",
                f"Advanced watermark {current.isoformat()} -> {candidate.isoformat()}",
            )
        return self.load(stream_id)
