"""
Value types shared by the file index, pipeline, loader and mode drivers.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Mapping, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_millis(value: datetime) -> int:
    return int(to_utc(value).timestamp() * 1000)


def from_millis(millis: int) -> datetime:
    return EPOCH + timedelta(milliseconds=millis)


@dataclass(frozen=True)
class FileDescriptor:
    """A remote file discovered by the file index."""
    key: str
    timestamp: datetime  # UTC, parsed from the key
    size: int = 0


@dataclass(frozen=True)
class Record:
    """
    One document ready for the destination store.

    key is the document's natural key, so loading the same record twice
    leaves the store unchanged.
    """
    collection: str
    key: str
    document: Mapping[str, Any]


@dataclass(frozen=True)
class MergeRule:
    """
    How a collection resolves two documents with the same key.

    The document with the larger order_field wins (ties go to the incoming
    one); list fields named in union_fields accumulate from both sides. The
    result does not depend on which document arrives first.
    """
    order_field: str
    union_fields: tuple[str, ...] = ()

    def merge(self, current: Mapping[str, Any], incoming: Mapping[str, Any]) -> dict:
        newer = (incoming.get(self.order_field) or 0) >= (current.get(self.order_field) or 0)
        merged = dict(incoming if newer else current)
        for name in self.union_fields:
            values = set(current.get(name) or []) | set(incoming.get(name) or [])
            merged[name] = sorted(values)
        return merged


# ----------------------------
# Listing predicates
# ----------------------------
@dataclass(frozen=True)
class Range:
    """Files with after <= timestamp <= before."""
    after: datetime
    before: datetime

    @property
    def lower_bound(self) -> datetime:
        return to_utc(self.after)

    def matches(self, ts: datetime) -> bool:
        return to_utc(self.after) <= ts <= to_utc(self.before)

    def __str__(self) -> str:
        return f"{to_utc(self.after).isoformat()}..{to_utc(self.before).isoformat()}"


@dataclass(frozen=True)
class Day:
    """Files stamped on the given UTC calendar day."""
    day: date

    @property
    def lower_bound(self) -> datetime:
        return datetime.combine(self.day, time.min, tzinfo=timezone.utc)

    def matches(self, ts: datetime) -> bool:
        start = self.lower_bound
        return start <= ts < start + timedelta(days=1)

    def __str__(self) -> str:
        return self.day.isoformat()


@dataclass(frozen=True)
class After:
    """Files with timestamp >= after, capped at `until` when given."""
    after: datetime
    until: Optional[datetime] = None

    @property
    def lower_bound(self) -> datetime:
        return to_utc(self.after)

    def matches(self, ts: datetime) -> bool:
        if ts < to_utc(self.after):
            return False
        return self.until is None or ts <= to_utc(self.until)

    def __str__(self) -> str:
        return f"after {to_utc(self.after).isoformat()}"


Predicate = Range | Day | After


# ----------------------------
# Checkpoint
# ----------------------------
@dataclass(frozen=True)
class Checkpoint:
    """
    Resumption state for one logical stream.

    watermark:
      Everything up to here has been processed, modulo stragglers.
      Never moves backward.

    recent_processed:
      file key -> file timestamp, for files near the watermark. Only
      entries with timestamp >= watermark - window are kept.
    """
    stream_id: str
    watermark: datetime = EPOCH
    recent_processed: Mapping[str, datetime] = field(default_factory=dict)

    def has_processed(self, file: FileDescriptor) -> bool:
        return file.key in self.recent_processed

    def horizon(self, window: timedelta) -> datetime:
        if self.watermark - EPOCH <= window:
            return EPOCH
        return self.watermark - window

    def advanced(self, candidate: datetime, window: timedelta) -> "Checkpoint":
        watermark = max(self.watermark, to_utc(candidate))
        pruned = Checkpoint(self.stream_id, watermark, self.recent_processed)
        cutoff = pruned.horizon(window)
        return replace(
            pruned,
            recent_processed={
                key: ts for key, ts in self.recent_processed.items() if ts >= cutoff
            },
        )

    def with_processed(self, file: FileDescriptor, window: timedelta) -> "Checkpoint":
        if file.timestamp < self.horizon(window):
            return self
        recent = dict(self.recent_processed)
        recent[file.key] = file.timestamp
        return replace(self, recent_processed=recent)


# ----------------------------
# Outcomes
# ----------------------------
class ProcessingOutcome(str, Enum):
    LOADED = "loaded"
    SKIPPED_DUPLICATE = "skipped_duplicate"
    FAILED = "failed"


@dataclass(frozen=True)
class FileOutcome:
    file: FileDescriptor
    outcome: ProcessingOutcome
    reason: Optional[str] = None
    records: int = 0


@dataclass
class RunSummary:
    """Aggregate of file outcomes for one run or tick."""
    loaded: int = 0
    skipped_duplicate: int = 0
    failed: int = 0
    records: int = 0
    max_loaded_timestamp: Optional[datetime] = None
    outcomes: list[FileOutcome] = field(default_factory=list)

    def add(self, outcome: FileOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.outcome is ProcessingOutcome.LOADED:
            self.loaded += 1
            self.records += outcome.records
            ts = outcome.file.timestamp
            if self.max_loaded_timestamp is None or ts > self.max_loaded_timestamp:
                self.max_loaded_timestamp = ts
        elif outcome.outcome is ProcessingOutcome.SKIPPED_DUPLICATE:
            self.skipped_duplicate += 1
        else:
            self.failed += 1

    def describe(self) -> str:
        return (
            f"{self.loaded} loaded ({self.records} records), "
            f"{self.skipped_duplicate} skipped as duplicates, {self.failed} failed"
        )
