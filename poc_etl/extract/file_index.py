"""
File discovery for timestamped ingest files.

Ingest keys look like '<folder>/<file_prefix>.<unix_millis>.gz'. The millis
are parsed from the key; keys that do not parse are skipped with a warning.
"""

import re
from datetime import datetime, timezone
from typing import Callable, List, Optional

from poc_etl.config import Config
from poc_etl.domain import After, FileDescriptor, Predicate, from_millis, to_millis
from poc_etl.extract.object_store import S3ObjectStore
from poc_etl.utils.logging_utils import log_progress, log_warning

_KEY_PATTERN = re.compile(r"^(?P<prefix>[A-Za-z0-9_\-]+)\.(?P<millis>\d+)(?:\.gz)?$")
# Smallest 13-digit millis value
KEY_MILLIS_FLOOR = 10**12


def parse_file_key(key: str, expected_prefix: Optional[str] = None) -> FileDescriptor:
    """
    Build a FileDescriptor from an ingest key.

    Args:
        key: Full S3 key
        expected_prefix: File type prefix the key must carry, if given

    Returns:
        FileDescriptor with the timestamp embedded in the key

    Raises:
        ValueError: If the key does not carry a parseable timestamp
    """
    basename = key.rsplit("/", 1)[-1]
    match = _KEY_PATTERN.match(basename)
    if not match:
        raise ValueError(f"not an ingest file key: {key}")
    if expected_prefix and match.group("prefix") != expected_prefix:
        raise ValueError(f"unexpected file prefix in key: {key}")
    try:
        timestamp = from_millis(int(match.group("millis")))
    except OverflowError:
        raise ValueError(f"timestamp out of range in key: {key}")
    return FileDescriptor(key=key, timestamp=timestamp)


def start_after_hint(listing_prefix: str, lower_bound: datetime) -> Optional[str]:
    """
    S3 StartAfter key for a listing that begins at lower_bound.

    S3 orders keys as text, so the hint is only safe when the bound's millis
    have as many digits as the keys being listed (13, from 2001-09-09 on).
    Earlier bounds list the whole prefix and rely on the predicate instead.
    """
    millis = to_millis(lower_bound)
    if millis < KEY_MILLIS_FLOOR:
        return None
    return f"{listing_prefix}.{millis}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class FileIndex:
    """Lists ingest files whose embedded timestamp satisfies a predicate."""

    def __init__(
        self,
        object_store: S3ObjectStore,
        file_prefix: Optional[str] = None,
        now: Callable[[], datetime] = utc_now,
    ):
        self.object_store = object_store
        self.file_prefix = file_prefix or Config.FILE_PREFIX
        self.now = now

    def list(self, predicate: Predicate) -> List[FileDescriptor]:
        """
        List matching files, in no particular order.

        An open-ended After predicate is capped at the current time.

        Raises:
            DiscoveryError: If the listing itself fails
        """
        if isinstance(predicate, After) and predicate.until is None:
            predicate = After(predicate.after, until=self.now())

        listing_prefix = Config.get_listing_prefix(self.file_prefix)
        start_after = start_after_hint(listing_prefix, predicate.lower_bound)

        files: List[FileDescriptor] = []
        skipped = 0
        for info in self.object_store.list(listing_prefix, start_after=start_after):
            try:
                descriptor = parse_file_key(info.key, self.file_prefix)
            except ValueError as e:
                skipped += 1
                log_warning("File Index", f"skipping key: {e}")
                continue
            if predicate.matches(descriptor.timestamp):
                files.append(
                    FileDescriptor(key=info.key, timestamp=descriptor.timestamp, size=info.size)
                )

        log_progress(
            "File Index",
            f"{len(files)} {self.file_prefix} files match {predicate} ({skipped} keys skipped)",
        )
        return files
