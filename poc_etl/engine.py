"""
Mode drivers for the PoC ETL.

All three modes share one loop: list candidate files, skip the ones the
checkpoint already records, fetch+transform the rest concurrently, load each
successful result and mark it processed. They differ in the listing
predicate and in whether the watermark moves:

    history    Range(after, before)   mark processed only
    rehydrate  Day(date)              mark processed only
    current    After(lower bound)     mark processed, then advance the
                                      watermark once per tick

Bounded modes record files under one checkpoint stream per UTC day,
`<history stream>/<YYYY-MM-DD>`.
"""

from datetime import date, datetime
from typing import Callable, Dict, List, Tuple

from poc_etl.domain import (
    After,
    Checkpoint,
    Day,
    FileDescriptor,
    FileOutcome,
    Predicate,
    ProcessingOutcome,
    Range,
    RunSummary,
    to_utc,
)
from poc_etl.errors import EtlError
from poc_etl.extract.file_index import FileIndex
from poc_etl.extract.pipeline import FetchTransformPipeline
from poc_etl.load.loader import Loader
from poc_etl.utils.logging_utils import (
    log_error,
    log_progress,
    log_section_complete,
    log_section_start,
)
from poc_etl.utils.state import CheckpointStore


class IngestEngine:
    def __init__(
        self,
        file_index: FileIndex,
        pipeline: FetchTransformPipeline,
        loader: Loader,
        checkpoints: CheckpointStore,
        history_stream: str,
        current_stream: str,
    ):
        self.file_index = file_index
        self.pipeline = pipeline
        self.loader = loader
        self.checkpoints = checkpoints
        self.history_stream = history_stream
        self.current_stream = current_stream

    # ----------------------------
    # Bounded modes
    # ----------------------------
    def run_history(self, after: datetime, before: datetime) -> RunSummary:
        """
        Process every file stamped within [after, before].

        Raises:
            DiscoveryError, CheckpointError: The run is aborted
        """
        after, before = to_utc(after), to_utc(before)
        if after > before:
            raise ValueError(f"after ({after.isoformat()}) is later than before ({before.isoformat()})")
        return self._run_bounded("History", Range(after, before))

    def run_rehydrate(self, day: date) -> RunSummary:
        """
        Process every file stamped on the given UTC day.

        Raises:
            DiscoveryError, CheckpointError: The run is aborted
        """
        return self._run_bounded("Rehydrate", Day(day))

    def _run_bounded(self, section: str, predicate: Predicate) -> RunSummary:
        section = f"{section} {predicate}"
        log_section_start(section)
        files = self.file_index.list(predicate)

        recent: Dict[str, datetime] = {}
        for stream_id in sorted({self.bounded_stream(f.timestamp) for f in files}):
            recent.update(self.checkpoints.load(stream_id).recent_processed)
        checkpoint = Checkpoint(self.history_stream, recent_processed=recent)

        _, summary = self._process(
            section, files, checkpoint, lambda f: self.bounded_stream(f.timestamp)
        )
        log_section_complete(section, summary.describe())
        return summary

    def bounded_stream(self, timestamp: datetime) -> str:
        """
        Checkpoint stream for a file seen by a bounded run.

        Bounded streams never advance a watermark, so nothing would ever evict
        their processed set; one stream per UTC day keeps each set to a day's
        files and a run only reads the days it listed.
        """
        return f"{self.history_stream}/{to_utc(timestamp).date().isoformat()}"

    # ----------------------------
    # Current mode
    # ----------------------------
    def listing_lower_bound(self, after: datetime, checkpoint: Checkpoint) -> datetime:
        """
        Where a current-mode tick starts listing.

        Once the stored watermark has passed `after`, the tick looks back one
        recency window from the watermark so stragglers and previously failed
        files are listed again; the checkpoint filters those already loaded.
        """
        after = to_utc(after)
        if checkpoint.watermark <= after:
            return after
        return max(after, checkpoint.horizon(self.checkpoints.window))

    def run_tick(self, after: datetime) -> Tuple[Checkpoint, RunSummary]:
        """
        Run one current-mode tick.

        The watermark is advanced once, at the end, to the newest timestamp
        among files loaded in this tick. Failed files are neither marked nor
        counted, so they stay eligible for a later tick.

        Returns:
            (checkpoint after the tick, tick summary)

        Raises:
            DiscoveryError, CheckpointError: The tick is aborted
        """
        checkpoint = self.checkpoints.load(self.current_stream)
        lower = self.listing_lower_bound(after, checkpoint)
        section = f"Current tick from {lower.isoformat()}"

        files = self.file_index.list(After(lower))
        checkpoint, summary = self._process(
            section, files, checkpoint, lambda _: self.current_stream
        )

        if summary.max_loaded_timestamp is not None:
            checkpoint = self.checkpoints.advance_watermark(
                self.current_stream, summary.max_loaded_timestamp
            )
        log_progress(
            section,
            f"{summary.describe()}; watermark {checkpoint.watermark.isoformat()}",
        )
        return checkpoint, summary

    # ----------------------------
    # Shared loop
    # ----------------------------
    def _process(
        self,
        section: str,
        files: List[FileDescriptor],
        checkpoint: Checkpoint,
        stream_of: Callable[[FileDescriptor], str],
    ) -> Tuple[Checkpoint, RunSummary]:
        summary = RunSummary()
        window = self.checkpoints.window

        pending = []
        for file in files:
            if checkpoint.has_processed(file):
                summary.add(FileOutcome(file, ProcessingOutcome.SKIPPED_DUPLICATE))
            else:
                pending.append(file)

        log_progress(
            section,
            f"{len(files)} files discovered, {len(pending)} require processing",
        )

        for result in self.pipeline.run(pending):
            file = result.file
            if not result.ok:
                summary.add(FileOutcome(file, ProcessingOutcome.FAILED, reason=str(result.error)))
                continue

            # Loader raises LoadError for any store failure; it fails this file only
            try:
                count = self.loader.load_file(file, result.records)
            except EtlError as e:
                log_error(f"{section} - {file.key}", e)
                summary.add(FileOutcome(file, ProcessingOutcome.FAILED, reason=str(e)))
                continue

            self.checkpoints.mark_processed(stream_of(file), file)
            checkpoint = checkpoint.with_processed(file, window)
            summary.add(FileOutcome(file, ProcessingOutcome.LOADED, records=count))

        return checkpoint, summary
