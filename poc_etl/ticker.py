"""
Ticker for current mode.

An explicit loop: RUNNING one tick, then WAITING for the next interval, until
stop() is called. A tick that is running when stop() arrives finishes first;
no new tick starts afterwards.
"""

import threading
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from poc_etl.domain import Checkpoint, to_utc
from poc_etl.engine import IngestEngine
from poc_etl.errors import CheckpointError, DiscoveryError
from poc_etl.utils.logging_utils import (
    log_error,
    log_progress,
    log_section_complete,
    log_section_start,
)


class TickerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    WAITING = "waiting"
    STOPPED = "stopped"


class Ticker:
    """
    Drives IngestEngine.run_tick on a fixed interval.

    wait(seconds) blocks until the next tick is due and returns True when the
    ticker has been stopped; clock() is a monotonic seconds source. Both are
    injectable so tests can run ticks without real time passing.
    """

    def __init__(
        self,
        engine: IngestEngine,
        after: datetime,
        interval: timedelta,
        wait: Optional[Callable[[float], bool]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= timedelta(0):
            raise ValueError("interval must be greater than zero")
        self.engine = engine
        self.after = to_utc(after)
        self.interval = interval
        self._stop_event = threading.Event()
        self._wait = wait or self._stop_event.wait
        self._clock = clock
        self.state = TickerState.IDLE
        self.ticks = 0
        self.failed_ticks = 0
        self.checkpoint: Optional[Checkpoint] = None

    def stop(self) -> None:
        """Request cancellation; takes effect between ticks."""
        self._stop_event.set()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def tick(self) -> None:
        """Run one tick. Discovery and checkpoint failures only end this tick."""
        self.state = TickerState.RUNNING
        self.ticks += 1
        try:
            self.checkpoint, _ = self.engine.run_tick(self.after)
        except (DiscoveryError, CheckpointError) as e:
            self.failed_ticks += 1
            log_error(f"Current Tracker - tick {self.ticks}", e)

    def run(self, max_ticks: Optional[int] = None) -> int:
        """
        Tick until stopped (or max_ticks ticks have run).

        Returns:
            Number of ticks run
        """
        section = f"Current Tracker @ {self.after.isoformat()}"
        log_section_start(section)
        try:
            while not self.stopped:
                started = self._clock()
                self.tick()
                if max_ticks is not None and self.ticks >= max_ticks:
                    break
                if self.stopped:
                    break

                self.state = TickerState.WAITING
                elapsed = self._clock() - started
                remaining = max(0.0, self.interval.total_seconds() - elapsed)
                if self._wait(remaining):
                    break
        finally:
            self.state = TickerState.STOPPED
            watermark = self.checkpoint.watermark.isoformat() if self.checkpoint else "unchanged"
            log_progress(section, f"Stopping, watermark {watermark}")
            log_section_complete(
                section, f"{self.ticks} ticks run, {self.failed_ticks} failed"
            )
        return self.ticks
