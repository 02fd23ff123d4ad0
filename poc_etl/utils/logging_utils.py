"""
Provides UTC timestamped logging helpers for the ETL sections.

The fetch pipeline logs from worker threads, so every line is written
under a lock to keep lines whole.
"""

import threading
from datetime import datetime, UTC
from typing import Optional

_print_lock = threading.Lock()


def _utc_timestamp() -> str:
    """
    Generate the current UTC timestamp string.

    Returns:
        str: Timestamp formatted as YYYY-MM-DD HH:MM:SS in UTC.
    """
    return datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")


def _emit(line: str) -> None:
    with _print_lock:
        print(f"[{_utc_timestamp()}] {line}", flush=True)


def log_section_start(section: str) -> None:
    """
    Log the start of a section.

    Args:
        section (str): Description of the section that is beginning.
    """
    _emit(f"Starting: {section}")


def log_section_complete(section: str, details: Optional[str] = None) -> None:
    """
    Log the completion of a section.

    Args:
        section (str): Description of the section that finished.
        details (Optional[str]): Optional extra context to append to the message.
    """
    suffix = f" - {details}" if details else ""
    _emit(f"Completed: {section}{suffix}")


def log_progress(section: str, message: str) -> None:
    """
    Log an in-progress update for a section.

    Args:
        section (str): Description of the section that is running.
        message (str): Progress message to display for the section.
    """
    _emit(f"{section}: {message}")


def log_warning(section: str, message: str) -> None:
    """
    Log a recoverable problem, e.g. a skipped key or report line.

    Args:
        section (str): Description of the section that is running.
        message (str): What was skipped and why.
    """
    _emit(f"Warning in {section}: {message}")


def log_error(section: str, error: Exception | str) -> None:
    """
    Log an error that occurred during a section.

    Args:
        section (str): Description of the section where the error occurred.
        error (Exception | str): Exception instance or error message to record.
    """
    _emit(f"Error in {section}: {error}")
