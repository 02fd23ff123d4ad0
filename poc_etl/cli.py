"""
Command line entry point.

    poc-etl history --after 2023-04-01T00:00:00 --before 2023-04-02T00:00:00
    poc-etl rehydrate --date 2023-04-01
    poc-etl current --after 2023-04-01T00:00:00

Bounded modes exit 0 on a clean run and 1 on a fatal error. current runs
until SIGINT or SIGTERM.
"""

import argparse
import signal
import sys
from datetime import date, datetime
from typing import List, Optional

from poc_etl.config import Config
from poc_etl.domain import to_utc
from poc_etl.engine import IngestEngine
from poc_etl.errors import EtlError
from poc_etl.extract.file_index import FileIndex
from poc_etl.extract.object_store import S3ObjectStore
from poc_etl.extract.pipeline import FetchTransformPipeline
from poc_etl.load.document_store import DocumentStore
from poc_etl.load.loader import Loader
from poc_etl.ticker import Ticker
from poc_etl.utils.logging_utils import (
    log_error,
    log_progress,
    log_section_complete,
    log_section_start,
)
from poc_etl.utils.state import CheckpointStore, S3CheckpointBackend


def _timestamp(value: str) -> datetime:
    try:
        return to_utc(datetime.fromisoformat(value))
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"invalid timestamp {value!r}, expected e.g. 2023-04-01T00:00:00"
        )


def _date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="poc-etl", description="IoT PoC ETL")
    parser.add_argument(
        "-c",
        "--env-file",
        help="dotenv file with configuration, loaded over the environment",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    history = subparsers.add_parser("history", help="Run in historical data gathering mode")
    history.add_argument("--after", type=_timestamp, required=True, help="start time (inclusive)")
    history.add_argument("--before", type=_timestamp, required=True, help="end time (inclusive)")

    rehydrate = subparsers.add_parser("rehydrate", help="Run in rehydrate mode for one UTC day")
    rehydrate.add_argument("--date", type=_date, required=True, help="day to rehydrate")

    current = subparsers.add_parser("current", help="Run in current mode until stopped")
    current.add_argument("--after", type=_timestamp, required=True, help="start time (inclusive)")
    return parser


def build_engine(document_store: DocumentStore) -> IngestEngine:
    """Wire the engine from Config."""
    object_store = S3ObjectStore(Config.S3_BUCKET_NAME)
    checkpoints = CheckpointStore(
        S3CheckpointBackend(Config.S3_BUCKET_NAME, Config.CHECKPOINT_PREFIX),
        window=Config.recency_window(),
    )
    return IngestEngine(
        file_index=FileIndex(object_store, Config.FILE_PREFIX),
        pipeline=FetchTransformPipeline(object_store, Config.MAX_CONCURRENT_FILES),
        loader=Loader(document_store, Config.LOAD_BATCH_SIZE),
        checkpoints=checkpoints,
        history_stream=Config.get_checkpoint_stream("history"),
        current_stream=Config.get_checkpoint_stream("current"),
    )


def run_current(engine: IngestEngine, after: datetime) -> None:
    ticker = Ticker(engine, after, Config.tick_interval())

    def _request_stop(signum, frame):
        log_progress("Current Tracker", f"Received signal {signum}, stopping after this tick")
        ticker.stop()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)
    ticker.run()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        log_section_start("Configuration Validation")
        if args.env_file:
            Config.load_env_file(args.env_file)
        Config.validate()
        log_section_complete("Configuration Validation")
    except ValueError as e:
        log_error("Configuration Validation", e)
        return 1

    document_store = DocumentStore()
    try:
        engine = build_engine(document_store)
        if args.command == "history":
            summary = engine.run_history(args.after, args.before)
            log_progress("History", summary.describe())
        elif args.command == "rehydrate":
            summary = engine.run_rehydrate(args.date)
            log_progress("Rehydrate", summary.describe())
        else:
            run_current(engine, args.after)
        return 0
    except (EtlError, ValueError) as e:
        log_error(f"PoC ETL - {args.command}", e)
        return 1
    except KeyboardInterrupt:
        log_error(f"PoC ETL - {args.command}", "interrupted")
        return 130
    finally:
        document_store.close()


if __name__ == "__main__":
    sys.exit(main())
