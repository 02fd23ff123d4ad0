"""
Concurrent fetch + transform of discovered files.

Each file runs fetch -> decode -> transform on its own worker. Results are
yielded in completion order, so callers must not assume any timestamp order.
A failure in one file never affects another; nothing is retried here.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional

from poc_etl.domain import FileDescriptor, Record
from poc_etl.errors import EtlError, FetchError, TransformError
from poc_etl.extract.object_store import S3ObjectStore
from poc_etl.transform.poc_reports import transform_file
from poc_etl.utils.logging_utils import log_error

Transform = Callable[[FileDescriptor, bytes], List[Record]]


@dataclass(frozen=True)
class FileResult:
    file: FileDescriptor
    records: Optional[List[Record]] = None
    error: Optional[EtlError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class FetchTransformPipeline:
    """Runs up to max_workers fetch+transform jobs at a time."""

    def __init__(
        self,
        object_store: S3ObjectStore,
        max_workers: int,
        transform: Transform = transform_file,
    ):
        if max_workers <= 0:
            raise ValueError("max_workers must be greater than zero")
        self.object_store = object_store
        self.max_workers = max_workers
        self.transform = transform

    def process_file(self, file: FileDescriptor) -> FileResult:
        """
        Fetch and transform a single file.

        Returns:
            FileResult with either the records or the error that stopped the file
        """
        try:
            data = self.object_store.get(file.key)
        except FetchError as e:
            return FileResult(file, error=e)
        except Exception as e:
            return FileResult(file, error=FetchError(f"{file.key}: {e}"))

        try:
            records = self.transform(file, data)
        except TransformError as e:
            return FileResult(file, error=e)
        except Exception as e:
            return FileResult(file, error=TransformError(f"{file.key}: {e}"))

        return FileResult(file, records=records)

    def run(self, files: Iterable[FileDescriptor]) -> Iterator[FileResult]:
        """
        Process files concurrently, yielding each result as it completes.
        """
        files = list(files)
        if not files:
            return

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(files))) as executor:
            future_to_file = {executor.submit(self.process_file, f): f for f in files}

            for future in as_completed(future_to_file):
                file = future_to_file[future]
                try:
                    result = future.result()
                except Exception as e:
                    log_error(f"Pipeline - {file.key}", e)
                    result = FileResult(file, error=FetchError(f"{file.key}: {e}"))
                if not result.ok:
                    log_error(f"Pipeline - {file.key}", result.error)
                yield result
