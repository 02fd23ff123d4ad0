"""
Unit tests for the concurrent fetch/transform pipeline.
"""

import threading
from datetime import timedelta

import pytest

from poc_etl.errors import FetchError, TransformError
from poc_etl.extract.pipeline import FetchTransformPipeline
from poc_etl.tests.conftest import T0, descriptor


class TestFetchTransformPipeline:
    """Test per-file isolation and concurrency limits."""

    def test_all_files_yield_results(self, object_store):
        """Test every file produces exactly one result."""
        files = [descriptor(T0 + timedelta(minutes=i)) for i in range(5)]
        for f in files:
            object_store.put_poc_file(f.timestamp)

        results = list(FetchTransformPipeline(object_store, max_workers=3).run(files))

        assert sorted(r.file.key for r in results) == sorted(f.key for f in files)
        assert all(r.ok and r.records for r in results)

    def test_fetch_failure_is_isolated(self, object_store):
        """Test one failed fetch does not affect its siblings."""
        files = [descriptor(T0 + timedelta(minutes=i)) for i in range(3)]
        for f in files:
            object_store.put_poc_file(f.timestamp)
        object_store.fail_keys.add(files[1].key)

        results = {r.file.key: r for r in FetchTransformPipeline(object_store, 3).run(files)}

        assert isinstance(results[files[1].key].error, FetchError)
        assert results[files[0].key].ok
        assert results[files[2].key].ok

    def test_transform_failure_is_isolated(self, object_store):
        """Test a corrupt file fails alone with a TransformError."""
        good, bad = descriptor(T0), descriptor(T0 + timedelta(minutes=1))
        object_store.put_poc_file(good.timestamp)
        object_store.put(bad.key, b"not gzip")

        results = {r.file.key: r for r in FetchTransformPipeline(object_store, 2).run([good, bad])}

        assert results[good.key].ok
        assert isinstance(results[bad.key].error, TransformError)

    def test_unexpected_transform_exception_is_wrapped(self, object_store):
        """Test arbitrary transform exceptions become TransformError."""
        file = descriptor(T0)
        object_store.put_poc_file(file.timestamp)

        def explode(_file, _data):
            raise RuntimeError("boom")

        [result] = FetchTransformPipeline(object_store, 1, transform=explode).run([file])

        assert isinstance(result.error, TransformError)
        assert "boom" in str(result.error)

    def test_results_in_completion_order(self, object_store):
        """Test results arrive as they complete, not in submission order."""
        slow, fast = descriptor(T0), descriptor(T0 + timedelta(minutes=1))
        object_store.put_poc_file(slow.timestamp)
        object_store.put_poc_file(fast.timestamp)
        object_store.delays[slow.key] = 0.2

        results = list(FetchTransformPipeline(object_store, 2).run([slow, fast]))

        assert [r.file.key for r in results] == [fast.key, slow.key]

    def test_concurrency_is_bounded(self, object_store):
        """Test no more than max_workers files are fetched at once."""
        files = [descriptor(T0 + timedelta(minutes=i)) for i in range(8)]
        for f in files:
            object_store.put_poc_file(f.timestamp)
        active, peak = 0, 0
        lock = threading.Lock()
        original_get = object_store.get

        def tracking_get(key):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            try:
                object_store.delays[key] = 0.02
                return original_get(key)
            finally:
                with lock:
                    active -= 1

        object_store.get = tracking_get

        results = list(FetchTransformPipeline(object_store, max_workers=2).run(files))

        assert len(results) == 8
        assert peak <= 2

    def test_empty_input(self, object_store):
        """Test an empty file list yields nothing."""
        assert list(FetchTransformPipeline(object_store, 2).run([])) == []

    def test_max_workers_must_be_positive(self, object_store):
        """Test a zero concurrency limit is rejected."""
        with pytest.raises(ValueError):
            FetchTransformPipeline(object_store, 0)
