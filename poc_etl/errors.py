"""
Exception hierarchy for the PoC ETL.

Per-file errors (FetchError, TransformError, LoadError) are contained by the
engine and recorded as failed outcomes. DiscoveryError and CheckpointError
abort the current run or tick.
"""


class EtlError(Exception):
    """Base class for all ETL errors."""


class DiscoveryError(EtlError):
    """Listing the object store failed."""


class FetchError(EtlError):
    """Reading one file from the object store failed."""


class TransformError(EtlError):
    """A file's content could not be decoded into records."""


class LoadError(EtlError):
    """Writing records to the document store failed."""


class CheckpointError(EtlError):
    """The checkpoint backing store is unreachable or holds corrupt data."""
