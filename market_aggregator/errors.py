"""
Exception hierarchy for the aggregation engine.
"""

from typing import Optional


class AggregatorError(Exception):
    """Base class for all aggregator errors"""


class UpstreamFetchError(AggregatorError):
    """Network or HTTP failure talking to an upstream venue"""

    def __init__(self, message: str, url: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status = status


class StorageWriteFailure(AggregatorError):
    """A batch write to the database failed"""

    def __init__(self, message: str, table: Optional[str] = None, batch_size: int = 0):
        super().__init__(message)
        self.table = table
        self.batch_size = batch_size


class PipelineFatalError(AggregatorError):
    """A fatal-tier failure that aborts a pipeline run"""

    def __init__(self, message: str, phase: Optional[str] = None):
        super().__init__(message)
        self.phase = phase


class AlreadyRunningError(AggregatorError):
    """start() was called while a run is still active"""


class MalformedUpstreamData(AggregatorError):
    """An upstream payload field could not be parsed"""
