"""
Exception taxonomy for the compression pipeline.

Hierarchy:
    CompressionError
      ├── InvalidInput (also a ValueError)
      │     └── UnsupportedFormat
      ├── EncodeFailure
      ├── SearchCancelled
      └── WorkerError
            ├── WorkerUnavailable
            ├── WorkerTimeout
            └── WorkerTaskError

A byte target that cannot be reached is not an error: it surfaces as a
result with ``met_target=False``.
"""

from typing import Optional


class CompressionError(Exception):
    """
    Base class for every error raised by the pipeline.

    When all fallback strategies are exhausted the orchestrator raises this
    class directly, with the last underlying error stored in ``cause``.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class InvalidInput(CompressionError, ValueError):
    """Malformed buffer, bad parameters or oversize input. Never retried."""


class UnsupportedFormat(InvalidInput):
    """The container format has no registered codec or cannot be decoded."""


class EncodeFailure(CompressionError):
    """The codec rejected its parameters or failed to produce bytes."""


class SearchCancelled(CompressionError):
    """A quality search was abandoned because its deadline expired."""


class WorkerError(CompressionError):
    """Base class for worker pool failures that are recovered per tile."""


class WorkerUnavailable(WorkerError):
    """No worker could be acquired before the deadline."""


class WorkerTimeout(WorkerError):
    """A dispatched task did not answer within its timeout."""


class WorkerTaskError(WorkerError):
    """A worker answered with an ERROR reply."""
