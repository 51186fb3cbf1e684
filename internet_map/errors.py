from __future__ import annotations

from typing import Iterable, Optional


class SweepError(Exception):
    """Base class for every error raised by the sweep engine."""


class ConfigurationError(SweepError):
    """Fatal: the sweep cannot run with the given settings or privileges."""


class TransportError(SweepError):
    """A single probe failed at the transport level.

    Never escapes the block scanner; it is recorded as an unreachable address.
    """


class StorageError(SweepError):
    """The progress ledger could not read or write the store."""


class OperationFailed(SweepError):
    """A block could not be scanned or committed within its retry budget."""

    def __init__(
        self, block_id: int, attempts: int, cause: Optional[BaseException] = None, operation: str = "commit"
    ):
        self.block_id = block_id
        self.attempts = attempts
        self.cause = cause
        self.operation = operation
        msg = f"{operation} of block {block_id} failed after {attempts} attempt(s)"
        if cause is not None:
            msg += f": {cause}"
        super().__init__(msg)


class ConsistencyError(SweepError):
    """Completed blocks near the head of the ledger are not contiguous."""

    def __init__(self, gaps: Iterable[int]):
        self.gaps = sorted(set(gaps))
        super().__init__(f"{len(self.gaps)} missing block(s) below the high-water mark: {self.gaps[:16]}")
