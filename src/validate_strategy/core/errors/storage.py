"""Storage and concurrency error classes."""

from typing import Optional


class LockAcquisitionError(Exception):
    """Raised when a file lock cannot be acquired within timeout."""

    def __init__(self, resource: str, timeout: Optional[float] = None):
        self.resource = resource
        self.timeout = timeout
        super().__init__(f"Could not acquire lock for {resource} within {timeout}s")


class RecordCorruptedError(Exception):
    """Raised when a stored record exists but cannot be parsed or validated."""

    def __init__(self, record_id: str, reason: str) -> None:
        self.record_id = record_id
        self.reason = reason
        super().__init__(f"Record {record_id} is corrupted: {reason}")
