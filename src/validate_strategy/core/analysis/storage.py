"""File-based storage backend for analysis operations.

Each operation is persisted as one JSON document holding the operation row
and its complete event log.  Every mutation rewrites the document with:
- File locking with timeout (one lock per operation)
- Atomic writes (temp+fsync+rename)

so a state change and the event that records it land together or not at all.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from filelock import FileLock, Timeout
from pydantic import ValidationError

from validate_strategy.core.analysis.models import (
    GENESIS_HASH,
    AnalysisOperation,
    AnalysisOperationEvent,
    OperationRecord,
    utc_now,
)
from validate_strategy.core.errors import (
    LockAcquisitionError,
    OperationNotFoundError,
    RecordCorruptedError,
)

logger = logging.getLogger(__name__)

# Lock acquisition timeout (seconds)
LOCK_ACQUISITION_TIMEOUT = 5

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

# A mutator receives the current operation and returns the updated operation
# plus the keyword fields of the event that records the change.
OperationMutator = Callable[[AnalysisOperation], Tuple[AnalysisOperation, Dict[str, Any]]]


def sanitize_id(item_id: str) -> str:
    """Make an identifier safe for use as a file name."""
    safe = _UNSAFE_ID_CHARS.sub("_", item_id)
    if not safe or safe in {".", ".."}:
        raise ValueError(f"Invalid identifier: {item_id!r}")
    return safe


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to ``path`` via temp file + fsync + os.replace."""
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class OperationStorage:
    """Persist operations and their hash-linked event logs.

    Layout:
        {storage_path}/operations/{operation_id}.json
        {storage_path}/operations/.locks/{operation_id}.lock
    """

    def __init__(self, storage_path: Path, lock_timeout: float = LOCK_ACQUISITION_TIMEOUT):
        self.storage_path = Path(storage_path)
        self.operations_path = self.storage_path / "operations"
        self.locks_path = self.operations_path / ".locks"
        self.lock_timeout = lock_timeout
        self._ensure_directories()

    def _ensure_directories(self) -> None:
        self.operations_path.mkdir(parents=True, exist_ok=True)
        self.locks_path.mkdir(parents=True, exist_ok=True)

    def _get_record_path(self, operation_id: str) -> Path:
        return self.operations_path / f"{sanitize_id(operation_id)}.json"

    def _get_lock(self, operation_id: str) -> FileLock:
        lock_path = self.locks_path / f"{sanitize_id(operation_id)}.lock"
        return FileLock(lock_path, timeout=self.lock_timeout)

    def _read_record(self, operation_id: str, path: Path) -> OperationRecord:
        try:
            return OperationRecord.model_validate(json.loads(path.read_text()))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise RecordCorruptedError(operation_id, str(exc)) from exc

    def _write_record(self, record: OperationRecord) -> None:
        path = self._get_record_path(record.operation.operation_id)
        atomic_write_json(path, record.model_dump(mode="json"))
        logger.debug("Saved operation %s to %s", record.operation.operation_id, path)

    @staticmethod
    def _next_event(record: OperationRecord, fields: Dict[str, Any]) -> AnalysisOperationEvent:
        last = record.events[-1] if record.events else None
        event = AnalysisOperationEvent(
            sequence=(last.sequence + 1) if last else 1,
            operation_id=record.operation.operation_id,
            session_id=record.operation.session_id,
            prev_hash=last.event_hash if last else GENESIS_HASH,
            **fields,
        )
        return event.sealed()

    # =========================================================================
    # CRUD Operations
    # =========================================================================

    def create(self, operation: AnalysisOperation, event_fields: Dict[str, Any]) -> OperationRecord:
        """Persist a new operation together with its first event.

        Raises:
            FileExistsError: If the operation id is already taken
            LockAcquisitionError: If lock acquisition times out
        """
        path = self._get_record_path(operation.operation_id)
        try:
            with self._get_lock(operation.operation_id):
                if path.exists():
                    raise FileExistsError(f"Operation already exists: {operation.operation_id}")
                record = OperationRecord(operation=operation)
                record.events.append(self._next_event(record, event_fields))
                self._write_record(record)
                return record
        except Timeout as exc:
            raise LockAcquisitionError(operation.operation_id, self.lock_timeout) from exc

    def load(self, operation_id: str) -> Optional[OperationRecord]:
        """Load an operation record, or None if it does not exist.

        Raises:
            RecordCorruptedError: If the file exists but cannot be parsed
            LockAcquisitionError: If lock acquisition times out
        """
        path = self._get_record_path(operation_id)
        if not path.exists():
            return None
        try:
            with self._get_lock(operation_id):
                if not path.exists():
                    return None
                return self._read_record(operation_id, path)
        except Timeout as exc:
            raise LockAcquisitionError(operation_id, self.lock_timeout) from exc

    def update(self, operation_id: str, mutator: OperationMutator) -> OperationRecord:
        """Apply ``mutator`` and append its event as one atomic unit.

        The mutator runs under the operation lock against the freshly read
        row, so guards it evaluates cannot race another writer.

        Raises:
            OperationNotFoundError: If the operation does not exist
            LockAcquisitionError: If lock acquisition times out
        """
        path = self._get_record_path(operation_id)
        try:
            with self._get_lock(operation_id):
                if not path.exists():
                    raise OperationNotFoundError(operation_id=operation_id)
                record = self._read_record(operation_id, path)
                updated, event_fields = mutator(record.operation.model_copy(deep=True))
                updated.updated_at = utc_now()
                new_record = OperationRecord(operation=updated, events=list(record.events))
                new_record.events.append(self._next_event(new_record, event_fields))
                # Re-validate so invariants are enforced on the written row
                new_record = OperationRecord.model_validate(new_record.model_dump())
                self._write_record(new_record)
                return new_record
        except Timeout as exc:
            raise LockAcquisitionError(operation_id, self.lock_timeout) from exc

    def iter_records(self) -> Iterator[OperationRecord]:
        """Iterate every stored operation, skipping corrupted files."""
        for path in sorted(self.operations_path.glob("*.json")):
            operation_id = path.stem
            try:
                record = self.load(operation_id)
            except RecordCorruptedError as exc:
                logger.warning("Skipping corrupted operation %s: %s", operation_id, exc)
                continue
            if record is not None:
                yield record

    def list_operations(self) -> List[AnalysisOperation]:
        return [record.operation for record in self.iter_records()]

    def count(self) -> int:
        return sum(1 for _ in self.operations_path.glob("*.json"))
