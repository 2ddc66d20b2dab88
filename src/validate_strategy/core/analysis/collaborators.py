"""Collaborator contracts consumed by the orchestrator, plus default implementations.

The orchestrator never talks to a database, mail server or pager directly;
it goes through these Protocols.  ``FileSessionStore`` and
``LoggingNotifier`` are the implementations used by the CLI worker and
the test suite.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, runtime_checkable

from filelock import FileLock, Timeout
from pydantic import BaseModel, Field, ValidationError, field_validator

from validate_strategy.core.analysis.models import SessionStatus, utc_now
from validate_strategy.core.analysis.storage import (
    LOCK_ACQUISITION_TIMEOUT,
    atomic_write_json,
    sanitize_id,
)
from validate_strategy.core.errors import (
    AnalysisError,
    LockAcquisitionError,
    RecordCorruptedError,
)
from validate_strategy.core.observability import AuditEventType, audit_log
from validate_strategy.core.tiers import MAX_PARTS, Tier

logger = logging.getLogger(__name__)


def validate_part_number(part_number: int) -> int:
    """Reject part numbers outside 1..MAX_PARTS."""
    if not 1 <= part_number <= MAX_PARTS:
        raise ValueError(f"part number must be between 1 and {MAX_PARTS}, got {part_number}")
    return part_number


class AnalysisResultUpdate(BaseModel):
    """Partial update to a session's result fields."""

    parts: Dict[int, str] = Field(default_factory=dict, description="Part content keyed by part number")
    single_result: Optional[str] = None
    full_markdown: Optional[str] = None
    generated_at: Optional[datetime] = None

    @field_validator("parts")
    @classmethod
    def _check_part_numbers(cls, value: Dict[int, str]) -> Dict[int, str]:
        for part_number in value:
            validate_part_number(part_number)
        return value


class AnalysisResult(BaseModel):
    """Stored report content for a session."""

    parts: Dict[int, str] = Field(default_factory=dict)
    single_result: Optional[str] = None
    full_markdown: Optional[str] = None
    generated_at: Optional[datetime] = None

    def apply(self, update: AnalysisResultUpdate) -> None:
        self.parts.update(update.parts)
        for name in ("single_result", "full_markdown", "generated_at"):
            value = getattr(update, name)
            if value is not None:
                setattr(self, name, value)


class AnalysisSession(BaseModel):
    """A purchased analysis session as seen by the orchestrator."""

    session_id: str
    tier: Tier
    problem_statement: str
    email: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    result: AnalysisResult = Field(default_factory=AnalysisResult)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


@runtime_checkable
class AnalysisPersistence(Protocol):
    """Session and result persistence."""

    async def update_analysis_result(self, session_id: str, update: AnalysisResultUpdate) -> None: ...

    async def update_analysis_session_status(self, session_id: str, status: SessionStatus) -> None: ...

    async def get_analysis_session_by_id(self, session_id: str) -> Optional[AnalysisSession]: ...

    async def get_analysis_result(self, session_id: str) -> Optional[AnalysisResult]: ...


class EmailSender(Protocol):
    """Completion email delivery."""

    async def send_validate_strategy_email(
        self,
        *,
        to: str,
        user_name: str,
        report_url: str,
        transaction_id: str,
        tier: Tier,
    ) -> None: ...


class Notifier(Protocol):
    """Operator and user alerting."""

    async def notify_owner(self, title: str, content: str) -> None: ...

    async def notify_analysis_failed(
        self,
        session_id: str,
        tier: Tier,
        email: str,
        queued: bool,
        error: AnalysisError,
    ) -> None: ...


class FileSessionStore:
    """File-backed AnalysisPersistence.

    Layout:
        {storage_path}/sessions/{session_id}.json
        {storage_path}/sessions/.locks/{session_id}.lock
    """

    def __init__(self, storage_path: Path, lock_timeout: float = LOCK_ACQUISITION_TIMEOUT):
        self.sessions_path = Path(storage_path) / "sessions"
        self.locks_path = self.sessions_path / ".locks"
        self.lock_timeout = lock_timeout
        self.sessions_path.mkdir(parents=True, exist_ok=True)
        self.locks_path.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        return self.sessions_path / f"{sanitize_id(session_id)}.json"

    def _lock(self, session_id: str) -> FileLock:
        return FileLock(self.locks_path / f"{sanitize_id(session_id)}.lock", timeout=self.lock_timeout)

    def _read(self, session_id: str) -> Optional[AnalysisSession]:
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            return AnalysisSession.model_validate(json.loads(path.read_text()))
        except (json.JSONDecodeError, ValidationError) as exc:
            raise RecordCorruptedError(session_id, str(exc)) from exc

    def _save_unlocked(self, session: AnalysisSession) -> None:
        session.updated_at = utc_now()
        atomic_write_json(self._path(session.session_id), session.model_dump(mode="json"))

    def save(self, session: AnalysisSession) -> None:
        try:
            with self._lock(session.session_id):
                self._save_unlocked(session)
        except Timeout as exc:
            raise LockAcquisitionError(session.session_id, self.lock_timeout) from exc

    def _modify(self, session_id: str, apply: Callable[[AnalysisSession], None]) -> None:
        try:
            with self._lock(session_id):
                session = self._read(session_id)
                if session is None:
                    logger.warning("Session %s not found; update skipped", session_id)
                    return
                apply(session)
                self._save_unlocked(session)
        except Timeout as exc:
            raise LockAcquisitionError(session_id, self.lock_timeout) from exc

    async def update_analysis_result(self, session_id: str, update: AnalysisResultUpdate) -> None:
        await asyncio.to_thread(self._modify, session_id, lambda s: s.result.apply(update))

    async def update_analysis_session_status(self, session_id: str, status: SessionStatus) -> None:
        def _set(session: AnalysisSession) -> None:
            session.status = SessionStatus(status)

        await asyncio.to_thread(self._modify, session_id, _set)

    async def get_analysis_session_by_id(self, session_id: str) -> Optional[AnalysisSession]:
        return await asyncio.to_thread(self._read, session_id)

    async def get_analysis_result(self, session_id: str) -> Optional[AnalysisResult]:
        session = await asyncio.to_thread(self._read, session_id)
        return session.result if session else None

    def list_sessions(self) -> List[AnalysisSession]:
        sessions = []
        for path in sorted(self.sessions_path.glob("*.json")):
            try:
                session = self._read(path.stem)
            except RecordCorruptedError as exc:
                logger.warning("Skipping corrupted session %s: %s", path.stem, exc)
                continue
            if session is not None:
                sessions.append(session)
        return sessions


class LoggingNotifier:
    """Notifier that records alerts in the audit log."""

    async def notify_owner(self, title: str, content: str) -> None:
        audit_log(AuditEventType.OWNER_ALERT.value, title=title, content=content)

    async def notify_analysis_failed(
        self,
        session_id: str,
        tier: Tier,
        email: str,
        queued: bool,
        error: AnalysisError,
    ) -> None:
        event = AuditEventType.ANALYSIS_QUEUED if queued else AuditEventType.ANALYSIS_FAILED
        audit_log(
            event.value,
            session_id=session_id,
            tier=Tier(tier).value,
            email=email,
            error=error.to_user_response(),
        )


class LoggingEmailSender:
    """EmailSender that records completion emails in the audit log instead of sending them."""

    async def send_validate_strategy_email(
        self,
        *,
        to: str,
        user_name: str,
        report_url: str,
        transaction_id: str,
        tier: Tier,
    ) -> None:
        audit_log(
            AuditEventType.REPORT_EMAILED.value,
            to=to,
            user_name=user_name,
            report_url=report_url,
            transaction_id=transaction_id,
            tier=Tier(tier).value,
        )


def session_summary(session: AnalysisSession) -> Dict[str, Any]:
    """Compact view of a session for CLI output."""
    return {
        "session_id": session.session_id,
        "tier": session.tier.value,
        "status": session.status.value,
        "parts": sorted(session.result.parts),
        "has_report": bool(session.result.full_markdown or session.result.single_result),
        "updated_at": session.updated_at.isoformat(),
    }
