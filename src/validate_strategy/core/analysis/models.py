"""Data models for analysis operations, their event log and the retry queue."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field, model_validator

from validate_strategy.core.tiers import Tier

GENESIS_HASH = "0" * 64


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OperationState(str, Enum):
    """Lifecycle state of a single analysis attempt."""

    INITIALIZED = "initialized"
    GENERATING = "generating"
    PART_COMPLETED = "part_completed"
    PAUSED = "paused"
    FAILED = "failed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# FAILED is not terminal: the retry queue may move the same row back to
# GENERATING, and admins may spawn a new operation from it.
TERMINAL_STATES: FrozenSet[OperationState] = frozenset({OperationState.COMPLETED, OperationState.CANCELLED})

VALID_TRANSITIONS: Dict[OperationState, FrozenSet[OperationState]] = {
    OperationState.INITIALIZED: frozenset({OperationState.GENERATING, OperationState.CANCELLED}),
    OperationState.GENERATING: frozenset(
        {
            OperationState.PART_COMPLETED,
            OperationState.COMPLETED,
            OperationState.FAILED,
            OperationState.PAUSED,
            OperationState.CANCELLED,
        }
    ),
    OperationState.PART_COMPLETED: frozenset(
        {
            OperationState.GENERATING,
            OperationState.COMPLETED,
            OperationState.FAILED,
            OperationState.PAUSED,
            OperationState.CANCELLED,
        }
    ),
    OperationState.PAUSED: frozenset({OperationState.GENERATING, OperationState.CANCELLED}),
    OperationState.FAILED: frozenset({OperationState.GENERATING, OperationState.CANCELLED}),
    OperationState.COMPLETED: frozenset(),
    OperationState.CANCELLED: frozenset(),
}

# States an admin may pause from
PAUSABLE_STATES: FrozenSet[OperationState] = frozenset(
    {OperationState.GENERATING, OperationState.PART_COMPLETED}
)


class OperationEventType(str, Enum):
    """Kinds of entries in an operation's event log."""

    OPERATION_STARTED = "operation_started"
    PART_STARTED = "part_started"
    PART_COMPLETED = "part_completed"
    PART_FAILED = "part_failed"
    OPERATION_COMPLETED = "operation_completed"
    OPERATION_FAILED = "operation_failed"
    OPERATION_PAUSED = "operation_paused"
    OPERATION_RESUMED = "operation_resumed"
    OPERATION_CANCELLED = "operation_cancelled"
    OPERATION_RETRIED = "operation_retried"
    ADMIN_INTERVENTION = "admin_intervention"


class ActorType(str, Enum):
    """Who caused an operation or a transition."""

    USER = "user"
    SYSTEM = "system"
    ADMIN = "admin"
    RETRY_QUEUE = "retry_queue"


class SessionStatus(str, Enum):
    """Externally visible status of a purchased analysis session."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def event_type_for_transition(previous: OperationState, new: OperationState) -> OperationEventType:
    """Event type recorded for a plain state transition."""
    if new == OperationState.GENERATING:
        if previous == OperationState.INITIALIZED:
            return OperationEventType.OPERATION_STARTED
        if previous == OperationState.PAUSED:
            return OperationEventType.OPERATION_RESUMED
        if previous == OperationState.FAILED:
            return OperationEventType.OPERATION_RETRIED
    mapping = {
        OperationState.PAUSED: OperationEventType.OPERATION_PAUSED,
        OperationState.CANCELLED: OperationEventType.OPERATION_CANCELLED,
        OperationState.FAILED: OperationEventType.OPERATION_FAILED,
        OperationState.COMPLETED: OperationEventType.OPERATION_COMPLETED,
    }
    return mapping.get(new, OperationEventType.ADMIN_INTERVENTION)


class AnalysisOperation(BaseModel):
    """One attempt to run an analysis job end-to-end.

    Never deleted; a regeneration creates a new row for the same session.
    """

    operation_id: str = Field(..., description="Unique operation identifier (op_<ulid>)")
    session_id: str = Field(..., description="Purchased session this attempt belongs to")
    tier: Tier = Field(..., description="Tier, fixes total_parts")
    state: OperationState = Field(default=OperationState.INITIALIZED, description="Current FSM state")

    total_parts: int = Field(..., ge=1, description="Parts for this tier (1, 2 or 6)")
    completed_parts: int = Field(default=0, ge=0, description="Parts finished in this attempt")
    current_part: int = Field(default=0, ge=0, description="Part in progress; 0 before the first part")

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    last_part_completed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    estimated_completion_at: Optional[datetime] = None

    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    failed_part: Optional[int] = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=5, ge=0)

    triggered_by: ActorType = Field(default=ActorType.USER)
    admin_notes: Optional[str] = None
    handoff_state: Optional[str] = Field(None, description="Accumulated STATE_HANDOFF after the last part")
    partial_success: bool = Field(default=False, description="Completed below total_parts by threshold override")

    @model_validator(mode="after")
    def _check_progress(self) -> "AnalysisOperation":
        if self.completed_parts > self.total_parts:
            raise ValueError(
                f"completed_parts ({self.completed_parts}) exceeds total_parts ({self.total_parts})"
            )
        if self.current_part > self.total_parts:
            raise ValueError(f"current_part ({self.current_part}) exceeds total_parts ({self.total_parts})")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class AnalysisOperationEvent(BaseModel):
    """Immutable, hash-linked entry in an operation's event log."""

    sequence: int = Field(..., ge=1, description="Monotonic per-operation sequence number")
    timestamp: datetime = Field(default_factory=utc_now)
    operation_id: str
    session_id: str
    event_type: OperationEventType
    part_number: Optional[int] = None
    previous_state: Optional[OperationState] = None
    new_state: Optional[OperationState] = None
    completed_parts: Optional[int] = Field(None, description="Progress after this event")
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    token_count: Optional[int] = None
    actor_type: ActorType = ActorType.SYSTEM
    actor_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    prev_hash: str = Field(default=GENESIS_HASH, description="Hash of previous entry")
    event_hash: str = Field(default="", description="Hash of this entry (computed)")

    model_config = {"frozen": True}

    def compute_hash(self) -> str:
        """SHA-256 over the canonical JSON of every field except event_hash."""
        data = self.model_dump(mode="json", exclude={"event_hash"})
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def sealed(self) -> "AnalysisOperationEvent":
        """Copy of this event with event_hash filled in."""
        return self.model_copy(update={"event_hash": self.compute_hash()})


class EventChainVerification(BaseModel):
    """Result of verifying an operation's event chain."""

    valid: bool
    total_events: int
    divergence_point: Optional[int] = Field(None, description="Sequence where divergence was detected")
    divergence_type: Optional[str] = Field(
        None, description="hash_mismatch, chain_break, sequence_gap or state_drift"
    )
    divergence_detail: Optional[str] = None


class OperationRecord(BaseModel):
    """On-disk document: the operation row and its full event log."""

    operation: AnalysisOperation
    events: List[AnalysisOperationEvent] = Field(default_factory=list)


class RetryStatus(str, Enum):
    """Retry queue item status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_RETRY_STATUSES: FrozenSet[RetryStatus] = frozenset({RetryStatus.PENDING, RetryStatus.PROCESSING})


class RetryPriority(IntEnum):
    """Queue priority; higher is served first."""

    LOW = 1
    MEDIUM = 2
    HIGH = 3


TIER_RETRY_PRIORITY: Dict[Tier, RetryPriority] = {
    Tier.STANDARD: RetryPriority.LOW,
    Tier.MEDIUM: RetryPriority.MEDIUM,
    Tier.FULL: RetryPriority.HIGH,
}


class RetryQueueItem(BaseModel):
    """A pending automatic retry for one session."""

    session_id: str
    tier: Tier
    problem_statement: str
    email: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=5, ge=0)
    priority: RetryPriority = RetryPriority.LOW
    status: RetryStatus = RetryStatus.PENDING
    last_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    next_retry_at: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RETRY_STATUSES

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


@dataclass
class ResumeConfig:
    """Where a resumed run picks up.

    Attributes:
        resume_from_part: First part to generate (1-based).
        initial_handoff_state: Accumulated STATE_HANDOFF from earlier parts.
        previous_parts: Content of parts already completed, keyed by part number.
    """

    resume_from_part: int = 1
    initial_handoff_state: str = ""
    previous_parts: Dict[int, str] = field(default_factory=dict)


class AnalysisOutcome(str, Enum):
    """How a single orchestrated run ended."""

    COMPLETED = "completed"
    PARTIAL_SUCCESS = "partial_success"
    QUEUED = "queued"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"
    SKIPPED = "skipped"
