"""Persisted state machine for analysis operations.

Every mutation goes through :meth:`OperationStorage.update`, which applies
the change and appends the hash-linked event that records it in one atomic
write.  Transition guards are evaluated against the row read under the
operation lock, so two writers cannot both move the same operation out of
one state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ulid import ULID

from validate_strategy.core.analysis.collaborators import AnalysisPersistence
from validate_strategy.core.analysis.models import (
    GENESIS_HASH,
    PAUSABLE_STATES,
    VALID_TRANSITIONS,
    ActorType,
    AnalysisOperation,
    AnalysisOperationEvent,
    EventChainVerification,
    OperationEventType,
    OperationRecord,
    OperationState,
    SessionStatus,
    event_type_for_transition,
    utc_now,
)
from validate_strategy.core.analysis.storage import OperationStorage
from validate_strategy.core.errors import (
    AnalysisErrorCode,
    ApiError,
    InvalidTransitionError,
    OperationNotFoundError,
)
from validate_strategy.core.observability import get_audit_logger
from validate_strategy.core.tiers import ESTIMATED_PART_DURATION_SECONDS, TIER_PARTS, Tier, parse_tier

logger = logging.getLogger(__name__)

DEFAULT_OPERATION_MAX_RETRIES = 5


def new_operation_id() -> str:
    return f"op_{ULID()}"


def replay_state(events: Sequence[AnalysisOperationEvent]) -> Optional[OperationState]:
    """Fold an ordered event list into the state it leads to."""
    state: Optional[OperationState] = None
    for event in events:
        if event.new_state is not None:
            state = event.new_state
    return state


class AnalysisStateMachine:
    """Operation lifecycle, admin controls and queries.

    Args:
        storage: Operation document store.
        persistence: Session store; needed for regeneration and detail views.
        clock: Injectable UTC clock.
    """

    def __init__(
        self,
        storage: OperationStorage,
        persistence: Optional[AnalysisPersistence] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.persistence = persistence
        self._clock = clock

    # =========================================================================
    # Creation and Transitions
    # =========================================================================

    def create_operation(
        self,
        session_id: str,
        tier: str | Tier,
        triggered_by: ActorType = ActorType.USER,
        *,
        actor_id: Optional[str] = None,
        admin_notes: Optional[str] = None,
        completed_parts: int = 0,
        handoff_state: Optional[str] = None,
        max_retries: int = DEFAULT_OPERATION_MAX_RETRIES,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AnalysisOperation:
        """Create a new operation in ``initialized`` with its first event."""
        tier = parse_tier(tier)
        total_parts = TIER_PARTS[tier]
        now = self._clock()
        remaining = total_parts - completed_parts
        operation = AnalysisOperation(
            operation_id=new_operation_id(),
            session_id=session_id,
            tier=tier,
            total_parts=total_parts,
            completed_parts=completed_parts,
            created_at=now,
            updated_at=now,
            estimated_completion_at=now + timedelta(seconds=remaining * ESTIMATED_PART_DURATION_SECONDS[tier]),
            max_retries=max_retries,
            triggered_by=triggered_by,
            admin_notes=admin_notes,
            handoff_state=handoff_state,
        )
        record = self.storage.create(
            operation,
            {
                "event_type": OperationEventType.OPERATION_STARTED,
                "new_state": OperationState.INITIALIZED,
                "completed_parts": completed_parts,
                "actor_type": triggered_by,
                "actor_id": actor_id,
                "metadata": {"total_parts": total_parts, **(metadata or {})},
            },
        )
        logger.info(
            "Created operation %s for session %s (%s tier, %d parts)",
            operation.operation_id,
            session_id,
            tier.value,
            total_parts,
        )
        return record.operation

    def transition(
        self,
        operation_id: str,
        new_state: OperationState,
        *,
        actor_type: ActorType = ActorType.SYSTEM,
        actor_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AnalysisOperation:
        """Move an operation to ``new_state``.

        Raises:
            InvalidTransitionError: If ``new_state`` is not reachable.
            OperationNotFoundError: If the operation does not exist.
        """
        new_state = OperationState(new_state)

        def mutate(op: AnalysisOperation) -> Tuple[AnalysisOperation, Dict[str, Any]]:
            previous = self._check_transition(op, new_state)
            now = self._clock()
            if new_state == OperationState.GENERATING:
                if previous == OperationState.INITIALIZED:
                    op.started_at = now
                    op.current_part = max(op.completed_parts + 1, 1)
                elif previous == OperationState.FAILED:
                    op.retry_count += 1
                    op.current_part = min(op.completed_parts + 1, op.total_parts)
            elif new_state == OperationState.FAILED:
                op.last_error = error_message
                op.last_error_at = now
                op.failed_part = op.current_part or None
            elif new_state == OperationState.COMPLETED:
                op.completed_at = now
            op.state = new_state
            return op, {
                "event_type": event_type_for_transition(previous, new_state),
                "part_number": op.current_part or None,
                "previous_state": previous,
                "new_state": new_state,
                "completed_parts": op.completed_parts,
                "error_code": error_code,
                "error_message": error_message,
                "actor_type": actor_type,
                "actor_id": actor_id,
                "metadata": metadata or {},
            }

        operation = self.storage.update(operation_id, mutate).operation
        logger.info("Transitioned %s -> %s", operation_id, new_state.value)
        return operation

    def record_part_start(
        self,
        operation_id: str,
        part_number: int,
        *,
        actor_type: ActorType = ActorType.SYSTEM,
    ) -> AnalysisOperation:
        """Mark ``part_number`` as in progress, moving the operation to generating."""

        def mutate(op: AnalysisOperation) -> Tuple[AnalysisOperation, Dict[str, Any]]:
            self._check_part_number(op, part_number)
            previous = op.state
            if previous == OperationState.PAUSED:
                # Leaving paused is an admin resume, never a side effect of tracking
                raise InvalidTransitionError(
                    op.operation_id,
                    previous.value,
                    OperationState.GENERATING.value,
                    [OperationState.CANCELLED.value],
                )
            if previous != OperationState.GENERATING:
                self._check_transition(op, OperationState.GENERATING)
            if previous == OperationState.FAILED:
                op.retry_count += 1
            if op.started_at is None:
                op.started_at = self._clock()
            op.current_part = part_number
            op.state = OperationState.GENERATING
            return op, {
                "event_type": OperationEventType.PART_STARTED,
                "part_number": part_number,
                "previous_state": previous,
                "new_state": OperationState.GENERATING,
                "completed_parts": op.completed_parts,
                "actor_type": actor_type,
            }

        return self.storage.update(operation_id, mutate).operation

    def record_part_completion(
        self,
        operation_id: str,
        part_number: int,
        *,
        duration_ms: int = 0,
        token_count: Optional[int] = None,
        handoff_state: Optional[str] = None,
    ) -> AnalysisOperation:
        """Record a finished part; the last part completes the operation.

        A part that finishes after an admin pause is counted but the
        operation stays paused.
        """

        def mutate(op: AnalysisOperation) -> Tuple[AnalysisOperation, Dict[str, Any]]:
            self._check_part_number(op, part_number)
            previous = op.state
            now = self._clock()
            op.completed_parts = max(op.completed_parts, part_number)
            op.last_part_completed_at = now
            if handoff_state is not None:
                op.handoff_state = handoff_state

            if previous == OperationState.PAUSED:
                # A part in flight when the pause landed still counts; resume continues after it
                new_state = OperationState.PAUSED
                event_type = OperationEventType.PART_COMPLETED
                op.current_part = min(part_number + 1, op.total_parts)
            elif op.completed_parts >= op.total_parts:
                new_state = OperationState.COMPLETED
                event_type = OperationEventType.OPERATION_COMPLETED
                self._check_transition(op, new_state)
                op.current_part = op.total_parts
                op.completed_at = now
                op.estimated_completion_at = now
            else:
                new_state = OperationState.PART_COMPLETED
                event_type = OperationEventType.PART_COMPLETED
                self._check_transition(op, new_state)
                op.current_part = part_number + 1
                remaining = op.total_parts - op.completed_parts
                op.estimated_completion_at = now + timedelta(
                    seconds=remaining * ESTIMATED_PART_DURATION_SECONDS[op.tier]
                )
            op.state = new_state
            return op, {
                "event_type": event_type,
                "part_number": part_number,
                "previous_state": previous,
                "new_state": new_state,
                "completed_parts": op.completed_parts,
                "duration_ms": duration_ms,
                "token_count": token_count,
            }

        operation = self.storage.update(operation_id, mutate).operation
        logger.info(
            "Operation %s part %d complete (%d/%d)",
            operation_id,
            part_number,
            operation.completed_parts,
            operation.total_parts,
        )
        return operation

    def record_part_failure(
        self,
        operation_id: str,
        part_number: int,
        error_code: str,
        error_message: str,
    ) -> AnalysisOperation:
        """Record a failed part and move the operation to failed."""

        def mutate(op: AnalysisOperation) -> Tuple[AnalysisOperation, Dict[str, Any]]:
            self._check_part_number(op, part_number)
            previous = self._check_transition(op, OperationState.FAILED)
            op.state = OperationState.FAILED
            op.failed_part = part_number
            op.last_error = error_message
            op.last_error_at = self._clock()
            return op, {
                "event_type": OperationEventType.PART_FAILED,
                "part_number": part_number,
                "previous_state": previous,
                "new_state": OperationState.FAILED,
                "completed_parts": op.completed_parts,
                "error_code": error_code,
                "error_message": error_message,
            }

        operation = self.storage.update(operation_id, mutate).operation
        logger.warning("Operation %s part %d failed: %s", operation_id, part_number, error_code)
        return operation

    def record_partial_success(self, operation_id: str) -> AnalysisOperation:
        """Complete an operation below total_parts under the tier's partial threshold."""

        def mutate(op: AnalysisOperation) -> Tuple[AnalysisOperation, Dict[str, Any]]:
            previous = self._check_transition(op, OperationState.COMPLETED)
            op.state = OperationState.COMPLETED
            op.partial_success = True
            op.completed_at = self._clock()
            return op, {
                "event_type": OperationEventType.OPERATION_COMPLETED,
                "previous_state": previous,
                "new_state": OperationState.COMPLETED,
                "completed_parts": op.completed_parts,
                "metadata": {
                    "is_partial_success": True,
                    "completed_parts": op.completed_parts,
                    "total_parts": op.total_parts,
                },
            }

        return self.storage.update(operation_id, mutate).operation

    # =========================================================================
    # Admin Operations
    # =========================================================================

    def pause_operation(
        self, operation_id: str, admin_wallet: str, reason: Optional[str] = None
    ) -> AnalysisOperation:
        """Pause a running operation; only from generating or part_completed."""
        current = self.get_operation(operation_id)
        if current.state not in PAUSABLE_STATES:
            raise InvalidTransitionError(
                operation_id,
                current.state.value,
                OperationState.PAUSED.value,
                [s.value for s in VALID_TRANSITIONS[current.state]],
            )
        operation = self.transition(
            operation_id,
            OperationState.PAUSED,
            actor_type=ActorType.ADMIN,
            actor_id=admin_wallet,
            metadata={"reason": reason},
        )
        get_audit_logger().admin_action(
            "pause_operation", admin_wallet, target_type="operation", target_id=operation_id, reason=reason
        )
        return operation

    def resume_operation(self, operation_id: str, admin_wallet: str) -> AnalysisOperation:
        """Return a paused operation to generating."""
        current = self.get_operation(operation_id)
        if current.state != OperationState.PAUSED:
            raise InvalidTransitionError(
                operation_id,
                current.state.value,
                OperationState.GENERATING.value,
                [OperationState.PAUSED.value],
            )
        operation = self.transition(
            operation_id,
            OperationState.GENERATING,
            actor_type=ActorType.ADMIN,
            actor_id=admin_wallet,
            metadata={"resume_from_part": current.completed_parts + 1},
        )
        get_audit_logger().admin_action(
            "resume_operation", admin_wallet, target_type="operation", target_id=operation_id
        )
        return operation

    def cancel_operation(
        self, operation_id: str, admin_wallet: str, reason: Optional[str] = None
    ) -> AnalysisOperation:
        """Cancel an operation; a run in flight stops at its next part boundary."""
        operation = self.transition(
            operation_id,
            OperationState.CANCELLED,
            actor_type=ActorType.ADMIN,
            actor_id=admin_wallet,
            metadata={"reason": reason},
        )
        get_audit_logger().admin_action(
            "cancel_operation", admin_wallet, target_type="operation", target_id=operation_id, reason=reason
        )
        return operation

    async def trigger_regeneration(
        self,
        session_id: str,
        admin_wallet: str,
        *,
        from_part: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> AnalysisOperation:
        """Create a new operation for ``session_id`` and mark the session processing.

        The previous operation is left untouched.  With ``from_part`` the new
        operation starts with ``from_part - 1`` parts already counted as done.

        Raises:
            ApiError: VALIDATION_SESSION_NOT_FOUND if the session is unknown.
            ValueError: If ``from_part`` is outside the tier's part range, or a
                part before it has no stored content.
        """
        if self.persistence is None:
            raise RuntimeError("trigger_regeneration requires a persistence collaborator")
        session = await self.persistence.get_analysis_session_by_id(session_id)
        if session is None:
            raise ApiError(
                AnalysisErrorCode.VALIDATION_SESSION_NOT_FOUND,
                f"Session not found: {session_id}",
                {"session_id": session_id},
            )
        total_parts = TIER_PARTS[session.tier]
        start_part = from_part or 1
        if not 1 <= start_part <= total_parts:
            raise ValueError(f"from_part must be between 1 and {total_parts}, got {from_part}")
        if start_part > 1:
            result = await self.persistence.get_analysis_result(session_id)
            stored = set(result.parts) if result is not None else set()
            missing = [n for n in range(1, start_part) if n not in stored]
            if missing:
                raise ValueError(f"from_part {start_part} needs stored content for parts {missing}")

        previous = self.get_operation_by_session_id(session_id)
        operation = self.create_operation(
            session_id,
            session.tier,
            ActorType.ADMIN,
            actor_id=admin_wallet,
            admin_notes=notes,
            completed_parts=start_part - 1,
            metadata={
                "from_part": start_part,
                "previous_operation_id": previous.operation_id if previous else None,
            },
        )
        await self.persistence.update_analysis_session_status(session_id, SessionStatus.PROCESSING)
        get_audit_logger().admin_action(
            "trigger_regeneration",
            admin_wallet,
            target_type="analysis",
            target_id=session_id,
            new_operation_id=operation.operation_id,
            from_part=start_part,
        )
        logger.info("Admin %s triggered regeneration for session %s", admin_wallet, session_id)
        return operation

    # =========================================================================
    # Queries
    # =========================================================================

    def get_operation(self, operation_id: str) -> AnalysisOperation:
        return self.get_record(operation_id).operation

    def get_record(self, operation_id: str) -> OperationRecord:
        record = self.storage.load(operation_id)
        if record is None:
            raise OperationNotFoundError(operation_id=operation_id)
        return record

    def get_operations(
        self,
        state: Optional[OperationState] = None,
        tier: Optional[Tier] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[AnalysisOperation]:
        """Operations matching the filters, newest first."""
        operations = [
            op
            for op in self.storage.list_operations()
            if (state is None or op.state == OperationState(state))
            and (tier is None or op.tier == Tier(tier))
        ]
        operations.sort(key=lambda op: (op.created_at, op.operation_id), reverse=True)
        return operations[offset : offset + limit]

    async def get_operation_details(self, operation_id: str) -> Dict[str, Any]:
        """Operation, its event log and any stored part content."""
        record = self.get_record(operation_id)
        parts: Dict[int, str] = {}
        if self.persistence is not None:
            result = await self.persistence.get_analysis_result(record.operation.session_id)
            if result is not None:
                parts = dict(sorted(result.parts.items()))
        return {
            "operation": record.operation.model_dump(mode="json"),
            "events": [event.model_dump(mode="json") for event in record.events],
            "parts": {str(number): content for number, content in parts.items()},
        }

    def get_operation_by_session_id(self, session_id: str) -> Optional[AnalysisOperation]:
        """Latest operation for a session."""
        matches = [op for op in self.storage.list_operations() if op.session_id == session_id]
        if not matches:
            return None
        return max(matches, key=lambda op: (op.created_at, op.operation_id))

    def get_retryable_operations(self) -> List[AnalysisOperation]:
        """Failed operations that still have retries left."""
        return [
            op
            for op in self.storage.list_operations()
            if op.state == OperationState.FAILED and op.retry_count < op.max_retries
        ]

    # =========================================================================
    # Event Chain
    # =========================================================================

    def verify_events(self, operation_id: str) -> EventChainVerification:
        """Walk the event chain checking sequence, hash links and replayed state."""
        record = self.get_record(operation_id)
        events = record.events
        prev_hash = GENESIS_HASH
        state: Optional[OperationState] = None

        for index, event in enumerate(events, start=1):
            if event.sequence != index:
                return self._divergence(
                    events, event.sequence, "sequence_gap", f"expected sequence {index}, found {event.sequence}"
                )
            if event.prev_hash != prev_hash:
                return self._divergence(
                    events, event.sequence, "chain_break", "prev_hash does not match preceding event"
                )
            if event.compute_hash() != event.event_hash:
                return self._divergence(events, event.sequence, "hash_mismatch", "event content was modified")
            if state is not None and event.previous_state is not None and event.previous_state != state:
                return self._divergence(
                    events,
                    event.sequence,
                    "state_drift",
                    f"event previous_state {event.previous_state.value} but replayed state is {state.value}",
                )
            if event.new_state is not None:
                state = event.new_state
            prev_hash = event.event_hash

        if state != record.operation.state:
            last = events[-1].sequence if events else 0
            return self._divergence(
                events,
                last,
                "state_drift",
                f"replayed state {state.value if state else None} != stored {record.operation.state.value}",
            )
        return EventChainVerification(valid=True, total_events=len(events))

    @staticmethod
    def _divergence(
        events: Sequence[AnalysisOperationEvent], point: int, kind: str, detail: str
    ) -> EventChainVerification:
        return EventChainVerification(
            valid=False,
            total_events=len(events),
            divergence_point=point,
            divergence_type=kind,
            divergence_detail=detail,
        )

    # =========================================================================
    # Guards
    # =========================================================================

    @staticmethod
    def _check_transition(op: AnalysisOperation, new_state: OperationState) -> OperationState:
        allowed = VALID_TRANSITIONS[op.state]
        if new_state not in allowed:
            raise InvalidTransitionError(
                op.operation_id, op.state.value, new_state.value, [s.value for s in allowed]
            )
        return op.state

    @staticmethod
    def _check_part_number(op: AnalysisOperation, part_number: int) -> None:
        if not 1 <= part_number <= op.total_parts:
            raise ValueError(
                f"part_number {part_number} outside 1..{op.total_parts} for operation {op.operation_id}"
            )
