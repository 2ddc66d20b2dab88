"""Operation state machine and retry queue error classes."""

from __future__ import annotations

from typing import Iterable, Optional


class OperationNotFoundError(Exception):
    """No analysis operation matches the requested identifier.

    Attributes:
        operation_id: Operation identifier that was looked up (if any).
        session_id: Session identifier that was looked up (if any).
    """

    def __init__(self, operation_id: Optional[str] = None, session_id: Optional[str] = None):
        self.operation_id = operation_id
        self.session_id = session_id
        if operation_id:
            message = f"Operation not found: {operation_id}"
        else:
            message = f"No operation found for session: {session_id}"
        super().__init__(message)


class InvalidTransitionError(Exception):
    """A state transition was requested from a state that does not allow it.

    Attributes:
        operation_id: Operation the transition was requested for.
        from_state: Current state of the operation.
        to_state: Requested target state.
        allowed: States reachable from ``from_state``.
    """

    def __init__(
        self,
        operation_id: str,
        from_state: str,
        to_state: str,
        allowed: Iterable[str] = (),
    ):
        self.operation_id = operation_id
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = sorted(allowed)
        allowed_text = ", ".join(self.allowed) if self.allowed else "none (terminal state)"
        super().__init__(
            f"Invalid transition for {operation_id}: {from_state} -> {to_state} "
            f"(allowed from {from_state}: {allowed_text})"
        )


class QueueItemExistsError(Exception):
    """An active retry queue item already exists for the session."""

    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(f"Session {session_id} already has an active retry queue item ({status})")
