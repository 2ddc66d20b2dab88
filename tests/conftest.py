"""Shared fixtures for validate-strategy tests."""

import random
from typing import Any, Dict, List, Optional, Sequence
from unittest.mock import AsyncMock

import pytest

from validate_strategy.core.analysis.collaborators import AnalysisSession, FileSessionStore
from validate_strategy.core.analysis.llm import LLMMessage
from validate_strategy.core.analysis.models import SessionStatus
from validate_strategy.core.analysis.orchestrator import AnalysisOrchestrator
from validate_strategy.core.analysis.retry_queue import RetryQueueStore
from validate_strategy.core.analysis.state_machine import AnalysisStateMachine
from validate_strategy.core.analysis.storage import OperationStorage
from validate_strategy.core.analysis.tracking import OperationTracker
from validate_strategy.core.errors import AnalysisError
from validate_strategy.core.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    reset_llm_circuit_breaker_for_testing,
)
from validate_strategy.core.tiers import Tier


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLLM:
    """Scripted LLM: each call consumes the next response, raising exceptions."""

    def __init__(self, responses: Optional[List[Any]] = None, default: str = "Generated analysis content"):
        self.responses = list(responses or [])
        self.default = default
        self.calls: List[List[LLMMessage]] = []

    async def invoke(self, messages: Sequence[LLMMessage]) -> str:
        self.calls.append(list(messages))
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, BaseException):
                raise response
            return response
        return self.default


class RecordingNotifier:
    """Notifier that keeps every alert for assertions."""

    def __init__(self):
        self.owner_alerts: List[Dict[str, str]] = []
        self.user_notices: List[Dict[str, Any]] = []

    async def notify_owner(self, title: str, content: str) -> None:
        self.owner_alerts.append({"title": title, "content": content})

    async def notify_analysis_failed(
        self, session_id: str, tier: Tier, email: str, queued: bool, error: AnalysisError
    ) -> None:
        self.user_notices.append(
            {"session_id": session_id, "tier": tier, "email": email, "queued": queued, "error": error}
        )


class RecordingEmailSender:
    """EmailSender that keeps every completion email."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send_validate_strategy_email(self, **kwargs: Any) -> None:
        self.sent.append(kwargs)


@pytest.fixture(autouse=True)
def _fresh_llm_breaker():
    """Isolate the process-wide LLM breaker between tests."""
    reset_llm_circuit_breaker_for_testing()
    yield
    reset_llm_circuit_breaker_for_testing()


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def operation_storage(data_dir):
    return OperationStorage(data_dir)


@pytest.fixture
def session_store(data_dir):
    return FileSessionStore(data_dir)


@pytest.fixture
def state_machine(operation_storage, session_store):
    return AnalysisStateMachine(operation_storage, session_store)


@pytest.fixture
def retry_queue(data_dir):
    return RetryQueueStore(data_dir, rng=random.Random(0))


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("llm-test", CircuitBreakerConfig(failure_threshold=3, reset_timeout=30.0), clock=clock)


@pytest.fixture
def fake_llm():
    return FakeLLM()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def email_sender():
    return RecordingEmailSender()


@pytest.fixture
def orchestrator(state_machine, session_store, fake_llm, retry_queue, breaker, notifier, email_sender):
    return AnalysisOrchestrator(
        state_machine,
        session_store,
        fake_llm,
        retry_queue,
        breaker=breaker,
        tracker=OperationTracker(state_machine),
        notifier=notifier,
        email_sender=email_sender,
        app_url="https://app.test",
        rng=random.Random(0),
        sleep_func=AsyncMock(),
    )


@pytest.fixture
def make_session(session_store):
    """Store a processing session and return it."""

    def _make(
        session_id: str = "sess-1",
        tier: Tier = Tier.FULL,
        problem_statement: str = "Our onboarding flow loses half of new users at step two.",
        email: Optional[str] = None,
    ) -> AnalysisSession:
        session = AnalysisSession(
            session_id=session_id,
            tier=tier,
            problem_statement=problem_statement,
            email=email,
            status=SessionStatus.PROCESSING,
        )
        session_store.save(session)
        return session

    return _make
