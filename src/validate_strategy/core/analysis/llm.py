"""
LLM invocation client.

Wraps a single chat-completion call to an OpenAI-compatible endpoint and
returns the generated text.  Failures are raised as classified
``ApiError`` instances; retries and circuit breaking are applied by the
caller (see :mod:`validate_strategy.core.analysis.generation`).

Example:
    client = LLMClient(api_url="https://api.perplexity.ai/chat/completions",
                       api_key="...", model="sonar-pro")
    text = await client.invoke([LLMMessage.system("..."), LLMMessage.user("...")])
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from validate_strategy.core.errors import AnalysisErrorCode, ApiError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0


class ChatRole(str, Enum):
    """Role of a message in the chat sent to the model."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class LLMMessage:
    """A message in the chat sent to the model."""

    role: ChatRole
    content: str

    @classmethod
    def system(cls, content: str) -> "LLMMessage":
        return cls(ChatRole.SYSTEM, content)

    @classmethod
    def user(cls, content: str) -> "LLMMessage":
        return cls(ChatRole.USER, content)

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary for API calls."""
        return {"role": self.role.value, "content": self.content}


class LLMInvoker(Protocol):
    """Anything that can turn a chat into generated text."""

    async def invoke(self, messages: Sequence[LLMMessage]) -> str: ...


class LLMClient:
    """Chat-completion client built on ``httpx.AsyncClient``.

    Args:
        api_url: Full chat-completions endpoint URL.
        api_key: Bearer token for the endpoint.
        model: Model name sent with every request.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str],
        model: str,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not api_key:
            raise ApiError(
                AnalysisErrorCode.API_AUTHENTICATION,
                "LLM API key is not configured",
                endpoint=api_url,
            )
        self._api_url = api_url
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._transport = transport

    @property
    def model(self) -> str:
        return self._model

    async def invoke(self, messages: Sequence[LLMMessage]) -> str:
        """Send ``messages`` and return the first choice's content.

        Raises:
            ApiError: On HTTP errors (401/403 auth, 429 rate limit, >=500
                unavailable), malformed payloads, or empty content.
            httpx.TimeoutException / httpx.ConnectError: Left for
                ``classify_error`` to map.
        """
        payload = {
            "model": self._model,
            "messages": [message.to_dict() for message in messages],
        }
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(self._api_url, json=payload, headers=headers)

        if response.status_code >= 400:
            raise self._error_for_status(response)

        try:
            data = response.json()
        except ValueError as exc:
            raise ApiError(
                AnalysisErrorCode.API_INVALID_RESPONSE,
                "LLM response is not valid JSON",
                status_code=response.status_code,
                endpoint=self._api_url,
                original_error=exc,
            ) from exc

        content = _extract_content(data)
        if not content or not content.strip():
            raise ApiError(
                AnalysisErrorCode.PROCESSING_CONTENT_EMPTY,
                "LLM returned empty content",
                endpoint=self._api_url,
            )
        logger.debug("LLM call returned %d chars", len(content))
        return content

    def _error_for_status(self, response: httpx.Response) -> ApiError:
        status = response.status_code
        message = f"LLM API error {status}: {_extract_error_message(response)}"
        if status in (401, 403):
            code = AnalysisErrorCode.API_AUTHENTICATION
        elif status == 429:
            code = AnalysisErrorCode.API_RATE_LIMIT
        elif status == 402:
            code = AnalysisErrorCode.API_QUOTA_EXCEEDED
        elif status >= 500:
            code = AnalysisErrorCode.API_SERVICE_UNAVAILABLE
        else:
            code = AnalysisErrorCode.API_INVALID_RESPONSE
        return ApiError(code, message, status_code=status, endpoint=self._api_url)


def _extract_content(data: Any) -> Optional[str]:
    try:
        choices: List[Dict[str, Any]] = data["choices"]
        return choices[0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise ApiError(
            AnalysisErrorCode.API_INVALID_RESPONSE,
            "LLM response has no choices[0].message.content",
        ) from None


def _extract_error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] if response.text else "Unknown error"
    if isinstance(data, dict):
        error = data.get("error", data.get("message"))
        if isinstance(error, dict):
            return str(error.get("message", error))
        if error:
            return str(error)
    return response.text[:200]
