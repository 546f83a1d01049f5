"""Client base class shared by all language-model integrations."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

__all__ = [
    "END_OF_STREAM",
    "ChatResponse",
    "LLMClient",
    "LLMClientError",
    "LLMEmptyResponseError",
    "LLMTimeoutError",
    "LLMTransportError",
    "Message",
    "StreamItem",
    "StreamUsage",
    "collect_stream",
]

LOGGER = logging.getLogger(__name__)

Message = Dict[str, str]


class _EndOfStream:
    """Sentinel yielded after the final streamed chunk."""

    _instance: Optional["_EndOfStream"] = None

    def __new__(cls) -> "_EndOfStream":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_STREAM"


END_OF_STREAM = _EndOfStream()


@dataclass(slots=True)
class StreamUsage:
    """Token counts reported mid-stream; later values replace earlier ones."""

    counts: Dict[str, int] = field(default_factory=dict)


StreamItem = Union[str, StreamUsage, _EndOfStream]


class LLMClientError(RuntimeError):
    """Base error raised for LLM client failures."""


class LLMTransportError(LLMClientError):
    """Raised when the transport fails or the API answers with a non-2xx status."""

    def __init__(self, message: str, *, status: Optional[int] = None, body: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.body = body

    @property
    def retryable(self) -> bool:
        return self.status is None or self.status == 429 or self.status >= 500


class LLMTimeoutError(LLMTransportError):
    """Raised when the model does not answer within the configured timeout."""

    @property
    def retryable(self) -> bool:
        return False


class LLMEmptyResponseError(LLMClientError):
    """Raised when the model answers without any text content."""


@dataclass(slots=True)
class ChatResponse:
    """Normalised reply from a chat call."""

    content: str
    usage: Dict[str, int] = field(default_factory=dict)
    model: str = ""
    raw: Any = None

    @property
    def tokens_used(self) -> int:
        if "total_tokens" in self.usage:
            return int(self.usage["total_tokens"])
        return int(self.usage.get("input_tokens", 0)) + int(self.usage.get("output_tokens", 0))


def _reassemble(chunks: Iterable[StreamItem]) -> Tuple[str, Dict[str, int]]:
    parts: List[str] = []
    usage: Dict[str, int] = {}
    for chunk in chunks:
        if chunk is END_OF_STREAM:
            return "".join(parts), usage
        if isinstance(chunk, StreamUsage):
            usage.update(chunk.counts)
            continue
        parts.append(str(chunk))
    raise LLMTransportError("Stream ended before the end-of-stream marker was received.")


def collect_stream(chunks: Iterable[StreamItem]) -> str:
    """Reassemble streamed text; a stream that stops without the end marker is an error."""
    text, _ = _reassemble(chunks)
    return text


class LLMClient:
    """Chat-style client with bounded transport retries.

    Subclasses implement ``_raw_chat`` (and optionally ``_raw_stream``);
    this base applies retries and the empty-content check.
    """

    def __init__(
        self,
        model: str,
        *,
        temperature: float = 0.2,
        max_tokens: int = 4096,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        self._model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        """Return the default model name configured for this client."""
        return self._model

    def chat(
        self,
        messages: Sequence[Message],
        *,
        role: Optional[str] = None,
        correlation: Optional[Mapping[str, Any]] = None,
    ) -> ChatResponse:
        """Send ``messages`` and return the reply, retrying transient transport errors."""
        response = self._with_retries(
            lambda: self._raw_chat(list(messages), role=role, correlation=dict(correlation or {})),
            role=role,
        )
        if not response.content or not response.content.strip():
            raise LLMEmptyResponseError(f"Model {self._model} returned an empty response.")
        return response

    def stream(
        self,
        messages: Sequence[Message],
        *,
        role: Optional[str] = None,
        correlation: Optional[Mapping[str, Any]] = None,
    ) -> Iterator[StreamItem]:
        """Yield text chunks (and any ``StreamUsage``) followed by ``END_OF_STREAM``."""
        yield from self._raw_stream(list(messages), role=role, correlation=dict(correlation or {}))

    def chat_streaming(
        self,
        messages: Sequence[Message],
        *,
        role: Optional[str] = None,
        correlation: Optional[Mapping[str, Any]] = None,
    ) -> ChatResponse:
        """Stream a reply and reassemble it into a ``ChatResponse``.

        A failed stream is restarted from scratch under the same retry policy
        as ``chat``; partial text from the failed attempt is discarded.
        """

        def attempt() -> ChatResponse:
            content, usage = _reassemble(self.stream(messages, role=role, correlation=correlation))
            return ChatResponse(content=content, usage=usage, model=self._model)

        response = self._with_retries(attempt, role=role)
        if not response.content.strip():
            raise LLMEmptyResponseError(f"Model {self._model} streamed an empty response.")
        return response

    def _with_retries(self, call: Callable[[], ChatResponse], *, role: Optional[str]) -> ChatResponse:
        last_error: Optional[LLMTransportError] = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                return call()
            except LLMTransportError as error:
                last_error = error
                LOGGER.warning(
                    "LLM transport error (attempt %d/%d, role=%s): %s",
                    attempt,
                    self._max_attempts,
                    role,
                    error,
                )
                if not error.retryable or attempt >= self._max_attempts:
                    raise
                time.sleep(self._retry_delay * attempt)
        raise last_error or LLMTransportError("No attempts were made.")  # pragma: no cover

    def _raw_chat(
        self,
        messages: List[Message],
        *,
        role: Optional[str],
        correlation: Dict[str, Any],
    ) -> ChatResponse:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_chat().")

    def _raw_stream(
        self,
        messages: List[Message],
        *,
        role: Optional[str],
        correlation: Dict[str, Any],
    ) -> Iterator[StreamItem]:
        response = self._raw_chat(messages, role=role, correlation=correlation)
        yield response.content
        if response.usage:
            yield StreamUsage(dict(response.usage))
        yield END_OF_STREAM
