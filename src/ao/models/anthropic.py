"""Production client for the Anthropic Messages API."""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from .llm_client import (
    END_OF_STREAM,
    ChatResponse,
    LLMClient,
    LLMTimeoutError,
    LLMTransportError,
    Message,
    StreamItem,
    StreamUsage,
)

__all__ = ["AnthropicClient"]

LOGGER = logging.getLogger(__name__)

API_VERSION = "2023-06-01"

Transport = Callable[[Dict[str, Any]], str]
StreamTransport = Callable[[Dict[str, Any]], Iterable[str]]


class AnthropicClient(LLMClient):
    """Thin adapter around ``POST /v1/messages`` with optional SSE streaming."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = "https://api.anthropic.com",
        model: str = "claude-sonnet-4-20250514",
        temperature: float = 0.2,
        max_tokens: int = 4096,
        timeout: float = 120.0,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
        transport: Optional[Transport] = None,
        stream_transport: Optional[StreamTransport] = None,
    ) -> None:
        super().__init__(
            model,
            temperature=temperature,
            max_tokens=max_tokens,
            max_attempts=max_attempts,
            retry_delay=retry_delay,
        )
        self._api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self._endpoint = base_url.rstrip("/") + "/v1/messages"
        self._timeout = timeout
        self._transport = transport or self._http_transport
        self._stream_transport = stream_transport or self._http_stream_transport

        if transport is None and not self._api_key:
            raise ValueError("An API key is required when using the default transport.")

    @classmethod
    def from_config(cls, llm_config) -> "AnthropicClient":
        return cls(
            api_key=llm_config.api_key,
            base_url=llm_config.base_url,
            model=llm_config.model,
            temperature=llm_config.temperature,
            max_tokens=llm_config.max_tokens,
            timeout=llm_config.timeout,
            max_attempts=llm_config.max_attempts,
        )

    def build_payload(self, messages: List[Message], *, stream: bool = False) -> Dict[str, Any]:
        """System prompts travel in ``system``; the rest stay as messages."""
        system_parts = [item["content"] for item in messages if item.get("role") == "system"]
        conversation = [
            {"role": item.get("role", "user"), "content": item.get("content", "")}
            for item in messages
            if item.get("role") != "system"
        ]
        payload: Dict[str, Any] = {
            "model": self._model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": conversation,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if stream:
            payload["stream"] = True
        return payload

    def _raw_chat(
        self,
        messages: List[Message],
        *,
        role: Optional[str],
        correlation: Dict[str, Any],
    ) -> ChatResponse:
        payload = self.build_payload(messages)
        LOGGER.debug("Anthropic request role=%s correlation=%s", role, correlation)
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except TimeoutError as error:
            raise LLMTimeoutError(f"Anthropic request timed out: {error}") from error
        except Exception as error:  # pragma: no cover
            raise LLMTransportError(f"Transport rejected the request: {error}") from error
        return self._parse_response(raw_response)

    def _parse_response(self, raw_response: str) -> ChatResponse:
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError as error:
            raise LLMTransportError("Anthropic response was not valid JSON.", body=raw_response[:500]) from error
        if not isinstance(data, dict):
            raise LLMTransportError("Anthropic response had an unexpected shape.", body=raw_response[:500])
        if data.get("type") == "error":
            detail = data.get("error") or {}
            raise LLMTransportError(
                f"Anthropic error: {detail.get('message') or detail}",
                body=raw_response[:500],
            )
        texts = [
            block.get("text", "")
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type", "text") == "text"
        ]
        usage = data.get("usage") or {}
        usage_counts = {key: int(value) for key, value in usage.items() if isinstance(value, (int, float))}
        return ChatResponse(
            content="".join(texts),
            usage=usage_counts,
            model=str(data.get("model") or self._model),
            raw=data,
        )

    def _raw_stream(
        self,
        messages: List[Message],
        *,
        role: Optional[str],
        correlation: Dict[str, Any],
    ) -> Iterator[StreamItem]:
        payload = self.build_payload(messages, stream=True)
        LOGGER.debug("Anthropic stream role=%s correlation=%s", role, correlation)
        for line in self._stream_lines(payload):
            line = line.strip()
            if not line.startswith("data:"):
                continue
            data = line[len("data:"):].strip()
            if not data:
                continue
            if data == "[DONE]":
                break
            try:
                event = json.loads(data)
            except json.JSONDecodeError:
                LOGGER.debug("Skipping undecodable stream line: %s", data[:120])
                continue
            event_type = event.get("type")
            usage = _event_usage(event)
            if usage:
                yield StreamUsage(usage)
            if event_type == "content_block_delta":
                delta = event.get("delta") or {}
                if delta.get("type") == "text_delta" and delta.get("text"):
                    yield delta["text"]
            elif event_type == "message_stop":
                break
            elif event_type == "error":
                detail = event.get("error") or {}
                raise LLMTransportError(f"Anthropic stream error: {detail.get('message') or detail}")
        else:
            # Transport closed without message_stop.
            return
        yield END_OF_STREAM

    def _stream_lines(self, payload: Dict[str, Any]) -> Iterator[str]:
        try:
            yield from self._stream_transport(payload)
        except LLMTransportError:
            raise
        except TimeoutError as error:
            raise LLMTimeoutError(f"Anthropic stream timed out: {error}") from error
        except OSError as error:
            raise LLMTransportError(f"Anthropic stream interrupted: {error}") from error

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self._api_key or "",
            "anthropic-version": API_VERSION,
        }

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        """Default HTTP transport targeting the Messages API."""
        import urllib.error
        import urllib.request

        request = urllib.request.Request(
            self._endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers=self._headers(),
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                raw = response.read()
                status = getattr(response, "status", 200)
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTimeoutError("Anthropic response timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message[:300]}", status=error.code, body=message) from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            if isinstance(error.reason, TimeoutError):
                raise LLMTimeoutError("Anthropic response timed out.") from error
            raise LLMTransportError(f"Failed to reach Anthropic endpoint: {error.reason}") from error

        body = raw.decode("utf-8")
        if status >= 300:
            raise LLMTransportError(f"Unexpected HTTP status {status}", status=status, body=body)
        return body

    def _http_stream_transport(self, payload: Dict[str, Any]) -> Iterator[str]:
        import urllib.error
        import urllib.request

        request = urllib.request.Request(
            self._endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers={**self._headers(), "Accept": "text/event-stream"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                for raw_line in response:
                    yield raw_line.decode("utf-8", errors="replace")
        except TimeoutError as error:  # pragma: no cover - network-dependent
            raise LLMTimeoutError("Anthropic stream timed out.") from error
        except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
            message = error.read().decode("utf-8", errors="ignore")
            raise LLMTransportError(f"HTTP {error.code}: {message[:300]}", status=error.code, body=message) from error
        except urllib.error.URLError as error:  # pragma: no cover - network-dependent
            raise LLMTransportError(f"Failed to reach Anthropic endpoint: {error.reason}") from error
        except OSError as error:
            raise LLMTransportError(f"Anthropic stream interrupted: {error}") from error


def _event_usage(event: Dict[str, Any]) -> Dict[str, int]:
    """Token counts carried by ``message_start`` / ``message_delta`` events."""
    if event.get("type") == "message_start":
        usage = (event.get("message") or {}).get("usage") or {}
    elif event.get("type") == "message_delta":
        usage = event.get("usage") or {}
    else:
        return {}
    return {key: int(value) for key, value in usage.items() if isinstance(value, (int, float))}
