"""Convenience exports for language-model client implementations."""

from .anthropic import AnthropicClient
from .llm_client import (
    END_OF_STREAM,
    ChatResponse,
    LLMClient,
    LLMClientError,
    LLMEmptyResponseError,
    LLMTimeoutError,
    LLMTransportError,
    StreamUsage,
    collect_stream,
)

__all__ = [
    "END_OF_STREAM",
    "AnthropicClient",
    "ChatResponse",
    "LLMClient",
    "LLMClientError",
    "LLMEmptyResponseError",
    "LLMTimeoutError",
    "LLMTransportError",
    "StreamUsage",
    "collect_stream",
]
