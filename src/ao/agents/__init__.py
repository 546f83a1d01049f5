"""Agent gateway exports."""

from .gateway import AgentGateway, AgentResult, ResponseCache, classify_response, extract_file_blocks

__all__ = ["AgentGateway", "AgentResult", "ResponseCache", "classify_response", "extract_file_blocks"]
