"""
Model provider integration.
"""

from interview_moderator.models.gemini_client import (
    GeminiClient,
    LLMClientBase,
    LLMResponse,
    Part,
    extract_json,
)

__all__ = [
    "GeminiClient",
    "LLMClientBase",
    "LLMResponse",
    "Part",
    "extract_json",
]
