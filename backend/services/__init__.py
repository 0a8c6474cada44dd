"""
PromptTuner - Services Module
=============================

Core services for LLM access and the prompt-improvement loop.
"""

from backend.services.llm import (
    LLMFactory,
    LLMConfig,
    response_text,
)

__all__ = [
    # LLM
    "LLMFactory",
    "LLMConfig",
    "response_text",
]
