"""
PromptTuner - LLM Service (LangChain)
=====================================

Chat-completion access for the improvement loop through LangChain's
OpenAI integration. Any OpenAI-compatible endpoint works via OPENAI_BASE_URL.

Usage:
    from backend.services.llm import LLMFactory

    llm = LLMFactory.get_json_chat_model()
    response = await llm.ainvoke(messages)
"""

import threading
from typing import Any, Dict, Optional

import structlog
from langchain_core.language_models import BaseChatModel
from langchain_core.runnables import Runnable
from langchain_openai import ChatOpenAI

from backend.core.config import get_settings

logger = structlog.get_logger(__name__)


# =============================================================================
# Configuration
# =============================================================================

class LLMConfig:
    """LLM configuration from settings."""

    def __init__(self):
        settings = get_settings()
        self.openai_api_key = settings.OPENAI_API_KEY
        self.openai_base_url = settings.OPENAI_BASE_URL or None
        self.default_chat_model = settings.AUTO_IMPROVEMENT_MODEL
        self.default_temperature = settings.AUTO_IMPROVEMENT_TEMPERATURE

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Create LLMConfig from environment variables."""
        return cls()


# =============================================================================
# LLM Factory
# =============================================================================

class LLMFactory:
    """
    Factory for creating chat model instances.

    Instances are cached per (model, temperature) and bounded so that
    configuration changes do not leak clients.
    """

    _instances: Dict[str, BaseChatModel] = {}
    _max_cache_size: int = 8
    _cache_lock = threading.Lock()

    @classmethod
    def clear_cache(cls) -> None:
        """Clear all cached LLM instances."""
        count = len(cls._instances)
        cls._instances.clear()
        if count > 0:
            logger.info("Cleared LLM instance cache", evicted=count)

    @classmethod
    def _evict_oldest(cls, cache: Dict, max_size: int) -> None:
        """Evict oldest entries from cache if it exceeds max size."""
        with cls._cache_lock:
            while len(cache) > max_size:
                oldest_key = next(iter(cache))
                del cache[oldest_key]
                logger.debug("Evicted oldest LLM instance from cache", key=oldest_key)

    @classmethod
    def get_chat_model(
        cls,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        **kwargs,
    ) -> BaseChatModel:
        """
        Get a chat model instance.

        Args:
            model: Model name (e.g., gpt-4o-mini)
            temperature: Sampling temperature
            **kwargs: Additional ChatOpenAI parameters

        Returns:
            BaseChatModel: LangChain chat model instance
        """
        config = LLMConfig()
        model = model or config.default_chat_model
        temperature = temperature if temperature is not None else config.default_temperature

        cache_key = f"openai:{model}:{temperature}"

        if cache_key not in cls._instances:
            cls._instances[cache_key] = ChatOpenAI(
                model=model,
                temperature=temperature,
                api_key=config.openai_api_key,
                base_url=config.openai_base_url,
                **kwargs,
            )
            cls._evict_oldest(cls._instances, cls._max_cache_size)
            logger.info(
                "Created chat model",
                model=model,
                temperature=temperature,
                cache_size=len(cls._instances),
            )

        return cls._instances[cache_key]

    @classmethod
    def get_json_chat_model(
        cls,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> Runnable:
        """Chat model bound to JSON-object response mode."""
        llm = cls.get_chat_model(model=model, temperature=temperature)
        return llm.bind(response_format={"type": "json_object"})


def response_text(response: Any) -> str:
    """Extract the text content of a chat model response."""
    if hasattr(response, "content"):
        content = response.content
        if isinstance(content, list):
            return "".join(
                part.get("text", "") if isinstance(part, dict) else str(part)
                for part in content
            )
        return content or ""
    return str(response)
