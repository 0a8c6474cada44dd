"""
PromptTuner - Core Module
=========================

Core configuration for the backend.
"""

from backend.core.config import settings, get_settings, validate_required_settings

__all__ = [
    "settings",
    "get_settings",
    "validate_required_settings",
]
