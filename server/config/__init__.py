"""
Adaptive Search Configuration Module
Manages thresholds, TTLs and logging for the adaptive search core
"""

from .settings import settings, get_settings, AdaptiveSearchSettings
from .logging_config import setup_logging

__all__ = ["settings", "get_settings", "AdaptiveSearchSettings", "setup_logging"]
