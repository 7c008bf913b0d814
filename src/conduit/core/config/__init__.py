"""Centralized configuration.

Quick start::

    from conduit.core.config import get_settings

    settings = get_settings()
    print(settings.retry_max_retries)   # 3
"""

from .settings import ConduitSettings, HalfOpenPolicy, clear_settings_cache, get_settings

__all__ = ["ConduitSettings", "HalfOpenPolicy", "get_settings", "clear_settings_cache"]
