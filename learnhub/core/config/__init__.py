# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package for LearnHub.

Settings are Pydantic models loaded from environment variables.

Example:
    >>> from learnhub.core.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.cache.key_prefix)
    'learnhub'
"""

from learnhub.core.config.settings import (
    CacheSettings,
    DatabaseSettings,
    QueueSettings,
    RedisSettings,
    Settings,
    WorkerSettings,
    clear_settings_cache,
    get_settings,
)

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    "clear_settings_cache",
    # Subsettings
    "DatabaseSettings",
    "RedisSettings",
    "CacheSettings",
    "QueueSettings",
    "WorkerSettings",
]
