"""Configuration module for subsync."""

from .settings import (
    MAX_CONCURRENT_DOWNLOADS,
    MIN_CONCURRENT_DOWNLOADS,
    Settings,
    clamp_concurrency,
    get_settings,
)

__all__ = [
    "MAX_CONCURRENT_DOWNLOADS",
    "MIN_CONCURRENT_DOWNLOADS",
    "Settings",
    "clamp_concurrency",
    "get_settings",
]
