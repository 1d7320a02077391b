"""Configuration loading for the crawl engine."""

from .settings import EngineSettings, get_cached_settings, load_settings, reset_settings_cache

__all__ = ["EngineSettings", "get_cached_settings", "load_settings", "reset_settings_cache"]
