"""Shared settings and logging setup."""

from libs.common.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
