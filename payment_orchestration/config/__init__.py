"""Configuration package for payment orchestration."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
