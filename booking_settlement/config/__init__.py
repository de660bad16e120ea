"""Configuration package for the booking settlement service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
