"""Configuration module."""

from tether.core.config.loader import load_config
from tether.core.config.schema import Settings

__all__ = ["Settings", "load_config"]
