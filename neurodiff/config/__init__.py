"""
Configuration management for neurodiff

This module provides configuration loading, validation, and management
for the neurodiff analysis pipeline.
"""

from .config import (Config, get_default_config, load_config, save_config,
                     validate_config)

__all__ = [
    "Config",
    "load_config",
    "save_config",
    "validate_config",
    "get_default_config",
]
