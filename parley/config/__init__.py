"""
Parley configuration management.

Provides centralized configuration loading from TOML files with environment variable overrides.

Usage:
    from parley.config import get_config

    config = get_config()
    silence = config.capture.silence_timeout
    model = config.ollama.model
"""
from .loader import load_config, get_config
from .models import ParleyConfig

__all__ = ["load_config", "get_config", "ParleyConfig"]
