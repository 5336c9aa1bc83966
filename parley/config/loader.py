"""
Configuration loader with TOML file parsing and environment variable overrides.
"""
import os
import logging
import sys
from pathlib import Path
from typing import Optional, Any, Dict

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .models import (
    ParleyConfig,
    PersonaConfig,
    VoiceProfileConfig,
)

logger = logging.getLogger(__name__)

_config: Optional[ParleyConfig] = None

CONFIG_PATHS = [
    Path("/etc/parley/parley.toml"),
    Path.home() / ".config" / "parley" / "parley.toml",
    Path("config/parley.toml"),
]


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load TOML file and return parsed dict."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def _apply_env_overrides(config: ParleyConfig) -> ParleyConfig:
    """
    Override config with environment variables.
    Format: PARLEY_SECTION_KEY
    Example: PARLEY_MQTT_PASSWORD overrides config.mqtt.password
    """
    env_map = {
        # MQTT overrides
        "PARLEY_MQTT_BROKER": lambda v: setattr(config.mqtt, "broker", v),
        "PARLEY_MQTT_PORT": lambda v: setattr(config.mqtt, "port", int(v)),
        "PARLEY_MQTT_USERNAME": lambda v: setattr(config.mqtt, "username", v),
        "PARLEY_MQTT_PASSWORD": lambda v: setattr(config.mqtt, "password", v),

        # Text generation overrides
        "PARLEY_OLLAMA_HOST": lambda v: setattr(config.ollama, "host", v),
        "PARLEY_OLLAMA_MODEL": lambda v: setattr(config.ollama, "model", v),
        "PARLEY_OLLAMA_TIMEOUT": lambda v: setattr(config.ollama, "timeout", float(v)),

        # Capture overrides
        "PARLEY_CAPTURE_LANG": lambda v: setattr(config.capture, "lang", v),
        "PARLEY_CAPTURE_SILENCE_TIMEOUT": lambda v: setattr(config.capture, "silence_timeout", float(v)),
        "PARLEY_CAPTURE_MAX_RETRIES": lambda v: setattr(config.capture, "max_retries", int(v)),
        "PARLEY_CAPTURE_CONFIDENCE_THRESHOLD": lambda v: setattr(config.capture, "confidence_threshold", float(v)),

        # Cache overrides
        "PARLEY_CACHE_TTL": lambda v: setattr(config.cache, "ttl", float(v)),
        "PARLEY_CACHE_CAPACITY": lambda v: setattr(config.cache, "capacity", int(v)),

        # Host overrides
        "PARLEY_HOST_BIND": lambda v: setattr(config.host, "bind", v),
        "PARLEY_HOST_PORT": lambda v: setattr(config.host, "port", int(v)),
        "PARLEY_HOST_SESSION_API_URL": lambda v: setattr(config.host, "session_api_url", v),
    }

    for env_var, setter in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            try:
                setter(value)
                logger.debug(f"Config override from env: {env_var}")
            except (ValueError, TypeError) as e:
                logger.warning(f"Failed to apply env override {env_var}={value}: {e}")

    return config


def _fill(section_obj: Any, values: Dict[str, Any]) -> None:
    for k, v in values.items():
        if hasattr(section_obj, k):
            setattr(section_obj, k, v)


def _toml_to_config(data: Dict[str, Any]) -> ParleyConfig:
    """Convert TOML dict to ParleyConfig dataclass."""
    config = ParleyConfig()

    # Map TOML section names to config sub-objects
    section_map = {
        "mqtt": config.mqtt,
        "ollama": config.ollama,
        "capture": config.capture,
        "synthesis": config.synthesis,
        "conversation": config.conversation,
        "cache": config.cache,
        "host": config.host,
    }

    for section_name, section_obj in section_map.items():
        if section_name in data:
            _fill(section_obj, data[section_name])

    # Keyed tables: [personas.<id>] and [voices.<persona id>]
    for persona_id, values in data.get("personas", {}).items():
        persona = PersonaConfig()
        _fill(persona, values)
        config.personas[persona_id] = persona

    for persona_id, values in data.get("voices", {}).items():
        profile = VoiceProfileConfig()
        _fill(profile, values)
        config.voices[persona_id] = profile

    return config


def load_config(config_path: Optional[Path] = None) -> ParleyConfig:
    """
    Load configuration from TOML file with environment variable overrides.

    Args:
        config_path: Optional explicit path to config file. If None, searches default paths.

    Returns:
        ParleyConfig instance with loaded configuration.
    """
    global _config

    if config_path:
        paths = [config_path]
    else:
        env_path = os.environ.get("PARLEY_CONFIG")
        paths = [Path(env_path)] if env_path else CONFIG_PATHS

    data = {}
    for path in paths:
        if path.exists():
            try:
                data = _load_toml(path)
                logger.info(f"Loaded config from {path}")
                break
            except (OSError, tomllib.TOMLDecodeError) as e:
                logger.error(f"Failed to load config from {path}: {e}")
                continue
    else:
        logger.warning("No config file found, using defaults")

    config = _toml_to_config(data)
    config = _apply_env_overrides(config)
    _config = config
    return config


def get_config() -> ParleyConfig:
    """
    Get cached config or load if not yet loaded.

    Returns:
        ParleyConfig instance.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config
