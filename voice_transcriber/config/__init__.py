"""
Configuration package for the voice transcription service.

- models: Pydantic models for every tunable (VAD, transcode, recognition,
  session lifecycle, connection, backend, logging)
- loaders: YAML loading with environment expansion and secret injection
"""

from typing import Optional

import structlog

from .loaders import (
    inject_backend_credentials,
    load_yaml_with_env_expansion,
    resolve_config_path,
)
from .models import (
    AppConfig,
    AudioConfig,
    ConnectionConfig,
    DeepgramConfig,
    LoggingConfig,
    RecognitionConfig,
    SessionConfig,
    VADConfig,
)

logger = structlog.get_logger(__name__)


def load_config(path: Optional[str] = None) -> AppConfig:
    """
    Load and validate configuration from a YAML file.

    Args:
        path: Path to YAML configuration file (absolute or relative to project root).
            Defaults to $VOICE_TRANSCRIBER_CONFIG, then config/voice-transcriber.yaml

    Raises:
        FileNotFoundError: If configuration file doesn't exist
        yaml.YAMLError: If YAML parsing fails
        pydantic.ValidationError: If a value is out of range or thresholds are misordered
    """
    path = resolve_config_path(path)
    config_data = load_yaml_with_env_expansion(path)
    inject_backend_credentials(config_data)
    config = AppConfig(**config_data)
    logger.debug("Configuration loaded", path=path, has_api_key=bool(config.deepgram.api_key))
    return config


__all__ = [
    'AppConfig',
    'AudioConfig',
    'ConnectionConfig',
    'DeepgramConfig',
    'LoggingConfig',
    'RecognitionConfig',
    'SessionConfig',
    'VADConfig',
    'load_config',
]
