"""RallyNet Configuration System.

Layered YAML configuration with Pydantic validation.

Config Layer Priority (highest to lowest):
1. Runtime overrides (in-memory)
2. Config file (~/.rallynet/config.yaml or an explicit path)
3. Environment variables (RALLYNET_ prefix, ``__`` nested delimiter)
4. Defaults (defined in Pydantic models)

Usage:
    from rallynet.core.config import get_settings

    settings = get_settings()
    print(settings.api.model)  # "gemini-3-pro-preview" (default)
"""

from __future__ import annotations

import os
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, PositiveFloat, PositiveInt, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rallynet.core.exceptions import ConfigurationError
from rallynet.core.models import GenerationParameters, MediaResolution
from rallynet.resilience.backoff import BackoffPolicy

DEFAULT_CONFIG_DIR = Path.home() / ".rallynet"

MIB = 1024 * 1024


# =============================================================================
# Sub-configuration Models (nested sections)
# =============================================================================


class ApiConfig(BaseModel):
    """Remote API endpoint configuration."""

    base_url: str = "https://generativelanguage.googleapis.com"
    api_version: str = "v1beta"
    model: str = "gemini-3-pro-preview"
    api_key: Optional[SecretStr] = None
    timeout: PositiveFloat = 60.0  # seconds
    upload_timeout: PositiveFloat = 300.0  # seconds, per transferred chunk

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class RetryConfig(BaseModel):
    """Default backoff policy for network steps."""

    max_attempts: PositiveInt = 3
    initial_delay: PositiveFloat = 1.0
    max_delay: PositiveFloat = 30.0
    multiplier: float = Field(default=2.0, gt=1.0)
    jitter: float = Field(default=0.1, ge=0.0, le=1.0)

    def to_policy(self) -> BackoffPolicy:
        return BackoffPolicy(
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=max(self.max_delay, self.initial_delay),
            multiplier=self.multiplier,
            jitter_fraction=self.jitter,
        )


class UploadConfig(BaseModel):
    """Resumable upload configuration."""

    content_type: str = "video/mp4"
    chunk_size: PositiveInt = 8 * MIB
    max_upload_bytes: PositiveInt = 100 * MIB
    large_file_warning_bytes: PositiveInt = 50 * MIB
    poll_interval: PositiveFloat = 2.0  # seconds
    max_polls: PositiveInt = 30


class StreamingConfig(BaseModel):
    """Streaming response configuration."""

    max_buffer_bytes: PositiveInt = 1 * MIB


class GenerationConfig(BaseModel):
    """Generation parameters sent with every request."""

    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_output_tokens: Optional[PositiveInt] = None
    media_resolution: MediaResolution = MediaResolution.MEDIUM

    def to_parameters(self) -> GenerationParameters:
        return GenerationParameters(
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            media_resolution=self.media_resolution,
        )


class PromptConfig(BaseModel):
    """Prompt texts embedded in generation requests."""

    analysis: str = (
        "You are a professional tennis coach. Analyze the technique shown in this "
        "video: stance, preparation, contact point, follow-through and footwork. "
        "List the strengths, the most important faults, and concrete drills to fix them."
    )
    follow_up_system: str = (
        "You are a professional tennis coach. Answer the player's questions based on "
        "this video. Be specific and refer to what is visible in the footage."
    )
    acknowledgement: str = "Understood. I will answer your questions based on this video."
    analysis_request: str = "Please analyze this tennis video."


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v.upper()

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        if v.lower() not in {"json", "console"}:
            raise ValueError(f"Invalid log format: {v}. Must be 'json' or 'console'")
        return v.lower()


class Settings(BaseSettings):
    """Main settings class with layered configuration support.

    Loads configuration from:
    1. Init arguments (merged file + runtime overrides)
    2. Environment variables (RALLYNET_ prefix)
    3. Defaults defined in Pydantic models
    """

    model_config = SettingsConfigDict(
        env_prefix="RALLYNET_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    api: ApiConfig = Field(default_factory=ApiConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    upload: UploadConfig = Field(default_factory=UploadConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    generation: GenerationConfig = Field(default_factory=GenerationConfig)
    prompts: PromptConfig = Field(default_factory=PromptConfig)
    logging_config: LoggingConfig = Field(default_factory=LoggingConfig, alias="logging")

    @property
    def logging(self) -> LoggingConfig:
        """Alias for logging_config to match the YAML key."""
        return self.logging_config

    def api_key_value(self) -> str:
        """Return the configured API key, falling back to GEMINI_API_KEY."""
        if self.api.api_key is not None and self.api.api_key.get_secret_value():
            return self.api.api_key.get_secret_value()
        return os.environ.get("GEMINI_API_KEY", "")


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def load_yaml_file(path: Path) -> Dict[str, Any]:
    """Load and parse a YAML file.

    Raises:
        ConfigurationError: If file cannot be read or parsed.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(
            config_path=str(path),
            message=f"Configuration file not found: {path}",
        )
    except yaml.YAMLError as e:
        raise ConfigurationError(
            config_path=str(path),
            message=f"Invalid YAML in {path}: {e}",
        )
    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigurationError(
            config_path=str(path),
            message=f"Configuration root in {path} must be a mapping",
        )
    return content


def merge_configs(*configs: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge configuration dictionaries; later ones win."""
    result: Dict[str, Any] = {}

    for config in configs:
        for key, value in config.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = merge_configs(result[key], value)
            else:
                result[key] = value

    return result


def create_settings(
    config_path: Optional[Path] = None,
    runtime_overrides: Optional[Dict[str, Any]] = None,
) -> Settings:
    """Create a Settings instance with layered configuration.

    Args:
        config_path: Optional config file. Defaults to ~/.rallynet/config.yaml
            (silently skipped when absent).
        runtime_overrides: Optional in-memory overrides.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    if config_path is not None:
        path = Path(config_path).expanduser()
        file_config = load_yaml_file(path)
    else:
        path = DEFAULT_CONFIG_DIR / "config.yaml"
        file_config = load_yaml_file(path) if path.exists() else {}

    env_path = path.parent / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    merged = merge_configs(file_config, runtime_overrides or {})

    try:
        return Settings(**merged)
    except Exception as e:
        raise ConfigurationError(
            config_path=str(path),
            message=f"Configuration validation failed: {e}",
        ) from e


# =============================================================================
# Singleton Settings Access
# =============================================================================


class _SettingsHolder:
    """Thread-safe singleton holder for Settings instance."""

    _instance: Optional[Settings] = None
    _lock: threading.Lock = threading.Lock()

    @classmethod
    def get(cls, force_reload: bool = False, **kwargs: Any) -> Settings:
        if cls._instance is None or force_reload:
            with cls._lock:
                if cls._instance is None or force_reload:
                    cls._instance = create_settings(**kwargs)
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._instance = None


def get_settings(force_reload: bool = False, **kwargs: Any) -> Settings:
    """Return the process-wide Settings, creating it on first use."""
    return _SettingsHolder.get(force_reload=force_reload, **kwargs)


def reset_settings() -> None:
    """Drop the cached Settings (for testing)."""
    _SettingsHolder.reset()
