"""Configuration settings using Pydantic for validation."""

from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import os
import re


class APIConfig(BaseModel):
    """CSE REST and WebSocket endpoint configuration."""
    base_url: str = Field(default="https://api.cse.lk/v1", description="REST API base URL")
    ws_url: str = Field(default="wss://api.cse.lk/v1/stream", description="WebSocket stream URL")
    request_timeout_seconds: float = Field(default=10.0, description="Per-call HTTP timeout")
    rate_limit_requests_per_minute: int = Field(default=60, description="Shared API rate limit")
    max_concurrent_requests: int = Field(default=4, description="Cap on in-flight REST calls")
    instrument_cache_ttl_seconds: float = Field(default=3600.0, description="Instrument cache expiry")
    max_window_days: Optional[int] = Field(default=None, description="Split history requests longer than this")

    # Credentials (either may be omitted for public endpoints)
    token: Optional[str] = Field(default=None, description="Bearer token")
    api_key: Optional[str] = Field(default=None, description="X-API-KEY header value")

    @field_validator('base_url', 'ws_url')
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip('/')

    @field_validator('token', 'api_key')
    @classmethod
    def empty_credential_is_none(cls, v):
        # ${VAR:-} substitution yields "" when the variable is unset
        return v or None

    @field_validator('rate_limit_requests_per_minute', 'max_concurrent_requests')
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError("Must be at least 1")
        return v


class RetryConfig(BaseModel):
    """Retry configuration shared by REST calls and stream reconnects."""
    max_attempts: int = Field(default=5, description="Maximum attempts including the first")
    initial_backoff_seconds: float = Field(default=0.5, description="Initial backoff delay")
    max_backoff_seconds: float = Field(default=30.0, description="Maximum backoff delay")
    backoff_multiplier: float = Field(default=2.0, description="Backoff multiplier")
    jitter: bool = Field(default=True, description="Add jitter to backoff")

    @field_validator('max_attempts')
    @classmethod
    def validate_attempts(cls, v):
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v


class StreamConfig(BaseModel):
    """WebSocket stream configuration."""
    heartbeat_timeout_seconds: float = Field(default=30.0, description="Silence before reconnect")
    ping_interval_seconds: Optional[float] = Field(default=20.0, description="Transport ping interval")
    ping_timeout_seconds: Optional[float] = Field(default=10.0, description="Transport ping timeout")
    close_timeout_seconds: float = Field(default=10.0, description="Close handshake timeout")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        if v.lower() not in ['json', 'text']:
            raise ValueError("Format must be 'json' or 'text'")
        return v.lower()


class CSEClientSettings(BaseSettings):
    """Main client settings."""

    model_config = SettingsConfigDict(
        env_prefix="CSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    service_name: str = Field(default="cse-client", description="Name used in log context")

    api: APIConfig = Field(default_factory=APIConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Raises:
        ValueError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)

            var_name = var_expr.strip()
            value = os.getenv(var_name)
            if value is None:
                raise ValueError(f"Required environment variable '{var_name}' is not set")
            return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def load_settings(config_file: Optional[str] = None) -> CSEClientSettings:
    """
    Load settings from a YAML config file and environment variables.

    The config file supports environment variable substitution using
    ${VAR_NAME} syntax. Without a file, settings come from CSE_* environment
    variables and defaults.

    Raises:
        ValueError: If required environment variables are missing
        FileNotFoundError: If config file doesn't exist
    """
    if config_file and os.path.exists(config_file):
        import yaml

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)
        return CSEClientSettings(**config_data)

    elif config_file:
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    return CSEClientSettings()
