"""Proxy configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Falls back to a plain .env file at the project root
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, SecretStr, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cfproxy.core.errors import ConfigError


APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}


def _resolve_env_file() -> Path | None:
    """Return the first existing env file for the current APP_ENV."""

    candidates = [
        PROJECT_ROOT / ENV_FILE_MAP.get(APP_ENV, ".env.development"),
        PROJECT_ROOT / ".env",
    ]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def load_env_file() -> None:
    """Populate os.environ from the resolved env file, if any.

    Nested BaseSettings don't inherit env_file, so the file is loaded into
    the process environment before any settings object is built. Values
    already present in the environment win.
    """

    env_file = _resolve_env_file()
    if env_file is not None:
        from dotenv import load_dotenv
        load_dotenv(env_file, override=False)


class ProxySettings(BaseSettings):
    """Forwarding and rate limiting configuration."""

    cf_api_key: SecretStr = Field(
        ...,
        description="Credential injected into every upstream request",
    )
    host: str = Field(
        "0.0.0.0",
        description="Interface the listener binds to",
    )
    port: int = Field(
        3000,
        description="Listening port",
        ge=1,
        le=65535,
    )

    upstream_url: str = Field(
        "https://api.curseforge.com",
        description="Base URL of the single upstream API",
    )
    credential_header: str = Field(
        "x-api-key",
        description="Header name carrying the injected credential",
    )
    upstream_timeout_seconds: float = Field(
        30.0,
        description="Read/write/pool timeout for the upstream round trip",
        gt=0,
    )
    upstream_connect_timeout_seconds: float = Field(
        10.0,
        description="Timeout for establishing the upstream connection",
        gt=0,
    )
    upstream_deadline_seconds: float = Field(
        60.0,
        description="Total time allowed from sending the request to receiving upstream headers",
        gt=0,
    )
    upstream_max_connections: int = Field(
        100,
        description="Connection pool size towards the upstream",
        ge=1,
    )

    req_limit_per_sec: int = Field(
        6,
        description="Admissions per identity per window; 0 disables limiting",
        ge=0,
    )
    rate_limit_enabled: bool = Field(
        True,
        description="Dedicated switch to turn per-identity limiting off",
    )
    rate_limit_window_seconds: float = Field(
        1.0,
        description="Length of the per-identity counting window",
        gt=0,
    )
    rate_limit_shards: int = Field(
        16,
        description="Number of independently locked shards in the entry store",
        ge=1,
    )
    rate_limit_sweep_interval_seconds: float = Field(
        0.0,
        description="Evict identities idle this long; 0 keeps every entry",
        ge=0,
    )
    rate_limit_include_headers: bool = Field(
        True,
        description="Include Retry-After when throttling",
    )
    trust_forwarded_for: bool = Field(
        False,
        description="Use the last X-Forwarded-For hop as the client identity",
    )

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )

    @field_validator("cf_api_key")
    @classmethod
    def _require_non_empty_key(cls, value: SecretStr) -> SecretStr:
        if not value.get_secret_value().strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("credential_header")
    @classmethod
    def _normalize_header_name(cls, value: str) -> str:
        value = value.strip().lower()
        if not value:
            raise ValueError("must not be empty")
        return value

    @field_validator("upstream_url")
    @classmethod
    def _require_http_scheme(cls, value: str) -> str:
        value = value.rstrip("/")
        if not value.startswith(("http://", "https://")):
            raise ValueError("must start with http:// or https://")
        return value

    @property
    def rate_limit_active(self) -> bool:
        """Whether admissions are actually counted."""
        return self.rate_limit_enabled and self.req_limit_per_sec > 0


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="json or plain")
    output: str = Field("stdout", description="stdout or file")
    file_path: str | None = Field(None, description="Log file when output=file")
    max_bytes: int = Field(0, description="Rotate the log file at this size; 0 disables")
    backup_count: int = Field(3, description="Rotated files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to correlate logs with a caller's request",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


def _build_proxy_settings() -> ProxySettings:
    """Build proxy settings from environment.

    Pydantic Settings populates required fields from the environment, which
    static type checkers don't know about.
    """

    return ProxySettings()  # type: ignore[call-arg]


class Settings(BaseSettings):
    """Top-level settings container."""

    app_env: str = APP_ENV
    proxy: ProxySettings = Field(default_factory=_build_proxy_settings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


def load_settings() -> Settings:
    """Load and validate settings once at startup.

    Returns:
        Fully validated settings.

    Raises:
        ConfigError: If a required option is missing or a value is invalid.
            Only field names are reported, never values.
    """

    load_env_file()
    try:
        return Settings(proxy=_build_proxy_settings(), log=LogSettings())
    except ValidationError as exc:
        fields = sorted(
            {".".join(str(part) for part in error["loc"]) or "settings" for error in exc.errors()}
        )
        raise ConfigError(
            code="invalid_configuration",
            message=f"Invalid or missing configuration: {', '.join(fields)}",
            details={"context": {"fields": fields}},
        ) from None
