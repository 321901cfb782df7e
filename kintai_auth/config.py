from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from kintai_auth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    """Deployment environments the front-end is built for."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session controller and its collaborators."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "KINTAI_ENV")
    api_endpoint: str | None = env_field(None, "API_ENDPOINT")
    api_endpoint_production: str | None = env_field(None, "API_ENDPOINT_PRODUCTION")
    http_timeout_seconds: float = env_field(10.0, "HTTP_TIMEOUT_SECONDS")

    # Storage backends
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/tmp/kintai_auth", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Use an in-memory dict instead of Redis for the async durable store",
    )
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    intent_cookie_ttl_minutes: int = env_field(60, "INTENT_COOKIE_TTL_MINUTES")

    # Identity provider (Cognito user pool + hosted UI)
    cognito_region: str = env_field("ap-northeast-1", "COGNITO_REGION")
    cognito_client_id: str | None = env_field(None, "COGNITO_CLIENT_ID")
    cognito_domain: str | None = env_field(
        None,
        "COGNITO_DOMAIN",
        description="Hosted UI domain, e.g. https://kintai.auth.ap-northeast-1.amazoncognito.com",
    )
    oauth_redirect_uri: str = env_field("http://localhost:5173/", "OAUTH_REDIRECT_URI")
    oauth_logout_uri: str = env_field("http://localhost:5173/login", "OAUTH_LOGOUT_URI")
    oauth_scopes: str = env_field("openid email profile", "OAUTH_SCOPES")
    federated_provider: str = env_field("Google", "FEDERATED_PROVIDER")

    # Routing
    login_route: str = env_field("/login", "LOGIN_ROUTE")
    admin_home_route: str = env_field("/admin/employees", "ADMIN_HOME_ROUTE")
    employee_home_route: str = env_field("/employee/attendance", "EMPLOYEE_HOME_ROUTE")

    # Retry policies
    token_poll_max_attempts: int = env_field(5, "TOKEN_POLL_MAX_ATTEMPTS")
    token_poll_interval_ms: int = env_field(500, "TOKEN_POLL_INTERVAL_MS")
    signout_max_attempts: int = env_field(
        3,
        "SIGNOUT_MAX_ATTEMPTS",
        description="Attempts for every forced provider sign-out",
    )
    signout_backoff_ms: int = env_field(300, "SIGNOUT_BACKOFF_MS")
    already_signed_in_wait_ms: int = env_field(500, "ALREADY_SIGNED_IN_WAIT_MS")
    retry_jitter_ms: int = env_field(0, "RETRY_JITTER_MS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator(
        "token_poll_max_attempts", "signout_max_attempts", "intent_cookie_ttl_minutes"
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("login_route", "admin_home_route", "employee_home_route")
    @classmethod
    def _ensure_absolute_route(cls, value: str) -> str:
        if not value.startswith("/"):
            return "/" + value
        return value

    @property
    def api_base_url(self) -> str:
        """Resolve the API endpoint for the current environment.

        A production-specific endpoint wins in production; otherwise the
        default endpoint is used. An empty string means "not configured".
        """
        if self.environment == Environment.PRODUCTION and self.api_endpoint_production:
            return self.api_endpoint_production.rstrip("/")
        if self.api_endpoint:
            return self.api_endpoint.rstrip("/")
        logger.warning("api_endpoint_not_configured", environment=self.environment.value)
        return ""

    @property
    def cognito_endpoint(self) -> str:
        return f"https://cognito-idp.{self.cognito_region}.amazonaws.com/"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
