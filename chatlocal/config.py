from __future__ import annotations

import os
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the chat server and its file-backed stores."""

    data_dir: str = env_field(
        "data", "CHATLOCAL_DATA_DIR", description="Directory holding users, sessions and chats"
    )
    static_dir: str = env_field(
        "static", "CHATLOCAL_STATIC_DIR", description="Directory with view.html and login.html"
    )
    host: str = env_field("localhost", "CHATLOCAL_HOST")
    port: int = env_field(8080, "CHATLOCAL_PORT")
    llm_url: str = env_field(
        "http://localhost:11434/api/generate",
        "CHATLOCAL_LLM_URL",
        description="Streaming generate endpoint of the local model server",
    )
    model: str = env_field("gemma3", "CHATLOCAL_MODEL")
    backend_timeout_seconds: Optional[float] = env_field(
        None,
        "BACKEND_TIMEOUT_SECONDS",
        description="Read/connect timeout for the model server; unset waits forever",
    )
    session_ttl_days: int = env_field(7, "SESSION_TTL_DAYS")
    session_cookie_name: str = env_field("session", "SESSION_COOKIE_NAME")
    cookie_secure: bool = env_field(
        False, "COOKIE_SECURE", description="Mark the session cookie Secure (TLS is terminated upstream)"
    )
    session_sweep_interval_seconds: int = env_field(
        0,
        "SESSION_SWEEP_INTERVAL_SECONDS",
        description="Interval for deleting expired session files; 0 disables the sweeper",
    )
    min_password_length: int = env_field(8, "MIN_PASSWORD_LENGTH")
    password_time_cost: int = env_field(3, "PASSWORD_TIME_COST")
    password_memory_cost: int = env_field(65536, "PASSWORD_MEMORY_COST")
    password_parallelism: int = env_field(4, "PASSWORD_PARALLELISM")
    title_max_length: int = env_field(50, "TITLE_MAX_LENGTH")

    model_config = ConfigDict(extra="ignore", protected_namespaces=())

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

    @field_validator("backend_timeout_seconds", mode="before")
    @classmethod
    def _empty_timeout_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("session_ttl_days", "min_password_length", "title_max_length")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


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
