from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from flowpod.logging import get_logger

logger = get_logger(__name__)


class FlowEngineKind(str, Enum):
    """Embedded flow engines the pod knows how to host."""

    LOCAL = "local"


# Hostname suffixes that are internal by definition, whatever they resolve to
DEFAULT_BLOCKED_SUFFIXES = (".svc.cluster.local", ".internal", ".localhost")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Per-pod runtime settings, read from the environment and ``.env``."""

    pod_name: str = env_field("unknown", "POD_NAME")
    port: int = env_field(1880, "PORT")
    pod_secret: str | None = env_field(
        None,
        "POD_SECRET",
        description="Shared secret the pool manager presents on load/unload; unset rejects all calls",
    )
    flow_engine: FlowEngineKind = env_field(FlowEngineKind.LOCAL, "FLOW_ENGINE")
    editor_root: str = env_field(
        "/flows/editor",
        "EDITOR_ROOT",
        description="Mount point of the engine editor; only traffic here counts as activity",
    )
    max_load_bytes: int = env_field(10 * 1024 * 1024, "MAX_LOAD_BYTES")
    egress_dns_timeout_seconds: float = env_field(5.0, "EGRESS_DNS_TIMEOUT_SECONDS")
    egress_dns_max_workers: int = env_field(8, "EGRESS_DNS_MAX_WORKERS")
    egress_blocked_suffixes: list[str] = env_field(
        list(DEFAULT_BLOCKED_SUFFIXES), "EGRESS_BLOCKED_SUFFIXES"
    )
    outbound_timeout_seconds: float = env_field(30.0, "OUTBOUND_TIMEOUT_SECONDS")
    outbound_max_redirects: int = env_field(3, "OUTBOUND_MAX_REDIRECTS")
    gateway_timeout_seconds: float = env_field(30.0, "GATEWAY_TIMEOUT_SECONDS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between tests",
    )

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

    @field_validator("flow_engine")
    @classmethod
    def _validate_engine(cls, value: FlowEngineKind) -> FlowEngineKind:
        return FlowEngineKind(value)

    @field_validator("editor_root")
    @classmethod
    def _validate_editor_root(cls, value: str) -> str:
        value = value.rstrip("/")
        if not value.startswith("/"):
            raise ValueError("editor_root must start with '/'")
        return value

    @field_validator("pod_secret")
    @classmethod
    def _blank_secret_is_unset(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @field_validator("egress_blocked_suffixes", mode="before")
    @classmethod
    def _normalize_suffixes(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            value = value.split(",")
        normalized: list[str] = []
        for entry in value or []:
            stripped = str(entry).strip().lower()
            if not stripped:
                continue
            if not stripped.startswith("."):
                stripped = "." + stripped
            normalized.append(stripped)
        return normalized

    @field_validator(
        "egress_dns_timeout_seconds",
        "outbound_timeout_seconds",
        "gateway_timeout_seconds",
    )
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @field_validator("outbound_max_redirects")
    @classmethod
    def _non_negative_redirects(cls, value: int) -> int:
        if value < 0:
            raise ValueError("outbound_max_redirects must be >= 0")
        return value

    @field_validator("egress_dns_max_workers")
    @classmethod
    def _positive_workers(cls, value: int) -> int:
        if value < 1:
            raise ValueError("egress_dns_max_workers must be >= 1")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if _settings_cache.pod_secret is None:
            logger.warning(
                "pod_secret_missing",
                message="POD_SECRET is not set; load and unload calls will be rejected",
            )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
