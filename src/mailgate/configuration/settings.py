"""Typed settings for the IMAP provider.

Settings are plain pydantic models so the provider and the CLI can rely on
validated values. Runtime overrides come from environment variables; secrets
are held as ``SecretStr`` so they never leak through ``repr`` or logs.
"""

from __future__ import annotations

import os
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from mailgate.errors import ConfigurationError


DEFAULT_TIMEOUT_MS = 120_000
DEFAULT_POOL_SWEEP_INTERVAL_SECONDS = 5 * 60
DEFAULT_POOL_MAX_IDLE_SECONDS = 10 * 60

ENV_TIMEOUT = "IMAP_TIMEOUT"
ENV_ENCRYPT_TOKEN = "IMAP_ENCRYPT_TOKEN"
ENV_ENCRYPTION_KEY = "IMAP_ENCRYPTION_KEY"
ENV_TOKEN_TTL_HOURS = "IMAP_TOKEN_TTL_HOURS"
ENV_POOL_SWEEP_INTERVAL = "IMAP_POOL_SWEEP_INTERVAL"
ENV_POOL_MAX_IDLE = "IMAP_POOL_MAX_IDLE"


class ImapProviderSettings(BaseModel):
    """Runtime configuration for the IMAP provider."""

    model_config = ConfigDict(frozen=True)

    timeout_ms: int = Field(
        default=DEFAULT_TIMEOUT_MS,
        gt=0,
        description="Connection and greeting timeout in milliseconds",
    )
    encrypt_tokens: bool = Field(
        default=False,
        description="Encrypt session tokens with AES-256-GCM",
    )
    encryption_key: Optional[SecretStr] = Field(
        default=None,
        description="Secret the token key is derived from (required when encrypting)",
    )
    token_ttl_hours: int = Field(
        default=0,
        description="Token lifetime in hours; 0 or less disables expiry",
    )
    pool_sweep_interval_seconds: float = Field(
        default=DEFAULT_POOL_SWEEP_INTERVAL_SECONDS,
        gt=0,
        description="Period of the idle-connection sweep",
    )
    pool_max_idle_seconds: float = Field(
        default=DEFAULT_POOL_MAX_IDLE_SECONDS,
        gt=0,
        description="Idle time after which a pooled connection is evicted",
    )

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ImapProviderSettings":
        """Load settings from environment variables.

        Environment variables:
        - IMAP_TIMEOUT: Connection timeout in milliseconds
        - IMAP_ENCRYPT_TOKEN: Encrypt session tokens (true/false)
        - IMAP_ENCRYPTION_KEY: Token encryption secret
        - IMAP_TOKEN_TTL_HOURS: Token lifetime in hours (0 = unlimited)
        - IMAP_POOL_SWEEP_INTERVAL: Pool sweep period in seconds
        - IMAP_POOL_MAX_IDLE: Pool idle eviction threshold in seconds

        Raises:
            ConfigurationError: If a variable holds an invalid value.
        """
        environ = os.environ if environ is None else environ
        data: Dict[str, Any] = {}
        _set_env_override(data, "timeout_ms", environ, ENV_TIMEOUT, cast_int=True)
        _set_env_override(data, "encrypt_tokens", environ, ENV_ENCRYPT_TOKEN, cast_bool=True)
        _set_env_override(data, "encryption_key", environ, ENV_ENCRYPTION_KEY)
        _set_env_override(data, "token_ttl_hours", environ, ENV_TOKEN_TTL_HOURS, cast_int=True)
        _set_env_override(data, "pool_sweep_interval_seconds", environ, ENV_POOL_SWEEP_INTERVAL)
        _set_env_override(data, "pool_max_idle_seconds", environ, ENV_POOL_MAX_IDLE)
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid IMAP provider configuration: {exc}") from exc


def _set_env_override(
    mapping: Dict[str, Any],
    key: str,
    environ: Mapping[str, str],
    env_name: str,
    *,
    cast_bool: bool = False,
    cast_int: bool = False,
) -> None:
    raw = environ.get(env_name)
    if raw is None or raw == "":
        return
    if cast_bool:
        mapping[key] = raw.strip().lower() in {"1", "true", "yes"}
    elif cast_int:
        try:
            mapping[key] = int(raw)
        except ValueError as exc:
            raise ConfigurationError(f"{env_name} must be an integer, got {raw!r}") from exc
    else:
        mapping[key] = raw


__all__ = [
    "DEFAULT_POOL_MAX_IDLE_SECONDS",
    "DEFAULT_POOL_SWEEP_INTERVAL_SECONDS",
    "DEFAULT_TIMEOUT_MS",
    "ImapProviderSettings",
]
