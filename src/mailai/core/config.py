"""Application configuration models and loader utilities."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .errors import ConfigError
from .models import MarkingStrategy, RunMode

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "MAILAI_"
PERSONA_PREFIX = "MAILAI_PERSONA_"
STATS_PREFIX = "MAILAI_STATS_"
COUNTER_KEYS = frozenset(
    {"MAILAI_LAST_RESET", "MAILAI_DAILY_COUNT", "MAILAI_SENDER_HISTORY"}
)


class Persona(BaseModel):
    """One managed mailbox identity with its own AI configuration."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Unique persona identifier")
    name: str = Field(description="Display name used in logs")
    email_user: str = Field(description="Mailbox login and reply address")
    email_password: str = Field(description="Mailbox password or app password")
    imap_host: str = Field(description="IMAP hostname")
    imap_port: int = Field(default=993, ge=1, le=65535)
    smtp_host: str | None = Field(
        default=None, description="SMTP hostname, derived from the IMAP host if unset"
    )
    smtp_port: int = Field(default=465, ge=1, le=65535)
    smtp_starttls: bool = Field(
        default=False, description="Use STARTTLS instead of implicit SSL"
    )
    use_ssl: bool = Field(default=True, description="Use IMAP over SSL")
    verify_tls: bool = Field(default=True, description="Verify server certificates")
    mailbox: str = Field(default="INBOX", description="Mailbox to monitor")
    marking: MarkingStrategy = Field(default=MarkingStrategy.FLAG)
    ai_provider: str = Field(default="unavailable")
    ai_params: dict[str, str] = Field(default_factory=dict)
    prompt: str | None = Field(
        default=None, description="Path or URL of a custom system prompt"
    )
    unavailable_message: str = Field(default="Service unavailable")

    @property
    def password(self) -> str:
        """App passwords are often pasted with spaces; IMAP wants them without."""
        return "".join(self.email_password.split())

    @property
    def resolved_smtp_host(self) -> str:
        if self.smtp_host:
            return self.smtp_host
        if self.imap_host.startswith("imap."):
            return "smtp." + self.imap_host.removeprefix("imap.")
        return self.imap_host


class LimitSettings(BaseModel):
    """Quota and batching limits."""

    max_emails_per_day: int = Field(default=10, ge=1)
    cooldown_period: int = Field(
        default=5, ge=0, description="Minutes before the same sender is answered again"
    )
    batch_size: int = Field(default=10, ge=1, description="UIDs fetched per FETCH")
    max_emails_per_batch: int = Field(
        default=50, ge=1, description="Hard cap for messages handled per cycle"
    )
    min_days: int = Field(default=0, ge=0, description="Ignore mail newer than this")
    max_days: int = Field(default=7, ge=0, description="Ignore mail older than this")

    @model_validator(mode="after")
    def _check_day_range(self) -> LimitSettings:
        if self.min_days > self.max_days:
            raise ValueError("MAILAI_MIN_DAYS cannot exceed MAILAI_MAX_DAYS")
        return self

    @property
    def cooldown_period_ms(self) -> int:
        return self.cooldown_period * 60 * 1000


class PollingSettings(BaseModel):
    """Timing of the per-persona polling loop."""

    poll_interval: float = Field(default=30.0, gt=0)
    reconnect_delay: float = Field(default=30.0, ge=0)
    connect_timeout: float = Field(default=10.0, gt=0)
    auth_timeout: float = Field(default=3.0, gt=0)
    completion_timeout: float = Field(default=60.0, gt=0)
    watch_interval: float = Field(default=2.0, gt=0)


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Toggle JSON structured logging"
    )
    file: Path | None = Field(
        default=None, description="Optional log file operators can tail"
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    mode: RunMode = Field(default=RunMode.DEVELOPMENT)
    debug: bool = Field(default=False, description="Verbose decision logging")
    bcc_emails: tuple[str, ...] = Field(default=())
    state_file: Path = Field(
        default=Path("./mailai.state"), description="Counters file path"
    )
    limits: LimitSettings = Field(default_factory=LimitSettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    personas: dict[str, Persona] = Field(default_factory=dict)

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("bcc_emails", mode="before")
    @classmethod
    def _split_bcc(cls, value: Any) -> Any:
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(item.strip() for item in value.split(",") if item.strip())
        return value

    @property
    def managed_addresses(self) -> tuple[str, ...]:
        """Addresses of every configured persona, used for loop prevention."""
        return tuple(persona.email_user for persona in self.personas.values())

    @property
    def dry_run(self) -> bool:
        return self.mode is RunMode.DRY_RUN


_GLOBAL_KEYS: dict[str, tuple[str, ...]] = {
    "MAILAI_MODE": ("mode",),
    "MAILAI_DEBUG_MODE": ("debug",),
    "MAILAI_BCC_EMAILS": ("bcc_emails",),
    "MAILAI_STATE_FILE": ("state_file",),
    "MAILAI_MAX_EMAILS_PER_DAY": ("limits", "max_emails_per_day"),
    "MAILAI_COOLDOWN_PERIOD": ("limits", "cooldown_period"),
    "MAILAI_BATCH_SIZE": ("limits", "batch_size"),
    "MAILAI_MAX_EMAILS_PER_BATCH": ("limits", "max_emails_per_batch"),
    "MAILAI_MIN_DAYS": ("limits", "min_days"),
    "MAILAI_MAX_DAYS": ("limits", "max_days"),
    "MAILAI_POLL_INTERVAL": ("polling", "poll_interval"),
    "MAILAI_RECONNECT_DELAY": ("polling", "reconnect_delay"),
    "MAILAI_CONNECT_TIMEOUT": ("polling", "connect_timeout"),
    "MAILAI_AUTH_TIMEOUT": ("polling", "auth_timeout"),
    "MAILAI_COMPLETION_TIMEOUT": ("polling", "completion_timeout"),
    "MAILAI_WATCH_INTERVAL": ("polling", "watch_interval"),
    "MAILAI_LOG_LEVEL": ("logging", "level"),
    "MAILAI_LOG_STRUCTURED": ("logging", "structured"),
    "MAILAI_LOG_FILE": ("logging", "file"),
}

_PERSONA_FIELDS: dict[str, str] = {
    "email_user": "email_user",
    "email_password": "email_password",
    "email_imap": "imap_host",
    "email_port": "imap_port",
    "email_smtp": "smtp_host",
    "email_smtp_port": "smtp_port",
    "email_starttls": "smtp_starttls",
    "email_ssl": "use_ssl",
    "email_verify_tls": "verify_tls",
    "mailbox": "mailbox",
    "marking": "marking",
    "ai": "ai_provider",
    "prompt": "prompt",
    "unavailable_message": "unavailable_message",
}

_REQUIRED_PERSONA_FIELDS = ("email_user", "email_password", "email_imap")


def is_state_key(key: str) -> bool:
    """Return ``True`` for keys written by the counters store, not by operators."""
    return key.startswith(STATS_PREFIX) or key in COUNTER_KEYS


def meaningful_values(values: Mapping[str, str | None]) -> dict[str, str | None]:
    """Filter configuration values whose change requires a restart."""
    return {
        key: value
        for key, value in values.items()
        if key.startswith(ENV_PREFIX) and not is_state_key(key)
    }


def _merge_into_tree(tree: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _normalize_value(value: str | None) -> Any:
    if value is None or value == "":
        return None
    lowercase_value = value.lower()
    if lowercase_value == "true":
        return True
    if lowercase_value == "false":
        return False
    return value


def _collect_env_values(
    env_file: Path | str | None, include_environment: bool
) -> dict[str, str | None]:
    """Load ``MAILAI_`` values from the optional env file and the environment."""
    file_values: dict[str, str | None] = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values: dict[str, str | None] = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    return {**file_values, **env_values}


def _build_persona(
    persona_id: str, name: str | None, values: Mapping[str, str | None]
) -> dict[str, Any]:
    """Collect the raw fields of one persona from flat key/values."""
    prefix = f"{ENV_PREFIX}{persona_id}_"
    raw: dict[str, Any] = {"id": persona_id, "name": name or persona_id}

    provider = values.get(f"{prefix}ai") or "unavailable"
    if provider != provider.lower():
        raise ConfigError(
            f"AI provider name '{provider}' must be lowercase in '{prefix}ai'. "
            f"Example: '{provider.lower()}'"
        )
    provider_prefix = f"{prefix}{provider}_"
    ai_params: dict[str, str] = {}

    for key, value in values.items():
        if not key.startswith(prefix):
            continue
        param = key[len(prefix) :]
        field_name = _PERSONA_FIELDS.get(param)
        if field_name is not None:
            normalized = _normalize_value(value)
            if normalized is not None:
                raw[field_name] = normalized
        elif key.startswith(provider_prefix):
            param = key[len(provider_prefix) :]
            if param != param.lower():
                raise ConfigError(
                    f"AI parameter '{param}' must be lowercase in '{key}'. "
                    f"Example: '{key.replace(param, param.lower())}'"
                )
            if value is not None:
                ai_params[param] = value
        elif param.lower() in _PERSONA_FIELDS:
            raise ConfigError(
                f"Field '{param}' must be lowercase in persona '{persona_id}'. "
                f"Example: '{prefix}{param.lower()}'"
            )
        else:
            LOGGER.debug("Ignoring unknown persona setting %s", key)

    missing = [
        field
        for field in _REQUIRED_PERSONA_FIELDS
        if not values.get(f"{prefix}{field}")
    ]
    if missing:
        raise ConfigError(
            f"Missing required email fields for persona '{persona_id}': "
            f"{', '.join(missing)}. Example: {prefix}{missing[0]}=value"
        )

    raw["ai_provider"] = provider
    raw["ai_params"] = ai_params
    return raw


def build_settings(values: Mapping[str, str | None], **overrides: Any) -> AppSettings:
    """Validate flat ``MAILAI_`` key/values into :class:`AppSettings`."""
    collected: dict[str, Any] = {}
    for key, path in _GLOBAL_KEYS.items():
        if key in values:
            normalized = _normalize_value(values[key])
            if normalized is not None:
                _merge_into_tree(collected, path, normalized)

    personas: dict[str, Any] = {}
    for key, value in values.items():
        if key.upper().startswith(PERSONA_PREFIX):
            persona_id = key[len(PERSONA_PREFIX) :]
            if not persona_id:
                continue
            personas[persona_id] = _build_persona(persona_id, value, values)
    if not personas:
        raise ConfigError(
            "No personas found in configuration. Declare one with "
            "MAILAI_PERSONA_<ID>=<display name>"
        )
    collected["personas"] = personas

    if overrides:
        collected.update({k: v for k, v in overrides.items() if v is not None})

    try:
        return AppSettings.model_validate(collected)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    *,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    values = _collect_env_values(env_file, include_environment)
    return build_settings(values, **overrides)


__all__ = [
    "AppSettings",
    "LimitSettings",
    "LoggingSettings",
    "Persona",
    "PollingSettings",
    "build_settings",
    "is_state_key",
    "load_app_settings",
    "meaningful_values",
]
