"""Core utilities for configuration, logging, and shared models."""

from .config import AppSettings, Persona, build_settings, load_app_settings
from .errors import (
    CompletionError,
    ConfigError,
    DeliveryError,
    MailAIError,
    MailboxConnectionError,
    MarkingError,
    PersistenceError,
)
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "CompletionError",
    "ConfigError",
    "DeliveryError",
    "MailAIError",
    "MailboxConnectionError",
    "MarkingError",
    "PersistenceError",
    "Persona",
    "build_settings",
    "configure_logging",
    "load_app_settings",
]
