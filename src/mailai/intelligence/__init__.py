"""Completion providers, prompts and plugin hooks."""

from .plugins import PluginRegistry
from .prompts import build_prompt_messages, load_custom_prompt
from .providers import (
    HttpCompletionProvider,
    UnavailableProvider,
    build_provider,
    register_provider,
)

__all__ = [
    "HttpCompletionProvider",
    "PluginRegistry",
    "UnavailableProvider",
    "build_prompt_messages",
    "build_provider",
    "load_custom_prompt",
    "register_provider",
]
