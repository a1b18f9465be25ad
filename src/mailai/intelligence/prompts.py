"""Prompt templates and custom prompt loading."""

from __future__ import annotations

import logging
from pathlib import Path
from textwrap import dedent
from urllib.parse import unquote, urlparse

import httpx

from ..core.config import Persona
from ..core.errors import ConfigError
from ..core.models import MailMessage, PromptMessage

LOGGER = logging.getLogger(__name__)

BASE_PROMPT = dedent(
    """
    You are an AI email assistant answering mail on behalf of a persona.
    Keep the persona's voice consistent, reply in the language of the
    incoming message, and answer only what was asked.
    Write the reply body only: no subject line and no quoted original.
    """
).strip()


def load_custom_prompt(
    reference: str | None, *, base_dir: Path | None = None, timeout: float = 10.0
) -> str:
    """Return the text behind ``reference``: a path, ``file:`` URL or HTTP(S) URL.

    Relative paths resolve against ``base_dir``. Failures are configuration
    errors because personas are immutable once the process has started.
    """
    if not reference:
        return ""

    parsed = urlparse(reference)
    if parsed.scheme in ("http", "https"):
        try:
            response = httpx.get(reference, timeout=timeout, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ConfigError(f"Unable to download prompt {reference}: {exc}") from exc
        return response.text

    if parsed.scheme == "file":
        path = Path(unquote(parsed.path))
    elif parsed.scheme and len(parsed.scheme) > 1:
        raise ConfigError(f"Invalid prompt URL '{reference}'")
    else:
        path = Path(reference)

    if not path.is_absolute() and base_dir is not None:
        path = base_dir / path
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Unable to read prompt file {path}: {exc}") from exc


def build_prompt_messages(
    persona: Persona, message: MailMessage, custom_prompt: str = ""
) -> list[PromptMessage]:
    """Compose the system prompt and the user turn for ``message``."""
    system = BASE_PROMPT
    if custom_prompt.strip():
        system = f"{BASE_PROMPT}\n{custom_prompt.strip()}"

    subject = message.subject or "(no subject)"
    sender = message.sender or "(unknown sender)"
    user = "\n".join(
        [
            f"Persona: {persona.name} <{persona.email_user}>",
            f"From: {sender}",
            f"Subject: {subject}",
            "",
            (message.body or "").strip(),
        ]
    )

    return [
        PromptMessage(role="system", content=system),
        PromptMessage(role="user", content=user),
    ]


__all__ = ["BASE_PROMPT", "build_prompt_messages", "load_custom_prompt"]
