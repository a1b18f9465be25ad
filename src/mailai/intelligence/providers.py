"""Completion provider abstractions and the provider registry."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import httpx

from ..core.config import Persona
from ..core.errors import CompletionError, ConfigError
from ..core.interfaces import CompletionProvider
from ..core.models import PromptMessage

LOGGER = logging.getLogger(__name__)

ProviderFactory = Callable[[Persona], CompletionProvider]


@dataclass(slots=True)
class UnavailableProvider:
    """Answer every message with a fixed notice; the default provider."""

    message: str = "Service unavailable"

    @property
    def provider_id(self) -> str:
        return "unavailable"

    def complete(self, messages: Sequence[PromptMessage]) -> str:
        del messages
        return self.message


@dataclass(slots=True)
class HttpCompletionProvider:
    """Post prompt messages as JSON to a completion endpoint.

    The endpoint receives ``{"messages": [...], "params": {...}}`` and must
    answer with ``{"text": "..."}``. Any backend can sit behind it.
    """

    url: str
    params: dict[str, str] = field(default_factory=dict)
    api_key: str | None = None
    timeout_seconds: float = 30.0
    attempts: int = 3

    @property
    def provider_id(self) -> str:
        return f"http:{self.url}"

    def complete(self, messages: Sequence[PromptMessage]) -> str:
        """Send the completion request, retrying transport failures."""
        payload: dict[str, object] = {
            "messages": [
                {"role": message.role, "content": message.content}
                for message in messages
            ],
            "params": self.params,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        data: dict[str, object] | None = None
        last_error: Exception | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                response = httpx.post(
                    self.url,
                    json=payload,
                    headers=headers,
                    timeout=self.timeout_seconds,
                )
                response.raise_for_status()
                data = response.json()
                break
            except httpx.HTTPError as exc:  # pragma: no cover - network dependent
                last_error = exc
                LOGGER.warning(
                    "Completion request to %s failed (attempt %s/%s): %s",
                    self.url,
                    attempt,
                    self.attempts,
                    exc,
                )
            except json.JSONDecodeError as exc:
                raise CompletionError(
                    "Completion endpoint returned invalid JSON"
                ) from exc

            if attempt < self.attempts:
                time.sleep(min(2**attempt, 8))

        if data is None:
            raise CompletionError(
                "Completion request failed after retries"
            ) from last_error

        result = data.get("text") if isinstance(data, dict) else None
        if not isinstance(result, str):
            raise CompletionError("Completion response missing 'text' field")
        return result


def _unavailable_factory(persona: Persona) -> CompletionProvider:
    return UnavailableProvider(persona.unavailable_message)


def _http_factory(persona: Persona) -> CompletionProvider:
    params = dict(persona.ai_params)
    url = params.pop("url", None)
    if not url:
        raise ConfigError(
            f"Missing url for http provider of persona '{persona.id}'. "
            f"Example: MAILAI_{persona.id}_http_url=https://..."
        )
    api_key = params.pop("api_key", None)
    timeout_raw = params.pop("timeout", None)
    try:
        timeout = float(timeout_raw) if timeout_raw else 30.0
    except ValueError as exc:
        raise ConfigError(
            f"Invalid timeout '{timeout_raw}' for persona '{persona.id}'"
        ) from exc
    return HttpCompletionProvider(
        url=url, params=params, api_key=api_key, timeout_seconds=timeout
    )


_REGISTRY: dict[str, ProviderFactory] = {
    "unavailable": _unavailable_factory,
    "http": _http_factory,
}


def register_provider(name: str, factory: ProviderFactory) -> None:
    """Make ``factory`` available to personas configured with ``ai=name``."""
    if not name or name != name.lower():
        raise ValueError(f"Provider name '{name}' must be non-empty and lowercase")
    _REGISTRY[name] = factory


def available_providers() -> tuple[str, ...]:
    return tuple(sorted(_REGISTRY))


def build_provider(persona: Persona) -> CompletionProvider:
    """Instantiate the provider configured for ``persona``."""
    factory = _REGISTRY.get(persona.ai_provider)
    if factory is None:
        raise ConfigError(
            f"Invalid provider '{persona.ai_provider}' for persona '{persona.id}'. "
            f"Available providers: {', '.join(available_providers())}"
        )
    provider = factory(persona)
    LOGGER.debug("Persona '%s' uses provider %s", persona.id, provider.provider_id)
    return provider


__all__ = [
    "HttpCompletionProvider",
    "ProviderFactory",
    "UnavailableProvider",
    "available_providers",
    "build_provider",
    "register_provider",
]
