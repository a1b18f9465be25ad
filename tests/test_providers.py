"""Tests for completion providers and the provider registry."""

# pylint: disable=protected-access

from __future__ import annotations

import httpx
import pytest

from mailai.core.config import Persona
from mailai.core.errors import CompletionError, ConfigError
from mailai.core.models import PromptMessage
from mailai.intelligence import providers
from mailai.intelligence.providers import (
    HttpCompletionProvider,
    UnavailableProvider,
    build_provider,
    register_provider,
)

MESSAGES = [
    PromptMessage(role="system", content="Be nice"),
    PromptMessage(role="user", content="Hello"),
]
URL = "https://llm.test/complete"


def _persona(provider: str = "unavailable", **params: str) -> Persona:
    return Persona(
        id="SUPPORT",
        name="Support",
        email_user="support@company.test",
        email_password="supersecret",
        imap_host="imap.company.test",
        ai_provider=provider,
        ai_params=params,
        unavailable_message="We are away",
    )


def _response(status: int, **kwargs) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("POST", URL), **kwargs)


def test_unavailable_provider_returns_configured_message() -> None:
    provider = build_provider(_persona())

    assert isinstance(provider, UnavailableProvider)
    assert provider.complete(MESSAGES) == "We are away"


def test_http_provider_posts_messages_and_params(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    captured: dict[str, object] = {}

    def fake_post(url, **kwargs):
        captured["url"] = url
        captured.update(kwargs)
        return _response(200, json={"text": "Hi there"})

    monkeypatch.setattr(providers.httpx, "post", fake_post)
    provider = build_provider(
        _persona("http", url=URL, api_key="token", temperature="0.3")
    )

    assert provider.complete(MESSAGES) == "Hi there"
    assert captured["url"] == URL
    assert captured["headers"] == {"Authorization": "Bearer token"}
    assert captured["json"] == {
        "messages": [
            {"role": "system", "content": "Be nice"},
            {"role": "user", "content": "Hello"},
        ],
        "params": {"temperature": "0.3"},
    }


def test_http_provider_retries_then_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[str] = []

    def failing_post(url, **kwargs):
        calls.append(url)
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(providers.httpx, "post", failing_post)
    monkeypatch.setattr(providers.time, "sleep", lambda seconds: None)
    provider = HttpCompletionProvider(url=URL, attempts=3)

    with pytest.raises(CompletionError, match="after retries"):
        provider.complete(MESSAGES)
    assert len(calls) == 3


def test_http_provider_requires_text_field(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        providers.httpx, "post", lambda url, **kwargs: _response(200, json={"x": 1})
    )

    with pytest.raises(CompletionError, match="text"):
        HttpCompletionProvider(url=URL).complete(MESSAGES)


def test_http_provider_needs_url() -> None:
    with pytest.raises(ConfigError, match="url"):
        build_provider(_persona("http"))


def test_unknown_provider_is_a_config_error() -> None:
    with pytest.raises(ConfigError, match="Available providers"):
        build_provider(_persona("nonexistent"))


def test_registered_provider_is_built(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(providers, "_REGISTRY", dict(providers._REGISTRY))
    register_provider("echo", lambda persona: UnavailableProvider(persona.name))

    provider = build_provider(_persona("echo"))

    assert provider.complete(MESSAGES) == "Support"


def test_provider_names_must_be_lowercase() -> None:
    with pytest.raises(ValueError):
        register_provider("Echo", lambda persona: UnavailableProvider())
