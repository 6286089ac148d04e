"""Unit tests for notification sinks."""

from __future__ import annotations

import pytest

import autoevolve.notify as notify_mod
from autoevolve.notify import EchoNotifier, MultiNotifier, NullNotifier, WebhookNotifier


def dummy_client(status_code=200, raises=None, sent=None):
    class DummyResponse:
        def __init__(self):
            self.status_code = status_code

    class DummyClient:
        def __init__(self, timeout):  # noqa: D401
            self.timeout = timeout

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def post(self, url, json, headers=None):
            if raises is not None:
                raise raises
            if sent is not None:
                sent.append({"url": url, "json": json, "headers": headers, "timeout": self.timeout})
            return DummyResponse()

    return DummyClient


class TestWebhookNotifier:
    @pytest.mark.asyncio
    async def test_finding_posts_payload(self, monkeypatch):
        sent: list[dict] = []
        monkeypatch.setattr(notify_mod.httpx, "AsyncClient", dummy_client(sent=sent))
        notifier = WebhookNotifier("https://hooks.example.test/x", headers={"X-Test": "1"}, timeout_seconds=3)

        assert await notifier.finding("Implemented v1.0.1", "token=abcdefghijklmnopqrstuvwxyz") is True

        call = sent[0]
        assert call["url"] == "https://hooks.example.test/x"
        assert call["headers"] == {"X-Test": "1"}
        assert call["timeout"] == 3
        assert call["json"]["kind"] == "finding"
        assert call["json"]["title"] == "Implemented v1.0.1"
        assert "abcdefghijklmnopqrstuvwxyz" not in call["json"]["description"]

    @pytest.mark.asyncio
    async def test_alert_payload(self, monkeypatch):
        sent: list[dict] = []
        monkeypatch.setattr(notify_mod.httpx, "AsyncClient", dummy_client(sent=sent))

        assert await WebhookNotifier("https://hooks.example.test/x").alert("Implementation failed") is True
        assert sent[0]["json"]["kind"] == "alert"
        assert sent[0]["json"]["error"] is None

    @pytest.mark.asyncio
    async def test_non_2xx_is_false(self, monkeypatch):
        monkeypatch.setattr(notify_mod.httpx, "AsyncClient", dummy_client(status_code=500))
        assert await WebhookNotifier("https://hooks.example.test/x").alert("boom", "err") is False

    @pytest.mark.asyncio
    async def test_network_error_is_swallowed(self, monkeypatch):
        monkeypatch.setattr(notify_mod.httpx, "AsyncClient", dummy_client(raises=RuntimeError("unreachable")))
        assert await WebhookNotifier("https://hooks.example.test/x").finding("t", "d") is False


class TestLocalSinks:
    @pytest.mark.asyncio
    async def test_null(self):
        assert await NullNotifier().finding("t", "d") is True
        assert await NullNotifier().alert("m") is True

    @pytest.mark.asyncio
    async def test_echo(self, capsys):
        notifier = EchoNotifier()
        assert await notifier.finding("Implemented v1.0.1", "utils/cache.py")
        assert await notifier.alert("Implementation failed", "password=supersecretvalue")

        out = capsys.readouterr()
        assert "[finding] Implemented v1.0.1" in out.out
        assert "[alert] Implementation failed" in out.err
        assert "supersecretvalue" not in out.err

    @pytest.mark.asyncio
    async def test_multi_requires_every_sink(self, monkeypatch):
        monkeypatch.setattr(notify_mod.httpx, "AsyncClient", dummy_client(status_code=503))
        multi = MultiNotifier([NullNotifier(), WebhookNotifier("https://hooks.example.test/x")])
        assert await multi.finding("t", "d") is False
        assert await MultiNotifier([NullNotifier(), NullNotifier()]).alert("m") is True
