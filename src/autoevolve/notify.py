"""Notification sinks for pipeline findings and alerts.

Delivery is best effort: a sink never raises into the cycle that notified it.
"""

from __future__ import annotations

import time
from typing import Any

import click
import httpx

from .security.filter import redact_text


class NotificationSink:
    """Receives structured finding/alert events from the coordinator."""

    async def finding(self, title: str, description: str) -> bool:
        raise NotImplementedError

    async def alert(self, message: str, error: str | None = None) -> bool:
        raise NotImplementedError


class NullNotifier(NotificationSink):
    """Drops every event (tests, quiet mode)."""

    async def finding(self, title: str, description: str) -> bool:
        return True

    async def alert(self, message: str, error: str | None = None) -> bool:
        return True


class EchoNotifier(NotificationSink):
    """Prints events to the console."""

    async def finding(self, title: str, description: str) -> bool:
        click.echo(f"[finding] {title}")
        if description:
            click.echo(f"  {description}")
        return True

    async def alert(self, message: str, error: str | None = None) -> bool:
        click.echo(f"[alert] {message}", err=True)
        if error:
            click.echo(f"  {redact_text(error, max_len=300)}", err=True)
        return True


class WebhookNotifier(NotificationSink):
    """POSTs events as JSON to an external webhook (Slack relay, chat bot, ...)."""

    def __init__(self, url: str, headers: dict[str, str] | None = None, timeout_seconds: int = 10):
        self.url = url
        self.headers = headers or {}
        self.timeout_seconds = timeout_seconds

    async def _post(self, payload: dict[str, Any]) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                res = await client.post(self.url, json=payload, headers=self.headers)
        except Exception:
            # Network errors and timeouts are reported, never raised.
            return False
        return 200 <= res.status_code < 300

    async def finding(self, title: str, description: str) -> bool:
        return await self._post(
            {
                "timestamp": time.time(),
                "kind": "finding",
                "title": title,
                "description": redact_text(description, max_len=2000),
            }
        )

    async def alert(self, message: str, error: str | None = None) -> bool:
        return await self._post(
            {
                "timestamp": time.time(),
                "kind": "alert",
                "message": message,
                "error": redact_text(error, max_len=2000) if error else None,
            }
        )


class MultiNotifier(NotificationSink):
    """Fans an event out to several sinks; True only if every sink accepted it."""

    def __init__(self, sinks: list[NotificationSink]):
        self.sinks = list(sinks)

    async def finding(self, title: str, description: str) -> bool:
        results = [await s.finding(title, description) for s in self.sinks]
        return all(results)

    async def alert(self, message: str, error: str | None = None) -> bool:
        results = [await s.alert(message, error) for s in self.sinks]
        return all(results)
