from __future__ import annotations

from types import SimpleNamespace
from typing import Any

import httpx
import pytest

from jukebox.services import alerts


class _Response:
    def raise_for_status(self) -> None:
        return None


class _Client:
    def __init__(self, calls: list[dict[str, Any]], *, fail_urls: set[str] | None = None) -> None:
        self._calls = calls
        self._fail_urls = fail_urls or set()

    async def __aenter__(self) -> "_Client":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        return None

    async def post(self, url: str, json: dict[str, object]) -> _Response:
        self._calls.append({"url": url, "json": json})
        if url in self._fail_urls:
            raise httpx.ConnectError("delivery failed")
        return _Response()


def _settings(**overrides: object) -> SimpleNamespace:
    base = {
        "app_env": "test",
        "ops_alert_webhook_url": "",
        "ops_alert_slack_webhook_url": "",
    }
    base.update(overrides)
    return SimpleNamespace(**base)


def _patch_http_client(
    monkeypatch: pytest.MonkeyPatch,
    calls: list[dict[str, Any]],
    *,
    fail_urls: set[str] | None = None,
) -> None:
    def factory(timeout: float) -> _Client:  # noqa: ARG001
        return _Client(calls, fail_urls=fail_urls)

    monkeypatch.setattr(alerts.httpx, "AsyncClient", factory)


@pytest.mark.asyncio
async def test_send_ops_alert_returns_false_when_no_targets_configured(monkeypatch) -> None:
    monkeypatch.setattr(alerts, "get_settings", lambda: _settings())
    sent = await alerts.send_ops_alert(event="test_event", payload={"k": "v"})
    assert sent is False


@pytest.mark.asyncio
async def test_send_ops_alert_posts_critical_compensation_alert(monkeypatch) -> None:
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr(
        alerts,
        "get_settings",
        lambda: _settings(ops_alert_webhook_url="https://ops.example.local/hook"),
    )
    _patch_http_client(monkeypatch, calls)

    sent = await alerts.send_ops_alert(
        event="queue_compensation_incomplete",
        payload={"venue_id": "venue-1", "refunded": False},
    )

    assert sent is True
    assert len(calls) == 1
    assert calls[0]["url"] == "https://ops.example.local/hook"
    body = calls[0]["json"]
    assert body["event"] == "queue_compensation_incomplete"
    assert body["severity"] == "critical"
    assert body["environment"] == "test"
    assert body["payload"] == {"venue_id": "venue-1", "refunded": False}


@pytest.mark.asyncio
async def test_send_ops_alert_formats_slack_message(monkeypatch) -> None:
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr(
        alerts,
        "get_settings",
        lambda: _settings(ops_alert_slack_webhook_url="https://hooks.slack.local/T000"),
    )
    _patch_http_client(monkeypatch, calls)

    sent = await alerts.send_ops_alert(event="queue_store_degraded", payload={"venue_id": "venue-1"})

    assert sent is True
    body = calls[0]["json"]
    assert body["text"] == "[WARNING] queue_store_degraded"
    fields = {field["title"]: field["value"] for field in body["attachments"][0]["fields"]}
    assert fields["Payload"] == '{"venue_id":"venue-1"}'


@pytest.mark.asyncio
async def test_send_ops_alert_succeeds_when_one_channel_delivers(monkeypatch) -> None:
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr(
        alerts,
        "get_settings",
        lambda: _settings(
            ops_alert_webhook_url="https://ops.example.local/hook",
            ops_alert_slack_webhook_url="https://hooks.slack.local/T000",
        ),
    )
    _patch_http_client(monkeypatch, calls, fail_urls={"https://hooks.slack.local/T000"})

    sent = await alerts.send_ops_alert(event="queue_compensation_incomplete", payload={})

    assert sent is True
    assert [call["url"] for call in calls] == [
        "https://hooks.slack.local/T000",
        "https://ops.example.local/hook",
    ]


@pytest.mark.asyncio
async def test_send_ops_alert_returns_false_when_every_channel_fails(monkeypatch) -> None:
    calls: list[dict[str, Any]] = []
    monkeypatch.setattr(
        alerts,
        "get_settings",
        lambda: _settings(ops_alert_webhook_url="https://ops.example.local/hook"),
    )
    _patch_http_client(monkeypatch, calls, fail_urls={"https://ops.example.local/hook"})

    sent = await alerts.send_ops_alert(event="queue_compensation_incomplete", payload={})

    assert sent is False
