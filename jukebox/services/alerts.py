from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx
import structlog

from jukebox.core.config import get_settings

logger = structlog.get_logger(__name__)
ALERT_TIMEOUT_SECONDS = 5.0
VALID_SEVERITIES = {"critical", "error", "warning", "info"}
SEVERITY_COLOR = {
    "critical": "#B42318",
    "error": "#F04438",
    "warning": "#F79009",
    "info": "#1570EF",
}


@dataclass(frozen=True)
class AlertTarget:
    channel: str
    url: str


DEFAULT_SEVERITY = "warning"
EVENT_SEVERITY = {
    "queue_compensation_incomplete": "critical",
    "points_balance_drift_detected": "critical",
}


def _setting_str(settings: object, attr: str) -> str:
    value = getattr(settings, attr, "")
    return value.strip() if isinstance(value, str) else ""


def _resolve_targets(settings: object) -> list[AlertTarget]:
    targets: list[AlertTarget] = []
    slack_webhook_url = _setting_str(settings, "ops_alert_slack_webhook_url")
    generic_webhook_url = _setting_str(settings, "ops_alert_webhook_url")
    if slack_webhook_url:
        targets.append(AlertTarget(channel="slack", url=slack_webhook_url))
    if generic_webhook_url:
        targets.append(AlertTarget(channel="generic", url=generic_webhook_url))
    return targets


def _payload_text(payload: dict[str, object]) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _build_channel_payload(
    *,
    channel: str,
    event: str,
    payload: dict[str, object],
    sent_at: datetime,
    severity: str,
    app_env: str,
) -> dict[str, Any]:
    if channel == "generic":
        return {
            "event": event,
            "payload": payload,
            "sent_at": sent_at.isoformat(),
            "severity": severity,
            "environment": app_env,
        }
    if channel == "slack":
        return {
            "text": f"[{severity.upper()}] {event}",
            "attachments": [
                {
                    "color": SEVERITY_COLOR.get(severity, SEVERITY_COLOR[DEFAULT_SEVERITY]),
                    "fields": [
                        {"title": "Environment", "value": app_env, "short": True},
                        {"title": "Sent At", "value": sent_at.isoformat(), "short": True},
                        {"title": "Event", "value": event, "short": False},
                        {"title": "Payload", "value": _payload_text(payload), "short": False},
                    ],
                }
            ],
        }
    raise ValueError(f"Unsupported alert channel: {channel}")


async def _post_json(
    *,
    client: httpx.AsyncClient,
    url: str,
    body: dict[str, Any],
    event: str,
    channel: str,
) -> bool:
    try:
        response = await client.post(url, json=body)
        response.raise_for_status()
        return True
    except httpx.HTTPError:
        logger.exception(
            "ops_alert_delivery_failed",
            alert_event=event,
            provider=channel,
        )
        return False


async def send_ops_alert(*, event: str, payload: dict[str, object]) -> bool:
    settings = get_settings()
    targets = _resolve_targets(settings)
    if not targets:
        logger.warning("ops_alert_not_configured", alert_event=event)
        return False

    sent_at = datetime.now(timezone.utc)
    severity = EVENT_SEVERITY.get(event, DEFAULT_SEVERITY)
    app_env = _setting_str(settings, "app_env") or "dev"

    delivered_to: list[str] = []
    failed_to: list[str] = []
    async with httpx.AsyncClient(timeout=ALERT_TIMEOUT_SECONDS) as client:
        for target in targets:
            body = _build_channel_payload(
                channel=target.channel,
                event=event,
                payload=payload,
                sent_at=sent_at,
                severity=severity,
                app_env=app_env,
            )
            delivered = await _post_json(
                client=client,
                url=target.url,
                body=body,
                event=event,
                channel=target.channel,
            )
            if delivered:
                delivered_to.append(target.channel)
            else:
                failed_to.append(target.channel)

    if not delivered_to:
        logger.error(
            "ops_alert_delivery_exhausted",
            alert_event=event,
            severity=severity,
            failed_to=failed_to,
        )
        return False

    logger.info(
        "ops_alert_delivered",
        alert_event=event,
        severity=severity,
        delivered_to=delivered_to,
        failed_to=failed_to,
    )
    return True
