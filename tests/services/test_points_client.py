from __future__ import annotations

import json

import httpx
import pytest

from jukebox.economy.points.errors import LedgerUnavailableError
from jukebox.economy.points.service import PointsLedger
from jukebox.services.points_client import HttpPointsServiceClient, LocalPointsServiceClient


def _http_client(handler) -> HttpPointsServiceClient:
    return HttpPointsServiceClient(
        base_url="http://points.internal",
        internal_token="internal-secret",
        client=httpx.AsyncClient(
            base_url="http://points.internal",
            transport=httpx.MockTransport(handler),
            headers={"X-Internal-Token": "internal-secret"},
        ),
    )


@pytest.mark.asyncio
async def test_local_reserve_and_refund_share_correlation_id(ledger: PointsLedger, fund) -> None:
    await fund("user-1", "venue-1", 30)
    client = LocalPointsServiceClient(ledger)

    reserve = await client.reserve(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request",
        correlation_id="venue-1:track-1:user-1:req-1",
    )
    refund = await client.refund(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request_compensation",
        correlation_id="venue-1:track-1:user-1:req-1",
        original_transaction_id=reserve.transaction_id,
    )
    replayed_refund = await client.refund(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request_compensation",
        correlation_id="venue-1:track-1:user-1:req-1",
    )

    assert reserve.ok is True
    assert reserve.new_balance == 20
    assert refund.ok is True
    assert refund.new_balance == 30
    assert replayed_refund.transaction_id == refund.transaction_id
    assert await ledger.get_balance("user-1", "venue-1") == 30


@pytest.mark.asyncio
async def test_local_reserve_after_refund_is_voided(ledger: PointsLedger, fund) -> None:
    await fund("user-1", "venue-1", 30)
    client = LocalPointsServiceClient(ledger)
    request = dict(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        correlation_id="venue-1:track-1:user-1:req-1",
    )

    first = await client.reserve(reason="queue_request", **request)
    replay = await client.reserve(reason="queue_request", **request)
    await client.refund(reason="queue_request_compensation", **request)
    after_refund = await client.reserve(reason="queue_request", **request)

    assert first.ok is True
    assert replay.ok is True
    assert replay.idempotent_replay is True
    assert after_refund.ok is False
    assert after_refund.voided is True
    assert await ledger.get_balance("user-1", "venue-1") == 30

@pytest.mark.asyncio
async def test_local_reserve_reports_insufficient_funds(ledger: PointsLedger) -> None:
    client = LocalPointsServiceClient(ledger)

    result = await client.reserve(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request",
        correlation_id="c-1",
    )

    assert result.ok is False
    assert result.insufficient_funds is True
    assert result.unavailable is False


@pytest.mark.asyncio
async def test_local_refund_without_charge_mints_nothing(ledger: PointsLedger) -> None:
    client = LocalPointsServiceClient(ledger)

    result = await client.refund(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request_compensation",
        correlation_id="never-charged",
    )

    assert result.ok is True
    assert result.nothing_to_refund is True
    assert await ledger.get_balance("user-1", "venue-1") == 0


@pytest.mark.asyncio
async def test_local_reserve_maps_ledger_outage_to_unavailable(ledger: PointsLedger, monkeypatch) -> None:
    async def _broken_apply(**kwargs):
        raise LedgerUnavailableError("apply_transaction")

    monkeypatch.setattr(ledger, "apply_transaction", _broken_apply)
    client = LocalPointsServiceClient(ledger)

    result = await client.reserve(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request",
        correlation_id="c-1",
    )

    assert result.unavailable is True


@pytest.mark.asyncio
async def test_http_reserve_posts_payload_and_parses_response() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["path"] = request.url.path
        captured["token"] = request.headers.get("X-Internal-Token")
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, json={"ok": True, "transaction_id": 7, "new_balance": 40})

    client = _http_client(handler)
    result = await client.reserve(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request",
        correlation_id="c-1",
    )
    await client.aclose()

    assert result.ok is True
    assert result.transaction_id == 7
    assert result.new_balance == 40
    assert captured["path"] == "/internal/points/reserve"
    assert captured["token"] == "internal-secret"
    assert captured["body"] == {
        "user_id": "user-1",
        "venue_id": "venue-1",
        "amount": 10,
        "reason": "queue_request",
        "correlation_id": "c-1",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status_code", "insufficient", "unavailable"),
    [
        (409, True, False),
        (500, False, True),
        (503, False, True),
    ],
)
async def test_http_reserve_maps_status_codes(status_code: int, insufficient: bool, unavailable: bool) -> None:
    client = _http_client(lambda request: httpx.Response(status_code, json={"detail": {}}))

    result = await client.reserve(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request",
        correlation_id="c-1",
    )

    assert result.ok is False
    assert result.insufficient_funds is insufficient
    assert result.unavailable is unavailable


@pytest.mark.asyncio
async def test_http_transport_error_is_unavailable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = _http_client(handler)

    reserve = await client.reserve(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request",
        correlation_id="c-1",
    )
    refund = await client.refund(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request_compensation",
        correlation_id="c-1",
    )

    assert reserve.unavailable is True
    assert refund.unavailable is True
    assert await client.health_check() is False
    with pytest.raises(LedgerUnavailableError):
        await client.get_balance(user_id="user-1", venue_id="venue-1")


@pytest.mark.asyncio
async def test_http_refund_and_balance() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/internal/points/refund":
            return httpx.Response(200, json={"ok": True, "nothing_to_refund": True})
        if request.url.path == "/internal/points/balance/venue-1/user-1":
            return httpx.Response(200, json={"user_id": "user-1", "venue_id": "venue-1", "balance": 55})
        return httpx.Response(404)

    client = _http_client(handler)

    refund = await client.refund(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request_compensation",
        correlation_id="c-1",
    )

    assert refund.ok is True
    assert refund.nothing_to_refund is True
    assert await client.get_balance(user_id="user-1", venue_id="venue-1") == 55


@pytest.mark.asyncio
async def test_http_reserve_reads_voided_conflict() -> None:
    client = _http_client(
        lambda request: httpx.Response(409, json={"detail": {"code": "E_REQUEST_VOIDED"}})
    )

    result = await client.reserve(
        user_id="user-1",
        venue_id="venue-1",
        amount=10,
        reason="queue_request",
        correlation_id="c-1",
    )

    assert result.ok is False
    assert result.voided is True
    assert result.insufficient_funds is False
