from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import update

from jukebox.db.models.points_balances import PointsBalance
from jukebox.economy.points.errors import InsufficientBalanceError
from jukebox.economy.points import service as ledger_module
from jukebox.economy.points.service import PointsLedger
from jukebox.economy.points.types import TransactionType


@pytest.mark.asyncio
async def test_get_balance_creates_zero_balance_lazily(ledger: PointsLedger) -> None:
    assert await ledger.get_balance("user-1", "venue-1") == 0
    assert await ledger.get_balance("user-1", "venue-1") == 0


@pytest.mark.asyncio
async def test_apply_transaction_records_balance_chain(ledger: PointsLedger) -> None:
    earned = await ledger.apply_transaction(
        user_id="user-1",
        venue_id="venue-1",
        type=TransactionType.EARN,
        amount=50,
        description="welcome bonus",
    )
    spent = await ledger.apply_transaction(
        user_id="user-1",
        venue_id="venue-1",
        type="spend",
        amount=20,
        reference_id="order-1",
        reference_type="queue_request",
    )

    assert (earned.balance_before, earned.balance_after) == (0, 50)
    assert (spent.balance_before, spent.balance_after) == (50, 30)
    assert spent.type is TransactionType.SPEND
    assert spent.idempotent_replay is False
    assert spent.transaction_id > earned.transaction_id
    assert await ledger.get_balance("user-1", "venue-1") == 30


@pytest.mark.asyncio
async def test_balances_are_scoped_per_venue(ledger: PointsLedger, fund) -> None:
    await fund("user-1", "venue-1", 40)

    assert await ledger.get_balance("user-1", "venue-1") == 40
    assert await ledger.get_balance("user-1", "venue-2") == 0


@pytest.mark.asyncio
async def test_spend_without_funds_raises_and_leaves_no_trace(ledger: PointsLedger, fund) -> None:
    await fund("user-1", "venue-1", 5)

    with pytest.raises(InsufficientBalanceError) as exc_info:
        await ledger.apply_transaction(
            user_id="user-1",
            venue_id="venue-1",
            type=TransactionType.SPEND,
            amount=10,
            reference_id="order-1",
            reference_type="queue_request",
        )

    assert exc_info.value.requested == 10
    assert exc_info.value.available == 5
    assert await ledger.get_balance("user-1", "venue-1") == 5
    assert (
        await ledger.find_transaction(
            reference_id="order-1",
            reference_type="queue_request",
            type=TransactionType.SPEND,
        )
        is None
    )


@pytest.mark.asyncio
async def test_same_reference_is_applied_once(ledger: PointsLedger, fund) -> None:
    await fund("user-1", "venue-1", 100)
    kwargs = dict(
        user_id="user-1",
        venue_id="venue-1",
        type=TransactionType.SPEND,
        amount=25,
        reference_id="venue-1:track-1:user-1:req-1",
        reference_type="queue_request",
    )

    first = await ledger.apply_transaction(**kwargs)
    second = await ledger.apply_transaction(**kwargs)

    assert second.idempotent_replay is True
    assert second.transaction_id == first.transaction_id
    assert await ledger.get_balance("user-1", "venue-1") == 75
    history = await ledger.get_transaction_history("user-1", "venue-1", type=TransactionType.SPEND)
    assert history.total == 1


@pytest.mark.asyncio
async def test_concurrent_same_reference_charges_once(ledger: PointsLedger, fund) -> None:
    await fund("user-1", "venue-1", 100)

    results = await asyncio.gather(
        *[
            ledger.apply_transaction(
                user_id="user-1",
                venue_id="venue-1",
                type=TransactionType.SPEND,
                amount=10,
                reference_id="venue-1:track-1:user-1:req-1",
                reference_type="queue_request",
            )
            for _ in range(5)
        ]
    )

    assert len({result.transaction_id for result in results}) == 1
    assert sum(1 for result in results if not result.idempotent_replay) == 1
    assert await ledger.get_balance("user-1", "venue-1") == 90


@pytest.mark.asyncio
async def test_concurrent_spends_never_overdraw(ledger: PointsLedger, fund) -> None:
    await fund("user-1", "venue-1", 15)

    results = await asyncio.gather(
        *[
            ledger.apply_transaction(
                user_id="user-1",
                venue_id="venue-1",
                type=TransactionType.SPEND,
                amount=10,
                reference_id=f"order-{index}",
                reference_type="queue_request",
            )
            for index in range(2)
        ],
        return_exceptions=True,
    )

    successes = [result for result in results if not isinstance(result, Exception)]
    failures = [result for result in results if isinstance(result, InsufficientBalanceError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert await ledger.get_balance("user-1", "venue-1") == 5


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"amount": 0},
        {"amount": -5},
        {"user_id": ""},
        {"venue_id": "   "},
        {"reference_id": "order-1", "reference_type": None},
        {"user_id": "u" * 65},
        {"reference_id": "r" * 256, "reference_type": "order"},
    ],
)
async def test_apply_transaction_rejects_invalid_input(ledger: PointsLedger, overrides) -> None:
    kwargs = dict(user_id="user-1", venue_id="venue-1", type=TransactionType.EARN, amount=10)
    kwargs.update(overrides)

    with pytest.raises(ValueError):
        await ledger.apply_transaction(**kwargs)


@pytest.mark.asyncio
async def test_apply_transaction_rejects_unknown_type(ledger: PointsLedger) -> None:
    with pytest.raises(ValueError):
        await ledger.apply_transaction(user_id="user-1", venue_id="venue-1", type="gift", amount=10)


@pytest.mark.asyncio
async def test_history_is_newest_first_and_paginated(ledger: PointsLedger, fund) -> None:
    for amount in (1, 2, 3, 4, 5):
        await fund("user-1", "venue-1", amount)

    first_page = await ledger.get_transaction_history("user-1", "venue-1", page=1, limit=2)
    last_page = await ledger.get_transaction_history("user-1", "venue-1", page=3, limit=2)

    assert [item.amount for item in first_page.transactions] == [5, 4]
    assert [item.amount for item in last_page.transactions] == [1]
    assert first_page.total == 5
    assert first_page.total_pages == 3


@pytest.mark.asyncio
async def test_history_filters_by_type(ledger: PointsLedger, fund) -> None:
    await fund("user-1", "venue-1", 30)
    await ledger.apply_transaction(
        user_id="user-1",
        venue_id="venue-1",
        type=TransactionType.PENALTY,
        amount=5,
        description="chargeback",
    )

    penalties = await ledger.get_transaction_history("user-1", "venue-1", type="penalty")

    assert [item.type for item in penalties.transactions] == [TransactionType.PENALTY]


@pytest.mark.asyncio
async def test_verify_balance_replays_log(ledger: PointsLedger, fund) -> None:
    await fund("user-1", "venue-1", 30)
    await ledger.apply_transaction(
        user_id="user-1",
        venue_id="venue-1",
        type=TransactionType.SPEND,
        amount=10,
        reference_id="order-1",
        reference_type="queue_request",
    )
    await ledger.apply_transaction(
        user_id="user-1",
        venue_id="venue-1",
        type=TransactionType.REFUND,
        amount=10,
        reference_id="order-1",
        reference_type="queue_request",
    )

    audit = await ledger.verify_balance("user-1", "venue-1")

    assert audit.stored_balance == 30
    assert audit.replayed_balance == 30
    assert audit.transactions_count == 3
    assert audit.has_drift is False


@pytest.mark.asyncio
async def test_verify_balance_reports_drift(
    ledger: PointsLedger, session_factory, fund, monkeypatch
) -> None:
    alerts: list[tuple[str, dict[str, object]]] = []

    async def _fake_send_ops_alert(*, event: str, payload: dict[str, object]) -> bool:
        alerts.append((event, payload))
        return True

    monkeypatch.setattr(ledger_module, "send_ops_alert", _fake_send_ops_alert)
    await fund("user-1", "venue-1", 30)
    async with session_factory.begin() as session:
        await session.execute(
            update(PointsBalance)
            .where(PointsBalance.user_id == "user-1", PointsBalance.venue_id == "venue-1")
            .values(current_balance=999)
        )

    audit = await ledger.verify_balance("user-1", "venue-1")

    assert audit.has_drift is True
    assert audit.stored_balance == 999
    assert audit.replayed_balance == 30
    assert len(alerts) == 1
    event, payload = alerts[0]
    assert event == "points_balance_drift_detected"
    assert payload["stored_balance"] == 999
    assert payload["replayed_balance"] == 30


@pytest.mark.asyncio
async def test_venue_summary_totals(ledger: PointsLedger, fund) -> None:
    await fund("user-1", "venue-1", 30)
    await fund("user-2", "venue-1", 20)
    await ledger.apply_transaction(
        user_id="user-2",
        venue_id="venue-1",
        type=TransactionType.SPEND,
        amount=15,
        reference_id="order-1",
        reference_type="queue_request",
    )

    summary = await ledger.get_venue_summary("venue-1")

    assert summary.total_users == 2
    assert summary.total_points_earned == 50
    assert summary.total_points_spent == 15
    assert summary.total_points_in_circulation == 35
    assert summary.volume_by_type == {"earn": 50, "spend": 15}
