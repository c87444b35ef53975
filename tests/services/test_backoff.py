from __future__ import annotations

import pytest

from jukebox.core import backoff
from jukebox.core.backoff import retry_backoff_seconds


@pytest.mark.parametrize(
    ("attempt", "expected"),
    [
        (1, 0.5),
        (2, 1.0),
        (3, 2.0),
        (6, 4.0),
    ],
)
def test_retry_backoff_doubles_until_cap(monkeypatch, attempt: int, expected: float) -> None:
    monkeypatch.setattr(backoff.random, "uniform", lambda low, high: 0.0)

    assert (
        retry_backoff_seconds(next_retry_attempt=attempt, base_seconds=0.5, backoff_max_seconds=4.0)
        == expected
    )


def test_retry_backoff_jitter_is_bounded() -> None:
    for _ in range(50):
        delay = retry_backoff_seconds(next_retry_attempt=2, base_seconds=1.0, backoff_max_seconds=10.0)
        assert 2.0 <= delay <= 2.5


def test_retry_backoff_zero_base_means_no_wait() -> None:
    assert retry_backoff_seconds(next_retry_attempt=3, base_seconds=0.0, backoff_max_seconds=0.0) == 0.0
