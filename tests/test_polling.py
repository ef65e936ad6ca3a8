"""Tests for bounded polling loops."""

from __future__ import annotations

import asyncio
import time

from deskprobe.polling import ms_to_s, poll_until


def _run(coro):
    """Run async polling scenario from sync test functions."""
    return asyncio.run(coro)


def test_poll_until_returns_first_non_none_result() -> None:
    calls = 0

    async def check() -> int | None:
        nonlocal calls
        calls += 1
        return calls if calls >= 3 else None

    assert _run(poll_until(check, timeout_s=1.0, interval_s=0.001)) == 3
    assert calls == 3


def test_poll_until_times_out_with_none() -> None:
    async def never() -> None:
        return None

    started = time.monotonic()
    assert _run(poll_until(never, timeout_s=0.03, interval_s=0.005)) is None
    assert time.monotonic() - started < 1.0


def test_poll_until_checks_once_even_with_zero_budget() -> None:
    calls: list[int] = []

    async def check() -> str:
        calls.append(1)
        return "ready"

    assert _run(poll_until(check, timeout_s=0)) == "ready"
    assert calls == [1]


def test_ms_to_s_clamps_negative_values() -> None:
    assert ms_to_s(1500) == 1.5
    assert ms_to_s(-5) == 0.0
