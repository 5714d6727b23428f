import asyncio
import random

import pytest

from support_panel.application.scheduler import (
    GlobalRateWindow,
    ReconnectScheduler,
    calculate_backoff_delay,
)
from support_panel.infrastructure.config import ReconnectSettings


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def fast_settings(**overrides):
    values = dict(
        base_delay_ms=10,
        max_delay_ms=40,
        jitter_ratio=0.0,
        window_seconds=60.0,
        max_starts_per_window=10,
    )
    values.update(overrides)
    return ReconnectSettings(**values)


# ── Backoff ────────────────────────────────────────────────────────

def test_backoff_values():
    assert calculate_backoff_delay(1) == 3000
    assert calculate_backoff_delay(2) == 6000
    assert calculate_backoff_delay(5) == 48000
    assert calculate_backoff_delay(6) == 60000
    assert calculate_backoff_delay(10) == 60000


def test_backoff_is_monotone_and_capped():
    delays = [calculate_backoff_delay(n) for n in range(1, 40)]
    assert delays == sorted(delays)
    assert max(delays) == 60000


def test_backoff_treats_attempt_below_one_as_first():
    assert calculate_backoff_delay(0) == 3000


# ── Global window ──────────────────────────────────────────────────

def test_eleventh_start_in_window_is_rejected():
    clock = FakeClock()
    window = GlobalRateWindow(max_per_window=10, window_duration=60.0, clock=clock)

    assert all(window.try_acquire() for _ in range(10))
    assert window.try_acquire() is False
    assert window.count == 10

    clock.now += 60.0
    assert window.try_acquire() is False

    clock.now += 1.0
    assert window.try_acquire() is True
    assert window.count == 1


def test_remaining_slots():
    window = GlobalRateWindow(max_per_window=3, clock=FakeClock())
    window.try_acquire()
    assert window.remaining == 2


# ── Scheduler ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_schedule_runs_callback_once():
    scheduler = ReconnectScheduler(fast_settings())
    calls = []

    async def callback():
        calls.append(scheduler.has_pending(7))

    assert scheduler.schedule(7, 1, callback) is not None
    assert scheduler.schedule(7, 2, callback) is None
    assert scheduler.has_pending(7)

    await asyncio.sleep(0.05)

    # Entry is gone by the time the callback runs
    assert calls == [False]
    assert not scheduler.has_pending(7)


@pytest.mark.asyncio
async def test_callback_can_schedule_again():
    scheduler = ReconnectScheduler(fast_settings())
    attempts = []

    async def callback():
        attempts.append(len(attempts) + 1)
        if len(attempts) < 2:
            scheduler.schedule(7, 2, callback)

    scheduler.schedule(7, 1, callback)
    await asyncio.sleep(0.1)

    assert attempts == [1, 2]


@pytest.mark.asyncio
async def test_cancel_prevents_callback():
    scheduler = ReconnectScheduler(fast_settings())
    calls = []

    async def callback():
        calls.append(1)

    scheduler.schedule(7, 1, callback)
    assert scheduler.cancel(7) is True
    assert scheduler.cancel(7) is False

    await asyncio.sleep(0.05)
    assert calls == []


@pytest.mark.asyncio
async def test_pending_snapshot_and_cancel_all():
    scheduler = ReconnectScheduler(fast_settings(base_delay_ms=5000, max_delay_ms=5000))

    async def callback():
        pass

    scheduler.schedule(1, 1, callback)
    scheduler.schedule(2, 3, callback)

    pending = {task.agent_id: task.attempt_number for task in scheduler.pending()}
    assert pending == {1: 1, 2: 3}

    scheduler.cancel_all()
    assert scheduler.pending() == []


@pytest.mark.asyncio
async def test_delay_override():
    scheduler = ReconnectScheduler(fast_settings(base_delay_ms=5000, max_delay_ms=5000))

    async def callback():
        pass

    task = scheduler.schedule(7, 1, callback, delay=2.0)
    assert task.delay_seconds == 2.0
    scheduler.cancel_all()


def test_jitter_is_added_on_top_of_backoff():
    scheduler = ReconnectScheduler(
        ReconnectSettings(base_delay_ms=3000, max_delay_ms=60000, jitter_ratio=0.1),
        rng=random.Random(42),
    )
    for attempt in (1, 2, 3):
        base = calculate_backoff_delay(attempt) / 1000.0
        delay = scheduler.backoff_seconds(attempt)
        assert base <= delay <= base * 1.1


def test_zero_jitter_is_deterministic():
    scheduler = ReconnectScheduler(
        ReconnectSettings(base_delay_ms=3000, max_delay_ms=60000, jitter_ratio=0.0)
    )
    assert scheduler.backoff_seconds(5) == 48.0
