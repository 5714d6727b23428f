"""
Reconnection Scheduler - Backoff Timers and Global Start Throttling
====================================================================

ARCHITECTURAL DECISION:
- At most one pending reconnection per agent; a second schedule() is a no-op
- The table entry is removed right before the callback runs, so the callback
  itself may schedule again
- One GlobalRateWindow is shared by every agent: a burst of disconnects
  cannot turn into a burst of new WhatsApp sessions

USAGE:
    scheduler = ReconnectScheduler(settings.reconnect)
    scheduler.schedule(7, attempt=2, callback=lambda: manager.start_instance(7))
    scheduler.cancel(7)
"""

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set

from ..domain.models import ReconnectTask
from ..infrastructure.config import ReconnectSettings

logger = logging.getLogger(__name__)

BASE_DELAY_MS = 3000
MAX_DELAY_MS = 60000


def calculate_backoff_delay(
    attempt: int,
    base_ms: int = BASE_DELAY_MS,
    max_ms: int = MAX_DELAY_MS,
) -> int:
    """
    Exponential backoff in milliseconds: base * 2^(attempt-1), capped at max.

    1 -> 3000, 2 -> 6000, 5 -> 48000, 6+ -> 60000 with the defaults.
    """
    attempt = max(1, int(attempt))
    # Cap the exponent so huge attempt numbers don't build huge ints
    exponent = min(attempt - 1, 32)
    return min(base_ms * (2 ** exponent), max_ms)


class GlobalRateWindow:
    """
    Fixed window counter of instance starts across all agents.

    `clock` returns seconds; tests inject a fake one.
    """

    def __init__(
        self,
        max_per_window: int = 10,
        window_duration: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_per_window = max_per_window
        self.window_duration = window_duration
        self._clock = clock
        self.count = 0
        self.window_start = clock()

    def reset_if_expired(self) -> None:
        now = self._clock()
        if now - self.window_start > self.window_duration:
            self.count = 0
            self.window_start = now

    def try_acquire(self) -> bool:
        """Take one start slot. Returns False when the window is exhausted."""
        self.reset_if_expired()
        if self.count >= self.max_per_window:
            return False
        self.count += 1
        return True

    @property
    def remaining(self) -> int:
        self.reset_if_expired()
        return max(0, self.max_per_window - self.count)


class ReconnectScheduler:
    """Per-agent reconnection timers on the running event loop."""

    def __init__(
        self,
        settings: Optional[ReconnectSettings] = None,
        rate_window: Optional[GlobalRateWindow] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or ReconnectSettings()
        self.rate_window = rate_window or GlobalRateWindow(
            max_per_window=self.settings.max_starts_per_window,
            window_duration=self.settings.window_seconds,
        )
        self._rng = rng or random.Random()
        self._tasks: Dict[int, ReconnectTask] = {}
        self._running: Set[asyncio.Task] = set()

    def backoff_seconds(self, attempt: int) -> float:
        """Backoff delay for an attempt, plus jitter, in seconds."""
        delay_ms = calculate_backoff_delay(
            attempt, self.settings.base_delay_ms, self.settings.max_delay_ms
        )
        if self.settings.jitter_ratio > 0:
            delay_ms += self._rng.uniform(0, delay_ms * self.settings.jitter_ratio)
        return delay_ms / 1000.0

    def schedule(
        self,
        agent_id: int,
        attempt: int,
        callback: Callable[[], Awaitable],
        delay: Optional[float] = None,
    ) -> Optional[ReconnectTask]:
        """
        Arm a reconnection for the agent.

        `delay` (seconds) overrides the backoff. Returns None if a task is
        already pending for the agent.
        """
        if agent_id in self._tasks:
            logger.info(f"Reconnection already scheduled for agent {agent_id}, skipping")
            return None

        loop = asyncio.get_running_loop()
        delay_seconds = self.backoff_seconds(attempt) if delay is None else delay

        task = ReconnectTask(
            agent_id=agent_id,
            attempt_number=attempt,
            scheduled_at=loop.time(),
            delay_seconds=delay_seconds,
        )
        task.handle = loop.call_later(delay_seconds, self._fire, task, callback)
        self._tasks[agent_id] = task

        logger.info(
            f"Reconnection for agent {agent_id} scheduled in {delay_seconds:.1f}s "
            f"(attempt {attempt})"
        )
        return task

    def _fire(self, task: ReconnectTask, callback: Callable[[], Awaitable]) -> None:
        if self._tasks.get(task.agent_id) is not task:
            return
        del self._tasks[task.agent_id]

        logger.info(f"Running reconnection for agent {task.agent_id} (attempt {task.attempt_number})")
        running = asyncio.ensure_future(callback())
        self._running.add(running)
        running.add_done_callback(self._finished(task))

    def _finished(self, task: ReconnectTask):
        def done(future: asyncio.Future) -> None:
            self._running.discard(future)
            if future.cancelled():
                return
            error = future.exception()
            if error is not None:
                logger.error(
                    f"Reconnection attempt {task.attempt_number} for agent "
                    f"{task.agent_id} failed: {error}"
                )
        return done

    def cancel(self, agent_id: int) -> bool:
        """Cancel the agent's pending reconnection. Returns False if none."""
        task = self._tasks.pop(agent_id, None)
        if task is None:
            return False
        task.cancel()
        logger.info(f"Cancelled pending reconnection for agent {agent_id}")
        return True

    def has_pending(self, agent_id: int) -> bool:
        return agent_id in self._tasks

    def pending(self) -> List[ReconnectTask]:
        return list(self._tasks.values())

    def cancel_all(self) -> None:
        for agent_id in list(self._tasks):
            self.cancel(agent_id)
        for running in list(self._running):
            running.cancel()
