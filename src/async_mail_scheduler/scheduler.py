# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Periodic loop that feeds due messages to the dispatcher.

The loop has two states, ``stopped`` and ``running``. While running it
waits for the tick interval (or an explicit wake-up), asks the store for
due messages and dispatches them oldest first. The loop itself never
mutates messages: every change goes through the Dispatcher.

Dispatch inside a tick is sequential by default, which bounds the load
on the transport. ``max_concurrency > 1`` allows a bounded number of
dispatches in flight, still started in due order.

Example:
    Running the loop::

        loop = SchedulerLoop(store, dispatcher, tick_interval=60)
        await loop.start()
        ...
        await loop.stop()
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .dispatcher import DispatchOutcome, DispatchResult, Dispatcher
from .logger import get_logger
from .persistence import MessageStore
from .prometheus import SchedulerMetrics

DEFAULT_TICK_INTERVAL = 60.0
DEFAULT_STALE_CLAIM_SECONDS = 15 * 60


@dataclass
class TickReport:
    """Summary of one tick."""

    due: int = 0
    results: list[DispatchResult] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def count(self, outcome: DispatchOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def to_dict(self) -> dict[str, Any]:
        return {
            "due": self.due,
            "sent": self.count(DispatchOutcome.SENT),
            "retrying": self.count(DispatchOutcome.RETRYING),
            "failed": self.count(DispatchOutcome.FAILED),
            "skipped": self.count(DispatchOutcome.SKIPPED),
            "errors": dict(self.errors),
        }


def _utc_now_epoch() -> int:
    return int(time.time())


class SchedulerLoop:
    """Recurring timer driving message discovery and dispatch.

    Attributes:
        store: Message store queried for due work.
        dispatcher: Dispatcher invoked for each due message.
        tick_interval: Seconds between ticks.
        max_concurrency: Maximum dispatches in flight within one tick.
        batch_size: Maximum messages per tick, None for no limit.
        stale_claim_seconds: Age after which a ``sending`` claim left over
            from a crashed process is released on start. 0 disables it.
    """

    def __init__(
        self,
        store: MessageStore,
        dispatcher: Dispatcher,
        *,
        tick_interval: float = DEFAULT_TICK_INTERVAL,
        max_concurrency: int = 1,
        batch_size: int | None = None,
        stale_claim_seconds: int = DEFAULT_STALE_CLAIM_SECONDS,
        metrics: SchedulerMetrics | None = None,
        clock: Callable[[], int] | None = None,
        logger=None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.tick_interval = float(tick_interval)
        self.max_concurrency = max(1, int(max_concurrency))
        self.batch_size = int(batch_size) if batch_size else None
        self.stale_claim_seconds = max(0, int(stale_claim_seconds))
        self.metrics = metrics or dispatcher.metrics
        self.clock = clock or _utc_now_epoch
        self.logger = logger or get_logger("SchedulerLoop")

        self._running = False
        self._active_since: int | None = None
        self._stop = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._lifecycle_lock = asyncio.Lock()
        self.last_tick: TickReport | None = None

    # ----------------------------------------------------------------- state
    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_since(self) -> int | None:
        return self._active_since

    def state(self) -> dict[str, Any]:
        return {"running": self._running, "active_since": self._active_since}

    # ------------------------------------------------------------- lifecycle
    async def start(self) -> None:
        """Start the recurring timer. Calling it while running is a no-op.

        A start issued while a stop is still draining the previous run waits
        for that run to finish, so at most one loop task exists.
        """
        async with self._lifecycle_lock:
            if self._running:
                self.logger.info("Scheduler loop is already running")
                return
            if self.stale_claim_seconds:
                now_ts = self.clock()
                released = await self.store.release_stale_claims(now_ts - self.stale_claim_seconds, now_ts=now_ts)
                if released:
                    self.logger.warning("Released %d stale claim(s) left in sending", released)
            # Fresh events per run, so a run still draining keeps seeing its own stop.
            self._stop = asyncio.Event()
            self._wake_event = asyncio.Event()
            self._running = True
            self._active_since = self.clock()
            self._task = asyncio.create_task(self._run(self._stop), name="mail-scheduler-loop")
            self.logger.info("Scheduler loop started (interval=%ss)", self.tick_interval)

    async def stop(self) -> None:
        """Stop the timer and wait for an in-flight tick to finish.

        Dispatches already claimed are not aborted. Calling it while
        stopped is a no-op.
        """
        task = self._task
        if task is not None and task is asyncio.current_task():
            # Stopping from inside the tick cannot wait for itself.
            self._halt()
            self.logger.info("Scheduler loop stopped")
            return
        async with self._lifecycle_lock:
            if not self._running:
                self.logger.debug("Scheduler loop is not running")
                return
            task = self._halt()
            if task is not None:
                await asyncio.gather(task, return_exceptions=True)
            self.logger.info("Scheduler loop stopped")

    def _halt(self) -> asyncio.Task | None:
        self._running = False
        self._active_since = None
        self._stop.set()
        self._wake_event.set()
        task, self._task = self._task, None
        return task

    def trigger(self) -> None:
        """Wake the loop so the next tick runs immediately."""
        self._wake_event.set()

    async def _run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            await self._wait_for_wakeup(self.tick_interval)
            if stop.is_set():
                break
            try:
                await self.run_tick()
            except Exception as exc:
                # The due query itself failed; try again on the next tick.
                self.logger.exception("Scheduler tick failed: %s", exc)

    async def _wait_for_wakeup(self, timeout: float | None) -> None:
        """Pause until ``timeout`` elapses or the wake event is set."""
        if self._stop.is_set():
            return
        if timeout is None or math.isinf(timeout):
            await self._wake_event.wait()
            self._wake_event.clear()
            return
        timeout = max(0.0, float(timeout))
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return
        self._wake_event.clear()

    # ------------------------------------------------------------------ tick
    async def run_tick(self, now_ts: int | None = None) -> TickReport:
        """Dispatch every message due at ``now_ts``.

        A failure while dispatching one message is logged and recorded in
        the report; the remaining messages are still processed.

        Raises:
            Exception: Store errors raised by the due-work query.
        """
        now_ts = self.clock() if now_ts is None else now_ts
        due = await self.store.find_due_for_dispatch(now_ts=now_ts, limit=self.batch_size)
        self.metrics.inc_ticks()
        self.metrics.set_due(len(due))
        report = TickReport(due=len(due))
        if due:
            self.logger.info("Processing %d due message(s)", len(due))

        if self.max_concurrency == 1:
            for message in due:
                await self._dispatch_isolated(message, report, now_ts)
        else:
            semaphore = asyncio.Semaphore(self.max_concurrency)

            async def _bounded(message: dict[str, Any]) -> None:
                async with semaphore:
                    await self._dispatch_isolated(message, report, now_ts)

            # Tasks start in creation order, so the semaphore is taken in due order.
            await asyncio.gather(*(asyncio.create_task(_bounded(message)) for message in due))

        self.last_tick = report
        return report

    async def _dispatch_isolated(self, message: dict[str, Any], report: TickReport, now_ts: int) -> None:
        msg_id = message.get("id") or "-"
        try:
            result = await self.dispatcher.dispatch(message, now_ts=now_ts)
        except Exception as exc:
            self.logger.exception("Dispatch of message %s failed: %s", msg_id, exc)
            report.errors[msg_id] = str(exc)
            return
        report.results.append(result)
