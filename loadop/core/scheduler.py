"""
Reconcile scheduling.

Invokes the reconciler for a test run whenever it is asked to (object change)
or a requested requeue delay elapses. Passes for the same run are serialized:
a request arriving while a pass is in flight is coalesced and runs once the
pass returns. Different runs reconcile concurrently. Raised errors are retried
with exponential backoff.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from loadop.core.reconciler import ReconcileResult

logger = logging.getLogger(__name__)

RunKey = tuple[str, str]
ReconcileFn = Callable[[str, str], Awaitable[ReconcileResult]]


class ReconcileScheduler:
    def __init__(
        self,
        reconcile: ReconcileFn,
        *,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 300.0,
    ) -> None:
        self._reconcile = reconcile
        self.backoff_base_seconds = float(backoff_base_seconds)
        self.backoff_max_seconds = float(backoff_max_seconds)

        self._in_flight: dict[RunKey, asyncio.Task[None]] = {}
        self._pending: set[RunKey] = set()
        self._timers: dict[RunKey, tuple[float, asyncio.TimerHandle]] = {}
        self._failures: dict[RunKey, int] = {}
        self._closed = False

    def enqueue(self, namespace: str, name: str, *, after: float = 0.0) -> None:
        """Request a pass for ``namespace/name``, optionally after a delay."""
        if self._closed:
            return
        key = (namespace, name)
        if after <= 0:
            self._cancel_timer(key)
            self._fire(key)
            return

        loop = asyncio.get_running_loop()
        due = loop.time() + after
        existing = self._timers.get(key)
        if existing is not None and existing[0] <= due:
            return
        self._cancel_timer(key)
        handle = loop.call_later(after, self._fire_timer, key)
        self._timers[key] = (due, handle)

    def _cancel_timer(self, key: RunKey) -> None:
        entry = self._timers.pop(key, None)
        if entry is not None:
            entry[1].cancel()

    def _fire_timer(self, key: RunKey) -> None:
        self._timers.pop(key, None)
        self._fire(key)

    def _fire(self, key: RunKey) -> None:
        if self._closed:
            return
        if key in self._in_flight:
            self._pending.add(key)
            return
        task = asyncio.create_task(self._run(key), name=f"reconcile-{key[0]}/{key[1]}")
        self._in_flight[key] = task

    def backoff_for(self, failures: int) -> float:
        delay = self.backoff_base_seconds * (2 ** max(0, failures - 1))
        return min(delay, self.backoff_max_seconds)

    async def _run(self, key: RunKey) -> None:
        namespace, name = key
        delay: float | None = None
        try:
            result = await self._reconcile(namespace, name)
        except asyncio.CancelledError:
            self._in_flight.pop(key, None)
            raise
        except Exception:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            delay = self.backoff_for(failures)
            logger.exception(
                "Reconcile of %s/%s failed (attempt %d); retrying in %.1fs",
                namespace,
                name,
                failures,
                delay,
            )
        else:
            self._failures.pop(key, None)
            if result.requeue_after is not None and result.requeue_after > 0:
                delay = result.requeue_after
            elif result.requeue:
                delay = 0.0

        self._in_flight.pop(key, None)
        if self._closed:
            return
        if key in self._pending:
            # The coalesced pass decides its own requeue.
            self._pending.discard(key)
            self._fire(key)
            return
        if delay is not None:
            self.enqueue(namespace, name, after=delay)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def scheduled(self, namespace: str, name: str) -> bool:
        key = (namespace, name)
        return key in self._timers or key in self._in_flight or key in self._pending

    async def wait_idle(self, *, timeout_seconds: float = 5.0) -> None:
        """Wait until no pass is running (timers may still be armed)."""
        deadline = asyncio.get_running_loop().time() + timeout_seconds
        while self._in_flight:
            if asyncio.get_running_loop().time() >= deadline:
                raise asyncio.TimeoutError("reconcile passes still running")
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def stop(self, *, timeout_seconds: float = 5.0) -> None:
        """Stop scheduling; in-flight passes get ``timeout_seconds`` to finish."""
        self._closed = True
        for key in list(self._timers):
            self._cancel_timer(key)
        self._pending.clear()
        tasks = list(self._in_flight.values())
        if not tasks:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out waiting for %d reconcile passes after %.1fs",
                len(tasks),
                timeout_seconds,
            )
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
