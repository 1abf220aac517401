import asyncio

import pytest

from loadop.core.reconciler import ReconcileResult
from loadop.core.scheduler import ReconcileScheduler


class _ScriptedReconciler:
    """Returns (or raises) queued outcomes, then settles on no requeue."""

    def __init__(self, outcomes=None, *, gate: asyncio.Event | None = None):
        self.outcomes = list(outcomes or [])
        self.gate = gate
        self.calls: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def __call__(self, namespace: str, name: str) -> ReconcileResult:
        self.calls.append((namespace, name))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            outcome = self.outcomes.pop(0) if self.outcomes else ReconcileResult()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        finally:
            self.active -= 1


async def _settle(scheduler: ReconcileScheduler, seconds: float = 0.2) -> None:
    await asyncio.sleep(seconds)
    await scheduler.wait_idle(timeout_seconds=2.0)


@pytest.mark.asyncio
async def test_requests_during_a_pass_are_coalesced():
    gate = asyncio.Event()
    reconcile = _ScriptedReconciler(gate=gate)
    scheduler = ReconcileScheduler(reconcile)

    scheduler.enqueue("default", "demo")
    await asyncio.sleep(0)
    scheduler.enqueue("default", "demo")
    scheduler.enqueue("default", "demo")
    assert len(reconcile.calls) == 1

    gate.set()
    await _settle(scheduler, 0.05)

    assert len(reconcile.calls) == 2
    assert reconcile.max_active == 1
    await scheduler.stop()


@pytest.mark.asyncio
async def test_distinct_runs_reconcile_concurrently():
    gate = asyncio.Event()
    reconcile = _ScriptedReconciler(gate=gate)
    scheduler = ReconcileScheduler(reconcile)

    scheduler.enqueue("default", "a")
    scheduler.enqueue("default", "b")
    await asyncio.sleep(0)
    assert scheduler.in_flight == 2
    assert reconcile.max_active == 2

    gate.set()
    await scheduler.wait_idle(timeout_seconds=2.0)
    await scheduler.stop()


@pytest.mark.asyncio
async def test_requeue_after_schedules_another_pass():
    reconcile = _ScriptedReconciler([ReconcileResult(requeue_after=0.05)])
    scheduler = ReconcileScheduler(reconcile)

    scheduler.enqueue("default", "demo")
    await asyncio.sleep(0)
    assert len(reconcile.calls) == 1

    await _settle(scheduler, 0.2)
    assert len(reconcile.calls) == 2
    assert not scheduler.scheduled("default", "demo")
    await scheduler.stop()


@pytest.mark.asyncio
async def test_immediate_requeue():
    reconcile = _ScriptedReconciler([ReconcileResult(requeue=True)])
    scheduler = ReconcileScheduler(reconcile)

    scheduler.enqueue("default", "demo")
    await _settle(scheduler, 0.05)

    assert len(reconcile.calls) == 2
    await scheduler.stop()


@pytest.mark.asyncio
async def test_errors_are_retried_with_backoff():
    reconcile = _ScriptedReconciler([RuntimeError("boom"), RuntimeError("boom")])
    scheduler = ReconcileScheduler(reconcile, backoff_base_seconds=0.01)

    scheduler.enqueue("default", "demo")
    await _settle(scheduler, 0.3)

    assert len(reconcile.calls) == 3
    await scheduler.stop()


def test_backoff_doubles_and_caps():
    scheduler = ReconcileScheduler(
        _ScriptedReconciler(), backoff_base_seconds=0.5, backoff_max_seconds=3.0
    )
    assert [scheduler.backoff_for(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_earlier_timer_wins():
    reconcile = _ScriptedReconciler()
    scheduler = ReconcileScheduler(reconcile)

    scheduler.enqueue("default", "demo", after=10.0)
    scheduler.enqueue("default", "demo", after=0.05)
    scheduler.enqueue("default", "demo", after=5.0)

    await _settle(scheduler, 0.2)
    assert len(reconcile.calls) == 1
    assert not scheduler.scheduled("default", "demo")
    await scheduler.stop()


@pytest.mark.asyncio
async def test_stop_cancels_pending_timers():
    reconcile = _ScriptedReconciler()
    scheduler = ReconcileScheduler(reconcile)

    scheduler.enqueue("default", "demo", after=0.05)
    assert scheduler.scheduled("default", "demo")
    await scheduler.stop()

    await asyncio.sleep(0.1)
    assert reconcile.calls == []
    scheduler.enqueue("default", "demo")
    assert reconcile.calls == []
