"""
Condition and stage tracking for a single test run.

The tracker wraps a run's status as a fixed table with exactly one slot per
ConditionType. Timeout policies in the reconciler read transition times from
here; persistence is left to the caller as one batched write per pass.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from loadop.models.testrun import (
    Condition,
    ConditionStatus,
    ConditionType,
    Stage,
    TestRunStatus,
)


class ConditionTracker:
    def __init__(self, status: TestRunStatus) -> None:
        self._stage = Stage(status.stage)
        self._test_run_id = status.test_run_id
        self._error = status.error
        self._table: dict[ConditionType, Condition] = {
            kind: Condition(type=kind) for kind in ConditionType
        }
        for cond in status.conditions:
            self._table[ConditionType(cond.type)] = cond.model_copy()
        self._dirty = False

    @property
    def dirty(self) -> bool:
        """True once anything changed since the tracker was built."""
        return self._dirty

    @property
    def stage(self) -> Stage:
        return self._stage

    @stage.setter
    def stage(self, value: Stage) -> None:
        value = Stage(value)
        if value != self._stage:
            self._stage = value
            self._dirty = True

    @property
    def test_run_id(self) -> str:
        return self._test_run_id

    @test_run_id.setter
    def test_run_id(self, value: str) -> None:
        if value != self._test_run_id:
            self._test_run_id = value
            self._dirty = True

    @property
    def error(self) -> str:
        return self._error

    @error.setter
    def error(self, value: str) -> None:
        if value != self._error:
            self._error = value
            self._dirty = True

    def get(self, kind: ConditionType) -> Condition:
        return self._table[kind]

    def set(
        self, kind: ConditionType, status: ConditionStatus, now: datetime
    ) -> bool:
        """
        Set ``kind`` to ``status``.

        The transition time only moves when the value actually changes; a
        same-value write is a no-op. Returns whether the value changed.
        """
        current = self._table[kind]
        if current.status == status:
            return False
        self._table[kind] = Condition(
            type=kind, status=status, last_transition_time=now
        )
        self._dirty = True
        return True

    def set_bool(self, kind: ConditionType, value: bool, now: datetime) -> bool:
        return self.set(
            kind, ConditionStatus.TRUE if value else ConditionStatus.FALSE, now
        )

    def is_true(self, kind: ConditionType) -> bool:
        return self._table[kind].status == ConditionStatus.TRUE

    def is_false(self, kind: ConditionType) -> bool:
        return self._table[kind].status == ConditionStatus.FALSE

    def is_unknown(self, kind: ConditionType) -> bool:
        return self._table[kind].status == ConditionStatus.UNKNOWN

    def last_transition(self, kind: ConditionType) -> datetime | None:
        return self._table[kind].last_transition_time

    def since_transition(
        self, kind: ConditionType, now: datetime
    ) -> timedelta | None:
        """Time since ``kind`` last changed, or None if it never has."""
        t = self.last_transition(kind)
        if t is None:
            return None
        return now - t

    def snapshot(self) -> TestRunStatus:
        """Status to persist, conditions in declaration order."""
        return TestRunStatus(
            stage=self._stage,
            test_run_id=self._test_run_id,
            conditions=[self._table[kind].model_copy() for kind in ConditionType],
            error=self._error,
        )
