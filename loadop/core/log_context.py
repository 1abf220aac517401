"""
Per-run logging context.

Reconcile passes for different runs execute concurrently on one event loop.
The current run is tracked in contextvars and a logging filter copies it onto
every record, so log lines stay attributable without threading a logger
through every call.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional

CURRENT_TEST_RUN: ContextVar[Optional[str]] = ContextVar("CURRENT_TEST_RUN", default=None)
CURRENT_TEST_RUN_ID: ContextVar[Optional[str]] = ContextVar(
    "CURRENT_TEST_RUN_ID", default=None
)


class TestRunContextFilter(logging.Filter):
    """Stamp ``test_run`` and ``test_run_id`` attributes onto log records."""

    __test__ = False

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "test_run"):
            record.test_run = CURRENT_TEST_RUN.get() or "-"
        if not hasattr(record, "test_run_id"):
            record.test_run_id = CURRENT_TEST_RUN_ID.get() or "-"
        return True


@contextmanager
def bind_test_run(namespaced_name: str) -> Iterator[None]:
    token = CURRENT_TEST_RUN.set(namespaced_name)
    id_token = CURRENT_TEST_RUN_ID.set(None)
    try:
        yield
    finally:
        CURRENT_TEST_RUN_ID.reset(id_token)
        CURRENT_TEST_RUN.reset(token)


def set_test_run_id(test_run_id: str) -> None:
    if test_run_id:
        CURRENT_TEST_RUN_ID.set(test_run_id)
