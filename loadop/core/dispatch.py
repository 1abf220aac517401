"""Agent command dispatch.

Two paths issue start/stop commands to runner agents:

- ``DispatchWorkerPool``: a process-wide bounded queue drained by a fixed set
  of background workers. Reconcile passes enqueue without ever blocking. When
  the queue is full the request is dropped and logged; a later reconcile pass
  is expected to issue the command again. Workers never retry.
- ``start_agents``: a synchronous fan-out used for the operator-driven start.
  Every target is tried, and all failures come back as one ``DispatchError``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from loadop.core.agent_client import AgentClient, start_payload, stop_payload
from loadop.core.errors import DispatchError
from loadop.models.dispatch import DispatchRequest
from loadop.models.testrun import TestRun

logger = logging.getLogger(__name__)


class DispatchWorkerPool:
    """Bounded queue plus a fixed set of asyncio worker tasks.

    Attributes:
        queue_size: Maximum number of pending requests
        worker_count: Number of worker tasks draining the queue
    """

    def __init__(
        self,
        agent_client: AgentClient,
        *,
        queue_size: int = 1000,
        workers: int = 8,
    ) -> None:
        self._agent_client = agent_client
        self.queue_size = max(1, int(queue_size))
        self.worker_count = max(1, int(workers))
        self._queue: asyncio.Queue[DispatchRequest] = asyncio.Queue(
            maxsize=self.queue_size
        )
        self._worker_tasks: list[asyncio.Task[None]] = []

        self.submitted = 0
        self.dropped = 0
        self.delivered = 0
        self.failed = 0

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._worker_tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        """Spawn the worker tasks. Must be called from a running loop."""
        if self.running:
            return
        self._worker_tasks = [
            asyncio.create_task(self._worker(wid), name=f"dispatch-worker-{wid}")
            for wid in range(self.worker_count)
        ]
        logger.info(
            "Dispatch pool started: workers=%d, queue_size=%d",
            self.worker_count,
            self.queue_size,
        )

    async def stop(self, *, timeout_seconds: float = 5.0) -> None:
        """Let workers drain what is queued, then cancel them."""
        if not self._worker_tasks:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out draining dispatch queue after %.1fs (%d pending)",
                timeout_seconds,
                self._queue.qsize(),
            )
        for task in self._worker_tasks:
            task.cancel()
        await asyncio.gather(*self._worker_tasks, return_exceptions=True)
        self._worker_tasks.clear()

    def submit(self, request: DispatchRequest) -> bool:
        """
        Enqueue without blocking.

        Returns:
            True if queued, False if the queue was full and the request was dropped.
        """
        try:
            self._queue.put_nowait(request)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(
                "Test %s: dispatch queue is full, dropping %s %s",
                request.test_run_name,
                request.method,
                request.url,
            )
            return False
        self.submitted += 1
        logger.info("Test %s: url %s queued", request.test_run_name, request.url)
        return True

    def _enqueue_all(
        self, test_run: TestRun, hosts: list[str], payload: dict[str, Any]
    ) -> int:
        queued = 0
        for host in hosts:
            request = self._agent_client.build_request(test_run, host, payload)
            if self.submit(request):
                queued += 1
        return queued

    def enqueue_start(self, test_run: TestRun, hosts: list[str]) -> int:
        """Queue one start command per host; returns how many were accepted."""
        return self._enqueue_all(test_run, hosts, start_payload())

    def enqueue_stop(self, test_run: TestRun, hosts: list[str]) -> int:
        """Queue one stop command per host; returns how many were accepted."""
        return self._enqueue_all(test_run, hosts, stop_payload())

    async def _worker(self, worker_id: int) -> None:
        while True:
            request = await self._queue.get()
            try:
                await self._agent_client.send(request)
                self.delivered += 1
                logger.debug(
                    "[dispatch-%d] %s %s delivered",
                    worker_id,
                    request.method,
                    request.url,
                )
            except Exception as e:
                self.failed += 1
                logger.error(
                    "[dispatch-%d] Test %s: %s %s failed: %s",
                    worker_id,
                    request.test_run_name,
                    request.method,
                    request.url,
                    e,
                )
            finally:
                self._queue.task_done()


async def start_agents(agent_client: AgentClient, hosts: list[str]) -> None:
    """
    Start every agent in ``hosts``, in order, without short-circuiting.

    Raises:
        DispatchError: Naming every host that failed, after all were tried.
    """
    logger.info("Starting %d agents", len(hosts))
    failed: list[tuple[str, Exception]] = []
    for host in hosts:
        try:
            await agent_client.start(host)
        except Exception as e:
            logger.error("Failed to start agent %s: %s", host, e)
            failed.append((host, e))
    if failed:
        raise DispatchError(failed=failed, total=len(hosts))
