"""
Controller service.

Wires the cluster connector, agent client, dispatch pool, cloud reporter,
reconciler and scheduler together, and exposes the operations the HTTP API
needs: create, inspect, stop and delete test runs.
"""

from __future__ import annotations

import logging
from typing import Any

from loadop.config import settings
from loadop.connectors import build_cluster
from loadop.connectors.cloud import CloudReporter, build_cloud_reporter
from loadop.connectors.cluster import ClusterClient
from loadop.core.agent_client import AgentClient
from loadop.core.dispatch import DispatchWorkerPool
from loadop.core.errors import ClusterError
from loadop.core.reconciler import ReconcileTiming, TestRunReconciler
from loadop.core.scheduler import ReconcileScheduler
from loadop.models.resources import ObjectMeta
from loadop.models.testrun import Stage, TestRun, TestRunSpec

logger = logging.getLogger(__name__)


class ControllerService:
    def __init__(
        self,
        *,
        cluster: ClusterClient | None = None,
        agent_client: AgentClient | None = None,
        cloud_reporter: CloudReporter | None = None,
        timing: ReconcileTiming | None = None,
        namespaces: list[str] | None = None,
    ) -> None:
        self.cluster = cluster or build_cluster()
        self.agent_client = agent_client or AgentClient()
        self.cloud_reporter = cloud_reporter or build_cloud_reporter()
        self.dispatch_pool = DispatchWorkerPool(
            self.agent_client,
            queue_size=settings.DISPATCH_QUEUE_SIZE,
            workers=settings.DISPATCH_WORKERS,
        )
        self.reconciler = TestRunReconciler(
            self.cluster,
            self.agent_client,
            self.dispatch_pool,
            self.cloud_reporter,
            timing=timing,
        )
        self.scheduler = ReconcileScheduler(
            self.reconciler.reconcile,
            backoff_base_seconds=settings.RECONCILE_BACKOFF_BASE_SECONDS,
            backoff_max_seconds=settings.RECONCILE_BACKOFF_MAX_SECONDS,
        )
        self.namespaces = list(
            namespaces if namespaces is not None else settings.WATCH_NAMESPACES
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        self.dispatch_pool.start()
        self._started = True
        logger.info("Controller started (cluster backend: %s)", type(self.cluster).__name__)
        await self.resync()

    async def resync(self) -> int:
        """
        Enqueue every non-terminal TestRun in the watched namespaces.

        Picks up runs that were mid-flight across a restart and runs applied
        to the cluster directly. Returns how many were enqueued.
        """
        enqueued = 0
        for namespace in self.namespaces:
            try:
                runs = await self.cluster.list(TestRun, namespace)
            except ClusterError as e:
                logger.error("Failed to list TestRuns in %s: %s", namespace, e)
                continue
            for run in runs:
                if Stage(run.status.stage).terminal:
                    continue
                self.scheduler.enqueue(run.namespace, run.name)
                enqueued += 1
        logger.info("Resync enqueued %d TestRuns", enqueued)
        return enqueued

    async def shutdown(self, *, timeout_seconds: float = 5.0) -> None:
        if not self._started:
            return
        await self.scheduler.stop(timeout_seconds=timeout_seconds)
        await self.dispatch_pool.stop(timeout_seconds=timeout_seconds)
        await self.agent_client.aclose()
        aclose = getattr(self.cloud_reporter, "aclose", None)
        if aclose is not None:
            await aclose()
        self._started = False
        logger.info("Controller stopped")

    async def create_test_run(
        self, *, name: str, namespace: str, spec: TestRunSpec
    ) -> TestRun:
        test_run = TestRun(metadata=ObjectMeta(name=name, namespace=namespace), spec=spec)
        created = await self.cluster.create(test_run)
        logger.info(
            "Created TestRun %s with parallelism %d",
            created.namespaced_name,
            spec.parallelism,
        )
        self.scheduler.enqueue(namespace, name)
        return created

    async def get_test_run(self, namespace: str, name: str) -> TestRun:
        return await self.cluster.get(TestRun, namespace, name)

    async def list_test_runs(self, namespace: str) -> list[TestRun]:
        return await self.cluster.list(TestRun, namespace)

    async def request_stop(self, namespace: str, name: str) -> TestRun:
        current = await self.cluster.get(TestRun, namespace, name)
        if current.spec.stop_requested:
            return current
        updated = current.model_copy(
            update={"spec": current.spec.model_copy(update={"stop_requested": True})}
        )
        stored = await self.cluster.update(updated)
        logger.info("Stop requested for TestRun %s", stored.namespaced_name)
        self.scheduler.enqueue(namespace, name)
        return stored

    async def delete_test_run(self, namespace: str, name: str) -> None:
        await self.cluster.delete(TestRun, namespace, name)
        logger.info("Deleted TestRun %s/%s and its runner resources", namespace, name)

    def stats(self) -> dict[str, Any]:
        pool = self.dispatch_pool
        return {
            "started": self._started,
            "reconciles_in_flight": self.scheduler.in_flight,
            "dispatch": {
                "running": pool.running,
                "pending": pool.pending,
                "submitted": pool.submitted,
                "dropped": pool.dropped,
                "delivered": pool.delivered,
                "failed": pool.failed,
            },
        }


controller = ControllerService()
