"""
Runner resource orchestration.

Creates the per-runner workloads for a test run: the shared segment sequence
config map (only when there is more than one runner), then for each index
1..N a runner job followed by its service. Every object is owned by the test
run so deleting the run cleans everything up.
"""

from __future__ import annotations

import logging

from loadop.connectors.cluster import ClusterClient
from loadop.core import resources
from loadop.models.resources import ConfigMap, Job, Service
from loadop.models.testrun import TestRun

logger = logging.getLogger(__name__)


class ResourceOrchestrator:
    def __init__(self, cluster: ClusterClient) -> None:
        self._cluster = cluster

    async def create_shared_configmap(self, test_run: TestRun) -> ConfigMap | None:
        configmap = resources.new_shared_configmap(test_run)
        if configmap is None:
            return None
        resources.set_controller_reference(test_run, configmap)
        created = await self._cluster.create(configmap)
        logger.info(
            "Created segment sequence config map %s for %d runners",
            created.name,
            test_run.spec.parallelism,
        )
        return created

    async def launch_runner(
        self,
        test_run: TestRun,
        index: int,
        *,
        token: str = "",
        configmap: ConfigMap | None = None,
    ) -> tuple[Job, Service | None]:
        """
        Create the job (and, unless pods are addressed directly, the service)
        for runner ``index``.

        A service failure after the job was created is raised as-is; the job
        is left in place.
        """
        logger.info("Launching runner #%d", index)

        job = resources.new_runner_job(test_run, index, token, configmap)
        logger.info(
            "Runner job is ready to start with image `%s` and command `%s`",
            job.containers[0].image,
            job.containers[0].command,
        )
        resources.set_controller_reference(test_run, job)
        try:
            job = await self._cluster.create(job)
        except Exception:
            logger.exception("Failed to launch runner job #%d", index)
            raise

        if test_run.spec.use_direct_pod_ips:
            return job, None

        service = resources.new_runner_service(test_run, index)
        resources.set_controller_reference(test_run, service)
        try:
            service = await self._cluster.create(service)
        except Exception:
            logger.exception("Failed to launch runner service #%d", index)
            raise
        return job, service

    async def create_runner_workloads(
        self, test_run: TestRun, *, token: str = ""
    ) -> list[tuple[Job, Service | None]]:
        """Create every runner for ``test_run`` in ascending index order."""
        configmap = await self.create_shared_configmap(test_run)
        created = []
        for index in range(1, test_run.spec.parallelism + 1):
            created.append(
                await self.launch_runner(
                    test_run, index, token=token, configmap=configmap
                )
            )
        return created
