"""
TestRun reconciler.

Level-triggered state machine driving one test run through its lifecycle:

    "" -> initialization -> created -> started -> finished
    (stop requested in any non-terminal stage) -> stopped
    (setup failure on a private load zone run) -> error

Each call to ``reconcile`` looks at the current cluster state, takes at most
one step, and returns a ``ReconcileResult`` telling the scheduler when to call
again. Transient waits come back as timed requeues; fatal-to-pass failures are
raised and retried by the scheduler with backoff. Passes are idempotent and
the scheduler never runs two passes for the same run concurrently.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Awaitable, Callable

from loadop.config import settings
from loadop.connectors.cloud import (
    CloudReporter,
    ErrorKind,
    NullCloudReporter,
    TokenInfo,
    error_event,
    send_test_run_events,
)
from loadop.connectors.cluster import ClusterClient
from loadop.core import resources
from loadop.core.agent_client import AgentClient
from loadop.core.conditions import ConditionTracker
from loadop.core.dispatch import DispatchWorkerPool, start_agents
from loadop.core.errors import (
    AlreadyExistsError,
    ConflictError,
    DispatchError,
    LoadOpError,
    NotFoundError,
    ReconcileError,
    ResourceConflictError,
    SetupError,
)
from loadop.core.log_context import bind_test_run, set_test_run_id
from loadop.core.orchestrator import ResourceOrchestrator
from loadop.models.resources import Job, Pod, Service
from loadop.models.testrun import ConditionStatus, ConditionType, Stage, TestRun

logger = logging.getLogger(__name__)

ERR_MESSAGE_TOO_LONG = (
    "Creation of %s takes too long: your configuration might be off. "
    "Check if %s were created successfully."
)


@dataclass(frozen=True, slots=True)
class ReconcileResult:
    """What the scheduler should do after a pass."""

    requeue: bool = False
    requeue_after: float | None = None


@dataclass(frozen=True, slots=True)
class ReconcileTiming:
    readiness_poll_seconds: float = 1.0
    token_wait_seconds: float = 5.0
    create_conflict_wait_seconds: float = 10.0
    create_conflict_grace_seconds: float = 30.0
    readiness_abort_after_seconds: float = 300.0
    finish_poll_seconds: float = 5.0

    @classmethod
    def from_settings(cls) -> ReconcileTiming:
        return cls(
            readiness_poll_seconds=settings.READINESS_POLL_SECONDS,
            token_wait_seconds=settings.TOKEN_WAIT_SECONDS,
            create_conflict_wait_seconds=settings.CREATE_CONFLICT_WAIT_SECONDS,
            create_conflict_grace_seconds=settings.CREATE_CONFLICT_GRACE_SECONDS,
            readiness_abort_after_seconds=settings.READINESS_ABORT_AFTER_SECONDS,
            finish_poll_seconds=settings.FINISH_POLL_SECONDS,
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


Handler = Callable[[TestRun, ConditionTracker], Awaitable[ReconcileResult]]


class TestRunReconciler:
    """Reconciles TestRun objects against cluster state."""

    __test__ = False

    def __init__(
        self,
        cluster: ClusterClient,
        agent_client: AgentClient,
        dispatch_pool: DispatchWorkerPool,
        cloud_reporter: CloudReporter | None = None,
        *,
        timing: ReconcileTiming | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._cluster = cluster
        self._agent_client = agent_client
        self._dispatch_pool = dispatch_pool
        self._cloud = cloud_reporter or NullCloudReporter()
        self._timing = timing or ReconcileTiming.from_settings()
        self._clock = clock
        self._orchestrator = ResourceOrchestrator(cluster)

        self._handlers: dict[Stage, Handler] = {
            Stage.NEW: self._initialize,
            Stage.INITIALIZATION: self._create,
            Stage.CREATED: self._start,
            Stage.STARTED: self._watch,
        }

    @property
    def timing(self) -> ReconcileTiming:
        return self._timing

    def _poll(self) -> ReconcileResult:
        return ReconcileResult(requeue_after=self._timing.readiness_poll_seconds)

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        with bind_test_run(f"{namespace}/{name}"):
            try:
                test_run = await self._cluster.get(TestRun, namespace, name)
            except NotFoundError:
                logger.info("TestRun %s/%s not found; nothing to do", namespace, name)
                return ReconcileResult()

            tracker = ConditionTracker(test_run.status)
            set_test_run_id(tracker.test_run_id)

            stage = tracker.stage
            if stage.terminal:
                logger.debug("TestRun is in terminal stage %r", stage.value)
                return ReconcileResult()

            if test_run.spec.stop_requested:
                return await self._stop(test_run, tracker)

            return await self._handlers[stage](test_run, tracker)

    async def _update_status(
        self, test_run: TestRun, tracker: ConditionTracker, *, requeue: bool = True
    ) -> ReconcileResult:
        """Persist the tracker in a single write; conflicts end the pass with a requeue."""
        if not tracker.dirty:
            return ReconcileResult(requeue=requeue)
        test_run.status = tracker.snapshot()
        try:
            await self._cluster.update_status(test_run)
        except ConflictError as e:
            logger.info("Status update conflicted, requeueing: %s", e)
            return ReconcileResult(requeue=True)
        return ReconcileResult(requeue=requeue)

    async def _report_abort(
        self, tracker: ConditionTracker, kind: ErrorKind, detail: str
    ) -> None:
        if not tracker.is_true(ConditionType.CLOUD_TEST_RUN):
            return
        event = error_event(kind).with_detail(detail).with_abort()
        await send_test_run_events(self._cloud, tracker.test_run_id, event)

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    async def _initialize(
        self, test_run: TestRun, tracker: ConditionTracker
    ) -> ReconcileResult:
        now = self._clock()
        spec = test_run.spec
        logger.info("Initializing test run with parallelism %d", spec.parallelism)

        if not tracker.test_run_id:
            tracker.test_run_id = uuid.uuid4().hex
            set_test_run_id(tracker.test_run_id)

        tracker.set(ConditionType.TEST_RUN_RUNNING, ConditionStatus.FALSE, now)
        tracker.set_bool(ConditionType.CLOUD_TEST_RUN, spec.cloud, now)
        tracker.set_bool(ConditionType.CLOUD_PLZ_TEST_RUN, spec.cloud and spec.cloud_plz, now)
        if spec.cloud:
            tracker.set(ConditionType.CLOUD_TEST_RUN_CREATED, ConditionStatus.TRUE, now)
            tracker.set(ConditionType.CLOUD_TEST_RUN_FINALIZED, ConditionStatus.FALSE, now)

        tracker.stage = Stage.INITIALIZATION
        return await self._update_status(test_run, tracker)

    async def _create(
        self, test_run: TestRun, tracker: ConditionTracker
    ) -> ReconcileResult:
        token_info = TokenInfo(test_run.spec.token, test_run.namespace)

        if tracker.is_true(ConditionType.CLOUD_TEST_RUN) and tracker.is_true(
            ConditionType.CLOUD_TEST_RUN_CREATED
        ):
            try:
                await token_info.load(self._cluster)
            except LoadOpError as e:
                # Very likely a misconfigured token; a spec change re-triggers us.
                logger.error("A problem while getting token: %s", e)
                return ReconcileResult()
            if not token_info.ready:
                return ReconcileResult(requeue_after=self._timing.token_wait_seconds)

        logger.info("Creating test jobs")

        try:
            waiting = await self._check_previous_run(test_run, tracker)
            if waiting is not None:
                return waiting
            await self._orchestrator.create_runner_workloads(
                test_run, token=token_info.value
            )
        except Exception as e:
            await self._report_abort(
                tracker, ErrorKind.START_ERROR, f"Failed to create runner jobs: {e}"
            )
            if isinstance(e, LoadOpError):
                raise
            raise ReconcileError(f"failed to create runner jobs: {e}", cause=e) from e

        logger.info("Changing stage of TestRun status to created")
        tracker.stage = Stage.CREATED
        return await self._update_status(test_run, tracker)

    async def _check_previous_run(
        self, test_run: TestRun, tracker: ConditionTracker
    ) -> ReconcileResult | None:
        """
        Look up runner #1 before creating anything.

        Returns None when the way is clear, a timed requeue while the status
        may still be catching up, and raises once the grace window is over.
        """
        name = resources.runner_name(test_run, 1)
        try:
            await self._cluster.get(Job, test_run.namespace, name)
            err: Exception = ResourceConflictError(
                f"job with the name {name} exists; make sure you've deleted your previous run",
                context={"namespace": test_run.namespace, "job": name},
            )
        except NotFoundError:
            return None
        except Exception as e:
            err = e
        logger.info("%s", err)

        since = tracker.since_transition(ConditionType.CLOUD_TEST_RUN, self._clock())
        if (
            tracker.is_unknown(ConditionType.CLOUD_TEST_RUN)
            or since is None
            or since.total_seconds() <= self._timing.create_conflict_grace_seconds
        ):
            return ReconcileResult(
                requeue_after=self._timing.create_conflict_wait_seconds
            )
        raise err

    async def _start(
        self, test_run: TestRun, tracker: ConditionTracker
    ) -> ReconcileResult:
        spec = test_run.spec
        labels = resources.runner_labels(test_run.name)

        logger.info("Waiting for pods to get ready")
        pods = await self._cluster.list(Pod, test_run.namespace, labels)
        count = sum(1 for pod in pods if pod.running)
        logger.info("%d/%d runner pods ready", count, spec.parallelism)

        if count != spec.parallelism:
            since = tracker.since_transition(
                ConditionType.TEST_RUN_RUNNING, self._clock()
            )
            if since is None:
                raise ReconcileError("cannot find condition TestRunRunning")
            if since.total_seconds() > self._timing.readiness_abort_after_seconds:
                # Keeps polling after reporting; the run may still recover.
                msg = ERR_MESSAGE_TOO_LONG % ("runner pods", "runner jobs and pods")
                logger.info(msg)
                await self._report_abort(tracker, ErrorKind.START_ERROR, msg)
            return self._poll()

        hostnames = await self._ready_hostnames(test_run, pods)
        if len(hostnames) != spec.parallelism:
            logger.info(
                "%d/%d runners answer on the control port", len(hostnames), spec.parallelism
            )
            return self._poll()
        if not spec.use_direct_pod_ips:
            logger.info("%d/%d services ready", len(hostnames), spec.parallelism)

        if tracker.is_true(ConditionType.CLOUD_PLZ_TEST_RUN):
            try:
                await self._agent_client.run_setup(hostnames)
            except SetupError as e:
                if e.retryable:
                    raise
                logger.error("Setup function failed, requesting abort: %s", e)
                await self._report_abort(
                    tracker, ErrorKind.SETUP_ERROR, f"setup function failed: {e}"
                )
                tracker.stage = Stage.ERROR
                tracker.error = f"setup function failed: {e}"
                tracker.set(
                    ConditionType.CLOUD_TEST_RUN_ABORTED, ConditionStatus.TRUE, self._clock()
                )
                return await self._update_status(test_run, tracker, requeue=False)

        if not spec.use_legacy_starter:
            try:
                await start_agents(self._agent_client, hostnames)
            except DispatchError as e:
                logger.error("Failed to start test from the operator: %s", e)
                return self._poll()
        else:
            started = await self._create_starter(test_run, hostnames)
            if not started:
                return self._poll()

        logger.info("Changing stage of TestRun status to started")
        tracker.stage = Stage.STARTED
        tracker.set(ConditionType.TEST_RUN_RUNNING, ConditionStatus.TRUE, self._clock())
        return await self._update_status(test_run, tracker)

    async def _create_starter(self, test_run: TestRun, hostnames: list[str]) -> bool:
        starter = resources.new_starter_job(test_run, hostnames)
        try:
            resources.set_controller_reference(test_run, starter)
        except ReconcileError as e:
            logger.error("Failed to set controller reference for the start job: %s", e)
        try:
            await self._cluster.create(starter)
        except AlreadyExistsError:
            logger.info("Starter job %s already exists", starter.name)
            return True
        except Exception as e:
            logger.error("Failed to launch test starter: %s", e)
            return False
        logger.info("Created starter job")
        return True

    async def _ready_hostnames(self, test_run: TestRun, pods: list[Pod]) -> list[str]:
        hosts = await self._runner_hosts(test_run, pods)
        ready: list[str] = []
        for host in hosts:
            if await self._agent_client.is_ready(host):
                ready.append(host)
        return ready

    async def _runner_hosts(self, test_run: TestRun, pods: list[Pod]) -> list[str]:
        """Addresses of the running runners: pod IPs or service cluster IPs."""
        running = [pod for pod in pods if pod.running]
        if test_run.spec.use_direct_pod_ips:
            return [pod.pod_ip for pod in running if pod.pod_ip]
        indices = {pod.metadata.labels.get("runner-index") for pod in running}
        services = await self._cluster.list(
            Service, test_run.namespace, resources.runner_labels(test_run.name)
        )
        return [
            svc.cluster_ip
            for svc in services
            if svc.cluster_ip and svc.selector.get("runner-index") in indices
        ]

    async def _stop(
        self, test_run: TestRun, tracker: ConditionTracker
    ) -> ReconcileResult:
        """
        Send a stop command to every running runner, whatever the stage.

        A run can still be ``created`` after a partial start, so runners may
        already be generating load before the run reaches ``started``. The run
        only becomes ``stopped`` once every host's command has been queued;
        while the pool sheds requests the pass is retried and stop is sent
        again to every runner still running. Runners that already stopped have
        exited and drop out, and a repeated stop is a no-op for the rest.
        """
        pods = await self._cluster.list(
            Pod, test_run.namespace, resources.runner_labels(test_run.name)
        )
        hosts = await self._runner_hosts(test_run, pods)
        queued = self._dispatch_pool.enqueue_stop(test_run, hosts)
        logger.info("Queued stop for %d/%d runners", queued, len(hosts))
        if queued < len(hosts):
            return self._poll()

        tracker.stage = Stage.STOPPED
        tracker.set(ConditionType.TEST_RUN_RUNNING, ConditionStatus.FALSE, self._clock())
        return await self._update_status(test_run, tracker, requeue=False)

    async def _watch(
        self, test_run: TestRun, tracker: ConditionTracker
    ) -> ReconcileResult:
        spec = test_run.spec
        labels = resources.runner_labels(test_run.name)

        jobs = await self._cluster.list(Job, test_run.namespace, labels)
        finished = sum(1 for job in jobs if job.finished)
        if finished < spec.parallelism:
            logger.debug("%d/%d runner jobs finished", finished, spec.parallelism)
            return ReconcileResult(requeue_after=self._timing.finish_poll_seconds)

        failed = sum(1 for job in jobs if job.failed > 0)
        if failed:
            logger.warning("%d/%d runner jobs failed", failed, spec.parallelism)
        logger.info("Changing stage of TestRun status to finished")
        now = self._clock()
        tracker.stage = Stage.FINISHED
        tracker.set(ConditionType.TEST_RUN_RUNNING, ConditionStatus.FALSE, now)
        if tracker.is_true(ConditionType.CLOUD_TEST_RUN):
            tracker.set(ConditionType.CLOUD_TEST_RUN_FINALIZED, ConditionStatus.TRUE, now)
        return await self._update_status(test_run, tracker, requeue=False)
