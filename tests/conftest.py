from datetime import UTC, datetime, timedelta

import pytest

from loadop.connectors.cluster import InMemoryCluster
from loadop.core import resources
from loadop.core.agent_client import AgentClient
from loadop.core.dispatch import DispatchWorkerPool
from loadop.core.errors import AgentError, SetupError
from loadop.core.reconciler import ReconcileTiming, TestRunReconciler
from loadop.models.dispatch import DispatchRequest
from loadop.models.resources import ObjectMeta, Pod


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeAgentClient(AgentClient):
    """Agent client that records calls instead of doing HTTP."""

    def __init__(
        self,
        *,
        unready: set[str] | None = None,
        failing: set[str] | None = None,
        setup_error: SetupError | None = None,
    ) -> None:
        super().__init__(port=6565)
        self.unready = set(unready or ())
        self.failing = set(failing or ())
        self.setup_error = setup_error
        self.probed: list[str] = []
        self.started: list[str] = []
        self.stopped: list[str] = []
        self.sent: list[DispatchRequest] = []
        self.setup_calls: list[list[str]] = []

    async def is_ready(self, host: str) -> bool:
        self.probed.append(host)
        return host not in self.unready

    async def start(self, host: str) -> None:
        self.started.append(host)
        if host in self.failing:
            raise AgentError(f"{host} returned HTTP 503")

    async def stop(self, host: str) -> None:
        self.stopped.append(host)

    async def run_setup(self, hosts: list[str]) -> None:
        self.setup_calls.append(list(hosts))
        if self.setup_error is not None:
            raise self.setup_error

    async def send(self, request: DispatchRequest) -> None:
        self.sent.append(request)
        if any(host in request.url for host in self.failing):
            raise AgentError(f"{request.url} returned HTTP 503")


class RecordingCloudReporter:
    def __init__(self) -> None:
        self.events: list[tuple[str, object]] = []

    async def send_events(self, test_run_id, events) -> None:
        for event in events:
            self.events.append((test_run_id, event))


def _runner_pod(
    run_name: str,
    index: int,
    *,
    phase: str = "Running",
    namespace: str = "default",
) -> Pod:
    labels = resources.runner_labels(run_name)
    labels["runner-index"] = str(index)
    return Pod(
        metadata=ObjectMeta(
            name=f"{run_name}-{index}-x7k2p", namespace=namespace, labels=labels
        ),
        phase=phase,
        pod_ip=f"10.1.{index // 256}.{index % 256}",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_pod():
    """Factory for runner pods carrying the labels the reconciler selects on."""
    return _runner_pod


@pytest.fixture
def cluster() -> InMemoryCluster:
    return InMemoryCluster()


@pytest.fixture
def agent() -> FakeAgentClient:
    return FakeAgentClient()


@pytest.fixture
def cloud() -> RecordingCloudReporter:
    return RecordingCloudReporter()


@pytest.fixture
def pool(agent: FakeAgentClient) -> DispatchWorkerPool:
    return DispatchWorkerPool(agent, queue_size=100, workers=2)


@pytest.fixture
def reconciler(cluster, agent, pool, cloud, clock) -> TestRunReconciler:
    return TestRunReconciler(
        cluster, agent, pool, cloud, timing=ReconcileTiming(), clock=clock
    )
