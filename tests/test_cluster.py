import asyncio
import base64
import json

import pytest

from loadop.connectors import kubectl
from loadop.connectors.kubectl import KubectlCluster
from loadop.core.errors import (
    AlreadyExistsError,
    ClusterError,
    ConflictError,
    NotFoundError,
)
from loadop.models.resources import (
    Container,
    Job,
    ObjectMeta,
    Pod,
    Secret,
    Service,
    ServicePort,
)
from loadop.models.testrun import Stage, TestRun

# ============================================================================
# In-memory cluster
# ============================================================================


@pytest.mark.asyncio
async def test_create_assigns_identity_and_rejects_duplicates(cluster):
    created = await cluster.create(TestRun.new("demo"))
    assert created.metadata.uid
    assert created.metadata.resource_version
    assert created.metadata.creation_timestamp is not None

    with pytest.raises(AlreadyExistsError):
        await cluster.create(TestRun.new("demo"))


@pytest.mark.asyncio
async def test_get_missing_raises_not_found(cluster):
    with pytest.raises(NotFoundError):
        await cluster.get(Job, "default", "nope")


@pytest.mark.asyncio
async def test_returned_objects_are_copies(cluster):
    created = await cluster.create(TestRun.new("demo"))
    created.status.stage = Stage.STARTED
    stored = await cluster.get(TestRun, "default", "demo")
    assert stored.status.stage == Stage.NEW


@pytest.mark.asyncio
async def test_stale_write_conflicts(cluster):
    await cluster.create(TestRun.new("demo"))
    first = await cluster.get(TestRun, "default", "demo")
    second = await cluster.get(TestRun, "default", "demo")

    first.status.stage = Stage.INITIALIZATION
    await cluster.update_status(first)

    second.status.stage = Stage.STOPPED
    with pytest.raises(ConflictError):
        await cluster.update_status(second)


@pytest.mark.asyncio
async def test_update_keeps_status_and_update_status_keeps_spec(cluster):
    await cluster.create(TestRun.new("demo", parallelism=2))
    run = await cluster.get(TestRun, "default", "demo")
    run.status.stage = Stage.CREATED
    await cluster.update_status(run)

    run = await cluster.get(TestRun, "default", "demo")
    changed = run.model_copy(
        update={"spec": run.spec.model_copy(update={"stop_requested": True})}
    )
    changed.status.stage = Stage.NEW
    await cluster.update(changed)

    stored = await cluster.get(TestRun, "default", "demo")
    assert stored.spec.stop_requested
    assert stored.spec.parallelism == 2
    assert stored.status.stage == Stage.CREATED


@pytest.mark.asyncio
async def test_update_status_rejects_kinds_without_status(cluster):
    job = await cluster.create(Job(metadata=ObjectMeta(name="demo-1")))

    with pytest.raises(ClusterError, match="no status subresource"):
        await cluster.update_status(job)


@pytest.mark.asyncio
async def test_list_filters_by_namespace_and_labels(cluster):
    for name, ns, labels in [
        ("a", "default", {"app": "k6", "run-owner": "x"}),
        ("b", "default", {"app": "k6", "run-owner": "y"}),
        ("c", "other", {"app": "k6", "run-owner": "x"}),
    ]:
        cluster.put(Pod(metadata=ObjectMeta(name=name, namespace=ns, labels=labels)))

    pods = await cluster.list(Pod, "default", {"run-owner": "x"})
    assert [p.name for p in pods] == ["a"]
    assert len(await cluster.list(Pod, "default")) == 2


@pytest.mark.asyncio
async def test_services_get_unique_cluster_ips(cluster):
    ips = set()
    for i in range(5):
        svc = await cluster.create(Service(metadata=ObjectMeta(name=f"svc-{i}")))
        ips.add(svc.cluster_ip)
    assert len(ips) == 5
    assert "10.96.0.1" in ips


# ============================================================================
# kubectl manifests
# ============================================================================


def test_job_manifest_shape():
    job = Job(
        metadata=ObjectMeta(name="demo-1", namespace="load", labels={"app": "k6"}),
        containers=[
            Container(name="k6", image="grafana/k6", command=["k6", "run"], ports=[6565])
        ],
        pod_labels={"app": "k6", "runner-index": "1"},
        hostname="demo-1",
    )
    manifest = kubectl.to_manifest(job)

    assert manifest["apiVersion"] == "batch/v1"
    assert manifest["metadata"] == {
        "name": "demo-1",
        "namespace": "load",
        "labels": {"app": "k6"},
    }
    template = manifest["spec"]["template"]
    assert template["metadata"]["labels"]["runner-index"] == "1"
    assert template["spec"]["hostname"] == "demo-1"
    assert template["spec"]["restartPolicy"] == "Never"
    assert template["spec"]["containers"][0]["ports"] == [{"containerPort": 6565}]
    assert manifest["spec"]["backoffLimit"] == 0


def test_job_status_is_read_from_manifest():
    job = kubectl.from_manifest(
        Job,
        {
            "metadata": {"name": "demo-1", "namespace": "default", "resourceVersion": "42"},
            "spec": {"template": {"spec": {"containers": []}}},
            "status": {"succeeded": 1},
        },
    )
    assert job.finished
    assert job.metadata.resource_version == "42"


def test_secret_values_are_decoded():
    secret = kubectl.from_manifest(
        Secret,
        {
            "metadata": {"name": "token"},
            "data": {"token": base64.b64encode(b"s3cr3t").decode()},
        },
    )
    assert secret.data == {"token": "s3cr3t"}


def test_service_and_pod_from_manifest():
    svc = kubectl.from_manifest(
        Service,
        {
            "metadata": {"name": "demo-1"},
            "spec": {"clusterIP": "10.96.3.4", "ports": [{"name": "http-api", "port": 6565}]},
        },
    )
    assert svc.cluster_ip == "10.96.3.4"
    assert svc.ports == [ServicePort(name="http-api", port=6565)]

    pod = kubectl.from_manifest(
        Pod,
        {"metadata": {"name": "demo-1-abc"}, "status": {"phase": "Running", "podIP": "10.1.0.9"}},
    )
    assert pod.running
    assert pod.pod_ip == "10.1.0.9"


def test_test_run_manifest_uses_camel_case():
    run = TestRun.new("demo", parallelism=3, use_direct_pod_ips=True)
    manifest = kubectl.to_manifest(run)
    assert manifest["kind"] == "TestRun"
    assert manifest["spec"]["parallelism"] == 3
    assert manifest["spec"]["useDirectPodIps"] is True
    assert kubectl.resource_name(TestRun) == "testruns.loadop.io"


@pytest.mark.parametrize(
    ("stderr", "expected"),
    [
        ('Error from server (NotFound): jobs.batch "demo-1" not found', NotFoundError),
        ('Error from server (AlreadyExists): jobs.batch "demo-1" already exists', AlreadyExistsError),
        (
            'Error from server (Conflict): Operation cannot be fulfilled on testruns.loadop.io "demo": '
            "the object has been modified; please apply your changes to the latest version",
            ConflictError,
        ),
        ("error: You must be logged in to the server (Unauthorized)", ClusterError),
        # Free text mentioning "not found" without a server reason.
        ('error: the server doesn\'t have a resource type "testruns"', ClusterError),
        ("error: unable to read kubeconfig: file not found", ClusterError),
        # A missing namespace must not read as "object absent".
        (
            'Error from server (NotFound): error when creating "STDIN": namespaces "load" not found',
            ClusterError,
        ),
        ('Error from server (Forbidden): jobs.batch "demo-1" is forbidden', ClusterError),
    ],
)
def test_kubectl_errors_are_classified(stderr, expected):
    assert type(kubectl._classify_kubectl_error(stderr)) is expected


def test_kubectl_error_keeps_server_reason():
    err = kubectl._classify_kubectl_error(
        'Error from server (NotFound): jobs.batch "demo-1" not found\n'
    )
    assert err.context == {"reason": "NotFound"}
    assert str(err) == 'Error from server (NotFound): jobs.batch "demo-1" not found'


class _FakeProcess:
    def __init__(self, returncode: int, stdout: bytes = b"", stderr: bytes = b""):
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr
        self.stdin_data: bytes | None = None

    async def communicate(self, stdin=None):
        self.stdin_data = stdin
        return self._stdout, self._stderr

    def kill(self):
        pass

    async def wait(self):
        return self.returncode


@pytest.mark.asyncio
async def test_kubectl_list_passes_label_selector(monkeypatch):
    calls = []
    listing = {"items": [{"metadata": {"name": "p1"}, "status": {"phase": "Running"}}]}

    async def fake_exec(*cmd, **kwargs):
        calls.append(cmd)
        return _FakeProcess(0, json.dumps(listing).encode())

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    client = KubectlCluster(kubectl_bin="kubectl", kubeconfig_path="/tmp/kc", timeout_seconds=5)

    pods = await client.list(Pod, "load", {"run-owner": "demo", "app": "k6"})

    assert [p.name for p in pods] == ["p1"]
    assert calls[0] == (
        "kubectl",
        "--kubeconfig",
        "/tmp/kc",
        "get",
        "pods",
        "-n",
        "load",
        "-o",
        "json",
        "-l",
        "app=k6,run-owner=demo",
    )


@pytest.mark.asyncio
async def test_kubectl_create_sends_manifest_on_stdin(monkeypatch):
    procs = []

    async def fake_exec(*cmd, **kwargs):
        proc = _FakeProcess(0, json.dumps({"metadata": {"name": "demo-1", "uid": "u1"}}).encode())
        procs.append((cmd, proc))
        return proc

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    client = KubectlCluster(kubectl_bin="kubectl", kubeconfig_path="", timeout_seconds=5)

    created = await client.create(Service(metadata=ObjectMeta(name="demo-1")))

    cmd, proc = procs[0]
    assert cmd[:4] == ("kubectl", "create", "-f", "-")
    assert json.loads(proc.stdin_data)["kind"] == "Service"
    assert created.metadata.uid == "u1"


@pytest.mark.asyncio
async def test_kubectl_failure_maps_to_not_found(monkeypatch):
    async def fake_exec(*cmd, **kwargs):
        return _FakeProcess(1, stderr=b'Error from server (NotFound): secrets "tok" not found')

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_exec)
    client = KubectlCluster(kubectl_bin="kubectl", kubeconfig_path="", timeout_seconds=5)

    with pytest.raises(NotFoundError):
        await client.get(Secret, "default", "tok")
