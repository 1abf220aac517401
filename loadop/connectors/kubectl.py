"""
kubectl-backed cluster connector.

Drives a real cluster by shelling out to ``kubectl`` with JSON manifests.
Failures are classified by the API status reason kubectl reports. Owner
references on derived objects let the cluster's garbage collector clean up
after a deleted run.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import re
from typing import Any, Callable, TypeVar

from loadop.config import settings
from loadop.core.errors import (
    AlreadyExistsError,
    ClusterError,
    ConflictError,
    NotFoundError,
)
from loadop.models.resources import (
    ConfigMap,
    Container,
    EnvVar,
    Job,
    ObjectMeta,
    Pod,
    Resource,
    Secret,
    Service,
    ServicePort,
    Volume,
    VolumeMount,
)
from loadop.models.testrun import TEST_RUN_API_VERSION, TestRun, TestRunSpec, TestRunStatus

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)


# kubectl prints the API status reason as "Error from server (<Reason>): ...".
_SERVER_REASON = re.compile(r"Error from server \((\w+)\)")

_REASON_ERRORS: dict[str, type[ClusterError]] = {
    "NotFound": NotFoundError,
    "AlreadyExists": AlreadyExistsError,
    "Conflict": ConflictError,
}


def _classify_kubectl_error(stderr: str) -> ClusterError:
    """Map the API status reason in kubectl stderr onto the cluster error taxonomy."""
    message = stderr.strip()
    match = _SERVER_REASON.search(message)
    if match is None:
        return ClusterError(message)
    reason = match.group(1)
    if reason == "NotFound" and 'namespaces "' in message:
        # A missing namespace is a setup problem, not a missing object.
        return ClusterError(message, context={"reason": reason})
    error_cls = _REASON_ERRORS.get(reason, ClusterError)
    return error_cls(message, context={"reason": reason})


# ============================================================================
# Manifest conversion
# ============================================================================


def _meta_to_manifest(meta: ObjectMeta) -> dict[str, Any]:
    data = meta.model_dump(by_alias=True, mode="json", exclude_none=True)
    return {k: v for k, v in data.items() if v not in ("", [], {})}


def _container_to_manifest(c: Container) -> dict[str, Any]:
    out: dict[str, Any] = {
        "name": c.name,
        "image": c.image,
        "imagePullPolicy": c.image_pull_policy,
        "command": list(c.command),
        "env": [{"name": e.name, "value": e.value} for e in c.env],
        "ports": [{"containerPort": p} for p in c.ports],
        "volumeMounts": [
            {"name": m.name, "mountPath": m.mount_path, "readOnly": m.read_only}
            for m in c.volume_mounts
        ],
    }
    if c.resources:
        out["resources"] = dict(c.resources)
    if c.security_context:
        out["securityContext"] = dict(c.security_context)
    return out


def _container_from_manifest(data: dict[str, Any]) -> Container:
    return Container(
        name=data.get("name", ""),
        image=data.get("image", ""),
        image_pull_policy=data.get("imagePullPolicy", "IfNotPresent"),
        command=list(data.get("command") or []),
        env=[
            EnvVar(name=e["name"], value=str(e.get("value", "")))
            for e in data.get("env") or []
        ],
        ports=[int(p["containerPort"]) for p in data.get("ports") or []],
        volume_mounts=[
            VolumeMount(
                name=m["name"],
                mount_path=m["mountPath"],
                read_only=bool(m.get("readOnly", False)),
            )
            for m in data.get("volumeMounts") or []
        ],
        resources=dict(data.get("resources") or {}),
        security_context=dict(data.get("securityContext") or {}),
    )


def _job_to_manifest(job: Job) -> dict[str, Any]:
    pod_spec: dict[str, Any] = {
        "restartPolicy": job.restart_policy,
        "containers": [_container_to_manifest(c) for c in job.containers],
        "volumes": [
            {"name": v.name, "configMap": {"name": v.config_map_name}}
            for v in job.volumes
        ],
    }
    if job.hostname:
        pod_spec["hostname"] = job.hostname
    return {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": _meta_to_manifest(job.metadata),
        "spec": {
            "backoffLimit": job.backoff_limit,
            "template": {"metadata": {"labels": dict(job.pod_labels)}, "spec": pod_spec},
        },
    }


def _job_from_manifest(data: dict[str, Any]) -> Job:
    spec = data.get("spec") or {}
    template = spec.get("template") or {}
    pod_spec = template.get("spec") or {}
    status = data.get("status") or {}
    return Job(
        metadata=ObjectMeta.model_validate(data.get("metadata") or {}),
        containers=[_container_from_manifest(c) for c in pod_spec.get("containers") or []],
        volumes=[
            Volume(name=v["name"], config_map_name=(v.get("configMap") or {}).get("name", ""))
            for v in pod_spec.get("volumes") or []
            if "configMap" in v
        ],
        pod_labels=dict((template.get("metadata") or {}).get("labels") or {}),
        hostname=pod_spec.get("hostname", ""),
        restart_policy=pod_spec.get("restartPolicy", "Never"),
        backoff_limit=int(spec.get("backoffLimit", 0)),
        active=int(status.get("active", 0)),
        succeeded=int(status.get("succeeded", 0)),
        failed=int(status.get("failed", 0)),
    )


def _service_to_manifest(svc: Service) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "selector": dict(svc.selector),
        "ports": [
            {"name": p.name, "port": p.port, "targetPort": p.port} for p in svc.ports
        ],
    }
    if svc.cluster_ip:
        spec["clusterIP"] = svc.cluster_ip
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _meta_to_manifest(svc.metadata),
        "spec": spec,
    }


def _service_from_manifest(data: dict[str, Any]) -> Service:
    spec = data.get("spec") or {}
    return Service(
        metadata=ObjectMeta.model_validate(data.get("metadata") or {}),
        selector=dict(spec.get("selector") or {}),
        ports=[
            ServicePort(name=p.get("name", ""), port=int(p["port"]))
            for p in spec.get("ports") or []
        ],
        cluster_ip=spec.get("clusterIP", "") or "",
    )


def _configmap_to_manifest(cm: ConfigMap) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _meta_to_manifest(cm.metadata),
        "data": dict(cm.data),
    }


def _configmap_from_manifest(data: dict[str, Any]) -> ConfigMap:
    return ConfigMap(
        metadata=ObjectMeta.model_validate(data.get("metadata") or {}),
        data=dict(data.get("data") or {}),
    )


def _secret_to_manifest(secret: Secret) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _meta_to_manifest(secret.metadata),
        "stringData": dict(secret.data),
    }


def _secret_from_manifest(data: dict[str, Any]) -> Secret:
    decoded = {
        k: base64.b64decode(v).decode("utf-8") for k, v in (data.get("data") or {}).items()
    }
    return Secret(
        metadata=ObjectMeta.model_validate(data.get("metadata") or {}),
        data=decoded,
    )


def _pod_to_manifest(pod: Pod) -> dict[str, Any]:
    raise ClusterError("pods are created by jobs, not by the controller")


def _pod_from_manifest(data: dict[str, Any]) -> Pod:
    status = data.get("status") or {}
    return Pod(
        metadata=ObjectMeta.model_validate(data.get("metadata") or {}),
        phase=status.get("phase", "Pending"),
        pod_ip=status.get("podIP", "") or "",
    )


def _test_run_to_manifest(test_run: TestRun) -> dict[str, Any]:
    return {
        "apiVersion": TEST_RUN_API_VERSION,
        "kind": "TestRun",
        "metadata": _meta_to_manifest(test_run.metadata),
        "spec": test_run.spec.model_dump(by_alias=True, mode="json"),
        "status": test_run.status.model_dump(by_alias=True, mode="json"),
    }


def _test_run_from_manifest(data: dict[str, Any]) -> TestRun:
    return TestRun(
        metadata=ObjectMeta.model_validate(data.get("metadata") or {}),
        spec=TestRunSpec.model_validate(data.get("spec") or {}),
        status=TestRunStatus.model_validate(data.get("status") or {}),
    )


_CODECS: dict[str, tuple[str, Callable[[Any], dict[str, Any]], Callable[[dict[str, Any]], Any]]] = {
    Job.kind: ("jobs.batch", _job_to_manifest, _job_from_manifest),
    Service.kind: ("services", _service_to_manifest, _service_from_manifest),
    ConfigMap.kind: ("configmaps", _configmap_to_manifest, _configmap_from_manifest),
    Secret.kind: ("secrets", _secret_to_manifest, _secret_from_manifest),
    Pod.kind: ("pods", _pod_to_manifest, _pod_from_manifest),
    TestRun.kind: ("testruns.loadop.io", _test_run_to_manifest, _test_run_from_manifest),
}


def to_manifest(obj: Resource) -> dict[str, Any]:
    return _CODECS[obj.kind][1](obj)


def from_manifest(kind: type[R], data: dict[str, Any]) -> R:
    return _CODECS[kind.kind][2](data)


def resource_name(kind: type[Resource]) -> str:
    return _CODECS[kind.kind][0]


# ============================================================================
# kubectl driver
# ============================================================================


class KubectlCluster:
    def __init__(
        self,
        *,
        kubectl_bin: str | None = None,
        kubeconfig_path: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.kubectl_bin = kubectl_bin or settings.KUBECTL_BIN
        self.kubeconfig_path = (
            kubeconfig_path if kubeconfig_path is not None else settings.KUBECONFIG_PATH
        )
        self.timeout_seconds = float(
            timeout_seconds if timeout_seconds is not None else settings.KUBECTL_TIMEOUT_SECONDS
        )

    def _base_cmd(self) -> list[str]:
        cmd = [self.kubectl_bin]
        if self.kubeconfig_path:
            cmd.extend(["--kubeconfig", self.kubeconfig_path])
        return cmd

    async def _run(self, args: list[str], *, stdin: bytes | None = None) -> str:
        cmd = self._base_cmd() + args
        logger.debug("Running %s", " ".join(cmd))
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if stdin is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(stdin), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as e:
            proc.kill()
            await proc.wait()
            raise ClusterError(
                f"kubectl timed out after {self.timeout_seconds:.0f}s: {' '.join(args)}",
                cause=e,
            ) from e
        if proc.returncode != 0:
            raise _classify_kubectl_error(stderr.decode("utf-8", errors="replace"))
        return stdout.decode("utf-8")

    async def _apply_json(self, verb: list[str], obj: R) -> R:
        payload = json.dumps(to_manifest(obj)).encode("utf-8")
        out = await self._run([*verb, "-f", "-", "-o", "json"], stdin=payload)
        return from_manifest(type(obj), json.loads(out))

    async def get(self, kind: type[R], namespace: str, name: str) -> R:
        out = await self._run(
            ["get", resource_name(kind), name, "-n", namespace, "-o", "json"]
        )
        return from_manifest(kind, json.loads(out))

    async def list(
        self, kind: type[R], namespace: str, labels: dict[str, str] | None = None
    ) -> list[R]:
        args = ["get", resource_name(kind), "-n", namespace, "-o", "json"]
        if labels:
            args.extend(["-l", ",".join(f"{k}={v}" for k, v in sorted(labels.items()))])
        out = await self._run(args)
        items = json.loads(out).get("items") or []
        return [from_manifest(kind, item) for item in items]

    async def create(self, obj: R) -> R:
        return await self._apply_json(["create"], obj)

    async def update(self, obj: R) -> R:
        return await self._apply_json(["replace"], obj)

    async def update_status(self, test_run: TestRun) -> TestRun:
        return await self._apply_json(["replace", "--subresource=status"], test_run)

    async def delete(self, kind: type[Resource], namespace: str, name: str) -> None:
        await self._run(
            ["delete", resource_name(kind), name, "-n", namespace, "--wait=false"]
        )
