"""
Builders for the cluster objects derived from a TestRun.

Nothing here talks to the cluster; see orchestrator.py for creation.
"""

from __future__ import annotations

import json
import shlex

from loadop.config import settings
from loadop.core import segmentation
from loadop.core.agent_client import start_payload
from loadop.core.errors import ReconcileError
from loadop.models.resources import (
    ConfigMap,
    Container,
    EnvVar,
    Job,
    ObjectMeta,
    OwnerReference,
    Resource,
    Service,
    ServicePort,
    Volume,
    VolumeMount,
)
from loadop.models.testrun import TEST_RUN_API_VERSION, TestRun

SEGMENT_CONFIG_KEY = "config.json"
SEGMENT_VOLUME_NAME = "segment-config"
TOKEN_ENV_VAR = "K6_CLOUD_TOKEN"


def new_labels(name: str) -> dict[str, str]:
    return {
        "app": settings.RUNNER_APP_LABEL,
        "run-owner": name,
    }


def runner_labels(name: str) -> dict[str, str]:
    labels = new_labels(name)
    labels["runner"] = "true"
    return labels


def runner_name(test_run: TestRun, index: int) -> str:
    return f"{test_run.name}-{index}"


def set_controller_reference(owner: TestRun, obj: Resource) -> None:
    """
    Make ``owner`` the managing controller of ``obj``.

    Raises:
        ReconcileError: If ``obj`` is already controlled by something else.
    """
    if not owner.metadata.uid:
        raise ReconcileError(
            f"owner {owner.namespaced_name} has no uid",
            context={"owner": owner.namespaced_name},
        )
    for ref in obj.metadata.owner_references:
        if ref.controller and ref.uid != owner.metadata.uid:
            raise ReconcileError(
                f"{obj.kind} {obj.name} is already controlled by {ref.kind} {ref.name}",
                context={"object": obj.name, "controller": ref.name},
            )
    obj.metadata.owner_references = [
        ref for ref in obj.metadata.owner_references if ref.uid != owner.metadata.uid
    ]
    obj.metadata.owner_references.append(
        OwnerReference(
            api_version=TEST_RUN_API_VERSION,
            kind=owner.kind,
            name=owner.name,
            uid=owner.metadata.uid,
        )
    )


def new_shared_configmap(test_run: TestRun) -> ConfigMap | None:
    """Segment sequence shared by every runner; None for a single runner."""
    payload = segmentation.segment_sequence_json(test_run.spec.parallelism)
    if payload is None:
        return None
    return ConfigMap(
        metadata=ObjectMeta(
            name=test_run.name,
            namespace=test_run.namespace,
            labels=new_labels(test_run.name),
        ),
        data={SEGMENT_CONFIG_KEY: payload},
    )


def runner_command(
    test_run: TestRun, index: int, configmap: ConfigMap | None
) -> list[str]:
    spec = test_run.spec
    command = list(spec.command)
    command.append(segmentation.command_segment(index, spec.parallelism))
    if configmap is not None:
        command.append(
            f"--config={settings.RUNNER_SEGMENT_MOUNT_PATH}/{SEGMENT_CONFIG_KEY}"
        )
    command.append(f"--address=0.0.0.0:{settings.RUNNER_CONTROL_PORT}")
    if spec.script:
        command.append(spec.script)
    return command


def new_runner_job(
    test_run: TestRun,
    index: int,
    token: str = "",
    configmap: ConfigMap | None = None,
) -> Job:
    spec = test_run.spec
    name = runner_name(test_run, index)

    env = [EnvVar(name=k, value=v) for k, v in sorted(spec.env.items())]
    if token:
        env.append(EnvVar(name=TOKEN_ENV_VAR, value=token))

    volumes: list[Volume] = []
    mounts: list[VolumeMount] = []
    if configmap is not None:
        volumes.append(Volume(name=SEGMENT_VOLUME_NAME, config_map_name=configmap.name))
        mounts.append(
            VolumeMount(
                name=SEGMENT_VOLUME_NAME, mount_path=settings.RUNNER_SEGMENT_MOUNT_PATH
            )
        )

    labels = runner_labels(test_run.name)
    pod_labels = dict(labels)
    pod_labels["runner-index"] = str(index)

    container = Container(
        name="k6",
        image=spec.image,
        image_pull_policy=spec.image_pull_policy,
        command=runner_command(test_run, index, configmap),
        env=env,
        ports=[settings.RUNNER_CONTROL_PORT],
        volume_mounts=mounts,
        resources=dict(spec.resources),
        security_context=dict(spec.security_context),
    )
    return Job(
        metadata=ObjectMeta(name=name, namespace=test_run.namespace, labels=labels),
        containers=[container],
        volumes=volumes,
        pod_labels=pod_labels,
        hostname=name,
    )


def new_runner_service(test_run: TestRun, index: int) -> Service:
    name = runner_name(test_run, index)
    selector = runner_labels(test_run.name)
    selector["runner-index"] = str(index)
    return Service(
        metadata=ObjectMeta(
            name=name, namespace=test_run.namespace, labels=runner_labels(test_run.name)
        ),
        selector=selector,
        ports=[ServicePort(name="http-api", port=settings.RUNNER_CONTROL_PORT)],
    )


def starter_script(hostnames: list[str]) -> str:
    body = json.dumps(start_payload())
    parts = [
        "curl --retry 3 -X PATCH -H 'Content-Type: application/json' "
        f"http://{host}:{settings.RUNNER_CONTROL_PORT}/v1/status -d {shlex.quote(body)}"
        for host in hostnames
    ]
    return " && ".join(parts)


def new_starter_job(test_run: TestRun, hostnames: list[str]) -> Job:
    """Legacy starter: a one-shot curl job that un-pauses every runner."""
    spec = test_run.spec
    labels = new_labels(test_run.name)
    labels["starter"] = "true"
    container = Container(
        name="k6-curl",
        image=settings.STARTER_IMAGE,
        image_pull_policy=spec.image_pull_policy,
        command=["sh", "-c", starter_script(hostnames)],
        env=[EnvVar(name=k, value=v) for k, v in sorted(spec.env.items())],
        resources=dict(spec.resources),
        security_context=dict(spec.security_context),
    )
    return Job(
        metadata=ObjectMeta(
            name=f"{test_run.name}-starter", namespace=test_run.namespace, labels=labels
        ),
        containers=[container],
        pod_labels=dict(labels),
    )
