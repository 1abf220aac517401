"""
Cluster state connector.

``ClusterClient`` is the narrow surface the controller needs from the cluster:
get/list/create/update/delete plus a status write with optimistic concurrency.
``InMemoryCluster`` keeps that state in-process; it backs local development
and the test suite. ``KubectlCluster`` (see kubectl.py) talks to a real one.
"""

from __future__ import annotations

import ipaddress
import itertools
import logging
import uuid
from datetime import UTC, datetime
from typing import Protocol, TypeVar

from loadop.core.errors import (
    AlreadyExistsError,
    ClusterError,
    ConflictError,
    NotFoundError,
)
from loadop.models.resources import Resource, Service
from loadop.models.testrun import TestRun

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)


class ClusterClient(Protocol):
    async def get(self, kind: type[R], namespace: str, name: str) -> R: ...

    async def list(
        self, kind: type[R], namespace: str, labels: dict[str, str] | None = None
    ) -> list[R]: ...

    async def create(self, obj: R) -> R: ...

    async def update(self, obj: R) -> R: ...

    async def update_status(self, test_run: TestRun) -> TestRun: ...

    async def delete(self, kind: type[Resource], namespace: str, name: str) -> None: ...


def labels_match(labels: dict[str, str], selector: dict[str, str] | None) -> bool:
    if not selector:
        return True
    return all(labels.get(k) == v for k, v in selector.items())


class InMemoryCluster:
    """
    Dict-backed cluster store.

    Objects are copied on the way in and out so callers never share state with
    the store, matching how a remote API server behaves.
    """

    def __init__(self, *, service_cidr: str = "10.96.0.0/16") -> None:
        self._objects: dict[tuple[str, str, str], Resource] = {}
        self._versions = itertools.count(1)
        self._service_ips = ipaddress.ip_network(service_cidr).hosts()

    @staticmethod
    def _key(kind: type[Resource] | str, namespace: str, name: str) -> tuple[str, str, str]:
        kind_name = kind if isinstance(kind, str) else kind.kind
        return (kind_name, namespace, name)

    def _bump(self, obj: Resource) -> None:
        obj.metadata.resource_version = str(next(self._versions))

    async def get(self, kind: type[R], namespace: str, name: str) -> R:
        obj = self._objects.get(self._key(kind, namespace, name))
        if obj is None:
            raise NotFoundError(
                f"{kind.kind} {namespace}/{name} not found",
                context={"kind": kind.kind, "namespace": namespace, "name": name},
            )
        return obj.model_copy(deep=True)  # type: ignore[return-value]

    async def list(
        self, kind: type[R], namespace: str, labels: dict[str, str] | None = None
    ) -> list[R]:
        out: list[R] = []
        for (kind_name, ns, _), obj in sorted(self._objects.items()):
            if kind_name != kind.kind or ns != namespace:
                continue
            if not labels_match(obj.metadata.labels, labels):
                continue
            out.append(obj.model_copy(deep=True))  # type: ignore[arg-type]
        return out

    async def create(self, obj: R) -> R:
        key = self._key(obj.kind, obj.namespace, obj.name)
        if key in self._objects:
            raise AlreadyExistsError(
                f"{obj.kind} {obj.namespace}/{obj.name} already exists",
                context={"kind": obj.kind, "namespace": obj.namespace, "name": obj.name},
            )
        stored = obj.model_copy(deep=True)
        stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
        stored.metadata.creation_timestamp = datetime.now(UTC)
        if isinstance(stored, Service) and not stored.cluster_ip:
            stored.cluster_ip = str(next(self._service_ips))
        self._bump(stored)
        self._objects[key] = stored
        logger.debug("Created %s %s/%s", obj.kind, obj.namespace, obj.name)
        return stored.model_copy(deep=True)

    def _check_version(self, obj: Resource) -> Resource:
        key = self._key(obj.kind, obj.namespace, obj.name)
        current = self._objects.get(key)
        if current is None:
            raise NotFoundError(
                f"{obj.kind} {obj.namespace}/{obj.name} not found",
                context={"kind": obj.kind, "namespace": obj.namespace, "name": obj.name},
            )
        if (
            obj.metadata.resource_version
            and obj.metadata.resource_version != current.metadata.resource_version
        ):
            raise ConflictError(
                f"{obj.kind} {obj.namespace}/{obj.name} has been modified",
                context={
                    "expected": obj.metadata.resource_version,
                    "actual": current.metadata.resource_version,
                },
            )
        return current

    async def update(self, obj: R) -> R:
        """Replace an object (spec and metadata), keeping its stored status."""
        current = self._check_version(obj)
        stored = obj.model_copy(deep=True)
        if isinstance(current, TestRun) and isinstance(stored, TestRun):
            stored.status = current.status.model_copy(deep=True)
        stored.metadata.uid = current.metadata.uid
        stored.metadata.creation_timestamp = current.metadata.creation_timestamp
        self._bump(stored)
        self._objects[self._key(obj.kind, obj.namespace, obj.name)] = stored
        return stored.model_copy(deep=True)

    async def update_status(self, test_run: TestRun) -> TestRun:
        current = self._check_version(test_run)
        if not isinstance(current, TestRun):
            raise ClusterError(
                f"{current.kind} {current.namespace}/{current.name} has no status subresource",
                context={"kind": current.kind},
            )
        stored = current.model_copy(deep=True)
        stored.status = test_run.status.model_copy(deep=True)
        self._bump(stored)
        self._objects[self._key(TestRun, test_run.namespace, test_run.name)] = stored
        return stored.model_copy(deep=True)

    async def delete(self, kind: type[Resource], namespace: str, name: str) -> None:
        """Delete an object and, transitively, everything it owns."""
        obj = self._objects.pop(self._key(kind, namespace, name), None)
        if obj is None:
            raise NotFoundError(
                f"{kind.kind} {namespace}/{name} not found",
                context={"kind": kind.kind, "namespace": namespace, "name": name},
            )
        owner_uid = obj.metadata.uid
        owned = [
            key
            for key, child in self._objects.items()
            if any(ref.uid == owner_uid for ref in child.metadata.owner_references)
        ]
        for kind_name, ns, child_name in owned:
            child = self._objects.get((kind_name, ns, child_name))
            if child is not None:
                await self.delete(type(child), ns, child_name)

    # Test and simulation helpers

    def put(self, obj: Resource) -> None:
        """Insert or overwrite an object without any checks."""
        stored = obj.model_copy(deep=True)
        stored.metadata.uid = stored.metadata.uid or str(uuid.uuid4())
        self._bump(stored)
        self._objects[self._key(obj.kind, obj.namespace, obj.name)] = stored

    def objects(self, kind: type[R]) -> list[R]:
        return [
            obj.model_copy(deep=True)  # type: ignore[misc]
            for (kind_name, _, _), obj in sorted(self._objects.items())
            if kind_name == kind.kind
        ]
