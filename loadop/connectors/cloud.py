"""
Cloud event reporting.

Cloud-backed runs report unrecoverable failures to an external service as
events carrying an error kind, a detail message and an abort flag.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Protocol

import httpx

from loadop.config import settings
from loadop.core.errors import NotFoundError, ReconcileError
from loadop.models.resources import Secret

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    START_ERROR = "OperatorStartError"
    SETUP_ERROR = "SetupError"


@dataclass(frozen=True, slots=True)
class CloudEvent:
    error_kind: ErrorKind
    detail: str = ""
    abort: bool = False

    def with_detail(self, detail: str) -> CloudEvent:
        return replace(self, detail=detail)

    def with_abort(self) -> CloudEvent:
        return replace(self, abort=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": "Error",
            "error": {
                "kind": self.error_kind.value,
                "detail": self.detail,
            },
            "abort": self.abort,
        }


def error_event(kind: ErrorKind) -> CloudEvent:
    return CloudEvent(error_kind=kind)


TOKEN_SECRET_KEY = "token"


class TokenInfo:
    """Cloud token read from a secret in the run's namespace."""

    def __init__(self, secret_name: str, namespace: str) -> None:
        self.secret_name = secret_name
        self.namespace = namespace
        self.value = ""
        self.ready = not secret_name

    async def load(self, cluster: Any) -> None:
        """
        Populate ``value``; ``ready`` stays False while the secret is missing.

        Raises:
            ReconcileError: If the secret exists but holds no token.
        """
        if not self.secret_name:
            self.ready = True
            return
        try:
            secret = await cluster.get(Secret, self.namespace, self.secret_name)
        except NotFoundError:
            logger.info(
                "Token secret %s/%s not found yet", self.namespace, self.secret_name
            )
            self.ready = False
            return
        value = secret.data.get(TOKEN_SECRET_KEY, "")
        if not value:
            raise ReconcileError(
                f"secret {self.secret_name} has no '{TOKEN_SECRET_KEY}' key",
                context={"namespace": self.namespace, "secret": self.secret_name},
            )
        self.value = value
        self.ready = True


class CloudReporter(Protocol):
    async def send_events(self, test_run_id: str, events: list[CloudEvent]) -> None: ...


class NullCloudReporter:
    """Logs events instead of sending them anywhere."""

    async def send_events(self, test_run_id: str, events: list[CloudEvent]) -> None:
        for event in events:
            logger.info(
                "Cloud event for test run %s: %s (%s, abort=%s)",
                test_run_id,
                event.error_kind.value,
                event.detail,
                event.abort,
            )


class HttpCloudReporter:
    """POSTs events as JSON to ``<base_url>/v1/test-runs/<id>/events``."""

    def __init__(
        self,
        base_url: str,
        *,
        http: httpx.AsyncClient | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        timeout = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.CLOUD_API_TIMEOUT_SECONDS
        )
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def send_events(self, test_run_id: str, events: list[CloudEvent]) -> None:
        url = f"{self.base_url}/v1/test-runs/{test_run_id}/events"
        resp = await self._http.post(url, json=[e.to_dict() for e in events])
        resp.raise_for_status()


def build_cloud_reporter() -> CloudReporter:
    if settings.CLOUD_API_URL:
        return HttpCloudReporter(settings.CLOUD_API_URL)
    return NullCloudReporter()


async def send_test_run_events(
    reporter: CloudReporter, test_run_id: str, *events: CloudEvent
) -> None:
    """Deliver events; failures are logged and never propagate."""
    if not test_run_id:
        logger.warning("Cannot send cloud events: test run has no id")
        return
    try:
        await reporter.send_events(test_run_id, list(events))
    except Exception as e:
        logger.error("Failed to send events to cloud for test run %s: %s", test_run_id, e)
