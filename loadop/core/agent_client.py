"""
HTTP client for the runner agent control API.

Every runner exposes a small REST API on a fixed control port:
- GET   /v1/status  readiness probe (any status < 400 means ready)
- PATCH /v1/status  pause/resume/stop
- POST  /v1/setup   run the script's setup() and return its data
- PUT   /v1/setup   hand setup data to a runner
"""

from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from loadop.config import settings
from loadop.core.errors import AgentError, SetupError
from loadop.models.dispatch import DispatchRequest
from loadop.models.testrun import TestRun

logger = logging.getLogger(__name__)


def status_payload(*, stopped: bool) -> dict[str, Any]:
    return {
        "data": {
            "id": "default",
            "type": "status",
            "attributes": {
                "paused": False,
                "stopped": stopped,
            },
        }
    }


def start_payload() -> dict[str, Any]:
    return status_payload(stopped=False)


def stop_payload() -> dict[str, Any]:
    return status_payload(stopped=True)


class AgentClient:
    """Thin async wrapper over the runner REST API."""

    def __init__(
        self,
        *,
        http: httpx.AsyncClient | None = None,
        port: int | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.port = int(port if port is not None else settings.RUNNER_CONTROL_PORT)
        timeout = (
            timeout_seconds
            if timeout_seconds is not None
            else settings.AGENT_HTTP_TIMEOUT_SECONDS
        )
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def status_url(self, host: str) -> str:
        return f"http://{host}:{self.port}/v1/status"

    def setup_url(self, host: str) -> str:
        return f"http://{host}:{self.port}/v1/setup"

    async def is_ready(self, host: str) -> bool:
        """Readiness probe; failures are logged and reported as not ready."""
        try:
            resp = await self._http.get(self.status_url(host))
        except httpx.HTTPError as e:
            logger.warning("Failed to get status from %s: %s", host, e)
            return False
        if resp.status_code >= 400:
            logger.info("Runner %s not ready (HTTP %d)", host, resp.status_code)
            return False
        return True

    def build_request(
        self, test_run: TestRun, host: str, payload: dict[str, Any]
    ) -> DispatchRequest:
        return DispatchRequest(
            namespace=test_run.namespace,
            url=self.status_url(host),
            method="PATCH",
            payload=json.dumps(payload).encode("utf-8"),
            test_run_name=test_run.name,
        )

    async def send(self, request: DispatchRequest) -> None:
        """
        Perform one dispatch request.

        Raises:
            AgentError: On transport failure or an HTTP error status.
        """
        try:
            resp = await self._http.request(
                request.method,
                request.url,
                content=request.payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise AgentError(
                f"{request.method} {request.url} failed: {e}",
                context={"url": request.url, "test_run": request.test_run_name},
                cause=e,
            ) from e
        if resp.status_code >= 400:
            raise AgentError(
                f"{request.method} {request.url} returned HTTP {resp.status_code}",
                context={
                    "url": request.url,
                    "status_code": resp.status_code,
                    "test_run": request.test_run_name,
                },
            )

    async def _patch_status(self, host: str, payload: dict[str, Any]) -> None:
        try:
            resp = await self._http.patch(self.status_url(host), json=payload)
        except httpx.HTTPError as e:
            raise AgentError(
                f"request to {host} failed: {e}", context={"host": host}, cause=e
            ) from e
        if resp.status_code >= 400:
            raise AgentError(
                f"{host} returned HTTP {resp.status_code}",
                context={"host": host, "status_code": resp.status_code},
            )

    async def start(self, host: str) -> None:
        await self._patch_status(host, start_payload())

    async def stop(self, host: str) -> None:
        await self._patch_status(host, stop_payload())

    async def run_setup(self, hosts: list[str]) -> None:
        """
        Run setup() once on the first runner and share its data with all.

        Raises:
            SetupError: ``retryable`` is True for transport failures and False
                when a runner answered with an error status.
        """
        if not hosts:
            raise SetupError("no runners to run setup on", retryable=True)

        logger.info("Invoking setup() on the first runner")
        first = hosts[0]
        try:
            resp = await self._http.post(self.setup_url(first))
        except httpx.HTTPError as e:
            raise SetupError(
                f"setup request to {first} failed: {e}", retryable=True, cause=e
            ) from e
        if resp.status_code >= 400:
            raise SetupError(
                f"setup() on {first} returned HTTP {resp.status_code}: {resp.text}",
                retryable=False,
                context={"host": first, "status_code": resp.status_code},
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise SetupError(
                f"setup() on {first} returned invalid JSON", retryable=False, cause=e
            ) from e
        data = body.get("data") if isinstance(body, dict) else None
        attributes = data.get("attributes") if isinstance(data, dict) else None
        setup_data = attributes.get("data") if isinstance(attributes, dict) else None

        logger.info("Sending setup data to %d runners", len(hosts))
        payload = {
            "data": {
                "type": "setupData",
                "id": "default",
                "attributes": {"data": setup_data},
            }
        }
        for host in hosts:
            try:
                resp = await self._http.put(self.setup_url(host), json=payload)
            except httpx.HTTPError as e:
                raise SetupError(
                    f"sending setup data to {host} failed: {e}",
                    retryable=True,
                    cause=e,
                ) from e
            if resp.status_code >= 400:
                raise SetupError(
                    f"{host} rejected setup data with HTTP {resp.status_code}",
                    retryable=False,
                    context={"host": host, "status_code": resp.status_code},
                )
