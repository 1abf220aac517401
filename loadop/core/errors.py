"""Error taxonomy for the test-run controller."""

from __future__ import annotations

from typing import Any, Mapping


class LoadOpError(Exception):
    """
    Base error.

    ``context`` holds the names, hosts and status codes that identify what
    failed; the API returns it as-is in error bodies.
    """

    def __init__(
        self,
        message: str,
        *,
        context: Mapping[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = {
            key: list(value) if isinstance(value, (list, tuple)) else value
            for key, value in (context or {}).items()
        }
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "message": str(self), "context": self.context}


class SegmentRangeError(LoadOpError, ValueError):
    """Requested segment index exceeds the configured parallelism."""


class ClusterError(LoadOpError):
    """Failure talking to the cluster state store."""


class NotFoundError(ClusterError):
    """Requested object does not exist."""


class AlreadyExistsError(ClusterError):
    """Object with the same kind/namespace/name already exists."""


class ConflictError(ClusterError):
    """Write was based on a stale resource version."""


class ResourceConflictError(LoadOpError):
    """Runner resources from a previous run are still present."""


class AgentError(LoadOpError):
    """HTTP call to a runner agent failed."""


class SetupError(LoadOpError):
    """Pre-run setup on the runners failed."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool,
        context: Mapping[str, Any] | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message, context=context, cause=cause)
        self.retryable = retryable


class DispatchError(LoadOpError):
    """One or more agents could not be started; carries every failure."""

    def __init__(self, *, failed: list[tuple[str, Exception]], total: int) -> None:
        self.failed = list(failed)
        self.total = int(total)
        details = "; ".join(
            f"failed to start agent on {host}: {err}" for host, err in self.failed
        )
        super().__init__(
            f"failed to start {len(self.failed)}/{self.total} agents: [{details}]",
            context={
                "failed_hosts": [host for host, _ in self.failed],
                "total": self.total,
            },
        )

    @property
    def failed_hosts(self) -> list[str]:
        return [host for host, _ in self.failed]


class ReconcileError(LoadOpError):
    """Fatal-to-pass reconcile failure; the scheduler retries with backoff."""
