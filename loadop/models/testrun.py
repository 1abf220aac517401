"""
TestRun Models

Defines the TestRun entity: an immutable spec describing a distributed load
test and a mutable status tracking its lifecycle.
"""

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from loadop.models.resources import ObjectMeta, Resource, _CamelModel

TEST_RUN_API_VERSION = "loadop.io/v1alpha1"


class Stage(str, Enum):
    """Lifecycle phase of a test run."""

    NEW = ""
    INITIALIZATION = "initialization"
    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"
    FINISHED = "finished"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (Stage.STOPPED, Stage.FINISHED, Stage.ERROR)


class ConditionType(str, Enum):
    """Closed set of condition kinds tracked on every test run."""

    TEST_RUN_RUNNING = "TestRunRunning"
    CLOUD_TEST_RUN = "CloudTestRun"
    CLOUD_TEST_RUN_CREATED = "CloudTestRunCreated"
    CLOUD_TEST_RUN_FINALIZED = "CloudTestRunFinalized"
    CLOUD_PLZ_TEST_RUN = "CloudPLZTestRun"
    CLOUD_TEST_RUN_ABORTED = "CloudTestRunAborted"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class Condition(_CamelModel):
    """Tri-state flag with the time its value last changed."""

    type: ConditionType = Field(..., description="Condition kind")
    status: ConditionStatus = Field(ConditionStatus.UNKNOWN)
    last_transition_time: Optional[datetime] = Field(
        None, description="When the value last changed; None if it never did"
    )


class TestRunSpec(_CamelModel):
    """
    Desired state of a distributed test run.

    Frozen: changes go through a copy and a full object update, never in place.
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, frozen=True
    )

    parallelism: int = Field(1, ge=1, description="Number of runners")
    image: str = Field("grafana/k6:latest", description="Runner image")
    image_pull_policy: str = Field("IfNotPresent")
    command: List[str] = Field(
        default_factory=lambda: ["k6", "run", "--quiet", "--paused"],
        description="Command template; segment flags are appended per runner",
    )
    script: str = Field("", description="Script path passed after the flags")
    env: Dict[str, str] = Field(default_factory=dict)
    resources: Dict[str, Any] = Field(default_factory=dict)
    security_context: Dict[str, Any] = Field(default_factory=dict)
    use_direct_pod_ips: bool = Field(
        False, description="Address runners by pod IP instead of a service"
    )
    use_legacy_starter: bool = Field(
        False, description="Start runners from a dedicated starter job"
    )
    token: str = Field("", description="Name of the secret holding the cloud token")
    cloud: bool = Field(False, description="Report lifecycle events to the cloud")
    cloud_plz: bool = Field(False, description="Run in a cloud private load zone")
    stop_requested: bool = Field(False, description="Stop a started run")

    @field_validator("command")
    @classmethod
    def _command_not_empty(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("command template must not be empty")
        return v


class TestRunStatus(_CamelModel):
    stage: Stage = Field(Stage.NEW)
    test_run_id: str = Field("", description="Run identifier assigned at init")
    conditions: List[Condition] = Field(default_factory=list)
    error: str = Field("", description="Last unrecoverable error, if any")


class TestRun(Resource):
    """A distributed load-test execution request and its lifecycle state."""

    kind: ClassVar[str] = "TestRun"

    spec: TestRunSpec = Field(default_factory=TestRunSpec)
    status: TestRunStatus = Field(default_factory=TestRunStatus)

    @property
    def namespaced_name(self) -> str:
        return f"{self.metadata.namespace}/{self.metadata.name}"

    @classmethod
    def new(cls, name: str, namespace: str = "default", **spec: Any) -> "TestRun":
        return cls(
            metadata=ObjectMeta(name=name, namespace=namespace),
            spec=TestRunSpec(**spec),
        )
