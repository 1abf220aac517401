"""
Cluster Resource Models

Pydantic models for the cluster objects the controller reads and creates:
- Runner jobs and the legacy starter job
- Runner services (per-runner network endpoints)
- The shared segment-sequence config map
- Pods (readiness) and secrets (cloud token)
"""

from datetime import datetime
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OwnerReference(_CamelModel):
    """Link from a derived object back to the object that owns it."""

    api_version: str = Field(..., description="Owner API version")
    kind: str = Field(..., description="Owner kind")
    name: str = Field(..., description="Owner name")
    uid: str = Field(..., description="Owner UID")
    controller: bool = Field(True, description="Owner is the managing controller")
    block_owner_deletion: bool = Field(True, description="Block owner deletion")


class ObjectMeta(_CamelModel):
    """Identity and bookkeeping shared by every cluster object."""

    name: str = Field(..., description="Object name")
    namespace: str = Field("default", description="Object namespace")
    uid: str = Field("", description="Cluster-assigned UID")
    labels: Dict[str, str] = Field(default_factory=dict)
    owner_references: List[OwnerReference] = Field(default_factory=list)
    resource_version: str = Field("", description="Optimistic concurrency token")
    creation_timestamp: Optional[datetime] = Field(None)


class Resource(_CamelModel):
    """Base class for namespaced cluster objects."""

    kind: ClassVar[str] = ""

    metadata: ObjectMeta

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace


class EnvVar(_CamelModel):
    name: str
    value: str = ""


class VolumeMount(_CamelModel):
    name: str
    mount_path: str
    read_only: bool = True


class Volume(_CamelModel):
    """Volume backed by a config map."""

    name: str
    config_map_name: str


class Container(_CamelModel):
    name: str
    image: str
    image_pull_policy: str = "IfNotPresent"
    command: List[str] = Field(default_factory=list)
    env: List[EnvVar] = Field(default_factory=list)
    ports: List[int] = Field(default_factory=list)
    volume_mounts: List[VolumeMount] = Field(default_factory=list)
    resources: Dict[str, Any] = Field(default_factory=dict)
    security_context: Dict[str, Any] = Field(default_factory=dict)


class Job(Resource):
    """Batch job running one pod to completion."""

    kind: ClassVar[str] = "Job"

    containers: List[Container] = Field(default_factory=list)
    volumes: List[Volume] = Field(default_factory=list)
    pod_labels: Dict[str, str] = Field(default_factory=dict)
    hostname: str = Field("", description="Pod hostname")
    restart_policy: str = "Never"
    backoff_limit: int = 0

    # Status counters reported by the cluster
    active: int = 0
    succeeded: int = 0
    failed: int = 0

    @property
    def finished(self) -> bool:
        return self.succeeded > 0 or self.failed > 0


class ServicePort(_CamelModel):
    name: str
    port: int


class Service(Resource):
    """Network endpoint in front of a single runner pod."""

    kind: ClassVar[str] = "Service"

    selector: Dict[str, str] = Field(default_factory=dict)
    ports: List[ServicePort] = Field(default_factory=list)
    cluster_ip: str = ""


class ConfigMap(Resource):
    kind: ClassVar[str] = "ConfigMap"

    data: Dict[str, str] = Field(default_factory=dict)


class Secret(Resource):
    """Secret with already-decoded string values."""

    kind: ClassVar[str] = "Secret"

    data: Dict[str, str] = Field(default_factory=dict)


class Pod(Resource):
    kind: ClassVar[str] = "Pod"

    phase: str = "Pending"
    pod_ip: str = ""

    @property
    def running(self) -> bool:
        return self.phase == "Running"
