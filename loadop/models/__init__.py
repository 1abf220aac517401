"""
Data models for test runs and the cluster objects derived from them.
"""

from loadop.models.dispatch import DispatchRequest
from loadop.models.resources import (
    ConfigMap,
    Container,
    EnvVar,
    Job,
    ObjectMeta,
    OwnerReference,
    Pod,
    Resource,
    Secret,
    Service,
    ServicePort,
    Volume,
    VolumeMount,
)
from loadop.models.testrun import (
    TEST_RUN_API_VERSION,
    Condition,
    ConditionStatus,
    ConditionType,
    Stage,
    TestRun,
    TestRunSpec,
    TestRunStatus,
)

__all__ = [
    "DispatchRequest",
    "ConfigMap",
    "Container",
    "EnvVar",
    "Job",
    "ObjectMeta",
    "OwnerReference",
    "Pod",
    "Resource",
    "Secret",
    "Service",
    "ServicePort",
    "Volume",
    "VolumeMount",
    "TEST_RUN_API_VERSION",
    "Condition",
    "ConditionStatus",
    "ConditionType",
    "Stage",
    "TestRun",
    "TestRunSpec",
    "TestRunStatus",
]
