"""
API routes for test-run control.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, status
from pydantic import BaseModel, Field

from loadop.api.error_handling import http_exception
from loadop.core.controller import controller
from loadop.models.testrun import TestRun, TestRunSpec

router = APIRouter()


class TestRunCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=57, pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
    namespace: str = "default"
    spec: TestRunSpec = Field(default_factory=TestRunSpec)


class ConditionResponse(BaseModel):
    type: str
    status: str
    last_transition_time: Optional[datetime] = None


class TestRunResponse(BaseModel):
    name: str
    namespace: str
    stage: str
    test_run_id: str
    parallelism: int
    stop_requested: bool
    error: str = ""
    conditions: list[ConditionResponse] = Field(default_factory=list)

    @classmethod
    def from_test_run(cls, test_run: TestRun) -> "TestRunResponse":
        return cls(
            name=test_run.name,
            namespace=test_run.namespace,
            stage=test_run.status.stage.value,
            test_run_id=test_run.status.test_run_id,
            parallelism=test_run.spec.parallelism,
            stop_requested=test_run.spec.stop_requested,
            error=test_run.status.error,
            conditions=[
                ConditionResponse(
                    type=c.type.value,
                    status=c.status.value,
                    last_transition_time=c.last_transition_time,
                )
                for c in test_run.status.conditions
            ],
        )


@router.post("/", response_model=TestRunResponse, status_code=status.HTTP_201_CREATED)
async def create_test_run(request: TestRunCreateRequest) -> TestRunResponse:
    """
    Create a test run and schedule its first reconcile.
    """
    try:
        created = await controller.create_test_run(
            name=request.name, namespace=request.namespace, spec=request.spec
        )
        return TestRunResponse.from_test_run(created)
    except Exception as e:
        raise http_exception("create test run", e)


@router.get("/", response_model=list[TestRunResponse])
async def list_test_runs(namespace: str = "default") -> list[TestRunResponse]:
    try:
        runs = await controller.list_test_runs(namespace)
        return [TestRunResponse.from_test_run(r) for r in runs]
    except Exception as e:
        raise http_exception("list test runs", e)


@router.get("/{namespace}/{name}", response_model=TestRunResponse)
async def get_test_run(namespace: str, name: str) -> TestRunResponse:
    try:
        return TestRunResponse.from_test_run(
            await controller.get_test_run(namespace, name)
        )
    except Exception as e:
        raise http_exception("get test run", e)


@router.post(
    "/{namespace}/{name}/stop",
    response_model=TestRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def stop_test_run(namespace: str, name: str) -> TestRunResponse:
    """
    Request a stop; runners are told to stop on the next reconcile pass.
    """
    try:
        return TestRunResponse.from_test_run(
            await controller.request_stop(namespace, name)
        )
    except Exception as e:
        raise http_exception("stop test run", e)


@router.delete("/{namespace}/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_test_run(namespace: str, name: str) -> None:
    """
    Delete a test run; owned runner resources go with it.
    """
    try:
        await controller.delete_test_run(namespace, name)
    except Exception as e:
        raise http_exception("delete test run", e)
