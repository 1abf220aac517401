import json
import logging

import httpx
import pytest

from loadop.connectors.cloud import (
    ErrorKind,
    HttpCloudReporter,
    TokenInfo,
    error_event,
    send_test_run_events,
)
from loadop.core.errors import ReconcileError
from loadop.core.log_context import TestRunContextFilter, bind_test_run, set_test_run_id
from loadop.models.resources import ObjectMeta, Secret


def test_event_builders_are_immutable():
    base = error_event(ErrorKind.START_ERROR)
    event = base.with_detail("runner pods never became ready").with_abort()

    assert base.detail == ""
    assert base.abort is False
    assert event.to_dict() == {
        "event_type": "Error",
        "error": {"kind": "OperatorStartError", "detail": "runner pods never became ready"},
        "abort": True,
    }


@pytest.mark.asyncio
async def test_http_reporter_posts_events():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202)

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    reporter = HttpCloudReporter("https://cloud.example.test/", http=http)

    await reporter.send_events("run-1", [error_event(ErrorKind.SETUP_ERROR).with_abort()])

    assert str(seen[0].url) == "https://cloud.example.test/v1/test-runs/run-1/events"
    body = json.loads(seen[0].content)
    assert body[0]["error"]["kind"] == "SetupError"
    assert body[0]["abort"] is True


@pytest.mark.asyncio
async def test_send_test_run_events_never_raises(caplog):
    http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    reporter = HttpCloudReporter("https://cloud.example.test", http=http)

    with caplog.at_level(logging.ERROR):
        await send_test_run_events(reporter, "run-1", error_event(ErrorKind.START_ERROR))
    assert "Failed to send events" in caplog.text


@pytest.mark.asyncio
async def test_send_test_run_events_needs_an_id(cloud):
    await send_test_run_events(cloud, "", error_event(ErrorKind.START_ERROR))
    assert cloud.events == []


@pytest.mark.asyncio
async def test_token_info_lifecycle(cluster):
    assert TokenInfo("", "default").ready

    info = TokenInfo("cloud-token", "default")
    assert not info.ready
    await info.load(cluster)
    assert not info.ready

    cluster.put(
        Secret(metadata=ObjectMeta(name="cloud-token"), data={"token": "s3cr3t"})
    )
    await info.load(cluster)
    assert info.ready
    assert info.value == "s3cr3t"


@pytest.mark.asyncio
async def test_token_secret_without_token_is_an_error(cluster):
    cluster.put(Secret(metadata=ObjectMeta(name="cloud-token"), data={"other": "x"}))
    with pytest.raises(ReconcileError):
        await TokenInfo("cloud-token", "default").load(cluster)


def test_log_records_carry_bound_test_run():
    record = logging.LogRecord("t", logging.INFO, __file__, 1, "msg", None, None)
    with bind_test_run("default/demo"):
        set_test_run_id("abc123")
        TestRunContextFilter().filter(record)
    assert record.test_run == "default/demo"
    assert record.test_run_id == "abc123"

    outside = logging.LogRecord("t", logging.INFO, __file__, 1, "msg", None, None)
    TestRunContextFilter().filter(outside)
    assert outside.test_run == "-"
    assert outside.test_run_id == "-"
