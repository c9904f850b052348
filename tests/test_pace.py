"""Tests for the 7pace client and retry helper."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from tasksync.errors import RemoteServiceError
from tasksync.pace_tools import PaceClient, format_duration, with_retry

TIMER = {
    "id": "timer-1",
    "workItemId": 123,
    "startedAt": "2026-01-08T09:00:00Z",
    "comment": None,
}


def make_client(handler):
    return PaceClient("test-pat", "test-org", transport=httpx.MockTransport(handler))


def test_start_timer():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=TIMER)

    with make_client(handler) as client:
        timer = client.start_timer(123, comment="pairing")

    assert timer.id == "timer-1"
    assert timer.work_item_id == 123
    assert timer.started_at == datetime(2026, 1, 8, 9, tzinfo=timezone.utc)
    assert seen[0].url.path == "/test-org/_apis/api/tracking/client/startTracking"
    assert json.loads(seen[0].content) == {"workItemId": 123, "comment": "pairing"}


def test_stop_timer():
    def handler(request):
        assert request.url.path.endswith("/stopTracking/0")
        return httpx.Response(200, json={"worklogId": 77, "duration": 3660, "workItemId": 123})

    with make_client(handler) as client:
        result = client.stop_timer()

    assert result.worklog_id == 77
    assert format_duration(result.duration) == "1h 1m"


def test_current_timer_idle():
    with make_client(lambda request: httpx.Response(200, json=None)) as client:
        assert client.get_current_timer() is None


def test_current_timer_retries_transient_failures():
    responses = iter([httpx.Response(503), httpx.Response(200, json=TIMER)])
    with make_client(lambda request: next(responses)) as client:
        timer = client.get_current_timer()
    assert timer.work_item_id == 123


def test_create_worklog():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={
            "id": 9,
            "workItemId": 123,
            "userId": "u-1",
            "duration": 5400,
            "timestamp": "2026-01-08T12:00:00Z",
            "comment": "review",
        })

    when = datetime(2026, 1, 8, 12, tzinfo=timezone.utc)
    with make_client(handler) as client:
        worklog = client.create_worklog(123, 5400, "review", timestamp=when)

    assert worklog.id == 9
    assert seen[0] == {
        "workItemId": 123,
        "duration": 5400,
        "timestamp": "2026-01-08T12:00:00+00:00",
        "comment": "review",
    }


def test_error_status_raises():
    with make_client(lambda request: httpx.Response(401, text="unauthorized")) as client:
        with pytest.raises(RemoteServiceError) as exc:
            client.start_timer(1)
    assert exc.value.service == "7pace"
    assert exc.value.status_code == 401


def test_unreachable_server_raises_remote_service_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    with make_client(refuse) as client:
        with pytest.raises(RemoteServiceError) as exc:
            client.start_timer(1)
    assert exc.value.status_code is None
    assert "unreachable" in str(exc.value)


def test_get_worklogs():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json=[{
            "id": 9,
            "workItemId": 123,
            "duration": 1800,
            "timestamp": "2026-01-07T12:00:00Z",
        }])

    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    end = datetime(2026, 1, 8, tzinfo=timezone.utc)
    with make_client(handler) as client:
        logs = client.get_worklogs(start, end)

    assert [log.id for log in logs] == [9]
    assert logs[0].comment is None
    assert seen[0].url.path == "/test-org/_apis/worklogs"
    assert seen[0].url.params["startDate"] == "2026-01-01T00:00:00+00:00"
    assert seen[0].url.params["endDate"] == "2026-01-08T00:00:00+00:00"


class TestWithRetry:
    def test_succeeds_after_failures(self):
        delays = []
        calls = {"n": 0}

        def flaky():
            calls["n"] += 1
            if calls["n"] < 3:
                raise httpx.ConnectError("refused")
            return "ok"

        assert with_retry(flaky, sleep=delays.append) == "ok"
        assert delays == [0.1, 0.2]

    def test_gives_up_after_max_retries(self):
        delays = []

        def always_fails():
            raise RemoteServiceError("7pace", 500)

        with pytest.raises(RemoteServiceError):
            with_retry(always_fails, max_retries=3, sleep=delays.append)
        assert delays == [0.1, 0.2, 0.4]

    def test_other_errors_are_not_retried(self):
        delays = []

        def broken():
            raise ValueError("bug")

        with pytest.raises(ValueError):
            with_retry(broken, sleep=delays.append)
        assert delays == []


@pytest.mark.parametrize("secs,expected", [(0, "0m"), (59, "0m"), (300, "5m"), (3600, "1h 0m"), (5400, "1h 30m")])
def test_format_duration(secs, expected):
    assert format_duration(secs) == expected
