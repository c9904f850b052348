"""End-to-end tests for the tasksync CLI."""

import json

import httpx
import pytest
from typer.testing import CliRunner

from tasksync import __version__, cli
from tasksync.config import get_settings
from tasksync.devops_tools import DevOpsClient
from tasksync.errors import RevisionConflict
from tasksync.pace_tools import PaceClient
from tasksync.state import CurrentTask, State, load_state, save_state

runner = CliRunner()


def backend(request: httpx.Request) -> httpx.Response:
    """Answers both the DevOps and the 7pace endpoints used by `start`."""
    path = request.url.path
    if path.endswith("/workitems/123"):
        return httpx.Response(200, json={
            "id": 123,
            "rev": 3,
            "fields": {"System.Title": "Fix login", "System.State": "Active"},
        })
    if path.endswith("/tracking/client/current"):
        return httpx.Response(200, json=None)
    if path.endswith("/startTracking"):
        return httpx.Response(200, json={
            "id": "timer-1", "workItemId": 123, "startedAt": "2026-01-08T09:00:00Z",
        })
    return httpx.Response(404)


class FakeCalendar:
    def __init__(self):
        self.created = []

    def fetch_busy_intervals(self, time_min, time_max):
        return []

    def create_focus_block(self, slot, work_item_id, title):
        self.created.append(work_item_id)
        return {"id": "evt-1"}


@pytest.fixture
def configured(tmp_path, monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "state_dir", tmp_path)
    monkeypatch.setattr(settings, "devops_pat", "test-pat")
    monkeypatch.setattr(settings, "devops_organization", "org")
    monkeypatch.setattr(settings, "devops_project", "proj")
    monkeypatch.setattr(settings, "work_hours_start", "08:30")
    monkeypatch.setattr(settings, "work_hours_end", "17:00")
    monkeypatch.setattr(settings, "work_hours_timezone", "UTC")
    monkeypatch.setattr(settings, "focus_block_minutes", 45)
    monkeypatch.setattr(settings, "log_level", "WARNING")
    return tmp_path


@pytest.fixture
def mocked_backend(configured, monkeypatch):
    transport = httpx.MockTransport(backend)
    monkeypatch.setattr(
        cli, "_devops_client", lambda: DevOpsClient("pat", "org", "proj", transport=transport)
    )
    monkeypatch.setattr(cli, "_pace_client", lambda: PaceClient("pat", "org", transport=transport))
    return configured


def test_version():
    result = runner.invoke(cli.app, ["version"])
    assert result.exit_code == 0
    assert f"tasksync v{__version__}" in result.stdout


def test_current_without_task(configured):
    result = runner.invoke(cli.app, ["current"])
    assert result.exit_code == 0
    assert "No active task" in result.stdout


def test_current_json(configured):
    state = State()
    state.current_task = CurrentTask(id=42, title="Write docs", timer_id="t-9")
    save_state(state, configured / "state.json")

    result = runner.invoke(cli.app, ["current", "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["id"] == 42
    assert payload["title"] == "Write docs"
    assert payload["expired"] is False


def test_start_records_task(mocked_backend):
    result = runner.invoke(cli.app, ["start", "123", "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["id"] == 123
    assert payload["timer_id"] == "timer-1"
    assert load_state(mocked_backend / "state.json").current_task.id == 123


def test_start_dry_run_writes_nothing(mocked_backend):
    result = runner.invoke(cli.app, ["start", "123", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert "[DRY-RUN]" in result.stdout
    assert "Would start timer" in result.stdout
    assert not (mocked_backend / "state.json").exists()


def test_start_with_focus_block(mocked_backend, monkeypatch):
    calendar = FakeCalendar()
    monkeypatch.setattr(cli, "calendar_tools", calendar)

    result = runner.invoke(cli.app, ["start", "123", "--schedule-focus", "--json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["event_id"] == "evt-1"
    assert calendar.created == [123]


def test_missing_token_exits_with_config_error(configured, monkeypatch):
    monkeypatch.setattr(get_settings(), "devops_pat", None)
    result = runner.invoke(cli.app, ["start", "123"])
    assert result.exit_code == 2
    assert "devops_pat" in result.stdout


def test_stop_without_task(configured):
    result = runner.invoke(cli.app, ["stop"])
    assert result.exit_code == 0
    assert "No active task to stop." in result.stdout


def test_slot_json(configured, monkeypatch):
    monkeypatch.setattr(cli, "calendar_tools", FakeCalendar())
    result = runner.invoke(cli.app, ["slot", "--json", "-d", "30"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["duration_minutes"] == 30


def test_slot_rejects_bad_work_hours(configured, monkeypatch):
    monkeypatch.setattr(cli, "calendar_tools", FakeCalendar())
    monkeypatch.setattr(get_settings(), "work_hours_end", "25:00")

    result = runner.invoke(cli.app, ["slot"])
    assert result.exit_code == 2


def test_state_conflict_exit_code(mocked_backend, monkeypatch):
    def conflicting(work_item_id, new_state, devops, dry_run=False):
        raise RevisionConflict(work_item_id, 3, 4)

    monkeypatch.setattr(cli.tasks, "change_state", conflicting)
    result = runner.invoke(cli.app, ["state", "123", "Closed"])

    assert result.exit_code == 4
    assert "Conflict" in result.stdout


@pytest.fixture
def fresh_settings(monkeypatch):
    monkeypatch.delenv("TASKSYNC_FOCUS_BLOCK_MINUTES", raising=False)
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


def test_invalid_env_value_exits_with_config_error(fresh_settings):
    fresh_settings.setenv("TASKSYNC_FOCUS_BLOCK_MINUTES", "0")

    result = runner.invoke(cli.app, ["slot"])

    assert result.exit_code == 2
    assert "focus_block_minutes" in result.stdout
    assert "Traceback" not in result.output


def test_unreachable_devops_is_reported(configured, monkeypatch):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    transport = httpx.MockTransport(refuse)
    monkeypatch.setattr(
        cli, "_devops_client", lambda: DevOpsClient("pat", "org", "proj", transport=transport)
    )

    result = runner.invoke(cli.app, ["state", "123"])

    assert result.exit_code == 1
    assert "unreachable" in result.stdout
    assert "Traceback" not in result.output


def test_current_does_not_create_state_dir(configured, monkeypatch):
    missing = configured / "not-yet"
    monkeypatch.setattr(get_settings(), "state_dir", missing)

    result = runner.invoke(cli.app, ["current"])

    assert result.exit_code == 0
    assert not missing.exists()


def test_start_dry_run_does_not_create_state_dir(mocked_backend, monkeypatch):
    missing = mocked_backend / "not-yet"
    monkeypatch.setattr(get_settings(), "state_dir", missing)

    result = runner.invoke(cli.app, ["start", "123", "--dry-run"])

    assert result.exit_code == 0, result.output
    assert not missing.exists()


def switch_backend(request: httpx.Request) -> httpx.Response:
    """Task 42 is current with its timer running; switching goes to 123."""
    path = request.url.path
    if path.endswith("/workitems/123"):
        return httpx.Response(200, json={"id": 123, "rev": 3, "fields": {"System.Title": "Fix login"}})
    if path.endswith("/tracking/client/current"):
        return httpx.Response(200, json={
            "id": "timer-42", "workItemId": 42, "startedAt": "2026-01-08T08:00:00Z",
        })
    if "/stopTracking/" in path:
        return httpx.Response(200, json={"worklogId": 7, "duration": 3600, "workItemId": 42})
    if path.endswith("/startTracking"):
        return httpx.Response(200, json={
            "id": "timer-1", "workItemId": 123, "startedAt": "2026-01-08T09:00:00Z",
        })
    return httpx.Response(404)


def test_switch_replaces_current_task(configured, monkeypatch):
    transport = httpx.MockTransport(switch_backend)
    monkeypatch.setattr(
        cli, "_devops_client", lambda: DevOpsClient("pat", "org", "proj", transport=transport)
    )
    monkeypatch.setattr(cli, "_pace_client", lambda: PaceClient("pat", "org", transport=transport))
    state = State()
    state.current_task = CurrentTask(id=42, title="Write docs", timer_id="timer-42")
    save_state(state, configured / "state.json")

    result = runner.invoke(cli.app, ["switch", "123", "--json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.stdout)
    assert payload["stopped"]["id"] == 42
    assert payload["stopped"]["duration_seconds"] == 3600
    assert payload["started"]["id"] == 123
    assert load_state(configured / "state.json").current_task.id == 123


def show_backend(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/workitems/123"):
        assert request.url.params["$expand"] == "relations"
        return httpx.Response(200, json={
            "id": 123,
            "rev": 5,
            "fields": {
                "System.Title": "Fix login",
                "System.WorkItemType": "Task",
                "System.State": "Active",
                "System.Description": "Users get logged out",
                "System.Tags": "auth; web",
            },
            "relations": [{
                "rel": "System.LinkTypes.Hierarchy-Reverse",
                "url": "https://dev.azure.com/org/_apis/wit/workItems/100",
            }],
        })
    return httpx.Response(404)


def test_show_prints_details(configured, monkeypatch):
    transport = httpx.MockTransport(show_backend)
    monkeypatch.setattr(
        cli, "_devops_client", lambda: DevOpsClient("pat", "org", "proj", transport=transport)
    )

    result = runner.invoke(cli.app, ["show", "123"])

    assert result.exit_code == 0, result.output
    assert "Fix login" in result.stdout
    assert "Unassigned" in result.stdout
    assert "#100" in result.stdout
    assert "Users get logged out" in result.stdout


def worklog_backend(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/_apis/worklogs"):
        return httpx.Response(200, json=[
            {"id": 1, "workItemId": 123, "duration": 5400,
             "timestamp": "2026-01-07T10:00:00Z", "comment": "Review"},
            {"id": 2, "workItemId": 42, "duration": 1800,
             "timestamp": "2026-01-08T09:00:00Z"},
        ])
    return httpx.Response(404)


def test_worklogs_table_and_total(configured, monkeypatch):
    transport = httpx.MockTransport(worklog_backend)
    monkeypatch.setattr(cli, "_pace_client", lambda: PaceClient("pat", "org", transport=transport))

    result = runner.invoke(cli.app, ["worklogs", "--days", "3"])

    assert result.exit_code == 0, result.output
    assert "Review" in result.stdout
    assert "Total: 2h 0m" in result.stdout


def test_worklogs_empty(configured, monkeypatch):
    transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[]))
    monkeypatch.setattr(cli, "_pace_client", lambda: PaceClient("pat", "org", transport=transport))

    result = runner.invoke(cli.app, ["worklogs"])

    assert result.exit_code == 0
    assert "No worklogs found in the last 7 days." in result.stdout


def test_calendar_setup_without_credentials(configured, monkeypatch):
    monkeypatch.setattr(
        get_settings(), "google_calendar_credentials_file", configured / "missing.json"
    )

    result = runner.invoke(cli.app, ["calendar-setup"])

    assert result.exit_code == 2
    assert "google_calendar_credentials_file" in result.stdout


def test_calendar_setup_saves_and_checks_token(configured, monkeypatch):
    from google_auth_oauthlib.flow import InstalledAppFlow

    settings = get_settings()
    creds_file = configured / "credentials.json"
    creds_file.write_text("{}")
    monkeypatch.setattr(settings, "google_calendar_credentials_file", creds_file)
    monkeypatch.setattr(settings, "google_calendar_token_file", configured / "token.json")

    class FakeCreds:
        def to_json(self):
            return '{"token": "abc"}'

    class FakeFlow:
        def run_local_server(self, port):
            return FakeCreds()

    monkeypatch.setattr(
        InstalledAppFlow, "from_client_secrets_file", classmethod(lambda cls, path, scopes: FakeFlow())
    )
    monkeypatch.setattr(cli.calendar_tools, "verify_access", lambda: "Work")

    result = runner.invoke(cli.app, ["calendar-setup"])

    assert result.exit_code == 0, result.output
    assert (configured / "token.json").read_text() == '{"token": "abc"}'
    assert "Calendar 'Work' is reachable" in result.stdout
