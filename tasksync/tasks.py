"""
Task workflows for tasksync.

Each function composes the DevOps, 7pace and calendar clients with the local
state for one CLI command. Clients are passed in so the workflows can run
against fakes. Nothing here prints; results describe what happened, or with
dry_run=True what would have happened, and the CLI renders them.

Dry runs skip every mutating effect: no timer changes, no calendar events,
no work-item patches and no writes to the local state file.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Protocol

from .devops_tools import DevOpsClient, WorkItem, field_patch
from .errors import InvalidConfiguration
from .pace_tools import PaceClient, StopTimerResult, Worklog
from .scheduler import BusyInterval, Slot, WorkHours, find_next_slot
from .state import DEFAULT_LOCK_TIMEOUT, CurrentTask, State, load_state, with_state

logger = logging.getLogger(__name__)


class FocusCalendar(Protocol):
    """What the workflows need from a calendar backend.

    The `calendar_tools` module satisfies this as-is.
    """

    def fetch_busy_intervals(self, time_min: datetime, time_max: datetime) -> list[BusyInterval]: ...

    def create_focus_block(self, slot: Slot, work_item_id: int, title: str) -> dict[str, Any]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Results
# =============================================================================

@dataclass
class StartResult:
    work_item_id: int
    title: str
    dry_run: bool
    timer_id: str | None = None
    slot: Slot | None = None
    event: dict[str, Any] | None = None
    previous_task: CurrentTask | None = None
    actions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.work_item_id,
            "title": self.title,
            "dry_run": self.dry_run,
            "timer_id": self.timer_id,
            "focus_block": self.slot.to_dict() if self.slot else None,
            "event_id": self.event["id"] if self.event else None,
            "previous_task": self.previous_task.id if self.previous_task else None,
            "actions": self.actions,
        }


@dataclass
class StopResult:
    task: CurrentTask | None
    dry_run: bool
    timer: StopTimerResult | None = None

    def to_dict(self) -> dict[str, Any]:
        if self.task is None:
            return {"status": "no_active_task"}
        return {
            "id": self.task.id,
            "title": self.task.title,
            "status": "would_stop" if self.dry_run else "stopped",
            "duration_seconds": self.timer.duration if self.timer else None,
        }


@dataclass
class SwitchResult:
    stopped: StopResult
    started: StartResult

    def to_dict(self) -> dict[str, Any]:
        return {"stopped": self.stopped.to_dict(), "started": self.started.to_dict()}


@dataclass
class WorkItemChange:
    work_item_id: int
    rev: int
    ops: list[dict[str, Any]]
    dry_run: bool
    before: dict[str, Any] = field(default_factory=dict)
    updated: WorkItem | None = None


# =============================================================================
# Focus blocks
# =============================================================================

def plan_focus_block(
    calendar: FocusCalendar,
    now: datetime,
    duration_minutes: int,
    work_hours: WorkHours,
    horizon_days: int = 7,
) -> Slot:
    """Fetch the calendar's busy periods and pick the next free slot.

    Raises:
        NoSlotAvailable: If nothing fits within the horizon.
    """
    # One extra day so busy periods at the end of the last day are included
    busy = calendar.fetch_busy_intervals(now, now + timedelta(days=horizon_days + 1))
    logger.debug("Calendar returned %d busy periods", len(busy))
    return find_next_slot(busy, now, duration_minutes, work_hours, horizon_days)


# =============================================================================
# Current task
# =============================================================================

def start_task(
    work_item_id: int,
    devops: DevOpsClient,
    pace: PaceClient,
    lock_path: Path,
    state_path: Path,
    *,
    dry_run: bool = False,
    schedule_focus: bool = False,
    calendar: FocusCalendar | None = None,
    work_hours: WorkHours | None = None,
    focus_minutes: int = 45,
    horizon_days: int = 7,
    expiry_hours: int = 24,
    lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT,
    now: datetime | None = None,
) -> StartResult:
    """Make a work item the current task.

    Stops a timer running for another item, starts the timer for this one,
    optionally books a focus block, and records the task in the state file.
    The focus slot is searched before anything is changed, so a full
    calendar fails the command without side effects.
    """
    now = now or _utcnow()
    item = devops.get_work_item(work_item_id)
    result = StartResult(work_item_id, item.title or "Unknown Title", dry_run)

    if schedule_focus:
        if calendar is None or work_hours is None:
            raise InvalidConfiguration("schedule_focus", True, "needs a calendar and work hours")
        result.slot = plan_focus_block(calendar, now, focus_minutes, work_hours, horizon_days)

    running = pace.get_current_timer()
    if running is not None and running.work_item_id == work_item_id:
        result.timer_id = running.id
        result.actions.append(f"Timer already running for Task {work_item_id}")
    elif running is not None:
        if dry_run:
            result.actions.append(f"Would stop existing timer for Task {running.work_item_id}")
        else:
            pace.stop_timer()
            result.actions.append(f"Stopped existing timer for Task {running.work_item_id}")

    if dry_run:
        if result.timer_id is None:
            result.actions.append(f"Would start timer for Task {work_item_id}")
        if result.slot:
            result.actions.append(
                f"Would schedule Focus Block {result.slot.start:%Y-%m-%d %H:%M}-{result.slot.end:%H:%M}"
            )
        result.previous_task = load_state(state_path).current_task
        if result.previous_task:
            result.actions.append(
                f"Would stop previous task: {result.previous_task.id} - {result.previous_task.title}"
            )
        result.actions.append(f"Would set current task to {work_item_id} - {result.title}")
        return result

    if result.timer_id is None:
        result.timer_id = pace.start_timer(work_item_id).id
        result.actions.append(f"Started timer for Task {work_item_id}")

    if result.slot:
        result.event = calendar.create_focus_block(result.slot, work_item_id, result.title)
        result.actions.append(
            f"Created Focus Block {result.slot.start:%Y-%m-%d %H:%M}-{result.slot.end:%H:%M}"
        )

    def record(state: State) -> CurrentTask | None:
        previous = state.current_task
        state.current_task = CurrentTask(
            id=work_item_id,
            title=result.title,
            started_at=now,
            expires_at=now + timedelta(hours=expiry_hours),
            timer_id=result.timer_id,
        )
        state.last_sync.devops = now
        state.last_sync.sevenpace = now
        if result.event:
            state.upsert_calendar_mapping(work_item_id, result.event["id"], now)
            state.last_sync.calendar = now
        return previous

    result.previous_task = with_state(lock_path, state_path, record, timeout=lock_timeout)
    result.actions.append(f"Set current task to {work_item_id} - {result.title}")
    return result


def stop_task(
    pace: PaceClient,
    lock_path: Path,
    state_path: Path,
    *,
    dry_run: bool = False,
    lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT,
    now: datetime | None = None,
) -> StopResult:
    """Stop the current task's timer and clear it from the state file.

    The timer is only stopped when 7pace reports it running for this task;
    one already stopped elsewhere (web UI, another machine) is left alone.
    Stopping happens inside the state transaction, so if the API call fails
    the task stays recorded as current.
    """
    if dry_run:
        return StopResult(load_state(state_path).current_task, dry_run=True)

    now = now or _utcnow()

    def clear(state: State) -> StopResult:
        task = state.current_task
        if task is None:
            return StopResult(None, dry_run=False)
        timer = None
        running = pace.get_current_timer()
        if running is not None and running.work_item_id == task.id:
            timer = pace.stop_timer()
        else:
            logger.info("No 7pace timer running for task %s; clearing it locally", task.id)
        state.current_task = None
        state.last_sync.sevenpace = now
        return StopResult(task, dry_run=False, timer=timer)

    return with_state(lock_path, state_path, clear, timeout=lock_timeout)


def current_task(state_path: Path) -> CurrentTask | None:
    """Read the current task without taking the lock.

    The state file is only ever replaced whole, so this sees either the old
    or the new document, never a mix.
    """
    return load_state(state_path).current_task


def switch_task(
    work_item_id: int,
    devops: DevOpsClient,
    pace: PaceClient,
    lock_path: Path,
    state_path: Path,
    *,
    dry_run: bool = False,
    expiry_hours: int = 24,
    lock_timeout: float | None = DEFAULT_LOCK_TIMEOUT,
    now: datetime | None = None,
) -> SwitchResult:
    """Stop the current task and start another one. No focus block is booked.

    The new work item is fetched first, so an unknown id fails before the
    current task is touched.
    """
    now = now or _utcnow()
    devops.get_work_item(work_item_id)
    stopped = stop_task(pace, lock_path, state_path, dry_run=dry_run, lock_timeout=lock_timeout, now=now)
    started = start_task(
        work_item_id,
        devops,
        pace,
        lock_path,
        state_path,
        dry_run=dry_run,
        expiry_hours=expiry_hours,
        lock_timeout=lock_timeout,
        now=now,
    )
    return SwitchResult(stopped, started)


def recent_worklogs(
    pace: PaceClient,
    days: int = 7,
    now: datetime | None = None,
) -> list[Worklog]:
    """Worklogs of the last `days` days, up to now."""
    if days <= 0:
        raise InvalidConfiguration("days", days, "must be greater than 0")
    end = now or _utcnow()
    return pace.get_worklogs(end - timedelta(days=days), end)


# =============================================================================
# Work items
# =============================================================================

def change_state(
    work_item_id: int,
    new_state: str,
    devops: DevOpsClient,
    *,
    dry_run: bool = False,
) -> WorkItemChange:
    """Move a work item to another state, guarded by the revision just read.

    Raises:
        InvalidConfiguration: If the state is not valid for the item's type.
        RevisionConflict: If the item changed between read and write.
    """
    item = devops.get_work_item(work_item_id)
    if item.work_item_type:
        valid = devops.get_work_item_type_states(item.work_item_type)
        if valid and new_state not in valid:
            raise InvalidConfiguration(
                "state", new_state, f"valid states for {item.work_item_type}: {', '.join(valid)}"
            )

    change = WorkItemChange(
        work_item_id,
        item.rev,
        [field_patch("System.State", new_state)],
        dry_run,
        before={"System.State": item.state},
    )
    if not dry_run:
        change.updated = devops.update_work_item_with_rev(work_item_id, change.ops, expected_rev=item.rev)
    return change


def update_fields(
    work_item_id: int,
    devops: DevOpsClient,
    *,
    assigned_to: str | None = None,
    priority: int | None = None,
    tags: str | None = None,
    dry_run: bool = False,
) -> WorkItemChange:
    """Update assignee, priority and/or tags in a single guarded patch.

    Args:
        assigned_to: User email or display name
        priority: 1 (highest) to 4
        tags: Comma-separated tags; replaces the current tags

    Raises:
        InvalidConfiguration: If nothing is given or the priority is out of range.
        RevisionConflict: If the item changed between read and write.
    """
    ops = []
    if assigned_to is not None:
        ops.append(field_patch("System.AssignedTo", assigned_to))
    if priority is not None:
        if not 1 <= priority <= 4:
            raise InvalidConfiguration("priority", priority, "must be between 1 and 4")
        ops.append(field_patch("Microsoft.VSTS.Common.Priority", priority))
    if tags is not None:
        cleaned = [t.strip() for t in tags.split(",") if t.strip()]
        ops.append(field_patch("System.Tags", "; ".join(cleaned)))
    if not ops:
        raise InvalidConfiguration(
            "fields", None, "nothing to update; pass --assigned-to, --priority or --tags"
        )

    item = devops.get_work_item(work_item_id)
    names = [op["path"].removeprefix("/fields/") for op in ops]
    before = {name: item.fields.get(name) for name in names}
    change = WorkItemChange(work_item_id, item.rev, ops, dry_run, before=before)
    if not dry_run:
        change.updated = devops.update_work_item_with_rev(work_item_id, ops, expected_rev=item.rev)
    return change


def log_time(
    work_item_id: int,
    hours: float,
    pace: PaceClient,
    *,
    comment: str | None = None,
    dry_run: bool = False,
    now: datetime | None = None,
) -> tuple[int, Worklog | None]:
    """Record a manual worklog. Returns (duration in seconds, worklog or None on dry run)."""
    if hours <= 0:
        raise InvalidConfiguration("hours", hours, "must be greater than 0")
    duration_secs = round(hours * 3600)
    if dry_run:
        return duration_secs, None
    worklog = pace.create_worklog(work_item_id, duration_secs, comment, timestamp=now or _utcnow())
    return duration_secs, worklog
