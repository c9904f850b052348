"""
Error types for tasksync.

Library code raises these; only the CLI catches them, renders a message and
exits with the code attached to each class.
"""

from pathlib import Path


class TaskSyncError(Exception):
    """Base class for every error tasksync reports to the user."""

    exit_code = 1


class InvalidConfiguration(TaskSyncError):
    """A configuration value or argument is malformed. Fix it and re-run."""

    exit_code = 2

    def __init__(self, field: str, value: object, message: str):
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field} {value!r}: {message}")


class InvalidTimestamp(TaskSyncError):
    """A calendar timestamp could not be parsed."""

    exit_code = 2

    def __init__(self, value: str, time_zone: str | None = None):
        self.value = value
        self.time_zone = time_zone
        suffix = f" (timeZone {time_zone!r})" if time_zone else ""
        super().__init__(f"Could not parse calendar time {value!r}{suffix}")


class NoSlotAvailable(TaskSyncError):
    """The search horizon was exhausted without a free block of the requested length."""

    exit_code = 3

    def __init__(self, duration_minutes: int, horizon_days: int):
        self.duration_minutes = duration_minutes
        self.horizon_days = horizon_days
        super().__init__(
            f"No free {duration_minutes}-minute slot in the next {horizon_days} days. "
            "Shorten the block, widen the horizon or clear calendar conflicts."
        )


class RevisionConflict(TaskSyncError):
    """The remote record changed since the caller read it. The patch was not applied."""

    exit_code = 4

    def __init__(self, work_item_id: int, expected: int, actual: int | None):
        self.work_item_id = work_item_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Work item {work_item_id} was modified concurrently "
            f"(expected rev {expected}, server has rev {actual}). "
            "Re-fetch it and retry."
        )


class LockAcquisitionFailure(TaskSyncError):
    """The state lock file could not be created or locked."""

    exit_code = 5

    def __init__(self, lock_path: Path, reason: str):
        self.lock_path = lock_path
        self.reason = reason
        super().__init__(f"Could not lock {lock_path}: {reason}")


class StatePersistFailure(TaskSyncError):
    """Writing the state file failed. The previous document is still on disk."""

    exit_code = 6

    def __init__(self, state_path: Path, reason: str):
        self.state_path = state_path
        self.reason = reason
        super().__init__(
            f"Could not save state to {state_path}: {reason}. "
            "No changes were recorded; retry the command."
        )


class RemoteServiceError(TaskSyncError):
    """A backend API answered with an unexpected status, or could not be reached.

    `status_code` is None when no response arrived (connection refused,
    timeout, failed token refresh).
    """

    def __init__(self, service: str, status_code: int | None, message: str = ""):
        self.service = service
        self.status_code = status_code
        detail = f": {message}" if message else ""
        if status_code is None:
            super().__init__(f"{service} API unreachable{detail}")
        else:
            super().__init__(f"{service} API error: status {status_code}{detail}")
