"""
Local state for tasksync.

The state file records what the user is working on right now. It is a single
JSON document, changed only inside `locked_state`, which holds an exclusive
advisory lock on a sibling lock file for the whole read-modify-write cycle
and replaces the document atomically (temp file + rename).
"""

import fcntl
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, TextIO, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidConfiguration, LockAcquisitionFailure, StatePersistFailure

logger = logging.getLogger(__name__)

STATE_VERSION = "1.0.0"
DEFAULT_LOCK_TIMEOUT = 30.0
_LOCK_POLL_INTERVAL = 0.05

R = TypeVar("R")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Document model
# =============================================================================

class CurrentTask(BaseModel):
    """The work item the user is currently working on."""

    model_config = ConfigDict(extra="allow")

    id: int
    title: str = ""
    started_at: datetime | None = None
    expires_at: datetime | None = None
    timer_id: str | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or _utcnow()) >= self.expires_at


class SyncTimestamps(BaseModel):
    model_config = ConfigDict(extra="allow")

    devops: datetime | None = None
    sevenpace: datetime | None = None
    calendar: datetime | None = None


class WorkHoursState(BaseModel):
    model_config = ConfigDict(extra="allow")

    start: str = ""
    end: str = ""


class CalendarMapping(BaseModel):
    """Link between a work item and the focus-block event created for it."""

    model_config = ConfigDict(extra="allow")

    work_item_id: int
    event_id: str
    created_at: datetime = Field(default_factory=_utcnow)
    last_synced: datetime | None = None


class State(BaseModel):
    """The persisted state document.

    Missing fields take their defaults and unknown fields are kept as-is, so
    files written by newer versions still load and survive a save.
    """

    model_config = ConfigDict(extra="allow")

    version: str = STATE_VERSION
    current_task: CurrentTask | None = None
    last_sync: SyncTimestamps = Field(default_factory=SyncTimestamps)
    work_hours: WorkHoursState = Field(default_factory=WorkHoursState)
    calendar_mappings: list[CalendarMapping] = Field(default_factory=list)

    def upsert_calendar_mapping(
        self, work_item_id: int, event_id: str, now: datetime | None = None
    ) -> CalendarMapping:
        """Add a mapping, or point an existing one at a new event."""
        now = now or _utcnow()
        for mapping in self.calendar_mappings:
            if mapping.work_item_id == work_item_id:
                mapping.event_id = event_id
                mapping.last_synced = now
                return mapping
        mapping = CalendarMapping(work_item_id=work_item_id, event_id=event_id, created_at=now)
        self.calendar_mappings.append(mapping)
        return mapping

    def get_calendar_event(self, work_item_id: int) -> str | None:
        for mapping in self.calendar_mappings:
            if mapping.work_item_id == work_item_id:
                return mapping.event_id
        return None

    def remove_calendar_mapping(self, work_item_id: int) -> bool:
        """Drop the mapping for a work item. Returns True if one existed."""
        before = len(self.calendar_mappings)
        self.calendar_mappings = [
            m for m in self.calendar_mappings if m.work_item_id != work_item_id
        ]
        return len(self.calendar_mappings) < before


# =============================================================================
# Load / save
# =============================================================================

def load_state(path: Path) -> State:
    """Read the state document, or return the default one if there is none yet.

    Raises:
        InvalidConfiguration: If the file exists but cannot be read or parsed.
    """
    path = Path(path)
    if not path.exists():
        return State()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise InvalidConfiguration("state_file", str(path), f"cannot be read ({e})")

    if not text.strip():
        return State()
    try:
        return State.model_validate_json(text)
    except ValidationError as e:
        raise InvalidConfiguration(
            "state_file", str(path), f"is not a valid state document ({e.error_count()} errors)"
        )


def save_state(state: State, path: Path) -> None:
    """Write the state document atomically via temp file + rename.

    The temp file lives in the target directory so the rename never crosses
    filesystems. On failure the previous document is left untouched.

    Raises:
        StatePersistFailure: If writing, syncing or renaming fails.
    """
    path = Path(path)
    payload = state.model_dump_json(indent=2)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        raise StatePersistFailure(path, str(e)) from e

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise StatePersistFailure(path, str(e)) from e


# =============================================================================
# Locked transactions
# =============================================================================

def _acquire_lock(lock_path: Path, timeout: float | None) -> TextIO:
    """Open the lock file and take an exclusive flock on it.

    With a timeout the lock is polled non-blocking until the deadline;
    without one the call blocks until the holder releases it.
    """
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        # Append mode creates the marker file without truncating anything
        handle = open(lock_path, "a")
    except OSError as e:
        raise LockAcquisitionFailure(lock_path, str(e)) from e

    deadline = None if timeout is None else time.monotonic() + timeout
    try:
        while True:
            try:
                if deadline is None:
                    fcntl.flock(handle, fcntl.LOCK_EX)
                else:
                    fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return handle
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    raise LockAcquisitionFailure(
                        lock_path,
                        f"still held by another tasksync process after {timeout:g}s",
                    )
                time.sleep(_LOCK_POLL_INTERVAL)
            except OSError as e:
                raise LockAcquisitionFailure(lock_path, str(e)) from e
    except BaseException:
        handle.close()
        raise


def _release_lock(handle: TextIO) -> None:
    try:
        fcntl.flock(handle, fcntl.LOCK_UN)
    finally:
        handle.close()


@contextmanager
def locked_state(
    lock_path: Path,
    state_path: Path,
    timeout: float | None = DEFAULT_LOCK_TIMEOUT,
) -> Iterator[State]:
    """Exclusive read-modify-write transaction over the state file.

    Usage:
        with locked_state(lock_path, state_path) as state:
            state.current_task = None
        # state is written back atomically on exit

    If the body raises, nothing is written and the exception propagates.
    The lock is released on every path.

    Args:
        lock_path: Lock marker file, created if missing
        state_path: State document
        timeout: Seconds to wait for the lock; None blocks indefinitely

    Raises:
        LockAcquisitionFailure: If the lock cannot be created or taken in time.
        StatePersistFailure: If the updated document cannot be written.
    """
    lock_path = Path(lock_path)
    state_path = Path(state_path)

    handle = _acquire_lock(lock_path, timeout)
    logger.debug("Acquired state lock %s", lock_path)
    try:
        state = load_state(state_path)
        yield state
        save_state(state, state_path)
    finally:
        _release_lock(handle)
        logger.debug("Released state lock %s", lock_path)


def with_state(
    lock_path: Path,
    state_path: Path,
    fn: Callable[[State], R],
    timeout: float | None = DEFAULT_LOCK_TIMEOUT,
) -> R:
    """Run `fn` on the state inside a locked transaction and return its result."""
    with locked_state(lock_path, state_path, timeout=timeout) as state:
        return fn(state)

