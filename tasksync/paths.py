"""
State directory resolution.

Finds a writable directory for the state and lock files, trying in order:
an explicit override, ~/.tasksync, the platform data directory, and finally
./.tasksync in the working directory.

Read-only callers (`current`, dry runs) pass create=False: nothing is
created or written, and the directory already holding a state file wins.
"""

import logging
import os
from pathlib import Path

from .errors import InvalidConfiguration

logger = logging.getLogger(__name__)

APP_DIR_NAME = "tasksync"
LOCK_FILE_NAME = "state.lock"
STATE_FILE_NAME = "state.json"


def _platform_data_dir() -> Path | None:
    """Per-user data directory (XDG on Linux, AppData on Windows)."""
    if os.name == "nt":
        local = os.environ.get("LOCALAPPDATA")
        return Path(local) if local else None
    xdg = os.environ.get("XDG_DATA_HOME")
    if xdg:
        return Path(xdg)
    try:
        return Path.home() / ".local" / "share"
    except RuntimeError:
        return None


def _candidates() -> list[Path]:
    candidates: list[Path] = []
    try:
        candidates.append(Path.home() / f".{APP_DIR_NAME}")
    except RuntimeError:
        logger.debug("No home directory available")
    data_dir = _platform_data_dir()
    if data_dir is not None:
        candidates.append(data_dir / APP_DIR_NAME)
    candidates.append(Path(f".{APP_DIR_NAME}"))
    return candidates


def ensure_writable(directory: Path) -> None:
    """Create the directory if needed and check that files can be written in it.

    Raises:
        OSError: If the directory cannot be created or written to.
    """
    directory.mkdir(parents=True, exist_ok=True)
    test_file = directory / ".write_test"
    test_file.write_bytes(b"test")
    try:
        test_file.unlink()
    except OSError:
        # Test file may be held open by a virus scanner on Windows
        pass


def get_state_dir(override: Path | None = None, create: bool = True) -> Path:
    """Return the state directory.

    With create=True the first writable candidate is used (and created). An
    explicit override is never silently replaced: if it is not writable that
    is a configuration error. With create=False nothing touches the disk;
    the first candidate that already holds a state file is returned, or the
    preferred candidate when there is none yet.

    Raises:
        InvalidConfiguration: If no candidate directory is writable.
    """
    if not create:
        if override is not None:
            return override
        candidates = _candidates()
        for directory in candidates:
            if (directory / STATE_FILE_NAME).is_file():
                return directory
        return candidates[0]

    if override is not None:
        try:
            ensure_writable(override)
        except OSError as e:
            raise InvalidConfiguration("state_dir", str(override), f"is not writable ({e})")
        return override

    for directory in _candidates():
        try:
            ensure_writable(directory)
            return directory
        except OSError as e:
            logger.warning("Cannot write to %s (%s); trying next location", directory, e)

    raise InvalidConfiguration(
        "state_dir",
        None,
        "no writable location found. Check permissions or set TASKSYNC_STATE_DIR",
    )


def state_paths(override: Path | None = None, create: bool = True) -> tuple[Path, Path]:
    """Return (lock_path, state_path) inside the resolved state directory."""
    state_dir = get_state_dir(override, create)
    return state_dir / LOCK_FILE_NAME, state_dir / STATE_FILE_NAME
