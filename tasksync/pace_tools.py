"""
7pace Timetracker client for tasksync.

Starts and stops the tracking timer and records manual worklogs. The API
authenticates with the same DevOps personal access token.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .errors import RemoteServiceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# Models
# =============================================================================

class _PaceModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class Timer(_PaceModel):
    id: str
    work_item_id: int = Field(alias="workItemId")
    started_at: datetime = Field(alias="startedAt")
    comment: str | None = None


class StopTimerResult(_PaceModel):
    worklog_id: int = Field(alias="worklogId")
    duration: int  # seconds
    work_item_id: int = Field(alias="workItemId")


class Worklog(_PaceModel):
    id: int
    work_item_id: int = Field(alias="workItemId")
    user_id: str = Field(default="", alias="userId")
    duration: int  # seconds
    timestamp: datetime
    comment: str | None = None


def format_duration(secs: int) -> str:
    """Format seconds as "1h 1m" or "5m"."""
    hours, mins = secs // 3600, (secs % 3600) // 60
    if hours > 0:
        return f"{hours}h {mins}m"
    return f"{mins}m"


def with_retry(
    operation: Callable[[], T],
    max_retries: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call `operation`, retrying failures with exponential backoff.

    Waits 100ms, 200ms, 400ms, ... between attempts and re-raises the last
    error once `max_retries` retries are used up. Only use this for calls
    that are safe to repeat.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except (httpx.HTTPError, RemoteServiceError) as e:
            if attempt >= max_retries:
                logger.error("API call failed after %d attempts", attempt + 1)
                raise
            backoff = (2 ** attempt) * 0.1
            logger.warning(
                "API call failed (attempt %d/%d): %s. Retrying in %dms...",
                attempt + 1, max_retries, e, int(backoff * 1000),
            )
            sleep(backoff)
            attempt += 1


# =============================================================================
# Client
# =============================================================================

class PaceClient:
    """Thin synchronous client for the 7pace tracking endpoints."""

    def __init__(
        self,
        pat: str,
        organization: str,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 15.0,
    ):
        self.base_url = (base_url or f"https://api.timehub.7pace.com/{organization}").rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            auth=("", pat),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PaceClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise RemoteServiceError("7pace", None, f"{e} ({self.base_url})") from e
        if not response.is_success:
            raise RemoteServiceError("7pace", response.status_code, response.text[:200])
        return response

    def start_timer(self, work_item_id: int, comment: str | None = None) -> Timer:
        response = self._send(
            "POST",
            "/_apis/api/tracking/client/startTracking",
            json={"workItemId": work_item_id, "comment": comment},
        )
        return Timer.model_validate(response.json())

    def stop_timer(self, reason: int = 0) -> StopTimerResult:
        response = self._send("POST", f"/_apis/api/tracking/client/stopTracking/{reason}")
        return StopTimerResult.model_validate(response.json())

    def get_current_timer(self) -> Timer | None:
        """The running timer, or None. The API answers `null` when idle."""
        response = with_retry(
            lambda: self._send("GET", "/_apis/api/tracking/client/current")
        )
        data = response.json() if response.content else None
        return Timer.model_validate(data) if data else None

    def create_worklog(
        self,
        work_item_id: int,
        duration_secs: int,
        comment: str | None = None,
        timestamp: datetime | None = None,
    ) -> Worklog:
        body = {
            "workItemId": work_item_id,
            "duration": duration_secs,
            "timestamp": (timestamp or datetime.now(timezone.utc)).isoformat(),
            "comment": comment,
        }
        response = self._send("POST", "/_apis/worklogs", json=body)
        return Worklog.model_validate(response.json())

    def get_worklogs(self, start: datetime, end: datetime) -> list[Worklog]:
        """Worklogs recorded between two instants, as the API orders them."""
        response = with_retry(
            lambda: self._send(
                "GET",
                "/_apis/worklogs",
                params={"startDate": start.isoformat(), "endDate": end.isoformat()},
            )
        )
        return [Worklog.model_validate(entry) for entry in response.json() or []]
