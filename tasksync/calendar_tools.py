"""
Google Calendar access for tasksync.

Reads busy periods through the freebusy API and writes focus-block events
via the Calendar API v3.
Requires a one-time OAuth setup: `tasksync calendar-setup`
"""

from datetime import datetime
from typing import Any

from .config import get_settings
from .errors import RemoteServiceError
from .scheduler import BusyInterval, Slot, busy_from_events


# =============================================================================
# OAuth / Service Helper
# =============================================================================

SCOPES = ["https://www.googleapis.com/auth/calendar"]

FOCUS_BLOCK_PREFIX = "Focus:"

SERVICE_NAME = "Google Calendar"


def _get_calendar_service():
    """Build and return an authenticated Google Calendar service.

    Loads credentials from the token file (created by `calendar-setup`).
    Auto-refreshes expired tokens using the stored refresh token.

    Raises:
        RuntimeError: If the token file is missing or unusable.
        RemoteServiceError: If refreshing the token fails.
    """
    from google.auth.exceptions import GoogleAuthError
    from google.auth.transport.requests import Request
    from google.oauth2.credentials import Credentials
    from googleapiclient.discovery import build

    token_path = get_settings().google_calendar_token_file
    creds = None

    if token_path.exists():
        creds = Credentials.from_authorized_user_file(str(token_path), SCOPES)

    if not creds:
        raise RuntimeError(
            "Google Calendar not set up. Run: tasksync calendar-setup"
        )

    # Refresh if expired
    if not creds.valid:
        if creds.expired and creds.refresh_token:
            try:
                creds.refresh(Request())
            except GoogleAuthError as e:
                raise RemoteServiceError(
                    SERVICE_NAME, None, f"token refresh failed ({e}). Re-run: tasksync calendar-setup"
                ) from e
            # Persist the refreshed token
            token_path.write_text(creds.to_json())
        else:
            raise RuntimeError(
                "Google Calendar token is invalid. Re-run: tasksync calendar-setup"
            )

    return build("calendar", "v3", credentials=creds)


def _execute(request, action: str) -> dict[str, Any]:
    """Run an API request, turning HTTP and auth failures into RemoteServiceError."""
    import httplib2
    from google.auth.exceptions import GoogleAuthError
    from googleapiclient.errors import HttpError

    try:
        return request.execute()
    except HttpError as e:
        raise RemoteServiceError(SERVICE_NAME, e.resp.status, f"failed to {action}") from e
    except (GoogleAuthError, httplib2.HttpLib2Error, OSError) as e:
        raise RemoteServiceError(SERVICE_NAME, None, f"failed to {action} ({e})") from e


def _parse_event(event: dict) -> dict:
    """Extract the fields we care about from a raw Calendar API event."""
    start = event.get("start", {})
    end = event.get("end", {})

    result: dict[str, Any] = {
        "id": event.get("id", ""),
        "title": event.get("summary", "(no title)"),
        "start": start.get("dateTime") or start.get("date", ""),
        "end": end.get("dateTime") or end.get("date", ""),
        "link": event.get("htmlLink", ""),
    }

    private = event.get("extendedProperties", {}).get("private", {})
    if "work_item_id" in private:
        result["work_item_id"] = int(private["work_item_id"])

    return result


def _make_timed_field(moment: datetime) -> dict:
    """Build a Calendar API start/end timed-event object.

    The wall-clock time is sent without an offset together with the
    work-hours timezone, so the event shows up where the slot was planned.
    """
    return {
        "dateTime": moment.replace(tzinfo=None).isoformat(timespec="seconds"),
        "timeZone": get_settings().work_hours_timezone,
    }


# =============================================================================
# Operations
# =============================================================================

def verify_access(service=None) -> str:
    """Fetch the configured calendar and return its name.

    Used right after OAuth setup to prove the saved token works.
    """
    service = service or _get_calendar_service()
    calendar_id = get_settings().google_calendar_id
    calendar = _execute(service.calendars().get(calendarId=calendar_id), "read calendar")
    return calendar.get("summary", calendar_id)


def fetch_busy_intervals(
    time_min: datetime,
    time_max: datetime,
    service=None,
) -> list[BusyInterval]:
    """Busy periods of the configured calendar between two instants.

    Args:
        time_min: Start of the range (timezone-aware)
        time_max: End of the range (timezone-aware)
        service: Calendar service; built from the stored token if omitted

    Returns:
        Busy intervals in the order the API returned them
    """
    service = service or _get_calendar_service()
    calendar_id = get_settings().google_calendar_id
    body = {
        "timeMin": time_min.isoformat(),
        "timeMax": time_max.isoformat(),
        "items": [{"id": calendar_id}],
    }
    result = _execute(service.freebusy().query(body=body), "query free/busy")

    cal_data = result.get("calendars", {}).get(calendar_id, {})
    errors = cal_data.get("errors")
    if errors:
        reason = errors[0].get("reason", "unknown")
        raise RemoteServiceError(SERVICE_NAME, 400, f"free/busy unavailable ({reason})")
    return busy_from_events(cal_data.get("busy", []))


def create_focus_block(
    slot: Slot,
    work_item_id: int,
    title: str,
    service=None,
) -> dict[str, Any]:
    """Create a focus-block event for a work item in the given slot.

    The work item id is stored as a private extended property so the event
    can be matched back to its task later.

    Returns:
        Dict with the created event's id, title, start, end and link
    """
    service = service or _get_calendar_service()
    body: dict[str, Any] = {
        "summary": f"{FOCUS_BLOCK_PREFIX} {work_item_id} - {title}",
        "start": _make_timed_field(slot.start),
        "end": _make_timed_field(slot.end),
        "extendedProperties": {"private": {"work_item_id": str(work_item_id)}},
    }
    event = _execute(
        service.events().insert(calendarId=get_settings().google_calendar_id, body=body),
        "create focus block",
    )
    return _parse_event(event)
