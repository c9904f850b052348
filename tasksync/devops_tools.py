"""
Azure DevOps work-item client for tasksync.

Reads work items and applies JSON-Patch updates over the REST API (v7.0).
Updates can be guarded by the revision number the caller last saw, so a
concurrent edit made in the web UI is reported instead of overwritten.
"""

import json
import logging
from typing import Any

import httpx
from pydantic import BaseModel, Field

from .errors import RemoteServiceError, RevisionConflict

logger = logging.getLogger(__name__)

API_VERSION = "7.0"
JSON_PATCH = "application/json-patch+json"


# =============================================================================
# Models
# =============================================================================

class WorkItemRelation(BaseModel):
    rel: str
    url: str
    attributes: dict[str, Any] | None = None

    @property
    def target_id(self) -> str:
        return self.url.rstrip("/").rsplit("/", 1)[-1]


class WorkItem(BaseModel):
    """A work item as returned by the REST API.

    `rev` increases on every saved change and is what update guards compare.
    """

    id: int
    rev: int
    fields: dict[str, Any] = Field(default_factory=dict)
    relations: list[WorkItemRelation] | None = None
    url: str = ""

    @property
    def title(self) -> str | None:
        return self.fields.get("System.Title")

    @property
    def state(self) -> str | None:
        return self.fields.get("System.State")

    @property
    def work_item_type(self) -> str | None:
        return self.fields.get("System.WorkItemType")

    @property
    def assigned_to(self) -> str | None:
        value = self.fields.get("System.AssignedTo")
        if isinstance(value, dict):
            return value.get("displayName")
        return value

    @property
    def description(self) -> str | None:
        return self.fields.get("System.Description")

    @property
    def tags(self) -> list[str]:
        raw = self.fields.get("System.Tags") or ""
        return [t.strip() for t in raw.split(";") if t.strip()]


def field_patch(field: str, value: Any) -> dict[str, Any]:
    """One JSON-Patch operation setting a work-item field."""
    return {"op": "add", "path": f"/fields/{field}", "value": value}


# =============================================================================
# Client
# =============================================================================

class DevOpsClient:
    """Thin synchronous client for the work-item endpoints.

    Args:
        pat: Personal access token (sent as Basic auth with an empty user)
        organization: DevOps organization name
        project: Project name
        base_url: Overrides https://dev.azure.com/{organization}
        transport: Custom httpx transport, e.g. httpx.MockTransport in tests
    """

    def __init__(
        self,
        pat: str,
        organization: str,
        project: str,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
        timeout: float = 15.0,
    ):
        self.base_url = (base_url or f"https://dev.azure.com/{organization}").rstrip("/")
        self.project = project
        self._client = httpx.Client(
            base_url=self.base_url,
            auth=("", pat),
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "DevOpsClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _path(self, resource: str) -> str:
        return f"/{self.project}/_apis/wit/{resource}"

    def _request(
        self, method: str, resource: str, params: dict[str, str] | None = None, **kwargs: Any
    ) -> httpx.Response:
        query = {"api-version": API_VERSION, **(params or {})}
        try:
            return self._client.request(method, self._path(resource), params=query, **kwargs)
        except httpx.TransportError as e:
            raise RemoteServiceError("DevOps", None, f"{e} ({self.base_url})") from e

    @staticmethod
    def _check(response: httpx.Response) -> None:
        if not response.is_success:
            raise RemoteServiceError("DevOps", response.status_code, response.text[:200])

    def get_work_item(self, work_item_id: int, with_relations: bool = False) -> WorkItem:
        params = {"$expand": "relations"} if with_relations else None
        response = self._request("GET", f"workitems/{work_item_id}", params=params)
        self._check(response)
        return WorkItem.model_validate(response.json())

    def get_work_item_type_states(self, type_name: str) -> list[str]:
        """Names of the states a work-item type can be moved to."""
        response = self._request("GET", f"workitemtypes/{type_name}/states")
        self._check(response)
        return [s["name"] for s in response.json().get("value", [])]

    def _patch(self, work_item_id: int, ops: list[dict[str, Any]]) -> httpx.Response:
        return self._request(
            "PATCH",
            f"workitems/{work_item_id}",
            content=json.dumps(ops),
            headers={"Content-Type": JSON_PATCH},
        )

    def update_work_item(self, work_item_id: int, ops: list[dict[str, Any]]) -> WorkItem:
        """Apply a patch unconditionally (last write wins)."""
        response = self._patch(work_item_id, ops)
        self._check(response)
        return WorkItem.model_validate(response.json())

    def update_work_item_with_rev(
        self,
        work_item_id: int,
        ops: list[dict[str, Any]],
        expected_rev: int | None = None,
    ) -> WorkItem:
        """Apply a patch only if the work item is still at `expected_rev`.

        The current revision is fetched first and a mismatch fails before
        anything is sent. The patch itself carries a JSON-Patch "test" on
        /rev, so the server also rejects a change that slips in between the
        check and the write. Without `expected_rev` this is a plain update.

        Raises:
            RevisionConflict: If the work item is at a different revision.
            RemoteServiceError: On any other API failure.
        """
        if expected_rev is None:
            return self.update_work_item(work_item_id, ops)

        current = self.get_work_item(work_item_id)
        if current.rev != expected_rev:
            logger.info(
                "Work item %s is at rev %s, expected %s; not sending patch",
                work_item_id, current.rev, expected_rev,
            )
            raise RevisionConflict(work_item_id, expected_rev, current.rev)

        guarded = [{"op": "test", "path": "/rev", "value": expected_rev}, *ops]
        response = self._patch(work_item_id, guarded)
        if self._rejected_precondition(response):
            actual = self.get_work_item(work_item_id).rev
            raise RevisionConflict(work_item_id, expected_rev, actual)
        self._check(response)
        return WorkItem.model_validate(response.json())

    @staticmethod
    def _rejected_precondition(response: httpx.Response) -> bool:
        if response.status_code in (409, 412):
            return True
        return response.status_code == 400 and "/rev" in response.text
