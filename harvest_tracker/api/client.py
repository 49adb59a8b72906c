"""HTTP client for the Harvest v2 time-tracking API.

WHY: The bot needs to list a user's project and task assignments and
create, stop, and list time entries on their behalf. This module hides
the HTTP details (auth headers, account id, JSON decoding, error
wrapping) behind a small client class so the workflow code only deals in
typed dataclasses.

HOW: Uses a synchronous httpx.Client. Slack bolt listeners and
APScheduler jobs both run in worker threads, so blocking calls are fine.
Every request reads the caller's credential and scope from TokenStore and
attaches "Authorization: Bearer ..." and "Harvest-Account-Id" headers.

RULES:
- Missing credential raises NotAuthenticatedError (an AuthError)
- Transport errors, non-2xx responses, and JSON decode failures raise ApiError
- ApiError is never fatal: callers turn it into a user-visible message
- The assignments cache is single-use: list_task_assignments() deletes it
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Dict, List, Optional

import httpx

from harvest_tracker.api.models import ProjectAssignment, TaskAssignment, TimeEntry
from harvest_tracker.api.oauth import NotAuthenticatedError
from harvest_tracker.config import HARVEST_API_URL, HARVEST_USER_AGENT, STATUS_PAGE_SIZE
from harvest_tracker.store import FIELD_ASSIGNMENTS, FIELD_AUTH, FIELD_SCOPE, TokenStore

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Raised when a Harvest API call cannot be completed.

    WHY: Callers need a typed exception to distinguish "Harvest did not
    answer properly" from authentication problems.

    HOW: Wraps the HTTP status code (None for transport/decode failures)
    and a short message.

    RULES:
    - status_code is None when no HTTP response was received or parsed
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is None:
            super().__init__("Harvest API request failed: {}".format(message))
        else:
            super().__init__(
                "Harvest API error {}: {}".format(status_code, message)
            )


def account_id_from_scope(scope: Optional[str]) -> Optional[str]:
    """Extract the Harvest account id from an OAuth scope string.

    RULES:
    - Scope looks like "harvest:123456" (possibly space-separated with others)
    - Returns the first harvest account id, or None
    """
    if not scope:
        return None
    for part in scope.split():
        if part.startswith("harvest:"):
            account_id = part.split(":", 1)[1]
            if account_id and account_id != "ALL":
                return account_id
    return None


class HarvestClient:
    """Authenticated per-user client for the Harvest v2 REST API.

    WHY: Each Slack user acts with their own token and account, so
    authentication is resolved per call rather than per client.

    HOW: get/post/patch resolve headers for the user, perform the call on
    the shared httpx.Client, and decode JSON. Domain helpers build on them.

    RULES:
    - base_url defaults to HARVEST_API_URL from config
    - http may be injected (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        store: TokenStore,
        http: Optional[httpx.Client] = None,
        base_url: Optional[str] = None,
    ) -> None:
        self._store = store
        self._base_url = (base_url or HARVEST_API_URL).rstrip("/")
        self._http = http or httpx.Client(timeout=30.0)

    # ------------------------------------------------------------------
    # Low-level requests
    # ------------------------------------------------------------------

    def _headers(self, user_id: str) -> Dict[str, str]:
        auth = self._store.get_json(user_id, FIELD_AUTH)
        if not auth or not auth.get("access_token"):
            raise NotAuthenticatedError(user_id)

        headers = {
            "Authorization": "Bearer {}".format(auth["access_token"]),
            "User-Agent": HARVEST_USER_AGENT,
            "Accept": "application/json",
        }
        scope = self._store.get(user_id, FIELD_SCOPE) or auth.get("scope")
        account_id = account_id_from_scope(scope)
        if account_id:
            headers["Harvest-Account-Id"] = account_id
        return headers

    def _request(
        self,
        method: str,
        path: str,
        user_id: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = self._headers(user_id)
        url = "{}{}".format(self._base_url, path)
        try:
            resp = self._http.request(
                method, url, headers=headers, params=params, json=body
            )
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed for %s: %s", method, path, user_id, exc)
            raise ApiError(str(exc)) from exc

        if resp.status_code >= 400:
            logger.warning(
                "%s %s returned %d for %s", method, path, resp.status_code, user_id
            )
            raise ApiError(resp.text, status_code=resp.status_code)

        try:
            return resp.json()
        except ValueError as exc:
            raise ApiError("Invalid JSON in response to {}".format(path)) from exc

    def get(
        self, path: str, user_id: str, params: Optional[Dict[str, Any]] = None
    ) -> Any:
        return self._request("GET", path, user_id, params=params)

    def post(self, path: str, user_id: str, body: Dict[str, Any]) -> Any:
        return self._request("POST", path, user_id, body=body)

    def patch(self, path: str, user_id: str) -> Any:
        return self._request("PATCH", path, user_id)

    # ------------------------------------------------------------------
    # Assignments
    # ------------------------------------------------------------------

    def list_project_assignments(self, user_id: str) -> List[ProjectAssignment]:
        """Fetch the user's active project assignments and refresh the cache."""
        data = self.get("/v2/users/me/project_assignments", user_id)
        raw = data.get("project_assignments", []) if isinstance(data, dict) else []
        self._store.set_json(user_id, FIELD_ASSIGNMENTS, raw)
        return [
            a for a in (ProjectAssignment.from_dict(item) for item in raw)
            if a.is_active
        ]

    def find_assignment(
        self, user_id: str, project_id: str
    ) -> Optional[ProjectAssignment]:
        for assignment in self._cached_assignments(user_id):
            if assignment.project_id == project_id:
                return assignment
        return None

    def list_task_assignments(
        self, user_id: str, project_id: str
    ) -> List[TaskAssignment]:
        """Return the active tasks for one project.

        RULES:
        - Reads the assignments cache, fetching remotely on a miss
        - Deletes the cache afterwards, so the next read fetches again
        """
        assignment = self.find_assignment(user_id, project_id)
        self._store.delete(user_id, FIELD_ASSIGNMENTS)
        if assignment is None:
            return []
        return [t for t in assignment.task_assignments if t.is_active]

    def _cached_assignments(self, user_id: str) -> List[ProjectAssignment]:
        raw = self._store.get_json(user_id, FIELD_ASSIGNMENTS)
        if raw is None:
            return self.list_project_assignments(user_id)
        return [
            a for a in (ProjectAssignment.from_dict(item) for item in raw)
            if a.is_active
        ]

    # ------------------------------------------------------------------
    # Time entries
    # ------------------------------------------------------------------

    def create_time_entry(
        self,
        user_id: str,
        project_id: str,
        task_id: str,
        spent_date: Optional[datetime.date] = None,
    ) -> TimeEntry:
        """Start a running time entry for today on the given project/task."""
        day = spent_date or datetime.date.today()
        data = self.post(
            "/v2/time_entries",
            user_id,
            {
                "project_id": int(project_id),
                "task_id": int(task_id),
                "spent_date": day.isoformat(),
            },
        )
        entry = TimeEntry.from_dict(data)
        logger.info("Created time entry %s for %s", entry.id, user_id)
        return entry

    def stop_time_entry(self, user_id: str, entry_id: str) -> TimeEntry:
        data = self.patch("/v2/time_entries/{}/stop".format(entry_id), user_id)
        logger.info("Stopped time entry %s for %s", entry_id, user_id)
        return TimeEntry.from_dict(data)

    def list_time_entries(
        self,
        user_id: str,
        running_only: bool = False,
        page_size: int = STATUS_PAGE_SIZE,
    ) -> List[TimeEntry]:
        """List the user's most recent time entries, newest first."""
        params = {"per_page": page_size}  # type: Dict[str, Any]
        if running_only:
            params["is_running"] = "true"
        data = self.get("/v2/time_entries", user_id, params=params)
        raw = data.get("time_entries", []) if isinstance(data, dict) else []
        return [TimeEntry.from_dict(item) for item in raw[:page_size]]

    def has_running_entry(self, user_id: str) -> bool:
        return bool(self.list_time_entries(user_id, running_only=True, page_size=1))
