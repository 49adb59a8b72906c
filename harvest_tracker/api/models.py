"""Harvest API request and response dataclasses.

WHY: The Harvest v2 API returns nested JSON objects for project
assignments, task assignments, and time entries, and the OAuth token
endpoint returns a flat token payload. Typed dataclasses make these
structures explicit and keep dict-walking out of the workflow code.

HOW: Each dataclass maps to one Harvest JSON object. Factory methods
(from_dict) handle parsing from raw API responses; Credential also
serializes back to the dict stored in Redis.

RULES:
- Ids are kept as strings (Slack action values are strings)
- Nested "project"/"client"/"task" objects are flattened to id + name
- Optional fields default to None or empty values
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def _ref(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    return data.get(key) or {}


@dataclass
class Credential:
    """OAuth token pair stored per user under "<user_id>:auth".

    RULES:
    - expires_in is the token lifetime in seconds as reported by Harvest
    - logged_in_at is the epoch time the token was issued (login or refresh)
    """

    access_token: str
    refresh_token: str
    expires_in: int
    logged_in_at: float
    scope: Optional[str] = None
    token_type: str = "bearer"

    @property
    def expires_at(self) -> float:
        return self.logged_in_at + self.expires_in

    def seconds_remaining(self, now: Optional[float] = None) -> float:
        return self.expires_at - (time.time() if now is None else now)

    @classmethod
    def from_token_response(
        cls,
        data: Dict[str, Any],
        logged_in_at: float,
        scope: Optional[str] = None,
    ) -> Credential:
        """Build a Credential from the OAuth token endpoint JSON."""
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_in=int(data.get("expires_in", 0)),
            logged_in_at=logged_in_at,
            scope=data.get("scope") or scope,
            token_type=data.get("token_type", "bearer"),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Credential:
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_in=int(data.get("expires_in", 0)),
            logged_in_at=float(data.get("logged_in_at", 0)),
            scope=data.get("scope"),
            token_type=data.get("token_type", "bearer"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "logged_in_at": self.logged_in_at,
            "scope": self.scope,
            "token_type": self.token_type,
        }


@dataclass
class TaskAssignment:
    """A task the user may log time against within one project."""

    id: str
    task_id: str
    task_name: str
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TaskAssignment:
        task = _ref(data, "task")
        return cls(
            id=str(data.get("id", "")),
            task_id=str(task.get("id", "")),
            task_name=task.get("name", ""),
            is_active=data.get("is_active", True),
        )


@dataclass
class ProjectAssignment:
    """A project the user is assigned to, with its client and tasks.

    WHY: GET /v2/users/me/project_assignments is the single source for
    both the project dropdown and the task dropdown.
    """

    id: str
    project_id: str
    project_name: str
    project_code: Optional[str] = None
    client_id: Optional[str] = None
    client_name: str = ""
    is_active: bool = True
    task_assignments: List[TaskAssignment] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ProjectAssignment:
        project = _ref(data, "project")
        client = _ref(data, "client")
        client_id = client.get("id")
        return cls(
            id=str(data.get("id", "")),
            project_id=str(project.get("id", "")),
            project_name=project.get("name", ""),
            project_code=project.get("code"),
            client_id=str(client_id) if client_id is not None else None,
            client_name=client.get("name", ""),
            is_active=data.get("is_active", True),
            task_assignments=[
                TaskAssignment.from_dict(t) for t in data.get("task_assignments", [])
            ],
        )

    def find_task(self, task_id: str) -> Optional[TaskAssignment]:
        for assignment in self.task_assignments:
            if assignment.task_id == task_id:
                return assignment
        return None


@dataclass
class TimeEntry:
    """A Harvest time entry, running or stopped."""

    id: str
    spent_date: str
    hours: float
    is_running: bool
    project_id: str
    project_name: str
    task_id: str
    task_name: str
    client_name: str = ""
    notes: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> TimeEntry:
        project = _ref(data, "project")
        task = _ref(data, "task")
        client = _ref(data, "client")
        return cls(
            id=str(data.get("id", "")),
            spent_date=data.get("spent_date", ""),
            hours=float(data.get("hours") or 0.0),
            is_running=bool(data.get("is_running", False)),
            project_id=str(project.get("id", "")),
            project_name=project.get("name", ""),
            task_id=str(task.get("id", "")),
            task_name=task.get("name", ""),
            client_name=client.get("name", ""),
            notes=data.get("notes"),
        )
