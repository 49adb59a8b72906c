"""Shared test fixtures for the harvest_tracker test suite.

WHY: Almost every module reads or writes per-user state in Redis and
talks to one of the two Harvest services. Centralizing an in-memory Redis
double and fake Harvest endpoints keeps the tests free of network access
and lets each module test drive the real collaborators end to end.

HOW: FakeRedis implements the handful of redis-py calls TokenStore uses.
FakeHarvest and FakeIdService are httpx.MockTransport handlers that answer
like the Harvest v2 API and the Harvest id service, recording every
request so tests can assert on what was sent.

RULES:
- Sample payloads follow the Harvest v2 JSON shapes
- Every fixture builds fresh objects (no shared mutable state)
- The clock is fixed; tests move it explicitly
"""

from __future__ import annotations

import copy
import datetime
import fnmatch
import json
import re
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl

import httpx
import pytest

from harvest_tracker.api.client import HarvestClient
from harvest_tracker.api.models import Credential
from harvest_tracker.api.oauth import OAuthSessionManager
from harvest_tracker.store import FIELD_AUTH, FIELD_SCOPE, TokenStore


USER_ID = "U1"
SCOPE = "harvest:123456"
NOW_TS = 1_792_000_000.0
TOKEN_LIFETIME_S = 14 * 24 * 3600

# Wednesday 2026-10-14 10:00 UTC
WEDNESDAY_10AM = datetime.datetime(2026, 10, 14, 10, 0, tzinfo=datetime.timezone.utc)


# ---------------------------------------------------------------------------
# Sample Harvest payloads
# ---------------------------------------------------------------------------

PROJECT_ASSIGNMENTS: List[Dict[str, Any]] = [
    {
        "id": 1001,
        "is_active": True,
        "project": {"id": 11, "name": "Website", "code": "WEB"},
        "client": {"id": 5, "name": "Acme"},
        "task_assignments": [
            {"id": 2001, "is_active": True, "task": {"id": 21, "name": "Design"}},
            {"id": 2002, "is_active": True, "task": {"id": 22, "name": "Development"}},
            {"id": 2003, "is_active": False, "task": {"id": 23, "name": "Archived"}},
        ],
    },
    {
        "id": 1002,
        "is_active": True,
        "project": {"id": 12, "name": "Mobile App", "code": "APP"},
        "client": {"id": 6, "name": "Globex"},
        "task_assignments": [
            {"id": 2004, "is_active": True, "task": {"id": 24, "name": "Testing"}},
        ],
    },
    {
        "id": 1003,
        "is_active": False,
        "project": {"id": 13, "name": "Legacy", "code": "OLD"},
        "client": {"id": 5, "name": "Acme"},
        "task_assignments": [],
    },
]


def make_time_entry(
    entry_id: int,
    is_running: bool,
    project: Optional[Dict[str, Any]] = None,
    task: Optional[Dict[str, Any]] = None,
    client: Optional[Dict[str, Any]] = None,
    hours: float = 1.5,
    spent_date: str = "2026-10-14",
) -> Dict[str, Any]:
    return {
        "id": entry_id,
        "spent_date": spent_date,
        "hours": hours,
        "is_running": is_running,
        "notes": None,
        "project": project or {"id": 11, "name": "Website"},
        "task": task or {"id": 22, "name": "Development"},
        "client": client or {"id": 5, "name": "Acme"},
    }


TIME_ENTRIES: List[Dict[str, Any]] = [
    make_time_entry(501, True, hours=1.25),
    make_time_entry(
        502, False,
        project={"id": 12, "name": "Mobile App"},
        task={"id": 24, "name": "Testing"},
        client={"id": 6, "name": "Globex"},
        hours=2.5,
    ),
    make_time_entry(503, False, task={"id": 21, "name": "Design"}, hours=0.25),
]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeRedis:
    """In-memory stand-in for a redis.Redis client with decode_responses=True."""

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.expiry: Dict[str, int] = {}

    def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        self.data[key] = str(value)
        if ex is not None:
            self.expiry[key] = ex
        else:
            self.expiry.pop(key, None)
        return True

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                removed += 1
            self.expiry.pop(key, None)
        return removed

    def scan_iter(self, match: str = "*"):
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    def ping(self) -> bool:
        return True


class FakeHarvest:
    """httpx.MockTransport handler answering like the Harvest v2 API."""

    def __init__(self) -> None:
        self.project_assignments = copy.deepcopy(PROJECT_ASSIGNMENTS)
        self.time_entries = copy.deepcopy(TIME_ENTRIES)
        self.requests: List[httpx.Request] = []
        self.fail_status: Optional[int] = None
        self._next_id = 900

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status is not None:
            return httpx.Response(self.fail_status, text="Internal Server Error")

        method = request.method
        path = request.url.path

        if method == "GET" and path == "/v2/users/me/project_assignments":
            return httpx.Response(200, json={"project_assignments": self.project_assignments})

        if method == "GET" and path == "/v2/time_entries":
            entries = self.time_entries
            if request.url.params.get("is_running") == "true":
                entries = [e for e in entries if e["is_running"]]
            per_page = int(request.url.params.get("per_page", "100"))
            return httpx.Response(200, json={"time_entries": entries[:per_page]})

        if method == "POST" and path == "/v2/time_entries":
            body = json.loads(request.content)
            entry = self._new_entry(body)
            self.time_entries.insert(0, entry)
            return httpx.Response(201, json=entry)

        match = re.match(r"^/v2/time_entries/(\d+)/stop$", path)
        if method == "PATCH" and match:
            for entry in self.time_entries:
                if str(entry["id"]) == match.group(1):
                    entry["is_running"] = False
                    return httpx.Response(200, json=entry)

        return httpx.Response(404, json={"status": 404, "error": "Not Found"})

    def _new_entry(self, body: Dict[str, Any]) -> Dict[str, Any]:
        self._next_id += 1
        project: Dict[str, Any] = {"id": body["project_id"], "name": ""}
        task: Dict[str, Any] = {"id": body["task_id"], "name": ""}
        client: Dict[str, Any] = {"id": None, "name": ""}
        for assignment in self.project_assignments:
            if assignment["project"]["id"] == body["project_id"]:
                project = dict(assignment["project"])
                client = dict(assignment["client"])
                for task_assignment in assignment["task_assignments"]:
                    if task_assignment["task"]["id"] == body["task_id"]:
                        task = dict(task_assignment["task"])
        entry = make_time_entry(
            self._next_id, True, project=project, task=task, client=client,
            hours=0.0, spent_date=body["spent_date"],
        )
        return entry

    def requests_to(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]


class FakeIdService:
    """httpx.MockTransport handler for the Harvest OAuth token endpoint."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.error: Optional[str] = None
        self.unreachable = False
        self.issued = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.unreachable:
            raise httpx.ConnectError("temporary DNS failure", request=request)
        if request.url.path != "/api/v2/oauth2/token":
            return httpx.Response(404, json={"error": "not_found"})
        if self.error:
            return httpx.Response(
                400, json={"error": self.error, "error_description": "Rejected"}
            )
        self.issued += 1
        return httpx.Response(200, json={
            "access_token": "access-{}".format(self.issued),
            "refresh_token": "refresh-{}".format(self.issued),
            "token_type": "bearer",
            "expires_in": TOKEN_LIFETIME_S,
        })

    def forms(self) -> List[Dict[str, str]]:
        return [dict(parse_qsl(r.content.decode())) for r in self.requests]


class FakeClock:
    """Callable epoch clock that tests can move forward."""

    def __init__(self, now: float = NOW_TS) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def state_from_url(url: str) -> str:
    """Return the raw ?state value from an authorization URL."""
    return httpx.URL(url).params["state"]


def login(oauth: OAuthSessionManager, user_id: str = USER_ID, scope: str = SCOPE) -> str:
    """Run the full login flow against the fake id service."""
    url = oauth.begin_login(user_id)
    return oauth.complete_login(state_from_url(url), "auth-code", scope)


def store_credential(
    store: TokenStore,
    user_id: str = USER_ID,
    logged_in_at: float = NOW_TS,
    expires_in: int = TOKEN_LIFETIME_S,
) -> Credential:
    """Write a credential directly, as if the user had logged in."""
    credential = Credential(
        access_token="stored-access",
        refresh_token="stored-refresh",
        expires_in=expires_in,
        logged_in_at=logged_in_at,
        scope=SCOPE,
    )
    store.set_json(user_id, FIELD_AUTH, credential.to_dict())
    store.set(user_id, FIELD_SCOPE, SCOPE)
    return credential


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return TokenStore(fake_redis)


@pytest.fixture
def harvest_api():
    return FakeHarvest()


@pytest.fixture
def id_service():
    return FakeIdService()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oauth(store, id_service, clock):
    http = httpx.Client(transport=httpx.MockTransport(id_service))
    yield OAuthSessionManager(
        store, "client-id", "client-secret", http=http, clock=clock
    )
    http.close()


@pytest.fixture
def harvest_client(store, harvest_api):
    http = httpx.Client(transport=httpx.MockTransport(harvest_api))
    yield HarvestClient(store, http=http)
    http.close()


@pytest.fixture
def logged_in_user(store):
    """A user with a valid stored credential and scope."""
    store_credential(store)
    return USER_ID
