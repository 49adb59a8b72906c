"""Project → task → confirm tracking workflow driven by Slack callbacks.

WHY: Starting a timer takes several clicks (pick a project, pick a task,
confirm), and Slack delivers each click as an independent callback with
at-least-once semantics. The workflow must therefore be a state machine
whose only memory is what is stored in Redis.

HOW: TrackingWorkflow exposes one method per callback event. Each method
updates the persisted InteractionSelection (selected_project /
selected_task) and then recomputes the whole view from stored state and
fresh Harvest data. The returned View carries the resulting state, the
Block Kit blocks, and fallback text.

    IDLE -> PROJECT_SELECTION_PENDING -> TASK_SELECTION_PENDING
         -> CONFIRM_PENDING -> TIME_ENTRY_CREATED

RULES:
- Views are never patched incrementally: render() always rebuilds all blocks
- Rendering the same stored selection twice yields identical blocks
- task_select without a selected project is ignored
- NotAuthenticatedError / AuthError -> login prompt view, ApiError -> error view
- No exception ever escapes to the Slack layer from an event method
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from harvest_tracker.api.client import ApiError, HarvestClient
from harvest_tracker.api.oauth import AuthError
from harvest_tracker.config import STATUS_PAGE_SIZE
from harvest_tracker.slack.messages import (
    build_api_error_blocks,
    build_entry_started_blocks,
    build_not_authenticated_blocks,
    build_project_list_blocks,
    build_status_blocks,
    build_tracking_blocks,
)
from harvest_tracker.store import (
    FIELD_LAST_TIME_ENTRY,
    FIELD_SELECTED_PROJECT,
    FIELD_SELECTED_TASK,
    TokenStore,
)

logger = logging.getLogger(__name__)


class InteractionState(str, enum.Enum):
    """States of the tracking workflow for one user."""

    IDLE = "idle"
    PROJECT_SELECTION_PENDING = "project_selection_pending"
    TASK_SELECTION_PENDING = "task_selection_pending"
    CONFIRM_PENDING = "confirm_pending"
    TIME_ENTRY_CREATED = "time_entry_created"


@dataclass
class View:
    """A rendered message: resulting state, Block Kit blocks, fallback text."""

    state: InteractionState
    blocks: List[Dict[str, Any]]
    text: str


def _selection_state(project_id: Optional[str], task_id: Optional[str]) -> InteractionState:
    if project_id and task_id:
        return InteractionState.CONFIRM_PENDING
    if project_id:
        return InteractionState.TASK_SELECTION_PENDING
    return InteractionState.PROJECT_SELECTION_PENDING


class TrackingWorkflow:
    """Stateless event handlers for the time-tracking workflow.

    WHY: Keeping the workflow free of Slack objects makes every transition
    testable with a store and a mocked Harvest client.

    RULES:
    - Reads/writes only through TokenStore
    - Harvest access only through HarvestClient
    """

    def __init__(self, store: TokenStore, client: HarvestClient) -> None:
        self._store = store
        self._client = client

    # ------------------------------------------------------------------
    # Error boundary
    # ------------------------------------------------------------------

    def _guard(self, user_id: str, event: str, fn: Callable[[], View]) -> View:
        try:
            return fn()
        except AuthError:
            logger.info("%s for %s: not authenticated", event, user_id)
            return View(
                InteractionState.IDLE,
                build_not_authenticated_blocks(),
                "You're not logged in to Harvest",
            )
        except ApiError:
            logger.exception("%s for %s: Harvest request failed", event, user_id)
            return View(
                InteractionState.IDLE,
                build_api_error_blocks(),
                "Couldn't reach Harvest",
            )

    # ------------------------------------------------------------------
    # Selection state
    # ------------------------------------------------------------------

    def selection(self, user_id: str) -> Dict[str, Optional[str]]:
        return {
            "project_id": self._store.get(user_id, FIELD_SELECTED_PROJECT),
            "task_id": self._store.get(user_id, FIELD_SELECTED_TASK),
        }

    def state_for(self, user_id: str) -> InteractionState:
        """Derive the selection state from stored data alone."""
        selected = self.selection(user_id)
        return _selection_state(selected["project_id"], selected["task_id"])

    def render(self, user_id: str) -> View:
        """Rebuild the full selection view from persisted state."""
        return self._guard(user_id, "render", lambda: self._render(user_id))

    def _render(self, user_id: str) -> View:
        selected = self.selection(user_id)
        project_id = selected["project_id"]
        task_id = selected["task_id"]

        projects = self._client.list_project_assignments(user_id)
        if project_id and not any(p.project_id == project_id for p in projects):
            project_id = None

        tasks = None
        if project_id:
            tasks = self._client.list_task_assignments(user_id, project_id)
        if task_id and not any(t.task_id == task_id for t in tasks or []):
            task_id = None

        blocks = build_tracking_blocks(projects, project_id, tasks, task_id)
        return View(_selection_state(project_id, task_id), blocks, "Start tracking time")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def start_tracking(self, user_id: str) -> View:
        self._store.delete(user_id, FIELD_SELECTED_PROJECT, FIELD_SELECTED_TASK)
        logger.debug("Started tracking flow for %s", user_id)
        return self.render(user_id)

    def project_select(self, user_id: str, project_id: str) -> View:
        self._store.set(user_id, FIELD_SELECTED_PROJECT, project_id)
        self._store.delete(user_id, FIELD_SELECTED_TASK)
        return self.render(user_id)

    def task_select(self, user_id: str, task_id: str) -> View:
        if not self._store.get(user_id, FIELD_SELECTED_PROJECT):
            logger.info("Ignoring task selection for %s without a project", user_id)
        else:
            self._store.set(user_id, FIELD_SELECTED_TASK, task_id)
        return self.render(user_id)

    def confirm_start_tracking(self, user_id: str) -> View:
        return self._guard(user_id, "confirm", lambda: self._confirm(user_id))

    def _confirm(self, user_id: str) -> View:
        selected = self.selection(user_id)
        project_id = selected["project_id"]
        task_id = selected["task_id"]
        if not project_id or not task_id:
            return self._render(user_id)

        assignment = self._client.find_assignment(user_id, project_id)
        task = assignment.find_task(task_id) if assignment else None
        if assignment is None or task is None or not task.is_active:
            logger.info("Selection for %s no longer matches an assignment", user_id)
            return self._render(user_id)

        entry = self._client.create_time_entry(user_id, project_id, task_id)
        self._remember_entry(user_id, entry.id, project_id, task_id)
        blocks = build_entry_started_blocks(
            entry.client_name or assignment.client_name,
            entry.project_name or assignment.project_name,
            entry.task_name or task.task_name,
            entry.id,
        )
        return View(InteractionState.TIME_ENTRY_CREATED, blocks, "Timer started")

    def time_entry_stop(self, user_id: str, entry_id: str) -> View:
        def stop() -> View:
            self._client.stop_time_entry(user_id, entry_id)
            last = self._store.get_json(user_id, FIELD_LAST_TIME_ENTRY) or {}
            if last.get("id") == entry_id:
                self._store.delete(user_id, FIELD_LAST_TIME_ENTRY)
            return self._status(user_id)

        return self._guard(user_id, "stop", stop)

    def time_entry_continue(self, user_id: str, task_id: str, project_id: str) -> View:
        def restart() -> View:
            entry = self._client.create_time_entry(user_id, project_id, task_id)
            self._remember_entry(user_id, entry.id, project_id, task_id)
            blocks = build_entry_started_blocks(
                entry.client_name, entry.project_name, entry.task_name, entry.id
            )
            return View(InteractionState.TIME_ENTRY_CREATED, blocks, "Timer started")

        return self._guard(user_id, "continue", restart)

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    def status(self, user_id: str) -> View:
        return self._guard(user_id, "status", lambda: self._status(user_id))

    def _status(self, user_id: str) -> View:
        entries = self._client.list_time_entries(user_id, page_size=STATUS_PAGE_SIZE)
        return View(InteractionState.IDLE, build_status_blocks(entries), "Your time tracking status")

    def project_list(self, user_id: str) -> View:
        def listing() -> View:
            projects = self._client.list_project_assignments(user_id)
            return View(InteractionState.IDLE, build_project_list_blocks(projects), "Your projects")

        return self._guard(user_id, "project list", listing)

    def _remember_entry(
        self, user_id: str, entry_id: str, project_id: str, task_id: str
    ) -> None:
        self._store.set_json(
            user_id,
            FIELD_LAST_TIME_ENTRY,
            {"id": entry_id, "project_id": project_id, "task_id": task_id},
        )
