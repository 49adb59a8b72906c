"""Tests for the project → task → confirm tracking workflow.

WHY: Slack delivers each click as an independent callback, possibly more
than once. The workflow must derive everything from stored selection
state, rebuild the whole view each time, and never leak an exception
into the Slack layer.

HOW: TrackingWorkflow is driven with a real TokenStore (FakeRedis) and a
real HarvestClient on FakeHarvest. Tests walk the state machine the way a
user would and inspect the returned View objects.

RULES:
- Views are compared structurally (blocks are plain dicts)
- Harvest failures are injected with FakeHarvest.fail_status
"""

from __future__ import annotations

import json

import pytest

from conftest import USER_ID, make_time_entry
from harvest_tracker.slack.messages import (
    ACTION_CONFIRM_START,
    ACTION_TIME_ENTRY_CONTINUE,
    ACTION_TIME_ENTRY_STOP,
    build_api_error_blocks,
    build_not_authenticated_blocks,
)
from harvest_tracker.store import (
    FIELD_LAST_TIME_ENTRY,
    FIELD_SELECTED_PROJECT,
    FIELD_SELECTED_TASK,
)
from harvest_tracker.workflow import InteractionState, TrackingWorkflow

ASSIGNMENTS_PATH = "/v2/users/me/project_assignments"


@pytest.fixture
def workflow(store, harvest_client):
    return TrackingWorkflow(store, harvest_client)


def _block(view, block_id):
    for block in view.blocks:
        if block.get("block_id") == block_id:
            return block
    return None


def _accessories(view, action_id):
    return [
        b["accessory"]["value"]
        for b in view.blocks
        if b.get("accessory", {}).get("action_id") == action_id
    ]


# ---------------------------------------------------------------------------
# Full flow
# ---------------------------------------------------------------------------


class TestTrackingFlow:
    def test_happy_path(self, workflow, harvest_api, logged_in_user):
        view = workflow.start_tracking(logged_in_user)
        assert view.state == InteractionState.PROJECT_SELECTION_PENDING
        assert _block(view, "task") is None
        assert workflow.state_for(logged_in_user) == InteractionState.PROJECT_SELECTION_PENDING

        view = workflow.project_select(logged_in_user, "11")
        assert view.state == InteractionState.TASK_SELECTION_PENDING
        assert workflow.state_for(logged_in_user) == InteractionState.TASK_SELECTION_PENDING
        project = _block(view, "project")["accessory"]
        assert project["initial_option"]["value"] == "11"
        task_options = _block(view, "task")["accessory"]["options"]
        assert [o["value"] for o in task_options] == ["21", "22"]
        assert _block(view, "confirm") is None

        view = workflow.task_select(logged_in_user, "22")
        assert view.state == InteractionState.CONFIRM_PENDING
        assert workflow.state_for(logged_in_user) == InteractionState.CONFIRM_PENDING
        confirm = _block(view, "confirm")
        assert confirm["elements"][0]["action_id"] == ACTION_CONFIRM_START

        view = workflow.confirm_start_tracking(logged_in_user)
        assert view.state == InteractionState.TIME_ENTRY_CREATED
        text = view.blocks[0]["text"]["text"]
        assert "Acme - Website" in text
        assert "Development" in text

        body = json.loads(harvest_api.requests_to("POST", "/v2/time_entries")[0].content)
        assert body["project_id"] == 11
        assert body["task_id"] == 22

    def test_selection_survives_confirm(self, workflow, harvest_api, logged_in_user):
        workflow.project_select(logged_in_user, "11")
        workflow.task_select(logged_in_user, "22")
        workflow.confirm_start_tracking(logged_in_user)

        assert workflow.state_for(logged_in_user) == InteractionState.CONFIRM_PENDING
        workflow.confirm_start_tracking(logged_in_user)
        assert len(harvest_api.requests_to("POST", "/v2/time_entries")) == 2

        workflow.start_tracking(logged_in_user)
        assert workflow.state_for(logged_in_user) == InteractionState.PROJECT_SELECTION_PENDING

    def test_created_entry_is_remembered(self, workflow, store, logged_in_user):
        workflow.project_select(logged_in_user, "12")
        workflow.task_select(logged_in_user, "24")
        view = workflow.confirm_start_tracking(logged_in_user)

        last = store.get_json(logged_in_user, FIELD_LAST_TIME_ENTRY)
        assert last == {"id": "901", "project_id": "12", "task_id": "24"}
        assert _accessories(view, ACTION_TIME_ENTRY_STOP) == []
        assert view.blocks[1]["elements"][0]["value"] == "901"

    def test_start_clears_previous_selection(self, workflow, store, logged_in_user):
        store.set(logged_in_user, FIELD_SELECTED_PROJECT, "11")
        store.set(logged_in_user, FIELD_SELECTED_TASK, "22")

        view = workflow.start_tracking(logged_in_user)

        assert view.state == InteractionState.PROJECT_SELECTION_PENDING
        assert store.get(logged_in_user, FIELD_SELECTED_PROJECT) is None
        assert store.get(logged_in_user, FIELD_SELECTED_TASK) is None

    def test_project_change_clears_task(self, workflow, store, logged_in_user):
        workflow.project_select(logged_in_user, "11")
        workflow.task_select(logged_in_user, "22")

        view = workflow.project_select(logged_in_user, "12")

        assert view.state == InteractionState.TASK_SELECTION_PENDING
        assert store.get(logged_in_user, FIELD_SELECTED_TASK) is None


# ---------------------------------------------------------------------------
# Edge cases
# ---------------------------------------------------------------------------


class TestEdgeCases:
    def test_task_before_project_is_ignored(self, workflow, store, logged_in_user):
        view = workflow.task_select(logged_in_user, "22")
        assert view.state == InteractionState.PROJECT_SELECTION_PENDING
        assert store.get(logged_in_user, FIELD_SELECTED_TASK) is None

    def test_rerender_is_identical(self, workflow, logged_in_user):
        """Rendering the same stored selection twice yields the same blocks."""
        workflow.project_select(logged_in_user, "11")
        workflow.task_select(logged_in_user, "21")

        first = workflow.render(logged_in_user)
        second = workflow.render(logged_in_user)

        assert first.blocks == second.blocks
        assert first.state == second.state == InteractionState.CONFIRM_PENDING

    def test_duplicate_callback_is_harmless(self, workflow, logged_in_user):
        first = workflow.project_select(logged_in_user, "11")
        second = workflow.project_select(logged_in_user, "11")
        assert first.blocks == second.blocks

    def test_render_fetches_once(self, workflow, harvest_api, logged_in_user):
        workflow.project_select(logged_in_user, "11")
        assert len(harvest_api.requests_to("GET", ASSIGNMENTS_PATH)) == 1

    def test_unknown_project_falls_back(self, workflow, logged_in_user):
        view = workflow.project_select(logged_in_user, "999")
        assert view.state == InteractionState.PROJECT_SELECTION_PENDING
        assert "initial_option" not in _block(view, "project")["accessory"]

    def test_unknown_task_is_not_confirmable(self, workflow, logged_in_user):
        workflow.project_select(logged_in_user, "11")
        view = workflow.task_select(logged_in_user, "999")
        assert view.state == InteractionState.TASK_SELECTION_PENDING
        assert _block(view, "confirm") is None

    def test_confirm_without_selection_rerenders(self, workflow, harvest_api, logged_in_user):
        view = workflow.confirm_start_tracking(logged_in_user)
        assert view.state == InteractionState.PROJECT_SELECTION_PENDING
        assert harvest_api.requests_to("POST", "/v2/time_entries") == []

    def test_confirm_with_stale_selection(self, workflow, store, harvest_api, logged_in_user):
        store.set(logged_in_user, FIELD_SELECTED_PROJECT, "11")
        store.set(logged_in_user, FIELD_SELECTED_TASK, "23")  # inactive task

        view = workflow.confirm_start_tracking(logged_in_user)

        assert view.state == InteractionState.TASK_SELECTION_PENDING
        assert harvest_api.requests_to("POST", "/v2/time_entries") == []

    def test_no_projects(self, workflow, harvest_api, logged_in_user):
        harvest_api.project_assignments = []
        view = workflow.start_tracking(logged_in_user)
        assert len(view.blocks) == 1
        assert "no active project assignments" in view.blocks[0]["text"]["text"]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    def test_not_logged_in(self, workflow):
        view = workflow.start_tracking(USER_ID)
        assert view.state == InteractionState.IDLE
        assert view.blocks == build_not_authenticated_blocks()

    def test_logout_then_status_prompts_login(self, workflow, oauth, logged_in_user):
        oauth.logout(logged_in_user)
        assert workflow.status(logged_in_user).blocks == build_not_authenticated_blocks()

    def test_api_error_view(self, workflow, harvest_api, logged_in_user):
        harvest_api.fail_status = 503
        for view in (
            workflow.start_tracking(logged_in_user),
            workflow.status(logged_in_user),
            workflow.project_list(logged_in_user),
            workflow.time_entry_stop(logged_in_user, "501"),
        ):
            assert view.state == InteractionState.IDLE
            assert view.blocks == build_api_error_blocks()


# ---------------------------------------------------------------------------
# Status, stop and continue
# ---------------------------------------------------------------------------


class TestStatus:
    def test_two_running_entries(self, workflow, harvest_api, logged_in_user):
        harvest_api.time_entries = [
            make_time_entry(601, True),
            make_time_entry(602, True, task={"id": 21, "name": "Design"}),
            make_time_entry(603, False),
        ]

        view = workflow.status(logged_in_user)

        assert _accessories(view, ACTION_TIME_ENTRY_STOP) == ["601", "602"]
        assert len(_accessories(view, ACTION_TIME_ENTRY_CONTINUE)) == 1
        assert "2 entries" in view.blocks[0]["text"]["text"]

    def test_capped_at_five(self, workflow, harvest_api, logged_in_user):
        harvest_api.time_entries = [make_time_entry(700 + i, False) for i in range(8)]

        view = workflow.status(logged_in_user)

        assert len(_accessories(view, ACTION_TIME_ENTRY_CONTINUE)) == 5
        assert harvest_api.requests[0].url.params["per_page"] == "5"

    def test_not_tracking(self, workflow, harvest_api, logged_in_user):
        harvest_api.time_entries = []
        view = workflow.status(logged_in_user)
        assert "not tracking" in view.blocks[0]["text"]["text"]

    def test_stop_returns_status(self, workflow, store, harvest_api, logged_in_user):
        store.set_json(logged_in_user, FIELD_LAST_TIME_ENTRY, {"id": "501"})

        view = workflow.time_entry_stop(logged_in_user, "501")

        assert view.state == InteractionState.IDLE
        assert _accessories(view, ACTION_TIME_ENTRY_STOP) == []
        assert store.get(logged_in_user, FIELD_LAST_TIME_ENTRY) is None

    def test_stop_keeps_other_marker(self, workflow, store, logged_in_user):
        store.set_json(logged_in_user, FIELD_LAST_TIME_ENTRY, {"id": "999"})
        workflow.time_entry_stop(logged_in_user, "501")
        assert store.get_json(logged_in_user, FIELD_LAST_TIME_ENTRY) == {"id": "999"}

    def test_continue_starts_new_entry(self, workflow, harvest_api, logged_in_user):
        view = workflow.time_entry_continue(logged_in_user, "24", "12")

        assert view.state == InteractionState.TIME_ENTRY_CREATED
        assert "Globex - Mobile App" in view.blocks[0]["text"]["text"]
        body = json.loads(harvest_api.requests_to("POST", "/v2/time_entries")[0].content)
        assert (body["project_id"], body["task_id"]) == (12, 24)

    def test_project_list(self, workflow, logged_in_user):
        view = workflow.project_list(logged_in_user)
        texts = [b["text"]["text"] for b in view.blocks]
        assert "*Acme - Website*\nDesign, Development" in texts
        assert not any("Legacy" in t for t in texts)
