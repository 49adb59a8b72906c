"""Slack bot: Socket Mode command handlers, Block Kit actions, and entry point.

WHY: Users interact with Harvest entirely from Slack: they log in, pick
projects and tasks, start and stop timers, and configure reminders. This
module is the glue between Slack events and the tracking services: it
parses commands and action payloads, calls the workflow / OAuth /
reminder components, and sends or edits messages.

HOW: Uses slack-bolt with Socket Mode (no public URL needed for Slack
events). TrackerBot holds every collaborator and registers its bound
methods as bolt listeners. Text commands ("harvest status", ...) answer
in a DM; button and dropdown actions edit the message they came from.
The OAuth redirect endpoint (FastAPI) runs in a background thread of the
same process so its "authorized" event can reach the bot directly.

RULES:
- All Slack actions must be ack()'d within 3 seconds, so ack() FIRST
- Every reply is rebuilt from Redis state (TrackingWorkflow views)
- Handler failures are logged, never raised into bolt
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
- Runnable as: python -m harvest_tracker
"""

from __future__ import annotations

import json
import logging
import re
import threading
from typing import Any, Dict, List, Optional, Tuple

import redis
from slack_bolt import App
from slack_bolt.adapter.socket_mode import SocketModeHandler

from harvest_tracker.api.client import HarvestClient
from harvest_tracker.api.oauth import (
    EVENT_AUTHORIZED,
    EVENT_SESSION_EXPIRED,
    OAuthSessionManager,
)
from harvest_tracker.config import (
    COMMAND_PREFIX,
    DEFAULT_TIMEZONE,
    OAUTH_CALLBACK_HOST,
    OAUTH_CALLBACK_PORT,
    REDIS_URL,
    load_oauth_credentials,
    load_slack_tokens,
)
from harvest_tracker.reminders import (
    ReminderScheduler,
    ReminderValidationError,
    validate_settings,
)
from harvest_tracker.slack.messages import (
    ACTION_CONFIRM_START,
    ACTION_LOGIN,
    ACTION_OPEN_SETUP,
    ACTION_PROJECT_SELECT,
    ACTION_SETUP_INTERVAL,
    ACTION_SETUP_WEEKDAYS,
    ACTION_SETUP_WHILE_TRACKING,
    ACTION_SETUP_WINDOW_END,
    ACTION_SETUP_WINDOW_START,
    ACTION_START_TRACKING,
    ACTION_TASK_SELECT,
    ACTION_TIME_ENTRY_CONTINUE,
    ACTION_TIME_ENTRY_STOP,
    BLOCK_INTERVAL,
    BLOCK_WEEKDAYS,
    BLOCK_WHILE_TRACKING,
    BLOCK_WINDOW_END,
    BLOCK_WINDOW_START,
    SETUP_CALLBACK_ID,
    build_logged_in_blocks,
    build_logged_out_blocks,
    build_login_blocks,
    build_session_expired_blocks,
    build_setup_button_blocks,
    build_setup_modal,
    build_setup_saved_blocks,
    parse_continue_value,
)
from harvest_tracker.slack.messenger import MessageRef, SlackMessenger
from harvest_tracker.store import (
    FIELD_LOGIN_MESSAGE,
    FIELD_REMINDER,
    FIELD_SETUP_MESSAGE,
    TokenStore,
)
from harvest_tracker.workflow import TrackingWorkflow, View

logger = logging.getLogger(__name__)

# Modal field -> block_id, for inline validation errors
_FIELD_BLOCKS = {
    "interval_minutes": BLOCK_INTERVAL,
    "window_start": BLOCK_WINDOW_START,
    "window_end": BLOCK_WINDOW_END,
    "weekdays": BLOCK_WEEKDAYS,
    "remind_while_tracking": BLOCK_WHILE_TRACKING,
    "timezone": BLOCK_WINDOW_START,
}


def command_pattern(command: str) -> "re.Pattern[str]":
    """Regex matching "<prefix> <command>", optionally after a bot mention."""
    words = r"\s+".join(re.escape(w) for w in command.split())
    return re.compile(
        r"^\s*(?:<@\w+>\s*)?{}\s+{}\b".format(re.escape(COMMAND_PREFIX), words),
        re.IGNORECASE,
    )


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _action_user(body: Dict[str, Any]) -> str:
    return body.get("user", {}).get("id", "")


def _action_value(body: Dict[str, Any], action_id: str) -> str:
    """Return the clicked button value or the selected dropdown value."""
    for action in body.get("actions", []):
        if action.get("action_id") != action_id:
            continue
        selected = action.get("selected_option")
        if selected:
            return selected.get("value", "")
        return action.get("value", "")
    return ""


def _action_message(body: Dict[str, Any]) -> Optional[MessageRef]:
    """Locate the message an action was triggered from."""
    container = body.get("container", {})
    channel = container.get("channel_id") or body.get("channel", {}).get("id")
    ts = container.get("message_ts") or body.get("message", {}).get("ts")
    if not channel or not ts:
        return None
    return MessageRef(channel=channel, ts=ts)


def extract_setup_values(values: Dict[str, Any]) -> Dict[str, Any]:
    """Extract reminder settings from the setup modal state.

    RULES:
    - Missing interval falls back to 0 (disabled)
    - Missing times are passed through as "" so validation reports them
    """
    interval_opt = values.get(BLOCK_INTERVAL, {}).get(ACTION_SETUP_INTERVAL, {}).get("selected_option")
    interval_raw = interval_opt.get("value", "0") if interval_opt else "0"
    try:
        interval = int(interval_raw)
    except ValueError:
        interval = -1

    start = values.get(BLOCK_WINDOW_START, {}).get(ACTION_SETUP_WINDOW_START, {}).get("selected_time") or ""
    end = values.get(BLOCK_WINDOW_END, {}).get(ACTION_SETUP_WINDOW_END, {}).get("selected_time") or ""

    weekday_opts = values.get(BLOCK_WEEKDAYS, {}).get(ACTION_SETUP_WEEKDAYS, {}).get("selected_options") or []
    weekdays = []  # type: List[int]
    for opt in weekday_opts:
        try:
            weekdays.append(int(opt.get("value", "")))
        except ValueError:
            continue

    tracking_opts = values.get(BLOCK_WHILE_TRACKING, {}).get(ACTION_SETUP_WHILE_TRACKING, {}).get("selected_options") or []

    return {
        "interval_minutes": interval,
        "window_start": start,
        "window_end": end,
        "weekdays": weekdays,
        "remind_while_tracking": len(tracking_opts) > 0,
    }


# ---------------------------------------------------------------------------
# Bot
# ---------------------------------------------------------------------------


class TrackerBot:
    """All Slack-facing behaviour of the Harvest tracker.

    WHY: Bundling the collaborators in one object lets bolt listeners be
    plain bound methods without module-level singletons, and lets tests
    drive every handler with mocks.

    HOW: Owns the TrackingWorkflow and ReminderScheduler, subscribes to
    OAuth events, and talks to users through the injected messenger.
    """

    def __init__(
        self,
        store: TokenStore,
        oauth: OAuthSessionManager,
        client: HarvestClient,
        messenger: Any,
        scheduler: Any = None,
        now_fn: Any = None,
    ) -> None:
        self.store = store
        self.oauth = oauth
        self.messenger = messenger
        self.workflow = TrackingWorkflow(store, client)
        self.reminders = ReminderScheduler(
            store,
            oauth,
            client,
            on_remind=self.send_reminder,
            scheduler=scheduler,
            now_fn=now_fn,
        )
        oauth.on(EVENT_AUTHORIZED, self.handle_authorized)
        oauth.on(EVENT_SESSION_EXPIRED, self.handle_session_expired)

    def register(self, app: Any) -> None:
        """Register every command, action, and view listener on the app."""
        app.message(command_pattern("login"))(self.handle_login)
        app.message(command_pattern("setup"))(self.handle_setup)
        app.message(command_pattern("logout"))(self.handle_logout)
        app.message(command_pattern("project list"))(self.handle_project_list)
        app.message(command_pattern("start tracking"))(self.handle_start_tracking_command)
        app.message(command_pattern("status"))(self.handle_status)

        app.action(ACTION_LOGIN)(self.handle_ack_only)
        app.action(ACTION_START_TRACKING)(self.handle_start_tracking_action)
        app.action(ACTION_PROJECT_SELECT)(self.handle_project_select)
        app.action(ACTION_TASK_SELECT)(self.handle_task_select)
        app.action(ACTION_CONFIRM_START)(self.handle_confirm)
        app.action(ACTION_TIME_ENTRY_STOP)(self.handle_time_entry_stop)
        app.action(ACTION_TIME_ENTRY_CONTINUE)(self.handle_time_entry_continue)
        app.action(ACTION_OPEN_SETUP)(self.handle_open_setup)
        app.view(SETUP_CALLBACK_ID)(self.handle_setup_submit)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def _send(self, user_id: str, view: View) -> Optional[MessageRef]:
        return self.messenger.post_message(user_id, view.blocks, view.text)

    def _show(self, body: Dict[str, Any], user_id: str, view: View) -> None:
        """Edit the message an action came from, or DM if it can't be found."""
        ref = _action_message(body)
        if ref is None:
            self._send(user_id, view)
            return
        self.messenger.update_message(ref, view.blocks, view.text)

    def _remember_message(self, user_id: str, field: str, ref: Optional[MessageRef]) -> None:
        if ref is not None:
            self.store.set_json(user_id, field, ref.to_dict())

    def _take_message(self, user_id: str, field: str) -> Optional[MessageRef]:
        ref = MessageRef.from_dict(self.store.get_json(user_id, field))
        self.store.delete(user_id, field)
        return ref

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def handle_login(self, message: Dict[str, Any]) -> None:
        user_id = message.get("user", "")
        url = self.oauth.begin_login(user_id)
        ref = self.messenger.post_message(user_id, build_login_blocks(url), "Log in to Harvest")
        self._remember_message(user_id, FIELD_LOGIN_MESSAGE, ref)

    def handle_setup(self, message: Dict[str, Any]) -> None:
        user_id = message.get("user", "")
        if not self.oauth.is_authenticated(user_id):
            self.handle_login(message)
            return
        ref = self.messenger.post_message(
            user_id, build_setup_button_blocks(), "Configure reminders"
        )
        self._remember_message(user_id, FIELD_SETUP_MESSAGE, ref)

    def handle_logout(self, message: Dict[str, Any]) -> None:
        user_id = message.get("user", "")
        self.reminders.cancel(user_id)
        removed = self.oauth.logout(user_id)
        logger.info("User %s logged out (%d keys removed)", user_id, removed)
        self.messenger.post_message(user_id, build_logged_out_blocks(), "Logged out")

    def handle_project_list(self, message: Dict[str, Any]) -> None:
        user_id = message.get("user", "")
        self._send(user_id, self.workflow.project_list(user_id))

    def handle_start_tracking_command(self, message: Dict[str, Any]) -> None:
        user_id = message.get("user", "")
        self._send(user_id, self.workflow.start_tracking(user_id))

    def handle_status(self, message: Dict[str, Any]) -> None:
        user_id = message.get("user", "")
        self._send(user_id, self.workflow.status(user_id))

    # ------------------------------------------------------------------
    # Actions (Block Kit interactions)
    # ------------------------------------------------------------------

    def handle_ack_only(self, ack: Any) -> None:
        """Acknowledge link buttons; Slack opens the URL itself."""
        ack()

    def handle_start_tracking_action(self, ack: Any, body: Dict[str, Any]) -> None:
        ack()
        user_id = _action_user(body)
        self._show(body, user_id, self.workflow.start_tracking(user_id))

    def handle_project_select(self, ack: Any, body: Dict[str, Any]) -> None:
        ack()
        user_id = _action_user(body)
        project_id = _action_value(body, ACTION_PROJECT_SELECT)
        self._show(body, user_id, self.workflow.project_select(user_id, project_id))

    def handle_task_select(self, ack: Any, body: Dict[str, Any]) -> None:
        ack()
        user_id = _action_user(body)
        task_id = _action_value(body, ACTION_TASK_SELECT)
        self._show(body, user_id, self.workflow.task_select(user_id, task_id))

    def handle_confirm(self, ack: Any, body: Dict[str, Any]) -> None:
        ack()
        user_id = _action_user(body)
        self._show(body, user_id, self.workflow.confirm_start_tracking(user_id))

    def handle_time_entry_stop(self, ack: Any, body: Dict[str, Any]) -> None:
        ack()
        user_id = _action_user(body)
        entry_id = _action_value(body, ACTION_TIME_ENTRY_STOP)
        self._show(body, user_id, self.workflow.time_entry_stop(user_id, entry_id))

    def handle_time_entry_continue(self, ack: Any, body: Dict[str, Any]) -> None:
        ack()
        user_id = _action_user(body)
        pair = parse_continue_value(_action_value(body, ACTION_TIME_ENTRY_CONTINUE))
        if pair is None:
            logger.warning("Ignoring malformed continue action from %s", user_id)
            return
        view = self.workflow.time_entry_continue(user_id, pair["task_id"], pair["project_id"])
        self._show(body, user_id, view)

    # ------------------------------------------------------------------
    # Reminder setup modal
    # ------------------------------------------------------------------

    def handle_open_setup(self, ack: Any, body: Dict[str, Any]) -> None:
        ack()
        user_id = _action_user(body)
        current = self.store.get_json(user_id, FIELD_REMINDER)
        metadata = json.dumps({"timezone": self._timezone_for(user_id)})
        self.messenger.open_dialog(
            body.get("trigger_id", ""), build_setup_modal(current, private_metadata=metadata)
        )

    def handle_setup_submit(self, ack: Any, body: Dict[str, Any], view: Dict[str, Any]) -> None:
        """Validate and save reminder settings from the setup modal.

        RULES:
        - Validation errors are returned inline BEFORE closing the modal
        - ack() comes before any Redis write or Slack call
        - Nothing is stored when validation fails
        - The setup button message is edited in place with a summary
        """
        user_id = _action_user(body)
        fields = extract_setup_values(view.get("state", {}).get("values", {}))
        fields["timezone"] = self._submitted_timezone(user_id, view)

        try:
            validate_settings(fields)
        except ReminderValidationError as exc:
            errors = {}  # type: Dict[str, str]
            for field, msg in exc.errors.items():
                errors.setdefault(_FIELD_BLOCKS.get(field, BLOCK_WINDOW_END), msg)
            ack(response_action="errors", errors=errors)
            return

        ack()

        config = self.reminders.configure(user_id, **fields)
        blocks = build_setup_saved_blocks(config.model_dump())
        ref = self._take_message(user_id, FIELD_SETUP_MESSAGE)
        if ref is None or not self.messenger.update_message(ref, blocks, "Reminders saved"):
            self.messenger.post_message(user_id, blocks, "Reminders saved")

    def _timezone_for(self, user_id: str) -> str:
        tz = self.messenger.user_timezone(user_id)
        if tz:
            return tz
        return self._stored_timezone(user_id)

    def _stored_timezone(self, user_id: str) -> str:
        current = self.store.get_json(user_id, FIELD_REMINDER) or {}
        return current.get("timezone") or DEFAULT_TIMEZONE

    def _submitted_timezone(self, user_id: str, view: Dict[str, Any]) -> str:
        """Timezone captured when the modal was opened."""
        try:
            metadata = json.loads(view.get("private_metadata") or "{}")
        except ValueError:
            metadata = {}
        tz = metadata.get("timezone") if isinstance(metadata, dict) else None
        return tz or self._stored_timezone(user_id)

    # ------------------------------------------------------------------
    # OAuth events and reminders
    # ------------------------------------------------------------------

    def handle_authorized(self, user_id: str) -> None:
        blocks = build_logged_in_blocks()
        ref = self._take_message(user_id, FIELD_LOGIN_MESSAGE)
        if ref is None or not self.messenger.update_message(ref, blocks, "Logged in to Harvest"):
            self.messenger.post_message(user_id, blocks, "Logged in to Harvest")
        self.reminders.arm_refresh_check(user_id)

    def handle_session_expired(self, user_id: str) -> None:
        self.reminders.cancel(user_id)
        self.messenger.post_message(
            user_id, build_session_expired_blocks(), "Please log in to Harvest again"
        )

    def send_reminder(self, user_id: str) -> None:
        self._send(user_id, self.workflow.status(user_id))


# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------


def create_app(
    bot_token: str,
    store: TokenStore,
    oauth: OAuthSessionManager,
    client: HarvestClient,
) -> Tuple[App, TrackerBot]:
    """Create the Slack Bolt app and the bot with all handlers registered.

    WHY: Factory function avoids module-level side effects and keeps the
    wiring of collaborators in one place.
    """
    app = App(token=bot_token)
    tracker = TrackerBot(store, oauth, client, SlackMessenger(app.client))
    tracker.register(app)
    return app, tracker


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Start the OAuth callback server, reminder scheduler, and Slack bot.

    RULES:
    - Fails fast if OAuth credentials or Slack tokens are missing
    - Rehydrates timers from Redis before accepting Slack events
    - Blocks on the SocketModeHandler.start() call
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    client_id, client_secret = load_oauth_credentials()
    bot_token, app_token = load_slack_tokens()

    import uvicorn

    from harvest_tracker.server.app import create_server

    redis_client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
    store = TokenStore(redis_client)
    oauth = OAuthSessionManager(store, client_id, client_secret)
    harvest = HarvestClient(store)

    app, tracker = create_app(bot_token, store, oauth, harvest)
    tracker.reminders.start()
    tracker.reminders.rehydrate()

    server = create_server(oauth, redis_client)
    server_thread = threading.Thread(
        target=uvicorn.run,
        args=(server,),
        kwargs={"host": OAUTH_CALLBACK_HOST, "port": OAUTH_CALLBACK_PORT},
        daemon=True,
    )
    server_thread.start()

    logger.info("OAuth callback listening on %s:%d", OAUTH_CALLBACK_HOST, OAUTH_CALLBACK_PORT)
    logger.info("Starting Slack bot in Socket Mode...")

    try:
        SocketModeHandler(app, app_token).start()
    finally:
        tracker.reminders.shutdown()


if __name__ == "__main__":
    main()
