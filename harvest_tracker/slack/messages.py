"""Message templates and Block Kit builders for the Slack bot.

WHY: The bot sends a handful of structured messages: a login button, the
project → task → confirm selection view, the status view with stop and
continue buttons, and the reminder setup modal. Centralizing the builders
keeps the workflow and bot modules focused on state and event handling.

HOW: Each function returns a list of Block Kit block dicts (or a modal
view dict) ready to be passed to chat_postMessage / chat_update /
views_open. Builders are pure: the same input always produces the same
blocks, which is what makes re-rendering idempotent.

RULES:
- All functions return list[dict] (Block Kit blocks), dict (view) or str
- action_id values must match the handler registrations in bot.py
- No timestamps or random values in blocks (rendering must be deterministic)
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Sequence

from harvest_tracker.api.models import ProjectAssignment, TaskAssignment, TimeEntry
from harvest_tracker.config import COMMAND_PREFIX

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Action IDs, must match app.action() registrations in bot.py
ACTION_LOGIN = "login_button"
ACTION_START_TRACKING = "start_tracking"
ACTION_PROJECT_SELECT = "project_select"
ACTION_TASK_SELECT = "task_select"
ACTION_CONFIRM_START = "confirm_start_tracking"
ACTION_TIME_ENTRY_STOP = "time_entry_stop"
ACTION_TIME_ENTRY_CONTINUE = "time_entry_continue"
ACTION_OPEN_SETUP = "open_setup"

# Setup modal
SETUP_CALLBACK_ID = "reminder_setup"
ACTION_SETUP_INTERVAL = "setup_interval"
ACTION_SETUP_WINDOW_START = "setup_window_start"
ACTION_SETUP_WINDOW_END = "setup_window_end"
ACTION_SETUP_WHILE_TRACKING = "setup_while_tracking"
ACTION_SETUP_WEEKDAYS = "setup_weekdays"

BLOCK_INTERVAL = "interval"
BLOCK_WINDOW_START = "window_start"
BLOCK_WINDOW_END = "window_end"
BLOCK_WHILE_TRACKING = "while_tracking"
BLOCK_WEEKDAYS = "weekdays"

# Reminder interval options (minutes); 0 disables reminders
INTERVAL_OPTIONS = [
    (0, "Disabled"),
    (15, "Every 15 minutes"),
    (30, "Every 30 minutes"),
    (60, "Every hour"),
    (120, "Every 2 hours"),
    (240, "Every 4 hours"),
]

WEEKDAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

# Slack caps option text at 75 characters
_OPTION_TEXT_MAX = 75


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


def _section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _option(label: str, value: str) -> Dict[str, Any]:
    if len(label) > _OPTION_TEXT_MAX:
        label = label[: _OPTION_TEXT_MAX - 1] + "…"
    return {"text": {"type": "plain_text", "text": label}, "value": value}


def _button(
    label: str, action_id: str, value: str = "", style: Optional[str] = None
) -> Dict[str, Any]:
    button = {
        "type": "button",
        "text": {"type": "plain_text", "text": label},
        "action_id": action_id,
    }  # type: Dict[str, Any]
    if value:
        button["value"] = value
    if style:
        button["style"] = style
    return button


def format_hours(hours: float) -> str:
    """Format decimal hours as "Xh Ym".

    RULES:
    - 2.5 -> "2h 30m", 0.25 -> "0h 15m"
    - Minutes are rounded to the nearest whole minute
    """
    total_minutes = int(round(hours * 60))
    return "{}h {}m".format(total_minutes // 60, total_minutes % 60)


def project_label(assignment: ProjectAssignment) -> str:
    if assignment.client_name:
        return "{} - {}".format(assignment.client_name, assignment.project_name)
    return assignment.project_name


def continue_value(project_id: str, task_id: str) -> str:
    """Encode a project/task pair into a button value."""
    return json.dumps({"project_id": project_id, "task_id": task_id}, sort_keys=True)


def parse_continue_value(value: str) -> Optional[Dict[str, str]]:
    try:
        data = json.loads(value)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict) or not data.get("project_id") or not data.get("task_id"):
        return None
    return {"project_id": str(data["project_id"]), "task_id": str(data["task_id"])}


# ---------------------------------------------------------------------------
# Authentication messages
# ---------------------------------------------------------------------------


def build_login_blocks(authorization_url: str) -> List[Dict[str, Any]]:
    """Build the login prompt with a link button to Harvest."""
    return [
        _section("Connect your Harvest account to start tracking time."),
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "Log in to Harvest"},
                    "style": "primary",
                    "action_id": ACTION_LOGIN,
                    "url": authorization_url,
                }
            ],
        },
    ]


def build_logged_in_blocks() -> List[Dict[str, Any]]:
    return [
        _section(
            ":white_check_mark: You're logged in to Harvest. "
            "Send `{} setup` to configure reminders.".format(COMMAND_PREFIX)
        )
    ]


def build_not_authenticated_blocks() -> List[Dict[str, Any]]:
    return [
        _section(
            "You're not logged in to Harvest. "
            "Send `{} login` to connect your account.".format(COMMAND_PREFIX)
        )
    ]


def build_session_expired_blocks() -> List[Dict[str, Any]]:
    return [
        _section(
            ":warning: Your Harvest session expired and could not be renewed. "
            "Send `{} login` to log in again.".format(COMMAND_PREFIX)
        )
    ]


def build_logged_out_blocks() -> List[Dict[str, Any]]:
    return [_section("You've been logged out. All your Harvest data was removed.")]


def build_api_error_blocks() -> List[Dict[str, Any]]:
    return [
        _section(
            ":x: I couldn't fetch or send information to Harvest. "
            "Please try again in a moment."
        )
    ]


# ---------------------------------------------------------------------------
# Tracking workflow
# ---------------------------------------------------------------------------


def build_tracking_blocks(
    projects: Sequence[ProjectAssignment],
    selected_project: Optional[str] = None,
    tasks: Optional[Sequence[TaskAssignment]] = None,
    selected_task: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Build the project → task → confirm selection view.

    WHY: The whole selection flow lives in one message that is rebuilt
    from stored selection state on every click.

    HOW: Always shows the project dropdown. The task dropdown appears once
    a project is selected; the confirm button once a task is selected too.
    Current selections are rendered as initial_option.

    RULES:
    - tasks is ignored when selected_project is None
    - selected_task is ignored unless it is one of tasks
    """
    if not projects:
        return [_section("You have no active project assignments in Harvest.")]

    project_options = [_option(project_label(p), p.project_id) for p in projects]
    project_select = {
        "type": "static_select",
        "action_id": ACTION_PROJECT_SELECT,
        "placeholder": {"type": "plain_text", "text": "Select a project"},
        "options": project_options,
    }  # type: Dict[str, Any]
    for option in project_options:
        if option["value"] == selected_project:
            project_select["initial_option"] = option

    blocks = [
        _section("*Start tracking time*"),
        {
            "type": "section",
            "block_id": "project",
            "text": {"type": "mrkdwn", "text": "*Project*"},
            "accessory": project_select,
        },
    ]

    if not selected_project or "initial_option" not in project_select:
        return blocks

    task_options = [_option(t.task_name, t.task_id) for t in tasks or []]
    if not task_options:
        blocks.append(_section("This project has no active tasks."))
        return blocks

    task_select = {
        "type": "static_select",
        "action_id": ACTION_TASK_SELECT,
        "placeholder": {"type": "plain_text", "text": "Select a task"},
        "options": task_options,
    }  # type: Dict[str, Any]
    for option in task_options:
        if option["value"] == selected_task:
            task_select["initial_option"] = option

    blocks.append({
        "type": "section",
        "block_id": "task",
        "text": {"type": "mrkdwn", "text": "*Task*"},
        "accessory": task_select,
    })

    if "initial_option" in task_select:
        blocks.append({
            "type": "actions",
            "block_id": "confirm",
            "elements": [
                _button("Start timer", ACTION_CONFIRM_START, "start", style="primary")
            ],
        })

    return blocks


def build_entry_started_blocks(
    client_name: str, project_name: str, task_name: str, entry_id: str
) -> List[Dict[str, Any]]:
    """Build the confirmation shown after a time entry starts."""
    prefix = "{} - ".format(client_name) if client_name else ""
    return [
        _section(
            ":stopwatch: Timer started for *{}{}* / *{}*".format(
                prefix, project_name, task_name
            )
        ),
        {
            "type": "actions",
            "elements": [_button("Stop", ACTION_TIME_ENTRY_STOP, entry_id, style="danger")],
        },
    ]


# ---------------------------------------------------------------------------
# Status view
# ---------------------------------------------------------------------------


def format_entry_line(entry: TimeEntry) -> str:
    prefix = "{} - ".format(entry.client_name) if entry.client_name else ""
    marker = ":large_green_circle:" if entry.is_running else ":white_circle:"
    return "{} *{}{}* / {}\n{} · {}".format(
        marker,
        prefix,
        entry.project_name,
        entry.task_name,
        entry.spent_date,
        format_hours(entry.hours),
    )


def build_status_blocks(entries: Sequence[TimeEntry]) -> List[Dict[str, Any]]:
    """Build the status view listing recent time entries.

    RULES:
    - Entries appear in the order given (provider order)
    - Running entries get a Stop button, stopped ones a Continue button
    - A Start tracking button is always appended
    """
    running = [e for e in entries if e.is_running]
    if running:
        header = "*You're tracking time on {} entr{}.*".format(
            len(running), "y" if len(running) == 1 else "ies"
        )
    else:
        header = "*You're not tracking time right now.*"

    blocks = [_section(header)]

    for entry in entries:
        if entry.is_running:
            accessory = _button("Stop", ACTION_TIME_ENTRY_STOP, entry.id, style="danger")
        else:
            accessory = _button(
                "Continue",
                ACTION_TIME_ENTRY_CONTINUE,
                continue_value(entry.project_id, entry.task_id),
            )
        block = _section(format_entry_line(entry))
        block["accessory"] = accessory
        blocks.append(block)

    blocks.append({
        "type": "actions",
        "elements": [_button("Start tracking", ACTION_START_TRACKING, "start", style="primary")],
    })
    return blocks


def build_project_list_blocks(
    projects: Sequence[ProjectAssignment],
) -> List[Dict[str, Any]]:
    if not projects:
        return [_section("You have no active project assignments in Harvest.")]

    blocks = [_section("*Your projects*")]
    for project in projects:
        task_names = ", ".join(t.task_name for t in project.task_assignments if t.is_active)
        blocks.append(_section("*{}*\n{}".format(
            project_label(project), task_names or "_No active tasks_"
        )))
    return blocks


# ---------------------------------------------------------------------------
# Reminder setup
# ---------------------------------------------------------------------------


def build_setup_button_blocks() -> List[Dict[str, Any]]:
    return [
        _section("Configure when I should remind you to track your time."),
        {
            "type": "actions",
            "elements": [_button("Configure reminders", ACTION_OPEN_SETUP, "setup", style="primary")],
        },
    ]


def build_setup_modal(
    current: Optional[Dict[str, Any]] = None, private_metadata: str = ""
) -> Dict[str, Any]:
    """Build the reminder configuration modal.

    WHY: Interval, time window, weekdays and the "remind while tracking"
    flag need structured input; a modal is the only Slack surface with
    timepickers and inline validation errors.

    HOW: Pre-fills every input from the stored configuration if present.
    private_metadata travels back unchanged with the submission.

    RULES:
    - block_id values must match what bot.py reads on submission
    - Defaults: every hour, 09:00–18:00, Monday–Friday, not while tracking
    """
    current = current or {}
    interval = int(current.get("interval_minutes", 60))
    weekdays = current.get("weekdays", [0, 1, 2, 3, 4])

    interval_options = [_option(label, str(minutes)) for minutes, label in INTERVAL_OPTIONS]
    initial_interval = next(
        (o for o in interval_options if o["value"] == str(interval)),
        interval_options[3],
    )

    weekday_options = [_option(name, str(i)) for i, name in enumerate(WEEKDAY_NAMES)]
    initial_weekdays = [o for o in weekday_options if int(o["value"]) in weekdays]

    while_tracking_option = _option("Remind me even while a timer is running", "yes")

    while_tracking = {
        "type": "checkboxes",
        "action_id": ACTION_SETUP_WHILE_TRACKING,
        "options": [while_tracking_option],
    }  # type: Dict[str, Any]
    if current.get("remind_while_tracking"):
        while_tracking["initial_options"] = [while_tracking_option]

    weekdays_element = {
        "type": "checkboxes",
        "action_id": ACTION_SETUP_WEEKDAYS,
        "options": weekday_options,
    }  # type: Dict[str, Any]
    if initial_weekdays:
        weekdays_element["initial_options"] = initial_weekdays

    return {
        "type": "modal",
        "callback_id": SETUP_CALLBACK_ID,
        "private_metadata": private_metadata,
        "title": {"type": "plain_text", "text": "Time reminders"},
        "submit": {"type": "plain_text", "text": "Save"},
        "close": {"type": "plain_text", "text": "Cancel"},
        "blocks": [
            {
                "type": "input",
                "block_id": BLOCK_INTERVAL,
                "label": {"type": "plain_text", "text": "Remind me"},
                "element": {
                    "type": "static_select",
                    "action_id": ACTION_SETUP_INTERVAL,
                    "options": interval_options,
                    "initial_option": initial_interval,
                },
            },
            {
                "type": "input",
                "block_id": BLOCK_WINDOW_START,
                "label": {"type": "plain_text", "text": "From"},
                "element": {
                    "type": "timepicker",
                    "action_id": ACTION_SETUP_WINDOW_START,
                    "initial_time": current.get("window_start", "09:00"),
                },
            },
            {
                "type": "input",
                "block_id": BLOCK_WINDOW_END,
                "label": {"type": "plain_text", "text": "Until"},
                "element": {
                    "type": "timepicker",
                    "action_id": ACTION_SETUP_WINDOW_END,
                    "initial_time": current.get("window_end", "18:00"),
                },
            },
            {
                "type": "input",
                "block_id": BLOCK_WEEKDAYS,
                "optional": True,
                "label": {"type": "plain_text", "text": "On these days"},
                "element": weekdays_element,
            },
            {
                "type": "input",
                "block_id": BLOCK_WHILE_TRACKING,
                "optional": True,
                "label": {"type": "plain_text", "text": "While tracking"},
                "element": while_tracking,
            },
        ],
    }


def format_reminder_summary(config: Dict[str, Any]) -> str:
    """One-line human summary of a stored reminder configuration."""
    interval = int(config.get("interval_minutes", 0))
    if interval == 0:
        return "Reminders are disabled."
    days = ", ".join(
        WEEKDAY_NAMES[d][:3] for d in config.get("weekdays", []) if 0 <= d < 7
    ) or "no days"
    text = "Reminding you every {} minutes between {} and {} ({}) on {}.".format(
        interval,
        config.get("window_start", ""),
        config.get("window_end", ""),
        config.get("timezone", ""),
        days,
    )
    if config.get("remind_while_tracking"):
        text += " Reminders continue while a timer is running."
    return text


def build_setup_saved_blocks(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [_section(":white_check_mark: " + format_reminder_summary(config))]
