"""Per-user reminder timers and token refresh checks.

WHY: People forget to start their timers. Each user can ask the bot to
show their tracking status every N minutes inside a daily time window on
chosen weekdays. The same scheduler also keeps OAuth tokens fresh so
reminders (and everything else) keep working for weeks without a login.

HOW: One APScheduler BackgroundScheduler holds at most two jobs per user:
"reminder:<user_id>" (interval = configured minutes, floor 5) and
"refresh:<user_id>" (every 6 hours). Reconfiguring replaces the reminder
job. Every reminder job also captures the config_id it was created for
and stops itself as soon as the stored config_id differs, so a timer
that was already running when the config changed cannot fire again.

RULES:
- interval_minutes == 0 means disabled: no job is scheduled
- Intervals below 5 minutes are clamped to 5
- A tick stops the timer if the config_id is stale, the config is gone,
  or the user is logged out
- A tick skips (without stopping) outside weekdays, outside
  [window_start, window_end) in the user's timezone, or while a timer is
  running unless remind_while_tracking is set
- configure() validates before touching Redis; invalid input changes nothing
"""

from __future__ import annotations

import datetime
import logging
import uuid
from collections.abc import Callable
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from harvest_tracker.api.client import ApiError, HarvestClient
from harvest_tracker.api.oauth import AuthError, OAuthSessionManager, TokenServiceUnavailable
from harvest_tracker.config import (
    DEFAULT_REMINDER_WEEKDAYS,
    DEFAULT_TIMEZONE,
    MIN_REMINDER_INTERVAL_MINUTES,
    REFRESH_CHECK_INTERVAL_HOURS,
)
from harvest_tracker.store import FIELD_AUTH, FIELD_REMINDER, TokenStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ReminderValidationError(ValueError):
    """Raised when setup dialog input is invalid.

    WHY: The Slack modal can show an error next to each offending input,
    so the error carries a field → message map instead of one string.

    RULES:
    - errors keys are ReminderSettings field names
    - Nothing has been written to Redis when this is raised
    """

    def __init__(self, errors: Dict[str, str]) -> None:
        self.errors = errors
        super().__init__("; ".join("{}: {}".format(k, v) for k, v in sorted(errors.items())))


def _normalize_time(value: Any) -> str:
    try:
        parsed = datetime.datetime.strptime(str(value).strip(), "%H:%M")
    except ValueError:
        raise ValueError("must be a time in HH:MM format") from None
    return parsed.strftime("%H:%M")


class ReminderSettings(BaseModel):
    """User-editable reminder settings collected by the setup dialog."""

    interval_minutes: int = Field(default=60, ge=0, description="Minutes between reminders; 0 disables")
    window_start: str = Field(default="09:00", description="Local start of the reminder window (HH:MM)")
    window_end: str = Field(default="18:00", description="Local end of the reminder window (HH:MM), exclusive")
    remind_while_tracking: bool = Field(default=False, description="Remind even while a timer runs")
    weekdays: List[int] = Field(
        default_factory=lambda: list(DEFAULT_REMINDER_WEEKDAYS),
        description="Days reminders may fire on, Monday=0 .. Sunday=6",
    )
    timezone: str = Field(default=DEFAULT_TIMEZONE, description="IANA timezone of the user")

    @field_validator("window_start", "window_end", mode="before")
    @classmethod
    def _check_time(cls, value: Any) -> str:
        return _normalize_time(value)

    @field_validator("weekdays")
    @classmethod
    def _check_weekdays(cls, value: List[int]) -> List[int]:
        for day in value:
            if day < 0 or day > 6:
                raise ValueError("weekdays must be between 0 (Monday) and 6 (Sunday)")
        return sorted(set(value))

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError("unknown timezone {!r}".format(value)) from None
        return value

    @model_validator(mode="after")
    def _check_window(self) -> ReminderSettings:
        if self.window_start > self.window_end:
            raise ValueError("the start time must not be after the end time")
        return self


class ReminderConfig(ReminderSettings):
    """Stored reminder settings plus the id of the timer generation."""

    config_id: str


def validate_settings(fields: Dict[str, Any]) -> ReminderSettings:
    """Validate raw setup input, raising ReminderValidationError on failure."""
    try:
        return ReminderSettings(**fields)
    except ValidationError as exc:
        errors = {}  # type: Dict[str, str]
        for error in exc.errors():
            loc = error.get("loc") or ()
            field = str(loc[0]) if loc else "window_end"
            message = error.get("msg", "invalid value")
            if message.startswith("Value error, "):
                message = message[len("Value error, "):]
            errors.setdefault(field, message)
        raise ReminderValidationError(errors) from exc


def reminder_job_id(user_id: str) -> str:
    return "reminder:{}".format(user_id)


def refresh_job_id(user_id: str) -> str:
    return "refresh:{}".format(user_id)


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class ReminderScheduler:
    """Owns every per-user timer in the process.

    WHY: Timers must survive configuration changes and process restarts.
    Redis holds the configuration; this class turns it into APScheduler
    jobs and decides on every tick whether a reminder is due.

    HOW: on_remind(user_id) is called when a reminder should be shown; the
    Slack layer passes a function that posts the status view.

    RULES:
    - now_fn returns an aware datetime and is injectable for tests
    - Jobs run in APScheduler's thread pool
    """

    def __init__(
        self,
        store: TokenStore,
        oauth: OAuthSessionManager,
        client: HarvestClient,
        on_remind: Callable[[str], None],
        scheduler: Optional[BackgroundScheduler] = None,
        now_fn: Optional[Callable[[], datetime.datetime]] = None,
    ) -> None:
        self._store = store
        self._oauth = oauth
        self._client = client
        self._on_remind = on_remind
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._now_fn = now_fn or _utc_now

    @property
    def scheduler(self) -> BackgroundScheduler:
        return self._scheduler

    def start(self, paused: bool = False) -> None:
        self._scheduler.start(paused=paused)

    def shutdown(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def load_config(self, user_id: str) -> Optional[ReminderConfig]:
        data = self._store.get_json(user_id, FIELD_REMINDER)
        if not data:
            return None
        try:
            return ReminderConfig(**data)
        except ValidationError:
            logger.warning("Stored reminder config for %s is invalid", user_id)
            return None

    def configure(self, user_id: str, **fields: Any) -> ReminderConfig:
        """Validate, persist with a fresh config_id, and (re)start the timer.

        RULES:
        - Raises ReminderValidationError before any write on bad input
        - Every successful call generates a new config_id
        """
        settings = validate_settings(fields)
        config = ReminderConfig(config_id=uuid.uuid4().hex, **settings.model_dump())
        self._store.set_json(user_id, FIELD_REMINDER, config.model_dump())
        logger.info(
            "Saved reminder config %s for %s (every %d min)",
            config.config_id, user_id, config.interval_minutes,
        )
        self.create_timer(user_id, config.interval_minutes, config.config_id)
        return config

    # ------------------------------------------------------------------
    # Reminder timers
    # ------------------------------------------------------------------

    def create_timer(self, user_id: str, interval_minutes: int, config_id: str) -> bool:
        """Schedule the user's reminder job. Returns False when disabled."""
        job_id = reminder_job_id(user_id)
        if interval_minutes <= 0:
            self._remove_job(job_id)
            logger.info("Reminders disabled for %s", user_id)
            return False

        minutes = max(interval_minutes, MIN_REMINDER_INTERVAL_MINUTES)
        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(minutes=minutes),
            id=job_id,
            args=[user_id, config_id],
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info("Reminder timer for %s every %d min (config %s)", user_id, minutes, config_id)
        return True

    def tick(self, user_id: str, config_id: str) -> bool:
        """Run one reminder tick. Returns True when a reminder was sent."""
        config = self.load_config(user_id)
        if config is None or config.config_id != config_id:
            logger.info("Reminder timer for %s is stale, stopping", user_id)
            self._stop_reminder(user_id, config_id)
            return False

        if not self._store.get(user_id, FIELD_AUTH):
            logger.info("User %s logged out, stopping reminders", user_id)
            self._stop_reminder(user_id, config_id)
            return False

        local_now = self._now_fn().astimezone(ZoneInfo(config.timezone))
        if local_now.weekday() not in config.weekdays:
            return False

        current = local_now.strftime("%H:%M")
        if not (config.window_start <= current < config.window_end):
            return False

        if not config.remind_while_tracking:
            try:
                if self._client.has_running_entry(user_id):
                    return False
            except (ApiError, AuthError):
                logger.exception("Could not check running timers for %s", user_id)
                return False

        logger.info("Sending reminder to %s", user_id)
        self._on_remind(user_id)
        return True

    def _stop_reminder(self, user_id: str, config_id: str) -> None:
        # Only remove the job if it still belongs to this config generation.
        job = self._scheduler.get_job(reminder_job_id(user_id))
        if job is not None and list(job.args)[1:2] == [config_id]:
            job.remove()

    # ------------------------------------------------------------------
    # Token refresh checks
    # ------------------------------------------------------------------

    def arm_refresh_check(self, user_id: str) -> None:
        self._scheduler.add_job(
            self.check_refresh,
            trigger=IntervalTrigger(hours=REFRESH_CHECK_INTERVAL_HOURS),
            id=refresh_job_id(user_id),
            args=[user_id],
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            next_run_time=self._now_fn(),
        )

    def check_refresh(self, user_id: str) -> bool:
        """Refresh the user's token if it is close to expiry.

        RULES:
        - Returns True when a refresh happened
        - Stops the check when the user has no credential or Harvest
          rejects the refresh token
        - Keeps the check armed when the token service is unreachable
        """
        if not self._oauth.is_authenticated(user_id):
            self._remove_job(refresh_job_id(user_id))
            return False
        if not self._oauth.needs_refresh(user_id):
            return False
        try:
            self._oauth.refresh(user_id)
        except TokenServiceUnavailable:
            logger.warning("Will retry token refresh for %s on the next check", user_id)
            return False
        except AuthError:
            self._remove_job(refresh_job_id(user_id))
            return False
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def cancel(self, user_id: str) -> None:
        self._remove_job(reminder_job_id(user_id))
        self._remove_job(refresh_job_id(user_id))

    def rehydrate(self) -> Dict[str, int]:
        """Re-arm timers for every user with persisted state.

        WHY: APScheduler jobs live in memory; after a restart they must be
        rebuilt from what Redis remembers.
        """
        reminders = 0
        for user_id in self._store.users_with(FIELD_REMINDER):
            config = self.load_config(user_id)
            if config and self.create_timer(user_id, config.interval_minutes, config.config_id):
                reminders += 1

        refreshes = 0
        for user_id in self._store.users_with(FIELD_AUTH):
            self.arm_refresh_check(user_id)
            refreshes += 1

        logger.info("Rehydrated %d reminder timers and %d refresh checks", reminders, refreshes)
        return {"reminders": reminders, "refresh_checks": refreshes}

    def _remove_job(self, job_id: str) -> None:
        if self._scheduler.get_job(job_id) is not None:
            self._scheduler.remove_job(job_id)
