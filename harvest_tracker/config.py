"""Configuration constants, Harvest endpoints, and .env loading.

WHY: Centralizes all configurable values so they are easy to find,
update, and override. Endpoints, scheduling limits, and Redis settings
are plain module constants, not buried in logic, so both humans and
coding agents can modify them confidently.

HOW: python-dotenv loads the .env file on import. Constants are defined
as module-level values read from the environment with sensible defaults.
load_oauth_credentials() and load_slack_tokens() provide a clear error
when required secrets are missing.

RULES:
- OAuth client id/secret are loaded from .env, never hardcoded
- The bot refuses to start without OAuth credentials (fail fast)
- All defaults can be overridden via environment variables
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
"""

from __future__ import annotations

import os
from typing import Tuple

from dotenv import load_dotenv

# Load .env from the project root (where the script is run from)
load_dotenv()

# ---------------------------------------------------------------------------
# Harvest endpoints
# ---------------------------------------------------------------------------

HARVEST_ID_URL = os.getenv("HARVEST_ID_URL", "https://id.getharvest.com")
HARVEST_API_URL = os.getenv("HARVEST_API_URL", "https://api.harvestapp.com")
HARVEST_USER_AGENT = os.getenv("HARVEST_USER_AGENT", "harvest-tracker-bot")

# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

PENDING_LOGIN_TTL_S = int(os.getenv("PENDING_LOGIN_TTL_S", "3600"))
"""Lifetime of an unused OAuth state token. 0 disables expiry."""

# ---------------------------------------------------------------------------
# OAuth callback server
# ---------------------------------------------------------------------------

OAUTH_CALLBACK_HOST = os.getenv("OAUTH_CALLBACK_HOST", "0.0.0.0")
OAUTH_CALLBACK_PORT = int(os.getenv("OAUTH_CALLBACK_PORT", "8080"))
OAUTH_CALLBACK_PATH = "/harvest-tracker-authorize"

# ---------------------------------------------------------------------------
# Bot behaviour
# ---------------------------------------------------------------------------

COMMAND_PREFIX = os.getenv("COMMAND_PREFIX", "harvest")
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE", "UTC")

STATUS_PAGE_SIZE = 5

# Reminders
MIN_REMINDER_INTERVAL_MINUTES = 5
DEFAULT_REMINDER_WEEKDAYS = (0, 1, 2, 3, 4)  # Monday..Friday

# Token refresh
REFRESH_CHECK_INTERVAL_HOURS = 6
REFRESH_THRESHOLD_S = 3 * 24 * 3600  # refresh when < 3 days of validity remain


def load_oauth_credentials() -> Tuple[str, str]:
    """Load the Harvest OAuth client id and secret from the environment.

    WHY: Every login and token refresh needs the client credentials.
    Without them the bot cannot do anything useful, so startup must
    fail immediately instead of on the first login attempt.

    HOW: Reads HARVEST_OAUTH_CLIENT_ID and HARVEST_OAUTH_CLIENT_SECRET
    from os.environ (populated by python-dotenv).

    RULES:
    - Raises ValueError if either value is missing or empty
    - Never returns a default/placeholder value
    """
    client_id = os.getenv("HARVEST_OAUTH_CLIENT_ID", "").strip()
    client_secret = os.getenv("HARVEST_OAUTH_CLIENT_SECRET", "").strip()
    if not client_id or not client_secret:
        raise ValueError(
            "Harvest OAuth credentials not configured. Add "
            "HARVEST_OAUTH_CLIENT_ID and HARVEST_OAUTH_CLIENT_SECRET to the .env file."
        )
    return client_id, client_secret


def load_slack_tokens() -> Tuple[str, str]:
    """Load the Slack bot and app-level tokens for Socket Mode."""
    bot_token = os.getenv("SLACK_BOT_TOKEN", "").strip()
    app_token = os.getenv("SLACK_APP_TOKEN", "").strip()
    if not bot_token:
        raise ValueError("SLACK_BOT_TOKEN environment variable is required")
    if not app_token:
        raise ValueError("SLACK_APP_TOKEN environment variable is required")
    return bot_token, app_token
