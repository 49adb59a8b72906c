"""User-scoped key-value store backed by Redis.

WHY: The bot keeps no session objects in memory. Every piece of per-user
state (OAuth credentials, the in-progress project/task selection, the
assignments cache, reminder configuration, and the ids of messages that
may be edited later) lives in Redis so any handler, timer, or process
restart sees the same picture.

HOW: TokenStore wraps a Redis client (created with decode_responses=True)
and namespaces every key as "<user_id>:<field>". Pending OAuth logins are
the only top-level keys: "<state_token>" -> user_id. JSON helpers cover
the structured records.

RULES:
- All keys for a user share the "<user_id>:" prefix
- reset_user() deletes every key with that prefix (scan, then bulk delete)
- pop_pending_login() is single-use: the key is deleted on read
- No transactions: callers do plain read-modify-write
"""

from __future__ import annotations

import json
import logging
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Field names
# ---------------------------------------------------------------------------

FIELD_AUTH = "auth"
FIELD_SCOPE = "scope"
FIELD_SELECTED_PROJECT = "selected_project"
FIELD_SELECTED_TASK = "selected_task"
FIELD_ASSIGNMENTS = "assignments"
FIELD_REMINDER = "reminder"
FIELD_LAST_TIME_ENTRY = "last_time_entry"
FIELD_LOGIN_MESSAGE = "login_button_message_id"
FIELD_SETUP_MESSAGE = "setup_button_message_id"


class TokenStore:
    """Redis wrapper with user-scoped keys.

    WHY: Components should not build key strings by hand. A single wrapper
    keeps the key layout consistent and makes full-user resets reliable.

    HOW: Thin methods over get/set/delete/scan_iter. Values are strings;
    get_json/set_json serialize structured records.

    RULES:
    - The redis client must return str, not bytes (decode_responses=True)
    - Missing keys read as None
    """

    def __init__(self, redis_client: Any) -> None:
        self._redis = redis_client

    @staticmethod
    def key(user_id: str, field: str) -> str:
        return "{}:{}".format(user_id, field)

    # ------------------------------------------------------------------
    # Plain values
    # ------------------------------------------------------------------

    def get(self, user_id: str, field: str) -> Optional[str]:
        return self._redis.get(self.key(user_id, field))

    def set(self, user_id: str, field: str, value: str) -> None:
        self._redis.set(self.key(user_id, field), value)

    def delete(self, user_id: str, *fields: str) -> None:
        if fields:
            self._redis.delete(*[self.key(user_id, f) for f in fields])

    # ------------------------------------------------------------------
    # JSON values
    # ------------------------------------------------------------------

    def get_json(self, user_id: str, field: str) -> Optional[Any]:
        """Read and decode a JSON record, or None if absent or corrupt."""
        raw = self.get(user_id, field)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable %s record for %s", field, user_id)
            return None

    def set_json(self, user_id: str, field: str, value: Any) -> None:
        self.set(user_id, field, json.dumps(value, sort_keys=True))

    # ------------------------------------------------------------------
    # Pending logins
    # ------------------------------------------------------------------

    def save_pending_login(
        self, state_token: str, user_id: str, ttl_s: int = 0
    ) -> None:
        """Bind an OAuth state token to the user who started the login."""
        if ttl_s > 0:
            self._redis.set(state_token, user_id, ex=ttl_s)
        else:
            self._redis.set(state_token, user_id)

    def pop_pending_login(self, state_token: str) -> Optional[str]:
        """Return the user bound to a state token and forget the token."""
        user_id = self._redis.get(state_token)
        self._redis.delete(state_token)
        return user_id

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def user_keys(self, user_id: str) -> List[str]:
        return list(self._redis.scan_iter(match="{}:*".format(user_id)))

    def reset_user(self, user_id: str) -> int:
        """Delete every key belonging to a user. Returns the number removed."""
        keys = self.user_keys(user_id)
        if not keys:
            return 0
        self._redis.delete(*keys)
        logger.info("Reset %d keys for user %s", len(keys), user_id)
        return len(keys)

    def users_with(self, field: str) -> List[str]:
        """Return the ids of all users that have a value stored for field."""
        suffix = ":{}".format(field)
        users = []
        for key in self._redis.scan_iter(match="*{}".format(suffix)):
            user_id = key[: -len(suffix)]
            if user_id and user_id not in users:
                users.append(user_id)
        return sorted(users)
