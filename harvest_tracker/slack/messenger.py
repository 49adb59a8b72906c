"""Chat transport used by the bot to talk to users.

WHY: The workflow, OAuth listeners, and reminder timers all need to send
or edit messages, but none of them should hold a module-level Slack
client. A small injected Messenger keeps Slack specifics in one place and
lets tests substitute a mock.

HOW: SlackMessenger wraps a slack_sdk WebClient. Direct messages are sent
by opening (or reusing) the IM channel with conversations_open. Every
sent message returns a MessageRef (channel + ts) that can be stored in
Redis and used later to edit the message in place.

RULES:
- post_message() returns None when Slack refuses the message
- update_message() and open_dialog() log failures and never raise
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageRef:
    """Address of a sent Slack message."""

    channel: str
    ts: str

    def to_dict(self) -> Dict[str, str]:
        return {"channel": self.channel, "ts": self.ts}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional[MessageRef]:
        if not data or not data.get("channel") or not data.get("ts"):
            return None
        return cls(channel=str(data["channel"]), ts=str(data["ts"]))


class SlackMessenger:
    """Messenger implementation on top of the Slack Web API."""

    def __init__(self, client: Any) -> None:
        self._client = client

    def open_dm(self, user_id: str) -> Optional[str]:
        try:
            resp = self._client.conversations_open(users=user_id)
        except Exception:
            logger.exception("Failed to open DM with %s", user_id)
            return None
        return resp.get("channel", {}).get("id")

    def post_message(
        self, user_id: str, blocks: List[Dict[str, Any]], text: str
    ) -> Optional[MessageRef]:
        """Send a direct message to a user and return its reference."""
        channel = self.open_dm(user_id)
        if not channel:
            return None
        try:
            resp = self._client.chat_postMessage(channel=channel, blocks=blocks, text=text)
        except Exception:
            logger.exception("Failed to post message to %s", user_id)
            return None
        return MessageRef(channel=resp.get("channel", channel), ts=resp.get("ts", ""))

    def update_message(
        self, ref: MessageRef, blocks: List[Dict[str, Any]], text: str
    ) -> bool:
        try:
            self._client.chat_update(channel=ref.channel, ts=ref.ts, blocks=blocks, text=text)
        except Exception:
            logger.exception("Failed to update message %s", ref.ts)
            return False
        return True

    def open_dialog(self, trigger_id: str, view: Dict[str, Any]) -> bool:
        try:
            self._client.views_open(trigger_id=trigger_id, view=view)
        except Exception:
            logger.exception("Failed to open dialog")
            return False
        return True

    def user_timezone(self, user_id: str) -> Optional[str]:
        """Return the user's IANA timezone from their Slack profile."""
        try:
            resp = self._client.users_info(user=user_id)
        except Exception:
            logger.exception("Failed to fetch user info for %s", user_id)
            return None
        return resp.get("user", {}).get("tz")
