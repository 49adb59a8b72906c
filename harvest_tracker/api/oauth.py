"""Three-legged OAuth2 session management for Harvest.

WHY: Every Harvest API call is made on behalf of a Slack user, so each
user needs their own access/refresh token pair. This module drives the
full lifecycle: authorization URL with a one-time state token, code
exchange on the redirect callback, periodic refresh before expiry, and
logout.

HOW: OAuthSessionManager persists everything through TokenStore. The
state token is a uuid4 stored as a top-level key pointing at the user id;
the redirect carries it back JSON-encoded as {"uuid": ...}. Token
exchanges are form POSTs to the Harvest id service via httpx. Listeners
registered with on() are notified of "authorized" and "session_expired"
events so the Slack layer can message the user.

RULES:
- State tokens are single-use: consumed (deleted) on the first callback
- A provider error during exchange or refresh wipes all of the user's keys
- The "authorized" event fires exactly once per successful login
- Listener failures are logged, never propagated into the login flow
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from typing import Any, Dict, List, Optional

import httpx

from harvest_tracker.api.models import Credential
from harvest_tracker.config import (
    HARVEST_ID_URL,
    HARVEST_USER_AGENT,
    PENDING_LOGIN_TTL_S,
    REFRESH_THRESHOLD_S,
)
from harvest_tracker.store import FIELD_AUTH, FIELD_SCOPE, TokenStore

logger = logging.getLogger(__name__)

EVENT_AUTHORIZED = "authorized"
EVENT_SESSION_EXPIRED = "session_expired"


class AuthError(Exception):
    """Base class for authentication failures.

    WHY: The Slack layer turns every auth failure into the same kind of
    "please log in again" message, so it only needs to catch one type.
    """


class UnknownStateError(AuthError):
    """Raised when an OAuth callback carries an unknown or replayed state token."""


class TokenExchangeError(AuthError):
    """Raised when Harvest rejects an authorization code exchange.

    RULES:
    - The user's stored state has already been wiped when this is raised
    """


class TokenRefreshError(AuthError):
    """Raised when Harvest rejects a refresh token.

    RULES:
    - The user's stored state has already been wiped when this is raised
    """


class TokenServiceUnavailable(AuthError):
    """Raised when the token endpoint could not give a usable answer.

    WHY: A DNS failure or a 5xx from the id service says nothing about
    the refresh token itself. Treating it like a rejection would log the
    user out over a network blip.

    RULES:
    - Covers transport errors, 5xx responses and unreadable bodies
    - Stored state is left untouched when refresh() raises this
    """


class NotAuthenticatedError(AuthError):
    """Raised when an operation needs a credential the user does not have."""

    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__("User {} is not logged in to Harvest".format(user_id))


class OAuthSessionManager:
    """Issues, exchanges, refreshes, and revokes per-user Harvest tokens.

    WHY: Keeps all token handling in one place so the API client only ever
    reads a ready-to-use access token.

    HOW: Wraps the Harvest id service endpoints. Uses an injectable
    httpx.Client (tests pass one built on httpx.MockTransport).

    RULES:
    - client_id and client_secret are required
    - clock defaults to time.time and is injectable for tests
    """

    def __init__(
        self,
        store: TokenStore,
        client_id: str,
        client_secret: str,
        http: Optional[httpx.Client] = None,
        id_url: Optional[str] = None,
        pending_ttl_s: int = PENDING_LOGIN_TTL_S,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self._store = store
        self._client_id = client_id
        self._client_secret = client_secret
        self._http = http or httpx.Client(timeout=30.0)
        self._id_url = (id_url or HARVEST_ID_URL).rstrip("/")
        self._pending_ttl_s = pending_ttl_s
        self._clock = clock or time.time
        self._listeners: Dict[str, List[Callable[[str], None]]] = {
            EVENT_AUTHORIZED: [],
            EVENT_SESSION_EXPIRED: [],
        }

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def on(self, event: str, callback: Callable[[str], None]) -> None:
        """Register a callback invoked with the user id when event fires."""
        if event not in self._listeners:
            raise ValueError("Unknown OAuth event: {}".format(event))
        self._listeners[event].append(callback)

    def _emit(self, event: str, user_id: str) -> None:
        for callback in self._listeners[event]:
            try:
                callback(user_id)
            except Exception:
                logger.exception("OAuth %s listener failed for %s", event, user_id)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def begin_login(self, user_id: str) -> str:
        """Start a login and return the Harvest authorization URL.

        RULES:
        - A fresh state token is generated on every call
        - Existing credentials are left untouched
        """
        state_token = uuid.uuid4().hex
        self._store.save_pending_login(state_token, user_id, ttl_s=self._pending_ttl_s)
        url = httpx.URL(
            "{}/oauth2/authorize".format(self._id_url),
            params={
                "client_id": self._client_id,
                "response_type": "code",
                "state": json.dumps({"uuid": state_token}),
            },
        )
        logger.info("Started login for %s", user_id)
        return str(url)

    def complete_login(self, state: str, code: str, scope: Optional[str]) -> str:
        """Finish a login from the OAuth redirect and return the user id.

        WHY: Harvest redirects the browser back with ?code, ?scope and our
        JSON-encoded ?state. The state token tells us which Slack user
        started the flow.

        HOW: Consumes the pending login, stores the granted scope, then
        exchanges the code for tokens.

        RULES:
        - Raises UnknownStateError for malformed, unknown, or replayed state
        - Raises TokenExchangeError (after wiping the user) on provider error
        - Emits "authorized" once on success
        """
        state_token = _parse_state(state)
        user_id = self._store.pop_pending_login(state_token) if state_token else None
        if not user_id:
            raise UnknownStateError("Unknown or already used state token")

        if scope:
            self._store.set(user_id, FIELD_SCOPE, scope)

        try:
            data = self._request_token({
                "code": code,
                "grant_type": "authorization_code",
            })
        except AuthError as exc:
            self._store.reset_user(user_id)
            raise TokenExchangeError(str(exc)) from exc

        credential = Credential.from_token_response(
            data, logged_in_at=self._clock(), scope=scope
        )
        self._store.set_json(user_id, FIELD_AUTH, credential.to_dict())
        logger.info("User %s authorized", user_id)
        self._emit(EVENT_AUTHORIZED, user_id)
        return user_id

    def cancel_login(self, state: Optional[str]) -> Optional[str]:
        """Consume the state token of a login the user did not complete.

        RULES:
        - Returns the user id the token belonged to, or None
        - Existing credentials are left untouched
        """
        state_token = _parse_state(state)
        if not state_token:
            return None
        user_id = self._store.pop_pending_login(state_token)
        if user_id:
            logger.info("Login for %s was cancelled", user_id)
        return user_id

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def credential(self, user_id: str) -> Optional[Credential]:
        data = self._store.get_json(user_id, FIELD_AUTH)
        if not data:
            return None
        try:
            return Credential.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Stored credential for %s is malformed", user_id)
            return None

    def is_authenticated(self, user_id: str) -> bool:
        return self.credential(user_id) is not None

    def needs_refresh(self, user_id: str, now: Optional[float] = None) -> bool:
        """True when the stored token expires within the refresh threshold."""
        credential = self.credential(user_id)
        if credential is None:
            return False
        now = self._clock() if now is None else now
        return credential.seconds_remaining(now) < REFRESH_THRESHOLD_S

    def refresh(self, user_id: str) -> Credential:
        """Exchange the stored refresh token for a new access token.

        RULES:
        - Raises NotAuthenticatedError if there is no stored credential
        - On provider error: wipes the user, emits "session_expired",
          raises TokenRefreshError
        - TokenServiceUnavailable propagates with the credential kept, so
          the next scheduled check can try again
        """
        current = self.credential(user_id)
        if current is None:
            raise NotAuthenticatedError(user_id)

        try:
            data = self._request_token({
                "refresh_token": current.refresh_token,
                "grant_type": "refresh_token",
            })
        except TokenServiceUnavailable as exc:
            logger.warning("Token service unavailable while refreshing %s: %s", user_id, exc)
            raise
        except AuthError as exc:
            logger.warning("Token refresh failed for %s: %s", user_id, exc)
            self._store.reset_user(user_id)
            self._emit(EVENT_SESSION_EXPIRED, user_id)
            raise TokenRefreshError(str(exc)) from exc

        credential = Credential.from_token_response(
            data, logged_in_at=self._clock(), scope=current.scope
        )
        self._store.set_json(user_id, FIELD_AUTH, credential.to_dict())
        logger.info("Refreshed token for %s", user_id)
        return credential

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, user_id: str) -> int:
        """Delete every stored key for the user. Returns the number removed."""
        return self._store.reset_user(user_id)

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    def _request_token(self, form: Dict[str, str]) -> Dict[str, Any]:
        """POST a grant to the token endpoint and return the JSON body.

        RULES:
        - Transport errors, 5xx statuses and unreadable bodies raise
          TokenServiceUnavailable
        - 4xx statuses, bodies carrying an "error" key and bodies without
          an access_token raise AuthError (the provider said no)
        """
        body = dict(form)
        body["client_id"] = self._client_id
        body["client_secret"] = self._client_secret

        try:
            resp = self._http.post(
                "{}/api/v2/oauth2/token".format(self._id_url),
                data=body,
                headers={"User-Agent": HARVEST_USER_AGENT},
            )
        except httpx.HTTPError as exc:
            raise TokenServiceUnavailable("Token request failed: {}".format(exc)) from exc

        if resp.status_code >= 500:
            raise TokenServiceUnavailable(
                "Token endpoint returned {}".format(resp.status_code)
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise TokenServiceUnavailable("Unreadable token response") from exc

        if not isinstance(data, dict):
            raise TokenServiceUnavailable("Unexpected token response")
        if data.get("error"):
            raise AuthError("Auth Error: {}".format(data["error"]))
        if resp.status_code >= 400 or "access_token" not in data:
            raise AuthError("Token request rejected ({})".format(resp.status_code))
        return data


def _parse_state(state: Optional[str]) -> Optional[str]:
    """Extract the state token from the JSON-encoded ?state parameter."""
    if not state:
        return None
    try:
        parsed = json.loads(state)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    token = parsed.get("uuid")
    return token if isinstance(token, str) and token else None
