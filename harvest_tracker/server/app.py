"""FastAPI application serving the Harvest OAuth redirect.

WHY: The last leg of the OAuth flow is a browser redirect from Harvest
back to us with ?code, ?scope and our JSON-encoded ?state. Something has
to receive it, complete the token exchange, and tell the user in the
browser whether it worked.

HOW: create_server() builds a FastAPI app bound to an
OAuthSessionManager. The callback endpoint calls complete_login() and
answers with a plain-text confirmation or error; the Slack side learns
about the login through the manager's "authorized" event.

RULES:
- The callback never returns a 5xx: every failure becomes a text message
- Unknown/replayed state -> 400, provider rejection -> 400
- A redirect without a code still consumes its state token
- Python 3.9+ compatible (no match/case, no PEP 604 unions)
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import FastAPI, Query
from fastapi.responses import PlainTextResponse

from harvest_tracker import __version__
from harvest_tracker.api.oauth import (
    AuthError,
    OAuthSessionManager,
    UnknownStateError,
)
from harvest_tracker.config import OAUTH_CALLBACK_PATH
from harvest_tracker.server.models import HealthResponse

logger = logging.getLogger(__name__)

AUTH_OK_MESSAGE = "Authentication complete. You can close this window and return to Slack."
AUTH_FAILED_MESSAGE = "There was a problem with the authentication, please try again."
AUTH_UNKNOWN_STATE_MESSAGE = (
    "This login link has already been used or has expired. "
    "Please request a new one from Slack."
)


def create_server(oauth: OAuthSessionManager, redis_client: Any = None) -> FastAPI:
    """Build the FastAPI app for the OAuth callback.

    WHY: Factory function lets tests bind the app to a manager backed by
    an in-memory store and mocked HTTP transport.
    """
    app = FastAPI(
        title="Harvest Tracker OAuth Callback",
        description="Receives the Harvest OAuth redirect for the Slack time-tracking bot.",
        version=__version__,
        docs_url="/docs",
        redoc_url=None,
    )

    @app.get(
        OAUTH_CALLBACK_PATH,
        response_class=PlainTextResponse,
        tags=["oauth"],
        summary="Harvest OAuth redirect",
        description=(
            "Completes a login started from Slack. Harvest appends the "
            "authorization code, the granted scope, and the JSON-encoded "
            "state that identifies the Slack user."
        ),
    )
    def authorize_callback(
        code: str = Query("", description="Authorization code issued by Harvest"),
        scope: Optional[str] = Query(None, description="Granted scope, e.g. harvest:123456"),
        state: str = Query("", description='JSON-encoded state, e.g. {"uuid": "..."}'),
        error: Optional[str] = Query(None, description="Error reported by Harvest"),
    ) -> PlainTextResponse:
        if error or not code:
            logger.warning("OAuth callback without code (error=%s)", error)
            oauth.cancel_login(state)
            return PlainTextResponse(AUTH_FAILED_MESSAGE, status_code=400)

        try:
            user_id = oauth.complete_login(state, code, scope)
        except UnknownStateError:
            logger.warning("OAuth callback with unknown state")
            return PlainTextResponse(AUTH_UNKNOWN_STATE_MESSAGE, status_code=400)
        except AuthError:
            logger.exception("OAuth code exchange failed")
            return PlainTextResponse(AUTH_FAILED_MESSAGE, status_code=400)

        logger.info("OAuth callback completed for %s", user_id)
        return PlainTextResponse(AUTH_OK_MESSAGE)

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["health"],
        summary="Health check",
        description="Liveness check; also reports whether Redis is reachable.",
    )
    def health_check() -> HealthResponse:
        redis_ok = True
        if redis_client is not None:
            try:
                redis_ok = bool(redis_client.ping())
            except Exception:
                logger.exception("Redis ping failed")
                redis_ok = False
        return HealthResponse(status="ok", version=__version__, redis=redis_ok)

    return app
