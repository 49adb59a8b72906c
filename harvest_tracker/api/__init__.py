"""Harvest API package: OAuth sessions and the authenticated REST client.

WHY: The bot talks to two Harvest services: the id service (OAuth
authorize + token endpoints) and the v2 REST API. This package keeps all
Harvest HTTP communication in one place.

HOW: OAuthSessionManager owns the token lifecycle; HarvestClient reads
the stored tokens to make per-user API calls. Response data is parsed
into dataclasses defined in models.py.

RULES:
- All Harvest HTTP calls go through these two classes
- Tokens are only ever read from and written to the TokenStore
"""

from harvest_tracker.api.client import ApiError, HarvestClient
from harvest_tracker.api.models import (
    Credential,
    ProjectAssignment,
    TaskAssignment,
    TimeEntry,
)
from harvest_tracker.api.oauth import (
    AuthError,
    NotAuthenticatedError,
    OAuthSessionManager,
    TokenExchangeError,
    TokenRefreshError,
    TokenServiceUnavailable,
    UnknownStateError,
)

__all__ = [
    "ApiError",
    "AuthError",
    "Credential",
    "HarvestClient",
    "NotAuthenticatedError",
    "OAuthSessionManager",
    "ProjectAssignment",
    "TaskAssignment",
    "TimeEntry",
    "TokenExchangeError",
    "TokenRefreshError",
    "TokenServiceUnavailable",
    "UnknownStateError",
]
