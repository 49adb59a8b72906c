"""Pydantic response models for the OAuth callback server.

WHY: Even the small callback server benefits from typed responses that
show up in the /docs UI.

RULES:
- All models use Field(description=...) for OpenAPI documentation
- Python 3.9+ compatible (no PEP 604 unions, use Optional from typing)
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response from GET /health."""

    status: str = Field(..., description="Service status: 'ok' when healthy")
    version: str = Field(..., description="Package version string")
    redis: bool = Field(..., description="Whether Redis answered a ping")
