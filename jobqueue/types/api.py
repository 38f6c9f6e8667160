"""
API request and response type definitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class MethodCallRequest(BaseModel):
    """Request body for invoking an operation on the job server."""

    args: list[Any] = Field(default_factory=list, description="Positional arguments")
    kwargs: dict[str, Any] = Field(default_factory=dict, description="Keyword options")


class MethodCallResponse(BaseModel):
    """Response body carrying an operation's return value."""

    method: str
    result: Any = None


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int


class AuthRequest(BaseModel):
    """Request for authentication."""

    api_key: str = Field(..., min_length=1)
    caller_id: str = Field(..., min_length=1)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    server: str
    timestamp: datetime
