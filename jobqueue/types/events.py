"""
Event type definitions for the job server's method call audit stream.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from jobqueue.clock import utcnow

SERVER_CALLER = "[SERVER]"
UNAUTHENTICATED_CALLER = "[UNAUTHENTICATED]"


class MethodEvent(BaseModel):
    """
    Emitted once for every operation invoked through the job server,
    whether it returned or raised.
    """

    event_type: str
    method: str
    caller_id: str | None = None
    trusted: bool = False
    params: list[Any] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)
    return_value: Any = None
    error: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)

    @property
    def caller(self) -> str:
        """Display name of the caller for logs."""
        if self.trusted:
            return SERVER_CALLER
        return self.caller_id or UNAUTHENTICATED_CALLER

    @classmethod
    def call(
        cls,
        method: str,
        caller_id: str | None,
        trusted: bool,
        params: list[Any],
        options: dict[str, Any],
        return_value: Any,
    ) -> "MethodEvent":
        """Create an event for a method that returned."""
        return cls(
            event_type="call",
            method=method,
            caller_id=caller_id,
            trusted=trusted,
            params=params,
            options=options,
            return_value=return_value,
        )

    @classmethod
    def failure(
        cls,
        method: str,
        caller_id: str | None,
        trusted: bool,
        params: list[Any],
        options: dict[str, Any],
        error: BaseException,
    ) -> "MethodEvent":
        """Create an event for a method that raised."""
        return cls(
            event_type="error",
            method=method,
            caller_id=caller_id,
            trusted=trusted,
            params=params,
            options=options,
            error=str(error),
        )
