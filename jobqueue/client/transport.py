"""
Transports carrying operation calls from clients to a job server.

A transport is anything with `async call(method, *args, **kwargs)`; the
`Job` handle and the worker pool only ever talk to a job server through
one. `LocalTransport` calls a server in the same process, `HttpTransport`
calls one behind the HTTP operation endpoint.
"""

import logging
from typing import Any, Protocol, runtime_checkable

import httpx
from pydantic_core import to_jsonable_python

from jobqueue.constants import API_V1_PREFIX
from jobqueue.errors import PermissionDeniedError, RemoteMethodError, UnknownMethodError
from jobqueue.server.dispatcher import JobServer

logger = logging.getLogger(__name__)


@runtime_checkable
class Transport(Protocol):
    """Invoke a named operation with arguments and get its result or error."""

    async def call(self, method: str, *args: Any, **kwargs: Any) -> Any: ...


class LocalTransport:
    """
    Transport to a job server in the same process.

    Args:
        server: The job server.
        caller_id: Identity reported to the server.
        trusted: Skip the server's permission check.
    """

    def __init__(self, server: JobServer, caller_id: str | None = None, trusted: bool = True):
        self.server = server
        self.caller_id = caller_id
        self.trusted = trusted

    async def call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        return await self.server.invoke(
            method,
            args,
            kwargs,
            caller_id=self.caller_id,
            trusted=self.trusted,
        )


class HttpTransport:
    """
    Transport to a job server behind the HTTP operation endpoint.

    Results come back as plain JSON values; callers validate documents into
    models themselves.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize the transport.

        Args:
            base_url: Base URL of the API, e.g. "http://localhost:8000".
            token: Bearer token identifying the caller.
            timeout: Request timeout in seconds.
            client: Preconfigured client; one is created if not given.
        """
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
        )
        self._headers = headers

    async def close(self) -> None:
        """Close the HTTP client and release connections."""
        await self.client.aclose()

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def call(self, method: str, *args: Any, **kwargs: Any) -> Any:
        """
        POST the call to the operation endpoint.

        Raises:
            PermissionDeniedError: On 403.
            UnknownMethodError: On 404.
            RemoteMethodError: On any other error status.
            httpx.HTTPError: When the request itself fails.
        """
        path = f"{API_V1_PREFIX}/methods/{method}"
        body = {
            "args": to_jsonable_python(list(args)),
            "kwargs": to_jsonable_python(kwargs),
        }
        response = await self.client.post(path, json=body, headers=self._headers)

        if response.status_code == 403:
            raise PermissionDeniedError(method)
        if response.status_code == 404:
            raise UnknownMethodError(method)
        if response.is_error:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            logger.warning(
                f"{method} rejected by job server",
                extra={"status_code": response.status_code, "detail": detail},
            )
            raise RemoteMethodError(response.status_code, detail)

        return response.json()["result"]
