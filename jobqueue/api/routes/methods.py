"""
Method call routes.

Every job server operation is reachable as `POST /v1/methods/{method}`
with its positional arguments and keyword options in the body. Calls are
untrusted: the caller identity from the bearer token is checked against
the server's permission rules.
"""

import logging

from fastapi import APIRouter, HTTPException, status
from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from jobqueue.api.auth import CurrentCaller
from jobqueue.api.dependencies import CurrentServer
from jobqueue.errors import InvalidArgumentError, PermissionDeniedError, UnknownMethodError
from jobqueue.types.api import MethodCallRequest, MethodCallResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/methods", tags=["Methods"])


@router.get(
    "",
    response_model=list[str],
    summary="List methods",
    description="Names of every operation on the job server.",
)
async def list_methods(server: CurrentServer) -> list[str]:
    return server.methods


@router.post(
    "/{method}",
    response_model=MethodCallResponse,
    summary="Invoke a method",
    description="Invoke a job server operation by name.",
    responses={
        403: {"description": "Method not authorized"},
        404: {"description": "Unknown method"},
        422: {"description": "Invalid arguments"},
    },
)
async def invoke_method(
    method: str,
    request: MethodCallRequest,
    server: CurrentServer,
    caller: CurrentCaller,
) -> MethodCallResponse:
    """
    Invoke a job server operation on behalf of a remote caller.

    Precondition failures are not errors: they come back as a normal
    response whose result is false, null or an empty list.

    Args:
        method: Operation name, e.g. "jobSave".
        request: Positional arguments and keyword options.
        server: The job server.
        caller: Authenticated caller.

    Returns:
        MethodCallResponse carrying the operation's return value.

    Raises:
        HTTPException: 404 for unknown methods, 403 when the caller is not
            permitted, 422 for malformed arguments.
    """
    try:
        result = await server.invoke(
            method,
            request.args,
            request.kwargs,
            caller_id=caller.caller_id,
            trusted=False,
        )
    except UnknownMethodError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except PermissionDeniedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e)) from e
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=to_jsonable_python(e.errors(include_url=False, include_context=False, include_input=False)),
        ) from e
    except (InvalidArgumentError, TypeError) as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e

    return MethodCallResponse(method=method, result=to_jsonable_python(result))
