"""
FastAPI dependencies shared by the routes.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from jobqueue.server.dispatcher import JobServer


def get_job_server(request: Request) -> JobServer:
    """
    Return the job server owned by the application.

    Raises:
        HTTPException: If the application has not finished starting.
    """
    server = getattr(request.app.state, "job_server", None)
    if server is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job server not initialized",
        )
    return server


# Type alias for dependency injection
CurrentServer = Annotated[JobServer, Depends(get_job_server)]
