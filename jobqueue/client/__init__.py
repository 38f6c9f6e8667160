"""
Client module.
Contains the job handle and the transports to a job server.
"""

from jobqueue.client.job import Job
from jobqueue.client.transport import HttpTransport, LocalTransport, Transport

__all__ = ["Job", "Transport", "LocalTransport", "HttpTransport"]
