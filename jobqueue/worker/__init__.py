"""
Worker module.
Contains the worker pool, the handler registry and the worker process.
"""

from jobqueue.worker.queue import JobQueue

__all__ = ["JobQueue"]
