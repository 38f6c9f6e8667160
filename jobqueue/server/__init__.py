"""
Job server module.
Contains the state machine, dependency resolver, permissions and the
named operation surface.
"""

from jobqueue.server.dispatcher import JobServer
from jobqueue.server.permissions import PermissionTable
from jobqueue.server.state_machine import JobStateMachine

__all__ = ["JobServer", "JobStateMachine", "PermissionTable"]
