"""
Promotion sweeper module.
Promotes due jobs and fails runs that outlived their work timeout.
"""

from jobqueue.sweeper.main import Promoter

__all__ = ["Promoter"]
