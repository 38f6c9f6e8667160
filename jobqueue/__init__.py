"""
jobqueue - persistent, distributed job queue.
"""

__version__ = "1.0.0"
