"""
Sweeper module.
Contains the retention sweeper for deleting old terminal emails.
"""

from mailqueue.sweeper.main import RetentionSweeper, run

__all__ = ["RetentionSweeper", "run"]
