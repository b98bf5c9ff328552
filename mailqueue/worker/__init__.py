"""
Worker module.
Contains the dispatcher that claims and sends queued emails.
"""

from mailqueue.worker.main import Dispatcher, retry_delay_minutes, run

__all__ = ["Dispatcher", "retry_delay_minutes", "run"]
