"""
Durable Email Dispatch Queue

A persisted email job table consumed by polling workers, with atomic claims,
lease recovery for crashed workers, throttled sends, and retry with backoff.
"""

__version__ = "1.0.0"
