"""
Provider module.
Contains the outbound email provider interface and the Notisend client.
"""

from mailqueue.provider.base import ProviderClient
from mailqueue.provider.notisend import NotisendClient

__all__ = ["ProviderClient", "NotisendClient"]
