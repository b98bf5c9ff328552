"""
Outbound provider interface.

The dispatcher treats the provider as a black box: a call either returns a
ProviderMessage or raises ProviderError.
"""

from typing import Any, Protocol

from mailqueue.types.job import ProviderMessage


class ProviderClient(Protocol):
    """Transactional email API used by the dispatcher."""

    async def send(
        self,
        to: str,
        subject: str,
        html: str | None = None,
        text: str | None = None,
        from_email: str | None = None,
        from_name: str | None = None,
    ) -> ProviderMessage:
        """Send a message with inline content."""
        ...

    async def send_template(
        self,
        to: str,
        template_id: str,
        data: dict[str, Any],
        subject: str | None = None,
    ) -> ProviderMessage:
        """Send a message rendered by the provider from a stored template."""
        ...
