"""
Notisend transactional email client.

Posts messages to the Notisend HTTP API with bearer authentication. Every
failure surfaces as ProviderError so the dispatcher can decide between retry
and terminal failure.
"""

import json
import logging
from typing import Any

import httpx

from mailqueue.config import get_settings
from mailqueue.constants import DEFAULT_TEMPLATE_SUBJECT
from mailqueue.exceptions import ProviderError, ProviderNotConfiguredError
from mailqueue.types.job import ProviderMessage

logger = logging.getLogger(__name__)


class NotisendClient:
    """
    Client for the Notisend email API.

    Features:
    - Inline (html/text) and template sends
    - Provider error text extracted from JSON error bodies
    - Network errors wrapped in ProviderError
    """

    def __init__(
        self,
        api_key: str | None = None,
        project_name: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        default_from_email: str | None = None,
        default_from_name: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            api_key: Notisend API key. Defaults to settings.
            project_name: Notisend project name. Defaults to settings.
            base_url: API base URL. Defaults to settings.
            timeout: Request timeout in seconds.
            default_from_email: Sender used for template sends.
            default_from_name: Sender name used for template sends.
            transport: Optional httpx transport, used by tests.
        """
        settings = get_settings()

        self.api_key = settings.notisend_api_key if api_key is None else api_key
        self.project_name = (
            settings.notisend_project_name if project_name is None else project_name
        )
        self.base_url = (base_url or settings.notisend_base_url).rstrip("/")
        self.timeout = timeout or settings.notisend_timeout_seconds
        self.default_from_email = default_from_email or settings.default_from_email
        self.default_from_name = default_from_name or settings.default_from_name
        self._transport = transport

        if not self.is_configured:
            logger.warning("Notisend credentials not set; sends will fail")

    @property
    def is_configured(self) -> bool:
        """Check if credentials are present."""
        return bool(self.api_key) and bool(self.project_name)

    async def send(
        self,
        to: str,
        subject: str,
        html: str | None = None,
        text: str | None = None,
        from_email: str | None = None,
        from_name: str | None = None,
    ) -> ProviderMessage:
        """
        Send a message with inline content.

        Args:
            to: Recipient address.
            subject: Message subject.
            html: HTML body.
            text: Plain-text body.
            from_email: Sender address.
            from_name: Sender display name.

        Returns:
            ProviderMessage with the provider-assigned id.

        Raises:
            ProviderError: If the provider rejects the message or is unreachable.
        """
        body: dict[str, Any] = {
            "to": to,
            "subject": subject,
            "html": html or "",
        }
        if text:
            body["text"] = text
        if from_email:
            body["from_email"] = from_email
        if from_name:
            body["from_name"] = from_name

        return await self._post_message(body)

    async def send_template(
        self,
        to: str,
        template_id: str,
        data: dict[str, Any],
        subject: str | None = None,
    ) -> ProviderMessage:
        """
        Send a message rendered from a provider-side template.

        Args:
            to: Recipient address.
            template_id: Provider template identifier.
            data: Template variables, forwarded verbatim.
            subject: Message subject.

        Returns:
            ProviderMessage with the provider-assigned id.

        Raises:
            ProviderError: If the provider rejects the message or is unreachable.
        """
        body: dict[str, Any] = {
            "to": to,
            "subject": subject or DEFAULT_TEMPLATE_SUBJECT,
            "html": "",
            "template_id": template_id,
            "template_data": json.dumps(data, ensure_ascii=False),
            "from_email": self.default_from_email,
            "from_name": self.default_from_name,
        }
        return await self._post_message(body)

    async def _post_message(self, body: dict[str, Any]) -> ProviderMessage:
        if not self.is_configured:
            raise ProviderNotConfiguredError("Email provider is not configured")

        if not body.get("to") or not body.get("subject"):
            raise ProviderError('Email "to" and "subject" are required')

        payload = {"project": self.project_name, **body}

        logger.debug(
            "Sending email via Notisend",
            extra={"to": body["to"], "project": self.project_name},
        )

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    "/email/messages",
                    json=payload,
                    headers={
                        "Accept": "application/json",
                        "Authorization": f"Bearer {self.api_key}",
                    },
                )
        except httpx.HTTPError as e:
            raise ProviderError(f"Notisend request failed: {e}") from e

        if not response.is_success:
            raise ProviderError(
                f"Notisend API error: {response.status_code} - {_error_detail(response)}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError:
            return ProviderMessage(id=None)

        message_id = data.get("id") if isinstance(data, dict) else None
        return ProviderMessage(id=str(message_id) if message_id is not None else None)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        return str(data.get("error") or data.get("message") or response.text[:200])
    return response.text[:200]
