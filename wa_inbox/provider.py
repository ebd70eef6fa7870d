"""
WhatsApp Cloud API client.

Sends text messages and reports provider failures as ProviderError.
No retries.
"""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

# Cloud API error codes worth explaining to the person pressing "send"
ERROR_HINTS = {
    190: "Access token expired or invalid",
    131026: "Phone number not registered with WhatsApp Business",
    131047: "Message template required. Try messaging from WhatsApp first.",
    131051: "Invalid phone number format",
    131052: "User is not a WhatsApp user",
    100: "Invalid phone number or access token",
    4: "Rate limit exceeded",
}


class ProviderError(Exception):
    """The Cloud API rejected a send or could not be reached."""

    def __init__(self, message: str, code: Optional[int] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code


def describe_provider_error(error: ProviderError) -> str:
    """Human-readable explanation of a failed send."""
    text = f"Failed to send message: {error.message}"
    hint = ERROR_HINTS.get(error.code)
    if hint:
        text += f" - {hint}"
    if error.code is not None:
        text += f" (Error code: {error.code})"
    return text


class ProviderClient:
    """
    Thin async wrapper around POST /{phone_number_id}/messages.

    Args:
        base_url: Graph API host, e.g. https://graph.facebook.com
        api_version: Graph API version segment, e.g. v17.0
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        base_url: str,
        api_version: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_version = api_version
        self.timeout = timeout
        self.transport = transport

    def _endpoint(self, phone_number_id: str) -> str:
        return f"{self.base_url}/{self.api_version}/{phone_number_id}/messages"

    async def send_text(self, phone_number_id: str, access_token: str, to: str, body: str) -> str:
        """
        Send a text message.

        Returns:
            The provider-assigned message id (messages[0].id)

        Raises:
            ProviderError: on network failure, non-2xx response or a response without an id
        """
        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self._endpoint(phone_number_id), json=payload, headers=headers)
        except httpx.RequestError as e:
            logger.error(f"WhatsApp API request failed: {e}")
            raise ProviderError(f"Network error: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            error = data.get("error") if isinstance(data, dict) else None
            if isinstance(error, dict):
                message = error.get("message") or f"HTTP {response.status_code}"
                code = error.get("code") if isinstance(error.get("code"), int) else None
            else:
                message = f"HTTP {response.status_code}: {response.reason_phrase}"
                code = None
            logger.error(
                f"WhatsApp API error: {response.status_code} - {message}",
                extra={"status_code": response.status_code, "error_code": code},
            )
            raise ProviderError(message, code=code, status_code=response.status_code)

        try:
            provider_message_id = data["messages"][0]["id"]
        except (TypeError, KeyError, IndexError):
            logger.error(f"WhatsApp API returned no message id: {response.text}")
            raise ProviderError("Malformed response from WhatsApp API", status_code=response.status_code)

        logger.info(f"Message accepted by WhatsApp API: {provider_message_id}")
        return provider_message_id
