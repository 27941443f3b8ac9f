from __future__ import annotations

import secrets
from typing import Optional

import httpx

from stepguard.logging import get_logger
from stepguard.service.channels import OTPMessage
from stepguard.service.errors import ChannelUnavailable, DeliveryRejected
from stepguard.service.masking import mask_phone

logger = get_logger(__name__)


class WhatsAppService:
    """Messaging transport backed by the WhatsApp Cloud API.

    Without a phone number id and access token the service runs in dev mode
    and only logs the masked destination.
    """

    def __init__(
        self,
        *,
        api_base_url: str = "https://graph.facebook.com/v19.0",
        phone_number_id: Optional[str] = None,
        access_token: Optional[str] = None,
        brand_name: str = "StepGuard",
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.phone_number_id = phone_number_id
        self.access_token = access_token
        self.brand_name = brand_name
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.phone_number_id and self.access_token)

    def render_otp(self, message: OTPMessage) -> str:
        return (
            f"{self.brand_name} verification code: {message.code}. "
            f"This code will expire in {message.expires_in_minutes} minutes."
        )

    async def send(self, destination: str, message: OTPMessage) -> str:
        masked_to = mask_phone(destination)
        if not self.is_configured:
            message_id = f"dev-{secrets.token_hex(8)}"
            logger.info("whatsapp_dev_mode", to=masked_to, message_id=message_id)
            return message_id

        url = f"{self.api_base_url}/{self.phone_number_id}/messages"
        body = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": destination,
            "type": "text",
            "text": {"preview_url": False, "body": self.render_otp(message)},
        }
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as exc:
            logger.error("whatsapp_timeout", to=masked_to)
            raise ChannelUnavailable(
                "messaging delivery timed out", detail={"channel": "messaging"}
            ) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "whatsapp_transport_error", to=masked_to, error_type=type(exc).__name__
            )
            raise ChannelUnavailable(
                "messaging transport unavailable", detail={"channel": "messaging"}
            ) from exc

        if response.status_code == 429 or response.status_code >= 500:
            logger.error(
                "whatsapp_unavailable", to=masked_to, status_code=response.status_code
            )
            raise ChannelUnavailable(
                "messaging transport unavailable", detail={"channel": "messaging"}
            )
        if response.status_code >= 400:
            logger.warning(
                "whatsapp_rejected",
                to=masked_to,
                status_code=response.status_code,
                provider_error=self._provider_error_code(response),
            )
            raise DeliveryRejected(
                "messaging recipient rejected", detail={"channel": "messaging"}
            )

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("whatsapp_response_parse_error", to=masked_to)
            raise ChannelUnavailable(
                "messaging transport returned an invalid response",
                detail={"channel": "messaging"},
            ) from exc
        messages = payload.get("messages") if isinstance(payload, dict) else None
        if not messages or not isinstance(messages, list) or not messages[0].get("id"):
            logger.error("whatsapp_missing_message_id", to=masked_to)
            raise ChannelUnavailable(
                "messaging transport returned an invalid response",
                detail={"channel": "messaging"},
            )
        message_id = str(messages[0]["id"])
        logger.info("whatsapp_sent", to=masked_to, message_id=message_id)
        return message_id

    @staticmethod
    def _provider_error_code(response: httpx.Response) -> Optional[int]:
        try:
            data = response.json()
        except ValueError:
            return None
        error = data.get("error") if isinstance(data, dict) else None
        return error.get("code") if isinstance(error, dict) else None
