from __future__ import annotations

import asyncio
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Mapping, Protocol

from stepguard.logging import get_logger
from stepguard.service.errors import ChannelUnavailable, DeliveryRejected, ValidationError
from stepguard.service.masking import mask_destination, mask_identifier
from stepguard.storage.models import ChannelKind, FlowKind, utc_now

logger = get_logger(__name__)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_SEPARATORS = re.compile(r"[\s\-().]")


def normalize_email(value: str) -> str:
    """Lower-case, NFKC-normalize and validate an email address."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = unicodedata.normalize("NFKC", value.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise ValueError("invalid email address length")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def normalize_phone(value: str) -> str:
    """Reduce a phone number to its E.164 digits (country code, no ``+``)."""
    if not isinstance(value, str):
        raise ValueError("phone must be a string")
    cleaned = _PHONE_SEPARATORS.sub("", value.strip())
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if not cleaned.isdigit():
        raise ValueError("phone must contain only digits")
    if not 8 <= len(cleaned) <= 15:
        raise ValueError("phone must have between 8 and 15 digits")
    return cleaned


@dataclass(frozen=True)
class OTPMessage:
    """What a transport needs to render a passcode message."""

    code: str = field(repr=False)
    expires_in_minutes: int
    flow: FlowKind


@dataclass(frozen=True)
class DeliveryContext:
    session_id: str
    flow: FlowKind
    expires_in_minutes: int


@dataclass(frozen=True)
class DeliveryReceipt:
    channel: ChannelKind
    message_id: str
    masked_destination: str
    attempts: int
    delivered_at: datetime


class ChannelTransport(Protocol):
    async def send(self, destination: str, message: OTPMessage) -> str:
        """Deliver and return the transport's message id.

        Raises ``ChannelUnavailable`` or ``DeliveryRejected``.
        """
        ...


class ChannelDispatcher:
    """Route a passcode to the transport registered for its channel.

    A transport that cannot be reached (or exceeds ``timeout_seconds``) is
    retried at most ``max_retries`` times; a rejection is never retried.
    The plaintext code is handed to the transport and not kept.
    """

    def __init__(
        self,
        transports: Mapping[ChannelKind, ChannelTransport],
        *,
        timeout_seconds: float = 10.0,
        max_retries: int = 1,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.transports = dict(transports)
        self.timeout_seconds = timeout_seconds
        self.max_retries = min(max(max_retries, 0), 1)
        self._clock = clock

    def supports(self, kind: ChannelKind) -> bool:
        return kind in self.transports

    @staticmethod
    def validate_destination(kind: ChannelKind, destination: str) -> str:
        try:
            if kind is ChannelKind.EMAIL:
                return normalize_email(destination)
            return normalize_phone(destination)
        except ValueError as exc:
            raise ValidationError(
                f"malformed {kind.value} destination", detail={"channel": kind.value}
            ) from exc

    async def deliver(
        self,
        kind: ChannelKind,
        destination: str,
        code: str,
        context: DeliveryContext,
    ) -> DeliveryReceipt:
        transport = self.transports.get(kind)
        if transport is None:
            logger.error("otp_channel_not_configured", channel=kind.value)
            raise ChannelUnavailable(
                f"{kind.value} channel is not configured", detail={"channel": kind.value}
            )
        destination = self.validate_destination(kind, destination)
        masked = mask_destination(kind, destination)
        message = OTPMessage(
            code=code, expires_in_minutes=context.expires_in_minutes, flow=context.flow
        )

        attempts = 0
        while True:
            attempts += 1
            try:
                message_id = await asyncio.wait_for(
                    transport.send(destination, message), timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError:
                failure = ChannelUnavailable(
                    f"{kind.value} delivery timed out", detail={"channel": kind.value}
                )
            except ChannelUnavailable as exc:
                failure = exc
            except DeliveryRejected:
                logger.warning(
                    "otp_delivery_rejected",
                    channel=kind.value,
                    destination=masked,
                    session=mask_identifier(context.session_id),
                )
                raise
            else:
                logger.info(
                    "otp_delivered",
                    channel=kind.value,
                    destination=masked,
                    session=mask_identifier(context.session_id),
                    attempts=attempts,
                )
                return DeliveryReceipt(
                    channel=kind,
                    message_id=str(message_id),
                    masked_destination=masked,
                    attempts=attempts,
                    delivered_at=self._clock(),
                )

            if attempts > self.max_retries:
                logger.warning(
                    "otp_delivery_unavailable",
                    channel=kind.value,
                    destination=masked,
                    session=mask_identifier(context.session_id),
                    attempts=attempts,
                )
                raise failure
            logger.info(
                "otp_delivery_retry",
                channel=kind.value,
                destination=masked,
                attempt=attempts,
            )
