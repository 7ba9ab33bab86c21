"""
Notification Service — OTP delivery and signer notices (SMS / Email).

`ConsoleDeliveryChannel` simulates a provider for development and keeps an
in-memory outbox; `BrevoDeliveryChannel` talks to the Brevo transactional
API over httpx. Both raise DeliveryError on failure.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

import httpx

from esign_engine.config import Settings, get_settings
from esign_engine.exceptions import DeliveryError
from esign_engine.models.enums import OtpChannel
from esign_engine.utils.clock import utcnow
from esign_engine.utils.validators import mask_email, mask_phone

logger = logging.getLogger(__name__)

BREVO_BASE_URL = "https://api.brevo.com/v3"

OTP_MESSAGE = "Your signing verification code is {code}. It expires in {minutes} minutes. Do not share it."


class DeliveryChannel(ABC):
    """Sends one-time codes and plain notices to a destination over one channel."""

    @abstractmethod
    async def send(self, destination: str, channel: OtpChannel, code: str) -> None:
        """Deliver `code`. Raises DeliveryError if the provider rejects it."""

    @abstractmethod
    async def notify(self, destination: str, channel: OtpChannel, subject: str, text: str) -> None:
        """Deliver a free-text notice. Raises DeliveryError if the provider rejects it."""


@dataclass
class OutboxMessage:
    destination: str
    channel: OtpChannel
    code: Optional[str] = None
    text: Optional[str] = None
    sent_at: datetime = field(default_factory=utcnow)


def _mask(destination: str, channel: OtpChannel) -> str:
    return mask_phone(destination) if channel == OtpChannel.SMS else mask_email(destination)


class ConsoleDeliveryChannel(DeliveryChannel):
    """Development channel: logs a masked notice and keeps the message in memory."""

    def __init__(self, max_messages: int = 100):
        self.outbox: List[OutboxMessage] = []
        self.max_messages = max_messages

    def _keep(self, message: OutboxMessage) -> None:
        self.outbox.append(message)
        del self.outbox[:-self.max_messages]

    async def send(self, destination: str, channel: OtpChannel, code: str) -> None:
        logger.info("[%s] OTP dispatched to %s (simulated provider)", channel.value, _mask(destination, channel))
        self._keep(OutboxMessage(destination=destination, channel=channel, code=code))

    async def notify(self, destination: str, channel: OtpChannel, subject: str, text: str) -> None:
        logger.info("[%s] '%s' sent to %s (simulated provider)", channel.value, subject, _mask(destination, channel))
        self._keep(OutboxMessage(destination=destination, channel=channel, text=text))

    def last_code_for(self, destination: str) -> Optional[str]:
        for message in reversed(self.outbox):
            if message.destination == destination and message.code is not None:
                return message.code
        return None


class BrevoDeliveryChannel(DeliveryChannel):
    """Brevo transactional email + SMS."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        self._client = client or httpx.AsyncClient(
            base_url=BREVO_BASE_URL,
            timeout=self.settings.OTP_DELIVERY_TIMEOUT_SECONDS,
            headers={
                "api-key": self.settings.BREVO_API_KEY,
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    def _message(self, code: str) -> str:
        return OTP_MESSAGE.format(code=code, minutes=self.settings.OTP_TTL_MINUTES)

    def _payload(self, destination: str, channel: OtpChannel, subject: str, text: str) -> tuple[str, Dict]:
        if channel == OtpChannel.SMS:
            return "/transactionalSMS/sms", {
                "sender": self.settings.BREVO_SMS_SENDER,
                "recipient": destination,
                "content": text,
                "type": "transactional",
            }
        return "/smtp/email", {
            "sender": {"email": self.settings.BREVO_SENDER_EMAIL, "name": self.settings.BREVO_SENDER_NAME},
            "to": [{"email": destination}],
            "subject": subject,
            "textContent": text,
        }

    async def _post(self, channel: OtpChannel, path: str, body: Dict) -> None:
        try:
            response = await self._client.post(path, json=body)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.error("Brevo rejected %s delivery: HTTP %s", channel.value, exc.response.status_code)
            raise DeliveryError(
                f"{channel.value} provider rejected the message",
                channel=channel.value,
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("Brevo %s delivery failed: %s", channel.value, exc)
            raise DeliveryError(f"{channel.value} provider unreachable", channel=channel.value) from exc

    async def send(self, destination: str, channel: OtpChannel, code: str) -> None:
        path, body = self._payload(destination, channel, "Your signing verification code", self._message(code))
        await self._post(channel, path, body)

    async def notify(self, destination: str, channel: OtpChannel, subject: str, text: str) -> None:
        path, body = self._payload(destination, channel, subject, text)
        await self._post(channel, path, body)

    async def aclose(self):
        await self._client.aclose()


def build_delivery_channels(settings: Optional[Settings] = None) -> Dict[OtpChannel, DeliveryChannel]:
    """Brevo when an API key is configured, the console simulator otherwise."""
    settings = settings or get_settings()
    if settings.BREVO_API_KEY:
        brevo = BrevoDeliveryChannel(settings)
        return {OtpChannel.SMS: brevo, OtpChannel.EMAIL: brevo}
    console = ConsoleDeliveryChannel()
    return {OtpChannel.SMS: console, OtpChannel.EMAIL: console}
