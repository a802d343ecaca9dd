from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock
from typing import Any, Optional, Protocol
from uuid import uuid4

from leadflow.models import (
    CampaignChannel,
    CampaignRecipientRecord,
    RecipientInput,
    TemplatePayload,
)
from leadflow.services.dedupe import normalize_email, normalize_phone

logger = logging.getLogger("leadflow.channels")

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")
_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

DEFAULT_CHANNEL_PRIORITY = [
    CampaignChannel.whatsapp,
    CampaignChannel.sms,
    CampaignChannel.email,
]


class ChannelValidationError(Exception):
    pass


class ProviderError(Exception):
    code = "provider_error"

    def __init__(self, message: str, *, code: Optional[str] = None) -> None:
        super().__init__(message)
        if code:
            self.code = code


class TransientProviderError(ProviderError):
    code = "provider_unavailable"


class PermanentProviderError(ProviderError):
    code = "provider_rejected"


class ProviderAuthError(ProviderError):
    code = "provider_auth_failed"


@dataclass
class SendResult:
    provider_message_id: str


class ChannelProvider(Protocol):
    def send(
        self,
        recipient: CampaignRecipientRecord,
        channel: CampaignChannel,
        payload: dict[str, Any],
    ) -> SendResult:
        ...


def render_template(text: Optional[str], variables: dict[str, Any]) -> str:
    if not text:
        return ""
    return _PLACEHOLDER.sub(lambda match: str(variables.get(match.group(1), "")), text)


def template_variables(recipient: CampaignRecipientRecord) -> dict[str, Any]:
    variables: dict[str, Any] = {"name": recipient.name or ""}
    variables.update(recipient.template_variables)
    return variables


class Channel(ABC):
    name: CampaignChannel

    @abstractmethod
    def validate_template(self, template: TemplatePayload) -> None:
        ...

    @abstractmethod
    def address(self, recipient: Any) -> Optional[str]:
        ...

    @abstractmethod
    def build_payload(
        self, recipient: CampaignRecipientRecord, template: TemplatePayload
    ) -> dict[str, Any]:
        ...

    def has_address(self, recipient: Any) -> bool:
        return bool(self.address(recipient))

    def validate(self, recipient: CampaignRecipientRecord) -> None:
        if not self.has_address(recipient):
            raise ChannelValidationError(f"recipient has no valid {self.name.value} address")


class EmailChannel(Channel):
    name = CampaignChannel.email

    def validate_template(self, template: TemplatePayload) -> None:
        if not (template.subject or "").strip():
            raise ChannelValidationError("email template needs a subject")
        if not template.body.strip():
            raise ChannelValidationError("email template needs a body")

    def address(self, recipient: Any) -> Optional[str]:
        email = normalize_email(recipient.email)
        if not email or not _EMAIL.match(email):
            return None
        return email

    def build_payload(
        self, recipient: CampaignRecipientRecord, template: TemplatePayload
    ) -> dict[str, Any]:
        variables = template_variables(recipient)
        return {
            "to": self.address(recipient),
            "subject": render_template(template.subject, variables),
            "body": render_template(template.body, variables),
        }


class SmsChannel(Channel):
    name = CampaignChannel.sms
    max_body_length = 1600

    def validate_template(self, template: TemplatePayload) -> None:
        if not template.body.strip():
            raise ChannelValidationError("sms template needs a body")
        if len(template.body) > self.max_body_length:
            raise ChannelValidationError("sms body is too long")

    def address(self, recipient: Any) -> Optional[str]:
        phone = normalize_phone(recipient.phone_number)
        if not 8 <= len(phone) <= 15:
            return None
        return f"+{phone}"

    def build_payload(
        self, recipient: CampaignRecipientRecord, template: TemplatePayload
    ) -> dict[str, Any]:
        return {
            "to": self.address(recipient),
            "body": render_template(template.body, template_variables(recipient)),
        }


class WhatsAppChannel(SmsChannel):
    name = CampaignChannel.whatsapp

    def validate_template(self, template: TemplatePayload) -> None:
        if not (template.whatsapp_template_name or template.body.strip()):
            raise ChannelValidationError("whatsapp campaigns need a template name or a body")

    def build_payload(
        self, recipient: CampaignRecipientRecord, template: TemplatePayload
    ) -> dict[str, Any]:
        variables = template_variables(recipient)
        if template.whatsapp_template_name:
            return {
                "to": self.address(recipient),
                "type": "template",
                "template": {
                    "name": template.whatsapp_template_name,
                    "language": template.language,
                    "parameters": [str(value) for value in variables.values()],
                },
            }
        return {
            "to": self.address(recipient),
            "type": "text",
            "text": render_template(template.body, variables),
        }


CHANNELS: dict[CampaignChannel, Channel] = {
    CampaignChannel.email: EmailChannel(),
    CampaignChannel.sms: SmsChannel(),
    CampaignChannel.whatsapp: WhatsAppChannel(),
}


def get_channel(channel: CampaignChannel) -> Channel:
    try:
        return CHANNELS[channel]
    except KeyError:
        raise ChannelValidationError(f"no concrete channel for {channel.value}") from None


def resolve_channel(
    channel: CampaignChannel,
    channel_priority: list[CampaignChannel],
    recipient: RecipientInput,
) -> Optional[CampaignChannel]:
    if channel != CampaignChannel.multi_channel:
        return channel
    for candidate in channel_priority or DEFAULT_CHANNEL_PRIORITY:
        if CHANNELS[candidate].has_address(recipient):
            return candidate
    return None


class ProviderRegistry:
    def __init__(self, providers: Optional[dict[CampaignChannel, ChannelProvider]] = None) -> None:
        self._providers: dict[CampaignChannel, ChannelProvider] = dict(providers or {})

    def register(self, channel: CampaignChannel, provider: ChannelProvider) -> None:
        self._providers[channel] = provider

    def has(self, channel: CampaignChannel) -> bool:
        return channel in self._providers

    def get(self, channel: CampaignChannel) -> ChannelProvider:
        provider = self._providers.get(channel)
        if provider is None:
            raise ChannelValidationError(f"no provider configured for {channel.value}")
        return provider


class SandboxProvider:
    """Accepts every send and keeps the payloads in memory."""

    def __init__(self, channel: CampaignChannel) -> None:
        self.channel = channel
        self._lock = Lock()
        self.sent: list[dict[str, Any]] = []

    def send(
        self,
        recipient: CampaignRecipientRecord,
        channel: CampaignChannel,
        payload: dict[str, Any],
    ) -> SendResult:
        message_id = f"{channel.value}_{uuid4().hex[:16]}"
        with self._lock:
            self.sent.append(
                {"recipient_id": recipient.id, "message_id": message_id, "payload": payload}
            )
        logger.info(
            "sandbox_send channel=%s recipient_id=%s message_id=%s",
            channel.value,
            recipient.id,
            message_id,
        )
        return SendResult(provider_message_id=message_id)


def sandbox_registry() -> ProviderRegistry:
    return ProviderRegistry({channel: SandboxProvider(channel) for channel in CHANNELS})
