import uuid
from dataclasses import dataclass
from typing import Protocol

import httpx

from fieldflow.services.automation_errors import ActionFailure
from fieldflow.services.crm_client import GhlClient


@dataclass(frozen=True)
class MessageSendRequest:
    location_id: str
    channel: str
    recipient: str
    content: str
    subject: str | None = None
    crm_contact_id: str | None = None
    crm_access_token: str | None = None


@dataclass(frozen=True)
class MessageSendResult:
    provider: str
    message_id: str
    status: str


class MessagingProvider(Protocol):
    name: str

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        ...


class StubSmsProvider:
    name = "sms_stub"

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        return MessageSendResult(
            provider=self.name,
            message_id=f"msg-{uuid.uuid4().hex[:14]}",
            status="sent",
        )


class GhlConversationsProvider:
    name = "ghl"

    def __init__(self, *, transport: httpx.BaseTransport | None = None):
        self._transport = transport

    def send_message(self, request: MessageSendRequest) -> MessageSendResult:
        if not request.crm_access_token:
            raise ActionFailure("Location has no CRM access token")
        if not request.crm_contact_id:
            raise ActionFailure("Contact is not linked to a CRM contact")
        message_type = "Email" if request.channel == "email" else "SMS"
        with GhlClient(request.crm_access_token, transport=self._transport) as client:
            payload = client.send_message(
                contact_id=request.crm_contact_id,
                message_type=message_type,
                message=request.content,
                subject=request.subject,
            )
        message_id = str(payload.get("messageId") or payload.get("id") or "")
        return MessageSendResult(provider=self.name, message_id=message_id, status="sent")


def build_messaging_providers(*, transport: httpx.BaseTransport | None = None) -> dict[str, MessagingProvider]:
    providers: list[MessagingProvider] = [
        GhlConversationsProvider(transport=transport),
        StubSmsProvider(),
    ]
    return {provider.name: provider for provider in providers}


def get_messaging_provider(providers: dict[str, MessagingProvider], name: str) -> MessagingProvider:
    normalized = (name or "").strip().lower()
    provider = providers.get(normalized)
    if not provider:
        available = ", ".join(sorted(providers))
        raise ActionFailure(f"Unknown messaging provider '{name}'. Available: {available}")
    return provider
