"""
Outbound sends on behalf of the system.

Every message the system sends is persisted with status ``sending`` before the
provider call and updated with the provider message id afterwards. The
Manual-Reply Detector relies on this: an outbound echo or status callback whose
id (or pending row) is in the log was sent by us, anything else by a human.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..exceptions import ProviderError
from ..schemas import SendInstruction
from ..utils.logging import get_logger
from .directory import CustomerDirectory
from .messages import STATUS_FAILED, STATUS_SENDING, STATUS_SENT, MessageLog
from .whatsapp import ChannelResolver

logger = get_logger(__name__)

_MEDIA_PLACEHOLDERS = {
    "image": "[Image]",
    "video": "[Video]",
    "audio": "[Audio]",
    "document": "[Document]",
}


@dataclass
class DeliveryResult:
    """Outcome of one send instruction."""

    message_ids: List[str] = field(default_factory=list)
    provider_message_ids: List[str] = field(default_factory=list)
    failed: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0 and bool(self.message_ids)


class OutboundSender:
    """Persists then dispatches system messages to a chat."""

    def __init__(
        self,
        messages: MessageLog,
        channels: ChannelResolver,
        directory: CustomerDirectory,
    ) -> None:
        self.messages = messages
        self.channels = channels
        self.directory = directory

    async def _dispatch(
        self,
        chat: Dict[str, Any],
        row: Dict[str, Any],
        send: Any,
        result: DeliveryResult,
    ) -> None:
        result.message_ids.append(row["id"])
        try:
            provider_id = await send()
        except ProviderError as e:
            await self.messages.mark_dispatched(row["id"], None, status=STATUS_FAILED)
            result.failed += 1
            logger.error(
                "Outbound message failed",
                extra={
                    "chat_id": chat["id"],
                    "message_id": row["id"],
                    "provider": e.provider,
                    "status_code": e.status_code,
                },
            )
            return
        await self.messages.mark_dispatched(row["id"], provider_id, status=STATUS_SENT)
        if provider_id:
            result.provider_message_ids.append(provider_id)

    async def deliver(
        self,
        tenant_id: str,
        customer: Dict[str, Any],
        chat: Dict[str, Any],
        instruction: SendInstruction,
        sender_type: str = "agent",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DeliveryResult:
        """
        Send a text and/or media message to a customer's chat.

        Media goes first, carrying the caption, so the customer sees the image
        before the text that refers to it.

        Args:
            tenant_id: Tenant owning the chat
            customer: Customer row (destination phone)
            chat: Chat row (channel instance, message log scope)
            instruction: What to send
            sender_type: "agent" for agent replies, "business" for system
                notifications such as order confirmations
            metadata: Extra metadata stored on each persisted message

        Returns:
            DeliveryResult with persisted and provider ids

        Raises:
            ChannelNotConfigured: If the tenant has no credentials for the chat
        """
        client = await self.channels.client_for(tenant_id, chat.get("instance_name"))
        phone = customer.get("phone") or instruction.phone
        result = DeliveryResult()
        base_metadata = {"source": "system", **(metadata or {})}

        if instruction.media_url:
            kind = instruction.media_type
            row = await self.messages.insert(
                chat_id=chat["id"],
                content=instruction.caption or _MEDIA_PLACEHOLDERS[kind],
                sender_type=sender_type,
                message_type=kind,
                status=STATUS_SENDING,
                metadata={**base_metadata, "media_url": instruction.media_url},
            )
            await self._dispatch(
                chat,
                row,
                lambda: client.send_media(
                    phone, kind, instruction.media_url, caption=instruction.caption
                ),
                result,
            )

        if instruction.message:
            row = await self.messages.insert(
                chat_id=chat["id"],
                content=instruction.message,
                sender_type=sender_type,
                message_type="text",
                status=STATUS_SENDING,
                metadata=base_metadata,
            )
            await self._dispatch(
                chat,
                row,
                lambda: client.send_text(phone, instruction.message),
                result,
            )

        await self.directory.touch_chat(chat["id"])
        logger.info(
            "Outbound delivery finished",
            extra={
                "tenant_id": tenant_id,
                "chat_id": chat["id"],
                "sender_type": sender_type,
                "sent": len(result.message_ids) - result.failed,
                "failed": result.failed,
            },
        )
        return result

    async def send_plain(self, tenant_id: str, phone: str, text: str) -> Optional[str]:
        """
        Send a text to a number outside any customer chat (operator alerts).

        Nothing is persisted, since the recipient is not a customer.
        """
        client = await self.channels.client_for(tenant_id)
        return await client.send_text(phone, text)
