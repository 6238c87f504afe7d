"""
Manual-Reply Detector.

Every outbound event on a business number (a message echo or a delivery
status callback) was either sent by this system or typed by a human in the
provider's own app. Ours are recognised by their provider message id, which
the outbound sender stores on the message row right after dispatch.

The echo of a send can arrive before the sender has stored the provider id.
To avoid mistaking that echo for a human reply, a row of ours that is still
``sending`` without a provider id, created within the grace window (and with
the same content, for echoes), adopts the event's id instead.

A human reply is persisted as a ``business`` message and switches the agent
off for the customer, unless the tenant explicitly opted out.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from postgrest.exceptions import APIError

from ..config import settings
from ..schemas import ChannelRef, StatusUpdate, TenantConfig
from ..utils.clock import Clock, utc_now
from ..utils.logging import get_logger, log_event
from .directory import CustomerDirectory, is_unique_violation
from .messages import SENDER_BUSINESS, STATUS_SENT, MessageLog

logger = get_logger(__name__)

OUTBOUND_OURS = "ours"
OUTBOUND_MANUAL = "manual"
OUTBOUND_IGNORED = "ignored"

MANUAL_SOURCE = "whatsapp_manual"


@dataclass
class OutboundClassification:
    """How an outbound event was classified and what it changed."""

    kind: str
    message_id: Optional[str] = None
    agent_disabled: bool = False


class ManualReplyDetector:
    """Classifies outbound provider events as ours or manual."""

    def __init__(
        self,
        messages: MessageLog,
        directory: CustomerDirectory,
        grace_seconds: Optional[float] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.messages = messages
        self.directory = directory
        self.grace_seconds = (
            settings.manual_reply_grace_seconds if grace_seconds is None else grace_seconds
        )
        self.clock = clock

    async def handle_outbound_message(
        self,
        config: TenantConfig,
        customer: Dict[str, Any],
        chat: Dict[str, Any],
        message: Any,
    ) -> OutboundClassification:
        """
        Classify a business-sent message echo.

        Args:
            config: Tenant configuration (manual-reply policy)
            customer: The customer the message went to
            chat: The customer's chat on the channel
            message: Canonical message with ``from_business`` set

        Returns:
            OutboundClassification
        """
        provider_id = message.provider_message_id
        existing = await self.messages.find_by_provider_id(chat["id"], provider_id)
        if existing is not None:
            logger.debug(
                "Outbound echo of a known message",
                extra={"chat_id": chat["id"], "message_id": existing["id"]},
            )
            return OutboundClassification(kind=OUTBOUND_OURS, message_id=existing["id"])

        if provider_id:
            pending = await self.messages.find_pending_send(
                chat["id"], self.grace_seconds, content=message.content
            )
            if pending is not None:
                await self.messages.adopt_provider_id(pending["id"], provider_id)
                logger.info(
                    "Echo arrived before dispatch finished; adopted by pending send",
                    extra={"chat_id": chat["id"], "message_id": pending["id"]},
                )
                return OutboundClassification(kind=OUTBOUND_OURS, message_id=pending["id"])

        try:
            row = await self.messages.insert(
                chat_id=chat["id"],
                content=message.content,
                sender_type=SENDER_BUSINESS,
                message_type=message.message_type,
                provider_message_id=provider_id,
                status=STATUS_SENT,
                metadata={"manual": True, "source": MANUAL_SOURCE},
                created_at=message.timestamp,
            )
        except APIError as e:
            if not is_unique_violation(e):
                raise
            # A concurrent delivery of the same echo recorded it first
            return OutboundClassification(kind=OUTBOUND_OURS)

        disabled = await self._disable_agent(config, customer["id"], chat["id"])
        await self.directory.touch_chat(chat["id"], message.timestamp)
        log_event(
            "Manual reply detected",
            tenant_id=config.tenant_id,
            chat_id=chat["id"],
            message_id=row["id"],
            agent_disabled=disabled,
            phone=customer.get("phone"),
        )
        return OutboundClassification(
            kind=OUTBOUND_MANUAL, message_id=row["id"], agent_disabled=disabled
        )

    async def handle_status(
        self,
        tenant_id: str,
        config: TenantConfig,
        status: StatusUpdate,
        channel: ChannelRef,
    ) -> OutboundClassification:
        """
        Classify a delivery status callback.

        A known message only has its status advanced. An unknown id for a
        known customer is a manual reply; it carries no content, so nothing
        is persisted, but the agent is still switched off.
        """
        if not status.recipient_phone:
            return OutboundClassification(kind=OUTBOUND_IGNORED)
        customer = await self.directory.find_customer_by_phone(tenant_id, status.recipient_phone)
        if customer is None:
            logger.debug("Status for an unknown recipient ignored", extra={"tenant_id": tenant_id})
            return OutboundClassification(kind=OUTBOUND_IGNORED)

        chat_ids = await self.directory.chat_ids_for_customer(tenant_id, customer["id"])
        existing = await self.messages.find_in_chats(chat_ids, status.provider_message_id)
        if existing is not None:
            await self.messages.update_status(existing, status.status)
            return OutboundClassification(kind=OUTBOUND_OURS, message_id=existing["id"])

        chat = await self.directory.latest_chat(tenant_id, customer["id"], channel.instance_name)
        if chat is None:
            chat = await self.directory.latest_chat(tenant_id, customer["id"])
        if chat is None:
            return OutboundClassification(kind=OUTBOUND_IGNORED)

        pending = await self.messages.find_pending_send(chat["id"], self.grace_seconds)
        if pending is not None:
            await self.messages.adopt_provider_id(pending["id"], status.provider_message_id)
            await self.messages.update_status({**pending, "status": STATUS_SENT}, status.status)
            logger.info(
                "Status arrived before dispatch finished; adopted by pending send",
                extra={"chat_id": chat["id"], "message_id": pending["id"]},
            )
            return OutboundClassification(kind=OUTBOUND_OURS, message_id=pending["id"])

        disabled = await self._disable_agent(config, customer["id"], chat["id"])
        logger.info(
            "Manual reply detected from status callback",
            extra={
                "tenant_id": tenant_id,
                "chat_id": chat["id"],
                "status": status.status,
                "agent_disabled": disabled,
            },
        )
        return OutboundClassification(kind=OUTBOUND_MANUAL, agent_disabled=disabled)

    async def _disable_agent(self, config: TenantConfig, customer_id: str, chat_id: str) -> bool:
        if not config.disables_agent_on_manual_reply:
            return False
        await self.directory.set_agent_enabled(customer_id, chat_id, False)
        return True
