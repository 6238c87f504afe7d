"""
Persisted message log.

Every inbound and outbound communication is written to ``messages`` exactly
once. Only the delivery ``status`` and the media fields in ``metadata`` are
updated afterwards.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from supabase import Client

from ..utils.clock import Clock, to_iso, utc_now
from ..utils.logging import get_logger

logger = get_logger(__name__)

SENDER_CUSTOMER = "customer"
SENDER_BUSINESS = "business"
SENDER_AGENT = "agent"

STATUS_SENDING = "sending"
STATUS_SENT = "sent"
STATUS_FAILED = "failed"
STATUS_RECEIVED = "received"

# Provider status order; a late "sent" callback must not overwrite "read".
_STATUS_RANK = {"sending": 0, "failed": 0, "sent": 1, "delivered": 2, "read": 3, "played": 4}


class MessageLog:
    """Reads and writes rows of the ``messages`` table."""

    def __init__(self, supabase: Client, clock: Clock = utc_now) -> None:
        self.supabase = supabase
        self.clock = clock

    async def insert(
        self,
        chat_id: str,
        content: str,
        sender_type: str,
        message_type: str = "text",
        provider_message_id: Optional[str] = None,
        status: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        created_at: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Insert one message row.

        Raises:
            postgrest.exceptions.APIError: On a duplicate (chat, provider id);
                callers treat that as an idempotent discard.
        """
        row = {
            "chat_id": chat_id,
            "content": content,
            "sender_type": sender_type,
            "message_type": message_type,
            "whatsapp_message_id": provider_message_id,
            "status": status,
            "metadata": metadata or {},
            "created_at": to_iso(created_at or self.clock()),
        }
        response = self.supabase.table("messages").insert(row).execute()
        message = response.data[0]
        logger.debug(
            "Message persisted",
            extra={
                "message_id": message["id"],
                "chat_id": chat_id,
                "sender_type": sender_type,
                "message_type": message_type,
            },
        )
        return message

    async def find_by_provider_id(
        self,
        chat_id: str,
        provider_message_id: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        if not provider_message_id:
            return None
        response = (
            self.supabase.table("messages")
            .select("*")
            .eq("chat_id", chat_id)
            .eq("whatsapp_message_id", provider_message_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    async def find_in_chats(
        self,
        chat_ids: List[str],
        provider_message_id: str,
    ) -> Optional[Dict[str, Any]]:
        """Look a provider id up across several chats (status callbacks)."""
        if not chat_ids or not provider_message_id:
            return None
        response = (
            self.supabase.table("messages")
            .select("*")
            .in_("chat_id", chat_ids)
            .eq("whatsapp_message_id", provider_message_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    async def find_pending_send(
        self,
        chat_id: str,
        within_seconds: float,
        content: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Find a system send that was persisted but has no provider id yet.

        Args:
            chat_id: Chat to search
            within_seconds: Only rows created this recently qualify
            content: When given, the row's content must match exactly

        Returns:
            The oldest matching row, or None
        """
        cutoff = to_iso(self.clock() - timedelta(seconds=within_seconds))
        query = (
            self.supabase.table("messages")
            .select("*")
            .eq("chat_id", chat_id)
            .eq("status", STATUS_SENDING)
            .is_("whatsapp_message_id", "null")
            .gte("created_at", cutoff)
        )
        if content is not None:
            query = query.eq("content", content)
        response = query.order("created_at").limit(1).execute()
        return response.data[0] if response.data else None

    async def update_status(self, message: Dict[str, Any], status: Optional[str]) -> None:
        """Advance the delivery status; never moves it backwards."""
        if not status:
            return
        current = message.get("status")
        if current in _STATUS_RANK and status in _STATUS_RANK:
            if _STATUS_RANK[status] < _STATUS_RANK[current] and status != STATUS_FAILED:
                return
        self.supabase.table("messages").update({"status": status}).eq(
            "id", message["id"]
        ).execute()
        logger.debug(
            "Message status updated",
            extra={"message_id": message["id"], "status": status},
        )

    async def mark_dispatched(
        self,
        message_id: str,
        provider_message_id: Optional[str],
        status: str = STATUS_SENT,
    ) -> None:
        updates: Dict[str, Any] = {"status": status}
        if provider_message_id:
            updates["whatsapp_message_id"] = provider_message_id
        self.supabase.table("messages").update(updates).eq("id", message_id).execute()

    async def adopt_provider_id(self, message_id: str, provider_message_id: str) -> None:
        self.supabase.table("messages").update(
            {"whatsapp_message_id": provider_message_id, "status": STATUS_SENT}
        ).eq("id", message_id).execute()

    async def update_media(
        self,
        message_id: str,
        metadata: Dict[str, Any],
        content: Optional[str] = None,
    ) -> None:
        updates: Dict[str, Any] = {"metadata": metadata}
        if content is not None:
            updates["content"] = content
        self.supabase.table("messages").update(updates).eq("id", message_id).execute()

    async def get(self, message_id: str) -> Optional[Dict[str, Any]]:
        response = (
            self.supabase.table("messages").select("*").eq("id", message_id).limit(1).execute()
        )
        return response.data[0] if response.data else None


def media_error_placeholder(message_type: str) -> str:
    """Content left on a media message whose download or upload failed."""
    return f"[could not process {message_type}]"
