"""
Customer and chat directory.

Maps (tenant, phone) to a stable customer and (tenant, customer, channel
instance) to a chat thread, creating either on first contact. Uniqueness is
enforced by the database (``customers (user_id, phone)``); a concurrent insert
that loses the race re-reads the winner's row.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import Client

from ..utils.clock import Clock, to_iso, utc_now
from ..utils.logging import get_logger
from ..utils.phone import normalize_phone
from .tenants import is_uuid

logger = get_logger(__name__)

UNIQUE_VIOLATION = "23505"


def is_unique_violation(error: APIError) -> bool:
    return getattr(error, "code", None) == UNIQUE_VIOLATION


class CustomerDirectory:
    """Customer and chat lookups scoped to one tenant per call."""

    def __init__(self, supabase: Client, clock: Clock = utc_now) -> None:
        self.supabase = supabase
        self.clock = clock

    # -- customers ----------------------------------------------------------

    async def find_customer_by_phone(self, tenant_id: str, phone: str) -> Optional[Dict[str, Any]]:
        normalized = normalize_phone(phone)
        if not normalized:
            return None
        response = (
            self.supabase.table("customers")
            .select("*")
            .eq("user_id", tenant_id)
            .eq("phone", normalized)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    async def get_customer(self, tenant_id: str, customer_id: str) -> Optional[Dict[str, Any]]:
        if not is_uuid(customer_id):
            return None
        response = (
            self.supabase.table("customers")
            .select("*")
            .eq("user_id", tenant_id)
            .eq("id", customer_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    async def ensure_customer(
        self,
        tenant_id: str,
        phone: str,
        display_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Return the tenant's customer for a phone number, creating it if needed.

        Existing customers get ``last_seen`` refreshed, and their name filled
        in when it was never known.

        Args:
            tenant_id: The tenant id
            phone: Customer phone in any WhatsApp format
            display_name: WhatsApp push name, if the provider sent one

        Returns:
            The customer row

        Raises:
            ValueError: If the phone holds no digits
        """
        normalized = normalize_phone(phone)
        if not normalized:
            raise ValueError("Customer phone is empty")

        now = to_iso(self.clock())
        existing = await self.find_customer_by_phone(tenant_id, normalized)
        if existing:
            updates: Dict[str, Any] = {"last_seen": now}
            if display_name and not existing.get("name"):
                updates["name"] = display_name
            response = (
                self.supabase.table("customers")
                .update(updates)
                .eq("id", existing["id"])
                .execute()
            )
            return response.data[0] if response.data else {**existing, **updates}

        row = {
            "user_id": tenant_id,
            "phone": normalized,
            "whatsapp_id": normalized,
            "name": display_name or normalized,
            "ai_agent_enabled": True,
            "last_seen": now,
            "updated_at": now,
        }
        try:
            response = self.supabase.table("customers").insert(row).execute()
        except APIError as e:
            if not is_unique_violation(e):
                raise
            logger.info(
                "Customer created concurrently, re-reading",
                extra={"tenant_id": tenant_id},
            )
            winner = await self.find_customer_by_phone(tenant_id, normalized)
            if winner is None:
                raise
            return winner

        customer = response.data[0]
        logger.info(
            "Customer created",
            extra={"tenant_id": tenant_id, "customer_id": customer["id"]},
        )
        return customer

    async def update_customer(self, customer_id: str, updates: Dict[str, Any]) -> None:
        if not updates:
            return
        self.supabase.table("customers").update(
            {**updates, "updated_at": to_iso(self.clock())}
        ).eq("id", customer_id).execute()

    # -- chats --------------------------------------------------------------

    async def get_chat(self, tenant_id: str, chat_id: str) -> Optional[Dict[str, Any]]:
        if not is_uuid(chat_id):
            return None
        response = (
            self.supabase.table("chats")
            .select("*")
            .eq("user_id", tenant_id)
            .eq("id", chat_id)
            .limit(1)
            .execute()
        )
        return response.data[0] if response.data else None

    async def latest_chat(
        self,
        tenant_id: str,
        customer_id: str,
        instance_name: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Most recently active chat for a customer, optionally on one channel."""
        query = (
            self.supabase.table("chats")
            .select("*")
            .eq("user_id", tenant_id)
            .eq("customer_id", customer_id)
        )
        if instance_name:
            query = query.eq("instance_name", instance_name)
        response = query.order("last_message_at", desc=True).limit(1).execute()
        return response.data[0] if response.data else None

    async def chat_ids_for_customer(self, tenant_id: str, customer_id: str) -> List[str]:
        response = (
            self.supabase.table("chats")
            .select("id")
            .eq("user_id", tenant_id)
            .eq("customer_id", customer_id)
            .execute()
        )
        return [row["id"] for row in response.data or []]

    async def ensure_chat(
        self,
        tenant_id: str,
        customer: Dict[str, Any],
        instance_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Return the customer's chat on a channel instance, creating it if needed.

        Archived chats are reactivated, since an inbound message reopens the
        conversation.

        Args:
            tenant_id: The tenant id
            customer: Customer row from ensure_customer()
            instance_name: Channel instance the message arrived on

        Returns:
            The chat row
        """
        chat = await self.latest_chat(tenant_id, customer["id"], instance_name)
        if chat:
            if chat.get("status") != "active":
                response = (
                    self.supabase.table("chats")
                    .update({"status": "active", "updated_at": to_iso(self.clock())})
                    .eq("id", chat["id"])
                    .execute()
                )
                logger.info(
                    "Archived chat reactivated",
                    extra={"tenant_id": tenant_id, "chat_id": chat["id"]},
                )
                return response.data[0] if response.data else {**chat, "status": "active"}
            return chat

        now = to_iso(self.clock())
        row = {
            "user_id": tenant_id,
            "customer_id": customer["id"],
            "instance_name": instance_name,
            "whatsapp_chat_id": customer.get("whatsapp_id") or customer.get("phone"),
            "status": "active",
            "ai_agent_enabled": customer.get("ai_agent_enabled", True),
            "last_message_at": now,
            "updated_at": now,
        }
        response = self.supabase.table("chats").insert(row).execute()
        chat = response.data[0]
        logger.info(
            "Chat created",
            extra={
                "tenant_id": tenant_id,
                "customer_id": customer["id"],
                "chat_id": chat["id"],
                "instance_name": instance_name,
            },
        )
        return chat

    async def touch_chat(self, chat_id: str, at: Optional[datetime] = None) -> None:
        stamp = to_iso(at or self.clock())
        self.supabase.table("chats").update(
            {"last_message_at": stamp, "updated_at": stamp}
        ).eq("id", chat_id).execute()

    async def set_agent_enabled(
        self,
        customer_id: Optional[str],
        chat_id: Optional[str],
        enabled: bool,
    ) -> None:
        """Set ``ai_agent_enabled`` on the customer and mirror it onto the chat."""
        now = to_iso(self.clock())
        if customer_id:
            self.supabase.table("customers").update(
                {"ai_agent_enabled": enabled, "updated_at": now}
            ).eq("id", customer_id).execute()
        if chat_id:
            self.supabase.table("chats").update(
                {"ai_agent_enabled": enabled, "updated_at": now}
            ).eq("id", chat_id).execute()
        logger.info(
            "AI agent toggled",
            extra={"customer_id": customer_id, "chat_id": chat_id, "enabled": enabled},
        )
