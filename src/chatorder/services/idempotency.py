"""
Idempotency guard for inbound provider events.

Providers retry deliveries they did not see acknowledged, so the same
provider message id can arrive several times. A message is a duplicate when
its id is already on an unsent buffer entry or in the message log of the same
chat. Provider ids are only unique per channel, so the lookup is always
scoped by tenant and chat.
"""

from typing import Optional

from supabase import Client

from ..utils.logging import get_logger

logger = get_logger(__name__)


async def find_queued_entry(
    supabase: Client,
    tenant_id: str,
    chat_id: str,
    provider_message_id: str,
) -> Optional[dict]:
    """
    Find an unsent buffer entry carrying a provider message id.

    Args:
        supabase: Supabase client for querying
        tenant_id: Tenant scope
        chat_id: Chat scope
        provider_message_id: Provider message id to look for

    Returns:
        The queue entry (as dict) if one exists, None otherwise
    """
    response = (
        supabase.table("message_queue")
        .select("id, group_id")
        .eq("user_id", tenant_id)
        .eq("chat_id", chat_id)
        .eq("whatsapp_message_id", provider_message_id)
        .eq("sent", False)
        .limit(1)
        .execute()
    )
    return response.data[0] if response.data else None


async def find_logged_message(
    supabase: Client,
    chat_id: str,
    provider_message_id: str,
) -> Optional[dict]:
    """
    Find a persisted message carrying a provider message id.

    Returns:
        The message (as dict) if one exists, None otherwise
    """
    response = (
        supabase.table("messages")
        .select("id, status")
        .eq("chat_id", chat_id)
        .eq("whatsapp_message_id", provider_message_id)
        .limit(1)
        .execute()
    )
    return response.data[0] if response.data else None


async def is_duplicate(
    supabase: Client,
    tenant_id: str,
    chat_id: str,
    provider_message_id: Optional[str],
) -> bool:
    """
    Check both idempotency sources for a provider message id.

    Messages without a provider id cannot be deduplicated and are never
    reported as duplicates.

    Args:
        supabase: Supabase client for querying
        tenant_id: Tenant scope
        chat_id: Chat scope
        provider_message_id: Provider message id of the inbound event

    Returns:
        True when the event was already accepted
    """
    if not provider_message_id:
        return False

    entry = await find_queued_entry(supabase, tenant_id, chat_id, provider_message_id)
    if entry:
        logger.info(
            "Duplicate inbound event discarded (buffered)",
            extra={
                "tenant_id": tenant_id,
                "chat_id": chat_id,
                "provider_message_id": provider_message_id,
                "group_id": entry["group_id"],
            },
        )
        return True

    message = await find_logged_message(supabase, chat_id, provider_message_id)
    if message:
        logger.info(
            "Duplicate inbound event discarded (logged)",
            extra={
                "tenant_id": tenant_id,
                "chat_id": chat_id,
                "provider_message_id": provider_message_id,
                "message_id": message["id"],
            },
        )
        return True

    logger.debug(
        "Provider message id is new",
        extra={"chat_id": chat_id, "provider_message_id": provider_message_id},
    )
    return False
