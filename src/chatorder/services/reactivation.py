"""
Automatic agent reactivation.

Tenants may set ``auto_reactivation_hours`` on their profile. A conversation
whose agent was switched off (usually by a manual reply) and that has seen no
activity for that long gets the agent back.
"""

from datetime import timedelta
from typing import Dict

from supabase import Client

from ..utils.clock import Clock, to_iso, utc_now
from ..utils.logging import get_logger

logger = get_logger(__name__)


async def reactivate_agents(supabase: Client, clock: Clock = utc_now) -> Dict[str, int]:
    """
    Re-enable the agent on idle chats and customers for every opted-in tenant.

    Args:
        supabase: Supabase client
        clock: Time source

    Returns:
        Counts of tenants processed and chats/customers reactivated
    """
    profiles = (
        supabase.table("profiles")
        .select("user_id, auto_reactivation_hours")
        .gt("auto_reactivation_hours", 0)
        .execute()
    ).data or []

    now = clock()
    totals = {"tenants": 0, "chats": 0, "customers": 0}
    for profile in profiles:
        hours = float(profile["auto_reactivation_hours"])
        cutoff = to_iso(now - timedelta(hours=hours))
        stamp = to_iso(now)

        chats = (
            supabase.table("chats")
            .update({"ai_agent_enabled": True, "updated_at": stamp})
            .eq("user_id", profile["user_id"])
            .eq("ai_agent_enabled", False)
            .lt("updated_at", cutoff)
            .execute()
        ).data or []
        customers = (
            supabase.table("customers")
            .update({"ai_agent_enabled": True, "updated_at": stamp})
            .eq("user_id", profile["user_id"])
            .eq("ai_agent_enabled", False)
            .lt("updated_at", cutoff)
            .execute()
        ).data or []

        totals["tenants"] += 1
        totals["chats"] += len(chats)
        totals["customers"] += len(customers)
        if chats or customers:
            logger.info(
                "Agents reactivated",
                extra={
                    "tenant_id": profile["user_id"],
                    "chats": len(chats),
                    "customers": len(customers),
                    "after_hours": hours,
                },
            )
    return totals
