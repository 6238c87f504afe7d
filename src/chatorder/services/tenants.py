"""
Tenant resolution and configuration loading.

Webhook URLs identify the tenant either by its id or by an opaque token issued
into the ``webhook_tokens`` table; Meta deliveries may instead be resolved
through the ``phone_number_id`` they arrived on. Tenant configuration is read
from ``profiles`` and ``store_settings`` into a single TenantConfig that is
passed explicitly through the pipeline.
"""

import json
import uuid
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from supabase import Client

from ..config import settings
from ..exceptions import TenantNotFound
from ..schemas import ShippingRate, TenantConfig
from ..utils.logging import get_logger

logger = get_logger(__name__)

# profiles column -> TenantConfig field
_PROFILE_FIELDS = {
    "disable_agent_on_manual_reply": "disable_agent_on_manual_reply",
    "agent_webhook_url": "agent_webhook_url",
    "agent_name": "agent_name",
    "proactivity_level": "proactivity_level",
    "customer_treatment": "customer_treatment",
    "welcome_message": "welcome_message",
    "call_to_action": "call_to_action",
    "special_instructions": "special_instructions",
    "store_info": "store_info",
    "website": "website",
    "sales_mode": "sales_mode",
    "payment_methods": "payment_methods",
    "payment_accounts": "payment_accounts",
    "auto_reactivation_hours": "auto_reactivation_hours",
    "notification_phone": "notification_phone",
}


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return False
    return True


def parse_shipping_rates(raw: Any) -> List[ShippingRate]:
    """
    Parse the ``shipping_rates`` store setting.

    The column holds a JSON array, either as jsonb or as a JSON string.
    Malformed entries are skipped and logged rather than failing the tenant.

    Args:
        raw: Column value

    Returns:
        Parsed rates in configured order
    """
    if not raw:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("shipping_rates is not valid JSON")
            return []
    if not isinstance(raw, list):
        logger.warning("shipping_rates is not a list", extra={"type": type(raw).__name__})
        return []

    rates = []
    for index, item in enumerate(raw):
        try:
            rates.append(ShippingRate.model_validate(item))
        except ValidationError as e:
            logger.warning(
                "Skipping malformed shipping rate",
                extra={"index": index, "errors": e.error_count()},
            )
    return rates


class TenantResolver:
    """Resolves webhook tenant references and loads tenant configuration."""

    def __init__(self, supabase: Client) -> None:
        self.supabase = supabase

    async def resolve(self, reference: Optional[str]) -> str:
        """
        Resolve a ``tenant`` URL parameter to a tenant id.

        Args:
            reference: Tenant id (UUID) or opaque webhook token

        Returns:
            The tenant id

        Raises:
            TenantNotFound: If the reference is empty or matches nothing
        """
        if not reference or not reference.strip():
            raise TenantNotFound(None, "Missing tenant parameter")
        reference = reference.strip()

        if is_uuid(reference):
            response = (
                self.supabase.table("profiles")
                .select("user_id")
                .eq("user_id", reference)
                .limit(1)
                .execute()
            )
            if response.data:
                return response.data[0]["user_id"]

        response = (
            self.supabase.table("webhook_tokens")
            .select("user_id, revoked")
            .eq("token", reference)
            .limit(1)
            .execute()
        )
        row = response.data[0] if response.data else None
        if row and not row.get("revoked"):
            return row["user_id"]

        logger.warning(
            "Tenant reference did not resolve",
            extra={"looks_like_uuid": is_uuid(reference), "revoked": bool(row)},
        )
        raise TenantNotFound(reference)

    async def resolve_by_phone_number_id(self, phone_number_id: Optional[str]) -> str:
        """
        Resolve the tenant owning a Meta Cloud API phone number.

        Raises:
            TenantNotFound: If no credentials reference the number
        """
        if not phone_number_id:
            raise TenantNotFound(None, "Missing tenant parameter and phone_number_id")

        response = (
            self.supabase.table("whatsapp_meta_credentials")
            .select("user_id")
            .eq("phone_number_id", str(phone_number_id))
            .limit(1)
            .execute()
        )
        if not response.data:
            logger.warning(
                "No tenant for Meta phone_number_id",
                extra={"phone_number_id": phone_number_id},
            )
            raise TenantNotFound(phone_number_id, "Unknown phone_number_id")
        return response.data[0]["user_id"]

    async def load_config(self, tenant_id: str) -> TenantConfig:
        """
        Load the tenant's configuration snapshot.

        A tenant without a profile row still gets defaults, since the tenant
        id was already validated by resolve().

        Args:
            tenant_id: The tenant id

        Returns:
            TenantConfig built from profiles and store_settings
        """
        profile_response = (
            self.supabase.table("profiles")
            .select("*")
            .eq("user_id", tenant_id)
            .limit(1)
            .execute()
        )
        profile: Dict[str, Any] = profile_response.data[0] if profile_response.data else {}

        store_response = (
            self.supabase.table("store_settings")
            .select("*")
            .eq("user_id", tenant_id)
            .limit(1)
            .execute()
        )
        store: Dict[str, Any] = store_response.data[0] if store_response.data else {}

        values: Dict[str, Any] = {"tenant_id": tenant_id}
        for column, field in _PROFILE_FIELDS.items():
            if profile.get(column) is not None:
                values[field] = profile[column]

        buffer_seconds = profile.get("message_buffer_seconds")
        try:
            buffer_seconds = float(buffer_seconds) if buffer_seconds is not None else None
        except (TypeError, ValueError):
            buffer_seconds = None
        values["buffer_seconds"] = max(1.0, buffer_seconds or settings.default_buffer_seconds)
        values["ai_messages_blocked"] = bool(profile.get("ai_messages_blocked"))

        for column in ("store_name", "store_slug", "custom_domain"):
            if store.get(column):
                values[column] = store[column]
        # Store-level payment methods win over the profile's legacy column
        if store.get("payment_methods"):
            values["payment_methods"] = store["payment_methods"]
        values["shipping_rates"] = parse_shipping_rates(store.get("shipping_rates"))

        config = TenantConfig.model_validate(values)
        logger.debug(
            "Tenant config loaded",
            extra={
                "tenant_id": tenant_id,
                "buffer_seconds": config.buffer_seconds,
                "shipping_rates": len(config.shipping_rates),
                "has_agent_url": bool(config.agent_webhook_url),
            },
        )
        return config
