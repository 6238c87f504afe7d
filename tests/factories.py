"""
Constants, seed helpers and provider payload builders shared by the tests.
"""

import uuid
from typing import Any, Dict
from unittest.mock import Mock

from chatorder.utils.clock import to_iso

from .fakes import FakeClock, FakeSupabase

TENANT_ID = "0b6f2a4e-6c1d-4a5e-9a53-2f1f0d9d7c11"
OTHER_TENANT_ID = "7d1e9c3b-2f4a-4b6e-8d0c-5a9b3e2f1c44"
CUSTOMER_PHONE = "573001234567"
BSP_INSTANCE = "tienda"
META_PHONE_NUMBER_ID = "104857600000001"
META_DISPLAY_NUMBER = "+57 601 555 0100"
VERIFY_TOKEN = "verify-me-please"
AGENT_URL = "https://agent.test/webhook/sales"

SHIPPING_RATES = [
    {"id": "1", "name": "Bogota", "price": "8000"},
    {
        "id": "2",
        "name": "Nacional",
        "price": "15000",
        "condition_type": "minimum_order",
        "condition_value": "200000",
    },
]


def seed_tenant(supabase: FakeSupabase, clock: FakeClock, **profile: Any) -> None:
    supabase.seed(
        "profiles",
        {
            "user_id": TENANT_ID,
            "message_buffer_seconds": 10,
            "agent_webhook_url": AGENT_URL,
            "agent_name": "Sofia",
            "store_info": "Ropa deportiva",
            "sales_mode": "sell",
            "ai_messages_blocked": False,
            **profile,
        },
    )
    supabase.seed(
        "store_settings",
        {
            "user_id": TENANT_ID,
            "store_name": "Tienda Demo",
            "shipping_rates": SHIPPING_RATES,
        },
    )
    supabase.seed(
        "whatsapp_meta_credentials",
        {
            "user_id": TENANT_ID,
            "phone_number_id": META_PHONE_NUMBER_ID,
            "display_phone_number": META_DISPLAY_NUMBER,
            "access_token": "meta-access-token",
            "verify_token": VERIFY_TOKEN,
            "created_at": to_iso(clock()),
        },
    )
    supabase.seed(
        "whatsapp_bsp_credentials",
        {
            "user_id": TENANT_ID,
            "instance_name": BSP_INSTANCE,
            "api_url": "https://bsp.test",
            "api_key": "bsp-api-key",
            "is_default": True,
        },
    )


def seed_conversation(
    supabase: FakeSupabase,
    clock: FakeClock,
    instance_name: str = BSP_INSTANCE,
    **customer: Any,
) -> Dict[str, Dict[str, Any]]:
    """Seed a customer with one chat; returns {"customer": ..., "chat": ...}."""
    now = to_iso(clock())
    (customer_row,) = supabase.seed(
        "customers",
        {
            "user_id": TENANT_ID,
            "phone": CUSTOMER_PHONE,
            "whatsapp_id": CUSTOMER_PHONE,
            "name": "Ana",
            "ai_agent_enabled": True,
            "updated_at": now,
            **customer,
        },
    )
    (chat_row,) = supabase.seed(
        "chats",
        {
            "user_id": TENANT_ID,
            "customer_id": customer_row["id"],
            "instance_name": instance_name,
            "status": "active",
            "ai_agent_enabled": customer_row["ai_agent_enabled"],
            "last_message_at": now,
            "updated_at": now,
        },
    )
    return {"customer": customer_row, "chat": chat_row}


def bsp_text_payload(
    text: str,
    message_id: str = None,
    phone: str = CUSTOMER_PHONE,
    from_me: bool = False,
    push_name: str = "Ana",
) -> Dict[str, Any]:
    return {
        "event": "messages.upsert",
        "instance": BSP_INSTANCE,
        "data": {
            "key": {
                "remoteJid": f"{phone}@s.whatsapp.net",
                "fromMe": from_me,
                "id": message_id or f"BSP-{uuid.uuid4().hex[:12].upper()}",
            },
            "pushName": push_name,
            "message": {"conversation": text},
            "messageTimestamp": 1767614400,
        },
    }


def bsp_image_payload(message_id: str = "BSP-IMG-1", caption: str = None) -> Dict[str, Any]:
    image: Dict[str, Any] = {"mimetype": "image/jpeg"}
    if caption:
        image["caption"] = caption
    return {
        "event": "messages.upsert",
        "instance": BSP_INSTANCE,
        "data": {
            "key": {
                "remoteJid": f"{CUSTOMER_PHONE}@s.whatsapp.net",
                "fromMe": False,
                "id": message_id,
            },
            "pushName": "Ana",
            "message": {"imageMessage": image},
            "messageTimestamp": 1767614400,
        },
    }


def meta_payload(
    messages=None,
    statuses=None,
    contacts=None,
    phone_number_id: str = META_PHONE_NUMBER_ID,
) -> Dict[str, Any]:
    value: Dict[str, Any] = {
        "messaging_product": "whatsapp",
        "metadata": {
            "display_phone_number": "576015550100",
            "phone_number_id": phone_number_id,
        },
    }
    if contacts is not None:
        value["contacts"] = contacts
    if messages is not None:
        value["messages"] = messages
    if statuses is not None:
        value["statuses"] = statuses
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA-1", "changes": [{"field": "messages", "value": value}]}],
    }


def meta_text(text: str, message_id: str, sender: str = CUSTOMER_PHONE) -> Dict[str, Any]:
    return {
        "from": sender,
        "id": message_id,
        "timestamp": "1767614400",
        "type": "text",
        "text": {"body": text},
    }


def agent_http_response(body: Any = None, status_code: int = 200) -> Mock:
    """Mock httpx.Response as returned by the agent webhook."""
    response = Mock()
    response.status_code = status_code
    response.raise_for_status = Mock()
    if body is None:
        response.json = Mock(side_effect=ValueError("no json"))
        response.text = ""
    else:
        response.json = Mock(return_value=body)
        response.text = str(body)
    return response
