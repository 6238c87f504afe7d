"""
Agent Invocation Bridge.

Packages a flushed group plus the tenant's configuration into one call to the
tenant's external agent, records usage exactly once per invocation, and
interprets what the agent sends back. Replies arrive either inline in the
agent's HTTP response or later on ``POST /webhooks/agent``, as one of two
shapes:

- a send instruction (``respuesta_agente: true`` + destination phone + text
  and/or image URL), forwarded to the customer's chat;
- an order instruction (``customer_id`` + ``products``), handed to the Order
  Materializer.

Anything else is rejected with InvalidAgentResponse.
"""

import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError
from pydantic import ValidationError
from supabase import Client
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import settings
from ..exceptions import (
    AgentInvocationError,
    ChatNotFound,
    CustomerNotFound,
    InvalidAgentResponse,
    OrderValidationError,
    ProviderError,
)
from ..schemas import OrderInstruction, SendInstruction, TenantConfig
from ..utils.clock import Clock, to_iso, utc_now
from ..utils.logging import get_logger, log_api_call
from .directory import CustomerDirectory
from .messages import SENDER_AGENT
from .outbound import OutboundSender

if TYPE_CHECKING:
    from .orders import OrderMaterializer

logger = get_logger(__name__)

_UUID_PATTERN = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}\b"
)

# Keys an agent's synchronous response may carry its reply text under
_REPLY_KEYS = (
    "mensaje_agente",
    "respuesta_agente",
    "ai_message",
    "assistant_message",
    "assistant_reply",
    "reply",
    "text",
    "message",
)
# Workflow-runner acknowledgements that are not replies
_ACKNOWLEDGEMENTS = {"ok", "started", "success", "accepted", "received", "workflow was started"}
_MIN_REPLY_LENGTH = 3

_PHONE_KEYS = ("celular_destinario", "celular_destinatario", "phone", "to")
_USAGE_CONTENT_LIMIT = 500


@dataclass
class InvocationResult:
    """What happened when a group reached the bridge."""

    invoked: bool
    reason: Optional[str] = None
    reply_sent: bool = False


def _clean_reply(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if len(text) < _MIN_REPLY_LENGTH:
        return None
    if text.lower().rstrip(".!") in _ACKNOWLEDGEMENTS:
        return None
    return text


def extract_reply_text(body: Any) -> Optional[str]:
    """
    Find reply text in an agent's synchronous HTTP response.

    Looks at the known reply keys, then inside ``data`` and ``messages``.
    Acknowledgements such as "Workflow was started" are not replies.

    Args:
        body: Decoded JSON body (dict or list), or the raw text

    Returns:
        The reply text, or None when the agent will answer asynchronously

    Examples:
        >>> extract_reply_text({"mensaje_agente": "Hola! En que te ayudo?"})
        'Hola! En que te ayudo?'
        >>> extract_reply_text({"message": "Workflow was started"}) is None
        True
    """
    if isinstance(body, str):
        return _clean_reply(body)
    if isinstance(body, list):
        for item in body:
            found = extract_reply_text(item)
            if found:
                return found
        return None
    if not isinstance(body, dict):
        return None

    for key in _REPLY_KEYS:
        found = _clean_reply(body.get(key))
        if found:
            return found
    for key in ("data", "messages"):
        nested = body.get(key)
        if isinstance(nested, (dict, list)):
            found = extract_reply_text(nested)
            if found:
                return found
    return None


def build_payload(
    config: TenantConfig,
    group: Dict[str, Any],
    customer: Dict[str, Any],
    chat: Dict[str, Any],
    entries: List[Dict[str, Any]],
    featured_products: List[Dict[str, Any]],
    now: datetime,
) -> Dict[str, Any]:
    """
    Build the JSON body sent to the tenant's agent.

    Keys are camelCase because deployed agents already consume this shape.
    Media is passed by URL only; entries whose media failed carry the error
    placeholder as content and no URL.
    """
    messages = [
        {
            "sequence": entry.get("sequence_number"),
            "type": entry.get("message_type") or "text",
            "content": entry.get("content") or "",
            "mediaUrl": entry.get("media_url"),
            "quoted": entry.get("quoted"),
        }
        for entry in entries
    ]

    def urls(kind: str) -> List[str]:
        return [
            entry["media_url"]
            for entry in entries
            if entry.get("message_type") == kind and entry.get("media_url")
        ]

    return {
        "userId": config.tenant_id,
        "chatId": chat["id"],
        "groupId": group["id"],
        "instanceName": chat.get("instance_name"),
        "customer": {
            "id": customer["id"],
            "phone": customer.get("phone"),
            "name": customer.get("name"),
        },
        "messageContent": "\n".join(message["content"] for message in messages),
        "messages": messages,
        "messageCount": len(messages),
        "imageUrls": urls("image"),
        "audioUrls": urls("audio"),
        "quotedMessage": entries[-1].get("quoted") if entries else None,
        "storeInfo": config.store_info,
        "website": config.website,
        "storeName": config.store_name,
        "agentName": config.agent_name,
        "proactivityLevel": config.proactivity_level,
        "customerTreatment": config.customer_treatment,
        "welcomeMessage": config.welcome_message,
        "callToAction": config.call_to_action,
        "specialInstructions": config.special_instructions,
        "salesMode": config.sales_mode,
        "paymentMethods": config.payment_methods,
        "paymentAccounts": config.payment_accounts,
        "shippingRates": [rate.model_dump(mode="json") for rate in config.shipping_rates],
        "featuredProducts": featured_products,
        "timestamp": to_iso(now),
    }


@retry(
    retry=retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=4),
    before_sleep=before_sleep_log(logger, logging.INFO),
    reraise=True,
)
async def _post_agent(url: str, payload: Dict[str, Any]) -> httpx.Response:
    async with httpx.AsyncClient(timeout=httpx.Timeout(settings.agent_timeout_seconds)) as client:
        return await client.post(url, json=payload)


class AgentBridge:
    """Invokes the tenant's agent for a flushed group."""

    def __init__(
        self,
        supabase: Client,
        directory: CustomerDirectory,
        outbound: OutboundSender,
        clock: Clock = utc_now,
    ) -> None:
        self.supabase = supabase
        self.directory = directory
        self.outbound = outbound
        self.clock = clock

    async def featured_products(self, config: TenantConfig) -> List[Dict[str, Any]]:
        """Products whose ids appear in the tenant's special instructions."""
        ids = list(
            dict.fromkeys(match.lower() for match in _UUID_PATTERN.findall(config.special_instructions or ""))
        )
        if not ids:
            return []
        response = (
            self.supabase.table("products")
            .select("id, name, price, description")
            .eq("user_id", config.tenant_id)
            .in_("id", ids)
            .execute()
        )
        return response.data or []

    async def invoke_group(
        self,
        config: TenantConfig,
        group: Dict[str, Any],
        entries: List[Dict[str, Any]],
    ) -> InvocationResult:
        """
        Hand one flushed group to the tenant's agent.

        The group is skipped (not an error) when the agent is switched off for
        the customer or chat, AI messages are blocked for the tenant, or no
        agent URL is configured.

        Args:
            config: Tenant configuration, freshly loaded for this flush
            group: The claimed ``message_groups`` row
            entries: Group entries in sequence order

        Returns:
            InvocationResult

        Raises:
            AgentInvocationError: If the agent call failed; the buffer retries
        """
        tenant_id = group["user_id"]
        customer = await self.directory.get_customer(tenant_id, group["customer_id"])
        chat = await self.directory.get_chat(tenant_id, group["chat_id"])
        if customer is None or chat is None:
            logger.warning(
                "Group references a missing customer or chat",
                extra={"tenant_id": tenant_id, "group_id": group["id"]},
            )
            return InvocationResult(invoked=False, reason="chat_missing")

        if config.ai_messages_blocked:
            if chat.get("ai_agent_enabled") is not False:
                await self.directory.set_agent_enabled(None, chat["id"], False)
            logger.info(
                "AI messages blocked for tenant; agent not invoked",
                extra={"tenant_id": tenant_id, "group_id": group["id"]},
            )
            return InvocationResult(invoked=False, reason="ai_messages_blocked")

        if customer.get("ai_agent_enabled") is False or chat.get("ai_agent_enabled") is False:
            logger.info(
                "Agent disabled for conversation; not invoked",
                extra={"tenant_id": tenant_id, "group_id": group["id"], "chat_id": chat["id"]},
            )
            return InvocationResult(invoked=False, reason="agent_disabled")

        if not config.agent_webhook_url:
            logger.warning(
                "No agent URL configured; not invoked",
                extra={"tenant_id": tenant_id, "group_id": group["id"]},
            )
            return InvocationResult(invoked=False, reason="no_agent_url")

        payload = build_payload(
            config,
            group,
            customer,
            chat,
            entries,
            await self.featured_products(config),
            self.clock(),
        )
        body = await self._call(config.agent_webhook_url, payload, group["id"])
        await self.record_usage(group, payload["messageContent"])

        reply_sent = False
        reply = extract_reply_text(body)
        if reply:
            try:
                result = await self.outbound.deliver(
                    tenant_id,
                    customer,
                    chat,
                    SendInstruction(phone=customer.get("phone") or "", message=reply),
                    sender_type=SENDER_AGENT,
                    metadata={"group_id": group["id"]},
                )
                reply_sent = result.ok
            except ProviderError as e:
                logger.error(
                    "Inline agent reply could not be delivered",
                    extra={"tenant_id": tenant_id, "group_id": group["id"], "error": e.message},
                )

        logger.info(
            "Agent invoked",
            extra={
                "tenant_id": tenant_id,
                "group_id": group["id"],
                "message_count": len(entries),
                "inline_reply": bool(reply),
            },
        )
        return InvocationResult(invoked=True, reply_sent=reply_sent)

    async def _call(self, url: str, payload: Dict[str, Any], group_id: str) -> Any:
        start = time.monotonic()
        try:
            response = await _post_agent(url, payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            log_api_call(
                service="agent",
                endpoint="agent_webhook",
                method="POST",
                status_code=e.response.status_code,
                duration_ms=(time.monotonic() - start) * 1000,
                error_type="HTTPStatusError",
            )
            raise AgentInvocationError(
                group_id, f"HTTP {e.response.status_code}", status_code=e.response.status_code
            ) from e
        except httpx.RequestError as e:
            log_api_call(
                service="agent",
                endpoint="agent_webhook",
                method="POST",
                status_code=0,
                duration_ms=(time.monotonic() - start) * 1000,
                error_type=type(e).__name__,
            )
            raise AgentInvocationError(group_id, f"request failed: {e}") from e

        log_api_call(
            service="agent",
            endpoint="agent_webhook",
            method="POST",
            status_code=response.status_code,
            duration_ms=(time.monotonic() - start) * 1000,
        )
        try:
            return response.json()
        except ValueError:
            return response.text

    async def record_usage(self, group: Dict[str, Any], content: str) -> bool:
        """
        Count one AI message against the tenant, once per group.

        The ``usage_recorded`` flag is flipped with a conditional update, so a
        retried flush or a second reply for the same group never counts again.

        Returns:
            True if this call recorded the usage
        """
        try:
            claimed = (
                self.supabase.table("message_groups")
                .update({"usage_recorded": True})
                .eq("id", group["id"])
                .eq("usage_recorded", False)
                .execute()
            )
        except APIError as e:
            logger.error(
                "Usage flag update failed",
                extra={"group_id": group["id"], "error": e.message},
            )
            return False

        if not claimed.data:
            logger.info("Usage already recorded for group", extra={"group_id": group["id"]})
            return False

        try:
            self.supabase.rpc(
                "increment_ai_message_usage",
                {
                    "target_user_id": group["user_id"],
                    "tokens_used": settings.usage_tokens_per_invocation,
                    "cost_amount": settings.usage_cost_per_invocation,
                    "chat_id_param": group["chat_id"],
                    "message_content_param": content[:_USAGE_CONTENT_LIMIT],
                },
            ).execute()
        except APIError as e:
            logger.error(
                "Usage increment failed",
                extra={"tenant_id": group["user_id"], "group_id": group["id"], "error": e.message},
            )
        return True


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def classify_agent_response(payload: Any) -> str:
    """
    Decide which instruction an agent payload is.

    Returns:
        "send" or "order"

    Raises:
        InvalidAgentResponse: For any other shape
    """
    if not isinstance(payload, dict):
        raise InvalidAgentResponse("body must be a JSON object")
    if _flag(payload.get("respuesta_agente")) or _flag(payload.get("agent_response")):
        if any(payload.get(key) for key in _PHONE_KEYS):
            return "send"
        raise InvalidAgentResponse("send instruction without destination phone")
    if "products" in payload and payload.get("customer_id"):
        return "order"
    raise InvalidAgentResponse("expected a send instruction or an order instruction")


class AgentResponseHandler:
    """Applies send and order instructions posted by agents."""

    def __init__(
        self,
        directory: CustomerDirectory,
        outbound: OutboundSender,
        orders: "OrderMaterializer",
    ) -> None:
        self.directory = directory
        self.outbound = outbound
        self.orders = orders

    async def handle(self, tenant_id: str, payload: Any) -> Dict[str, Any]:
        """
        Apply one agent response.

        Raises:
            InvalidAgentResponse: Unrecognised or incomplete payload (400)
            OrderValidationError: Order instruction failed validation (400)
            CustomerNotFound, ChatNotFound: Resolution misses (404)
        """
        kind = classify_agent_response(payload)
        if kind == "send":
            return await self._send(tenant_id, payload)
        return await self._order(tenant_id, payload)

    async def _send(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            instruction = SendInstruction.model_validate(payload)
        except ValidationError as e:
            raise InvalidAgentResponse(f"malformed send instruction ({e.error_count()} errors)") from e
        if not instruction.message and not instruction.media_url:
            raise InvalidAgentResponse("send instruction has neither text nor image")

        customer = await self.directory.find_customer_by_phone(tenant_id, instruction.phone)
        if customer is None:
            raise CustomerNotFound(None)

        if instruction.chat_id:
            chat = await self.directory.get_chat(tenant_id, instruction.chat_id)
            if chat is not None and chat.get("customer_id") != customer["id"]:
                chat = None
        else:
            chat = await self.directory.latest_chat(tenant_id, customer["id"])
        if chat is None:
            raise ChatNotFound(customer["id"], instruction.chat_id)

        result = await self.outbound.deliver(
            tenant_id, customer, chat, instruction, sender_type=SENDER_AGENT
        )
        return {
            "success": True,
            "type": "send",
            "chat_id": chat["id"],
            "message_ids": result.message_ids,
            "sent": len(result.message_ids) - result.failed,
            "failed": result.failed,
        }

    async def _order(self, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            instruction = OrderInstruction.model_validate(payload)
        except ValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            raise OrderValidationError(f"malformed order instruction: {', '.join(fields)}") from e

        result = await self.orders.create(tenant_id, instruction)
        return {"type": "order", **result.model_dump(mode="json")}
