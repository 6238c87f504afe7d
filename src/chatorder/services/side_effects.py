"""
Best-effort side effects of a created order.

The order is already committed when these run. Each effect is awaited on its
own; a failure is logged with the effect name and reported in the result,
never raised, so it cannot roll back or fail the order.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from postgrest.exceptions import APIError
from supabase import Client

from ..config import settings
from ..exceptions import ProviderError
from ..schemas import SendInstruction, ShippingRate, TenantConfig
from ..utils.logging import get_logger
from .directory import CustomerDirectory, is_unique_violation
from .messages import SENDER_BUSINESS
from .outbound import OutboundSender
from .whatsapp import post_provider

logger = get_logger(__name__)

EFFECT_OK = "ok"
EFFECT_FAILED = "failed"
EFFECT_SKIPPED = "skipped"

NEW_ORDER_TAG_COLOR = "#22c55e"


@dataclass
class OrderContext:
    """Everything the side effects need to know about a committed order."""

    tenant_id: str
    config: TenantConfig
    order: Dict[str, Any]
    customer: Dict[str, Any]
    chat_id: Optional[str]
    # (display name, quantity, unit price)
    lines: List[Tuple[str, int, Decimal]]
    subtotal: Decimal
    shipping_cost: Decimal
    total: Decimal
    shipping_rate: ShippingRate
    payment_method: str
    address: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


def format_money(amount: Decimal) -> str:
    return f"${amount:,.2f}"


def confirmation_text(ctx: OrderContext) -> str:
    """Order summary sent to the customer."""
    lines = [f"Pedido confirmado #{str(ctx.order['id'])[:8]}", ""]
    for name, quantity, unit_price in ctx.lines:
        lines.append(f"- {quantity} x {name}: {format_money(unit_price * quantity)}")
    lines.append("")
    lines.append(f"Subtotal: {format_money(ctx.subtotal)}")
    lines.append(f"Envio ({ctx.shipping_rate.name}): {format_money(ctx.shipping_cost)}")
    lines.append(f"Total: {format_money(ctx.total)}")
    lines.append(f"Forma de pago: {ctx.payment_method}")
    if ctx.address:
        lines.append(f"Direccion de entrega: {ctx.address}")
    return "\n".join(lines)


def notification_text(ctx: OrderContext) -> str:
    name = " ".join(
        part for part in (ctx.customer.get("name"), ctx.customer.get("last_name")) if part
    )
    return f"Nuevo pedido de {name or 'cliente'} por {format_money(ctx.total)} ({len(ctx.lines)} productos)"


Effect = Callable[[OrderContext], Awaitable[str]]


class SideEffectRunner:
    """
    Runs the post-order effects in a fixed order.

    1. confirmation message to the customer
    2. "new order" tag on the customer
    3. push to the connected commerce platform
    4. operator notification
    """

    def __init__(
        self,
        supabase: Client,
        directory: CustomerDirectory,
        outbound: OutboundSender,
    ) -> None:
        self.supabase = supabase
        self.directory = directory
        self.outbound = outbound
        self.effects: List[Tuple[str, Effect]] = [
            ("confirmation_message", self.send_confirmation),
            ("order_tag", self.assign_order_tag),
            ("commerce_sync", self.push_to_commerce),
            ("operator_notification", self.notify_operator),
        ]

    async def run(self, ctx: OrderContext) -> Dict[str, str]:
        """
        Run every effect and report how each went.

        Returns:
            ``{effect name: "ok" | "failed" | "skipped"}``
        """
        results: Dict[str, str] = {}
        for name, effect in self.effects:
            try:
                results[name] = await effect(ctx)
            except Exception as e:
                results[name] = EFFECT_FAILED
                logger.error(
                    "Order side effect failed",
                    extra={
                        "effect": name,
                        "tenant_id": ctx.tenant_id,
                        "order_id": ctx.order["id"],
                        "error_type": type(e).__name__,
                        "error": str(e),
                    },
                    exc_info=True,
                )
        logger.info(
            "Order side effects finished",
            extra={"tenant_id": ctx.tenant_id, "order_id": ctx.order["id"], "results": results},
        )
        return results

    async def send_confirmation(self, ctx: OrderContext) -> str:
        chat = None
        if ctx.chat_id:
            chat = await self.directory.get_chat(ctx.tenant_id, ctx.chat_id)
            if chat is not None and chat.get("customer_id") != ctx.customer["id"]:
                chat = None
        if chat is None:
            chat = await self.directory.latest_chat(ctx.tenant_id, ctx.customer["id"])
        if chat is None:
            logger.info(
                "No chat for order confirmation",
                extra={"tenant_id": ctx.tenant_id, "order_id": ctx.order["id"]},
            )
            return EFFECT_SKIPPED

        result = await self.outbound.deliver(
            ctx.tenant_id,
            ctx.customer,
            chat,
            SendInstruction(phone=ctx.customer.get("phone") or "", message=confirmation_text(ctx)),
            sender_type=SENDER_BUSINESS,
            metadata={"order_id": ctx.order["id"], "kind": "order_confirmation"},
        )
        if not result.ok:
            raise ProviderError("channel", "order confirmation was not delivered")
        return EFFECT_OK

    async def assign_order_tag(self, ctx: OrderContext) -> str:
        tag_name = settings.new_order_tag
        response = (
            self.supabase.table("tags")
            .select("id")
            .eq("user_id", ctx.tenant_id)
            .eq("name", tag_name)
            .limit(1)
            .execute()
        )
        if response.data:
            tag_id = response.data[0]["id"]
        else:
            created = (
                self.supabase.table("tags")
                .insert({"user_id": ctx.tenant_id, "name": tag_name, "color": NEW_ORDER_TAG_COLOR})
                .execute()
            )
            tag_id = created.data[0]["id"]

        try:
            self.supabase.table("customer_tags").insert(
                {"customer_id": ctx.customer["id"], "tag_id": tag_id}
            ).execute()
        except APIError as e:
            if not is_unique_violation(e):
                raise
            # Customer already carries the tag
        return EFFECT_OK

    async def push_to_commerce(self, ctx: OrderContext) -> str:
        if not settings.commerce_sync_url:
            return EFFECT_SKIPPED
        headers = {"Content-Type": "application/json"}
        if settings.commerce_sync_token:
            headers["Authorization"] = f"Bearer {settings.commerce_sync_token}"
        await post_provider(
            "commerce",
            settings.commerce_sync_url,
            "commerce_sync",
            {"order_id": ctx.order["id"], "user_id": ctx.tenant_id},
            headers,
        )
        return EFFECT_OK

    async def notify_operator(self, ctx: OrderContext) -> str:
        phone = ctx.config.notification_phone
        if not phone:
            return EFFECT_SKIPPED
        await self.outbound.send_plain(ctx.tenant_id, phone, notification_text(ctx))
        return EFFECT_OK
