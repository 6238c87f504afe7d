"""
Order Materializer.

Turns an agent's order instruction into an ``orders`` row plus ``order_items``.
Everything that can reject the instruction (no products, unknown customer,
shipping tariff) is checked before the first write, so a rejected order
leaves nothing behind. Product references are resolved through a cascade of
identifier schemes, falling back to an inactive placeholder product so a
catalog miss never blocks an order.
If the items cannot be written the order row and its placeholders are
deleted again, so a failed order is not left half-written.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from postgrest.exceptions import APIError
from supabase import Client

from ..exceptions import CustomerNotFound, OrderValidationError
from ..schemas import OrderInstruction, OrderLine, OrderResult, ShippingRate
from ..utils.clock import Clock, to_iso, utc_now
from ..utils.logging import get_logger
from .directory import CustomerDirectory
from .side_effects import OrderContext, SideEffectRunner
from .tenants import TenantResolver, is_uuid

logger = get_logger(__name__)

CENTS = Decimal("0.01")

ORDER_STATUS_PENDING = "pending"
ORDER_SOURCE_AGENT = "agent"

PLACEHOLDER_NAME_LIMIT = 120
PLACEHOLDER_DEFAULT_NAME = "Producto personalizado"
PLACEHOLDER_DESCRIPTION = "auto-created placeholder"

DEFAULT_PAYMENT_METHOD = "Pago Contra Entrega"
_PAYMENT_METHODS: Tuple[Tuple[Tuple[str, ...], str], ...] = (
    (("contra entrega", "contraentrega", "contra-entrega"), "Pago Contra Entrega"),
    (("anticipado", "adelanto"), "Anticipado"),
    (("transferencia",), "Transferencia"),
    (("efectivo",), "Efectivo"),
    (("tarjeta",), "Tarjeta"),
)

# Resolution paths, in the order they are attempted
PATH_VARIANT_ID = "variant_id"
PATH_VARIANT_SHOPIFY_ID = "variant_shopify_id"
PATH_PRODUCT_ID = "product_id"
PATH_PRODUCT_SHOPIFY_ID = "product_shopify_id"
PATH_NAME = "name"
PATH_PLACEHOLDER = "placeholder"


def to_money(value: Union[Decimal, int, float, str]) -> Decimal:
    """
    Round an amount to cents.

    Examples:
        >>> to_money("10.005")
        Decimal('10.01')
        >>> to_money(3)
        Decimal('3.00')
    """
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def normalize_payment_method(value: Optional[str]) -> str:
    """
    Map the agent's free-text payment method onto the dashboard's labels.

    Examples:
        >>> normalize_payment_method("pago contraentrega")
        'Pago Contra Entrega'
        >>> normalize_payment_method("Transferencia bancaria")
        'Transferencia'
        >>> normalize_payment_method(None)
        'Pago Contra Entrega'
    """
    text = (value or "").strip().lower()
    for needles, label in _PAYMENT_METHODS:
        if any(needle in text for needle in needles):
            return label
    return DEFAULT_PAYMENT_METHOD


def _rate_summary(rates: Sequence[ShippingRate]) -> List[Dict[str, Any]]:
    return [{"id": rate.id, "name": rate.name} for rate in rates]


def resolve_shipping_rate(
    rates: Sequence[ShippingRate],
    tariff: Optional[Union[str, int, Dict[str, Any]]],
) -> ShippingRate:
    """
    Find the single configured rate an order refers to.

    The reference matches a rate by id, or by name ignoring case and
    surrounding whitespace. Agents sometimes send the whole rate object,
    so ``{"id": ..., "name": ...}`` is accepted too.

    Args:
        rates: The tenant's configured rates
        tariff: ``shipping_tariff_id`` from the instruction

    Returns:
        The matched rate

    Raises:
        OrderValidationError: If the reference is missing, matches nothing,
            or matches more than one rate. Lists the available rates.
    """
    available = _rate_summary(rates)
    if tariff is None or (isinstance(tariff, str) and not tariff.strip()):
        raise OrderValidationError("shipping_tariff_id is required", available)

    if isinstance(tariff, dict):
        ref_id = tariff.get("id", tariff.get("name"))
        ref_name = tariff.get("name", tariff.get("id"))
    else:
        ref_id = ref_name = tariff
    ref_id = str(ref_id).strip() if ref_id is not None else ""
    ref_name = str(ref_name).strip().lower() if ref_name is not None else ""

    matches = [rate for rate in rates if ref_id and rate.id.strip() == ref_id]
    if not matches and ref_name:
        matches = [rate for rate in rates if rate.name.strip().lower() == ref_name]

    if len(matches) != 1:
        reason = (
            "shipping_tariff_id does not match any configured shipping rate"
            if not matches
            else "shipping_tariff_id matches more than one shipping rate"
        )
        logger.warning(
            "Order rejected: shipping tariff",
            extra={"matches": len(matches), "configured_rates": len(rates)},
        )
        raise OrderValidationError(reason, available)
    return matches[0]


def shipping_cost_for(rate: ShippingRate, subtotal: Decimal) -> Decimal:
    """Rate price, or zero when a minimum-order condition is met."""
    if (
        rate.condition_type == "minimum_order"
        and rate.condition_value is not None
        and subtotal >= rate.condition_value
    ):
        return Decimal("0.00")
    return to_money(rate.price)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass
class ResolvedLine:
    """An order line with its product and final unit price."""

    line: OrderLine
    product_id: str
    unit_price: Decimal
    path: str

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.line.quantity

    @property
    def display_name(self) -> str:
        return self.line.name or self.line.reference or PLACEHOLDER_DEFAULT_NAME


class OrderMaterializer:
    """Creates orders from agent order instructions."""

    def __init__(
        self,
        supabase: Client,
        tenants: TenantResolver,
        directory: CustomerDirectory,
        side_effects: SideEffectRunner,
        clock: Clock = utc_now,
    ) -> None:
        self.supabase = supabase
        self.tenants = tenants
        self.directory = directory
        self.side_effects = side_effects
        self.clock = clock

    # -- product resolution -------------------------------------------------

    def _first(self, query: Any) -> Optional[Dict[str, Any]]:
        response = query.limit(1).execute()
        return response.data[0] if response.data else None

    def _tenant_product(self, tenant_id: str, product_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not product_id:
            return None
        return self._first(
            self.supabase.table("products")
            .select("id, name, price")
            .eq("user_id", tenant_id)
            .eq("id", product_id)
        )

    def _variant_product(
        self,
        tenant_id: str,
        column: str,
        reference: str,
    ) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
        variant = self._first(
            self.supabase.table("product_variants")
            .select("id, product_id, price")
            .eq(column, reference)
        )
        if variant is None:
            return None
        # Variants carry no tenant column; the parent product does
        product = self._tenant_product(tenant_id, variant.get("product_id"))
        if product is None:
            return None
        return variant, product

    async def find_product(
        self,
        tenant_id: str,
        line: OrderLine,
    ) -> Optional[Tuple[str, Optional[Decimal], str]]:
        """
        Look an order line up in the tenant's catalog without writing.

        Attempts, first match wins: variant id, Shopify variant id, product id,
        Shopify product id, case-insensitive name within the tenant.
        """
        reference = line.reference
        if reference:
            # uuid columns reject non-uuid input, so Shopify ids only try shopify_id
            uuid_ref = is_uuid(reference)
            for column, path in (("id", PATH_VARIANT_ID), ("shopify_id", PATH_VARIANT_SHOPIFY_ID)):
                if column == "id" and not uuid_ref:
                    continue
                found = self._variant_product(tenant_id, column, reference)
                if found is not None:
                    variant, product = found
                    price = variant.get("price") if variant.get("price") is not None else product.get("price")
                    return product["id"], _optional_decimal(price), path

            for column, path in (("id", PATH_PRODUCT_ID), ("shopify_id", PATH_PRODUCT_SHOPIFY_ID)):
                if column == "id" and not uuid_ref:
                    continue
                product = self._first(
                    self.supabase.table("products")
                    .select("id, price")
                    .eq("user_id", tenant_id)
                    .eq(column, reference)
                )
                if product is not None:
                    return product["id"], _optional_decimal(product.get("price")), path

        if line.name and line.name.strip():
            product = self._first(
                self.supabase.table("products")
                .select("id, price")
                .eq("user_id", tenant_id)
                .ilike("name", _escape_like(line.name.strip()))
            )
            if product is not None:
                return product["id"], _optional_decimal(product.get("price")), PATH_NAME

        return None

    async def _create_placeholder(self, tenant_id: str, line: OrderLine) -> str:
        name = (line.name or line.reference or PLACEHOLDER_DEFAULT_NAME).strip()
        response = (
            self.supabase.table("products")
            .insert(
                {
                    "user_id": tenant_id,
                    "name": name[:PLACEHOLDER_NAME_LIMIT],
                    "description": PLACEHOLDER_DESCRIPTION,
                    "price": str(to_money(line.price or 0)),
                    "stock": 0,
                    "is_active": False,
                }
            )
            .execute()
        )
        product = response.data[0]
        logger.warning(
            "Placeholder product created for unresolved order line",
            extra={"tenant_id": tenant_id, "product_id": product["id"]},
        )
        return product["id"]

    # -- order creation -----------------------------------------------------

    async def create(self, tenant_id: str, instruction: OrderInstruction) -> OrderResult:
        """
        Validate and persist an order, then run its side effects.

        Args:
            tenant_id: Tenant the order belongs to
            instruction: Parsed order instruction

        Returns:
            OrderResult with totals and per-side-effect status

        Raises:
            OrderValidationError: Empty products, tariff problems, tenant
                mismatch, or a line without any price (nothing written)
            CustomerNotFound: Customer does not belong to the tenant
            APIError: The order items could not be written; the order row and
                any placeholder products created for it are removed first
        """
        if not instruction.products:
            raise OrderValidationError("products must not be empty")
        if instruction.user_id and instruction.user_id != tenant_id:
            raise OrderValidationError("user_id does not match the webhook tenant")

        customer = await self.directory.get_customer(tenant_id, instruction.customer_id)
        if customer is None:
            raise CustomerNotFound(instruction.customer_id)

        config = await self.tenants.load_config(tenant_id)
        rate = resolve_shipping_rate(config.shipping_rates, instruction.shipping_tariff_id)

        priced = []
        for line in instruction.products:
            found = await self.find_product(tenant_id, line)
            price = line.price if line.price is not None else (found[1] if found else None)
            if price is None:
                raise OrderValidationError(
                    f"no price supplied or in catalog for {line.name or line.reference or 'product'}"
                )
            priced.append((line, found, to_money(price)))

        await self._update_customer(customer, instruction)

        lines: List[ResolvedLine] = []
        placeholders: List[str] = []
        for line, found, price in priced:
            if found is None:
                product_id, path = await self._create_placeholder(tenant_id, line), PATH_PLACEHOLDER
                placeholders.append(product_id)
            else:
                product_id, _, path = found
            lines.append(ResolvedLine(line=line, product_id=product_id, unit_price=price, path=path))

        subtotal = to_money(sum((resolved.line_total for resolved in lines), Decimal("0")))
        shipping_cost = shipping_cost_for(rate, subtotal)
        total = to_money(subtotal + shipping_cost)
        payment_method = normalize_payment_method(instruction.payment_method)

        order = (
            self.supabase.table("orders")
            .insert(
                {
                    "user_id": tenant_id,
                    "customer_id": customer["id"],
                    "subtotal": str(subtotal),
                    "shipping_cost": str(shipping_cost),
                    "total": str(total),
                    "shipping_tariff_id": rate.id,
                    "status": ORDER_STATUS_PENDING,
                    "order_source": ORDER_SOURCE_AGENT,
                    "payment_method": payment_method,
                    "notes": _order_notes(instruction),
                    "created_at": to_iso(self.clock()),
                }
            )
            .execute()
            .data[0]
        )

        try:
            self.supabase.table("order_items").insert(
                [
                    {
                        "order_id": order["id"],
                        "product_id": resolved.product_id,
                        "quantity": resolved.line.quantity,
                        "price": str(resolved.unit_price),
                        "size": resolved.line.size,
                    }
                    for resolved in lines
                ]
            ).execute()
        except APIError as e:
            await self._discard_order(order["id"], placeholders)
            logger.error(
                "Order items insert failed; order discarded",
                extra={"tenant_id": tenant_id, "order_id": order["id"], "error": str(e)},
            )
            raise

        logger.info(
            "Order created",
            extra={
                "tenant_id": tenant_id,
                "order_id": order["id"],
                "items": len(lines),
                "total": str(total),
                "resolution_paths": [resolved.path for resolved in lines],
            },
        )

        side_effects = await self.side_effects.run(
            OrderContext(
                tenant_id=tenant_id,
                config=config,
                order=order,
                customer=customer,
                chat_id=instruction.chat_id,
                lines=[(resolved.display_name, resolved.line.quantity, resolved.unit_price) for resolved in lines],
                subtotal=subtotal,
                shipping_cost=shipping_cost,
                total=total,
                shipping_rate=rate,
                payment_method=payment_method,
                address=_address(instruction, customer),
            )
        )

        return OrderResult(
            order_id=order["id"],
            subtotal=subtotal,
            shipping_cost=shipping_cost,
            total=total,
            items=len(lines),
            side_effects=side_effects,
        )

    async def _discard_order(self, order_id: str, placeholders: List[str]) -> None:
        """Remove a half-written order and the placeholder products made for it."""
        self.supabase.table("order_items").delete().eq("order_id", order_id).execute()
        self.supabase.table("orders").delete().eq("id", order_id).execute()
        if placeholders:
            self.supabase.table("products").delete().in_("id", placeholders).execute()

    async def _update_customer(self, customer: Dict[str, Any], instruction: OrderInstruction) -> None:
        updates = {
            column: value
            for column, value in (
                ("name", instruction.customer_name),
                ("last_name", instruction.customer_last_name),
                ("address", instruction.customer_address),
                ("city", instruction.city),
                ("province", instruction.province),
            )
            if value
        }
        await self.directory.update_customer(customer["id"], updates)


def _optional_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _order_notes(instruction: OrderInstruction) -> str:
    parts = ["Pedido creado por agente IA"]
    if instruction.province:
        parts.append(f"Departamento: {instruction.province}")
    if instruction.city:
        parts.append(f"Ciudad: {instruction.city}")
    if instruction.notes:
        parts.append(instruction.notes)
    return ". ".join(parts)


def _address(instruction: OrderInstruction, customer: Dict[str, Any]) -> Optional[str]:
    parts = [
        instruction.customer_address or customer.get("address"),
        instruction.city or customer.get("city"),
        instruction.province or customer.get("province"),
    ]
    text = ", ".join(part for part in parts if part)
    return text or None
