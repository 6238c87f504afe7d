"""
Pydantic schemas shared across the pipeline.

Holds the canonical inbound message union produced by the provider adapters,
the per-tenant configuration snapshot, and the two agent response shapes
(send instruction and order instruction). All schemas use Pydantic v2.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

# ---------------------------------------------------------------------------
# Canonical inbound messages
# ---------------------------------------------------------------------------

MESSAGE_TYPES = ("text", "image", "audio", "video", "document")


class QuotedReference(BaseModel):
    """Raw reply-to reference as delivered by the provider."""

    provider_message_id: str
    inline_content: Optional[str] = None
    sender_phone: Optional[str] = None


class MediaReference(BaseModel):
    """Transient provider handle for a media attachment."""

    handle: str
    mime_type: Optional[str] = None
    filename: Optional[str] = None


class ChannelRef(BaseModel):
    """
    The connected WhatsApp number a payload arrived on.

    ``instance_name`` is what chats are scoped by: the BSP instance name, or
    ``meta_<phone_number_id>`` for Meta Cloud API numbers.
    """

    kind: Literal["meta", "bsp"]
    instance_name: Optional[str] = None
    phone_number_id: Optional[str] = None
    display_phone_number: Optional[str] = None


class _CanonicalMessage(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_media: ClassVar[bool] = False

    provider_message_id: Optional[str] = None
    sender_phone: Optional[str] = None
    # The end customer of the conversation: the sender of inbound messages,
    # the recipient of business-sent ones.
    customer_phone: str
    display_name: Optional[str] = None
    timestamp: Optional[datetime] = None
    from_business: bool = False
    quoted: Optional[QuotedReference] = None

    @property
    def content(self) -> str:
        raise NotImplementedError

    @property
    def message_type(self) -> str:
        return self.type  # type: ignore[attr-defined]


class TextMessage(_CanonicalMessage):
    type: Literal["text"] = "text"
    text: str

    @property
    def content(self) -> str:
        return self.text


class ImageMessage(_CanonicalMessage):
    is_media: ClassVar[bool] = True

    type: Literal["image"] = "image"
    media: MediaReference
    caption: Optional[str] = None

    @property
    def content(self) -> str:
        return self.caption or "[Image]"


class AudioMessage(_CanonicalMessage):
    is_media: ClassVar[bool] = True

    type: Literal["audio"] = "audio"
    media: MediaReference
    voice_note: bool = False

    @property
    def content(self) -> str:
        return "[Audio]"


class VideoMessage(_CanonicalMessage):
    is_media: ClassVar[bool] = True

    type: Literal["video"] = "video"
    media: MediaReference
    caption: Optional[str] = None

    @property
    def content(self) -> str:
        return self.caption or "[Video]"


class DocumentMessage(_CanonicalMessage):
    is_media: ClassVar[bool] = True

    type: Literal["document"] = "document"
    media: MediaReference
    caption: Optional[str] = None

    @property
    def content(self) -> str:
        return f"[Document: {self.media.filename or 'file'}]"


class UnsupportedMessage(_CanonicalMessage):
    type: Literal["unsupported"] = "unsupported"
    original_type: str = "unknown"

    @property
    def content(self) -> str:
        return f"[Unsupported message: {self.original_type}]"

    @property
    def message_type(self) -> str:
        # Persisted as text so downstream consumers only see known types
        return "text"


CanonicalInboundMessage = Annotated[
    Union[
        TextMessage,
        ImageMessage,
        AudioMessage,
        VideoMessage,
        DocumentMessage,
        UnsupportedMessage,
    ],
    Field(discriminator="type"),
]


class StatusUpdate(BaseModel):
    """Delivery status callback for a business-sent message."""

    provider_message_id: str
    status: str
    recipient_phone: Optional[str] = None
    timestamp: Optional[datetime] = None


class NormalizedPayload(BaseModel):
    """Everything one webhook delivery contained, in provider order."""

    channel: ChannelRef
    messages: List[CanonicalInboundMessage] = Field(default_factory=list)
    statuses: List[StatusUpdate] = Field(default_factory=list)
    skipped: int = 0


class ResolvedQuote(BaseModel):
    """Quoted message after lookup in the message log."""

    provider_message_id: str
    found: bool
    message_type: Optional[str] = None
    content: Optional[str] = None
    sender_type: Literal["customer", "business", "agent", "unknown"] = "unknown"


# ---------------------------------------------------------------------------
# Tenant configuration
# ---------------------------------------------------------------------------


class ShippingRate(BaseModel):
    """A shipping tariff configured in the tenant's store settings."""

    model_config = ConfigDict(extra="ignore")

    id: str
    name: str
    price: Decimal = Decimal("0")
    condition_type: str = "none"
    condition_value: Optional[Decimal] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        """Rates saved by older dashboards use numeric ids."""
        return str(v)

    @field_validator("condition_type", mode="before")
    @classmethod
    def default_condition(cls, v: Any) -> str:
        return v or "none"


class TenantConfig(BaseModel):
    """
    Snapshot of one tenant's configuration, loaded once per request and
    again at every group flush.
    """

    tenant_id: str
    buffer_seconds: float = 10.0
    # None means "never configured"; only an explicit False keeps the agent on
    disable_agent_on_manual_reply: Optional[bool] = None
    agent_webhook_url: Optional[str] = None
    ai_messages_blocked: bool = False

    agent_name: Optional[str] = None
    proactivity_level: Optional[str] = None
    customer_treatment: Optional[str] = None
    welcome_message: Optional[str] = None
    call_to_action: Optional[str] = None
    special_instructions: Optional[str] = None

    store_info: Optional[str] = None
    website: Optional[str] = None
    store_name: Optional[str] = None
    store_slug: Optional[str] = None
    custom_domain: Optional[str] = None

    sales_mode: str = "advise_only"
    payment_methods: Any = None
    payment_accounts: Any = None
    shipping_rates: List[ShippingRate] = Field(default_factory=list)
    auto_reactivation_hours: Optional[float] = None
    notification_phone: Optional[str] = None

    @property
    def disables_agent_on_manual_reply(self) -> bool:
        return self.disable_agent_on_manual_reply is not False


# ---------------------------------------------------------------------------
# Agent responses
# ---------------------------------------------------------------------------


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


class SendInstruction(BaseModel):
    """Agent asks for a text and/or media message to be sent to a customer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    phone: str = Field(
        validation_alias=AliasChoices("celular_destinario", "celular_destinatario", "phone", "to")
    )
    message: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("mensaje", "message", "text")
    )
    media_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("url_imagen", "image_url", "media_url")
    )
    media_type: Literal["image", "video", "document", "audio"] = "image"
    caption: Optional[str] = None
    chat_id: Optional[str] = None

    @field_validator("phone", mode="before")
    @classmethod
    def coerce_phone(cls, v: Any) -> str:
        return str(v) if v is not None else v

    @field_validator("message", "media_url", "caption", "chat_id", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        return _blank_to_none(v)


_LINE_ID_KEYS = ("product_id", "id", "variant_id", "sku", "handle")


class OrderLine(BaseModel):
    """One product line of an order instruction, as the agent phrased it."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    reference: Optional[str] = None
    name: Optional[str] = Field(default=None, validation_alias=AliasChoices("nombre", "name"))
    price: Optional[Decimal] = Field(
        default=None, ge=0, validation_alias=AliasChoices("precio", "price")
    )
    quantity: int = Field(default=1, ge=1, validation_alias=AliasChoices("cantidad", "quantity"))
    size: Optional[str] = Field(default=None, validation_alias=AliasChoices("talla", "size"))

    @model_validator(mode="before")
    @classmethod
    def pick_reference(cls, data: Any) -> Any:
        """Use the first non-empty identifier the agent supplied."""
        if isinstance(data, dict) and not data.get("reference"):
            for key in _LINE_ID_KEYS:
                value = data.get(key)
                if value not in (None, ""):
                    data = {**data, "reference": str(value)}
                    break
        return data

    @field_validator("quantity", mode="before")
    @classmethod
    def default_quantity(cls, v: Any) -> Any:
        return 1 if v in (None, "") else v

    @field_validator("price", mode="before")
    @classmethod
    def blank_price(cls, v: Any) -> Any:
        return _blank_to_none(v)


class OrderInstruction(BaseModel):
    """Agent asks for an order to be created for a customer."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    customer_id: str
    user_id: Optional[str] = None
    customer_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("customer_name", "nombre_cliente")
    )
    customer_last_name: Optional[str] = None
    customer_address: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("customer_address", "direccion")
    )
    city: Optional[str] = Field(default=None, validation_alias=AliasChoices("ciudad", "city"))
    province: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("Departamento", "departamento", "province"),
    )
    payment_method: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("forma_de_pago", "payment_method")
    )
    shipping_tariff_id: Optional[Union[str, int, Dict[str, Any]]] = None
    notes: Optional[str] = Field(default=None, validation_alias=AliasChoices("notes", "notas"))
    chat_id: Optional[str] = None
    products: List[OrderLine]

    @field_validator("customer_id", "user_id", "chat_id", mode="before")
    @classmethod
    def coerce_ids(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @field_validator(
        "customer_last_name", "customer_address", "city", "province", "notes", mode="before"
    )
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        return _blank_to_none(v)


class OrderResult(BaseModel):
    """Response body for a created order."""

    success: bool = True
    order_id: str
    subtotal: Decimal
    shipping_cost: Decimal
    total: Decimal
    items: int
    side_effects: Dict[str, str] = Field(default_factory=dict)
