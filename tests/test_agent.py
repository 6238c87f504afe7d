"""
Tests for the agent invocation bridge and agent response handling.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest

from chatorder.exceptions import (
    AgentInvocationError,
    ChatNotFound,
    CustomerNotFound,
    InvalidAgentResponse,
    OrderValidationError,
)
from chatorder.schemas import ShippingRate, TenantConfig
from chatorder.services.agent import (
    AgentBridge,
    build_payload,
    classify_agent_response,
    extract_reply_text,
)
from chatorder.services.directory import CustomerDirectory
from chatorder.services.messages import MessageLog
from chatorder.services.outbound import OutboundSender
from chatorder.services.whatsapp import ChannelResolver

from .factories import (
    AGENT_URL,
    CUSTOMER_PHONE,
    TENANT_ID,
    agent_http_response,
    seed_conversation,
)


@pytest.fixture
def conversation(db, clock):
    return seed_conversation(db, clock)


@pytest.fixture
def bridge(db, clock):
    directory = CustomerDirectory(db, clock)
    outbound = OutboundSender(MessageLog(db, clock), ChannelResolver(db), directory)
    return AgentBridge(db, directory, outbound, clock)


@pytest.fixture
def config():
    return TenantConfig(tenant_id=TENANT_ID, agent_webhook_url=AGENT_URL, agent_name="Sofia")


@pytest.fixture
def group(db, conversation):
    (row,) = db.seed(
        "message_groups",
        {
            "user_id": TENANT_ID,
            "customer_id": conversation["customer"]["id"],
            "chat_id": conversation["chat"]["id"],
            "kind": "text",
            "status": "flushing",
            "usage_recorded": False,
        },
    )
    return row


def entry(sequence: int, content: str, message_type: str = "text", media_url: str = None):
    return {
        "id": f"entry-{sequence}",
        "sequence_number": sequence,
        "message_type": message_type,
        "content": content,
        "media_url": media_url,
        "quoted": None,
    }


class TestReplyExtraction:
    """Tests for extract_reply_text."""

    def test_known_key(self):
        assert extract_reply_text({"mensaje_agente": "Hola! Claro que si"}) == "Hola! Claro que si"

    def test_nested_list(self):
        body = [{"data": {"reply": "Te muestro el catalogo"}}]
        assert extract_reply_text(body) == "Te muestro el catalogo"

    def test_plain_text_body(self):
        assert extract_reply_text("  Tenemos talla M  ") == "Tenemos talla M"

    def test_acknowledgements_are_not_replies(self):
        assert extract_reply_text({"message": "Workflow was started"}) is None
        assert extract_reply_text({"status": "ok", "text": "OK."}) is None

    def test_too_short_is_ignored(self):
        assert extract_reply_text({"reply": "si"}) is None

    def test_non_text_values_are_ignored(self):
        assert extract_reply_text({"respuesta_agente": True}) is None
        assert extract_reply_text(None) is None


class TestClassifyAgentResponse:
    def test_send_instruction(self):
        payload = {"respuesta_agente": True, "celular_destinario": CUSTOMER_PHONE, "mensaje": "hola"}
        assert classify_agent_response(payload) == "send"

    def test_string_flag_is_accepted(self):
        payload = {"respuesta_agente": "true", "phone": CUSTOMER_PHONE, "mensaje": "hola"}
        assert classify_agent_response(payload) == "send"

    def test_send_without_phone_is_invalid(self):
        with pytest.raises(InvalidAgentResponse):
            classify_agent_response({"respuesta_agente": True, "mensaje": "hola"})

    def test_order_instruction(self):
        assert classify_agent_response({"customer_id": "c1", "products": []}) == "order"

    def test_anything_else_is_invalid(self):
        with pytest.raises(InvalidAgentResponse):
            classify_agent_response({"hello": "world"})
        with pytest.raises(InvalidAgentResponse):
            classify_agent_response(["not", "an", "object"])


class TestBuildPayload:
    def test_payload_shape(self, conversation):
        config = TenantConfig(
            tenant_id=TENANT_ID,
            agent_name="Sofia",
            store_info="Ropa deportiva",
            shipping_rates=[ShippingRate(id="1", name="Bogota", price="8000")],
        )
        entries = [
            entry(1, "hola"),
            entry(2, "[Image]", "image", "https://storage.test/a.jpg"),
            entry(3, "quiero 2 camisetas"),
        ]

        payload = build_payload(
            config,
            {"id": "group-1"},
            conversation["customer"],
            conversation["chat"],
            entries,
            [],
            datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc),
        )

        assert payload["userId"] == TENANT_ID
        assert payload["groupId"] == "group-1"
        assert payload["chatId"] == conversation["chat"]["id"]
        assert payload["customer"]["phone"] == CUSTOMER_PHONE
        assert payload["messageContent"] == "hola\n[Image]\nquiero 2 camisetas"
        assert payload["messageCount"] == 3
        assert [m["sequence"] for m in payload["messages"]] == [1, 2, 3]
        assert payload["imageUrls"] == ["https://storage.test/a.jpg"]
        assert payload["audioUrls"] == []
        assert payload["agentName"] == "Sofia"
        assert payload["shippingRates"][0]["id"] == "1"


class TestInvokeGroup:
    """Tests for AgentBridge.invoke_group gating and delivery."""

    @pytest.mark.asyncio
    async def test_inline_reply_is_delivered(self, db, bridge, config, group, conversation):
        agent = AsyncMock(return_value=agent_http_response({"mensaje_agente": "Claro, te ayudo"}))
        provider = AsyncMock(return_value={"key": {"id": "BSP-OUT-1"}})

        with patch("chatorder.services.agent._post_agent", new=agent), patch(
            "chatorder.services.whatsapp.post_provider", new=provider
        ):
            result = await bridge.invoke_group(config, group, [entry(1, "hola")])

        assert result.invoked is True
        assert result.reply_sent is True
        assert agent.call_args.args[0] == AGENT_URL
        (sent,) = db.find("messages", sender_type="agent")
        assert sent["content"] == "Claro, te ayudo"
        assert sent["status"] == "sent"
        assert sent["whatsapp_message_id"] == "BSP-OUT-1"
        assert provider.call_args.args[3] == {"number": CUSTOMER_PHONE, "text": "Claro, te ayudo"}

    @pytest.mark.asyncio
    async def test_usage_recorded_once_per_group(self, db, bridge, config, group):
        agent = AsyncMock(return_value=agent_http_response({"message": "Workflow was started"}))

        with patch("chatorder.services.agent._post_agent", new=agent):
            await bridge.invoke_group(config, group, [entry(1, "hola")])
        again = await bridge.record_usage(group, "hola")

        assert again is False
        assert len(db.rpc_calls) == 1
        name, params = db.rpc_calls[0]
        assert name == "increment_ai_message_usage"
        assert params["target_user_id"] == TENANT_ID
        assert params["message_content_param"] == "hola"

    @pytest.mark.asyncio
    async def test_agent_disabled_for_customer(self, db, bridge, config, group, conversation):
        db.rows("customers")[0]["ai_agent_enabled"] = False
        agent = AsyncMock()

        with patch("chatorder.services.agent._post_agent", new=agent):
            result = await bridge.invoke_group(config, group, [entry(1, "hola")])

        assert result.invoked is False
        assert result.reason == "agent_disabled"
        agent.assert_not_called()
        assert db.rpc_calls == []

    @pytest.mark.asyncio
    async def test_blocked_tenant_disables_chat(self, db, bridge, group, conversation):
        config = TenantConfig(tenant_id=TENANT_ID, agent_webhook_url=AGENT_URL, ai_messages_blocked=True)
        agent = AsyncMock()

        with patch("chatorder.services.agent._post_agent", new=agent):
            result = await bridge.invoke_group(config, group, [entry(1, "hola")])

        assert result.reason == "ai_messages_blocked"
        agent.assert_not_called()
        (chat,) = db.find("chats", id=conversation["chat"]["id"])
        assert chat["ai_agent_enabled"] is False

    @pytest.mark.asyncio
    async def test_no_agent_url(self, bridge, group):
        result = await bridge.invoke_group(TenantConfig(tenant_id=TENANT_ID), group, [entry(1, "hola")])
        assert result.invoked is False
        assert result.reason == "no_agent_url"

    @pytest.mark.asyncio
    async def test_missing_chat(self, db, bridge, config, group):
        db.rows("chats").clear()
        result = await bridge.invoke_group(config, group, [entry(1, "hola")])
        assert result.reason == "chat_missing"

    @pytest.mark.asyncio
    async def test_http_error_raises_invocation_error(self, db, bridge, config, group):
        response = Mock()
        response.raise_for_status = Mock(
            side_effect=httpx.HTTPStatusError(
                "bad gateway",
                request=httpx.Request("POST", AGENT_URL),
                response=httpx.Response(502),
            )
        )

        with patch("chatorder.services.agent._post_agent", new=AsyncMock(return_value=response)):
            with pytest.raises(AgentInvocationError) as exc_info:
                await bridge.invoke_group(config, group, [entry(1, "hola")])

        assert exc_info.value.status_code == 502
        assert exc_info.value.group_id == group["id"]
        assert db.rpc_calls == []

    @pytest.mark.asyncio
    async def test_featured_products_from_special_instructions(self, db, bridge):
        (product,) = db.seed(
            "products", {"user_id": TENANT_ID, "name": "Camiseta", "price": "45000", "description": ""}
        )
        config = TenantConfig(
            tenant_id=TENANT_ID,
            special_instructions=f"Recomienda siempre {product['id'].upper()} primero",
        )

        featured = await bridge.featured_products(config)

        assert [p["id"] for p in featured] == [product["id"]]


class TestAgentResponseHandler:
    """Tests for applying send and order instructions."""

    @pytest.mark.asyncio
    async def test_send_instruction_goes_to_latest_chat(self, db, pipeline, conversation):
        provider = AsyncMock(return_value={"key": {"id": "BSP-OUT-9"}})
        payload = {
            "respuesta_agente": True,
            "celular_destinario": f"+{CUSTOMER_PHONE}",
            "mensaje": "Te envio la foto",
            "url_imagen": "https://cdn.test/camiseta.jpg",
        }

        with patch("chatorder.services.whatsapp.post_provider", new=provider):
            result = await pipeline.agent_responses.handle(TENANT_ID, payload)

        assert result["type"] == "send"
        assert result["chat_id"] == conversation["chat"]["id"]
        assert result["sent"] == 2
        # Media first so the text follows the image it refers to
        assert provider.call_args_list[0].args[2] == "/message/sendMedia/tienda"
        assert provider.call_args_list[1].args[2] == "/message/sendText/tienda"

    @pytest.mark.asyncio
    async def test_unknown_phone(self, pipeline, conversation):
        payload = {"respuesta_agente": True, "celular_destinario": "573119999999", "mensaje": "hola"}
        with pytest.raises(CustomerNotFound):
            await pipeline.agent_responses.handle(TENANT_ID, payload)

    @pytest.mark.asyncio
    async def test_send_without_content(self, pipeline, conversation):
        payload = {"respuesta_agente": True, "celular_destinario": CUSTOMER_PHONE, "mensaje": " "}
        with pytest.raises(InvalidAgentResponse):
            await pipeline.agent_responses.handle(TENANT_ID, payload)

    @pytest.mark.asyncio
    async def test_chat_of_another_customer_is_rejected(self, db, clock, pipeline, conversation):
        other = seed_conversation(db, clock, phone="573118888888")
        payload = {
            "respuesta_agente": True,
            "celular_destinario": CUSTOMER_PHONE,
            "mensaje": "hola",
            "chat_id": other["chat"]["id"],
        }
        with pytest.raises(ChatNotFound):
            await pipeline.agent_responses.handle(TENANT_ID, payload)

    @pytest.mark.asyncio
    async def test_malformed_order(self, pipeline, conversation):
        payload = {"customer_id": conversation["customer"]["id"], "products": "two shirts"}
        with pytest.raises(OrderValidationError):
            await pipeline.agent_responses.handle(TENANT_ID, payload)
