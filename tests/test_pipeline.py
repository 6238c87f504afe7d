"""
End-to-end tests of the ingestion pipeline against the in-memory database.

Provider and agent HTTP calls are patched; time is driven by the fake clock
and flushes by the sweeper, as a cron-driven deployment would.
"""

from unittest.mock import AsyncMock, patch

import pytest

from chatorder.exceptions import TenantNotFound

from .factories import (
    BSP_INSTANCE,
    CUSTOMER_PHONE,
    TENANT_ID,
    agent_http_response,
    bsp_text_payload,
    meta_payload,
    meta_text,
)


@pytest.fixture
def agent():
    mock = AsyncMock(return_value=agent_http_response({"message": "Workflow was started"}))
    with patch("chatorder.services.agent._post_agent", new=mock):
        yield mock


class TestBspIngestion:
    """Tests for IngestionPipeline.handle_bsp."""

    @pytest.mark.asyncio
    async def test_first_message_creates_customer_chat_and_group(self, db, pipeline):
        result = await pipeline.handle_bsp(TENANT_ID, bsp_text_payload("hola", message_id="BSP-1"))

        summary = result.summary()
        assert summary["success"] is True
        assert summary["processed"] == 1
        assert summary["messages"][0]["type"] == "text"
        assert summary["messages"][0]["media_status"] == "none"

        (customer,) = db.find("customers", user_id=TENANT_ID)
        assert customer["phone"] == CUSTOMER_PHONE
        assert customer["name"] == "Ana"
        (chat,) = db.find("chats", customer_id=customer["id"])
        assert chat["instance_name"] == BSP_INSTANCE
        (message,) = db.find("messages", chat_id=chat["id"])
        assert message["sender_type"] == "customer"
        assert message["status"] == "received"
        assert message["metadata"]["provider"] == "bsp"
        (group,) = db.find("message_groups", customer_id=customer["id"])
        assert group["status"] == "open"

    @pytest.mark.asyncio
    async def test_redelivery_is_discarded(self, db, pipeline):
        payload = bsp_text_payload("hola", message_id="BSP-DUP")

        await pipeline.handle_bsp(TENANT_ID, payload)
        second = await pipeline.handle_bsp(TENANT_ID, payload)

        assert second.summary()["duplicates"] == 1
        assert second.summary()["processed"] == 0
        assert len(db.rows("messages")) == 1
        assert len(db.rows("message_queue")) == 1

    @pytest.mark.asyncio
    async def test_burst_is_one_agent_call(self, db, clock, pipeline, agent):
        """Two quick messages reach the agent together, in order, once."""
        await pipeline.handle_bsp(TENANT_ID, bsp_text_payload("hola", message_id="BSP-A"))
        clock.advance(3)
        await pipeline.handle_bsp(TENANT_ID, bsp_text_payload("quiero 2 camisetas", message_id="BSP-B"))

        clock.advance(5)
        early = await pipeline.sweep()
        assert early["flushed"] == 0
        agent.assert_not_called()

        clock.advance(6)
        swept = await pipeline.sweep()
        again = await pipeline.sweep()

        assert swept["flushed"] == 1
        assert swept["invoked"] == 1
        assert again["flushed"] == 0
        agent.assert_awaited_once()
        payload = agent.call_args.args[1]
        assert payload["messageContent"] == "hola\nquiero 2 camisetas"
        assert payload["customer"]["phone"] == CUSTOMER_PHONE
        assert all(entry["sent"] for entry in db.rows("message_queue"))
        assert len(db.rpc_calls) == 1

    @pytest.mark.asyncio
    async def test_business_echo_of_unknown_message_is_manual(self, db, pipeline, agent, clock):
        await pipeline.handle_bsp(TENANT_ID, bsp_text_payload("hola", message_id="BSP-1"))
        echo = await pipeline.handle_bsp(
            TENANT_ID, bsp_text_payload("Hola Ana, soy Carlos", message_id="BSP-HUMAN", from_me=True)
        )

        assert echo.summary()["manual_replies"] == 1
        (customer,) = db.find("customers", user_id=TENANT_ID)
        assert customer["ai_agent_enabled"] is False

        clock.advance(11)
        swept = await pipeline.sweep()

        assert swept["flushed"] == 1
        assert swept["invoked"] == 0
        agent.assert_not_called()
        (group,) = db.rows("message_groups")
        assert group["outcome"] == "agent_disabled"

    @pytest.mark.asyncio
    async def test_unsupported_message_is_kept_as_text(self, db, pipeline):
        payload = bsp_text_payload("x", message_id="BSP-LOC")
        payload["data"]["message"] = {"locationMessage": {"degreesLatitude": 4.6}}

        result = await pipeline.handle_bsp(TENANT_ID, payload)

        assert result.processed == 1
        (message,) = db.rows("messages")
        assert message["message_type"] == "text"

    @pytest.mark.asyncio
    async def test_group_chat_is_ignored(self, db, pipeline):
        payload = bsp_text_payload("hola grupo")
        payload["data"]["key"]["remoteJid"] = "120363000000000000@g.us"

        result = await pipeline.handle_bsp(TENANT_ID, payload)

        assert result.summary()["ignored"] == 1
        assert db.rows("customers") == []


class TestMetaIngestion:
    """Tests for IngestionPipeline.handle_meta."""

    @pytest.mark.asyncio
    async def test_tenant_resolved_by_phone_number_id(self, db, pipeline):
        payload = meta_payload(
            messages=[meta_text("hola", "wamid.IN1")],
            contacts=[{"wa_id": CUSTOMER_PHONE, "profile": {"name": "Ana"}}],
        )

        result = await pipeline.handle_meta(None, payload)

        assert result.processed == 1
        (chat,) = db.rows("chats")
        assert chat["user_id"] == TENANT_ID
        assert chat["instance_name"].endswith("104857600000001")

    @pytest.mark.asyncio
    async def test_unknown_phone_number_id(self, pipeline):
        payload = meta_payload(messages=[meta_text("hola", "wamid.IN1")], phone_number_id="999")
        with pytest.raises(TenantNotFound):
            await pipeline.handle_meta(None, payload)

    @pytest.mark.asyncio
    async def test_echo_and_status_of_manual_reply(self, db, pipeline):
        await pipeline.handle_meta(None, meta_payload(messages=[meta_text("hola", "wamid.IN1")]))

        echo = meta_text("Ya te atiendo", "wamid.HUMAN", sender="576015550100")
        echo["to"] = CUSTOMER_PHONE
        status = {"id": "wamid.HUMAN", "status": "delivered", "recipient_id": CUSTOMER_PHONE}
        result = await pipeline.handle_meta(None, meta_payload(messages=[echo], statuses=[status]))

        summary = result.summary()
        assert summary["manual_replies"] == 1
        assert summary["statuses"] == 1
        (manual,) = db.find("messages", sender_type="business")
        assert manual["whatsapp_message_id"] == "wamid.HUMAN"
        assert manual["status"] == "delivered"
        (chat,) = db.rows("chats")
        assert chat["ai_agent_enabled"] is False

    @pytest.mark.asyncio
    async def test_status_only_delivery(self, pipeline):
        status = {"id": "wamid.X", "status": "read", "recipient_id": "573119999999"}
        result = await pipeline.handle_meta(None, meta_payload(statuses=[status]))

        assert result.summary()["statuses"] == 1
        assert result.summary()["processed"] == 0


class TestTenantResolution:
    @pytest.mark.asyncio
    async def test_tenant_id_and_token(self, db, pipeline):
        db.seed("webhook_tokens", {"token": "tok-live", "user_id": TENANT_ID, "revoked": False})
        db.seed("webhook_tokens", {"token": "tok-old", "user_id": TENANT_ID, "revoked": True})

        assert await pipeline.tenants.resolve(TENANT_ID) == TENANT_ID
        assert await pipeline.tenants.resolve("tok-live") == TENANT_ID
        with pytest.raises(TenantNotFound):
            await pipeline.tenants.resolve("tok-old")
        with pytest.raises(TenantNotFound):
            await pipeline.tenants.resolve("")

    @pytest.mark.asyncio
    async def test_config_snapshot(self, pipeline):
        config = await pipeline.tenants.load_config(TENANT_ID)

        assert config.buffer_seconds == 10
        assert config.agent_name == "Sofia"
        assert config.store_name == "Tienda Demo"
        assert [rate.id for rate in config.shipping_rates] == ["1", "2"]
        assert config.disables_agent_on_manual_reply is True
