"""
Tests for the inbound idempotency guard.
"""

import pytest

from chatorder.services.idempotency import find_logged_message, find_queued_entry, is_duplicate

from .factories import TENANT_ID
from .fakes import FakeSupabase


@pytest.fixture
def supabase():
    db = FakeSupabase()
    db.seed(
        "message_queue",
        {
            "group_id": "group-1",
            "user_id": TENANT_ID,
            "chat_id": "chat-1",
            "whatsapp_message_id": "BSP-QUEUED",
            "sent": False,
        },
        {
            "group_id": "group-0",
            "user_id": TENANT_ID,
            "chat_id": "chat-1",
            "whatsapp_message_id": "BSP-FLUSHED",
            "sent": True,
        },
    )
    db.seed(
        "messages",
        {"chat_id": "chat-1", "whatsapp_message_id": "BSP-LOGGED", "status": "received"},
        {"chat_id": "chat-1", "whatsapp_message_id": "BSP-FLUSHED", "status": "received"},
    )
    return db


class TestIdempotencyGuard:
    """Tests for is_duplicate and its two sources."""

    @pytest.mark.asyncio
    async def test_unsent_buffer_entry_is_duplicate(self, supabase):
        assert await is_duplicate(supabase, TENANT_ID, "chat-1", "BSP-QUEUED") is True

    @pytest.mark.asyncio
    async def test_logged_message_is_duplicate(self, supabase):
        assert await is_duplicate(supabase, TENANT_ID, "chat-1", "BSP-LOGGED") is True

    @pytest.mark.asyncio
    async def test_flushed_entry_still_caught_by_log(self, supabase):
        """A sent queue entry no longer counts, but its logged message does."""
        assert await find_queued_entry(supabase, TENANT_ID, "chat-1", "BSP-FLUSHED") is None
        assert await is_duplicate(supabase, TENANT_ID, "chat-1", "BSP-FLUSHED") is True

    @pytest.mark.asyncio
    async def test_new_id_is_not_duplicate(self, supabase):
        assert await is_duplicate(supabase, TENANT_ID, "chat-1", "BSP-NEW") is False

    @pytest.mark.asyncio
    async def test_missing_id_is_never_duplicate(self, supabase):
        assert await is_duplicate(supabase, TENANT_ID, "chat-1", None) is False
        assert await is_duplicate(supabase, TENANT_ID, "chat-1", "") is False

    @pytest.mark.asyncio
    async def test_scoped_by_chat(self, supabase):
        """Provider ids are only unique per channel, so other chats do not match."""
        assert await is_duplicate(supabase, TENANT_ID, "chat-2", "BSP-LOGGED") is False
        assert await find_logged_message(supabase, "chat-2", "BSP-LOGGED") is None

    @pytest.mark.asyncio
    async def test_scoped_by_tenant(self, supabase):
        assert await find_queued_entry(supabase, "another-tenant", "chat-1", "BSP-QUEUED") is None
