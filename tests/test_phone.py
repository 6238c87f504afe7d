"""
Tests for WhatsApp phone helpers.
"""

import pytest

from chatorder.utils.phone import (
    digits_only,
    is_group_or_broadcast,
    jid_to_phone,
    normalize_phone,
    phones_match,
)


class TestNormalizePhone:
    """Tests for normalize_phone."""

    @pytest.mark.parametrize(
        "raw",
        [
            "573001234567",
            "+57 300 123 4567",
            "573001234567@s.whatsapp.net",
            "573001234567:12@s.whatsapp.net",
        ],
    )
    def test_formats_collapse_to_same_key(self, raw):
        assert normalize_phone(raw) == "573001234567"

    def test_unparseable_number_keeps_digits(self):
        """WhatsApp test numbers are not valid E.164 but must still be stored."""
        assert normalize_phone("+1 555 0100") == "15550100"

    def test_empty_inputs(self):
        assert normalize_phone(None) == ""
        assert normalize_phone("") == ""
        assert normalize_phone("abc") == ""


class TestJids:
    def test_jid_to_phone(self):
        assert jid_to_phone("5215512345678@s.whatsapp.net") == "5215512345678"
        assert jid_to_phone(None) == ""

    def test_group_and_broadcast(self):
        assert is_group_or_broadcast("120363000000000000@g.us") is True
        assert is_group_or_broadcast("status@broadcast") is True
        assert is_group_or_broadcast("573001234567@s.whatsapp.net") is False
        assert is_group_or_broadcast(None) is False


class TestPhonesMatch:
    def test_formatting_is_ignored(self):
        assert phones_match("+57 601 555 0100", "576015550100") is True

    def test_empty_never_matches(self):
        assert phones_match(None, None) is False
        assert phones_match("", "") is False

    def test_digits_only(self):
        assert digits_only("+1 (555) 010-0000") == "15550100000"
