"""
Phone number helpers for WhatsApp identities.

WhatsApp identifies users by their international number without the "+"
prefix (``5215512345678``), the BSP adds a JID suffix
(``5215512345678@s.whatsapp.net``), and Meta reports the business number in
display format (``+1 555-010-0000``). Customers are keyed by the bare digit
string; phonenumbers is used to canonicalize numbers when they parse.
"""

import re
from typing import Optional

import phonenumbers
from phonenumbers import NumberParseException

_NON_DIGITS = re.compile(r"\D+")

GROUP_JID_SUFFIX = "@g.us"
BROADCAST_JID = "status@broadcast"


def digits_only(value: Optional[str]) -> str:
    """
    Strip everything but digits.

    Examples:
        >>> digits_only("+1 (555) 010-0000")
        '15550100000'
        >>> digits_only(None)
        ''
    """
    if not value:
        return ""
    return _NON_DIGITS.sub("", str(value))


def jid_to_phone(jid: Optional[str]) -> str:
    """
    Convert a WhatsApp JID to a bare phone number.

    The device suffix (``:12``) and the server part are dropped.

    Examples:
        >>> jid_to_phone("5215512345678@s.whatsapp.net")
        '5215512345678'
        >>> jid_to_phone("5215512345678:7@s.whatsapp.net")
        '5215512345678'
    """
    if not jid:
        return ""
    user = jid.split("@", 1)[0].split(":", 1)[0]
    return digits_only(user)


def is_group_or_broadcast(jid: Optional[str]) -> bool:
    """True for group chats and status broadcasts, which are not customers."""
    if not jid:
        return False
    return jid.endswith(GROUP_JID_SUFFIX) or jid == BROADCAST_JID


def normalize_phone(phone: Optional[str]) -> str:
    """
    Normalize a WhatsApp number to E.164 digits without the "+".

    Numbers that phonenumbers can parse as valid are reformatted to E.164
    (removing national trunk prefixes and formatting). Anything else is
    reduced to its digits, because WhatsApp ids are not always valid E.164
    numbers (test numbers, newly allocated ranges) and must still be stored.

    Args:
        phone: Raw phone, JID or display-formatted number

    Returns:
        Digit string, empty when the input holds no digits

    Examples:
        >>> normalize_phone("+44 7122 237689")
        '447122237689'
        >>> normalize_phone("5215512345678@s.whatsapp.net")
        '5215512345678'
    """
    if not phone:
        return ""
    if "@" in phone:
        return jid_to_phone(phone)

    digits = digits_only(phone)
    if not digits:
        return ""

    try:
        parsed = phonenumbers.parse(f"+{digits}", None)
    except NumberParseException:
        return digits

    if not phonenumbers.is_valid_number(parsed):
        return digits

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164).lstrip("+")


def phones_match(a: Optional[str], b: Optional[str]) -> bool:
    """
    Compare two numbers ignoring formatting.

    Empty values never match, so a missing ``from`` is not mistaken for the
    business number.
    """
    left = digits_only(a)
    right = digits_only(b)
    return bool(left) and left == right
