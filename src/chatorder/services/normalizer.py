"""
Provider payload normalization.

Two transport adapters turn native webhook JSON into NormalizedPayload:

- ``normalize_bsp_payload``: BSP (Evolution-style) ``messages.upsert`` events,
  one message per delivery under ``data``.
- ``normalize_meta_payload``: Meta Cloud API ``entry[].changes[].value``
  objects with ``messages``, ``contacts`` and ``statuses``.

Adapters never raise on unexpected shapes. Unknown message types become an
UnsupportedMessage and unparseable items are counted in ``skipped``, because a
rejected webhook would only be retried by the provider.
"""

from typing import Any, Dict, List, Optional

from supabase import Client

from ..schemas import (
    AudioMessage,
    ChannelRef,
    DocumentMessage,
    ImageMessage,
    MediaReference,
    NormalizedPayload,
    QuotedReference,
    ResolvedQuote,
    StatusUpdate,
    TextMessage,
    UnsupportedMessage,
    VideoMessage,
)
from ..utils.clock import parse_timestamp
from ..utils.logging import get_logger
from ..utils.phone import digits_only, is_group_or_broadcast, jid_to_phone, phones_match

logger = get_logger(__name__)

BSP_MESSAGE_EVENTS = {"messages.upsert", "MESSAGES_UPSERT"}
META_INSTANCE_PREFIX = "meta_"


def meta_instance_name(phone_number_id: str) -> str:
    return f"{META_INSTANCE_PREFIX}{phone_number_id}"


# ---------------------------------------------------------------------------
# BSP adapter
# ---------------------------------------------------------------------------


def _bsp_quoted_text(quoted: Dict[str, Any]) -> Optional[str]:
    if not isinstance(quoted, dict):
        return None
    if quoted.get("conversation"):
        return quoted["conversation"]
    for key, field in (
        ("extendedTextMessage", "text"),
        ("imageMessage", "caption"),
        ("videoMessage", "caption"),
        ("documentMessage", "fileName"),
    ):
        inner = quoted.get(key)
        if isinstance(inner, dict) and inner.get(field):
            return inner[field]
    return None


def _bsp_context(message: Dict[str, Any]) -> Optional[QuotedReference]:
    """Find contextInfo on whichever sub-message carries it."""
    for value in message.values():
        if not isinstance(value, dict):
            continue
        context = value.get("contextInfo")
        if isinstance(context, dict) and context.get("stanzaId"):
            return QuotedReference(
                provider_message_id=context["stanzaId"],
                inline_content=_bsp_quoted_text(context.get("quotedMessage") or {}),
                sender_phone=jid_to_phone(context.get("participant")) or None,
            )
    return None


def parse_bsp_message(data: Dict[str, Any]) -> Optional[Any]:
    """
    Parse the ``data`` object of one BSP message event.

    Args:
        data: ``payload["data"]``

    Returns:
        A canonical message, or None for group/broadcast chats and payloads
        without a usable sender
    """
    key = data.get("key") or {}
    remote_jid = key.get("remoteJid")
    if is_group_or_broadcast(remote_jid):
        logger.debug("Ignoring group/broadcast message", extra={"jid_kind": "group"})
        return None

    customer_phone = jid_to_phone(remote_jid)
    if not customer_phone:
        return None

    from_me = bool(key.get("fromMe"))
    message = data.get("message") or {}
    common: Dict[str, Any] = {
        "provider_message_id": key.get("id"),
        "sender_phone": None if from_me else customer_phone,
        "customer_phone": customer_phone,
        "display_name": None if from_me else data.get("pushName"),
        "timestamp": parse_timestamp(data.get("messageTimestamp")),
        "from_business": from_me,
        "quoted": _bsp_context(message),
    }
    handle = key.get("id") or ""

    if message.get("conversation"):
        return TextMessage(text=message["conversation"], **common)

    extended = message.get("extendedTextMessage")
    if isinstance(extended, dict) and extended.get("text"):
        return TextMessage(text=extended["text"], **common)

    image = message.get("imageMessage")
    if isinstance(image, dict):
        return ImageMessage(
            media=MediaReference(handle=handle, mime_type=image.get("mimetype")),
            caption=image.get("caption") or None,
            **common,
        )

    audio = message.get("audioMessage")
    if isinstance(audio, dict):
        return AudioMessage(
            media=MediaReference(handle=handle, mime_type=audio.get("mimetype")),
            voice_note=bool(audio.get("ptt")),
            **common,
        )

    video = message.get("videoMessage")
    if isinstance(video, dict):
        return VideoMessage(
            media=MediaReference(handle=handle, mime_type=video.get("mimetype")),
            caption=video.get("caption") or None,
            **common,
        )

    document = message.get("documentMessage") or (
        (message.get("documentWithCaptionMessage") or {}).get("message", {}).get("documentMessage")
    )
    if isinstance(document, dict):
        return DocumentMessage(
            media=MediaReference(
                handle=handle,
                mime_type=document.get("mimetype"),
                filename=document.get("fileName"),
            ),
            caption=document.get("caption") or None,
            **common,
        )

    original_type = data.get("messageType") or next(
        (name for name in message if name != "messageContextInfo"), "unknown"
    )
    return UnsupportedMessage(original_type=str(original_type), **common)


def normalize_bsp_payload(payload: Dict[str, Any]) -> NormalizedPayload:
    """
    Normalize a BSP webhook delivery.

    Args:
        payload: Raw webhook JSON

    Returns:
        NormalizedPayload with zero or one message
    """
    channel = ChannelRef(kind="bsp", instance_name=payload.get("instance") or None)
    event = payload.get("event")
    if event and event not in BSP_MESSAGE_EVENTS:
        logger.debug("Ignoring non-message BSP event", extra={"event": event})
        return NormalizedPayload(channel=channel)

    data = payload.get("data")
    # Some BSP versions batch upserts as a list
    items = data if isinstance(data, list) else [data]
    result = NormalizedPayload(channel=channel)
    for item in items:
        if not isinstance(item, dict):
            result.skipped += 1
            continue
        try:
            parsed = parse_bsp_message(item)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(
                "Could not parse BSP message",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            result.skipped += 1
            continue
        if parsed is None:
            result.skipped += 1
            continue
        result.messages.append(parsed)
    return result


# ---------------------------------------------------------------------------
# Meta Cloud API adapter
# ---------------------------------------------------------------------------


def is_business_sender(
    sender: Optional[str],
    phone_number_id: Optional[str],
    display_phone_number: Optional[str],
) -> bool:
    """
    Decide whether a Meta message was sent by the business number.

    Meta echoes messages sent from the WhatsApp Business app on coexistence
    numbers. Those carry either no ``from``, the phone_number_id, or the
    display number in any formatting.
    """
    if not sender:
        return True
    return phones_match(sender, phone_number_id) or phones_match(sender, display_phone_number)


def parse_meta_message(
    message: Dict[str, Any],
    channel: ChannelRef,
    contact_names: Dict[str, str],
) -> Optional[Any]:
    """
    Parse one element of ``value.messages``.

    Returns:
        A canonical message, or None when the customer side cannot be found
    """
    sender = message.get("from")
    from_business = is_business_sender(
        sender, channel.phone_number_id, channel.display_phone_number
    )
    customer_phone = digits_only(message.get("to") if from_business else sender)
    if not customer_phone:
        return None

    context = message.get("context") or {}
    quoted = None
    if context.get("id"):
        quoted = QuotedReference(
            provider_message_id=context["id"],
            sender_phone=digits_only(context.get("from")) or None,
        )

    common: Dict[str, Any] = {
        "provider_message_id": message.get("id"),
        "sender_phone": None if from_business else customer_phone,
        "customer_phone": customer_phone,
        "display_name": None if from_business else contact_names.get(customer_phone),
        "timestamp": parse_timestamp(message.get("timestamp")),
        "from_business": from_business,
        "quoted": quoted,
    }
    msg_type = message.get("type") or "unknown"
    body = message.get(msg_type) if isinstance(message.get(msg_type), dict) else {}

    if msg_type == "text":
        text = body.get("body")
        if text:
            return TextMessage(text=text, **common)
        return UnsupportedMessage(original_type="empty_text", **common)

    if msg_type in ("interactive", "button"):
        # Button and list replies are plain text for the agent
        reply = body.get("button_reply") or body.get("list_reply") or {}
        text = reply.get("title") or body.get("text") or body.get("payload")
        if text:
            return TextMessage(text=text, **common)

    if msg_type in ("image", "sticker") and body.get("id"):
        return ImageMessage(
            media=MediaReference(handle=body["id"], mime_type=body.get("mime_type")),
            caption=body.get("caption") or None,
            **common,
        )

    if msg_type in ("audio", "voice") and body.get("id"):
        return AudioMessage(
            media=MediaReference(handle=body["id"], mime_type=body.get("mime_type")),
            voice_note=bool(body.get("voice")) or msg_type == "voice",
            **common,
        )

    if msg_type == "video" and body.get("id"):
        return VideoMessage(
            media=MediaReference(handle=body["id"], mime_type=body.get("mime_type")),
            caption=body.get("caption") or None,
            **common,
        )

    if msg_type == "document" and body.get("id"):
        return DocumentMessage(
            media=MediaReference(
                handle=body["id"],
                mime_type=body.get("mime_type"),
                filename=body.get("filename"),
            ),
            caption=body.get("caption") or None,
            **common,
        )

    return UnsupportedMessage(original_type=msg_type, **common)


def normalize_meta_payload(payload: Dict[str, Any]) -> List[NormalizedPayload]:
    """
    Normalize a Meta Cloud API webhook delivery.

    One delivery may batch several phone numbers; each ``value`` becomes its
    own NormalizedPayload so messages stay attached to their channel.

    Args:
        payload: Raw webhook JSON

    Returns:
        One NormalizedPayload per ``messages`` change
    """
    results: List[NormalizedPayload] = []
    entries = payload.get("entry") or []
    if not isinstance(entries, list):
        logger.warning("Meta payload entry is not a list")
        return results

    for entry in entries:
        for change in (entry or {}).get("changes") or []:
            if not isinstance(change, dict):
                continue
            field = change.get("field")
            if field and field != "messages":
                logger.debug("Ignoring non-message Meta change", extra={"field": field})
                continue

            value = change.get("value") or {}
            metadata = value.get("metadata") or {}
            phone_number_id = metadata.get("phone_number_id")
            channel = ChannelRef(
                kind="meta",
                instance_name=meta_instance_name(phone_number_id) if phone_number_id else None,
                phone_number_id=str(phone_number_id) if phone_number_id else None,
                display_phone_number=metadata.get("display_phone_number"),
            )
            result = NormalizedPayload(channel=channel)

            contact_names = {
                digits_only(contact.get("wa_id")): (contact.get("profile") or {}).get("name")
                for contact in value.get("contacts") or []
                if isinstance(contact, dict) and contact.get("wa_id")
            }

            for message in value.get("messages") or []:
                try:
                    parsed = parse_meta_message(message, channel, contact_names)
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.warning(
                        "Could not parse Meta message",
                        extra={"error": str(e), "error_type": type(e).__name__},
                    )
                    parsed = None
                if parsed is None:
                    result.skipped += 1
                else:
                    result.messages.append(parsed)

            for status in value.get("statuses") or []:
                if not isinstance(status, dict) or not status.get("id"):
                    result.skipped += 1
                    continue
                result.statuses.append(
                    StatusUpdate(
                        provider_message_id=status["id"],
                        status=status.get("status") or "unknown",
                        recipient_phone=digits_only(status.get("recipient_id")) or None,
                        timestamp=parse_timestamp(status.get("timestamp")),
                    )
                )

            results.append(result)

    logger.debug(
        "Meta payload normalized",
        extra={
            "changes": len(results),
            "messages": sum(len(r.messages) for r in results),
            "statuses": sum(len(r.statuses) for r in results),
        },
    )
    return results


# ---------------------------------------------------------------------------
# Quoted messages
# ---------------------------------------------------------------------------


async def resolve_quote(
    supabase: Client,
    chat_id: str,
    quoted: QuotedReference,
    sender_phone: Optional[str],
) -> ResolvedQuote:
    """
    Resolve a reply-to reference against the message log.

    When the quoted message is unknown (sent before the tenant connected, or
    lost), the sender is inferred: a quote of the current sender's own number
    is the customer's message, anything else was the business.

    Args:
        supabase: Supabase client
        chat_id: Chat the reply arrived in
        quoted: Raw quote from the adapter
        sender_phone: Phone of the message doing the quoting

    Returns:
        ResolvedQuote with ``found`` telling which path was taken
    """
    response = (
        supabase.table("messages")
        .select("message_type, content, sender_type")
        .eq("chat_id", chat_id)
        .eq("whatsapp_message_id", quoted.provider_message_id)
        .limit(1)
        .execute()
    )
    if response.data:
        row = response.data[0]
        return ResolvedQuote(
            provider_message_id=quoted.provider_message_id,
            found=True,
            message_type=row.get("message_type"),
            content=row.get("content"),
            sender_type=row.get("sender_type") or "unknown",
        )

    if quoted.sender_phone and sender_phone:
        sender_type = "customer" if phones_match(quoted.sender_phone, sender_phone) else "business"
    else:
        sender_type = "unknown"

    return ResolvedQuote(
        provider_message_id=quoted.provider_message_id,
        found=False,
        content=quoted.inline_content,
        sender_type=sender_type,
    )
