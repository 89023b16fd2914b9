"""Evolution API payload normalizer.

Turns a raw webhook event into a NormalizedMessage. Pure: no I/O, no hidden
state. Field extraction follows fixed precedence tables; earlier sources are
more authoritative than later ones.
"""

from __future__ import annotations

from typing import Any, Mapping

from inboxsync.observability.logging import get_logger
from inboxsync.observability.redaction import safe_log_context

from .errors import NormalizationError
from .models import (
    DEFAULT_INSTANCE_ID,
    MEDIA_PLACEHOLDER,
    UNKNOWN_DISPLAY_NAME,
    DeliveryStatus,
    MessageType,
    NormalizedMessage,
    RawEvent,
)

logger = get_logger(__name__)

# Appended by the gateway to device-qualified user addresses
ADDRESS_SUFFIX = "@s.whatsapp.net"

# Field paths, in priority order
CHAT_ID_SOURCES: tuple[tuple[str, ...], ...] = (("key", "remoteJid"), ("from",), ("to",))
SENDER_SOURCES: tuple[tuple[str, ...], ...] = (("key", "remoteJid"), ("from",), ("sender",))
DISPLAY_NAME_SOURCES: tuple[tuple[str, ...], ...] = (("pushName",), ("notifyName",))
MESSAGE_ID_SOURCES: tuple[tuple[str, ...], ...] = (("key", "id"), ("id",))

# (sub-object keys, type); first match wins
MESSAGE_TYPE_RULES: tuple[tuple[tuple[str, ...], MessageType], ...] = (
    (("imageMessage",), MessageType.IMAGE),
    (("videoMessage",), MessageType.VIDEO),
    (("audioMessage", "pttMessage"), MessageType.AUDIO),
    (("documentMessage",), MessageType.FILE),
    (("locationMessage",), MessageType.LOCATION),
    (("contactMessage",), MessageType.CONTACT),
)

CAPTIONED_MEDIA = ("imageMessage", "videoMessage", "documentMessage")

STATUS_MAP: dict[str, DeliveryStatus] = {
    "PENDING": DeliveryStatus.SENDING,
    "SERVER_ACK": DeliveryStatus.SENT,
    "SENT": DeliveryStatus.SENT,
    "DELIVERY_ACK": DeliveryStatus.DELIVERED,
    "delivered": DeliveryStatus.DELIVERED,
    "READ_ACK": DeliveryStatus.READ,
    "read": DeliveryStatus.READ,
    "PLAYED": DeliveryStatus.READ,
    "ERROR": DeliveryStatus.FAILED,
    "failed": DeliveryStatus.FAILED,
}

DEFAULT_STATUS = DeliveryStatus.SENT


def _lookup(obj: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    current: Any = obj
    for part in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def _as_text(value: Any) -> str | None:
    """Return value as a non-empty string, or None if it is not usable."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip():
        return value
    return None


def _as_content(value: Any) -> str | None:
    """Message text is kept verbatim; only missing or empty strings are skipped."""
    if isinstance(value, str) and value:
        return value
    return None


def first_present(obj: Mapping[str, Any], sources: tuple[tuple[str, ...], ...]) -> str | None:
    """Return the first usable value along the given field paths."""
    for path in sources:
        text = _as_text(_lookup(obj, path))
        if text is not None:
            return text
    return None


def canonical_address(address: str) -> str:
    """Strip the gateway suffix to get the comparison key for an address."""
    address = address.strip()
    if address.endswith(ADDRESS_SUFFIX):
        return address[: -len(ADDRESS_SUFFIX)]
    return address


def unwrap(raw: RawEvent) -> dict[str, Any]:
    """Return the message object, unwrapping one `data` envelope if present."""
    data = raw.get("data")
    if isinstance(data, Mapping):
        return dict(data)
    return raw


def _message_body(data: Mapping[str, Any]) -> Mapping[str, Any]:
    message = data.get("message")
    return message if isinstance(message, Mapping) else data


def classify_message_type(data: Mapping[str, Any]) -> MessageType:
    message = data.get("message")
    if isinstance(message, Mapping):
        for keys, message_type in MESSAGE_TYPE_RULES:
            if any(message.get(k) is not None for k in keys):
                return message_type
    if data.get("messageType") == "system":
        return MessageType.SYSTEM
    return MessageType.TEXT


def extract_content(data: Mapping[str, Any]) -> str:
    """Derive displayable text; non-text media without caption gets a placeholder."""
    message = _message_body(data)

    for path in (("conversation",), ("extendedTextMessage", "text")):
        text = _as_content(_lookup(message, path))
        if text is not None:
            return text
    for key in ("text", "body"):
        text = _as_content(data.get(key))
        if text is not None:
            return text

    for key in CAPTIONED_MEDIA:
        caption = _as_content(_lookup(message, (key, "caption")))
        if caption is not None:
            return caption

    location = message.get("locationMessage")
    if isinstance(location, Mapping):
        return f"Location: {location.get('degreesLatitude')}, {location.get('degreesLongitude')}"

    contact = message.get("contactMessage")
    if isinstance(contact, Mapping):
        return f"Contact: {contact.get('displayName') or contact.get('vcard')}"

    return MEDIA_PLACEHOLDER


def map_status(status: Any) -> DeliveryStatus:
    """Map gateway status vocabulary to a canonical delivery status."""
    if status is None:
        logger.debug("message without status, using default")
        return DEFAULT_STATUS
    mapped = STATUS_MAP.get(status) if isinstance(status, str) else None
    if mapped is None:
        # Classification gap, not an error
        logger.info(
            "unknown delivery status, using fallback",
            extra={
                "extra_fields": safe_log_context(
                    status=status, fallback=DEFAULT_STATUS.value
                )
            },
        )
        return DEFAULT_STATUS
    return mapped


def normalize(raw: RawEvent) -> NormalizedMessage:
    """Normalize an Evolution webhook event.

    Args:
        raw: Raw webhook payload, possibly wrapped in a `data` envelope.

    Returns:
        NormalizedMessage with every field populated.

    Raises:
        NormalizationError: If the payload is not an object (`invalid_payload`)
            or no chat id / sender address can be derived
            (`missing_identifiers`).
    """
    if not isinstance(raw, Mapping):
        raise NormalizationError("invalid_payload", f"expected object, got {type(raw).__name__}")

    data = unwrap(raw)

    chat_id = first_present(data, CHAT_ID_SOURCES)
    sender_address = first_present(data, SENDER_SOURCES)
    sender_key = canonical_address(sender_address) if sender_address is not None else ""
    if chat_id is None or not sender_key:
        # A bare suffix leaves no key to resolve the sender by
        missing = [
            name
            for name, ok in (("chat_id", chat_id is not None), ("sender_address", bool(sender_key)))
            if not ok
        ]
        raise NormalizationError("missing_identifiers", ",".join(missing))

    instance_id = (
        _as_text(data.get("instanceId"))
        or _as_text(raw.get("instanceId"))
        or DEFAULT_INSTANCE_ID
    )

    return NormalizedMessage(
        chat_id=chat_id,
        sender_address=sender_address,
        sender_key=sender_key,
        sender_display_name=first_present(data, DISPLAY_NAME_SOURCES) or UNKNOWN_DISPLAY_NAME,
        is_outbound=bool(_lookup(data, ("key", "fromMe"))),
        instance_id=instance_id,
        message_type=classify_message_type(data),
        content=extract_content(data),
        external_message_id=first_present(data, MESSAGE_ID_SOURCES) or "",
        delivery_status=map_status(data.get("status")),
    )
