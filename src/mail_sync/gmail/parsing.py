"""Helpers for decoding Gmail API messages into ``NormalizedEmail``.

Gmail returns ``format=full`` messages as a tree of parts whose bodies are
base64url encoded. Attachment bodies are not inlined; the part only carries
an ``attachmentId`` that can be exchanged for bytes later.

``raw_to_payload`` converts RFC 822 bytes (``format=raw`` or our own encoder
output) into the same tree so that both shapes share one decoder.
"""

from __future__ import annotations

import base64
import binascii
import email
import email.policy
from datetime import datetime, timezone
from email.message import Message
from email.utils import getaddresses, parseaddr, parsedate_to_datetime
from typing import Any

import structlog

from mail_sync.exceptions import DecodeError
from mail_sync.gmail.quoting import HeuristicQuoteStripper
from mail_sync.interfaces import QuoteStripper
from mail_sync.models import LOCAL_USER_SENDER, AttachmentRef, NormalizedEmail

logger = structlog.get_logger()

DEFAULT_ATTACHMENT_URL_TEMPLATE = "/api/emails/{message_id}/attachments/{attachment_id}"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_DEFAULT_STRIPPER = HeuristicQuoteStripper()


def _header_map(payload: dict[str, Any]) -> dict[str, str]:
    headers = payload.get("headers") or []
    result: dict[str, str] = {}
    for h in headers:
        name = h.get("name")
        value = h.get("value")
        if isinstance(name, str) and isinstance(value, str):
            # Gmail can include duplicates; keep the first for now.
            result.setdefault(name.lower(), value)
    return result


def header_value(message: dict[str, Any], name: str) -> str | None:
    """Return the first header called ``name`` (case-insensitive) or None."""

    return _header_map(message.get("payload") or {}).get(name.lower())


def _parse_address_list(value: str | None) -> list[str]:
    if not value:
        return []
    # getaddresses returns list[(name, addr)]
    return [addr for _, addr in getaddresses([value]) if addr]


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _charset(part: dict[str, Any]) -> str:
    content_type = _header_map(part).get("content-type", "")
    msg = Message()
    msg["Content-Type"] = content_type or "text/plain"
    return msg.get_content_charset() or "utf-8"


def decode_body_data(data: str, charset: str = "utf-8") -> str:
    """Decode a Gmail base64url body into text."""

    padded = data + "=" * (-len(data) % 4)
    raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    try:
        return raw.decode(charset, errors="replace")
    except LookupError:
        return raw.decode("utf-8", errors="replace")


def resolve_sender(from_raw: str | None, label_ids: list[str]) -> str:
    """Resolve the display sender of a message.

    Messages in the SENT label always belong to the authenticated user. For
    everything else prefer the display name of ``"Name <addr>"`` and fall
    back to the raw header.
    """

    if "SENT" in label_ids:
        return LOCAL_USER_SENDER
    if not from_raw:
        return ""
    if "<" in from_raw:
        name, _ = parseaddr(from_raw)
        if name:
            return name
    return from_raw.strip()


class _PartWalker:
    def __init__(self, message_id: str, url_template: str) -> None:
        self.message_id = message_id
        self.url_template = url_template
        self.text_body: str | None = None
        self.html_body: str | None = None
        self.attachments: list[AttachmentRef] = []

    def walk(self, parts: list[dict[str, Any]]) -> None:
        for part in parts:
            self._visit(part)
            nested = part.get("parts")
            if nested:
                self.walk(nested)

    def _visit(self, part: dict[str, Any]) -> None:
        mime_type = (part.get("mimeType") or "").lower()
        body = part.get("body") or {}
        filename = part.get("filename")
        attachment_id = body.get("attachmentId")

        if filename and attachment_id:
            self.attachments.append(
                AttachmentRef(
                    filename=filename,
                    mime_type=part.get("mimeType") or "application/octet-stream",
                    provider_attachment_id=attachment_id,
                    access_url=self.url_template.format(
                        message_id=self.message_id, attachment_id=attachment_id
                    ),
                    size=body.get("size"),
                )
            )
            return

        data = body.get("data")
        if not data:
            return
        if mime_type == "text/plain" and not self.text_body:
            self.text_body = decode_body_data(data, _charset(part))
        elif mime_type == "text/html" and not self.html_body:
            self.html_body = decode_body_data(data, _charset(part))


def message_to_normalized_email(
    message: dict[str, Any],
    *,
    quote_stripper: QuoteStripper | None = None,
    url_template: str = DEFAULT_ATTACHMENT_URL_TEMPLATE,
) -> NormalizedEmail:
    """Convert a Gmail API message (format=full) to a NormalizedEmail.

    Args:
        message: Gmail API message dict.
        quote_stripper: Strategy used to remove quoted replies and signatures.
        url_template: Template used to build attachment access URLs.

    Returns:
        NormalizedEmail: Decoded record.

    Raises:
        DecodeError: If the payload is malformed.
    """

    message_id = message.get("id") if isinstance(message, dict) else None
    try:
        return _decode(message, quote_stripper or _DEFAULT_STRIPPER, url_template)
    except DecodeError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError, binascii.Error) as exc:
        logger.warning("message_decode_failed", message_id=message_id, error=str(exc))
        raise DecodeError(message_id, str(exc)) from exc


def _decode(
    message: dict[str, Any],
    quote_stripper: QuoteStripper,
    url_template: str,
) -> NormalizedEmail:
    message_id = message.get("id")
    if not message_id:
        raise DecodeError(None, "message has no id")

    payload = message.get("payload")
    if not isinstance(payload, dict):
        raise DecodeError(message_id, "message has no payload")

    hm = _header_map(payload)

    label_ids = message.get("labelIds") or []
    if not isinstance(label_ids, list):
        label_ids = []
    label_ids = [str(x) for x in label_ids if isinstance(x, str)]

    walker = _PartWalker(str(message_id), url_template)
    if payload.get("parts"):
        walker.walk(payload["parts"])
    else:
        data = (payload.get("body") or {}).get("data")
        if data:
            decoded = decode_body_data(data, _charset(payload))
            if (payload.get("mimeType") or "").lower() == "text/html":
                walker.html_body = decoded
            else:
                walker.text_body = decoded

    text_body = quote_stripper.strip_text(walker.text_body) if walker.text_body else None
    html_body = quote_stripper.strip_html(walker.html_body) if walker.html_body else None

    received_at: datetime | None = None
    internal_date_raw = message.get("internalDate")
    try:
        if internal_date_raw is not None:
            received_at = datetime.fromtimestamp(int(internal_date_raw) / 1000.0, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        received_at = None
    if received_at is None:
        received_at = _parse_date(hm.get("date")) or _EPOCH

    return NormalizedEmail(
        message_id=str(message_id),
        thread_id=str(message.get("threadId") or message_id),
        sender=resolve_sender(hm.get("from"), label_ids),
        to=_parse_address_list(hm.get("to")),
        subject=hm.get("subject"),
        text_body=text_body or None,
        html_body=html_body or None,
        attachments=walker.attachments,
        received_at=received_at,
        labels=label_ids,
        is_read="UNREAD" not in label_ids,
    )


def _encode_body(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii")


def _part_to_payload(part: Message, counter: list[int]) -> dict[str, Any]:
    headers = [{"name": k, "value": str(v)} for k, v in part.items()]
    node: dict[str, Any] = {
        "mimeType": part.get_content_type(),
        "filename": part.get_filename() or "",
        "headers": headers,
        "body": {"size": 0},
    }
    if part.is_multipart():
        node["parts"] = [_part_to_payload(p, counter) for p in part.iter_parts()]
        return node

    data = part.get_payload(decode=True) or b""
    if node["filename"]:
        counter[0] += 1
        node["body"] = {"attachmentId": f"part-{counter[0]}", "size": len(data)}
    else:
        node["body"] = {"data": _encode_body(data), "size": len(data)}
    return node


def raw_to_payload(raw: bytes) -> dict[str, Any]:
    """Parse RFC 822 bytes into a Gmail-style payload tree.

    Attachment parts get synthetic ``part-<n>`` attachment ids, numbered in
    document order.
    """

    parsed = email.message_from_bytes(raw, policy=email.policy.default)
    return _part_to_payload(parsed, [0])


def decode_raw_message(
    raw: bytes,
    *,
    message_id: str,
    thread_id: str | None = None,
    label_ids: list[str] | None = None,
    quote_stripper: QuoteStripper | None = None,
    url_template: str = DEFAULT_ATTACHMENT_URL_TEMPLATE,
) -> NormalizedEmail:
    """Decode RFC 822 bytes with the same rules as ``message_to_normalized_email``."""

    try:
        payload = raw_to_payload(raw)
    except Exception as exc:  # noqa: BLE001
        raise DecodeError(message_id, str(exc)) from exc

    message = {
        "id": message_id,
        "threadId": thread_id or message_id,
        "labelIds": list(label_ids or []),
        "payload": payload,
    }
    return message_to_normalized_email(
        message, quote_stripper=quote_stripper, url_template=url_template
    )


def find_attachment_part(message: dict[str, Any], attachment_id: str) -> dict[str, Any] | None:
    """Return the part whose body carries ``attachment_id``, searching depth first."""

    stack = [message.get("payload") or {}]
    while stack:
        part = stack.pop()
        if (part.get("body") or {}).get("attachmentId") == attachment_id:
            return part
        stack.extend(reversed(part.get("parts") or []))
    return None
