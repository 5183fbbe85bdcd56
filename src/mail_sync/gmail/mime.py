"""Encoding of outgoing messages as multipart MIME.

Layout produced by ``encode_message``::

    multipart/mixed
    +-- multipart/alternative
    |   +-- text/plain (derived from the HTML)
    |   +-- text/html
    +-- <attachment> (base64, Content-Disposition: attachment)
    +-- ...

Threading headers for replies come from the first message of the original
thread (``reply_headers_from_message``).
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass
from email import policy
from email.message import EmailMessage
from email.utils import formatdate
from typing import Any

from mail_sync.gmail.parsing import header_value

_TAG_RE = re.compile(r"<[^>]*>")
_DEFAULT_SUBJECT = "No Subject"


@dataclass(frozen=True)
class ThreadingHeaders:
    """Headers that attach a reply to an existing conversation."""

    subject: str
    in_reply_to: str | None = None
    references: str | None = None


@dataclass(frozen=True)
class EncodedAttachment:
    """Attachment bytes ready to be placed in a MIME part."""

    filename: str
    mime_type: str
    data: bytes


def reply_subject(subject: str | None) -> str:
    """Prefix ``Re: `` unless the subject already starts with it."""

    subject = (subject or "").strip() or _DEFAULT_SUBJECT
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}"


def reply_headers_from_message(original: dict[str, Any]) -> ThreadingHeaders:
    """Derive reply headers from the thread's first Gmail message.

    ``References`` is the original's own References header with its
    Message-ID appended. Either header is omitted when there is nothing to
    put in it.
    """

    message_id = header_value(original, "Message-ID")
    references = header_value(original, "References")

    chain = " ".join(v.strip() for v in (references, message_id) if v and v.strip())
    return ThreadingHeaders(
        subject=reply_subject(header_value(original, "Subject")),
        in_reply_to=message_id.strip() if message_id else None,
        references=chain or None,
    )


def html_to_text(content: str) -> str:
    """Plain-text alternative of an HTML body: tags removed, entities unescaped."""

    return html.unescape(_TAG_RE.sub("", content))


def encode_message(
    *,
    recipients: list[str],
    subject: str,
    html_content: str,
    attachments: list[EncodedAttachment] | None = None,
    in_reply_to: str | None = None,
    references: str | None = None,
    sender: str | None = None,
) -> bytes:
    """Build the RFC 822 bytes of an outgoing message.

    Args:
        recipients: Addresses for the To header.
        subject: Final subject line (callers add ``Re:`` for replies).
        html_content: HTML body; the plain alternative is derived from it.
        attachments: Files appended as base64 attachment parts.
        in_reply_to: Message-ID of the message being answered.
        references: Space separated References chain.
        sender: Optional From header.

    Returns:
        CRLF-terminated message bytes.
    """

    msg = EmailMessage(policy=policy.SMTP)
    if sender:
        msg["From"] = sender
    msg["To"] = ", ".join(recipients)
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=False, usegmt=True)
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references

    msg.set_content(html_to_text(html_content), subtype="plain", charset="utf-8", cte="base64")
    msg.add_alternative(html_content, subtype="html", charset="utf-8", cte="base64")

    # Wraps the alternative as the first part of a multipart/mixed envelope.
    msg.make_mixed()
    for attachment in attachments or []:
        maintype, _, subtype = attachment.mime_type.partition("/")
        if not maintype or not subtype:
            maintype, subtype = "application", "octet-stream"
        msg.add_attachment(
            attachment.data,
            maintype=maintype,
            subtype=subtype,
            filename=attachment.filename,
        )

    return msg.as_bytes()


def encode_reply(
    *,
    original: dict[str, Any],
    recipients: list[str],
    html_content: str,
    attachments: list[EncodedAttachment] | None = None,
    sender: str | None = None,
) -> bytes:
    """Encode a reply to the thread whose first message is ``original``."""

    threading = reply_headers_from_message(original)
    return encode_message(
        recipients=recipients,
        subject=threading.subject,
        html_content=html_content,
        attachments=attachments,
        in_reply_to=threading.in_reply_to,
        references=threading.references,
        sender=sender,
    )
