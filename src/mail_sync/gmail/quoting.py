"""Heuristic removal of quoted replies and signatures.

Mail clients quote the previous message below a reply. Thread views show
each message on its own, so the quoted tail is noise. The rules here are
simple string heuristics; swap in another ``QuoteStripper``
when they misfire for a given sender.
"""

from __future__ import annotations

import re

# "On Tue, 1 Jan 2025 at 10:00, Alice <a@example.com> wrote:" or a line starting with ">".
_TEXT_QUOTE_RE = re.compile(r"On .+wrote:|\r?\n\s*>[^\n]*")
_TEXT_SIGNATURE_RE = re.compile(r"\r?\n\s*--\s*\r?\n")

_HTML_BLOCKQUOTE_RE = re.compile(r"<blockquote[^>]*>[\s\S]*?</blockquote>", re.IGNORECASE)
_HTML_SIGNATURE_RE = re.compile(
    r"<div[^>]*class=\"(?:[^\"]*\s)?gmail_signature[^>]*>[\s\S]*?</div>",
    re.IGNORECASE,
)
_HTML_ATTRIBUTION_RE = re.compile(r"<div[^>]*>On .+wrote:[\s\S]*?</div>", re.IGNORECASE)


def strip_quoted_content(text: str) -> str:
    """Cut a plain-text body at the first quote marker and drop the signature."""

    if not text:
        return text
    text = _TEXT_QUOTE_RE.split(text, maxsplit=1)[0]
    text = _TEXT_SIGNATURE_RE.split(text, maxsplit=1)[0]
    return text.strip()


def strip_quoted_html(html: str) -> str:
    """Remove blockquotes, Gmail signature blocks and attribution lines."""

    if not html:
        return html
    html = _HTML_BLOCKQUOTE_RE.sub("", html)
    html = _HTML_SIGNATURE_RE.sub("", html)
    return _HTML_ATTRIBUTION_RE.sub("", html)


class HeuristicQuoteStripper:
    """Default ``QuoteStripper`` built on the regex heuristics above."""

    def strip_text(self, text: str) -> str:
        return strip_quoted_content(text)

    def strip_html(self, html: str) -> str:
        return strip_quoted_html(html)


class NoopQuoteStripper:
    """Keeps bodies untouched, e.g. for archival exports."""

    def strip_text(self, text: str) -> str:
        return text

    def strip_html(self, html: str) -> str:
        return html
