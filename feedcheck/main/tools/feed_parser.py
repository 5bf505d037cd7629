"""Decide whether a document is a feed and pull out its title/description.

``parse_feed_content`` is the single source of truth for "is this a feed",
used for direct fetches, relay responses and discovery candidates alike.
Parsing is delegated to ``feedparser``.  A document only counts as a feed when
it is well-formed and feedparser recognises an RSS, Atom or RDF version.  If
the raw text is malformed, ``cleanup_malformed_xml`` is applied once and the
parse is retried.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from html.entities import name2codepoint
from typing import Optional

import feedparser

from feedcheck.main.models import ErrorKind, FeedKind

logger = logging.getLogger(__name__)

# feedparser reports these through ``bozo`` but the document is still usable.
_BENIGN_BOZO = (
    feedparser.CharacterEncodingOverride,
    feedparser.NonXMLContentType,
    feedparser.UndeclaredNamespace,
)

_FEED_MARKERS = ("<rss", "<feed", "<rdf:rdf", "<rdf")
_XML_DECL_RE = re.compile(r"<\?xml[^>]*\?>")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_BARE_AMP_RE = re.compile(r"&(?!#\d+;|#x[0-9a-fA-F]+;|[A-Za-z][A-Za-z0-9]*;)")
_NAMED_ENTITY_RE = re.compile(r"&([A-Za-z][A-Za-z0-9]*);")
_CDATA_OPEN = "<![CDATA["
_CDATA_CLOSE = "]]>"
_XML_ENTITIES = {"amp", "lt", "gt", "quot", "apos"}
_SMART_PUNCTUATION = {
    "\u2018": "'",
    "\u2019": "'",
    "\u201c": '"',
    "\u201d": '"',
    "\u2014": "-",
    "\u2026": "...",
    "\u00a0": " ",
}


@dataclass
class FeedParseResult:
    is_valid: bool
    title: Optional[str] = None
    description: Optional[str] = None
    kind: Optional[FeedKind] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


def parse_feed_content(text: str) -> FeedParseResult:
    """Parse *text* and report whether it is a well-formed RSS/Atom/RDF feed."""
    if not text or not text.strip():
        return FeedParseResult(
            is_valid=False,
            error="Empty response body",
            error_kind=ErrorKind.INVALID_FORMAT,
        )

    parsed = feedparser.parse(text.encode("utf-8"))
    if _malformed(parsed):
        logger.debug("Raw parse failed (%s); retrying after cleanup", parsed.get("bozo_exception"))
        parsed = feedparser.parse(cleanup_malformed_xml(text).encode("utf-8"))
        if _malformed(parsed):
            if _looks_like_feed(text):
                return FeedParseResult(
                    is_valid=False,
                    error=f"Unable to parse feed content: {parsed.get('bozo_exception')}",
                    error_kind=ErrorKind.PARSE,
                )
            return _not_a_feed()

    kind = _feed_kind(parsed.get("version", ""))
    if kind is None:
        return _not_a_feed()

    feed = parsed.feed
    return FeedParseResult(
        is_valid=True,
        title=_clean(feed.get("title")),
        description=_clean(feed.get("subtitle") or feed.get("description")),
        kind=kind,
    )


def cleanup_malformed_xml(content: str) -> str:
    """Best-effort repair of common feed malformations."""
    cleaned = content.lstrip("\ufeff")

    declarations = _XML_DECL_RE.findall(cleaned)
    if len(declarations) > 1:
        cleaned = declarations[0] + _XML_DECL_RE.sub("", cleaned)
    elif declarations and not cleaned.lstrip().startswith("<?xml"):
        cleaned = declarations[0] + _XML_DECL_RE.sub("", cleaned)
    cleaned = cleaned.lstrip()

    cleaned = _balance_cdata(cleaned)

    for bad, good in _SMART_PUNCTUATION.items():
        cleaned = cleaned.replace(bad, good)
    cleaned = _CONTROL_CHARS_RE.sub("", cleaned)
    cleaned = _NAMED_ENTITY_RE.sub(_numeric_entity, cleaned)
    cleaned = _BARE_AMP_RE.sub("&amp;", cleaned)

    cleaned = re.sub(r"<rss(?![^>]*\bversion=)([^>]*)>", r'<rss version="2.0"\1>', cleaned)
    return cleaned


def _balance_cdata(text: str) -> str:
    # Close any CDATA section that runs to the next tag boundary without "]]>".
    out = []
    pos = 0
    while True:
        start = text.find(_CDATA_OPEN, pos)
        if start == -1:
            out.append(text[pos:])
            break
        body_start = start + len(_CDATA_OPEN)
        end = text.find(_CDATA_CLOSE, body_start)
        next_open = text.find(_CDATA_OPEN, body_start)
        if end != -1 and (next_open == -1 or end < next_open):
            out.append(text[pos:end + len(_CDATA_CLOSE)])
            pos = end + len(_CDATA_CLOSE)
            continue
        limit = next_open if next_open != -1 else len(text)
        close_tag = text.find("</", body_start, limit)
        cut = close_tag if close_tag != -1 else limit
        out.append(text[pos:cut] + _CDATA_CLOSE)
        pos = cut
    return "".join(out)


def _numeric_entity(match: re.Match) -> str:
    name = match.group(1)
    if name in _XML_ENTITIES or name not in name2codepoint:
        return match.group(0)
    return f"&#{name2codepoint[name]};"


def _malformed(parsed) -> bool:
    if not parsed.get("bozo"):
        return False
    return not isinstance(parsed.get("bozo_exception"), _BENIGN_BOZO)


def _feed_kind(version: str) -> Optional[FeedKind]:
    if version.startswith("atom"):
        return FeedKind.ATOM
    if version in ("rss10", "rss090"):
        return FeedKind.RDF
    if version.startswith("rss"):
        return FeedKind.RSS
    return None


def _looks_like_feed(text: str) -> bool:
    head = text[:4096].lower()
    return any(marker in head for marker in _FEED_MARKERS)


def _not_a_feed() -> FeedParseResult:
    return FeedParseResult(
        is_valid=False,
        error="Not a valid RSS, Atom, or RDF feed",
        error_kind=ErrorKind.INVALID_FORMAT,
    )


def _clean(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    return value or None
