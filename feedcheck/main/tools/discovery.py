"""Find feed URLs for a website that is not itself a feed.

Four strategies run in increasing cost order:

1. ``direct_probe`` - a handful of very common paths on the site origin.
2. ``link_discovery`` - ``<link rel="alternate">`` (and ``<meta>`` feed hints)
   in the page HTML.
3. ``html_parsing`` - anchors and raw URLs in the page that look feed-like.
4. ``common_paths`` - an extended list of CMS/platform conventions, plus
   platform URL builders such as YouTube's per-channel feeds.

Every proposed URL is fetched and must parse as a feed before it is returned.
Discovery stops after the first strategy that yields a high-confidence
candidate; otherwise candidates from all strategies are pooled, deduplicated by
normalized URL and ranked by confidence.  Only one hop is followed: discovered
pages are never scanned for further links.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from feedcheck.main.models import (
    DiscoveredFeedCandidate,
    DiscoveryMethod,
    DiscoveryResult,
)
from feedcheck.main.tools.feed_parser import parse_feed_content
from feedcheck.main.tools.relay import RelayFailoverClient
from feedcheck.main.tools.transport import FEED_ACCEPT, HTML_ACCEPT, Transport

logger = logging.getLogger(__name__)

DIRECT_PROBE_PATHS = ("/feed", "/rss.xml", "/atom.xml")

COMMON_FEED_PATHS = (
    "/rss",
    "/feed.xml",
    "/index.xml",              # Hugo
    "/feed/",                  # WordPress
    "/rss/",                   # Ghost
    "/?feed=rss2",             # WordPress without pretty permalinks
    "/wp-rss2.php",
    "/wp-atom.php",
    "/wp-rdf.php",
    "/feeds/posts/default",    # Blogger
    "/feeds/all.atom.xml",     # Pelican
    "/blog/feed",
    "/blog/rss.xml",
    "/blog/feed.xml",
    "/news/rss.xml",
)

FEED_TYPE_TOKENS = ("rss", "atom", "rdf")
META_FEED_KEYS = {"og:rss", "rss", "feed"}

CONFIDENCE = {
    DiscoveryMethod.LINK_DISCOVERY: 0.9,
    DiscoveryMethod.DIRECT_PROBE: 0.8,
    DiscoveryMethod.HTML_PARSING: 0.6,
    DiscoveryMethod.COMMON_PATHS: 0.5,
}
META_TAG_CONFIDENCE = 0.85
PLATFORM_CONFIDENCE = 0.55

# Statuses that mean the origin refused us rather than lacks the URL.
_BLOCKED_STATUSES = frozenset({401, 403})

_FEEDLIKE_RE = re.compile(r"rss|feed|atom", re.I)
_ABSOLUTE_FEED_URL_RE = re.compile(r"https?://[^\s<>\"']*(?:rss|feed|atom)[^\s<>\"']*", re.I)
_YOUTUBE_FEED = "https://www.youtube.com/feeds/videos.xml?"
_YT_CHANNEL_RE = re.compile(r"/channel/(UC[\w-]+)")
_YT_USER_RE = re.compile(r"/user/([\w-]+)")
_YT_PLAYLIST_RE = re.compile(r"[?&]list=(PL[\w-]+)")
_YT_CHANNEL_META_RE = re.compile(r"itemprop=[\"']channelId[\"']\s+content=[\"'](UC[\w-]+)[\"']", re.I)


@dataclass(frozen=True)
class _Proposal:
    url: str
    method: DiscoveryMethod
    confidence: float
    title: Optional[str] = None


class FeedDiscoveryEngine:
    def __init__(
        self,
        transport: Transport,
        relay_client: Optional[RelayFailoverClient] = None,
        timeout: float = 10.0,
        max_concurrency: int = 5,
        high_confidence: float = 0.85,
        probe_via_relay: bool = False,
        max_html_candidates: int = 10,
    ):
        self.transport = transport
        self.relay_client = relay_client
        self.timeout = timeout
        self.max_concurrency = max_concurrency
        self.high_confidence = high_confidence
        self.probe_via_relay = probe_via_relay
        self.max_html_candidates = max_html_candidates

    async def discover_from_website(self, url: str, relay_fallback: bool = False) -> DiscoveryResult:
        """Search *url*'s site for feeds. Never raises; failures end up in ``suggestions``.

        With *relay_fallback* any proposal other than a common-path guess that
        fails directly is retried through the relays, for origins already
        known to refuse us.
        """
        started = time.monotonic()
        result = DiscoveryResult(original_url=url)
        try:
            await self._run_strategies(normalize_site_url(url), result, relay_fallback)
        except Exception as exc:
            logger.error("Feed discovery failed for %s: %s", url, exc)
            result.suggestions.append(f"Discovery failed: {exc}")
        result.candidates = deduplicate_candidates(result.candidates)
        result.suggestions = _discovery_suggestions(result) + result.suggestions
        result.discovery_time = time.monotonic() - started
        logger.info("Discovery for %s found %d candidate(s)", url, len(result.candidates))
        return result

    async def _run_strategies(self, base_url: str, result: DiscoveryResult, relay_fallback: bool) -> None:
        seen: set[str] = set()
        page_html: Optional[str] = None
        page_url = base_url
        page_fetched = False
        page_via_relay = False

        for method in (
            DiscoveryMethod.DIRECT_PROBE,
            DiscoveryMethod.LINK_DISCOVERY,
            DiscoveryMethod.HTML_PARSING,
            DiscoveryMethod.COMMON_PATHS,
        ):
            if method is not DiscoveryMethod.DIRECT_PROBE and not page_fetched:
                page_fetched = True
                page_html, page_url, page_via_relay = await self._fetch_page(base_url)
                if page_html is None:
                    result.suggestions.append("Could not fetch the website HTML for feed discovery links")

            result.methods_tried.append(method)
            proposals = [
                p for p in self._propose(method, base_url, page_html, page_url)
                if normalize_candidate_url(p.url) not in seen
            ]
            seen.update(normalize_candidate_url(p.url) for p in proposals)

            # Common-path guesses mostly 404 and would wear down relay health.
            guessing = method is DiscoveryMethod.COMMON_PATHS
            # Links read from a relayed page point at the same blocked origin.
            from_blocked_page = page_via_relay and method in (
                DiscoveryMethod.LINK_DISCOVERY,
                DiscoveryMethod.HTML_PARSING,
            )
            found = await self._validate_proposals(
                proposals,
                relay_fallback=(relay_fallback or from_blocked_page) and not guessing,
                relay_on_block=not guessing,
            )
            result.total_attempts += len(proposals)
            result.successful_attempts += len(found)
            result.candidates.extend(found)

            if any(c.confidence >= self.high_confidence for c in found):
                logger.debug("High-confidence feed found via %s; stopping", method.value)
                break

    def _propose(
        self,
        method: DiscoveryMethod,
        base_url: str,
        page_html: Optional[str],
        page_url: str,
    ) -> List[_Proposal]:
        if method is DiscoveryMethod.DIRECT_PROBE:
            origin = site_origin(base_url)
            return [_Proposal(origin + path, method, CONFIDENCE[method]) for path in DIRECT_PROBE_PATHS]
        if method is DiscoveryMethod.LINK_DISCOVERY:
            return find_link_tags(page_html, page_url) if page_html else []
        if method is DiscoveryMethod.HTML_PARSING:
            if not page_html:
                return []
            return find_feedlike_urls(page_html, page_url)[: self.max_html_candidates]
        origin = site_origin(base_url)
        proposals = [_Proposal(origin + path, method, CONFIDENCE[method]) for path in COMMON_FEED_PATHS]
        return youtube_feed_urls(base_url, page_html) + proposals

    async def _validate_proposals(
        self,
        proposals: Iterable[_Proposal],
        relay_fallback: bool = False,
        relay_on_block: bool = True,
    ) -> List[DiscoveredFeedCandidate]:
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def check(proposal: _Proposal) -> Optional[DiscoveredFeedCandidate]:
            async with semaphore:
                text = await self._fetch_candidate(proposal.url, relay_fallback, relay_on_block)
            if text is None:
                return None
            parsed = parse_feed_content(text)
            if not parsed.is_valid:
                logger.debug("Discarding %s: %s", proposal.url, parsed.error)
                return None
            logger.info("Discovered feed via %s: %s", proposal.method.value, proposal.url)
            return DiscoveredFeedCandidate(
                url=proposal.url,
                discovery_method=proposal.method,
                confidence=proposal.confidence,
                title=parsed.title or proposal.title,
                description=parsed.description,
                kind=parsed.kind,
            )

        results = await asyncio.gather(*(check(p) for p in proposals))
        return [c for c in results if c is not None]

    async def _fetch_page(self, url: str) -> Tuple[Optional[str], str, bool]:
        """Return ``(html, final_url, via_relay)`` for the site page."""
        try:
            resp = await self.transport.fetch(url, timeout=self.timeout, headers={"Accept": HTML_ACCEPT})
            if resp.ok:
                return resp.text, resp.url or url, False
            logger.debug("Page fetch for %s returned HTTP %d", url, resp.status_code)
        except Exception as exc:
            logger.debug("Direct page fetch for %s failed: %s", url, exc)

        if self.relay_client is None:
            return None, url, False
        try:
            relayed = await self.relay_client.fetch_via_relay(url)
        except Exception as exc:
            logger.warning("Failed to fetch site %s: %s", url, exc)
            return None, url, False
        return relayed.content, url, True

    async def _fetch_candidate(
        self,
        url: str,
        relay_fallback: bool = False,
        relay_on_block: bool = True,
    ) -> Optional[str]:
        """Fetch a proposed feed URL, falling back to the relays when allowed.

        The relays are tried when ``probe_via_relay`` is set, when
        *relay_fallback* is set, or when *relay_on_block* is set and the
        direct request raised or was refused with 401/403.
        """
        blocked = False
        try:
            resp = await self.transport.fetch(url, timeout=self.timeout, headers={"Accept": FEED_ACCEPT})
            if resp.ok:
                return resp.text
            blocked = resp.status_code in _BLOCKED_STATUSES
        except Exception as exc:
            logger.debug("Candidate fetch %s failed: %s", url, exc)
            blocked = True

        if self.relay_client is None:
            return None
        if not (self.probe_via_relay or relay_fallback or (relay_on_block and blocked)):
            return None
        try:
            return (await self.relay_client.fetch_via_relay(url)).content
        except Exception as exc:
            logger.debug("Relay fetch of candidate %s failed: %s", url, exc)
            return None


def find_link_tags(html: str, base_url: str) -> List[_Proposal]:
    """``<link rel="alternate">`` feed declarations and ``<meta>`` feed hints."""
    soup = BeautifulSoup(html, "html.parser")
    proposals: List[_Proposal] = []

    for link in soup.find_all("link", href=True):
        rel = link.get("rel") or []
        rels = [r.lower() for r in (rel.split() if isinstance(rel, str) else rel)]
        type_attr = (link.get("type") or "").lower()
        if "alternate" not in rels or not any(t in type_attr for t in FEED_TYPE_TOKENS):
            continue
        title = (link.get("title") or "").strip() or None
        confidence = CONFIDENCE[DiscoveryMethod.LINK_DISCOVERY]
        if title and _FEEDLIKE_RE.search(title):
            confidence += 0.05
        proposals.append(
            _Proposal(urljoin(base_url, link["href"]), DiscoveryMethod.LINK_DISCOVERY, min(confidence, 1.0), title)
        )

    for meta in soup.find_all("meta"):
        key = (meta.get("property") or meta.get("name") or "").lower()
        content = meta.get("content")
        if key in META_FEED_KEYS and content:
            proposals.append(
                _Proposal(urljoin(base_url, content), DiscoveryMethod.LINK_DISCOVERY, META_TAG_CONFIDENCE)
            )
    return [p for p in proposals if _is_http(p.url)]


def find_feedlike_urls(html: str, base_url: str) -> List[_Proposal]:
    """Anchors and bare URLs in the page whose href or text mention rss/feed/atom."""
    soup = BeautifulSoup(html, "html.parser")
    confidence = CONFIDENCE[DiscoveryMethod.HTML_PARSING]
    urls: List[Tuple[str, Optional[str]]] = []

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        text = anchor.get_text(" ", strip=True)
        if _FEEDLIKE_RE.search(href) or _FEEDLIKE_RE.search(text):
            urls.append((urljoin(base_url, href), text or None))

    for match in _ABSOLUTE_FEED_URL_RE.finditer(html):
        urls.append((match.group(0), None))

    proposals: List[_Proposal] = []
    seen: set[str] = set()
    for url, title in urls:
        key = normalize_candidate_url(url)
        if key in seen or not _is_http(url):
            continue
        seen.add(key)
        proposals.append(_Proposal(url, DiscoveryMethod.HTML_PARSING, confidence, title))
    return proposals


def youtube_feed_urls(url: str, page_html: Optional[str] = None) -> List[_Proposal]:
    """Build YouTube's per-channel/user/playlist Atom feed URL when *url* is a YouTube page."""
    host = urlsplit(url).netloc.lower()
    if not (host.endswith("youtube.com") or host.endswith("youtu.be")):
        return []

    query = None
    if match := _YT_CHANNEL_RE.search(url):
        query = f"channel_id={match.group(1)}"
    elif match := _YT_USER_RE.search(url):
        query = f"user={match.group(1)}"
    elif match := _YT_PLAYLIST_RE.search(url):
        query = f"playlist_id={match.group(1)}"
    elif page_html and (match := _YT_CHANNEL_META_RE.search(page_html)):
        query = f"channel_id={match.group(1)}"

    if query is None:
        return []
    return [_Proposal(_YOUTUBE_FEED + query, DiscoveryMethod.COMMON_PATHS, PLATFORM_CONFIDENCE, "YouTube Feed")]


def normalize_site_url(url: str) -> str:
    """Add a scheme when missing and drop the trailing slash."""
    normalized = url.strip()
    if not normalized.startswith(("http://", "https://")):
        normalized = "https://" + normalized
    return normalized.rstrip("/")


def normalize_candidate_url(url: str) -> str:
    parts = urlsplit(url.strip())
    path = parts.path.rstrip("/")
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def site_origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def deduplicate_candidates(candidates: Iterable[DiscoveredFeedCandidate]) -> List[DiscoveredFeedCandidate]:
    """Keep the highest-confidence candidate per normalized URL, best first."""
    best: dict[str, DiscoveredFeedCandidate] = {}
    for candidate in candidates:
        key = normalize_candidate_url(candidate.url)
        existing = best.get(key)
        if existing is None or candidate.confidence > existing.confidence:
            best[key] = candidate
    return sorted(best.values(), key=lambda c: c.confidence, reverse=True)


def _is_http(url: str) -> bool:
    return urlsplit(url).scheme in ("http", "https")


def _discovery_suggestions(result: DiscoveryResult) -> List[str]:
    count = len(result.candidates)
    if count == 0:
        return [
            "No RSS feeds found on this website",
            "Check the website footer or sidebar for an RSS or Atom link",
            "Look for 'RSS', 'Feed', or 'Subscribe' links on the website",
        ]
    if count == 1:
        suggestions = ["Found one RSS feed on this website"]
    else:
        suggestions = [
            f"Found {count} RSS feeds on this website",
            "Choose the feed that best matches your interests",
        ]
    methods = {c.discovery_method for c in result.candidates}
    if DiscoveryMethod.LINK_DISCOVERY in methods:
        suggestions.append("Feeds discovered from website HTML link and meta tags")
    if methods & {DiscoveryMethod.DIRECT_PROBE, DiscoveryMethod.COMMON_PATHS}:
        suggestions.append("Feeds found at common RSS feed locations")
    return suggestions
