"""Fetch a URL through an ordered pool of third-party relay services.

Failover *is* the retry strategy here: each relay is tried at most once per
call, in priority order, and the first one that returns a non-empty 2xx body
wins.  Per-relay statistics drive a simple health check: a relay that fails
``failure_threshold`` times in a row is skipped until ``recovery_time`` seconds
have passed since its last failure.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

from feedcheck.main.tools.errors import RelayExhaustedError
from feedcheck.main.tools.transport import FEED_ACCEPT, Transport

logger = logging.getLogger(__name__)


@dataclass
class RelayEndpoint:
    """One relay service.

    ``template`` either contains a ``{url}`` placeholder or is a prefix to which
    the percent-encoded target URL is appended.  ``response_format`` tells the
    client how to unwrap the body: ``raw``, ``allorigins`` (JSON ``contents``)
    or ``codetabs`` (JSON ``data``, when wrapped).
    """

    name: str
    template: str
    priority: int = 0
    enabled: bool = True
    timeout: float = 10.0
    headers: Dict[str, str] = field(default_factory=dict)
    response_format: str = "raw"

    def build_url(self, target_url: str) -> str:
        encoded = quote(target_url, safe="")
        if "{url}" in self.template:
            return self.template.replace("{url}", encoded)
        return self.template + encoded


DEFAULT_RELAYS: List[RelayEndpoint] = [
    RelayEndpoint(
        name="AllOrigins",
        template="https://api.allorigins.win/get?url=",
        priority=0,
        timeout=10.0,
        headers={"Accept": "application/json"},
        response_format="allorigins",
    ),
    RelayEndpoint(
        name="CorsProxy.io",
        template="https://corsproxy.io/?url=",
        priority=1,
        timeout=8.0,
        headers={"Accept": FEED_ACCEPT},
    ),
    RelayEndpoint(
        name="CodeTabs",
        template="https://api.codetabs.com/v1/proxy?quest=",
        priority=2,
        timeout=15.0,
        response_format="codetabs",
    ),
]


@dataclass
class RelayStats:
    successes: int = 0
    failures: int = 0
    total_requests: int = 0
    avg_response_time: float = 0.0
    consecutive_failures: int = 0
    last_success: float = 0.0
    last_failure: float = 0.0
    health_score: float = 1.0


@dataclass(frozen=True)
class RelayAttempt:
    relay_name: str
    relay_url: str
    success: bool
    response_time: float
    status_code: Optional[int] = None
    error: Optional[str] = None


@dataclass
class RelayResponse:
    content: str
    relay_used: str
    attempts: List[RelayAttempt] = field(default_factory=list)


class RelayFailoverClient:
    def __init__(
        self,
        transport: Transport,
        relays: Optional[Iterable[RelayEndpoint]] = None,
        failure_threshold: int = 3,
        recovery_time: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.transport = transport
        source = DEFAULT_RELAYS if relays is None else relays
        # Private copies: enable/disable must not leak into DEFAULT_RELAYS.
        self.relays = sorted(
            (replace(r, headers=dict(r.headers)) for r in source), key=lambda r: r.priority
        )
        self.failure_threshold = failure_threshold
        self.recovery_time = recovery_time
        self._clock = clock
        self._stats: Dict[str, RelayStats] = {r.name: RelayStats() for r in self.relays}

    def available_relays(self) -> List[RelayEndpoint]:
        return [r for r in self.relays if r.enabled and self._is_healthy(r.name)]

    async def fetch_via_relay(self, url: str) -> RelayResponse:
        """Return the body of *url* fetched through the first relay that works.

        Raises ``RelayExhaustedError`` when every relay fails or none is
        available.
        """
        relays = self.available_relays()
        if not relays:
            raise RelayExhaustedError("No healthy relays available")

        attempts: List[RelayAttempt] = []
        last_error = "Unknown error"
        for relay in relays:
            relay_url = relay.build_url(url)
            started = self._clock()
            try:
                resp = await self.transport.fetch(
                    relay_url, timeout=relay.timeout, headers=relay.headers
                )
                if not resp.ok:
                    raise RelayExhaustedError(f"HTTP {resp.status_code} from {relay.name}")
                content = _unwrap(relay.response_format, resp.text)
                if not content.strip():
                    raise RelayExhaustedError(f"Empty response from {relay.name}")
            except Exception as exc:
                elapsed = self._clock() - started
                last_error = str(exc) or type(exc).__name__
                attempts.append(RelayAttempt(relay.name, relay_url, False, elapsed, error=last_error))
                self._record(relay.name, False, elapsed)
                logger.warning("Relay %s failed for %s: %s", relay.name, url, last_error)
                continue

            elapsed = self._clock() - started
            attempts.append(RelayAttempt(relay.name, relay_url, True, elapsed, status_code=resp.status_code))
            self._record(relay.name, True, elapsed)
            logger.info("Fetched %s via relay %s", url, relay.name)
            return RelayResponse(content=content, relay_used=relay.name, attempts=attempts)

        raise RelayExhaustedError(f"All relays failed. Last error: {last_error}")

    def disable(self, name: str) -> bool:
        relay = self._find(name)
        if relay is None:
            return False
        relay.enabled = False
        return True

    def enable(self, name: str) -> bool:
        relay = self._find(name)
        if relay is None:
            return False
        relay.enabled = True
        self._stats[name].consecutive_failures = 0
        self._update_health_score(name)
        return True

    def stats(self) -> Dict[str, Dict[str, object]]:
        return {
            r.name: {
                **vars(self._stats[r.name]),
                "enabled": r.enabled,
                "healthy": self._is_healthy(r.name),
                "priority": r.priority,
            }
            for r in self.relays
        }

    def reset_stats(self) -> None:
        self._stats = {r.name: RelayStats() for r in self.relays}

    def _find(self, name: str) -> Optional[RelayEndpoint]:
        for relay in self.relays:
            if relay.name == name:
                return relay
        return None

    def _is_healthy(self, name: str) -> bool:
        stats = self._stats[name]
        if stats.consecutive_failures < self.failure_threshold:
            return True
        if self._clock() - stats.last_failure > self.recovery_time:
            stats.consecutive_failures = 0
            self._update_health_score(name)
            return True
        return False

    def _record(self, name: str, success: bool, elapsed: float) -> None:
        stats = self._stats[name]
        stats.total_requests += 1
        if success:
            stats.successes += 1
            stats.consecutive_failures = 0
            stats.last_success = self._clock()
        else:
            stats.failures += 1
            stats.consecutive_failures += 1
            stats.last_failure = self._clock()
        stats.avg_response_time += (elapsed - stats.avg_response_time) / stats.total_requests
        self._update_health_score(name)

    def _update_health_score(self, name: str) -> None:
        stats = self._stats[name]
        score = 1.0
        if stats.total_requests:
            score *= stats.successes / stats.total_requests
        if stats.consecutive_failures >= self.failure_threshold:
            score *= 0.1
        else:
            score *= 1 - 0.4 * (stats.consecutive_failures / self.failure_threshold)
        if stats.avg_response_time > 5.0:
            score *= 1 - 0.1 * min((stats.avg_response_time - 5.0) / 10.0, 1.0)
        stats.health_score = max(0.0, min(1.0, score))


def _unwrap(response_format: str, body: str) -> str:
    if response_format == "raw":
        return body
    key = "contents" if response_format == "allorigins" else "data"
    try:
        payload = json.loads(body)
    except ValueError:
        return body
    if isinstance(payload, dict) and isinstance(payload.get(key), str):
        return payload[key]
    return body
