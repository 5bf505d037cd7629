"""Feed validation orchestrator.

``FeedValidator.validate`` answers "is this URL a working feed?" by trying a
direct fetch with escalating timeouts and jittered backoff, then falling back
to the relay pool when the failure looks like an access problem.
``validate_with_discovery`` goes one step further: when the URL is not a feed
it searches the website for one, adopts a single hit automatically and hands
back the candidates when there are several.

Results are cached (``validation:<url>`` and ``discovery:<url>``) and nothing
raises across the public methods: every path ends in a ``ValidationResult``.

Example::

    async with build_validator() as validator:
        result = await validator.validate("https://example.com/feed.xml")
        print(result.status, result.title)
"""

from __future__ import annotations

import asyncio
import logging
import random
import sys
import time
from dataclasses import replace
from typing import Awaitable, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

from feedcheck.main.cache import ValidationCache
from feedcheck.main.config import ValidatorConfig
from feedcheck.main.models import (
    AttemptMethod,
    DiscoveryResult,
    ErrorContext,
    ErrorKind,
    FinalMethod,
    ValidationAttempt,
    ValidationError,
    ValidationResult,
    ValidationStatus,
    ValidationSummary,
)
from feedcheck.main.tools.discovery import FeedDiscoveryEngine, normalize_candidate_url
from feedcheck.main.tools.errors import (
    FeedContentError,
    build_error,
    classify,
    compute_backoff,
)
from feedcheck.main.tools.feed_parser import FeedParseResult, parse_feed_content
from feedcheck.main.tools.relay import RelayFailoverClient
from feedcheck.main.tools.transport import FEED_ACCEPT, HttpxTransport, Transport

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]

TRUSTED_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0"})

# Failures a relay can plausibly get around.
RELAY_ELIGIBLE_KINDS = frozenset({ErrorKind.CROSS_ORIGIN, ErrorKind.NETWORK, ErrorKind.TIMEOUT})

STATUS_BY_KIND = {
    ErrorKind.NETWORK: ValidationStatus.NETWORK_ERROR,
    ErrorKind.CROSS_ORIGIN: ValidationStatus.CROSS_ORIGIN_ERROR,
    ErrorKind.TIMEOUT: ValidationStatus.TIMEOUT,
    ErrorKind.PARSE: ValidationStatus.PARSE_ERROR,
    ErrorKind.INVALID_FORMAT: ValidationStatus.PARSE_ERROR,
    ErrorKind.NOT_FOUND: ValidationStatus.NOT_FOUND,
    ErrorKind.SERVER: ValidationStatus.SERVER_ERROR,
    ErrorKind.UNKNOWN: ValidationStatus.INVALID,
}


def validation_key(url: str) -> str:
    return f"validation:{url}"


def discovery_key(url: str) -> str:
    return f"discovery:{url}"


def predicts_cross_origin(url: str, context_origin: Optional[str]) -> bool:
    """True when a direct request from *context_origin* to *url* would be blocked."""
    if not context_origin:
        return False
    context_host = urlsplit(context_origin).hostname
    if context_host is None or context_host in TRUSTED_LOCAL_HOSTS:
        return False
    target_host = urlsplit(url).hostname
    return target_host is not None and target_host != context_host


class FeedValidator:
    def __init__(
        self,
        transport: Transport,
        *,
        config: Optional[ValidatorConfig] = None,
        relay_client: Optional[RelayFailoverClient] = None,
        discovery: Optional[FeedDiscoveryEngine] = None,
        cache: Optional[ValidationCache] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or ValidatorConfig()
        if self.config.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.transport = transport
        self.relay_client = relay_client
        self.discovery = discovery or FeedDiscoveryEngine(
            transport,
            relay_client,
            timeout=self.config.discovery_timeout,
            max_concurrency=self.config.discovery_concurrency,
            high_confidence=self.config.discovery_high_confidence,
            probe_via_relay=self.config.discovery_probe_via_relay,
        )
        self.cache = cache or ValidationCache(
            default_ttl=self.config.failure_ttl, max_entries=self.config.cache_max_entries
        )
        self._sleep = sleep
        self._rng = rng
        self._clock = clock

    async def __aenter__(self) -> "FeedValidator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def validate(self, url: str) -> ValidationResult:
        """Validate *url* as a feed, serving from the cache when possible."""
        key = validation_key(url)
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Cache hit for %s", url)
            return cached

        started = time.monotonic()
        result = ValidationResult(url=url)
        try:
            last_error = await self._run_attempts(url, result)
        except Exception as exc:
            logger.error("Unexpected error validating %s: %s", url, exc)
            result.is_valid = False
            last_error = build_error(
                ErrorKind.UNKNOWN, f"Unexpected error: {exc}", ErrorContext(url=url)
            )

        self._finalize(result, last_error)
        result.total_validation_time = time.monotonic() - started
        result.last_checked = self._clock()
        ttl = self.config.success_ttl if result.is_valid else self.config.failure_ttl
        self.cache.set(key, result, ttl=ttl)
        logger.info("Validated %s: %s", url, result.status.value)
        return result

    async def validate_with_discovery(
        self,
        url: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ValidationResult:
        """Validate *url*, searching its website for a feed when it is not one.

        One discovered feed is adopted automatically; several end in
        ``discovery_required`` with the candidates attached.
        """
        key = discovery_key(url)
        cached = self.cache.get(key)
        if cached is not None and not cached.requires_user_selection:
            logger.debug("Discovery cache hit for %s", url)
            return cached

        self._report(on_progress, "Validating URL", 10)
        result = await self.validate(url)
        if result.is_valid:
            self._report(on_progress, "Feed is valid", 100)
            return result

        direct_error = result.final_error
        result.status = ValidationStatus.DISCOVERY_IN_PROGRESS
        self._report(on_progress, "Searching website for feeds", 30)
        blocked = predicts_cross_origin(url, self.config.context_origin)
        discovery = await self.discovery.discover_from_website(url, relay_fallback=blocked)
        candidates = list(discovery.candidates)
        self._report(on_progress, f"Found {len(candidates)} candidate feed(s)", 70)

        result.discovery = discovery
        result.discovered_candidates = candidates
        if not candidates:
            final_error = direct_error or build_error(
                ErrorKind.NOT_FOUND, "No RSS feeds found", ErrorContext(url=url)
            )
            result.status = ValidationStatus.INVALID
            result.final_error = final_error
            result.error = final_error.message
            result.suggestions = _merge(final_error.suggestions, discovery.suggestions)
        elif len(candidates) == 1:
            candidate_url = candidates[0].url
            logger.info("Adopting discovered feed %s for %s", candidate_url, url)
            if normalize_candidate_url(candidate_url) == normalize_candidate_url(url):
                # The cached entry for this URL is the failure we just saw.
                adopted = await self.revalidate(candidate_url)
            else:
                adopted = await self.validate(candidate_url)
            result = self._adopt(result, adopted, discovery)
        else:
            result.status = ValidationStatus.DISCOVERY_REQUIRED
            result.requires_user_selection = True
            result.suggestions = list(discovery.suggestions)

        self._report(on_progress, "Finalizing", 90)
        self.cache.set(key, result, ttl=self.config.discovery_ttl)
        self._report(on_progress, "Done", 100)
        return result

    async def validate_many(self, urls: Iterable[str]) -> List[ValidationResult]:
        return list(await asyncio.gather(*(self.validate(url) for url in urls)))

    async def revalidate(self, url: str) -> ValidationResult:
        self.cache.invalidate(validation_key(url))
        self.cache.invalidate(discovery_key(url))
        return await self.validate(url)

    def clear_cache(self) -> int:
        removed = self.cache.invalidate_pattern("validation:*")
        removed += self.cache.invalidate_pattern("discovery:*")
        logger.info("Cleared %d cached validation result(s)", removed)
        return removed

    def get_summary(self, urls: Optional[Iterable[str]] = None) -> ValidationSummary:
        """Counts over *urls* (default: every cached validation).

        A URL without a cached result counts as ``checking``.
        """
        if urls is None:
            results = [self.cache.peek(k) for k in self.cache.keys("validation:*")]
            results = [r for r in results if r is not None]
        else:
            results = [self.cache.peek(validation_key(u)) for u in urls]

        present = [r for r in results if r is not None]
        valid = sum(1 for r in present if r.is_valid)
        checking = sum(
            1 for r in results
            if r is None or r.status in (ValidationStatus.CHECKING, ValidationStatus.DISCOVERY_IN_PROGRESS)
        )
        return ValidationSummary(
            total=len(results),
            valid=valid,
            invalid=len(results) - valid - checking,
            checking=checking,
            last_validation=max((r.last_checked for r in present), default=None),
        )

    def cache_stats(self) -> Dict[str, object]:
        return self.cache.stats()

    def relay_stats(self) -> Dict[str, Dict[str, object]]:
        if self.relay_client is None:
            return {}
        return self.relay_client.stats()

    async def _run_attempts(self, url: str, result: ValidationResult) -> Optional[ValidationError]:
        """Direct attempts then, if eligible, one relay attempt.

        Returns the error to report, or ``None`` once *result* is valid.
        """
        last_error: Optional[ValidationError] = None
        skip_direct = predicts_cross_origin(url, self.config.context_origin)

        if skip_direct:
            last_error = build_error(
                ErrorKind.CROSS_ORIGIN,
                f"Direct request skipped: {url} is cross-origin for {self.config.context_origin}",
                ErrorContext(url=url, method=AttemptMethod.DIRECT.value, attempt=1),
            )
            result.validation_attempts.append(
                ValidationAttempt(
                    attempt_number=1,
                    timestamp=self._clock(),
                    method=AttemptMethod.DIRECT,
                    success=False,
                    error=last_error,
                )
            )
            logger.debug("Skipping direct fetch of %s (cross-origin)", url)
        else:
            last_error = await self._direct_attempts(url, result)
            if last_error is None:
                return None

        if self.relay_client is None:
            return last_error
        if not skip_direct and last_error.kind not in RELAY_ELIGIBLE_KINDS:
            return last_error

        relay_error = await self._relay_attempt(url, result)
        if relay_error is None:
            return None
        if relay_error.kind is ErrorKind.UNKNOWN:
            return last_error
        return relay_error

    async def _direct_attempts(self, url: str, result: ValidationResult) -> Optional[ValidationError]:
        config = self.config
        error: Optional[ValidationError] = None
        for n in range(1, config.max_attempts + 1):
            method = AttemptMethod.DIRECT if n == 1 else AttemptMethod.RETRY
            timeout = config.initial_timeout + (n - 1) * config.timeout_step
            started = time.monotonic()
            status_code = None
            try:
                resp = await self.transport.fetch(url, timeout=timeout, headers={"Accept": FEED_ACCEPT})
                status_code = resp.status_code
                if resp.ok:
                    parsed = parse_feed_content(resp.text)
                    if parsed.is_valid:
                        elapsed = time.monotonic() - started
                        result.validation_attempts.append(
                            ValidationAttempt(
                                attempt_number=n,
                                timestamp=self._clock(),
                                method=method,
                                success=True,
                                response_time=elapsed,
                                status_code=status_code,
                            )
                        )
                        _mark_valid(result, parsed, FinalMethod.DIRECT, elapsed, status_code)
                        return None
                    error = classify(
                        FeedContentError(parsed.error, parsed.error_kind),
                        url=url, method=method.value, attempt=n,
                    )
                else:
                    error = classify(status_code=status_code, url=url, method=method.value, attempt=n)
            except Exception as exc:
                error = classify(exc, url=url, method=method.value, attempt=n)

            elapsed = time.monotonic() - started
            delay = None
            if error.retryable and n < config.max_attempts:
                delay = compute_backoff(
                    n,
                    base=config.retry_base_delay,
                    cap=config.retry_max_delay,
                    jitter=config.retry_jitter,
                    rng=self._rng,
                )
            result.validation_attempts.append(
                ValidationAttempt(
                    attempt_number=n,
                    timestamp=self._clock(),
                    method=method,
                    success=False,
                    error=error,
                    response_time=elapsed,
                    status_code=status_code,
                    retry_delay=delay,
                )
            )
            result.response_time = elapsed
            if delay is None:
                logger.debug("Attempt %d for %s failed (%s); giving up", n, url, error.kind.value)
                break
            logger.debug("Attempt %d for %s failed (%s); retrying in %.2fs", n, url, error.kind.value, delay)
            result.total_retries += 1
            await self._sleep(delay)
        return error

    async def _relay_attempt(self, url: str, result: ValidationResult) -> Optional[ValidationError]:
        n = len(result.validation_attempts) + 1
        started = time.monotonic()
        relay_used = None
        try:
            relayed = await self.relay_client.fetch_via_relay(url)
            relay_used = relayed.relay_used
            parsed = parse_feed_content(relayed.content)
            if not parsed.is_valid:
                raise FeedContentError(parsed.error, parsed.error_kind)
        except Exception as exc:
            error = classify(exc, url=url, method=AttemptMethod.RELAY.value, attempt=n)
            result.validation_attempts.append(
                ValidationAttempt(
                    attempt_number=n,
                    timestamp=self._clock(),
                    method=AttemptMethod.RELAY,
                    success=False,
                    error=error,
                    response_time=time.monotonic() - started,
                    relay_used=relay_used,
                )
            )
            logger.warning("Relay validation failed for %s: %s", url, error.message)
            return error

        elapsed = time.monotonic() - started
        result.validation_attempts.append(
            ValidationAttempt(
                attempt_number=n,
                timestamp=self._clock(),
                method=AttemptMethod.RELAY,
                success=True,
                response_time=elapsed,
                relay_used=relay_used,
            )
        )
        _mark_valid(result, parsed, FinalMethod.RELAY, elapsed, None)
        return None

    def _finalize(self, result: ValidationResult, error: Optional[ValidationError]) -> None:
        if result.is_valid:
            result.status = ValidationStatus.VALID
            result.error = None
            result.final_error = None
            result.suggestions = []
            return
        if error is None:
            error = build_error(ErrorKind.UNKNOWN, "Validation failed", ErrorContext(url=result.url))
        result.status = STATUS_BY_KIND[error.kind]
        result.final_error = error
        result.error = error.message
        result.suggestions = list(error.suggestions)
        result.status_code = error.context.status_code
        result.final_method = None

    def _adopt(
        self,
        original: ValidationResult,
        adopted: ValidationResult,
        discovery: DiscoveryResult,
    ) -> ValidationResult:
        attempts = [
            replace(a, attempt_number=i)
            for i, a in enumerate(original.validation_attempts + adopted.validation_attempts, start=1)
        ]
        merged = replace(
            adopted,
            validation_attempts=attempts,
            total_retries=original.total_retries + adopted.total_retries,
            total_validation_time=original.total_validation_time + adopted.total_validation_time,
            discovery=discovery,
            discovered_candidates=list(discovery.candidates),
            requires_user_selection=False,
        )
        if adopted.is_valid:
            merged.final_method = FinalMethod.DISCOVERY
        else:
            merged.status = ValidationStatus.INVALID
            merged.error = "Discovered feed invalid"
            merged.suggestions = _merge(adopted.suggestions, discovery.suggestions)
        return merged

    def _report(self, on_progress: Optional[ProgressCallback], message: str, percent: int) -> None:
        if on_progress is None:
            return
        try:
            on_progress(message, percent)
        except Exception as exc:
            logger.warning("Progress callback raised: %s", exc)


def build_validator(config: Optional[ValidatorConfig] = None) -> FeedValidator:
    """Wire a validator over a real httpx transport and the configured relay pool."""
    config = config or ValidatorConfig()
    transport = HttpxTransport(user_agent=config.user_agent)
    relay_client = None
    if config.relays:
        relay_client = RelayFailoverClient(
            transport,
            config.relays,
            failure_threshold=config.relay_failure_threshold,
            recovery_time=config.relay_recovery_time,
        )
    return FeedValidator(transport, config=config, relay_client=relay_client)


def _mark_valid(
    result: ValidationResult,
    parsed: FeedParseResult,
    method: FinalMethod,
    elapsed: float,
    status_code: Optional[int],
) -> None:
    result.is_valid = True
    result.title = parsed.title
    result.description = parsed.description
    result.final_method = method
    result.response_time = elapsed
    result.status_code = status_code


def _merge(*groups: Iterable[str]) -> List[str]:
    merged: List[str] = []
    for group in groups:
        for item in group:
            if item not in merged:
                merged.append(item)
    return merged


async def main():
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    async with build_validator(ValidatorConfig.from_env()) as validator:
        for url in sys.argv[1:]:
            result = await validator.validate_with_discovery(url)
            print(f"{url}: {result.status.value} {result.title or result.error or ''}")
            for candidate in result.discovered_candidates or []:
                print(f"  {candidate.confidence:.2f} {candidate.discovery_method.value} {candidate.url}")


if __name__ == "__main__":
    asyncio.run(main())
