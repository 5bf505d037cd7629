"""Behavioural tests for ``FeedValidator`` over an in-memory transport.

Sleep and randomness are injected: backoff delays are recorded instead of
awaited, and jitter is zero unless a test says otherwise.
"""

import random
from unittest import IsolatedAsyncioTestCase, TestCase

from fakes import PLAIN_HTML, RELAY, RSS_FEED, FakeTransport, html_with_links, response

from feedcheck.main.config import ValidatorConfig
from feedcheck.main.models import (
    AttemptMethod,
    ErrorKind,
    FinalMethod,
    ValidationStatus,
)
from feedcheck.main.tools.errors import SUGGESTIONS, FetchError, FetchTimeoutError
from feedcheck.main.tools.relay import RelayFailoverClient
from feedcheck.main.tools.validator import FeedValidator, predicts_cross_origin

FEED_URL = "https://example.com/feed.xml"
SITE = "https://blog.example.com"


class ValidatorTestCase(IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.transport = FakeTransport()
        self.sleeps = []
        self.now = 1700000000.0

    async def _sleep(self, delay: float) -> None:
        self.sleeps.append(delay)

    def make_validator(self, relay: bool = False, rng=lambda: 0.0, **overrides) -> FeedValidator:
        config = ValidatorConfig(relays=[], **overrides)
        relay_client = RelayFailoverClient(self.transport, [RELAY]) if relay else None
        return FeedValidator(
            self.transport,
            config=config,
            relay_client=relay_client,
            sleep=self._sleep,
            rng=rng,
            clock=lambda: self.now,
        )


class TestValidate(ValidatorTestCase):
    async def test_valid_rss(self) -> None:
        self.transport.add(FEED_URL, RSS_FEED)
        validator = self.make_validator()

        result = await validator.validate(FEED_URL)

        self.assertEqual(result.status, ValidationStatus.VALID)
        self.assertTrue(result.is_valid)
        self.assertEqual((result.title, result.description), ("T", "D"))
        self.assertEqual(result.final_method, FinalMethod.DIRECT)
        self.assertIsNone(result.final_error)
        self.assertIsNone(result.error)
        self.assertEqual(result.status_code, 200)
        self.assertEqual(result.last_checked, self.now)
        self.assertEqual(len(result.validation_attempts), 1)
        attempt = result.validation_attempts[0]
        self.assertTrue(attempt.success)
        self.assertEqual(attempt.method, AttemptMethod.DIRECT)
        self.assertEqual(self.transport.timeouts(FEED_URL), [5.0])

    async def test_second_call_is_served_from_cache(self) -> None:
        self.transport.add(FEED_URL, RSS_FEED)
        validator = self.make_validator()

        first = await validator.validate(FEED_URL)
        second = await validator.validate(FEED_URL)

        self.assertEqual(self.transport.count(FEED_URL), 1)
        self.assertEqual(second.validation_attempts, first.validation_attempts)
        self.assertEqual(validator.cache_stats()["hits"], 1)

    async def test_clear_cache_forces_a_new_fetch(self) -> None:
        self.transport.add(FEED_URL, RSS_FEED)
        validator = self.make_validator()
        await validator.validate(FEED_URL)

        self.assertEqual(validator.clear_cache(), 1)
        await validator.validate(FEED_URL)

        self.assertEqual(self.transport.count(FEED_URL), 2)

    async def test_revalidate_bypasses_cache(self) -> None:
        self.transport.add(FEED_URL, RSS_FEED)
        validator = self.make_validator()
        await validator.validate(FEED_URL)
        await validator.revalidate(FEED_URL)
        self.assertEqual(self.transport.count(FEED_URL), 2)

    async def test_not_found_is_not_retried(self) -> None:
        validator = self.make_validator(relay=True)

        result = await validator.validate(FEED_URL)

        self.assertEqual(result.status, ValidationStatus.NOT_FOUND)
        self.assertFalse(result.final_error.retryable)
        self.assertEqual(result.status_code, 404)
        self.assertEqual(len(result.validation_attempts), 1)
        self.assertEqual(result.suggestions, list(SUGGESTIONS[ErrorKind.NOT_FOUND]))
        self.assertEqual(result.error, "HTTP 404: Not Found")
        self.assertEqual(self.sleeps, [])
        self.assertEqual(self.transport.count(RELAY.build_url(FEED_URL)), 0)

    async def test_server_errors_retry_with_backoff(self) -> None:
        self.transport.routes[FEED_URL] = response("oops", 503)
        validator = self.make_validator()

        result = await validator.validate(FEED_URL)

        self.assertEqual(result.status, ValidationStatus.SERVER_ERROR)
        self.assertEqual(
            [a.method for a in result.validation_attempts],
            [AttemptMethod.DIRECT, AttemptMethod.RETRY, AttemptMethod.RETRY],
        )
        self.assertEqual([a.attempt_number for a in result.validation_attempts], [1, 2, 3])
        self.assertEqual(self.sleeps, [1.0, 2.0])
        self.assertEqual([a.retry_delay for a in result.validation_attempts], [1.0, 2.0, None])
        self.assertEqual(result.total_retries, 2)
        self.assertEqual(self.transport.timeouts(FEED_URL), [5.0, 6.0, 7.0])

    async def test_backoff_with_jitter_stays_in_window(self) -> None:
        self.transport.routes[FEED_URL] = FetchError("connection reset")
        validator = self.make_validator(rng=random.Random(3).random)

        result = await validator.validate(FEED_URL)

        self.assertEqual(result.status, ValidationStatus.NETWORK_ERROR)
        self.assertEqual(len(self.sleeps), 2)
        self.assertTrue(1.0 <= self.sleeps[0] <= 1.5)
        self.assertTrue(2.0 <= self.sleeps[1] <= 2.5)

    async def test_timeout_then_success(self) -> None:
        self.transport.routes[FEED_URL] = [FetchTimeoutError("slow"), response(RSS_FEED)]
        validator = self.make_validator()

        result = await validator.validate(FEED_URL)

        self.assertTrue(result.is_valid)
        self.assertEqual(len(result.validation_attempts), 2)
        first, second = result.validation_attempts
        self.assertEqual(first.error.kind, ErrorKind.TIMEOUT)
        self.assertEqual(first.retry_delay, 1.0)
        self.assertEqual(second.method, AttemptMethod.RETRY)
        self.assertTrue(second.success)

    async def test_unknown_errors_end_as_invalid(self) -> None:
        self.transport.routes[FEED_URL] = ValueError("something odd")
        validator = self.make_validator()

        result = await validator.validate(FEED_URL)

        self.assertEqual(result.status, ValidationStatus.INVALID)
        self.assertEqual(result.final_error.kind, ErrorKind.UNKNOWN)
        self.assertEqual(len(result.validation_attempts), 3)

    async def test_html_is_invalid_format_without_relay(self) -> None:
        self.transport.add(FEED_URL, PLAIN_HTML)
        validator = self.make_validator(relay=True)

        result = await validator.validate(FEED_URL)

        self.assertEqual(result.status, ValidationStatus.PARSE_ERROR)
        self.assertEqual(result.final_error.kind, ErrorKind.INVALID_FORMAT)
        self.assertEqual(len(result.validation_attempts), 1)
        self.assertEqual(self.transport.count(RELAY.build_url(FEED_URL)), 0)

    async def test_network_failure_recovers_through_relay(self) -> None:
        self.transport.routes[FEED_URL] = FetchError("connection refused")
        self.transport.add(RELAY.build_url(FEED_URL), RSS_FEED)
        validator = self.make_validator(relay=True)

        result = await validator.validate(FEED_URL)

        self.assertEqual(result.status, ValidationStatus.VALID)
        self.assertEqual(result.final_method, FinalMethod.RELAY)
        self.assertEqual(len(result.validation_attempts), 4)
        relay_attempt = result.validation_attempts[-1]
        self.assertEqual(relay_attempt.method, AttemptMethod.RELAY)
        self.assertEqual(relay_attempt.relay_used, "test-relay")
        self.assertEqual(relay_attempt.attempt_number, 4)
        self.assertIsNone(result.final_error)
        self.assertEqual(result.suggestions, [])

    async def test_forbidden_goes_straight_to_relay(self) -> None:
        self.transport.routes[FEED_URL] = response("denied", 403)
        self.transport.add(RELAY.build_url(FEED_URL), RSS_FEED)
        validator = self.make_validator(relay=True)

        result = await validator.validate(FEED_URL)

        self.assertTrue(result.is_valid)
        self.assertEqual(
            [a.method for a in result.validation_attempts],
            [AttemptMethod.DIRECT, AttemptMethod.RELAY],
        )

    async def test_relay_failure_is_reported(self) -> None:
        self.transport.routes[FEED_URL] = response("denied", 403)
        validator = self.make_validator(relay=True)

        result = await validator.validate(FEED_URL)

        self.assertEqual(result.status, ValidationStatus.NETWORK_ERROR)
        self.assertEqual(len(result.validation_attempts), 2)
        self.assertIn("All relays failed", result.error)

    async def test_cross_origin_context_skips_direct_fetch(self) -> None:
        self.transport.add(RELAY.build_url(FEED_URL), RSS_FEED)
        validator = self.make_validator(relay=True, context_origin="https://app.example.org")

        result = await validator.validate(FEED_URL)

        self.assertEqual(self.transport.count(FEED_URL), 0)
        self.assertTrue(result.is_valid)
        self.assertEqual(result.final_method, FinalMethod.RELAY)
        skipped = result.validation_attempts[0]
        self.assertEqual(skipped.method, AttemptMethod.DIRECT)
        self.assertFalse(skipped.success)
        self.assertEqual(skipped.error.kind, ErrorKind.CROSS_ORIGIN)

    async def test_cross_origin_without_relay(self) -> None:
        validator = self.make_validator(context_origin="https://app.example.org")

        result = await validator.validate(FEED_URL)

        self.assertEqual(result.status, ValidationStatus.CROSS_ORIGIN_ERROR)
        self.assertEqual(self.transport.calls, [])

    async def test_local_context_fetches_directly(self) -> None:
        self.transport.add(FEED_URL, RSS_FEED)
        validator = self.make_validator(context_origin="http://localhost:3000")

        result = await validator.validate(FEED_URL)

        self.assertEqual(result.final_method, FinalMethod.DIRECT)

    async def test_failures_are_cached_too(self) -> None:
        validator = self.make_validator()
        await validator.validate(FEED_URL)
        await validator.validate(FEED_URL)
        self.assertEqual(self.transport.count(FEED_URL), 1)


class TestBatchAndSummary(ValidatorTestCase):
    async def test_validate_many_keeps_input_order(self) -> None:
        good, missing = FEED_URL, "https://example.com/missing.xml"
        self.transport.add(good, RSS_FEED)
        validator = self.make_validator()

        results = await validator.validate_many([missing, good])

        self.assertEqual([r.url for r in results], [missing, good])
        self.assertEqual([r.status for r in results], [ValidationStatus.NOT_FOUND, ValidationStatus.VALID])

    async def test_summary(self) -> None:
        good, missing, unseen = FEED_URL, "https://example.com/missing.xml", "https://example.com/later.xml"
        self.transport.add(good, RSS_FEED)
        validator = self.make_validator()
        await validator.validate_many([good, missing])

        summary = validator.get_summary([good, missing, unseen])
        self.assertEqual(
            summary.to_dict(),
            {"total": 3, "valid": 1, "invalid": 1, "checking": 1, "last_validation": self.now},
        )

        everything = validator.get_summary()
        self.assertEqual((everything.total, everything.valid, everything.invalid), (2, 1, 1))

    async def test_empty_summary(self) -> None:
        summary = self.make_validator().get_summary()
        self.assertEqual(summary.total, 0)
        self.assertIsNone(summary.last_validation)

    async def test_aclose_closes_transport(self) -> None:
        async with self.make_validator():
            pass
        self.assertTrue(self.transport.closed)


class TestValidateWithDiscovery(ValidatorTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.progress = []

    def record(self, message: str, percent: int) -> None:
        self.progress.append(percent)

    async def test_valid_feed_skips_discovery(self) -> None:
        self.transport.add(FEED_URL, RSS_FEED)
        validator = self.make_validator()

        result = await validator.validate_with_discovery(FEED_URL, on_progress=self.record)

        self.assertTrue(result.is_valid)
        self.assertIsNone(result.discovered_candidates)
        self.assertEqual(self.progress, [10, 100])

    async def test_site_without_feeds_is_invalid(self) -> None:
        self.transport.add(SITE, PLAIN_HTML)
        validator = self.make_validator()

        result = await validator.validate_with_discovery(SITE, on_progress=self.record)

        self.assertEqual(result.status, ValidationStatus.INVALID)
        self.assertFalse(result.is_valid)
        self.assertEqual(result.discovered_candidates, [])
        self.assertEqual(result.final_error.kind, ErrorKind.INVALID_FORMAT)
        self.assertIn("No RSS feeds found on this website", result.suggestions)
        self.assertEqual(self.progress, [10, 30, 70, 90, 100])

    async def test_single_candidate_is_adopted(self) -> None:
        self.transport.add(SITE, html_with_links(("/feed.xml", "application/rss+xml")))
        self.transport.add(SITE + "/feed.xml", RSS_FEED)
        validator = self.make_validator()

        result = await validator.validate_with_discovery(SITE)

        self.assertEqual(result.status, ValidationStatus.VALID)
        self.assertEqual(result.url, SITE + "/feed.xml")
        self.assertEqual(result.final_method, FinalMethod.DISCOVERY)
        self.assertEqual(result.title, "T")
        self.assertEqual(len(result.discovered_candidates), 1)
        self.assertEqual(result.discovery.original_url, SITE)
        numbers = [a.attempt_number for a in result.validation_attempts]
        self.assertEqual(numbers, list(range(1, len(numbers) + 1)))
        self.assertTrue(result.validation_attempts[-1].success)
        self.assertFalse(result.validation_attempts[0].success)

    async def test_single_candidate_result_is_cached(self) -> None:
        self.transport.add(SITE, html_with_links(("/feed.xml", "application/rss+xml")))
        self.transport.add(SITE + "/feed.xml", RSS_FEED)
        validator = self.make_validator()

        await validator.validate_with_discovery(SITE)
        calls = len(self.transport.calls)
        again = await validator.validate_with_discovery(SITE)

        self.assertEqual(len(self.transport.calls), calls)
        self.assertEqual(again.url, SITE + "/feed.xml")

    async def test_two_candidates_need_a_choice(self) -> None:
        self.transport.add(SITE, html_with_links(
            ("/feed.xml", "application/rss+xml"),
            ("/comments/feed.xml", "application/rss+xml"),
        ))
        self.transport.add(SITE + "/feed.xml", RSS_FEED)
        self.transport.add(SITE + "/comments/feed.xml", RSS_FEED)
        validator = self.make_validator()

        result = await validator.validate_with_discovery(SITE, on_progress=self.record)

        self.assertEqual(result.status, ValidationStatus.DISCOVERY_REQUIRED)
        self.assertTrue(result.requires_user_selection)
        self.assertFalse(result.is_valid)
        self.assertEqual(len(result.discovered_candidates), 2)
        for candidate in result.discovered_candidates:
            self.assertEqual(candidate.kind.value, "rss")
        self.assertEqual(self.progress, [10, 30, 70, 90, 100])

        # A pending choice is never served from the cache.
        await validator.validate_with_discovery(SITE)
        self.assertEqual(self.transport.count(SITE + "/comments/feed.xml"), 2)

    async def test_wordpress_site_offers_both_feeds(self) -> None:
        self.transport.add(SITE, html_with_links(
            ("/feed", "application/rss+xml"),
            ("/comments/feed", "application/rss+xml"),
        ))
        self.transport.add(SITE + "/feed", RSS_FEED)
        self.transport.add(SITE + "/comments/feed", RSS_FEED)
        validator = self.make_validator()

        result = await validator.validate_with_discovery(SITE)

        self.assertEqual(result.status, ValidationStatus.DISCOVERY_REQUIRED)
        self.assertTrue(result.requires_user_selection)
        self.assertEqual(
            sorted(c.url for c in result.discovered_candidates),
            [SITE + "/comments/feed", SITE + "/feed"],
        )

    async def test_blocked_site_feed_is_found_through_relay(self) -> None:
        self.transport.routes[SITE] = FetchError("blocked by CORS policy")
        self.transport.routes[SITE + "/posts.xml"] = FetchError("blocked by CORS policy")
        self.transport.add(RELAY.build_url(SITE), html_with_links(("/posts.xml", "application/rss+xml")))
        self.transport.add(RELAY.build_url(SITE + "/posts.xml"), RSS_FEED)
        validator = self.make_validator(relay=True)

        result = await validator.validate_with_discovery(SITE)

        self.assertEqual(result.status, ValidationStatus.VALID)
        self.assertEqual(result.url, SITE + "/posts.xml")
        self.assertEqual(result.final_method, FinalMethod.DISCOVERY)
        self.assertEqual(result.validation_attempts[-1].method, AttemptMethod.RELAY)
        self.assertTrue(result.validation_attempts[-1].success)

    async def test_cross_origin_discovery_checks_candidates_through_relay(self) -> None:
        self.transport.add(SITE, PLAIN_HTML)
        self.transport.add(RELAY.build_url(SITE), PLAIN_HTML)
        self.transport.add(RELAY.build_url(SITE + "/feed"), RSS_FEED)
        validator = self.make_validator(relay=True, context_origin="https://app.example.org")

        result = await validator.validate_with_discovery(SITE)

        self.assertEqual(result.status, ValidationStatus.VALID)
        self.assertEqual(result.url, SITE + "/feed")
        self.assertEqual(result.final_method, FinalMethod.DISCOVERY)
        self.assertEqual(self.transport.count(SITE + "/feed"), 1)

    async def test_candidate_equal_to_input_is_rechecked(self) -> None:
        # Overloaded for every direct attempt, then back by the time discovery runs.
        busy = response("busy", 503)
        self.transport.routes[SITE + "/feed"] = [busy, busy, busy, response(RSS_FEED)]
        validator = self.make_validator()

        result = await validator.validate_with_discovery(SITE + "/feed")

        self.assertEqual(result.status, ValidationStatus.VALID)
        self.assertEqual(result.url, SITE + "/feed")
        self.assertEqual(result.final_method, FinalMethod.DISCOVERY)
        self.assertEqual(len(result.discovered_candidates), 1)
        self.assertTrue(result.validation_attempts[-1].success)
        self.assertFalse(result.validation_attempts[0].success)
        self.assertTrue((await validator.validate(SITE + "/feed")).is_valid)

    async def test_discovered_feed_that_fails(self) -> None:
        self.transport.add(SITE, html_with_links(("/feed.xml", "application/rss+xml")))
        # Valid while discovery checks it, then gone when it is validated.
        self.transport.routes[SITE + "/feed.xml"] = [response(RSS_FEED), response("gone", 404)]
        validator = self.make_validator()

        result = await validator.validate_with_discovery(SITE)

        self.assertEqual(result.status, ValidationStatus.INVALID)
        self.assertEqual(result.error, "Discovered feed invalid")
        self.assertEqual(result.final_error.kind, ErrorKind.NOT_FOUND)
        self.assertIsNone(result.final_method)

    async def test_progress_callback_errors_are_ignored(self) -> None:
        self.transport.add(FEED_URL, RSS_FEED)
        validator = self.make_validator()

        def broken(message: str, percent: int) -> None:
            raise RuntimeError("UI went away")

        result = await validator.validate_with_discovery(FEED_URL, on_progress=broken)

        self.assertTrue(result.is_valid)

    async def test_to_dict_is_json_ready(self) -> None:
        self.transport.add(SITE, html_with_links(("/feed.xml", "application/rss+xml")))
        self.transport.add(SITE + "/feed.xml", RSS_FEED)
        validator = self.make_validator()

        data = (await validator.validate_with_discovery(SITE)).to_dict()

        self.assertEqual(data["status"], "valid")
        self.assertEqual(data["final_method"], "discovery")
        self.assertEqual(data["discovered_candidates"][0]["discovery_method"], "link_discovery")
        self.assertEqual(data["validation_attempts"][0]["method"], "direct")


class TestCrossOriginPrediction(TestCase):
    def test_prediction(self) -> None:
        self.assertFalse(predicts_cross_origin(FEED_URL, None))
        self.assertFalse(predicts_cross_origin(FEED_URL, "https://example.com"))
        self.assertTrue(predicts_cross_origin(FEED_URL, "https://app.example.org"))
        for local in ("http://localhost:8080", "http://127.0.0.1", "http://[::1]:3000", "http://0.0.0.0"):
            self.assertFalse(predicts_cross_origin(FEED_URL, local))
