"""Tests for the FastAPI validation endpoints.

``build_validator`` is patched so the app runs against an in-memory
transport with no relays; no network calls are made.
"""

from unittest import TestCase, mock

from fastapi.testclient import TestClient

from fakes import RSS_FEED, FakeTransport

from feedcheck.app_server import app
from feedcheck.main.config import ValidatorConfig
from feedcheck.main.tools.validator import FeedValidator

FEED_URL = "https://example.com/feed.xml"
MISSING_URL = "https://example.com/missing.xml"


class TestAPI(TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        cls.transport = FakeTransport()
        cls.transport.add(FEED_URL, RSS_FEED)

        async def no_sleep(delay: float) -> None:
            return None

        def fake_build_validator(config: ValidatorConfig) -> FeedValidator:
            return FeedValidator(cls.transport, config=ValidatorConfig(relays=[]), sleep=no_sleep)

        cls.patchers = [
            mock.patch("feedcheck.app_server.build_validator", side_effect=fake_build_validator),
            mock.patch("feedcheck.main.config.load_dotenv"),
        ]
        for patcher in cls.patchers:
            patcher.start()

    @classmethod
    def tearDownClass(cls) -> None:
        for patcher in cls.patchers:
            patcher.stop()

    def test_routes(self) -> None:
        # Verify that the FastAPI app defines the expected endpoints.
        paths = {route.path for route in app.routes}
        for path in (
            "/validate",
            "/validateWithDiscovery",
            "/validateMany",
            "/revalidate",
            "/cache",
            "/summary",
            "/cache/stats",
            "/relays",
        ):
            self.assertIn(path, paths)

    def test_validation_flow(self) -> None:
        with TestClient(app) as client:
            resp = client.post("/validate", params={"url": FEED_URL})
            self.assertEqual(resp.status_code, 200)
            body = resp.json()
            self.assertEqual(body["status"], "valid")
            self.assertEqual(body["title"], "T")
            self.assertEqual(body["validation_attempts"][0]["method"], "direct")

            resp = client.post("/validateMany", json=[MISSING_URL, FEED_URL])
            self.assertEqual([r["status"] for r in resp.json()], ["not_found", "valid"])

            summary = client.post("/summary", json=[FEED_URL, MISSING_URL]).json()
            self.assertEqual((summary["total"], summary["valid"], summary["invalid"]), (2, 1, 1))

            stats = client.get("/cache/stats").json()
            self.assertEqual(stats["entries"], 2)
            self.assertGreaterEqual(stats["hits"], 1)

            self.assertEqual(client.get("/relays").json(), {})
            self.assertEqual(client.delete("/cache").json(), {"removed": 2})
            self.assertEqual(client.post("/summary").json()["total"], 0)

            resp = client.post("/revalidate", params={"url": FEED_URL})
            self.assertEqual(resp.json()["status"], "valid")
        self.assertTrue(self.transport.closed)

    def test_discovery_endpoint(self) -> None:
        with TestClient(app) as client:
            resp = client.post("/validateWithDiscovery", params={"url": FEED_URL})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["final_method"], "direct")
