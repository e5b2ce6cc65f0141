"""Tests for the FetchDispatcher."""

import asyncio
import time
import unittest

from fakes import FakeHTTPClient, FakePage, FakeResponse, FakeSession, TABLE_HTML

from tablecrawl.config import Settings
from tablecrawl.dispatcher import FetchDispatcher, domain_of, origin_of, parse_document
from tablecrawl.errors import ParseError
from tablecrawl.models import FetchMode, FetchOptions, RenderOptions
from tablecrawl.readiness import ReadinessCheck, all_of, challenge_cleared, table_present


def _settings(**overrides):
    values = dict(min_delay=0.0, max_delay=0.0, base_backoff=0.0, retries=3, shutdown_deadline=1.0)
    values.update(overrides)
    return Settings(**values)


class TestHelpers(unittest.TestCase):
    """Verify URL and document helpers."""

    def test_domain_of_returns_host(self):
        self.assertEqual(domain_of("https://Example.com:8443/a?b=1"), "example.com")

    def test_domain_of_rejects_relative_url(self):
        with self.assertRaises(ValueError):
            domain_of("/relative/path")

    def test_origin_of(self):
        self.assertEqual(origin_of("https://example.com/a/b"), "https://example.com")

    def test_parse_document_rejects_empty_body(self):
        with self.assertRaises(ParseError):
            parse_document("   ")

    def test_parse_document_returns_navigable_tree(self):
        doc = parse_document(TABLE_HTML)
        self.assertEqual(doc.find("title").get_text(), "Flows")


class TestDirectFetch(unittest.IsolatedAsyncioTestCase):
    """Verify direct fetch retries, tagging and headers."""

    async def test_success_parses_document(self):
        client = FakeHTTPClient()
        dispatcher = FetchDispatcher(_settings(), http_client=client)
        result = await dispatcher.fetch("https://example.com/data")
        self.assertTrue(result.success)
        self.assertEqual(result.mode, FetchMode.DIRECT)
        self.assertEqual(result.status_code, 200)
        self.assertEqual(result.attempts, 1)
        self.assertIsNotNone(result.document.find("table"))
        self.assertIsNone(result.error_type)

    async def test_sends_identity_and_referer_headers(self):
        client = FakeHTTPClient()
        dispatcher = FetchDispatcher(_settings(), http_client=client)
        await dispatcher.fetch("https://example.com/data", FetchOptions(headers={"X-Test": "1"}))
        method, url, kwargs = client.calls[0]
        self.assertEqual(method, "GET")
        headers = kwargs["headers"]
        self.assertEqual(headers["Referer"], "https://example.com")
        self.assertEqual(headers["User-Agent"], dispatcher.identity.next_identity())
        self.assertEqual(headers["X-Test"], "1")

    async def test_transport_failures_exhaust_retries(self):
        """Three transport failures give a failure after exactly three attempts."""
        client = FakeHTTPClient([ConnectionError("refused")])
        dispatcher = FetchDispatcher(_settings(retries=3), http_client=client)
        result = await dispatcher.fetch("https://example.com/data")
        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "TransportError")
        self.assertIn("refused", result.error)
        self.assertEqual(result.attempts, 3)
        self.assertEqual(len(client.calls), 3)

    async def test_attempts_never_exceed_retry_limit(self):
        for retries in (1, 2, 5):
            client = FakeHTTPClient([FakeResponse(status_code=500)])
            dispatcher = FetchDispatcher(_settings(retries=retries), http_client=client)
            result = await dispatcher.fetch("https://example.com/data")
            self.assertEqual(len(client.calls), retries)
            self.assertEqual(result.attempts, retries)

    async def test_non_2xx_is_retried_then_succeeds(self):
        client = FakeHTTPClient([FakeResponse(status_code=503), FakeResponse(status_code=200)])
        dispatcher = FetchDispatcher(_settings(), http_client=client)
        result = await dispatcher.fetch("https://example.com/data")
        self.assertTrue(result.success)
        self.assertEqual(result.attempts, 2)

    async def test_http_status_failure_keeps_status_code(self):
        client = FakeHTTPClient([FakeResponse(status_code=404)])
        dispatcher = FetchDispatcher(_settings(retries=2), http_client=client)
        result = await dispatcher.fetch("https://example.com/missing")
        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "HTTPStatusError")
        self.assertEqual(result.status_code, 404)

    async def test_parse_error_is_not_retried(self):
        client = FakeHTTPClient([FakeResponse(text="")])
        dispatcher = FetchDispatcher(_settings(), http_client=client)
        result = await dispatcher.fetch("https://example.com/empty")
        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "ParseError")
        self.assertEqual(len(client.calls), 1)

    async def test_invalid_url_fails_without_request(self):
        client = FakeHTTPClient()
        dispatcher = FetchDispatcher(_settings(), http_client=client)
        result = await dispatcher.fetch("not a url")
        self.assertFalse(result.success)
        self.assertEqual(result.attempts, 0)
        self.assertEqual(client.calls, [])

    async def test_same_domain_requests_are_spaced(self):
        """Two sequential fetches to one domain start at least min_delay apart."""
        client = FakeHTTPClient()
        dispatcher = FetchDispatcher(_settings(min_delay=0.1, max_delay=0.15), http_client=client)
        await dispatcher.fetch("https://example.com/a")
        await dispatcher.fetch("https://example.com/b")
        gap = client.call_times[1] - client.call_times[0]
        self.assertGreaterEqual(gap, 0.095)

    async def test_retries_are_paced_too(self):
        client = FakeHTTPClient([ConnectionError("reset"), FakeResponse()])
        dispatcher = FetchDispatcher(_settings(min_delay=0.1, max_delay=0.1), http_client=client)
        await dispatcher.fetch("https://example.com/a")
        self.assertGreaterEqual(client.call_times[1] - client.call_times[0], 0.095)

    async def test_concurrency_ceiling_is_respected(self):
        client = FakeHTTPClient(delay=0.05)
        dispatcher = FetchDispatcher(_settings(concurrency_limit=2), http_client=client)
        urls = [f"https://host{i}.example.com/" for i in range(6)]
        results = await asyncio.gather(*(dispatcher.fetch(u) for u in urls))
        self.assertTrue(all(r.success for r in results))
        self.assertLessEqual(client.max_in_flight, 2)
        self.assertEqual(dispatcher.slots.active, 0)


class TestRenderedFetch(unittest.IsolatedAsyncioTestCase):
    """Verify rendered fetch readiness polling and failure tagging."""

    def _dispatcher(self, page):
        session = FakeSession(page)
        return FetchDispatcher(_settings(), http_client=FakeHTTPClient(), rendered_session=session), session

    async def test_readiness_returns_as_soon_as_predicate_holds(self):
        """A predicate satisfied after ~0.2s returns long before the 5s max wait."""
        page = FakePage(ready_after=0.2)
        dispatcher, session = self._dispatcher(page)
        check = ReadinessCheck(all_of(challenge_cleared(), table_present()), max_wait=5.0, interval=0.02)
        start = time.monotonic()
        result = await dispatcher.fetch_rendered("https://example.com/flows", RenderOptions(readiness=check))
        elapsed = time.monotonic() - start
        self.assertTrue(result.success)
        self.assertTrue(result.ready)
        self.assertLess(elapsed, 1.5)
        self.assertGreaterEqual(elapsed, 0.19)
        self.assertIsNotNone(result.document.find("table"))

    async def test_readiness_timeout_returns_partial_content(self):
        page = FakePage(ready_after=60.0)
        dispatcher, _ = self._dispatcher(page)
        check = ReadinessCheck(table_present(), max_wait=0.1, interval=0.02)
        result = await dispatcher.fetch_rendered("https://example.com/flows", RenderOptions(readiness=check))
        self.assertTrue(result.success)
        self.assertIs(result.ready, False)
        self.assertIn("Just a moment", result.content)
        snap = dispatcher.metrics.snapshot(window_secs=60)
        self.assertEqual(snap.not_ready_count, 1)

    async def test_readiness_timeout_survives_failing_final_snapshot(self):
        """A page that stops answering mid-poll still returns the content seen before."""

        class NavigatingAwayPage(FakePage):
            async def content(self):
                self.snapshots += 1
                if self.snapshots > 1:
                    raise RuntimeError("Execution context was destroyed")
                return self._current()

        page = NavigatingAwayPage(ready_after=60.0)
        dispatcher, _ = self._dispatcher(page)
        check = ReadinessCheck(table_present(), max_wait=0.1, interval=0.02)
        result = await dispatcher.fetch_rendered("https://example.com/flows", RenderOptions(readiness=check))
        self.assertTrue(result.success)
        self.assertIs(result.ready, False)
        self.assertIn("Just a moment", result.content)

    async def test_readiness_ignores_challenge_status(self):
        page = FakePage(status=403, ready_after=0.0)
        dispatcher, _ = self._dispatcher(page)
        check = ReadinessCheck(table_present(), max_wait=1.0, interval=0.02)
        result = await dispatcher.fetch_rendered("https://example.com/flows", RenderOptions(readiness=check))
        self.assertTrue(result.success)
        self.assertEqual(result.status_code, 403)

    async def test_non_2xx_without_readiness_fails(self):
        page = FakePage(status=503)
        dispatcher, session = self._dispatcher(page)
        result = await dispatcher.fetch_rendered("https://example.com/flows")
        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "HTTPStatusError")
        self.assertEqual(session.open_pages, 0)

    async def test_navigation_failure_is_render_engine_error(self):
        page = FakePage(goto_error=TimeoutError("nav timeout"))
        dispatcher, session = self._dispatcher(page)
        result = await dispatcher.fetch_rendered("https://example.com/flows")
        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "RenderEngineError")
        self.assertEqual(session.disposed, 1)

    async def test_navigations_are_spaced_after_slow_launch(self):
        """Fetches queued behind a cold browser launch still navigate min_delay apart."""
        page = FakePage()
        session = FakeSession(page, launch_delay=0.3)
        dispatcher = FetchDispatcher(
            _settings(min_delay=0.1, max_delay=0.1, concurrency_limit=3),
            http_client=FakeHTTPClient(),
            rendered_session=session,
        )
        urls = [f"https://example.com/page{i}" for i in range(3)]
        results = await asyncio.gather(*(dispatcher.fetch_rendered(u) for u in urls))
        self.assertTrue(all(r.success for r in results))
        times = sorted(page.goto_times)
        self.assertEqual(len(times), 3)
        for earlier, later in zip(times, times[1:]):
            self.assertGreaterEqual(later - earlier, 0.095)

    async def test_plain_render_succeeds(self):
        dispatcher, session = self._dispatcher(FakePage())
        result = await dispatcher.fetch_rendered("https://example.com/flows")
        self.assertTrue(result.success)
        self.assertIsNone(result.ready)
        self.assertEqual(result.mode, FetchMode.RENDERED)
        self.assertEqual(session.opened, 1)
        self.assertEqual(session.disposed, 1)


class TestShutdown(unittest.IsolatedAsyncioTestCase):
    """Verify shutdown closes resources and refuses new work."""

    async def test_fetch_after_shutdown_is_refused(self):
        client = FakeHTTPClient()
        session = FakeSession()
        dispatcher = FetchDispatcher(_settings(), http_client=client, rendered_session=session)
        await dispatcher.shutdown()
        result = await dispatcher.fetch("https://example.com/")
        self.assertFalse(result.success)
        self.assertEqual(result.error_type, "DispatcherClosed")
        rendered = await dispatcher.fetch_rendered("https://example.com/")
        self.assertEqual(rendered.error_type, "DispatcherClosed")
        self.assertTrue(session.closed)
        self.assertEqual(client.calls, [])

    async def test_shutdown_is_idempotent_and_keeps_injected_client(self):
        client = FakeHTTPClient()
        dispatcher = FetchDispatcher(_settings(), http_client=client)
        await dispatcher.shutdown()
        await dispatcher.shutdown()
        self.assertTrue(dispatcher.closed)
        self.assertFalse(client.closed)

    async def test_shutdown_waits_for_in_flight_request(self):
        client = FakeHTTPClient(delay=0.1)
        dispatcher = FetchDispatcher(_settings(), http_client=client)
        pending = asyncio.ensure_future(dispatcher.fetch("https://example.com/slow"))
        await asyncio.sleep(0.02)
        await dispatcher.shutdown(deadline=1.0)
        result = await pending
        self.assertTrue(result.success)
        self.assertEqual(dispatcher.slots.active, 0)

    async def test_stats_report_metrics(self):
        dispatcher = FetchDispatcher(_settings(), http_client=FakeHTTPClient())
        await dispatcher.fetch("https://example.com/")
        stats = dispatcher.get_stats()
        self.assertEqual(stats["metrics"]["total_requests"], 1)
        self.assertEqual(stats["active_domains"], 1)
        self.assertEqual(stats["in_flight"], 0)
        self.assertFalse(stats["browser_active"])


if __name__ == "__main__":
    unittest.main()
