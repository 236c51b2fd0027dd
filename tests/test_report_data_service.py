import asyncio
import unittest

from services.cache.cache_backend import MemoryCachePersistence
from services.cache.cache_store import CacheStore
from services.fetching.errors import ClientError, CoreDataUnavailable, NetworkError
from services.orchestration.types import FetchStatus, RunOutcome
from services.research.report_data_service import (
    OPTIONAL_DEFAULTS,
    TTL_DEFAULT_SEC,
    TTL_QUOTE_SEC,
    ReportDataService,
    normalize_symbol,
)


class FakeUpstream:
    """item -> async fn(symbol), counting calls and failing on demand."""

    def __init__(self, fail=None):
        self.calls = []
        self.fail = fail or {}

    def fetchers(self, items):
        def make(item):
            async def _fetch(symbol):
                self.calls.append((item, symbol))
                if item in self.fail:
                    raise self.fail[item]
                return [{"item": item, "symbol": symbol}]
            return _fetch

        return {item: make(item) for item in items}


ALL_ITEMS = ["profile", "quote"] + list(OPTIONAL_DEFAULTS)


class ReportDataServiceTests(unittest.TestCase):
    def setUp(self):
        self.persistence = MemoryCachePersistence()
        self.cache = CacheStore(self.persistence)

    def _service(self, upstream, items=ALL_ITEMS):
        return ReportDataService(self.cache, upstream.fetchers(items))

    def test_full_report_is_cached_per_item(self):
        upstream = FakeUpstream()
        service = self._service(upstream)

        async def run():
            first = await service.fetch_report_data("aapl", "s1")
            await service.fetch_report_data("AAPL", "s1")
            return first

        result = asyncio.run(run())
        self.assertEqual(len(upstream.calls), len(ALL_ITEMS))
        self.assertEqual(result.subject_key, "AAPL")
        self.assertTrue(all(s == FetchStatus.SUCCESS for s in result.status_by_item.values()))
        self.assertIn("quote:AAPL", self.persistence.keys())
        self.assertIn("filings:AAPL", self.persistence.keys())

    def test_optional_failure_gets_default(self):
        upstream = FakeUpstream(fail={"income_ttm": NetworkError("reset"), "news": ClientError("403", status_code=403)})
        result = asyncio.run(self._service(upstream).fetch_report_data("MSFT"))

        self.assertIsNone(result.values["income_ttm"])
        self.assertEqual(result.values["news"], [])
        self.assertEqual(result.status_by_item["news"], FetchStatus.ERROR)
        self.assertEqual(result.error_by_item["news"].status_code, 403)
        self.assertFalse(result.error_by_item["news"].retryable)

    def test_defaults_are_not_shared_between_runs(self):
        upstream = FakeUpstream(fail={"peers": NetworkError("down")})
        service = self._service(upstream)
        first = asyncio.run(service.fetch_report_data("MSFT"))
        first.values["peers"].append("MUTATED")
        second = asyncio.run(service.fetch_report_data("MSFT"))
        self.assertEqual(second.values["peers"], [])

    def test_required_failure_raises(self):
        upstream = FakeUpstream(fail={"profile": ClientError("404", status_code=404)})
        with self.assertRaises(CoreDataUnavailable):
            asyncio.run(self._service(upstream).fetch_report_data("NOPE"))
        self.assertFalse(any(item == "income" for item, _ in upstream.calls))

    def test_only_configured_optional_items_run(self):
        upstream = FakeUpstream()
        result = asyncio.run(self._service(upstream, items=["profile", "quote", "news"]).fetch_report_data("AAPL"))
        self.assertEqual(set(result.status_by_item), {"profile", "quote", "news"})

    def test_missing_required_fetcher_rejected(self):
        with self.assertRaises(ValueError):
            ReportDataService(self.cache, FakeUpstream().fetchers(["quote"]))

    def test_sessions_are_isolated(self):
        service = self._service(FakeUpstream())

        async def run():
            await service.fetch_report_data("AAPL", "tab-a")
            await service.fetch_report_data("MSFT", "tab-b")

        asyncio.run(run())
        self.assertEqual(service.status("tab-a").subject_key, "AAPL")
        self.assertEqual(service.status("tab-b").subject_key, "MSFT")
        self.assertEqual(service.status("tab-c").generation, 0)

    def test_status_lookup_does_not_register_or_evict(self):
        service = ReportDataService(self.cache, FakeUpstream().fetchers(ALL_ITEMS), max_sessions=3)
        asyncio.run(service.fetch_report_data("AAPL", "real"))

        for i in range(3):
            self.assertEqual(service.status(f"random-{i}").generation, 0)

        self.assertEqual(service.status("real").subject_key, "AAPL")
        self.assertEqual(list(service._sessions), ["real"])

    def test_failed_run_is_visible_in_status(self):
        upstream = FakeUpstream(fail={"quote": ClientError("404", status_code=404)})
        service = self._service(upstream)
        with self.assertRaises(CoreDataUnavailable):
            asyncio.run(service.fetch_report_data("NOPE", "tab-x"))

        snap = service.status("tab-x")
        self.assertEqual(snap.outcome, RunOutcome.FAILED)
        self.assertTrue(snap.settled)
        self.assertEqual(snap.core_failures["quote"].status_code, 404)

    def test_items_are_read_through_the_cache(self):
        upstream = FakeUpstream()
        service = self._service(upstream, items=["profile", "quote"])

        async def run():
            await service.fetch_report_data("AAPL", "s1")
            await service.fetch_report_data("AAPL", "s2")
            return await self.cache.get_entry("quote:AAPL")

        entry = asyncio.run(run())
        self.assertEqual(sorted(upstream.calls), [("profile", "AAPL"), ("quote", "AAPL")])
        self.assertEqual(entry.value, [{"item": "quote", "symbol": "AAPL"}])
        self.assertEqual(entry.expires_at - entry.stored_at, TTL_QUOTE_SEC)

    def test_session_registry_is_capped(self):
        service = ReportDataService(self.cache, FakeUpstream().fetchers(ALL_ITEMS), max_sessions=2)
        a = service.orchestrator_for("a")
        service.orchestrator_for("b")
        service.orchestrator_for("c")
        self.assertIsNot(service.orchestrator_for("a"), a)

    def test_item_ttls(self):
        service = self._service(FakeUpstream())
        self.assertEqual(service.ttl_for("quote"), TTL_QUOTE_SEC)
        self.assertEqual(service.ttl_for("peers"), TTL_DEFAULT_SEC)

    def test_prefetch_and_refresh(self):
        upstream = FakeUpstream()
        service = self._service(upstream)

        async def run():
            warmed = await service.prefetch(["aapl", "msft", "bad symbol!"])
            removed = await service.refresh_symbol("AAPL")
            return warmed, removed

        warmed, removed = asyncio.run(run())
        self.assertEqual(warmed, 2)
        self.assertEqual(removed, 2)
        self.assertEqual(self.persistence.keys(), ["profile:MSFT", "quote:MSFT"])

    def test_normalize_symbol(self):
        self.assertEqual(normalize_symbol(" brk.b "), "BRK.B")
        for bad in ("", "   ", "AAPL/../x", "TOO-LONG-SYMBOL-NAME"):
            with self.assertRaises(ValueError):
                normalize_symbol(bad)


if __name__ == "__main__":
    unittest.main()
