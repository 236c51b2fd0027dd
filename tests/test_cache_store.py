import asyncio
import unittest

from services.cache.cache_backend import MemoryCachePersistence
from services.cache.cache_store import CacheStore, should_cache_non_empty
from services.cache.cache_utils import cache_key, cacheable
from services.fetching.errors import CacheBackendError


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenPersistence:
    """Every call fails like an unreachable database."""

    async def get(self, key):
        raise CacheBackendError("db down")

    async def upsert(self, entry):
        raise CacheBackendError("db down")

    async def delete_by_key(self, key):
        raise CacheBackendError("db down")

    async def delete_by_prefix(self, prefix):
        raise CacheBackendError("db down")

    async def delete_expired(self, now):
        raise CacheBackendError("db down")

    async def close(self):
        return None


class CountingProducer:
    def __init__(self, value, delay: float = 0.0):
        self.value = value
        self.delay = delay
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.value


class CacheStoreTests(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.persistence = MemoryCachePersistence()
        self.store = CacheStore(self.persistence, clock=self.clock)

    def test_hit_skips_producer(self):
        producer = CountingProducer({"price": 187.2})

        async def run():
            first = await self.store.get_or_fetch("quote:AAPL", 300, producer)
            second = await self.store.get_or_fetch("quote:AAPL", 300, producer)
            return first, second

        first, second = asyncio.run(run())
        self.assertEqual(first, {"price": 187.2})
        self.assertEqual(second, {"price": 187.2})
        self.assertEqual(producer.calls, 1)

    def test_expired_entry_refetches(self):
        values = iter([[{"revenue": 1}], [{"revenue": 2}]])
        calls = []

        async def producer():
            calls.append(1)
            return next(values)

        async def run():
            first = await self.store.get_or_fetch("income:AAPL", 60, producer)
            self.clock.advance(61)
            second = await self.store.get_or_fetch("income:AAPL", 60, producer)
            stored = await self.store.get_entry("income:AAPL")
            return first, second, stored

        first, second, stored = asyncio.run(run())
        self.assertEqual(len(calls), 2)
        self.assertEqual(first, [{"revenue": 1}])
        self.assertEqual(second, [{"revenue": 2}])
        self.assertEqual(stored.value, [{"revenue": 2}])

    def test_memory_entries_do_not_alias_caller_values(self):
        payload = {"peers": ["MSFT"]}

        async def run():
            await self.store.set("peers:AAPL", payload)
            payload["peers"].append("WRITTEN_AFTER_SET")
            read = await self.store.get("peers:AAPL")
            read["peers"].append("WRITTEN_AFTER_GET")
            return await self.store.get("peers:AAPL")

        self.assertEqual(asyncio.run(run()), {"peers": ["MSFT"]})

    def test_expiry_boundary_counts_as_expired(self):
        async def run():
            await self.store.set("k", "v", ttl_s=10)
            self.clock.advance(9.999)
            before = await self.store.get("k")
            self.clock.advance(0.001)
            at = await self.store.get("k")
            return before, at

        before, at = asyncio.run(run())
        self.assertEqual(before, "v")
        self.assertIsNone(at)

    def test_producer_failure_propagates_and_caches_nothing(self):
        async def boom():
            raise RuntimeError("upstream exploded")

        async def run():
            with self.assertRaises(RuntimeError):
                await self.store.get_or_fetch("profile:AAPL", 60, boom)

        asyncio.run(run())
        self.assertEqual(self.persistence.keys(), [])

    def test_none_not_cached_by_default(self):
        producer = CountingProducer(None)

        async def run():
            await self.store.get_or_fetch("ratios_ttm:AAPL", 60, producer)
            await self.store.get_or_fetch("ratios_ttm:AAPL", 60, producer)

        asyncio.run(run())
        self.assertEqual(producer.calls, 2)

    def test_should_cache_hook_skips_empty_lists(self):
        store = CacheStore(self.persistence, clock=self.clock, should_cache=should_cache_non_empty)
        producer = CountingProducer([])

        async def run():
            await store.get_or_fetch("news:AAPL", 60, producer)
            await store.get_or_fetch("news:AAPL", 60, producer)

        asyncio.run(run())
        self.assertEqual(producer.calls, 2)

    def test_set_records_fetched_at_metadata(self):
        async def run():
            await self.store.set("peers:AAPL", ["MSFT"], ttl_s=60, metadata={"source": "test"})
            return await self.store.get_entry("peers:AAPL")

        entry = asyncio.run(run())
        self.assertIn("fetched_at", entry.metadata)
        self.assertEqual(entry.metadata["source"], "test")
        self.assertEqual(entry.expires_at - entry.stored_at, 60)

    def test_non_positive_ttl_uses_default(self):
        store = CacheStore(self.persistence, clock=self.clock, default_ttl_s=120)

        async def run():
            await store.set("k", 1, ttl_s=0)
            return await store.get_entry("k")

        entry = asyncio.run(run())
        self.assertEqual(entry.expires_at - entry.stored_at, 120)

    def test_empty_key_rejected(self):
        async def run():
            await self.store.get_or_fetch("  ", 60, CountingProducer(1))

        with self.assertRaises(ValueError):
            asyncio.run(run())

    def test_invalidate_by_prefix_counts_removed(self):
        async def run():
            await self.store.set("dcf:AAPL", 1)
            await self.store.set("dcf:MSFT", 2)
            await self.store.set("quote:AAPL", 3)
            removed = await self.store.invalidate_by_prefix("dcf:")
            quote = await self.store.get("quote:AAPL")
            return removed, quote

        removed, quote = asyncio.run(run())
        self.assertEqual(removed, 2)
        self.assertEqual(quote, 3)
        self.assertEqual(self.persistence.keys(), ["quote:AAPL"])

    def test_invalidate_single_key(self):
        async def run():
            await self.store.set("quote:AAPL", 1)
            return await self.store.invalidate("quote:AAPL"), await self.store.invalidate("quote:AAPL")

        first, second = asyncio.run(run())
        self.assertTrue(first)
        self.assertFalse(second)

    def test_empty_prefix_rejected(self):
        with self.assertRaises(ValueError):
            asyncio.run(self.store.invalidate_by_prefix(""))

    def test_clear_expired_removes_only_expired(self):
        async def run():
            await self.store.set("short", 1, ttl_s=10)
            await self.store.set("long", 2, ttl_s=1000)
            self.clock.advance(11)
            return await self.store.clear_expired()

        removed = asyncio.run(run())
        self.assertEqual(removed, 1)
        self.assertEqual(self.persistence.keys(), ["long"])


class CacheBackendFailureTests(unittest.TestCase):
    def test_hot_path_absorbs_backend_errors(self):
        store = CacheStore(BrokenPersistence())
        producer = CountingProducer({"ok": True})

        async def run():
            with self.assertLogs("services.cache.cache_store", level="WARNING") as logs:
                value = await store.get_or_fetch("profile:AAPL", 60, producer)
            return value, logs.output

        value, output = asyncio.run(run())
        self.assertEqual(value, {"ok": True})
        self.assertEqual(producer.calls, 1)
        self.assertTrue(any("backend_unavailable" in line for line in output))

    def test_admin_ops_propagate_backend_errors(self):
        store = CacheStore(BrokenPersistence())
        with self.assertRaises(CacheBackendError):
            asyncio.run(store.invalidate_by_prefix("dcf:"))
        with self.assertRaises(CacheBackendError):
            asyncio.run(store.clear_expired())


class SingleFlightTests(unittest.TestCase):
    def _concurrent_misses(self, single_flight: bool) -> int:
        store = CacheStore(MemoryCachePersistence(), single_flight=single_flight)
        producer = CountingProducer({"v": 1}, delay=0.02)

        async def run():
            results = await asyncio.gather(
                *(store.get_or_fetch("profile:AAPL", 60, producer) for _ in range(5))
            )
            self.assertTrue(all(r == {"v": 1} for r in results))

        asyncio.run(run())
        return producer.calls

    def test_disabled_each_miss_invokes_producer(self):
        self.assertEqual(self._concurrent_misses(single_flight=False), 5)

    def test_enabled_concurrent_misses_share_one_call(self):
        self.assertEqual(self._concurrent_misses(single_flight=True), 1)

    def test_enabled_failure_is_shared_and_not_sticky(self):
        store = CacheStore(MemoryCachePersistence(), single_flight=True)
        calls = {"n": 0}

        async def flaky():
            calls["n"] += 1
            await asyncio.sleep(0.01)
            if calls["n"] == 1:
                raise RuntimeError("first call fails")
            return "ok"

        async def run():
            results = await asyncio.gather(
                store.get_or_fetch("k", 60, flaky),
                store.get_or_fetch("k", 60, flaky),
                return_exceptions=True,
            )
            again = await store.get_or_fetch("k", 60, flaky)
            return results, again

        results, again = asyncio.run(run())
        self.assertTrue(all(isinstance(r, RuntimeError) for r in results))
        self.assertEqual(again, "ok")
        self.assertEqual(calls["n"], 2)


class CacheUtilsTests(unittest.TestCase):
    def test_cache_key_shape(self):
        self.assertEqual(cache_key(" Profile ", " aapl "), "profile:AAPL")

    def test_cacheable_decorator(self):
        store = CacheStore(MemoryCachePersistence())
        calls = []

        @cacheable(store, ttl=60, key_fn=lambda symbol: cache_key("dcf", symbol))
        async def compute_dcf(symbol):
            calls.append(symbol)
            return {"symbol": symbol, "fair_value": 200}

        async def run():
            await compute_dcf("AAPL")
            await compute_dcf("aapl")
            await compute_dcf("MSFT")

        asyncio.run(run())
        self.assertEqual(calls, ["AAPL", "MSFT"])

    def test_cacheable_blank_key_bypasses_cache(self):
        store = CacheStore(MemoryCachePersistence())
        calls = []

        @cacheable(store, ttl=60, key_fn=lambda: "")
        async def uncached():
            calls.append(1)
            return 1

        async def run():
            await uncached()
            await uncached()

        asyncio.run(run())
        self.assertEqual(len(calls), 2)


if __name__ == "__main__":
    unittest.main()
