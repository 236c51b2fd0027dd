import asyncio
import unittest

import httpx

from services.fetching.errors import ClientError, FetchError, NetworkError, ServerError
from services.fetching.retrying_fetcher import RetryingFetcher, classify_exception, is_retryable


class FakeResponse:
    def __init__(self, status_code: int):
        self.status_code = status_code


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class ScriptedOp:
    """Returns/raises each scripted outcome in turn."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self):
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class RetryingFetcherTests(unittest.TestCase):
    def setUp(self):
        self.sleep = RecordingSleep()
        self.events = []
        self.fetcher = RetryingFetcher(
            max_attempts=3,
            base_delay_s=1.0,
            attempt_timeout_s=5.0,
            on_attempt=self.events.append,
            sleep=self.sleep,
        )

    def test_success_first_try(self):
        op = ScriptedOp({"ok": True})
        result = asyncio.run(self.fetcher.execute(op))
        self.assertEqual(result, {"ok": True})
        self.assertEqual(op.calls, 1)
        self.assertEqual(self.sleep.delays, [])
        self.assertEqual([e.outcome for e in self.events], ["success"])

    def test_retries_network_then_server_then_succeeds(self):
        op = ScriptedOp(NetworkError("reset"), FakeResponse(503), FakeResponse(200))
        result = asyncio.run(self.fetcher.execute(op))
        self.assertEqual(result.status_code, 200)
        self.assertEqual(op.calls, 3)
        self.assertEqual(self.sleep.delays, [1.0, 2.0])
        self.assertEqual([e.outcome for e in self.events], ["retry", "retry", "success"])

    def test_4xx_result_returned_without_retry(self):
        op = ScriptedOp(FakeResponse(404))
        result = asyncio.run(self.fetcher.execute(op))
        self.assertEqual(result.status_code, 404)
        self.assertEqual(op.calls, 1)
        self.assertEqual(self.sleep.delays, [])
        self.assertEqual(self.events[-1].outcome, "client_error")

    def test_raised_client_error_not_retried(self):
        op = ScriptedOp(ClientError("forbidden", status_code=403))
        with self.assertRaises(ClientError):
            asyncio.run(self.fetcher.execute(op))
        self.assertEqual(op.calls, 1)
        self.assertEqual(self.sleep.delays, [])

    def test_exhausted_attempts_raise_last_error(self):
        op = ScriptedOp(FakeResponse(500))
        with self.assertRaises(ServerError) as ctx:
            asyncio.run(self.fetcher.execute(op))
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(op.calls, 3)
        self.assertEqual(self.sleep.delays, [1.0, 2.0])
        self.assertEqual(self.events[-1].outcome, "failed")

    def test_per_call_overrides(self):
        op = ScriptedOp(NetworkError("down"))
        with self.assertRaises(NetworkError):
            asyncio.run(self.fetcher.execute(op, max_attempts=4, base_delay_s=0.5))
        self.assertEqual(op.calls, 4)
        self.assertEqual(self.sleep.delays, [0.5, 1.0, 2.0])

    def test_attempt_timeout_becomes_network_error(self):
        fetcher = RetryingFetcher(max_attempts=2, base_delay_s=0.0, attempt_timeout_s=0.01, sleep=self.sleep)
        calls = {"n": 0}

        async def hang():
            calls["n"] += 1
            await asyncio.sleep(1)

        with self.assertRaises(NetworkError):
            asyncio.run(fetcher.execute(hang))
        self.assertEqual(calls["n"], 2)

    def test_unknown_exceptions_are_retried(self):
        op = ScriptedOp(RuntimeError("transient"), "done")
        self.assertEqual(asyncio.run(self.fetcher.execute(op)), "done")
        self.assertEqual(op.calls, 2)

    def test_hook_failure_does_not_break_fetch(self):
        def bad_hook(_event):
            raise RuntimeError("hook broke")

        fetcher = RetryingFetcher(on_attempt=bad_hook, sleep=self.sleep)
        self.assertEqual(asyncio.run(fetcher.execute(ScriptedOp("v"))), "v")


class ClassificationTests(unittest.TestCase):
    def _status_error(self, status: int) -> httpx.HTTPStatusError:
        request = httpx.Request("GET", "https://example.test/quote/AAPL")
        response = httpx.Response(status, request=request)
        return httpx.HTTPStatusError("bad status", request=request, response=response)

    def test_http_status_errors(self):
        self.assertIsInstance(classify_exception(self._status_error(429)), ClientError)
        self.assertIsInstance(classify_exception(self._status_error(502)), ServerError)

    def test_transport_errors(self):
        request = httpx.Request("GET", "https://example.test")
        self.assertIsInstance(classify_exception(httpx.ConnectError("refused", request=request)), NetworkError)
        self.assertIsInstance(classify_exception(httpx.ReadTimeout("slow", request=request)), NetworkError)

    def test_retryable_flags(self):
        self.assertTrue(is_retryable(NetworkError("x")))
        self.assertTrue(is_retryable(ServerError("x", status_code=500)))
        self.assertFalse(is_retryable(ClientError("x", status_code=404)))
        self.assertFalse(is_retryable(asyncio.CancelledError()))
        self.assertFalse(FetchError("x").to_detail().retryable)


if __name__ == "__main__":
    unittest.main()
