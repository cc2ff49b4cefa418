import asyncio
import unittest

from market_data import (
    BinanceFuturesSource,
    CandleSource,
    HttpClient,
    MexcSource,
    ProviderCircuitBreaker,
    ProviderRateLimiter,
    build_candle_source,
    categorize_exception,
)
from scanner_config import PROVIDER_PROFILES, ScannerConfig
from scanner_errors import CircuitOpenError, FetchError, RetryCategory


def kline_rows(n, start=0):
    return [[start + i * 60_000, "1", "2", "0.5", "1.5", "10", start + i * 60_000 + 59_999, "15", 3, "6", "9", "0"]
            for i in range(n)]


class FakeHttp:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    async def get_json(self, url, params=None):
        self.calls.append((url, dict(params or {})))
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


class TestSources(unittest.TestCase):
    def test_binance_request_shape(self):
        http = FakeHttp([kline_rows(3)])
        source = BinanceFuturesSource(http, PROVIDER_PROFILES["binance"])
        candles = asyncio.run(source.fetch_candles("BTCUSDT.P", "1h", 5000))
        self.assertEqual(len(candles), 3)
        url, params = http.calls[0]
        self.assertTrue(url.endswith("/fapi/v1/klines"))
        self.assertEqual(params, {"symbol": "BTCUSDT", "interval": "1h", "limit": 1500})
        self.assertEqual(source.get_stats()["candles_success"], 1)
        self.assertIsInstance(source, CandleSource)

    def test_mexc_interval_map(self):
        source = MexcSource(FakeHttp([[]]), PROVIDER_PROFILES["mexc"])
        self.assertEqual(source.api_interval("1h"), "60m")
        self.assertEqual(source.api_interval("1w"), "1W")
        self.assertEqual(source.api_interval("15m"), "15m")

    def test_empty_payload_is_an_error(self):
        source = BinanceFuturesSource(FakeHttp([[]]), PROVIDER_PROFILES["binance"])
        with self.assertRaises(FetchError):
            asyncio.run(source.fetch_candles("BTCUSDT", "1h", 10))
        self.assertEqual(source.get_stats()["candles_failed"], 1)

    def test_open_interest_history(self):
        rows = [{"timestamp": 2000, "sumOpenInterest": "12.5"}, {"timestamp": 1000, "sumOpenInterest": "10"}, {"bad": 1}]
        source = BinanceFuturesSource(FakeHttp([rows]), PROVIDER_PROFILES["binance"])
        points = asyncio.run(source.fetch_open_interest_history("BTCUSDT", "5m", 13))
        self.assertEqual([(p.timestamp, p.sum_open_interest) for p in points], [(1000, 10.0), (2000, 12.5)])

    def test_server_errors_open_the_circuit(self):
        source = BinanceFuturesSource(FakeHttp([FetchError("down", RetryCategory.API_ERROR, 503)]), PROVIDER_PROFILES["binance"])

        async def scenario():
            for _ in range(5):
                with self.assertRaises(FetchError):
                    await source.fetch_candles("BTCUSDT", "1h", 10)
            with self.assertRaises(CircuitOpenError):
                await source.fetch_candles("BTCUSDT", "1h", 10)

        asyncio.run(scenario())
        self.assertEqual(source.get_stats()["circuit_state"], "OPEN")

    def test_client_errors_do_not_open_the_circuit(self):
        source = BinanceFuturesSource(FakeHttp([FetchError("bad symbol", RetryCategory.API_ERROR, 400)]), PROVIDER_PROFILES["binance"])

        async def scenario():
            for _ in range(8):
                with self.assertRaises(FetchError) as ctx:
                    await source.fetch_candles("NOPEUSDT", "1h", 10)
                self.assertNotIsInstance(ctx.exception, CircuitOpenError)

        asyncio.run(scenario())
        self.assertEqual(source.circuit_breaker.state, "CLOSED")

    def test_build_candle_source(self):
        http = HttpClient()
        self.assertIsInstance(build_candle_source(ScannerConfig(PROVIDER="mexc"), http), MexcSource)
        self.assertIsInstance(build_candle_source(ScannerConfig(), http), BinanceFuturesSource)


class TestCircuitBreaker(unittest.TestCase):
    def test_half_open_recovery(self):
        breaker = ProviderCircuitBreaker("binance", failure_threshold=2, recovery_timeout=0)
        breaker.record_failure()
        breaker.record_failure()
        self.assertEqual(breaker.state, "OPEN")
        self.assertEqual(breaker.allow(), (True, None))
        self.assertEqual(breaker.state, "HALF_OPEN")
        breaker.record_success()
        breaker.record_success()
        self.assertEqual(breaker.state, "CLOSED")
        self.assertEqual(breaker.get_stats(), {"state": "CLOSED", "failures": 0, "times_opened": 1})

    def test_half_open_failure_reopens(self):
        breaker = ProviderCircuitBreaker("binance", failure_threshold=1, recovery_timeout=0)
        breaker.record_failure()
        breaker.allow()
        breaker.record_failure()
        self.assertEqual(breaker.state, "OPEN")
        self.assertEqual(breaker.times_opened, 2)

    def test_blocks_while_open(self):
        breaker = ProviderCircuitBreaker("mexc", failure_threshold=1, recovery_timeout=60)
        breaker.record_failure()
        allowed, reason = breaker.allow()
        self.assertFalse(allowed)
        self.assertIn("mexc circuit OPEN", reason)


class TestRateLimiter(unittest.TestCase):
    def test_requests_pass_through_and_are_counted(self):
        limiter = ProviderRateLimiter("binance", max_per_minute=10, max_in_flight=2)

        async def echo(value):
            return value

        async def scenario():
            return await asyncio.gather(*[limiter.submit(echo, i) for i in range(3)])

        self.assertEqual(asyncio.run(scenario()), [0, 1, 2])
        stats = limiter.get_stats()
        self.assertEqual(stats["requests_last_minute"], 3)
        self.assertEqual(stats["throttled"], 0)


class TestCategorize(unittest.TestCase):
    def test_categories(self):
        self.assertEqual(categorize_exception(asyncio.TimeoutError()), RetryCategory.TIMEOUT)
        self.assertEqual(categorize_exception(FetchError("x", RetryCategory.RATE_LIMIT)), RetryCategory.RATE_LIMIT)
        self.assertEqual(categorize_exception(RuntimeError()), RetryCategory.UNKNOWN)


if __name__ == "__main__":
    unittest.main()
