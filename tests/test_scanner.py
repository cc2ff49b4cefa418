import asyncio
import unittest

from factories import from_closes, wave
from notifications import NotificationLog
from scanner import clear_alert_log, main, run_once
from scanner_config import ProviderProfile, ScannerConfig
from scanner_errors import FetchError
from sinks import LoggingSink
from state_store import MemoryStateStore

T0 = 1_750_000_000_000


class FakeSource:
    name = "fake"

    def __init__(self, bad=(), candles=None):
        self.bad = set(bad)
        self.candles = candles
        self.calls = []

    async def fetch_candles(self, symbol, interval, limit):
        self.calls.append((symbol, interval, limit))
        if symbol in self.bad:
            raise FetchError(f"unknown symbol {symbol}", status=400)
        if self.candles is not None:
            return list(self.candles)
        return wave(250, amplitude=12.0, period=45)

    async def fetch_open_interest_history(self, symbol, period, limit):
        raise FetchError("not available")

    def get_stats(self):
        return {"calls": len(self.calls)}


class ExplodingSink:
    def __init__(self):
        self.attempts = 0

    async def deliver(self, notification):
        self.attempts += 1
        raise RuntimeError("webhook exploded")


def make_config(**overrides):
    params = dict(
        SYMBOLS=["BTCUSDT", "ETHUSDT", "BADUSDT"],
        TIMEFRAMES=["15m", "1h"],
        STATE_BACKEND="memory",
        TIMEFRAME_PAUSE_SEC=0,
        PROVIDER_OVERRIDE=ProviderProfile(name="test", chunk_size=2, chunk_delay_sec=0),
        ALERT_CONDITIONS={"kiwi_bullish_flip": True, "kiwi_bearish_flip": True, "high_low_algo": True},
    )
    params.update(overrides)
    return ScannerConfig(**params)


class TestRunOnce(unittest.TestCase):
    def test_scan_alert_and_persist(self):
        cfg = make_config()
        source = FakeSource(bad={"BADUSDT"})
        store = MemoryStateStore()
        sink = LoggingSink()

        first = asyncio.run(run_once(cfg, source, store, sink))
        self.assertEqual(first.symbols_scanned, 4)
        self.assertEqual(first.symbols_failed, 2)
        self.assertTrue(first.state_saved)
        self.assertFalse(first.cancelled)
        self.assertEqual(first.delivered, first.alerts_fired)
        self.assertEqual(sink.delivered, first.alerts_fired)
        self.assertTrue(first.ok)
        self.assertEqual({c[1] for c in source.calls}, {"15m", "1h"})

        # same candles, same persisted state: nothing new to say
        second = asyncio.run(run_once(cfg, source, store, sink))
        self.assertEqual(second.alerts_fired, 0)
        self.assertEqual(sink.delivered, first.alerts_fired)

    def test_cancelled_before_start(self):
        cfg = make_config()
        source = FakeSource()

        async def scenario():
            cancel = asyncio.Event()
            cancel.set()
            return await run_once(cfg, source, MemoryStateStore(), LoggingSink(), cancel)

        summary = asyncio.run(scenario())
        self.assertTrue(summary.cancelled)
        self.assertEqual(summary.symbols_scanned, 0)
        self.assertEqual(source.calls, [])
        self.assertTrue(summary.state_saved)

    def test_all_failed_is_not_ok(self):
        cfg = make_config(SYMBOLS=["BADUSDT"], TIMEFRAMES=["1h"])
        summary = asyncio.run(run_once(cfg, FakeSource(bad={"BADUSDT"}), MemoryStateStore(), LoggingSink()))
        self.assertFalse(summary.ok)

    def test_sink_failure_keeps_dedup_state(self):
        cfg = make_config(
            SYMBOLS=["BTCUSDT"],
            TIMEFRAMES=["1h"],
            ALERT_CONDITIONS={"kiwi_bullish_flip": False, "kiwi_bearish_flip": False, "accumulation_volume": True},
        )
        source = FakeSource(candles=wave(250, amplitude=12.0, period=45, buy_share=0.9))
        store = MemoryStateStore()
        sink = ExplodingSink()

        summary = asyncio.run(run_once(cfg, source, store, sink, now=T0))
        self.assertEqual(summary.alerts_fired, 1)
        self.assertEqual(summary.delivered, 0)
        self.assertEqual(sink.attempts, 1)
        self.assertTrue(summary.state_saved)
        self.assertIn("BTCUSDT-1h-accumulation-volume", asyncio.run(store.load()))

        again = asyncio.run(run_once(cfg, source, store, LoggingSink(), now=T0 + 60_000))
        self.assertEqual(again.alerts_fired, 0)

    def test_price_spike_is_still_scanned(self):
        closes = [c.close for c in wave(250, amplitude=12.0, period=45)]
        closes[200] = closes[199] * 1.9
        cfg = make_config(SYMBOLS=["BTCUSDT"], TIMEFRAMES=["1h"])
        summary = asyncio.run(run_once(cfg, FakeSource(candles=from_closes(closes)), MemoryStateStore(), LoggingSink()))
        self.assertEqual(summary.symbols_scanned, 1)
        self.assertEqual(summary.symbols_failed, 0)

    def test_per_timeframe_symbols(self):
        cfg = make_config(SYMBOLS=["BTCUSDT"], TIMEFRAME_SYMBOLS={"1h": ["ETHUSDT", "SOLUSDT"]})
        source = FakeSource()
        summary = asyncio.run(run_once(cfg, source, MemoryStateStore(), LoggingSink()))
        self.assertEqual({(c[0], c[1]) for c in source.calls}, {("BTCUSDT", "15m"), ("ETHUSDT", "1h"), ("SOLUSDT", "1h")})
        self.assertEqual(summary.symbols_scanned, 3)

    def test_clear_alert_log_allows_refire(self):
        cfg = make_config(SYMBOLS=["BTCUSDT"], TIMEFRAMES=["1h"])
        source = FakeSource()
        store = MemoryStateStore()
        log = NotificationLog()

        async def scenario():
            first = await run_once(cfg, source, store, LoggingSink(), log=log)
            self.assertTrue(await clear_alert_log(log, store))
            again = await run_once(cfg, source, store, LoggingSink())
            return first, again

        first, again = asyncio.run(scenario())
        self.assertEqual(len(log), 0)
        self.assertEqual(again.alerts_fired, first.alerts_fired)


class TestMain(unittest.TestCase):
    def test_validate_only(self):
        self.assertEqual(main(["--validate-only", "--config", "/nonexistent/scanner_config.json"]), 0)


if __name__ == "__main__":
    unittest.main()
