import unittest

from alerts import (
    ALERT_COOLDOWN_MS,
    ALERT_DEFINITIONS,
    AlertEvaluator,
    check_all_alerts,
    dedup_key,
    is_event_key,
    validate_alert_definitions,
)
from candles import IndicatorPoint
from factories import from_closes
from highlow_algo import AlgoSignal, BUY, SL_HIT
from scanner_config import AccumulationSettings, AlertConditions
from snapshot import SymbolSnapshot
from supertrend import SupertrendPoint
from trailing_stop import Bias, TrailPoint

T0 = 1_750_000_000_000


def trail_snapshot(biases, timeframe="1h", symbol="BTCUSDT"):
    klines = from_closes([100.0 + i for i in range(len(biases))])
    trail = [TrailPoint(c.time, b, 90.0) for c, b in zip(klines, biases)]
    return SymbolSnapshot(symbol=symbol, timeframe=timeframe, klines=klines, kiwi_trail=trail)


BEAR, BULL = Bias.BEARISH, Bias.BULLISH


class TestDedupKeys(unittest.TestCase):
    def test_event_vs_state_keys(self):
        self.assertTrue(is_event_key("kiwitrail-bullish-flip-1700000000000"))
        self.assertTrue(is_event_key(dedup_key("ETHUSDT", "4h", "supertrend-buy-1700000000000")))
        self.assertFalse(is_event_key("accumulation-volume"))
        self.assertFalse(is_event_key(dedup_key("1000PEPEUSDT", "1h", "accumulation-volume")))

    def test_definitions_are_valid(self):
        validate_alert_definitions()
        self.assertEqual(len({d["key"] for d in ALERT_DEFINITIONS}), len(ALERT_DEFINITIONS))


class TestTrailFlipAlerts(unittest.TestCase):
    def test_flip_fires_once(self):
        snap = trail_snapshot([BEAR, BEAR, BULL])
        evaluator = AlertEvaluator()
        first = evaluator.evaluate(snap, AlertConditions(), now=T0)
        self.assertEqual(len(first), 1)
        self.assertEqual(first[0].type, "kiwi-bullish-flip")
        self.assertEqual(first[0].price, 102.0)
        self.assertEqual(first[0].body, "Bias flipped to Bullish at $102.0000")
        self.assertIn(f"BTCUSDT-1h-kiwitrail-bullish-flip-{snap.klines[-1].time}", evaluator.state)

        # event keys never cool down
        again = evaluator.evaluate(snap, AlertConditions(), now=T0 + 10 * ALERT_COOLDOWN_MS)
        self.assertEqual(again, [])
        self.assertEqual(evaluator.stats, {"fired": 1, "suppressed": 1})

    def test_flip_on_previous_candle_still_seen(self):
        snap = trail_snapshot([BEAR, BULL, BULL])
        alerts = AlertEvaluator().evaluate(snap, AlertConditions(), now=T0)
        self.assertEqual([a.type for a in alerts], ["kiwi-bullish-flip"])
        self.assertEqual(alerts[0].price, 101.0)

    def test_distinct_flips_fire_separately(self):
        evaluator = AlertEvaluator()
        self.assertEqual(len(evaluator.evaluate(trail_snapshot([BEAR, BEAR, BULL]), AlertConditions(), T0)), 1)
        later = trail_snapshot([BEAR, BEAR, BULL, BULL, BEAR, BULL])
        fired = evaluator.evaluate(later, AlertConditions(), T0 + 1000)
        self.assertEqual([a.type for a in fired], ["kiwi-bullish-flip", "kiwi-bearish-flip"])
        self.assertEqual(len(evaluator.state), 3)

    def test_disabled_direction(self):
        conditions = AlertConditions(kiwi_bullish_flip=False)
        self.assertEqual(AlertEvaluator().evaluate(trail_snapshot([BEAR, BEAR, BULL]), conditions, T0), [])

    def test_timeframe_restriction(self):
        self.assertEqual(AlertEvaluator().evaluate(trail_snapshot([BEAR, BEAR, BULL], "5m"), AlertConditions(), T0), [])

    def test_needs_two_klines(self):
        snap = trail_snapshot([BULL])
        self.assertEqual(AlertEvaluator().evaluate(snap, AlertConditions(), T0), [])


class TestDailyVwapGate(unittest.TestCase):
    def m15_snapshot(self, vwap_value):
        snap = trail_snapshot([BEAR, BEAR, BULL], "15m")
        snap.price = snap.klines[-1].close
        if vwap_value is not None:
            snap.daily_vwap = [IndicatorPoint(snap.klines[-1].time, vwap_value)]
        return snap

    def test_above_vwap_fires(self):
        fired = AlertEvaluator().evaluate(self.m15_snapshot(101.5), AlertConditions(), T0)
        self.assertEqual([a.type for a in fired], ["kiwi-bullish-flip"])

    def test_below_or_missing_vwap_is_skipped(self):
        self.assertEqual(AlertEvaluator().evaluate(self.m15_snapshot(102.0), AlertConditions(), T0), [])
        self.assertEqual(AlertEvaluator().evaluate(self.m15_snapshot(None), AlertConditions(), T0), [])

    def test_gate_can_be_disabled(self):
        conditions = AlertConditions(require_above_daily_vwap=False)
        self.assertEqual(len(AlertEvaluator().evaluate(self.m15_snapshot(None), conditions, T0)), 1)

    def test_gate_only_applies_to_15m(self):
        snap = trail_snapshot([BEAR, BEAR, BULL], "1h")
        self.assertEqual(len(AlertEvaluator().evaluate(snap, AlertConditions(), T0)), 1)


class TestCooldown(unittest.TestCase):
    def accumulation_snapshot(self):
        return SymbolSnapshot(symbol="SOLUSDT", timeframe="1h", klines=from_closes([100.0, 101.0], buy_share=0.8))

    def test_state_key_respects_cooldown(self):
        evaluator = AlertEvaluator(accumulation=AccumulationSettings(lookback_period="1h"))
        conditions = AlertConditions(kiwi_bullish_flip=False, kiwi_bearish_flip=False, accumulation_volume=True)
        snap = self.accumulation_snapshot()

        self.assertEqual(len(evaluator.evaluate(snap, conditions, T0)), 1)
        self.assertEqual(evaluator.evaluate(snap, conditions, T0 + 3_599_999), [])
        fired = evaluator.evaluate(snap, conditions, T0 + 3_600_001)
        self.assertEqual([a.type for a in fired], ["accumulation-volume"])
        self.assertEqual(evaluator.state["SOLUSDT-1h-accumulation-volume"], T0 + 3_600_001)

    def test_below_threshold_is_quiet(self):
        evaluator = AlertEvaluator(accumulation=AccumulationSettings(lookback_period="1h"))
        conditions = AlertConditions(accumulation_volume=True)
        snap = SymbolSnapshot(symbol="SOLUSDT", timeframe="1h", klines=from_closes([100.0, 101.0], buy_share=0.5))
        self.assertEqual(evaluator.evaluate(snap, conditions, T0), [])

    def test_can_fire_direct(self):
        evaluator = AlertEvaluator({"X-1h-accumulation-volume": T0})
        self.assertFalse(evaluator.can_fire("X-1h-accumulation-volume", T0 + ALERT_COOLDOWN_MS))
        self.assertTrue(evaluator.can_fire("X-1h-accumulation-volume", T0 + ALERT_COOLDOWN_MS + 1))
        self.assertTrue(evaluator.can_fire("X-1h-kiwitrail-bullish-flip-1", T0))

    def test_zero_timestamp_counts_as_fired(self):
        evaluator = AlertEvaluator({"X-1h-kiwitrail-bullish-flip-1": 0, "X-1h-accumulation-volume": 0})
        self.assertFalse(evaluator.can_fire("X-1h-kiwitrail-bullish-flip-1", T0))
        self.assertFalse(evaluator.can_fire("X-1h-accumulation-volume", 1000))
        self.assertTrue(evaluator.can_fire("X-1h-accumulation-volume", ALERT_COOLDOWN_MS + 1))

    def test_mark_fired_never_moves_backwards(self):
        evaluator = AlertEvaluator()
        evaluator.mark_fired("k", T0)
        evaluator.mark_fired("k", T0 - 5)
        self.assertEqual(evaluator.state["k"], T0)


class TestOtherAlerts(unittest.TestCase):
    def test_supertrend_flip_on_4h(self):
        klines = from_closes([100.0, 101.0, 102.0])
        st = [SupertrendPoint(c.time, None, 105.0, -1) for c in klines[:2]] + [SupertrendPoint(klines[2].time, 99.0, None, 1)]
        snap = SymbolSnapshot(symbol="ETHUSDT", timeframe="4h", klines=klines, supertrend=st)
        conditions = AlertConditions(kiwi_bullish_flip=False, kiwi_bearish_flip=False, supertrend_buy=True)
        fired = AlertEvaluator().evaluate(snap, conditions, T0)
        self.assertEqual([a.type for a in fired], ["supertrend-buy"])
        self.assertEqual(fired[0].body, "ETHUSDT (4h) trend flipped to Bullish.")

        snap.timeframe = "1h"
        self.assertEqual(AlertEvaluator().evaluate(snap, conditions, T0), [])

    def test_high_low_only_on_last_candle(self):
        klines = from_closes([100.0, 101.0, 102.0])
        conditions = AlertConditions(kiwi_bullish_flip=False, kiwi_bearish_flip=False, high_low_algo=True)

        stale = SymbolSnapshot(symbol="BTCUSDT", timeframe="15m", klines=klines,
                               high_low_signals=[AlgoSignal(klines[1].time, BUY, 101.0)])
        self.assertEqual(AlertEvaluator().evaluate(stale, conditions, T0), [])

        fresh = SymbolSnapshot(symbol="BTCUSDT", timeframe="15m", klines=klines,
                               high_low_signals=[AlgoSignal(klines[2].time, SL_HIT, 102.0)])
        fired = AlertEvaluator().evaluate(fresh, conditions, T0)
        self.assertEqual([a.type for a in fired], ["highlow-sl-hit"])
        self.assertEqual(fired[0].body, "Ay4nbolic Algo triggered a SL HIT signal.")

    def test_check_all_alerts_returns_state(self):
        state = {}
        alerts, new_state = check_all_alerts(trail_snapshot([BEAR, BEAR, BULL]), AlertConditions(), state, T0)
        self.assertEqual(len(alerts), 1)
        self.assertIs(new_state, state)
        self.assertEqual(list(new_state.values()), [T0])


if __name__ == "__main__":
    unittest.main()
