import unittest

from factories import candle, flat, wave
from highlow_algo import BUY, SELL, SL_HIT, calculate_high_low_algo
from scanner_config import HighLowAlgoSettings


def _base(n=6):
    return [candle(i, 100.0) for i in range(n)]


class TestHighLowAlgo(unittest.TestCase):
    def test_short_input_is_empty(self):
        result = calculate_high_low_algo(flat(30), HighLowAlgoSettings(dist=30))
        self.assertEqual(result.signals, [])
        self.assertEqual(result.channel, [])

    def test_channel_uses_previous_bars(self):
        candles = _base() + [candle(6, 100.0, open_=95.0, spread=5.0)]
        result = calculate_high_low_algo(candles, HighLowAlgoSettings(dist=5))
        self.assertEqual(len(result.channel), 2)
        last = result.channel[-1]
        self.assertEqual(last.time, candles[6].time)
        self.assertEqual(last.high, 101.0)
        self.assertEqual(last.low, 99.0)

    def test_stop_loss_hit_intrabar(self):
        candles = _base() + [candle(6, 100.0, open_=95.0, spread=5.0)]
        result = calculate_high_low_algo(candles, HighLowAlgoSettings(dist=5))
        self.assertEqual([s.type for s in result.signals], [BUY, SL_HIT])
        self.assertEqual(result.signals[0].time, candles[5].time)
        self.assertEqual(result.signals[1].time, candles[6].time)
        self.assertEqual(result.signals[1].price, 100.0)

    def test_close_based_stop_lets_exit_through(self):
        candles = _base() + [candle(6, 100.0, open_=95.0, spread=5.0)]
        result = calculate_high_low_algo(candles, HighLowAlgoSettings(dist=5, intrabar_sl=False))
        self.assertEqual([s.type for s in result.signals], [BUY, SELL])

    def test_no_stop_mode_exits_on_high(self):
        candles = _base() + [candle(6, 100.0, open_=95.0, spread=5.0)]
        result = calculate_high_low_algo(candles, HighLowAlgoSettings(dist=5, sl_mode="None"))
        self.assertEqual([s.type for s in result.signals], [BUY, SELL])

    def test_green_close_mode_waits_for_green_candle(self):
        candles = _base(8)
        candles[5] = candle(5, 99.5, open_=100.0)
        candles[6] = candle(6, 100.0, open_=99.5)
        settings = HighLowAlgoSettings(dist=5, buy_mode="Green Close", sl_mode="None", sell_mode="Red Close")
        result = calculate_high_low_algo(candles, settings)
        self.assertEqual(result.signals[0].type, BUY)
        self.assertEqual(result.signals[0].time, candles[6].time)

    def test_never_two_buys_in_a_row(self):
        result = calculate_high_low_algo(wave(400, amplitude=8.0, period=50), HighLowAlgoSettings(dist=20))
        types = [s.type for s in result.signals]
        self.assertIn(BUY, types)
        self.assertEqual(types[0], BUY)
        for prev, cur in zip(types, types[1:]):
            if cur == BUY:
                self.assertIn(prev, (SELL, SL_HIT))
            else:
                self.assertEqual(prev, BUY)


if __name__ == "__main__":
    unittest.main()
