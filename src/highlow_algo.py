"""
Ay4nbolic high/low channel algo.

A rolling channel over the previous `dist` bars.  BUY when price tags the
channel low and the entry pattern holds, SELL (exit) when it tags the
channel high, and SL_HIT when an armed stop below the signal candle is
breached.  The machine only ever holds one open BUY.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from candles import Candle, candles_to_arrays
from numba_helpers import _rolling_min_max_loop
from scanner_config import HighLowAlgoSettings

logger = logging.getLogger("kiwi_scanner.highlow_algo")

BUY = "BUY"
SELL = "SELL"
SL_HIT = "SL_HIT"


@dataclass(frozen=True)
class AlgoSignal:
    time: int
    type: str
    price: float


@dataclass(frozen=True)
class ChannelPoint:
    time: int
    high: float
    low: float


@dataclass(frozen=True)
class HighLowAlgoResult:
    signals: List[AlgoSignal] = field(default_factory=list)
    channel: List[ChannelPoint] = field(default_factory=list)


def _buy_ok(mode: str, is_hammer: bool, green: bool) -> bool:
    if mode == "Default":
        return True
    if mode == "Hammer":
        return is_hammer
    if mode == "Green Close":
        return green
    return is_hammer and green


def _sell_ok(mode: str, is_doji: bool, red: bool) -> bool:
    if mode == "Default":
        return True
    if mode == "Red Close":
        return red
    if mode == "Doji":
        return is_doji
    return is_doji and red


def calculate_high_low_algo(
    candles: Sequence[Candle],
    settings: Optional[HighLowAlgoSettings] = None,
) -> HighLowAlgoResult:
    s = settings or HighLowAlgoSettings()
    if len(candles) <= s.dist:
        return HighLowAlgoResult()

    arr = candles_to_arrays(candles)
    _, rolling_high = _rolling_min_max_loop(arr["high"], s.dist)
    rolling_low, _ = _rolling_min_max_loop(arr["low"], s.dist)
    use_sl = s.sl_mode == "Signal Candle Low"

    signals: List[AlgoSignal] = []
    channel: List[ChannelPoint] = []
    direction = "none"
    sl_level: Optional[float] = None
    has_signal = False

    for i in range(s.dist, len(candles)):
        c = candles[i]
        hh = float(rolling_high[i - 1])
        ll = float(rolling_low[i - 1])
        channel.append(ChannelPoint(c.time, hh, ll))

        is_high = c.high >= hh
        near_low = c.low <= ll * (1 + s.buy_threshold_pct / 100)
        near_high = c.high >= hh * (1 - s.sell_threshold_pct / 100)

        body = abs(c.close - c.open)
        lower_wick = min(c.open, c.close) - c.low
        upper_wick = c.high - max(c.open, c.close)
        candle_range = c.high - c.low
        is_hammer = lower_wick >= s.hammer_wick_ratio * body and upper_wick <= body * 0.5
        is_doji = candle_range > 0 and body <= s.doji_body_ratio * candle_range
        buy_ok = _buy_ok(s.buy_mode, is_hammer, c.close > c.open)
        sell_ok = _sell_ok(s.sell_mode, is_doji, c.close < c.open)

        if use_sl and direction == "buy" and sl_level is not None:
            breach_price = c.low if s.intrabar_sl else c.close
            if breach_price <= sl_level:
                direction = "sell"
                sl_level = None
                signals.append(AlgoSignal(c.time, SL_HIT, c.close))
                continue

        if (not has_signal or direction == "sell") and near_low and buy_ok:
            has_signal = True
            direction = "buy"
            if use_sl:
                sl_level = c.low * (1 - s.sl_buffer_pct / 100)
            signals.append(AlgoSignal(c.time, BUY, c.close))
        elif direction == "buy":
            if s.sell_mode == "Default":
                exit_now = near_high or (is_high and sell_ok)
            else:
                exit_now = is_high and sell_ok
            if exit_now:
                direction = "sell"
                sl_level = None
                signals.append(AlgoSignal(c.time, SELL, c.close))

    return HighLowAlgoResult(signals=signals, channel=channel)
