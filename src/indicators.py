from __future__ import annotations
import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from candles import Candle, IndicatorPoint, candles_to_arrays
from numba_helpers import (
    _rolling_min_max_loop,
    _rsi_wilder_loop,
    _sma_window_loop,
    _true_range_loop,
    _vwap_cumulative_loop,
)
from scanner_config import Constants

logger = logging.getLogger("kiwi_scanner.indicators")


def _to_points(times: np.ndarray, values: np.ndarray) -> List[IndicatorPoint]:
    """Zip times and values, dropping the NaN warm-up region and any non-finite value."""
    return [
        IndicatorPoint(int(t), float(v))
        for t, v in zip(times, values)
        if math.isfinite(v)
    ]


def calculate_rsi(candles: Sequence[Candle], length: int = Constants.RSI_LENGTH) -> List[IndicatorPoint]:
    if length < 1 or len(candles) <= length:
        logger.debug(f"RSI: insufficient data ({len(candles)} <= {length})")
        return []
    arr = candles_to_arrays(candles)
    return _to_points(arr["time"], _rsi_wilder_loop(arr["close"], length))


def calculate_sma(points: Sequence[IndicatorPoint], length: int) -> List[IndicatorPoint]:
    if length < 1 or len(points) < length:
        return []
    times = np.fromiter((p.time for p in points), dtype=np.int64, count=len(points))
    values = np.fromiter((p.value for p in points), dtype=np.float64, count=len(points))
    return _to_points(times, _sma_window_loop(values, length))


def close_points(candles: Sequence[Candle]) -> List[IndicatorPoint]:
    return [IndicatorPoint(c.time, c.close) for c in candles]


def calculate_stoch_rsi(
    rsi: Sequence[IndicatorPoint],
    rsi_length: int = Constants.RSI_LENGTH,
    stoch_length: int = Constants.STOCH_LENGTH,
    k_smooth: int = Constants.STOCH_K_SMOOTH,
    d_smooth: int = Constants.STOCH_D_SMOOTH,
) -> Tuple[List[IndicatorPoint], List[IndicatorPoint]]:
    """Stochastic RSI.  Returns (K, D); a flat RSI window yields a raw value of 0."""
    if len(rsi) < rsi_length + stoch_length:
        return [], []

    times = np.fromiter((p.time for p in rsi), dtype=np.int64, count=len(rsi))
    values = np.fromiter((p.value for p in rsi), dtype=np.float64, count=len(rsi))
    lo, hi = _rolling_min_max_loop(values, stoch_length)

    span = hi - lo
    raw = np.full(len(values), np.nan)
    valid = ~np.isnan(span)
    raw[valid] = 0.0
    moving = valid & (span > 0)
    raw[moving] = (values[moving] - lo[moving]) / span[moving] * 100.0

    stoch_k = calculate_sma(_to_points(times, raw), k_smooth)
    stoch_d = calculate_sma(stoch_k, d_smooth)
    return stoch_k, stoch_d


def calculate_vwap(candles: Sequence[Candle]) -> List[IndicatorPoint]:
    if not candles:
        return []
    arr = candles_to_arrays(candles)
    return _to_points(arr["time"], _vwap_cumulative_loop(arr["high"], arr["low"], arr["close"], arr["volume"]))


def calculate_daily_vwap(candles: Sequence[Candle]) -> List[IndicatorPoint]:
    """
    VWAP anchored at UTC midnight of the most recent candle's day.  Empty when
    the window starts after that midnight.
    """
    if not candles:
        return []
    anchor = (candles[-1].time // Constants.DAY_MS) * Constants.DAY_MS
    if candles[0].time > anchor:
        return []
    return calculate_vwap([c for c in candles if c.time >= anchor])


def find_pivot(candles: Sequence[Candle], lookback: int = Constants.PIVOT_LOOKBACK, is_high: bool = True) -> Optional[int]:
    """Index of the most recent pivot high (or low) with `lookback` bars on each side, or None."""
    n = len(candles)
    if lookback < 1 or n < 2 * lookback + 1:
        return None
    series = np.fromiter((c.high if is_high else c.low for c in candles), dtype=np.float64, count=n)
    for i in range(n - 1 - lookback, lookback - 1, -1):
        window = series[i - lookback:i + lookback + 1]
        if is_high and series[i] >= window.max():
            return i
        if not is_high and series[i] <= window.min():
            return i
    return None


def calculate_anchored_vwap(
    candles: Sequence[Candle],
    lookback: int = Constants.PIVOT_LOOKBACK,
    is_high: bool = True,
) -> Optional[List[IndicatorPoint]]:
    pivot = find_pivot(candles, lookback, is_high)
    if pivot is None:
        return None
    return calculate_vwap(candles[pivot:])


@dataclass(frozen=True)
class VolumeProfileBucket:
    price: float
    volume: float
    buy_volume: float
    sell_volume: float


@dataclass(frozen=True)
class VolumeProfile:
    profile: List[VolumeProfileBucket] = field(default_factory=list)
    poc: float = 0.0
    vah: float = 0.0
    val: float = 0.0
    max_volume: float = 0.0
    min_price: float = 0.0
    max_price: float = 0.0


def _buy_share(arr) -> np.ndarray:
    quote = arr["quote_volume"]
    base = arr["volume"]
    share = np.zeros(len(base), dtype=np.float64)
    np.divide(arr["taker_buy_quote_volume"], quote, out=share, where=quote > 0)
    fallback = (quote <= 0) & (base > 0)
    np.divide(arr["taker_buy_volume"], base, out=share, where=fallback)
    return np.clip(share, 0.0, 1.0)


def _value_area(volumes: np.ndarray, poc_idx: int, pct: float) -> Tuple[int, int]:
    """Grow [lo, hi] around the POC toward the heavier neighbour until `pct` of volume is covered."""
    target = float(volumes.sum()) * pct
    lo = hi = poc_idx
    covered = float(volumes[poc_idx])
    last = len(volumes) - 1
    while covered < target and (lo > 0 or hi < last):
        above = float(volumes[hi + 1]) if hi < last else -1.0
        below = float(volumes[lo - 1]) if lo > 0 else -1.0
        if above >= below:
            hi += 1
            covered += above
        else:
            lo -= 1
            covered += below
    return lo, hi


def calculate_volume_profile(
    candles: Sequence[Candle],
    resolution: int = Constants.VOLUME_PROFILE_RESOLUTION,
    value_area_pct: float = Constants.VALUE_AREA_PCT,
) -> Optional[VolumeProfile]:
    """
    Volume-at-price histogram over the window.

    Each candle's whole volume lands in the bucket holding its typical
    price.  The buy side is the candle's taker-buy share of quote volume
    applied to its base volume; the sell side is the remainder.
    """
    if not candles or resolution < 1:
        return None

    arr = candles_to_arrays(candles)
    min_price = float(arr["low"].min())
    max_price = float(arr["high"].max())
    typical = (arr["high"] + arr["low"] + arr["close"]) / 3.0

    if max_price > min_price:
        buckets = resolution
        size = (max_price - min_price) / resolution
        idx = np.clip(((typical - min_price) / size).astype(np.int64), 0, buckets - 1)
    else:
        buckets = 1
        size = 0.0
        idx = np.zeros(len(typical), dtype=np.int64)

    volume = arr["volume"]
    buy = volume * _buy_share(arr)
    vol_hist = np.bincount(idx, weights=volume, minlength=buckets)
    buy_hist = np.bincount(idx, weights=buy, minlength=buckets)
    prices = min_price + (np.arange(buckets) + 0.5) * size

    poc_idx = int(np.argmax(vol_hist))
    lo, hi = _value_area(vol_hist, poc_idx, value_area_pct)

    profile = [
        VolumeProfileBucket(
            price=float(prices[i]),
            volume=float(vol_hist[i]),
            buy_volume=float(buy_hist[i]),
            sell_volume=float(vol_hist[i] - buy_hist[i]),
        )
        for i in range(buckets)
    ]
    return VolumeProfile(
        profile=profile,
        poc=float(prices[poc_idx]),
        vah=float(prices[hi]),
        val=float(prices[lo]),
        max_volume=float(vol_hist[poc_idx]),
        min_price=min_price,
        max_price=max_price,
    )


def calculate_cvd(candles: Sequence[Candle]) -> List[IndicatorPoint]:
    if not candles:
        return []
    arr = candles_to_arrays(candles)
    delta = 2.0 * arr["taker_buy_quote_volume"] - arr["quote_volume"]
    return _to_points(arr["time"], np.cumsum(delta))


def calculate_atr(candles: Sequence[Candle], period: int = Constants.ATR_LENGTH) -> Optional[float]:
    if period < 1 or len(candles) < period:
        return None
    arr = candles_to_arrays(candles)
    tr = _true_range_loop(arr["high"], arr["low"], arr["close"])
    atr = float(tr[-period:].mean())
    return atr if math.isfinite(atr) else None


def taker_buy_ratio(candles: Sequence[Candle]) -> Optional[float]:
    """Share of quote volume bought by takers across the window, or None without volume."""
    quote = sum(c.quote_volume for c in candles)
    if quote <= 0:
        return None
    return sum(c.taker_buy_quote_volume for c in candles) / quote
