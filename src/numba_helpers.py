"""
Numba kernels for the sequential indicator loops.

Every kernel takes and returns plain float64 / int64 numpy arrays and uses
NaN as the "no value" marker.  Set KIWI_DISABLE_JIT=1 to run them as plain
Python (handy when stepping through with a debugger).
"""
from __future__ import annotations
import math
import os

import numpy as np
from numba import njit

_DISABLE_JIT = os.getenv("KIWI_DISABLE_JIT") == "1"


def _maybe_njit(*dec_args, **dec_kwargs):
    """Return identity (no-op) when KIWI_DISABLE_JIT=1, else @njit."""
    if _DISABLE_JIT:
        return lambda f: f
    return njit(*dec_args, **dec_kwargs)


# ------------------------------------------------------------------
# 1.  moving windows
# ------------------------------------------------------------------
@_maybe_njit(nogil=True, cache=True)
def _sma_window_loop(data: np.ndarray, period: int) -> np.ndarray:
    n = len(data)
    out = np.empty(n, dtype=np.float64)
    out[:] = np.nan
    for i in range(period - 1, n):
        window_sum = 0.0
        for j in range(i - period + 1, i + 1):
            window_sum += data[j]
        out[i] = window_sum / period
    return out


@_maybe_njit(nogil=True, cache=True)
def _rolling_min_max_loop(data: np.ndarray, period: int):
    n = len(data)
    lo = np.empty(n, dtype=np.float64)
    hi = np.empty(n, dtype=np.float64)
    lo[:] = np.nan
    hi[:] = np.nan
    for i in range(period - 1, n):
        mn = data[i - period + 1]
        mx = mn
        for j in range(i - period + 2, i + 1):
            v = data[j]
            if v < mn:
                mn = v
            if v > mx:
                mx = v
        lo[i] = mn
        hi[i] = mx
    return lo, hi


# ------------------------------------------------------------------
# 2.  RSI (Wilder)
# ------------------------------------------------------------------
@_maybe_njit(nogil=True, cache=True)
def _rsi_wilder_loop(close: np.ndarray, period: int) -> np.ndarray:
    n = len(close)
    out = np.empty(n, dtype=np.float64)
    out[:] = np.nan
    if n <= period:
        return out

    avg_gain = 0.0
    avg_loss = 0.0
    for i in range(1, period + 1):
        diff = close[i] - close[i - 1]
        if diff > 0:
            avg_gain += diff
        else:
            avg_loss -= diff
    avg_gain /= period
    avg_loss /= period
    out[period] = 100.0 if avg_loss == 0 else 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)

    for i in range(period + 1, n):
        diff = close[i] - close[i - 1]
        gain = diff if diff > 0 else 0.0
        loss = -diff if diff < 0 else 0.0
        avg_gain = (avg_gain * (period - 1) + gain) / period
        avg_loss = (avg_loss * (period - 1) + loss) / period
        out[i] = 100.0 if avg_loss == 0 else 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)
    return out


# ------------------------------------------------------------------
# 3.  VWAP
# ------------------------------------------------------------------
@_maybe_njit(nogil=True, cache=True)
def _vwap_cumulative_loop(high: np.ndarray, low: np.ndarray, close: np.ndarray, volume: np.ndarray) -> np.ndarray:
    n = len(close)
    vwap = np.empty(n, dtype=np.float64)
    cum_vol = 0.0
    cum_pv = 0.0
    for i in range(n):
        typical_price = (high[i] + low[i] + close[i]) / 3.0
        v = volume[i]
        if v > 0:
            cum_vol += v
            cum_pv += typical_price * v
        vwap[i] = cum_pv / cum_vol if cum_vol > 0 else typical_price
    return vwap


# ------------------------------------------------------------------
# 4.  Heikin-Ashi & true range
# ------------------------------------------------------------------
@_maybe_njit(nogil=True, cache=True)
def _heikin_ashi_loop(open_: np.ndarray, high: np.ndarray, low: np.ndarray, close: np.ndarray):
    n = len(close)
    ha_open = np.empty(n, dtype=np.float64)
    ha_high = np.empty(n, dtype=np.float64)
    ha_low = np.empty(n, dtype=np.float64)
    ha_close = np.empty(n, dtype=np.float64)
    for i in range(n):
        ha_close[i] = (open_[i] + high[i] + low[i] + close[i]) / 4.0
        if i == 0:
            ha_open[i] = (open_[i] + close[i]) / 2.0
        else:
            ha_open[i] = (ha_open[i - 1] + ha_close[i - 1]) / 2.0
        ha_high[i] = max(high[i], ha_open[i], ha_close[i])
        ha_low[i] = min(low[i], ha_open[i], ha_close[i])
    return ha_open, ha_high, ha_low, ha_close


@_maybe_njit(nogil=True, cache=True)
def _true_range_loop(high: np.ndarray, low: np.ndarray, close: np.ndarray) -> np.ndarray:
    n = len(close)
    tr = np.empty(n, dtype=np.float64)
    for i in range(n):
        prev_close = close[i - 1] if i > 0 else close[i]
        tr[i] = max(high[i] - low[i], abs(high[i] - prev_close), abs(low[i] - prev_close))
    return tr


@_maybe_njit(nogil=True, cache=True)
def _log_true_range_loop(high: np.ndarray, low: np.ndarray, close: np.ndarray, data_length: int) -> np.ndarray:
    n = len(close)
    out = np.empty(n, dtype=np.float64)
    out[:] = np.nan
    for i in range(data_length + 1, n):
        h = high[i - data_length + 1]
        l = low[i - data_length + 1]
        for j in range(i - data_length + 2, i + 1):
            if high[j] > h:
                h = high[j]
            if low[j] < l:
                l = low[j]
        prev_close = close[i - data_length - 1]
        tr = max(h - l, abs(h - prev_close), abs(l - prev_close))
        if tr > 0:
            out[i] = math.log(tr)
    return out


# ------------------------------------------------------------------
# 5.  statistical trailing stop
# ------------------------------------------------------------------
@_maybe_njit(nogil=True, cache=True)
def _statistical_trail_loop(
    high: np.ndarray,
    low: np.ndarray,
    close: np.ndarray,
    log_tr: np.ndarray,
    distribution_length: int,
    level_mult: float,
):
    n = len(close)
    bias_out = np.zeros(n, dtype=np.int64)
    level_out = np.zeros(n, dtype=np.float64)
    delta_out = np.zeros(n, dtype=np.float64)
    extreme_out = np.zeros(n, dtype=np.float64)
    anchor_out = np.zeros(n, dtype=np.float64)
    valid = np.zeros(n, dtype=np.bool_)

    has_trail = False
    bias = 0
    delta = 0.0
    level = 0.0
    extreme = 0.0
    anchor = 0.0

    for i in range(distribution_length - 1, n):
        count = 0
        total = 0.0
        for j in range(i - distribution_length + 1, i + 1):
            v = log_tr[j]
            if not np.isnan(v):
                count += 1
                total += v
        if count > 1:
            mean = total / count
            var = 0.0
            for j in range(i - distribution_length + 1, i + 1):
                v = log_tr[j]
                if not np.isnan(v):
                    var += (v - mean) * (v - mean)
            delta = math.exp(mean + level_mult * math.sqrt(var / count))
        elif not has_trail:
            continue

        hlc3 = (high[i] + low[i] + close[i]) / 3.0
        if not has_trail:
            has_trail = True
            bias = 0
            level = hlc3 + delta
            extreme = low[i]
            anchor = close[i]

        triggered = (bias == 0 and close[i] >= level) or (bias == 1 and close[i] <= level)
        if triggered:
            bias = 1 - bias
            if bias == 0:
                level = hlc3 + delta
                extreme = low[i]
            else:
                level = max(hlc3 - delta, 0.0)
                extreme = high[i]
            anchor = close[i]
        elif bias == 0:
            extreme = min(extreme, low[i])
            level = min(level, hlc3 + delta)
        else:
            extreme = max(extreme, high[i])
            level = max(level, max(hlc3 - delta, 0.0))

        bias_out[i] = bias
        level_out[i] = level
        delta_out[i] = delta
        extreme_out[i] = extreme
        anchor_out[i] = anchor
        valid[i] = True

    return bias_out, level_out, delta_out, extreme_out, anchor_out, valid


# ------------------------------------------------------------------
# 6.  Supertrend
# ------------------------------------------------------------------
@_maybe_njit(nogil=True, cache=True)
def _supertrend_loop(high: np.ndarray, low: np.ndarray, close: np.ndarray, period: int, multiplier: float):
    n = len(close)
    tr = _true_range_loop(high, low, close)
    up = np.empty(n, dtype=np.float64)
    dn = np.empty(n, dtype=np.float64)
    up[:] = np.nan
    dn[:] = np.nan
    trend = np.ones(n, dtype=np.int64)

    for i in range(period, n):
        tr_sum = 0.0
        for j in range(i - period + 1, i + 1):
            tr_sum += tr[j]
        atr = tr_sum / period
        hl2 = (high[i] + low[i]) / 2.0

        new_up = hl2 - multiplier * atr
        up1 = up[i - 1] if not np.isnan(up[i - 1]) else new_up
        if close[i - 1] > up1:
            new_up = max(new_up, up1)

        new_dn = hl2 + multiplier * atr
        dn1 = dn[i - 1] if not np.isnan(dn[i - 1]) else new_dn
        if close[i - 1] < dn1:
            new_dn = min(new_dn, dn1)

        prev_trend = trend[i - 1]
        t = prev_trend
        if prev_trend == -1 and close[i] > dn1:
            t = 1
        elif prev_trend == 1 and close[i] < up1:
            t = -1

        up[i] = new_up
        dn[i] = new_dn
        trend[i] = t

    return up, dn, trend
