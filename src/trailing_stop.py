"""
Statistical trailing stop ("Kiwi Trail").

The stop distance is exp(mean + 1 sd) of the recent log true ranges.  The
trail starts bearish one distance above hlc3, tightens every bar while the
bias persists, and flips when the close crosses it.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from enum import IntEnum
from typing import Dict, List, Optional, Sequence

import numpy as np

from candles import Candle, candles_to_arrays, heikin_ashi
from numba_helpers import _log_true_range_loop, _statistical_trail_loop
from scanner_config import TrailingStopSettings

logger = logging.getLogger("kiwi_scanner.trailing_stop")

LEVEL_MULTIPLIER = 1.0


class Bias(IntEnum):
    BEARISH = 0
    BULLISH = 1


@dataclass(frozen=True)
class TrailPoint:
    time: int
    bias: Bias
    level: float


@dataclass(frozen=True)
class TrailState:
    bias: Bias
    delta: float
    level: float
    extreme: float
    anchor: float


def _run_trail(candles: Sequence[Candle], settings: TrailingStopSettings) -> Optional[Dict[str, np.ndarray]]:
    if len(candles) < settings.min_candles:
        logger.debug(f"Trail: insufficient data ({len(candles)} < {settings.min_candles})")
        return None
    source = heikin_ashi(candles) if settings.use_heikin_ashi else candles
    arr = candles_to_arrays(source)
    log_tr = _log_true_range_loop(arr["high"], arr["low"], arr["close"], settings.data_length)
    bias, level, delta, extreme, anchor, valid = _statistical_trail_loop(
        arr["high"], arr["low"], arr["close"], log_tr, settings.distribution_length, LEVEL_MULTIPLIER
    )
    return {
        "time": arr["time"], "bias": bias, "level": level, "delta": delta,
        "extreme": extreme, "anchor": anchor, "valid": valid,
    }


def calculate_statistical_trailing_stop(
    candles: Sequence[Candle],
    settings: Optional[TrailingStopSettings] = None,
) -> List[TrailPoint]:
    """One point per candle; the warm-up region is BEARISH with level 0."""
    out = _run_trail(candles, settings or TrailingStopSettings())
    if out is None:
        return []
    return [
        TrailPoint(int(t), Bias(int(b)), float(lv))
        for t, b, lv in zip(out["time"], out["bias"], out["level"])
    ]


def calculate_trail_state(
    candles: Sequence[Candle],
    settings: Optional[TrailingStopSettings] = None,
) -> Optional[TrailState]:
    out = _run_trail(candles, settings or TrailingStopSettings())
    if out is None or not out["valid"][-1]:
        return None
    return TrailState(
        bias=Bias(int(out["bias"][-1])),
        delta=float(out["delta"][-1]),
        level=float(out["level"][-1]),
        extreme=float(out["extreme"][-1]),
        anchor=float(out["anchor"][-1]),
    )


def has_recent_flip(points: Sequence[TrailPoint]) -> bool:
    if len(points) < 3:
        return False
    a, b, c = points[-3], points[-2], points[-1]
    return a.bias != b.bias or b.bias != c.bias
