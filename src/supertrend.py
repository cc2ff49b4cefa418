from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from candles import Candle, candles_to_arrays
from numba_helpers import _supertrend_loop
from scanner_config import SupertrendSettings

logger = logging.getLogger("kiwi_scanner.supertrend")


@dataclass(frozen=True)
class SupertrendPoint:
    time: int
    up: Optional[float]
    dn: Optional[float]
    trend: int


def calculate_supertrend(
    candles: Sequence[Candle],
    settings: Optional[SupertrendSettings] = None,
) -> List[SupertrendPoint]:
    """
    ATR band trend follower.  Only the band matching the current trend is
    exposed: `up` while trend is +1, `dn` while trend is -1.
    """
    settings = settings or SupertrendSettings()
    if len(candles) < settings.period:
        logger.debug(f"Supertrend: insufficient data ({len(candles)} < {settings.period})")
        return []

    arr = candles_to_arrays(candles)
    up, dn, trend = _supertrend_loop(arr["high"], arr["low"], arr["close"], settings.period, settings.multiplier)

    points = []
    for i, t in enumerate(arr["time"]):
        tr = int(trend[i])
        up_val = None if tr != 1 or np.isnan(up[i]) else float(up[i])
        dn_val = None if tr == 1 or np.isnan(dn[i]) else float(dn[i])
        points.append(SupertrendPoint(int(t), up_val, dn_val, tr))
    return points
