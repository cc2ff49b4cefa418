from __future__ import annotations
import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from candles import IndicatorPoint
from scanner_errors import FetchError

logger = logging.getLogger("kiwi_scanner.open_interest")

# window -> (history period, points requested); n intervals need n + 1 points
OI_WINDOWS: Dict[str, Tuple[str, int]] = {
    "1h": ("5m", 13),
    "4h": ("15m", 17),
    "8h": ("30m", 17),
}


@dataclass(frozen=True)
class OpenInterestPoint:
    timestamp: int
    sum_open_interest: float


@dataclass(frozen=True)
class OpenInterestChange:
    change: float
    history: List[IndicatorPoint] = field(default_factory=list)


def calculate_oi_change(points: Sequence[OpenInterestPoint], requested: int) -> Optional[OpenInterestChange]:
    """Percent change from first to last point.  A short history counts as unavailable."""
    if len(points) < max(requested, 2):
        return None
    start = points[0].sum_open_interest
    end = points[-1].sum_open_interest
    if start == 0:
        change = math.inf if end > 0 else 0.0
    else:
        change = (end - start) / start * 100.0
    history = [IndicatorPoint(p.timestamp, p.sum_open_interest) for p in points[1:]]
    return OpenInterestChange(change=change, history=history)


async def collect_open_interest(source, symbol: str) -> Dict[str, OpenInterestChange]:
    """Fetch every OI window concurrently; failed or short windows are left out."""
    fetch = getattr(source, "fetch_open_interest_history", None)
    if fetch is None:
        return {}

    windows = list(OI_WINDOWS.items())
    results = await asyncio.gather(
        *[fetch(symbol, period, limit) for _, (period, limit) in windows],
        return_exceptions=True,
    )

    out: Dict[str, OpenInterestChange] = {}
    for (window, (_, limit)), result in zip(windows, results):
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, (FetchError, ValueError)):
            logger.debug(f"OI {window} unavailable for {symbol}: {result}")
            continue
        if isinstance(result, BaseException):
            logger.warning(f"OI {window} fetch failed for {symbol}: {result!r}")
            continue
        change = calculate_oi_change(result, limit)
        if change is not None:
            out[window] = change
    return out
