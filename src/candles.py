from __future__ import annotations
import logging
import math
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from numba_helpers import _heikin_ashi_loop
from scanner_config import Constants

logger = logging.getLogger("kiwi_scanner.candles")


@dataclass(frozen=True)
class Candle:
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    quote_volume: float = 0.0
    taker_buy_volume: float = 0.0
    taker_buy_quote_volume: float = 0.0

    @property
    def typical_price(self) -> float:
        return (self.high + self.low + self.close) / 3.0


@dataclass(frozen=True)
class IndicatorPoint:
    time: int
    value: float


def _num(value: Any) -> float:
    out = float(value)
    if not math.isfinite(out):
        raise ValueError(f"non-finite value {value!r}")
    return out


def parse_klines(rows: Optional[Iterable[Sequence[Any]]]) -> List[Candle]:
    """
    Convert exchange kline rows into an ascending, de-duplicated candle list.

    Row layout: [openTime, open, high, low, close, volume, closeTime,
    quoteVolume, trades, takerBuyVolume, takerBuyQuoteVolume, ...].
    Numbers may arrive as strings.  Short or malformed rows are skipped;
    taker columns missing on some venues are read as 0.0.
    """
    if not rows:
        return []

    by_time: Dict[int, Candle] = {}
    skipped = 0
    for row in rows:
        try:
            if len(row) < 6:
                skipped += 1
                continue
            quote_volume = _num(row[7]) if len(row) > 7 and row[7] is not None else 0.0
            taker_buy = _num(row[9]) if len(row) > 9 and row[9] is not None else 0.0
            taker_buy_quote = _num(row[10]) if len(row) > 10 and row[10] is not None else 0.0
            candle = Candle(
                time=int(row[0]),
                open=_num(row[1]),
                high=_num(row[2]),
                low=_num(row[3]),
                close=_num(row[4]),
                volume=_num(row[5]),
                quote_volume=quote_volume,
                taker_buy_volume=taker_buy,
                taker_buy_quote_volume=taker_buy_quote,
            )
        except (TypeError, ValueError) as e:
            skipped += 1
            logger.debug(f"Skipping malformed kline row: {e}")
            continue
        by_time[candle.time] = candle

    if skipped:
        logger.warning(f"Skipped {skipped} malformed kline rows")
    return [by_time[t] for t in sorted(by_time)]


def candles_to_arrays(candles: Sequence[Candle]) -> Dict[str, np.ndarray]:
    n = len(candles)
    data = {
        "time": np.empty(n, dtype=np.int64),
        "open": np.empty(n, dtype=np.float64),
        "high": np.empty(n, dtype=np.float64),
        "low": np.empty(n, dtype=np.float64),
        "close": np.empty(n, dtype=np.float64),
        "volume": np.empty(n, dtype=np.float64),
        "quote_volume": np.empty(n, dtype=np.float64),
        "taker_buy_volume": np.empty(n, dtype=np.float64),
        "taker_buy_quote_volume": np.empty(n, dtype=np.float64),
    }
    for i, c in enumerate(candles):
        data["time"][i] = c.time
        data["open"][i] = c.open
        data["high"][i] = c.high
        data["low"][i] = c.low
        data["close"][i] = c.close
        data["volume"][i] = c.volume
        data["quote_volume"][i] = c.quote_volume
        data["taker_buy_volume"][i] = c.taker_buy_volume
        data["taker_buy_quote_volume"][i] = c.taker_buy_quote_volume
    return data


def heikin_ashi(candles: Sequence[Candle]) -> List[Candle]:
    """Heikin-Ashi transform; volume fields are carried over unchanged."""
    if not candles:
        return []
    arr = candles_to_arrays(candles)
    ha_open, ha_high, ha_low, ha_close = _heikin_ashi_loop(arr["open"], arr["high"], arr["low"], arr["close"])
    return [
        replace(c, open=float(ha_open[i]), high=float(ha_high[i]), low=float(ha_low[i]), close=float(ha_close[i]))
        for i, c in enumerate(candles)
    ]


def validate_candles(candles: Optional[Sequence[Candle]], required_len: int = 0) -> Tuple[bool, Optional[str]]:
    if not candles:
        return False, "No candles"

    arr = candles_to_arrays(candles)
    close = arr["close"]
    timestamps = arr["time"]

    if np.any(~np.isfinite(close)) or np.any(close <= 0):
        return False, "Invalid close prices (NaN or <= 0)"

    if len(timestamps) > 1 and not np.all(timestamps[1:] > timestamps[:-1]):
        return False, "Timestamps not strictly increasing"

    if len(close) < required_len:
        return False, f"Insufficient data: {len(close)} < {required_len}"

    if len(close) >= 2:
        price_changes = np.abs(np.diff(close) / close[:-1]) * 100
        worst = float(price_changes.max())
        if worst > Constants.MAX_PRICE_CHANGE_PERCENT:
            logger.warning(f"Price spike of {worst:.2f}% in candle window, keeping it")

    return True, None
