from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from candles import Candle, IndicatorPoint
from highlow_algo import AlgoSignal, ChannelPoint, calculate_high_low_algo
from indicators import (
    VolumeProfile,
    calculate_anchored_vwap,
    calculate_atr,
    calculate_cvd,
    calculate_daily_vwap,
    calculate_rsi,
    calculate_sma,
    calculate_stoch_rsi,
    calculate_volume_profile,
    calculate_vwap,
    close_points,
)
from open_interest import OpenInterestChange
from scanner_config import Constants, ScannerConfig, TIMEFRAME_MINUTES
from supertrend import SupertrendPoint, calculate_supertrend
from trailing_stop import TrailPoint, calculate_statistical_trailing_stop

logger = logging.getLogger("kiwi_scanner.snapshot")


@dataclass
class SymbolSnapshot:
    symbol: str
    timeframe: str
    price: float = 0.0
    volume: float = 0.0
    quote_volume: float = 0.0
    klines: List[Candle] = field(default_factory=list)
    rsi: List[IndicatorPoint] = field(default_factory=list)
    sma: List[IndicatorPoint] = field(default_factory=list)
    price_sma: List[IndicatorPoint] = field(default_factory=list)
    price_sma50: List[IndicatorPoint] = field(default_factory=list)
    price_sma100: List[IndicatorPoint] = field(default_factory=list)
    stoch_k: List[IndicatorPoint] = field(default_factory=list)
    stoch_d: List[IndicatorPoint] = field(default_factory=list)
    vwap: List[IndicatorPoint] = field(default_factory=list)
    daily_vwap: Optional[List[IndicatorPoint]] = None
    vwap_anchored_high: Optional[List[IndicatorPoint]] = None
    vwap_anchored_low: Optional[List[IndicatorPoint]] = None
    volume_profile: Optional[VolumeProfile] = None
    kiwi_trail: List[TrailPoint] = field(default_factory=list)
    supertrend: List[SupertrendPoint] = field(default_factory=list)
    cvd: List[IndicatorPoint] = field(default_factory=list)
    atr14: Optional[float] = None
    high_low_signals: List[AlgoSignal] = field(default_factory=list)
    high_low_channel: List[ChannelPoint] = field(default_factory=list)
    open_interest: Dict[str, OpenInterestChange] = field(default_factory=dict)

    def above_daily_vwap(self) -> bool:
        return bool(self.daily_vwap) and self.price > self.daily_vwap[-1].value

    def kline_at(self, time: int) -> Optional[Candle]:
        for candle in reversed(self.klines):
            if candle.time == time:
                return candle
            if candle.time < time:
                break
        return None


def fetch_limit(timeframe: str, cfg: ScannerConfig) -> int:
    if cfg.CANDLE_LIMIT:
        return cfg.CANDLE_LIMIT
    accumulation = cfg.ACCUMULATION.lookback_candles(timeframe) if cfg.ALERT_CONDITIONS.accumulation_volume else 0
    max_lookback = max(
        Constants.RSI_LENGTH + Constants.STOCH_LENGTH + Constants.STOCH_K_SMOOTH + Constants.STOCH_D_SMOOTH,
        100,
        cfg.SUPERTREND.period,
        cfg.HIGH_LOW_ALGO.dist,
        accumulation,
    )
    return min(1000, cfg.CANDLES_DISPLAYED + max_lookback + 100)


def compute_snapshot(
    symbol: str,
    timeframe: str,
    candles: Sequence[Candle],
    cfg: ScannerConfig,
    open_interest: Optional[Dict[str, OpenInterestChange]] = None,
) -> SymbolSnapshot:
    """
    Run every indicator over the full window, then trim each series to the
    last CANDLES_DISPLAYED points.  CPU-bound; call from a worker thread.
    """
    shown = cfg.CANDLES_DISPLAYED
    candles = list(candles)
    snap = SymbolSnapshot(symbol=symbol, timeframe=timeframe, open_interest=dict(open_interest or {}))
    if not candles:
        return snap

    last = candles[-1]
    snap.price, snap.volume, snap.quote_volume = last.close, last.volume, last.quote_volume

    prices = close_points(candles)
    rsi = calculate_rsi(candles, Constants.RSI_LENGTH)
    stoch_k, stoch_d = calculate_stoch_rsi(
        rsi, Constants.RSI_LENGTH, Constants.STOCH_LENGTH, Constants.STOCH_K_SMOOTH, Constants.STOCH_D_SMOOTH
    )
    algo = calculate_high_low_algo(candles, cfg.HIGH_LOW_ALGO)

    snap.klines = candles[-shown:]
    snap.rsi = rsi[-shown:]
    snap.sma = calculate_sma(rsi, Constants.SMA_LENGTH)[-shown:]
    snap.price_sma = calculate_sma(prices, Constants.SMA_LENGTH)[-shown:]
    snap.price_sma50 = calculate_sma(prices, 50)[-shown:]
    snap.price_sma100 = calculate_sma(prices, 100)[-shown:]
    snap.stoch_k = stoch_k[-shown:]
    snap.stoch_d = stoch_d[-shown:]
    snap.vwap = calculate_vwap(candles)[-shown:]
    if TIMEFRAME_MINUTES.get(timeframe, 0) <= 60:
        snap.daily_vwap = calculate_daily_vwap(candles)
    snap.vwap_anchored_high = calculate_anchored_vwap(candles, Constants.PIVOT_LOOKBACK, is_high=True)
    snap.vwap_anchored_low = calculate_anchored_vwap(candles, Constants.PIVOT_LOOKBACK, is_high=False)
    snap.volume_profile = calculate_volume_profile(candles[-shown:])
    snap.kiwi_trail = calculate_statistical_trailing_stop(candles, cfg.TRAILING_STOP)[-shown:]
    snap.supertrend = calculate_supertrend(candles, cfg.SUPERTREND)[-shown:]
    snap.cvd = calculate_cvd(candles)[-shown:]
    snap.atr14 = calculate_atr(candles, Constants.ATR_LENGTH)
    snap.high_low_signals = [s for s in algo.signals if s.time >= snap.klines[0].time]
    snap.high_low_channel = algo.channel[-shown:]
    return snap
