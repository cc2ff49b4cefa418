"""
Alert evaluation and de-duplication.

Dedup keys look like "{symbol}-{timeframe}-{type}".  When the type ends in a
numeric candle time the key is event-keyed: it fires once, ever.  Any other
key is state-keyed and may fire again once ALERT_COOLDOWN_MS has passed.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, NamedTuple, Optional, Tuple, TypedDict

from highlow_algo import SL_HIT
from indicators import taker_buy_ratio
from scanner_config import (
    AccumulationSettings,
    AlertConditions,
    Constants,
    SUPERTREND_ALERT_TIMEFRAMES,
    TIMEFRAME_MINUTES,
    TRAIL_ALERT_TIMEFRAMES,
    VWAP_GATED_TIMEFRAMES,
)
from snapshot import SymbolSnapshot
from trailing_stop import Bias

logger = logging.getLogger("kiwi_scanner.alerts")

ALERT_COOLDOWN_MS = Constants.ALERT_COOLDOWN_MS


@dataclass(frozen=True)
class AlertPayload:
    symbol: str
    timeframe: str
    type: str
    price: float
    body: Optional[str] = None


class AlertCandidate(NamedTuple):
    dedup_type: str
    alert_type: str
    price: float
    body: Optional[str]


def now_ms() -> int:
    return int(time.time() * 1000)


def dedup_key(symbol: str, timeframe: str, alert_type: str) -> str:
    return f"{symbol}-{timeframe}-{alert_type}"


def is_event_key(alert_type: str) -> bool:
    if "-" not in alert_type:
        return False
    return alert_type.rsplit("-", 1)[-1].isdigit()


def _check_trail_flips(snap: SymbolSnapshot, conditions: AlertConditions, _acc: AccumulationSettings) -> List[AlertCandidate]:
    trail = snap.kiwi_trail
    if len(trail) < 3:
        return []
    if conditions.require_above_daily_vwap and snap.timeframe in VWAP_GATED_TIMEFRAMES and not snap.above_daily_vwap():
        logger.debug(f"{snap.symbol} {snap.timeframe} not above daily VWAP, trail flips skipped")
        return []

    out: List[AlertCandidate] = []
    # the two newest transitions, so a late run still sees the flip
    for current, prev in ((trail[-1], trail[-2]), (trail[-2], trail[-3])):
        kline = snap.kline_at(current.time)
        if kline is None:
            continue
        if conditions.kiwi_bullish_flip and prev.bias == Bias.BEARISH and current.bias == Bias.BULLISH:
            out.append(AlertCandidate(
                f"kiwitrail-bullish-flip-{current.time}",
                "kiwi-bullish-flip",
                kline.close,
                f"Bias flipped to Bullish at ${kline.close:.4f}",
            ))
        if conditions.kiwi_bearish_flip and prev.bias == Bias.BULLISH and current.bias == Bias.BEARISH:
            out.append(AlertCandidate(
                f"kiwitrail-bearish-flip-{current.time}",
                "kiwi-bearish-flip",
                kline.close,
                f"Bias flipped to Bearish at ${kline.close:.4f}",
            ))
    return out


def _check_supertrend_flip(snap: SymbolSnapshot, conditions: AlertConditions, _acc: AccumulationSettings) -> List[AlertCandidate]:
    st = snap.supertrend
    if len(st) < 2:
        return []
    current, prev = st[-1], st[-2]
    kline = snap.kline_at(current.time)
    if kline is None:
        return []

    out: List[AlertCandidate] = []
    if conditions.supertrend_buy and prev.trend == -1 and current.trend == 1:
        out.append(AlertCandidate(
            f"supertrend-buy-{current.time}",
            "supertrend-buy",
            kline.close,
            f"{snap.symbol} ({snap.timeframe}) trend flipped to Bullish.",
        ))
    if conditions.supertrend_sell and prev.trend == 1 and current.trend == -1:
        out.append(AlertCandidate(
            f"supertrend-sell-{current.time}",
            "supertrend-sell",
            kline.close,
            f"{snap.symbol} ({snap.timeframe}) trend flipped to Bearish.",
        ))
    return out


def _check_high_low_signal(snap: SymbolSnapshot, conditions: AlertConditions, _acc: AccumulationSettings) -> List[AlertCandidate]:
    if not snap.high_low_signals or not snap.klines:
        return []
    signal = snap.high_low_signals[-1]
    if signal.time != snap.klines[-1].time:
        return []
    slug = signal.type.lower().replace("_", "-")
    label = "SL HIT" if signal.type == SL_HIT else signal.type
    return [AlertCandidate(
        f"highlow-{slug}-{signal.time}",
        f"highlow-{slug}",
        signal.price,
        f"Ay4nbolic Algo triggered a {label} signal.",
    )]


def _check_accumulation(snap: SymbolSnapshot, conditions: AlertConditions, acc: AccumulationSettings) -> List[AlertCandidate]:
    lookback = acc.lookback_candles(snap.timeframe)
    if lookback < 1 or len(snap.klines) < lookback:
        return []
    ratio = taker_buy_ratio(snap.klines[-lookback:])
    if ratio is None or ratio < acc.buy_ratio_threshold:
        return []
    return [AlertCandidate(
        "accumulation-volume",
        "accumulation-volume",
        snap.klines[-1].close,
        f"Accumulation Vol Detected: takers bought {ratio * 100:.1f}% over {acc.lookback_period}",
    )]


class AlertDefinition(TypedDict):
    key: str
    title: str
    timeframes: Optional[FrozenSet[str]]
    enabled_fn: Callable[[AlertConditions], bool]
    check_fn: Callable[[SymbolSnapshot, AlertConditions, AccumulationSettings], List[AlertCandidate]]


ALERT_DEFINITIONS: List[AlertDefinition] = [
    {"key": "kiwi_trail_flip", "title": "Kiwi trail flip", "timeframes": TRAIL_ALERT_TIMEFRAMES, "enabled_fn": lambda c: c.kiwi_bullish_flip or c.kiwi_bearish_flip, "check_fn": _check_trail_flips},
    {"key": "supertrend_flip", "title": "Supertrend flip", "timeframes": SUPERTREND_ALERT_TIMEFRAMES, "enabled_fn": lambda c: c.supertrend_buy or c.supertrend_sell, "check_fn": _check_supertrend_flip},
    {"key": "high_low_algo", "title": "Ay4nbolic algo signal", "timeframes": None, "enabled_fn": lambda c: c.high_low_algo, "check_fn": _check_high_low_signal},
    {"key": "accumulation_volume", "title": "Accumulation volume", "timeframes": None, "enabled_fn": lambda c: c.accumulation_volume, "check_fn": _check_accumulation},
]


def validate_alert_definitions() -> None:
    seen = set()
    for d in ALERT_DEFINITIONS:
        if d["key"] in seen:
            raise ValueError(f"Duplicate alert definition: {d['key']}")
        seen.add(d["key"])
        if not callable(d["check_fn"]) or not callable(d["enabled_fn"]):
            raise ValueError(f"Alert definition {d['key']} has a non-callable hook")
        unknown = set(d["timeframes"] or ()) - set(TIMEFRAME_MINUTES)
        if unknown:
            raise ValueError(f"Alert definition {d['key']} names unknown timeframes {sorted(unknown)}")


class AlertEvaluator:
    """
    Decides which alerts are new for one (symbol, timeframe) snapshot.

    The dedup map is held by reference and mutated in place; the caller
    loads it before a cycle and persists it afterwards.  Not safe for
    concurrent use: evaluate symbol/timeframe pairs one at a time.
    """

    def __init__(
        self,
        dedup_state: Optional[Dict[str, int]] = None,
        cooldown_ms: int = ALERT_COOLDOWN_MS,
        accumulation: Optional[AccumulationSettings] = None,
    ):
        self.state: Dict[str, int] = dedup_state if dedup_state is not None else {}
        self.cooldown_ms = cooldown_ms
        self.accumulation = accumulation or AccumulationSettings()
        self.stats = {"fired": 0, "suppressed": 0}

    def can_fire(self, key: str, now: int) -> bool:
        last_fired = self.state.get(key)
        if last_fired is None:
            return True
        if is_event_key(key):
            return False
        return now - last_fired > self.cooldown_ms

    def mark_fired(self, key: str, now: int) -> None:
        previous = self.state.get(key)
        self.state[key] = now if previous is None else max(previous, now)

    def evaluate(
        self,
        snapshot: SymbolSnapshot,
        conditions: AlertConditions,
        now: Optional[int] = None,
    ) -> List[AlertPayload]:
        if len(snapshot.klines) < 2:
            return []

        now = now_ms() if now is None else now
        fired: List[AlertPayload] = []
        for definition in ALERT_DEFINITIONS:
            timeframes = definition["timeframes"]
            if timeframes is not None and snapshot.timeframe not in timeframes:
                continue
            if not definition["enabled_fn"](conditions):
                continue

            for candidate in definition["check_fn"](snapshot, conditions, self.accumulation):
                key = dedup_key(snapshot.symbol, snapshot.timeframe, candidate.dedup_type)
                if not self.can_fire(key, now):
                    self.stats["suppressed"] += 1
                    logger.debug(f"Suppressed duplicate alert {key}")
                    continue
                fired.append(AlertPayload(
                    symbol=snapshot.symbol,
                    timeframe=snapshot.timeframe,
                    type=candidate.alert_type,
                    price=candidate.price,
                    body=candidate.body,
                ))
                self.mark_fired(key, now)
                self.stats["fired"] += 1
                logger.info(f"Alert fired | {key} | price={candidate.price:.6g}")
        return fired

    def clear(self) -> None:
        self.state.clear()


def check_all_alerts(
    snapshot: SymbolSnapshot,
    conditions: AlertConditions,
    dedup_state: Dict[str, int],
    now: Optional[int] = None,
    cooldown_ms: int = ALERT_COOLDOWN_MS,
) -> Tuple[List[AlertPayload], Dict[str, int]]:
    evaluator = AlertEvaluator(dedup_state, cooldown_ms)
    return evaluator.evaluate(snapshot, conditions, now), evaluator.state
