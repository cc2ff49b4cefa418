from __future__ import annotations
import argparse
import asyncio
import logging
import signal
import sys
import time
from dataclasses import dataclass
from typing import List, Optional

import psutil

from alerts import AlertEvaluator, validate_alert_definitions
from candles import validate_candles
from market_data import CandleSource, HttpClient, build_candle_source
from notifications import NotificationLog, NotificationQueue, make_notification
from open_interest import collect_open_interest
from scanner_config import ScannerConfig, __version__, load_config
from scanner_errors import ConfigError
from scanner_logging import debug_if, new_trace_id, setup_logging
from scheduler import FetchScheduler, ScanResult
from sinks import AlertSink, build_sink, drain_queue
from snapshot import SymbolSnapshot, compute_snapshot, fetch_limit
from state_store import DedupStateStore, build_state_store

logger = logging.getLogger("kiwi_scanner.runner")


@dataclass
class RunSummary:
    trace_id: str
    symbols_scanned: int = 0
    symbols_failed: int = 0
    alerts_fired: int = 0
    delivered: int = 0
    cancelled: bool = False
    state_saved: bool = False
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return self.symbols_scanned > 0 or self.symbols_failed == 0


async def scan_timeframe(
    cfg: ScannerConfig,
    source: CandleSource,
    timeframe: str,
    scheduler: FetchScheduler,
    cancel_event: Optional[asyncio.Event] = None,
) -> ScanResult:
    limit = fetch_limit(timeframe, cfg)

    async def compute(symbol: str) -> Optional[SymbolSnapshot]:
        candles = await source.fetch_candles(symbol, timeframe, limit)
        valid, reason = validate_candles(candles, required_len=2)
        if not valid:
            logger.warning(f"Skipping {symbol} {timeframe}: {reason}")
            return None
        oi = await collect_open_interest(source, symbol) if cfg.FETCH_OPEN_INTEREST else {}
        return await asyncio.to_thread(compute_snapshot, symbol, timeframe, candles, cfg, oi)

    return await scheduler.run(cfg.symbols_for(timeframe), compute, cancel_event)


async def run_once(
    cfg: ScannerConfig,
    source: CandleSource,
    store: DedupStateStore,
    sink: AlertSink,
    cancel_event: Optional[asyncio.Event] = None,
    now: Optional[int] = None,
    log: Optional[NotificationLog] = None,
) -> RunSummary:
    summary = RunSummary(trace_id=new_trace_id())
    start = time.monotonic()

    state = await store.load()
    evaluator = AlertEvaluator(state, accumulation=cfg.ACCUMULATION)
    queue = NotificationQueue(cfg.TIMEFRAMES)
    scheduler = FetchScheduler.from_profile(cfg.provider_profile)

    try:
        for i, timeframe in enumerate(cfg.TIMEFRAMES):
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                break

            result = await scan_timeframe(cfg, source, timeframe, scheduler, cancel_event)
            summary.symbols_scanned += len(result.results)
            summary.symbols_failed += len(result.failed)

            # one pair at a time: the dedup map is not shared safely
            for snap in result.results:
                for payload in evaluator.evaluate(snap, cfg.ALERT_CONDITIONS, now):
                    queue.enqueue(make_notification(payload, now))
                    summary.alerts_fired += 1

            debug_if(cfg.DEBUG_MODE, logger, lambda: (
                f"{timeframe}: {len(result.results)} ok, {len(result.failed)} failed, "
                f"{queue.pending_count(timeframe)} queued"
            ))

            if result.cancelled:
                summary.cancelled = True
                break
            if i < len(cfg.TIMEFRAMES) - 1 and cfg.TIMEFRAME_PAUSE_SEC > 0:
                await asyncio.sleep(cfg.TIMEFRAME_PAUSE_SEC)

        summary.delivered = await drain_queue(queue, sink, log)
    finally:
        # fired keys are saved even when the run dies part way
        summary.state_saved = await store.save(evaluator.state)
    summary.elapsed = time.monotonic() - start

    logger.info(
        f"Run complete | scanned={summary.symbols_scanned} failed={summary.symbols_failed} "
        f"alerts={summary.alerts_fired} delivered={summary.delivered} "
        f"cancelled={summary.cancelled} elapsed={summary.elapsed:.1f}s"
    )
    return summary


async def clear_alert_log(log: NotificationLog, store: DedupStateStore) -> bool:
    """Forget delivered notifications together with every dedup key."""
    log.clear()
    return await store.save({})


def check_memory(limit_bytes: int) -> int:
    rss = psutil.Process().memory_info().rss
    if rss > limit_bytes:
        logger.warning(f"Memory usage {rss / 1e6:.0f}MB exceeds limit {limit_bytes / 1e6:.0f}MB")
    return rss


async def run_forever(
    cfg: ScannerConfig,
    source: CandleSource,
    store: DedupStateStore,
    sink: AlertSink,
    cancel_event: asyncio.Event,
) -> List[RunSummary]:
    log = NotificationLog()
    summaries: List[RunSummary] = []
    while not cancel_event.is_set():
        summaries.append(await run_once(cfg, source, store, sink, cancel_event, log=log))
        check_memory(cfg.MEMORY_LIMIT_BYTES)
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=cfg.LOOP_INTERVAL_SEC)
        except asyncio.TimeoutError:
            pass
    logger.info(f"Scanner loop stopped after {len(summaries)} runs")
    return summaries


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description=f"Kiwi Scanner {__version__} - trailing-stop / Supertrend flip alerts across symbols and timeframes"
    )
    parser.add_argument("--config", help="Path to JSON config (default: $SCANNER_CONFIG_FILE or scanner_config.json)")
    parser.add_argument("--debug", action="store_true", help="Enable DEBUG logging")
    parser.add_argument("--validate-only", action="store_true", help="Validate config and exit")
    parser.add_argument("--once", action="store_true", help="Run a single scan cycle and exit")
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if args.debug:
        cfg = cfg.model_copy(update={"DEBUG_MODE": True})
    setup_logging(cfg)

    try:
        validate_alert_definitions()
    except ValueError as e:
        logger.critical(f"Alert definition validation failed: {e}")
        return 1

    if args.validate_only:
        logger.info("Configuration validation passed - exiting (--validate-only mode)")
        return 0

    async def main_with_cleanup() -> int:
        cancel_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, cancel_event.set)
            except (NotImplementedError, RuntimeError):
                pass

        http = HttpClient.from_config(cfg)
        source = build_candle_source(cfg, http)
        store = build_state_store(cfg)
        sink = build_sink(cfg, http)
        try:
            if args.once:
                summary = await run_once(cfg, source, store, sink, cancel_event)
                return 0 if summary.ok else 1
            await run_forever(cfg, source, store, sink, cancel_event)
            return 0
        finally:
            logger.info("Shutting down persistent connections...")
            await store.close()
            await http.close()
            logger.debug(f"Fetch stats: {source.get_stats()}")

    try:
        return asyncio.run(main_with_cleanup())
    except KeyboardInterrupt:
        logger.info("Scanner stopped by user interrupt")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
