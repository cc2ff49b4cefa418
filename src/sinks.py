from __future__ import annotations
import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from market_data import HttpClient
from notifications import Notification, NotificationLog, NotificationQueue
from scanner_config import Constants, ScannerConfig
from scanner_errors import FetchError

logger = logging.getLogger("kiwi_scanner.sinks")

COLOR_GREEN = 3066993
COLOR_RED = 15158332


@runtime_checkable
class AlertSink(Protocol):
    async def deliver(self, notification: Notification) -> None:
        ...


def notification_title(n: Notification) -> str:
    if n.type == "kiwi-bullish-flip":
        return f"{n.symbol} Kiwi trail Buys ({n.timeframe})"
    if n.type == "kiwi-bearish-flip":
        return f"{n.symbol} Kiwi trail Sells ({n.timeframe})"
    if n.type == "supertrend-buy":
        return "Supertrend Buy Signal"
    if n.type == "supertrend-sell":
        return "Supertrend Sell Signal"
    if n.type == "accumulation-volume":
        return f"{n.symbol} Accumulation Volume ({n.timeframe})"
    if n.type.startswith("highlow-"):
        label = n.type[len("highlow-"):].replace("-", " ").upper()
        return f"{n.symbol} Ay4nbolic {label} ({n.timeframe})"
    return "Notification"


def is_bullish(n: Notification) -> bool:
    return any(tag in n.type for tag in ("bullish", "buy", "accumulation"))


def build_discord_payload(n: Notification) -> Dict[str, Any]:
    return {
        "embeds": [{
            "title": notification_title(n),
            "description": n.body or f"{n.symbol} ({n.timeframe}) {n.type}",
            "color": COLOR_GREEN if is_bullish(n) else COLOR_RED,
            "fields": [
                {"name": "Price", "value": f"${n.price:.6g}", "inline": True},
                {"name": "Timeframe", "value": n.timeframe, "inline": True},
            ],
            "timestamp": datetime.fromtimestamp(n.timestamp / 1000, tz=timezone.utc).isoformat(),
        }]
    }


class WebhookThrottle:
    """
    Token bucket sized to a webhook's posting allowance: `per_minute`
    steady rate with up to `burst` posts back to back.
    """

    def __init__(self, per_minute: int, burst: int):
        self.per_second = per_minute / 60
        self.burst = burst
        self._tokens = float(burst)
        self._refilled_at = time.monotonic()
        self._lock = asyncio.Lock()
        self.waited_seconds = 0.0

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._refilled_at) * self.per_second)
        self._refilled_at = now

    async def wait_turn(self) -> None:
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                pause = (1 - self._tokens) / self.per_second
            self.waited_seconds += pause
            await asyncio.sleep(pause)


class LoggingSink:
    """Dry-run sink: the alert only reaches the log."""

    def __init__(self) -> None:
        self.delivered = 0

    async def deliver(self, notification: Notification) -> None:
        self.delivered += 1
        logger.info(
            f"[DRY RUN] {notification_title(notification)} | {notification.body or notification.type} "
            f"| price={notification.price:.6g}"
        )


class DiscordWebhookSink:
    def __init__(self, http: HttpClient, webhook_url: str, rate_per_minute: int = 25, burst: int = 5):
        self.http = http
        self.webhook_url = webhook_url
        self.throttle = WebhookThrottle(rate_per_minute, burst)
        self.stats = {"sent": 0, "failed": 0, "rate_limited": 0}

    async def deliver(self, notification: Notification) -> None:
        try:
            await asyncio.wait_for(self._deliver_impl(notification), timeout=30.0)
        except (FetchError, asyncio.TimeoutError) as e:
            self.stats["failed"] += 1
            logger.error(f"Discord delivery failed for {notification.symbol} {notification.type}: {e}")

    async def _deliver_impl(self, notification: Notification) -> None:
        await self.throttle.wait_turn()
        payload = build_discord_payload(notification)
        status, headers = await self.http.post_json(self.webhook_url, payload)
        if status == 429:
            self.stats["rate_limited"] += 1
            retry_after = headers.get("Retry-After", "1")
            try:
                wait_sec = min(float(retry_after), Constants.CIRCUIT_BREAKER_MAX_WAIT)
            except ValueError:
                wait_sec = 1.0
            await asyncio.sleep(wait_sec + random.uniform(0.1, 0.5))
            status, _ = await self.http.post_json(self.webhook_url, payload)

        if status in (200, 204):
            self.stats["sent"] += 1
            logger.debug(f"Discord notification sent: {notification.symbol} {notification.type}")
            return
        self.stats["failed"] += 1
        logger.error(f"Discord webhook returned HTTP {status} for {notification.symbol} {notification.type}")


def build_sink(cfg: ScannerConfig, http: HttpClient) -> AlertSink:
    if cfg.DRY_RUN_MODE or not cfg.SEND_DISCORD_NOTIFICATIONS:
        return LoggingSink()
    return DiscordWebhookSink(http, cfg.DISCORD_WEBHOOK_URL, cfg.DISCORD_RATE_LIMIT_PER_MINUTE, cfg.DISCORD_BURST_SIZE)


async def drain_queue(queue: NotificationQueue, sink: AlertSink, log: Optional[NotificationLog] = None) -> int:
    """
    Deliver queued notifications one active item at a time.  A sink error
    is logged and the slot moves on; the alert stays marked as fired.
    """
    delivered = 0
    while queue.activate_next() is not None:
        notification = queue.active
        try:
            await sink.deliver(notification)
        except Exception as e:
            logger.error(f"Sink {type(sink).__name__} failed for {notification.symbol} {notification.type}: {e!r}")
            continue
        finally:
            queue.complete_active()
        if log is not None:
            log.add(notification)
        delivered += 1
    return delivered
