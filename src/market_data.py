from __future__ import annotations
import asyncio
import logging
import random
import ssl
import time
from collections import deque
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, runtime_checkable

import aiohttp
import orjson
from aiohttp import ClientConnectorError, ClientError, ClientResponseError, TCPConnector

from candles import Candle, parse_klines
from open_interest import OpenInterestPoint
from scanner_config import Constants, ProviderProfile, ScannerConfig, __version__
from scanner_errors import CircuitOpenError, FetchError, RetryCategory

logger = logging.getLogger("kiwi_scanner.market_data")


def categorize_exception(exc: BaseException) -> str:
    if isinstance(exc, FetchError):
        return exc.category
    if isinstance(exc, asyncio.TimeoutError):
        return RetryCategory.TIMEOUT
    if isinstance(exc, ClientConnectorError):
        return RetryCategory.NETWORK
    if isinstance(exc, ClientResponseError):
        if exc.status == 429:
            return RetryCategory.RATE_LIMIT
        return RetryCategory.API_ERROR
    if isinstance(exc, ClientError):
        return RetryCategory.NETWORK
    return RetryCategory.UNKNOWN


def _backoff_delay(backoff: float, attempt: int) -> float:
    base_delay = min(Constants.CIRCUIT_BREAKER_MAX_WAIT / 10, backoff * (2 ** (attempt - 1)))
    return base_delay + base_delay * random.uniform(0.1, 0.5)


class HttpClient:
    """One pooled aiohttp session shared by every adapter and sink."""

    def __init__(
        self,
        timeout: int = 15,
        retries: int = 3,
        backoff: float = 1.5,
        conn_limit: int = 16,
        conn_limit_per_host: int = 12,
        user_agent: str = f"KiwiScanner/{__version__}",
    ):
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.conn_limit = conn_limit
        self.conn_limit_per_host = conn_limit_per_host
        self.user_agent = user_agent
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()
        self._request_count = 0
        self._creation_time = 0.0

    @classmethod
    def from_config(cls, cfg: ScannerConfig) -> "HttpClient":
        return cls(
            timeout=cfg.HTTP_TIMEOUT,
            retries=cfg.FETCH_RETRIES,
            backoff=cfg.FETCH_BACKOFF,
            conn_limit=cfg.TCP_CONN_LIMIT,
            conn_limit_per_host=cfg.TCP_CONN_LIMIT_PER_HOST,
            user_agent=f"{cfg.BOT_NAME}/{__version__}",
        )

    @staticmethod
    def _ssl_context() -> ssl.SSLContext:
        ctx = ssl.create_default_context()
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        return ctx

    async def get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        async with self._lock:
            if self._session is None or self._session.closed:
                connector = TCPConnector(
                    limit=self.conn_limit,
                    limit_per_host=self.conn_limit_per_host,
                    ssl=self._ssl_context(),
                    enable_cleanup_closed=True,
                    ttl_dns_cache=3600,
                    keepalive_timeout=90,
                )
                self._session = aiohttp.ClientSession(
                    connector=connector,
                    timeout=aiohttp.ClientTimeout(total=self.timeout, connect=8, sock_read=self.timeout),
                    headers={"User-Agent": self.user_agent, "Accept": "application/json"},
                    raise_for_status=False,
                )
                self._creation_time = time.time()
                self._request_count = 0
                logger.debug("HTTP session created")
            return self._session

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET and decode JSON.  429 waits for Retry-After, 5xx / timeouts /
        connection errors back off and retry, other 4xx and undecodable
        bodies fail at once.  Raises FetchError when every attempt fails.
        """
        session = await self.get_session()
        last_error: Optional[FetchError] = None
        retry_stats = {RetryCategory.NETWORK: 0, RetryCategory.RATE_LIMIT: 0, RetryCategory.API_ERROR: 0, RetryCategory.TIMEOUT: 0}

        for attempt in range(1, self.retries + 1):
            try:
                async with session.get(url, params=params) as resp:
                    self._request_count += 1
                    if resp.status == 429:
                        retry_after = resp.headers.get("Retry-After")
                        wait_sec = min(int(retry_after) if retry_after and retry_after.isdigit() else 2, Constants.CIRCUIT_BREAKER_MAX_WAIT)
                        retry_stats[RetryCategory.RATE_LIMIT] += 1
                        last_error = FetchError(f"rate limited: {url[:80]}", RetryCategory.RATE_LIMIT, 429)
                        logger.warning(f"Rate limited (429) | URL: {url[:80]} | Waiting: {wait_sec}s | Attempt: {attempt}/{self.retries}")
                        if attempt < self.retries:
                            await asyncio.sleep(wait_sec + random.uniform(0.1, 0.5))
                        continue

                    if resp.status >= 500:
                        retry_stats[RetryCategory.API_ERROR] += 1
                        last_error = FetchError(f"server error {resp.status}", RetryCategory.API_ERROR, resp.status)
                        logger.warning(f"Server error {resp.status} | URL: {url[:80]} | Attempt: {attempt}/{self.retries}")
                        if attempt < self.retries:
                            await asyncio.sleep(_backoff_delay(self.backoff, attempt))
                        continue

                    if resp.status >= 400:
                        logger.error(f"Client error {resp.status} for {url[:80]} - not retrying")
                        raise FetchError(f"client error {resp.status}", RetryCategory.API_ERROR, resp.status)

                    body = await resp.read()

            except asyncio.TimeoutError:
                retry_stats[RetryCategory.TIMEOUT] += 1
                last_error = FetchError(f"timeout after {self.timeout}s", RetryCategory.TIMEOUT)
                logger.warning(f"Timeout (attempt {attempt}/{self.retries}) | URL: {url[:80]}")
                if attempt < self.retries:
                    await asyncio.sleep(_backoff_delay(self.backoff, attempt))
                continue
            except ClientError as e:
                category = categorize_exception(e)
                retry_stats[category] = retry_stats.get(category, 0) + 1
                last_error = FetchError(str(e)[:200], category)
                logger.warning(f"Network error (attempt {attempt}/{self.retries}) | Category: {category} | URL: {url[:80]} | Error: {str(e)[:100]}")
                if attempt < self.retries:
                    await asyncio.sleep(_backoff_delay(self.backoff, attempt))
                continue

            try:
                data = orjson.loads(body)
            except orjson.JSONDecodeError as e:
                raise FetchError(f"malformed JSON from {url[:80]}: {e}", RetryCategory.API_ERROR) from e

            if any(retry_stats.values()):
                logger.info(f"Fetch succeeded after retries | URL: {url[:80]} | Attempts: {attempt} | Stats: {retry_stats}")
            return data

        logger.error(f"Failed to fetch after {self.retries} attempts | URL: {url[:80]} | Stats: {retry_stats}")
        raise last_error or FetchError(f"fetch failed: {url[:80]}")

    async def post_json(self, url: str, payload: Dict[str, Any]) -> Tuple[int, Dict[str, str]]:
        session = await self.get_session()
        try:
            async with session.post(url, data=orjson.dumps(payload), headers={"Content-Type": "application/json"}) as resp:
                self._request_count += 1
                await resp.read()
                return resp.status, dict(resp.headers)
        except asyncio.TimeoutError as e:
            raise FetchError(f"timeout posting to {url[:60]}", RetryCategory.TIMEOUT) from e
        except ClientError as e:
            raise FetchError(str(e)[:200], categorize_exception(e)) from e

    async def close(self) -> None:
        async with self._lock:
            if self._session and not self._session.closed:
                age = time.time() - self._creation_time
                logger.debug(f"Closing HTTP session | Age: {age:.1f}s | Requests served: {self._request_count}")
                await self._session.close()
            self._session = None

    def get_stats(self) -> Dict[str, Any]:
        active = self._session is not None and not self._session.closed
        age = time.time() - self._creation_time if active else 0.0
        return {"active": active, "request_count": self._request_count, "age_seconds": round(age, 1)}


class ProviderRateLimiter:
    """
    Sliding one-minute request window for one exchange profile, plus a cap
    on requests in flight.  Callers over the window wait for the oldest
    request to age out.
    """

    WINDOW_SEC = 60.0

    def __init__(self, provider: str, max_per_minute: int, max_in_flight: int):
        self.provider = provider
        self.max_per_minute = max_per_minute
        self._in_flight = asyncio.Semaphore(max_in_flight)
        self._sent: deque[float] = deque()
        self._lock = asyncio.Lock()
        self.throttled = 0
        self.throttled_seconds = 0.0

    def _expire(self, now: float) -> None:
        while self._sent and now - self._sent[0] > self.WINDOW_SEC:
            self._sent.popleft()

    async def _reserve_slot(self) -> None:
        async with self._lock:
            now = time.monotonic()
            self._expire(now)
            if len(self._sent) >= self.max_per_minute:
                pause = self.WINDOW_SEC - (now - self._sent[0]) + random.uniform(0.05, 0.2)
                self.throttled += 1
                self.throttled_seconds += pause
                logger.debug(f"[{self.provider}] {len(self._sent)}/{self.max_per_minute} requests this minute, waiting {pause:.2f}s")
                await asyncio.sleep(pause)
                self._expire(time.monotonic())
            self._sent.append(time.monotonic())

    async def submit(self, request: Callable, *args, **kwargs):
        await self._reserve_slot()
        async with self._in_flight:
            return await request(*args, **kwargs)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "throttled": self.throttled,
            "throttled_seconds": round(self.throttled_seconds, 2),
            "requests_last_minute": len(self._sent),
            "max_per_minute": self.max_per_minute,
        }


class ProviderCircuitBreaker:
    """
    Stops candle requests to an exchange that keeps failing.  After
    `failure_threshold` server-side failures the breaker opens; once
    `recovery_timeout` has passed one trial request is let through
    (HALF_OPEN) and `recovery_successes` good answers close it again.
    """

    CLOSED, OPEN, HALF_OPEN = "CLOSED", "OPEN", "HALF_OPEN"

    def __init__(self, provider: str = "rest", failure_threshold: int = 5, recovery_timeout: float = 60,
                 recovery_successes: int = 2):
        self.provider = provider
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.recovery_successes = recovery_successes
        self.state = self.CLOSED
        self.failures = 0
        self.times_opened = 0
        self._recovered = 0
        self._opened_at = 0.0

    def _open(self) -> None:
        self.state = self.OPEN
        self.times_opened += 1
        self._recovered = 0
        self._opened_at = time.monotonic()
        logger.warning(f"[{self.provider}] candle requests suspended for {self.recovery_timeout:.0f}s after {self.failures} failures")

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            self._recovered += 1
            if self._recovered >= self.recovery_successes:
                logger.info(f"[{self.provider}] exchange answering again, resuming requests")
                self.state = self.CLOSED
                self.failures = 0
        elif self.failures > 0:
            self.failures -= 1

    def record_failure(self) -> None:
        self.failures += 1
        if self.state == self.HALF_OPEN or (self.state == self.CLOSED and self.failures >= self.failure_threshold):
            self._open()

    def allow(self) -> Tuple[bool, Optional[str]]:
        if self.state != self.OPEN:
            return True, None
        waited = time.monotonic() - self._opened_at
        if waited >= self.recovery_timeout:
            logger.info(f"[{self.provider}] trying exchange again after {waited:.0f}s pause")
            self.state = self.HALF_OPEN
            self._recovered = 0
            return True, None
        return False, f"{self.provider} circuit OPEN (retry in {self.recovery_timeout - waited:.0f}s)"

    def get_stats(self) -> Dict[str, Any]:
        return {"state": self.state, "failures": self.failures, "times_opened": self.times_opened}


@runtime_checkable
class CandleSource(Protocol):
    name: str

    async def fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        ...


class RestCandleSource:
    """Shared plumbing for exchange REST adapters: rate limit, circuit breaker, stats."""

    name = "rest"
    klines_url = ""
    max_limit = 1000

    def __init__(self, http: HttpClient, profile: ProviderProfile):
        self.http = http
        self.profile = profile
        self.rate_limiter = ProviderRateLimiter(profile.name, profile.max_requests_per_minute, profile.max_parallel)
        self.circuit_breaker = ProviderCircuitBreaker(profile.name)
        self.fetch_stats = {
            "candles_success": 0,
            "candles_failed": 0,
            "oi_success": 0,
            "oi_failed": 0,
            "circuit_breaker_blocks": 0,
        }

    @staticmethod
    def api_symbol(symbol: str) -> str:
        return symbol[:-2] if symbol.endswith(".P") else symbol

    def api_interval(self, interval: str) -> str:
        return interval

    async def _guarded_get(self, url: str, params: Dict[str, Any]) -> Any:
        can_proceed, reason = self.circuit_breaker.allow()
        if not can_proceed:
            self.fetch_stats["circuit_breaker_blocks"] += 1
            raise CircuitOpenError(reason or "circuit open")
        try:
            data = await self.rate_limiter.submit(self.http.get_json, url, params)
        except FetchError as e:
            # a bad symbol is not a sick provider
            if not (e.status is not None and 400 <= e.status < 500 and e.status != 429):
                self.circuit_breaker.record_failure()
            raise
        self.circuit_breaker.record_success()
        return data

    async def fetch_candles(self, symbol: str, interval: str, limit: int) -> List[Candle]:
        params = {
            "symbol": self.api_symbol(symbol),
            "interval": self.api_interval(interval),
            "limit": min(limit, self.max_limit),
        }
        try:
            data = await self._guarded_get(self.klines_url, params)
            if not isinstance(data, list):
                raise FetchError(f"unexpected kline payload for {symbol}", RetryCategory.API_ERROR)
            candles = parse_klines(data)
            if not candles:
                raise FetchError(f"no candles for {symbol} {interval}", RetryCategory.API_ERROR)
        except FetchError:
            self.fetch_stats["candles_failed"] += 1
            raise
        self.fetch_stats["candles_success"] += 1
        return candles

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.fetch_stats,
            "circuit_state": self.circuit_breaker.state,
            "circuit_breaker": self.circuit_breaker.get_stats(),
            "rate_limiter": self.rate_limiter.get_stats(),
        }


class BinanceFuturesSource(RestCandleSource):
    name = "binance"
    api_base = "https://fapi.binance.com"
    max_limit = 1500

    def __init__(self, http: HttpClient, profile: ProviderProfile, api_base: Optional[str] = None):
        super().__init__(http, profile)
        if api_base:
            self.api_base = api_base.rstrip("/")
        self.klines_url = f"{self.api_base}/fapi/v1/klines"
        self.oi_url = f"{self.api_base}/futures/data/openInterestHist"

    async def fetch_open_interest_history(self, symbol: str, period: str, limit: int) -> List[OpenInterestPoint]:
        params = {"symbol": self.api_symbol(symbol), "period": period, "limit": limit}
        try:
            data = await self._guarded_get(self.oi_url, params)
        except FetchError:
            self.fetch_stats["oi_failed"] += 1
            raise
        if not isinstance(data, list):
            self.fetch_stats["oi_failed"] += 1
            raise FetchError(f"unexpected open interest payload for {symbol}", RetryCategory.API_ERROR)

        points = []
        for row in data:
            try:
                points.append(OpenInterestPoint(int(row["timestamp"]), float(row["sumOpenInterest"])))
            except (KeyError, TypeError, ValueError):
                continue
        points.sort(key=lambda p: p.timestamp)
        self.fetch_stats["oi_success"] += 1
        return points


class MexcSource(RestCandleSource):
    name = "mexc"
    api_base = "https://api.mexc.com"
    _INTERVALS = {"1h": "60m", "1w": "1W"}

    def __init__(self, http: HttpClient, profile: ProviderProfile, api_base: Optional[str] = None):
        super().__init__(http, profile)
        if api_base:
            self.api_base = api_base.rstrip("/")
        self.klines_url = f"{self.api_base}/api/v3/klines"

    def api_interval(self, interval: str) -> str:
        return self._INTERVALS.get(interval, interval)


def build_candle_source(cfg: ScannerConfig, http: HttpClient) -> RestCandleSource:
    if cfg.PROVIDER == "mexc":
        return MexcSource(http, cfg.provider_profile)
    return BinanceFuturesSource(http, cfg.provider_profile)
