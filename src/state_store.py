# ============================================================================
# Dedup-state persistence - one opaque JSON object {key: fired_at_ms}
# ============================================================================
from __future__ import annotations
import asyncio
import logging
import math
import os
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import aiohttp
import orjson
import redis.asyncio as redis
from redis.exceptions import RedisError

from scanner_config import ScannerConfig
from scanner_errors import StateStoreError

logger = logging.getLogger("kiwi_scanner.state_store")


def parse_dedup_state(raw: Any) -> Dict[str, int]:
    """
    Decode a persisted dedup map.  Never raises: garbage resets to an empty
    map and individual non-numeric entries are dropped, both with a warning.
    """
    if raw is None or raw == b"" or raw == "":
        return {}
    if isinstance(raw, (bytes, bytearray, str)):
        try:
            raw = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            logger.warning(f"Dedup state is not valid JSON, starting empty: {e}")
            return {}
    if not isinstance(raw, dict):
        logger.warning(f"Dedup state is a {type(raw).__name__}, not an object; starting empty")
        return {}

    state: Dict[str, int] = {}
    dropped = 0
    for key, value in raw.items():
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            dropped += 1
            continue
        state[str(key)] = int(value)
    if dropped:
        logger.warning(f"Dropped {dropped} malformed dedup entries")
    return state


def merge_dedup_state(base: Dict[str, int], incoming: Mapping[str, int]) -> Dict[str, int]:
    """Merge keeping the newest timestamp per key; timestamps never move backwards."""
    for key, ts in incoming.items():
        prev = base.get(key)
        base[key] = ts if prev is None else max(prev, ts)
    return base


class DedupStateStore:
    """
    Base store.  Reads and writes whole JSON blobs; writes are serialised
    through an asyncio lock.  Backend failures flip `degraded` and the run
    carries on without cross-restart dedup.
    """

    backend = "base"

    def __init__(self) -> None:
        self.degraded = False
        self._write_lock = asyncio.Lock()
        self._stats = {"loads": 0, "saves": 0, "failures": 0, "last_save_ts": 0.0, "keys": 0}

    async def connect(self) -> None:
        return None

    async def _read(self) -> Optional[bytes]:
        raise NotImplementedError

    async def _write(self, payload: bytes) -> None:
        raise NotImplementedError

    async def load(self) -> Dict[str, int]:
        try:
            await self.connect()
            raw = await self._read()
        except StateStoreError as e:
            self.degraded = True
            self._stats["failures"] += 1
            logger.warning(f"[{self.backend}] dedup state unavailable, alerts will not dedup across restarts: {e}")
            return {}
        self._stats["loads"] += 1
        state = parse_dedup_state(raw)
        self._stats["keys"] = len(state)
        logger.info(f"[{self.backend}] loaded {len(state)} alert states")
        return state

    async def save(self, state: Mapping[str, int]) -> bool:
        async with self._write_lock:
            try:
                await self._write(orjson.dumps(dict(state)))
            except StateStoreError as e:
                self.degraded = True
                self._stats["failures"] += 1
                logger.warning(f"[{self.backend}] failed to save dedup state: {e}")
                return False
            self._stats["saves"] += 1
            self._stats["keys"] = len(state)
            self._stats["last_save_ts"] = time.time()
            logger.debug(f"[{self.backend}] saved {len(state)} alert states")
            return True

    async def close(self) -> None:
        return None

    def get_stats(self) -> Dict[str, Any]:
        return {"backend": self.backend, "degraded": self.degraded, **self._stats}


class MemoryStateStore(DedupStateStore):
    backend = "memory"

    def __init__(self, initial: Optional[bytes] = None):
        super().__init__()
        self._blob = initial

    async def _read(self) -> Optional[bytes]:
        return self._blob

    async def _write(self, payload: bytes) -> None:
        self._blob = payload


class FileStateStore(DedupStateStore):
    backend = "file"

    def __init__(self, path: str):
        super().__init__()
        self.path = Path(path)

    def _read_sync(self) -> Optional[bytes]:
        if not self.path.exists():
            return None
        return self.path.read_bytes()

    def _write_sync(self, payload: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_bytes(payload)
        os.replace(tmp, self.path)

    async def _read(self) -> Optional[bytes]:
        try:
            return await asyncio.to_thread(self._read_sync)
        except OSError as e:
            raise StateStoreError(f"cannot read {self.path}: {e}") from e

    async def _write(self, payload: bytes) -> None:
        try:
            await asyncio.to_thread(self._write_sync, payload)
        except OSError as e:
            raise StateStoreError(f"cannot write {self.path}: {e}") from e


class JsonBinStateStore(DedupStateStore):
    """Remote JSON blob on jsonbin.io; the record body is the dedup map."""

    backend = "jsonbin"

    def __init__(self, bin_id: str, master_key: str, api_base: str = "https://api.jsonbin.io/v3", timeout: float = 10.0):
        super().__init__()
        self.bin_id = bin_id
        self.master_key = master_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._api_calls = 0

    async def connect(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))

    @property
    def _headers(self) -> Dict[str, str]:
        return {"X-Master-Key": self.master_key, "Content-Type": "application/json"}

    async def _read(self) -> Optional[bytes]:
        url = f"{self.api_base}/b/{self.bin_id}/latest"
        try:
            async with self._session.get(url, headers=self._headers) as resp:
                self._api_calls += 1
                if resp.status == 404:
                    logger.debug(f"JSONBin {self.bin_id} not found, starting empty")
                    return None
                if resp.status != 200:
                    raise StateStoreError(f"JSONBin read failed with HTTP {resp.status}")
                body = await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StateStoreError(f"JSONBin read error: {e}") from e

        try:
            envelope = orjson.loads(body)
        except orjson.JSONDecodeError:
            return body
        if isinstance(envelope, dict) and "record" in envelope:
            return orjson.dumps(envelope["record"])
        return body

    async def _write(self, payload: bytes) -> None:
        await self.connect()
        url = f"{self.api_base}/b/{self.bin_id}"
        try:
            async with self._session.put(url, data=payload, headers=self._headers) as resp:
                self._api_calls += 1
                if resp.status not in (200, 201):
                    raise StateStoreError(f"JSONBin write failed with HTTP {resp.status}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise StateStoreError(f"JSONBin write error: {e}") from e

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def get_stats(self) -> Dict[str, Any]:
        return {**super().get_stats(), "api_calls": self._api_calls}


class RedisStateStore(DedupStateStore):
    """Whole dedup map stored as one JSON string under a single Redis key."""

    backend = "redis"

    def __init__(self, redis_url: str, key: str = "kiwi_scanner:alert_states", timeout: float = 5.0):
        super().__init__()
        self.redis_url = redis_url
        self.key = key
        self.timeout = timeout
        self._redis: Optional[redis.Redis] = None

    async def connect(self) -> None:
        if self._redis is not None:
            return
        client = redis.from_url(
            self.redis_url,
            socket_connect_timeout=self.timeout,
            socket_timeout=self.timeout,
            retry_on_timeout=True,
            decode_responses=False,
        )
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            await client.aclose()
            raise StateStoreError(f"Redis ping failed: {e}") from e
        self._redis = client
        logger.info("Redis connected")

    async def _read(self) -> Optional[bytes]:
        try:
            return await self._redis.get(self.key)
        except RedisError as e:
            raise StateStoreError(f"Redis GET failed: {e}") from e

    async def _write(self, payload: bytes) -> None:
        try:
            await self.connect()
            await self._redis.set(self.key, payload)
        except RedisError as e:
            raise StateStoreError(f"Redis SET failed: {e}") from e

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None


def build_state_store(cfg: ScannerConfig) -> DedupStateStore:
    if cfg.STATE_BACKEND == "jsonbin":
        return JsonBinStateStore(cfg.JSONBIN_BIN_ID, cfg.JSONBIN_MASTER_KEY, cfg.JSONBIN_API_BASE, timeout=cfg.HTTP_TIMEOUT)
    if cfg.STATE_BACKEND == "redis":
        return RedisStateStore(cfg.REDIS_URL, cfg.STATE_KEY)
    if cfg.STATE_BACKEND == "file":
        return FileStateStore(cfg.STATE_FILE)
    return MemoryStateStore()
