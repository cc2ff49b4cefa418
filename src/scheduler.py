from __future__ import annotations
import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from scanner_config import ProviderProfile
from scanner_errors import ScannerError
from scanner_logging import SYMBOL_ID

logger = logging.getLogger("kiwi_scanner.scheduler")

T = TypeVar("T")

ComputeFn = Callable[[str], Awaitable[Optional[T]]]
ChunkCallback = Callable[[List[T], List[T]], Any]


@dataclass
class ScanResult(Generic[T]):
    results: List[T] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    cancelled: bool = False
    chunks_done: int = 0
    elapsed: float = 0.0


class FetchScheduler:
    """
    Walks a symbol list in chunks of `chunk_size`, running the compute
    closure concurrently inside a chunk and sleeping `chunk_delay` between
    chunks.  A failing symbol yields nothing and never stops its siblings.
    Setting the cancel event stops forward progress: no further chunk is
    dispatched, a pending inter-chunk sleep ends early, and the results of
    a chunk that was in flight when cancellation landed are dropped.
    """

    def __init__(self, chunk_size: int, chunk_delay: float, name: str = "default"):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if chunk_delay < 0:
            raise ValueError("chunk_delay must be >= 0")
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.name = name

    @classmethod
    def from_profile(cls, profile: ProviderProfile) -> "FetchScheduler":
        return cls(profile.chunk_size, profile.chunk_delay_sec, profile.name)

    def chunks(self, symbols: Sequence[str]) -> List[List[str]]:
        return [list(symbols[i:i + self.chunk_size]) for i in range(0, len(symbols), self.chunk_size)]

    async def _guarded(self, compute: ComputeFn, symbol: str) -> Optional[T]:
        token = SYMBOL_ID.set(symbol)
        try:
            return await compute(symbol)
        except asyncio.CancelledError:
            raise
        except (ScannerError, ValueError, ArithmeticError) as e:
            logger.warning(f"{symbol} skipped: {e}")
            return None
        except Exception as e:
            logger.error(f"{symbol} failed unexpectedly: {e!r}", exc_info=True)
            return None
        finally:
            SYMBOL_ID.reset(token)

    @staticmethod
    async def _pause(delay: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def run(
        self,
        symbols: Sequence[str],
        compute: ComputeFn,
        cancel_event: Optional[asyncio.Event] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> ScanResult:
        start = time.monotonic()
        result: ScanResult = ScanResult()
        chunks = self.chunks(symbols)

        def is_cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        logger.debug(f"[{self.name}] scanning {len(symbols)} symbols in {len(chunks)} chunks of <= {self.chunk_size}")

        for idx, chunk in enumerate(chunks):
            if is_cancelled():
                result.cancelled = True
                break

            outcomes = await asyncio.gather(*[self._guarded(compute, sym) for sym in chunk])

            if is_cancelled():
                result.cancelled = True
                break

            chunk_results = []
            for sym, outcome in zip(chunk, outcomes):
                if outcome is None:
                    result.failed.append(sym)
                else:
                    chunk_results.append(outcome)
            result.results.extend(chunk_results)
            result.chunks_done += 1

            if on_chunk is not None:
                maybe = on_chunk(chunk_results, list(result.results))
                if inspect.isawaitable(maybe):
                    await maybe

            if idx < len(chunks) - 1 and not is_cancelled():
                await self._pause(self.chunk_delay, cancel_event)

        if result.cancelled:
            logger.info(f"[{self.name}] scan cancelled after {result.chunks_done}/{len(chunks)} chunks")

        result.elapsed = time.monotonic() - start
        logger.debug(
            f"[{self.name}] scan done | ok={len(result.results)} failed={len(result.failed)} "
            f"chunks={result.chunks_done}/{len(chunks)} elapsed={result.elapsed:.2f}s"
        )
        return result

    def get_stats(self) -> Dict[str, Any]:
        return {"name": self.name, "chunk_size": self.chunk_size, "chunk_delay": self.chunk_delay}
