import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from constants import RATE_LIMIT, RATE_LIMIT_SWEEP_INTERVAL_SECONDS, RATE_LIMIT_TIERS, RATE_WINDOW_SECONDS
from logging_config import get_logger, mask_address

logger = get_logger(__name__)


@dataclass
class AdmissionResult:
    allowed: bool
    retry_after_seconds: Optional[int] = None
    limit: Optional[int] = None


class RateLimiter:
    """Sliding-window admission control keyed by source address.

    The limit tightens as a source keeps connecting: above 50 admissions in the
    window it drops to 20, above 80 it drops to 5.
    """

    def __init__(
        self,
        limit: int = RATE_LIMIT,
        window: float = RATE_WINDOW_SECONDS,
        tiers=RATE_LIMIT_TIERS,
        clock: Callable[[], float] = time.monotonic,
        enabled: bool = True,
    ):
        self.limit = limit
        self.window = window
        self.tiers = tiers
        self.clock = clock
        self.enabled = enabled
        self._records: Dict[str, List[float]] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def effective_limit(self, count: int) -> int:
        for threshold, reduced in self.tiers:
            if count > threshold:
                return min(reduced, self.limit)
        return self.limit

    def _prune(self, timestamps: List[float], now: float) -> List[float]:
        return [t for t in timestamps if now - t < self.window]

    def admit(self, source_key: str) -> AdmissionResult:
        if not self.enabled:
            return AdmissionResult(allowed=True)

        now = self.clock()
        recent = self._prune(self._records.get(source_key, []), now)
        limit = self.effective_limit(len(recent))

        if len(recent) >= limit:
            self._records[source_key] = recent
            retry_after = math.ceil(self.window - (now - min(recent)))
            logger.warning(f"Rate limit exceeded for {mask_address(source_key)} ({len(recent)}/{limit})")
            return AdmissionResult(allowed=False, retry_after_seconds=max(retry_after, 0), limit=limit)

        recent.append(now)
        self._records[source_key] = recent
        return AdmissionResult(allowed=True, limit=limit)

    def sweep(self) -> int:
        """Drop expired timestamps everywhere and forget keys left empty."""
        now = self.clock()
        evicted = 0
        for key in list(self._records):
            recent = self._prune(self._records[key], now)
            if recent:
                self._records[key] = recent
            else:
                del self._records[key]
                evicted += 1
        if evicted:
            logger.debug(f"Rate limiter sweep evicted {evicted} idle keys, {len(self._records)} remain")
        return evicted

    def tracked_keys(self) -> int:
        return len(self._records)

    def stats(self) -> dict:
        return {"enabled": self.enabled, "tracked_keys": len(self._records), "limit": self.limit, "window": self.window}

    def has_record(self, source_key: str) -> bool:
        return source_key in self._records

    def start_sweeping(self, interval: float = RATE_LIMIT_SWEEP_INTERVAL_SECONDS):
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(interval))

    async def stop_sweeping(self):
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def _sweep_loop(self, interval: float):
        while True:
            await asyncio.sleep(interval)
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Rate limiter sweep failed: {e}", exc_info=True)
