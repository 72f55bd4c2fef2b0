import asyncio
from typing import Coroutine, Optional, Set

from connections import ConnectionManager
from constants import (
    IS_PRODUCTION,
    KICK_DISCONNECT_DELAY_SECONDS,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_SWEEP_INTERVAL_SECONDS,
    ROOM_SWEEP_INTERVAL_SECONDS,
)
from directory import SessionDirectory
from logging_config import get_logger
from membership import MembershipManager
from rate_limiter import RateLimiter
from relay import SignalRelay

logger = get_logger(__name__)


class SessionStore:
    """Everything the server keeps in memory, built once and handed to handlers.

    Owns the background sweeps: rate-limit pruning and idle-room reclamation.
    """

    def __init__(
        self,
        directory: Optional[SessionDirectory] = None,
        rate_limiter: Optional[RateLimiter] = None,
        membership: Optional[MembershipManager] = None,
        connections: Optional[ConnectionManager] = None,
        room_sweep_interval: float = ROOM_SWEEP_INTERVAL_SECONDS,
        rate_sweep_interval: float = RATE_LIMIT_SWEEP_INTERVAL_SECONDS,
        kick_disconnect_delay: float = KICK_DISCONNECT_DELAY_SECONDS,
    ):
        self.directory = directory if directory is not None else SessionDirectory()
        self.rate_limiter = rate_limiter if rate_limiter is not None else RateLimiter(enabled=RATE_LIMIT_ENABLED)
        self.membership = membership if membership is not None else MembershipManager(self.directory)
        self.connections = connections if connections is not None else ConnectionManager()
        self.relay = SignalRelay(self.directory, self.connections)
        self.room_sweep_interval = room_sweep_interval
        self.rate_sweep_interval = rate_sweep_interval
        self.kick_disconnect_delay = kick_disconnect_delay
        self._room_sweep_task: Optional[asyncio.Task] = None
        # deferred work such as kick disconnects, held until it finishes
        self.background_tasks: Set[asyncio.Task] = set()
        self.production = IS_PRODUCTION

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def start(self):
        self.rate_limiter.start_sweeping(self.rate_sweep_interval)
        if self._room_sweep_task is None or self._room_sweep_task.done():
            self._room_sweep_task = asyncio.create_task(self._room_sweep_loop())
        logger.info("Session store background sweeps started")

    async def stop(self):
        await self.rate_limiter.stop_sweeping()
        if self._room_sweep_task is not None:
            self._room_sweep_task.cancel()
            try:
                await self._room_sweep_task
            except asyncio.CancelledError:
                pass
            self._room_sweep_task = None
        tasks = list(self.background_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Session store background sweeps stopped")

    async def _room_sweep_loop(self):
        while True:
            await asyncio.sleep(self.room_sweep_interval)
            try:
                await self.membership.sweep_idle_rooms()
            except Exception as e:
                logger.error(f"Idle room sweep failed: {e}", exc_info=True)
