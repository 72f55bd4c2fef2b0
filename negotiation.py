"""Per-peer offer/answer negotiation.

One NegotiationEngine runs for every remote room-mate. The engine never blocks
on the network: it sends through the signaling channel and resumes when the
matching message is handed back to it. Steps for one link are serialized by
the engine's lock; different links share nothing.
"""
import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Protocol, Set

from constants import NEGOTIATION_GRACE_SECONDS, NEGOTIATION_RESTART_TIMEOUT_SECONDS
from logging_config import get_logger

logger = get_logger(__name__)


class LinkState(str, Enum):
    NEW = "new"
    OFFERING = "offering"
    AWAITING_ANSWER = "awaiting-answer"
    ANSWERING = "answering"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({LinkState.FAILED, LinkState.CLOSED})

TransportStateHandler = Callable[[str], Awaitable[None]]
SendSignal = Callable[[str, str, Any], Awaitable[None]]


class PeerConnection(Protocol):
    """The media connection a link negotiates; see rtc.AiortcConnection."""

    def set_state_handler(self, handler: TransportStateHandler) -> None: ...

    def add_track(self, track) -> None: ...

    def remove_track(self, track) -> bool: ...

    async def create_offer(self, ice_restart: bool = False) -> dict: ...

    async def create_answer(self) -> dict: ...

    async def set_local_description(self, description: dict) -> None: ...

    async def set_remote_description(self, description: dict) -> None: ...

    async def add_ice_candidate(self, candidate: dict) -> None: ...

    async def restart_ice(self) -> None: ...

    async def rollback(self) -> None: ...

    async def get_stats(self) -> list: ...

    async def close(self) -> None: ...


def link_key(first_id: str, second_id: str) -> frozenset:
    return frozenset((first_id, second_id))


@dataclass
class PeerLink:
    local_id: str
    remote_id: str
    # the joiner initiates toward every existing member
    initiator: bool
    state: LinkState = LinkState.NEW
    pending_candidates: Deque[Any] = field(default_factory=deque)
    remote_description_set: bool = False
    # an offer/answer exchange is underway, i.e. signaling is not stable
    exchange_in_flight: bool = False
    local_offer_pending: bool = False
    renegotiation_pending: bool = False
    restart_attempted: bool = False
    grace_timer: Optional[asyncio.Task] = None
    restart_timer: Optional[asyncio.Task] = None
    created_at: float = field(default_factory=time.time)

    @property
    def key(self) -> frozenset:
        return link_key(self.local_id, self.remote_id)

    @property
    def is_active(self) -> bool:
        return self.state not in TERMINAL_STATES


class NegotiationEngine:
    def __init__(
        self,
        link: PeerLink,
        connection: PeerConnection,
        send_signal: SendSignal,
        grace_period: float = NEGOTIATION_GRACE_SECONDS,
        restart_timeout: float = NEGOTIATION_RESTART_TIMEOUT_SECONDS,
        on_terminated: Optional[Callable[[PeerLink], None]] = None,
    ):
        self.link = link
        self.connection = connection
        self.send_signal = send_signal
        self.grace_period = grace_period
        self.restart_timeout = restart_timeout
        self.on_terminated = on_terminated
        self._lock = asyncio.Lock()
        connection.set_state_handler(self.on_transport_state)

    @property
    def state(self) -> LinkState:
        return self.link.state

    @property
    def polite(self) -> bool:
        return not self.link.initiator

    @property
    def terminated(self) -> bool:
        return self.link.state in TERMINAL_STATES

    def _transition(self, new_state: LinkState):
        old_state = self.link.state
        if old_state == new_state:
            return
        self.link.state = new_state
        logger.info(f"Link {self.link.local_id}->{self.link.remote_id}: {old_state.value} -> {new_state.value}")
        if new_state != LinkState.DISCONNECTED:
            self._cancel_timer("grace_timer")

    def _cancel_timer(self, name: str):
        task = getattr(self.link, name)
        setattr(self.link, name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # Offer / answer

    async def start(self):
        """Initiate the first offer toward the remote peer."""
        async with self._lock:
            if self.link.state != LinkState.NEW:
                logger.debug(f"Not initiating to {self.link.remote_id}: link is {self.link.state.value}")
                return
            await self._send_offer()

    async def _send_offer(self, ice_restart: bool = False) -> bool:
        initial = self.link.state == LinkState.NEW
        if initial:
            self._transition(LinkState.OFFERING)
        self.link.exchange_in_flight = True
        self.link.local_offer_pending = True
        try:
            offer = await self.connection.create_offer(ice_restart=ice_restart)
            if self.terminated:
                return False
            await self.connection.set_local_description(offer)
            if self.terminated:
                return False
        except Exception as e:
            logger.error(f"Error creating offer for {self.link.remote_id}: {e}", exc_info=True)
            self.link.exchange_in_flight = False
            self.link.local_offer_pending = False
            if initial:
                await self._fail("offer creation failed")
            return False

        if initial:
            self._transition(LinkState.AWAITING_ANSWER)
        await self.send_signal(self.link.remote_id, "offer", offer)
        logger.debug(f"Offer sent to {self.link.remote_id}{' (ICE restart)' if ice_restart else ''}")
        return True

    async def handle_signal(self, kind: str, body: Any):
        if self.terminated:
            logger.debug(f"Ignoring {kind} from {self.link.remote_id}: link is {self.link.state.value}")
            return
        if kind == "candidate":
            await self.add_candidate(body)
        elif kind == "offer":
            await self._handle_offer(body)
        elif kind == "answer":
            await self._handle_answer(body)
        else:
            logger.warning(f"Unknown signal kind {kind!r} from {self.link.remote_id}")

    async def _handle_offer(self, offer: dict):
        async with self._lock:
            if self.terminated:
                return
            if self.link.local_offer_pending:
                if not self.polite:
                    logger.info(f"Ignoring colliding offer from {self.link.remote_id}")
                    return
                logger.info(f"Offer collision with {self.link.remote_id}, rolling back local offer")
                try:
                    await self.connection.rollback()
                except Exception as e:
                    logger.warning(f"Rollback with {self.link.remote_id} not supported: {e}")
                self.link.local_offer_pending = False
                self.link.renegotiation_pending = True

            initial = self.link.state == LinkState.NEW
            if initial:
                self._transition(LinkState.ANSWERING)
            elif self.link.state not in (LinkState.CONNECTED, LinkState.DISCONNECTED):
                logger.warning(f"Ignoring offer from {self.link.remote_id} in state {self.link.state.value}")
                return

            self.link.exchange_in_flight = True
            try:
                await self.connection.set_remote_description(offer)
                if self.terminated:
                    return
                await self._flush_candidates()
                answer = await self.connection.create_answer()
                if self.terminated:
                    return
                await self.connection.set_local_description(answer)
                if self.terminated:
                    return
            except Exception as e:
                logger.error(f"Error handling offer from {self.link.remote_id}: {e}", exc_info=True)
                self.link.exchange_in_flight = False
                if initial:
                    await self._fail("could not answer offer")
                return

            await self.send_signal(self.link.remote_id, "answer", answer)
            if initial:
                self._transition(LinkState.CONNECTED)
            self.link.exchange_in_flight = False
        await self._after_exchange()

    async def _handle_answer(self, answer: dict):
        async with self._lock:
            if self.terminated:
                return
            if not self.link.local_offer_pending:
                logger.warning(f"Unexpected answer from {self.link.remote_id}, no offer outstanding")
                return
            try:
                await self.connection.set_remote_description(answer)
                if self.terminated:
                    return
                self.link.local_offer_pending = False
                await self._flush_candidates()
            except Exception as e:
                logger.error(f"Error handling answer from {self.link.remote_id}: {e}", exc_info=True)
                self.link.exchange_in_flight = False
                self.link.local_offer_pending = False
                if self.link.state == LinkState.AWAITING_ANSWER:
                    await self._fail("could not apply answer")
                return

            if self.link.state == LinkState.AWAITING_ANSWER:
                self._transition(LinkState.CONNECTED)
            self.link.exchange_in_flight = False
        await self._after_exchange()

    async def _after_exchange(self):
        if self.link.renegotiation_pending and self.link.state == LinkState.CONNECTED:
            self.link.renegotiation_pending = False
            await self.renegotiate()

    async def renegotiate(self) -> bool:
        """Run a new offer/answer round, e.g. after a local track was added or removed.

        Deferred until the current exchange completes when signaling is not stable.
        """
        if self.terminated:
            return False
        if self.link.state != LinkState.CONNECTED or self.link.exchange_in_flight or self._lock.locked():
            logger.debug(f"Deferring renegotiation with {self.link.remote_id}")
            self.link.renegotiation_pending = True
            return False
        async with self._lock:
            if self.terminated:
                return False
            if self.link.state != LinkState.CONNECTED or self.link.exchange_in_flight:
                self.link.renegotiation_pending = True
                return False
            return await self._send_offer()

    # Candidates

    async def add_candidate(self, candidate: Any):
        if self.terminated:
            return
        if not self.link.remote_description_set:
            self.link.pending_candidates.append(candidate)
            logger.debug(
                f"Queuing candidate for {self.link.remote_id} (remote description not set, "
                f"{len(self.link.pending_candidates)} queued)"
            )
            return
        try:
            await self.connection.add_ice_candidate(candidate)
        except Exception as e:
            # common during connection setup, not fatal
            logger.warning(f"Error adding candidate for {self.link.remote_id}: {e}")

    async def _flush_candidates(self):
        queue = self.link.pending_candidates
        if queue:
            logger.debug(f"Processing {len(queue)} pending candidates for {self.link.remote_id}")
        while queue:
            candidate = queue.popleft()
            try:
                await self.connection.add_ice_candidate(candidate)
            except Exception as e:
                logger.error(f"Error adding queued candidate for {self.link.remote_id}: {e}")
            if self.terminated:
                return
        self.link.remote_description_set = True

    # Transport health and recovery

    async def on_transport_state(self, state: str):
        if self.terminated:
            return
        logger.debug(f"Transport state with {self.link.remote_id}: {state}")
        if state == "connected":
            self._cancel_timer("grace_timer")
            if self.link.restart_timer is not None:
                logger.info(f"Connection with {self.link.remote_id} recovered after restart")
                self._cancel_timer("restart_timer")
            self.link.restart_attempted = False
            if self.link.state == LinkState.DISCONNECTED:
                self._transition(LinkState.CONNECTED)
                # renegotiation deferred while disconnected runs now
                if not self.link.exchange_in_flight:
                    await self._after_exchange()
        elif state == "disconnected":
            if self.link.state == LinkState.CONNECTED:
                self._transition(LinkState.DISCONNECTED)
                self._cancel_timer("grace_timer")
                self.link.grace_timer = asyncio.create_task(self._grace_expired())
        elif state == "failed":
            self._cancel_timer("grace_timer")
            await self._begin_restart()
        elif state == "closed":
            await self.close()

    async def _grace_expired(self):
        await asyncio.sleep(self.grace_period)
        self.link.grace_timer = None
        if self.link.state == LinkState.DISCONNECTED:
            logger.info(f"Connection with {self.link.remote_id} still disconnected after {self.grace_period}s")
            await self._begin_restart()

    async def _begin_restart(self):
        if self.terminated:
            return
        if self.link.restart_attempted:
            if self.link.restart_timer is None:
                await self._fail("connection failed again after restart")
            return

        self.link.restart_attempted = True
        if self.link.state == LinkState.CONNECTED:
            self._transition(LinkState.DISCONNECTED)
        logger.warning(f"Attempting connection restart with {self.link.remote_id}")
        self.link.restart_timer = asyncio.create_task(self._restart_timed_out())
        try:
            await self.connection.restart_ice()
            async with self._lock:
                if self.terminated:
                    return
                sent = await self._send_offer(ice_restart=True)
        except Exception as e:
            logger.error(f"Connection restart with {self.link.remote_id} failed: {e}", exc_info=True)
            sent = False
        if not sent and not self.terminated:
            await self._fail("restart offer could not be sent")

    async def _restart_timed_out(self):
        await asyncio.sleep(self.restart_timeout)
        self.link.restart_timer = None
        if self.link.state != LinkState.CONNECTED:
            await self._fail(f"restart did not reconnect within {self.restart_timeout}s")

    # Teardown

    async def _fail(self, reason: str):
        if self.terminated:
            return
        logger.error(f"Link with {self.link.remote_id} failed: {reason}")
        self._transition(LinkState.FAILED)
        await self._teardown()

    async def close(self):
        if self.terminated:
            return
        self._transition(LinkState.CLOSED)
        await self._teardown()

    async def _teardown(self):
        self._cancel_timer("grace_timer")
        self._cancel_timer("restart_timer")
        self.link.pending_candidates.clear()
        self.link.renegotiation_pending = False
        self.link.exchange_in_flight = False
        self.link.local_offer_pending = False
        try:
            await self.connection.close()
        except Exception as e:
            logger.error(f"Error closing connection for {self.link.remote_id}: {e}")
        logger.info(f"Cleaned up link with {self.link.remote_id} ({self.link.state.value})")
        if self.on_terminated is not None:
            self.on_terminated(self.link)


ConnectionFactory = Callable[[str], PeerConnection]


class PeerMesh:
    """All links of one participant, keyed by remote participant id."""

    def __init__(
        self,
        connection_factory: ConnectionFactory,
        send_signal: SendSignal,
        local_id: Optional[str] = None,
        grace_period: float = NEGOTIATION_GRACE_SECONDS,
        restart_timeout: float = NEGOTIATION_RESTART_TIMEOUT_SECONDS,
        on_link_failed: Optional[Callable[[PeerLink], None]] = None,
    ):
        self.connection_factory = connection_factory
        self.send_signal = send_signal
        self.local_id = local_id
        self.grace_period = grace_period
        self.restart_timeout = restart_timeout
        self.on_link_failed = on_link_failed
        self.engines: Dict[str, NegotiationEngine] = {}

    @property
    def active_links(self) -> Set[str]:
        return {remote_id for remote_id, engine in self.engines.items() if engine.link.is_active}

    def get(self, remote_id: str) -> Optional[NegotiationEngine]:
        return self.engines.get(remote_id)

    def _create(self, remote_id: str, initiator: bool) -> NegotiationEngine:
        link = PeerLink(local_id=self.local_id, remote_id=remote_id, initiator=initiator)
        engine = NegotiationEngine(
            link,
            self.connection_factory(remote_id),
            self.send_signal,
            grace_period=self.grace_period,
            restart_timeout=self.restart_timeout,
            on_terminated=self._on_terminated,
        )
        self.engines[remote_id] = engine
        return engine

    def _on_terminated(self, link: PeerLink):
        engine = self.engines.get(link.remote_id)
        if engine is not None and engine.link is link:
            del self.engines[link.remote_id]
        if link.state == LinkState.FAILED and self.on_link_failed is not None:
            self.on_link_failed(link)

    async def on_join_accepted(self, local_id: str, existing_member_ids: List[str]):
        """Offer to every member that was already in the room."""
        self.local_id = local_id
        engines = []
        for remote_id in existing_member_ids:
            if remote_id == local_id or remote_id in self.engines:
                continue
            engines.append(self._create(remote_id, initiator=True))
        await asyncio.gather(*(engine.start() for engine in engines))

    def on_member_joined(self, remote_id: str) -> NegotiationEngine:
        """A newcomer will send the offer; wait for it."""
        engine = self.engines.get(remote_id)
        if engine is None:
            engine = self._create(remote_id, initiator=False)
        return engine

    async def on_member_left(self, remote_id: str):
        engine = self.engines.pop(remote_id, None)
        if engine is not None:
            await engine.close()

    async def on_signal(self, from_id: str, kind: str, body: Any):
        engine = self.engines.get(from_id)
        if engine is None:
            if kind == "answer":
                logger.warning(f"Answer from {from_id} without a link, ignoring")
                return
            engine = self._create(from_id, initiator=False)
        await engine.handle_signal(kind, body)

    async def renegotiate_all(self):
        await asyncio.gather(*(engine.renegotiate() for engine in list(self.engines.values())))

    async def on_kicked(self):
        logger.info("Removed from room, closing all links")
        await self.close_all()

    async def close_all(self):
        engines = list(self.engines.values())
        self.engines.clear()
        await asyncio.gather(*(engine.close() for engine in engines))
