"""Participant side of the signaling channel.

Joins a room over the WebSocket, runs one negotiation engine per room-mate
through PeerMesh, and keeps the health monitor alongside it.
"""
import asyncio
import json
from typing import Callable, Dict, Iterable, List, Optional

import websockets

import rtc
from constants import SIGNALING_URL
from health_monitor import ConnectionHealthMonitor, QualitySample
from logging_config import get_logger
from negotiation import PeerConnection, PeerLink, PeerMesh
from schemas.messages import (
    ErrorEnvelope,
    ForceMute,
    HostChanged,
    HostTransferred,
    JoinAccepted,
    JoinRejected,
    JoinRequest,
    Kicked,
    KickRequest,
    LeaveRequest,
    MemberJoined,
    MemberKicked,
    MemberLeft,
    MuteRequest,
    PeerQuality,
    Ping,
    Pong,
    QualityReport,
    SignalDelivery,
    SignalRequest,
    WireModel,
    server_message_adapter,
)

logger = get_logger(__name__)


class SignalingClient:
    def __init__(
        self,
        uri: str = SIGNALING_URL,
        connection_factory: Optional[Callable[[str], PeerConnection]] = None,
        tracks: Optional[Iterable] = None,
        event_callback: Optional[Callable[[str, object], None]] = None,
    ):
        self.uri = uri
        self.connection_factory = connection_factory
        self.local_tracks: List = list(tracks or [])
        self.event_callback = event_callback
        self.websocket = None
        self.participant_id: Optional[str] = None
        self.room_id: Optional[str] = None
        self.is_host = False
        self.relay_servers: list = []
        self.joined = asyncio.Event()
        self._listen_task: Optional[asyncio.Task] = None
        # one queue and worker per remote, so a slow link never holds up the listen loop
        self._signal_queues: Dict[str, asyncio.Queue] = {}
        self._signal_workers: Dict[str, asyncio.Task] = {}

        self.mesh = PeerMesh(self._create_connection, self.send_signal, on_link_failed=self._on_link_failed)
        self.monitor = ConnectionHealthMonitor(
            self.mesh,
            self.send_ping,
            send_report=self._send_quality_report,
            on_sample=self._on_quality_sample,
            on_liveness_lost=self._on_liveness_lost,
        )

        self._handlers: Dict[type, Callable] = {
            JoinAccepted: self._on_join_accepted,
            JoinRejected: self._on_join_rejected,
            MemberJoined: self._on_member_joined,
            MemberLeft: self._on_member_left,
            HostChanged: self._on_host_changed,
            HostTransferred: self._on_host_transferred,
            SignalDelivery: self._on_signal,
            Kicked: self._on_kicked,
            MemberKicked: self._notify_only("MEMBER_KICKED"),
            ForceMute: self._notify_only("FORCE_MUTE"),
            PeerQuality: self._notify_only("PEER_QUALITY"),
            Pong: self._on_pong,
            ErrorEnvelope: self._on_error,
        }

    def _notify(self, event_type: str, data=None):
        if self.event_callback is not None:
            self.event_callback(event_type, data)

    def _notify_only(self, event_type: str):
        async def handler(message):
            self._notify(event_type, message)

        return handler

    def _create_connection(self, remote_id: str) -> PeerConnection:
        factory = self.connection_factory or rtc.connection_factory(self.relay_servers)
        connection = factory(remote_id)
        for track in self.local_tracks:
            connection.add_track(track)
        return connection

    # Outbound

    async def connect(self):
        self.websocket = await websockets.connect(self.uri)
        self._listen_task = asyncio.create_task(self.listen())
        logger.info(f"Connected to signaling server at {self.uri}")

    async def send(self, message: WireModel):
        if self.websocket is None:
            raise RuntimeError("Not connected to the signaling server")
        await self.websocket.send(json.dumps(message.dump()))

    async def join(self, room_id: str, nickname: str):
        await self.send(JoinRequest(room_id=room_id, nickname=nickname))

    async def send_signal(self, to: str, kind: str, body):
        await self.send(SignalRequest(to=to, kind=kind, body=body))

    async def send_ping(self, timestamp: float):
        await self.send(Ping(timestamp=timestamp))

    async def kick(self, target_id: str, reason: Optional[str] = None):
        await self.send(KickRequest(target_id=target_id, reason=reason))

    async def mute(self, target_id: str):
        await self.send(MuteRequest(target_id=target_id))

    async def report_quality(self):
        await self._send_quality_report(self.monitor.averages())

    async def _send_quality_report(self, averages: dict):
        await self.send(QualityReport(**averages))

    async def add_track(self, track):
        """Send a local track to every room-mate, renegotiating each link."""
        self.local_tracks.append(track)
        for engine in list(self.mesh.engines.values()):
            engine.connection.add_track(track)
        await self.mesh.renegotiate_all()

    async def remove_track(self, track) -> bool:
        if track not in self.local_tracks:
            return False
        self.local_tracks.remove(track)
        for engine in list(self.mesh.engines.values()):
            engine.connection.remove_track(track)
        await self.mesh.renegotiate_all()
        return True

    async def leave(self):
        await self.send(LeaveRequest())
        await self._reset_room()

    # Inbound

    async def listen(self):
        try:
            async for raw in self.websocket:
                await self.handle_raw(raw)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Signaling connection closed")
        finally:
            self._notify("DISCONNECTED")

    async def handle_raw(self, raw: str):
        try:
            message = server_message_adapter.validate_json(raw)
        except ValueError as e:
            logger.warning(f"Discarding malformed server message: {e}")
            return
        await self._handlers[type(message)](message)

    async def _on_join_accepted(self, message: JoinAccepted):
        self.participant_id = message.participant_id
        self.room_id = message.room_meta.id
        self.is_host = message.is_host
        self.relay_servers = message.relay_servers
        self.joined.set()
        logger.info(f"Joined room {self.room_id} as {self.participant_id} (host: {self.is_host})")
        self._notify("JOINED", message)
        await self.mesh.on_join_accepted(self.participant_id, [member.id for member in message.existing_members])
        self.monitor.start()

    async def _on_join_rejected(self, message: JoinRejected):
        logger.warning(f"Join rejected: {message.error_kind} {message.message}")
        self._notify("JOIN_REJECTED", message)

    async def _on_member_joined(self, message: MemberJoined):
        self.mesh.on_member_joined(message.id)
        self._notify("MEMBER_JOINED", message)

    async def _on_member_left(self, message: MemberLeft):
        await self._stop_signal_worker(message.id)
        await self.mesh.on_member_left(message.id)
        self._notify("MEMBER_LEFT", message)

    async def _on_host_changed(self, message: HostChanged):
        self.is_host = message.new_host_id == self.participant_id
        self._notify("HOST_CHANGED", message)

    async def _on_host_transferred(self, message: HostTransferred):
        self.is_host = True
        self._notify("HOST_TRANSFERRED", message)

    async def _on_signal(self, message: SignalDelivery):
        remote_id = message.from_
        queue = self._signal_queues.get(remote_id)
        if queue is None:
            queue = self._signal_queues[remote_id] = asyncio.Queue()
            self._signal_workers[remote_id] = asyncio.create_task(self._signal_worker(remote_id, queue))
        queue.put_nowait((message.kind, message.body))

    async def _signal_worker(self, remote_id: str, queue: asyncio.Queue):
        while True:
            kind, body = await queue.get()
            try:
                await self.mesh.on_signal(remote_id, kind, body)
            except Exception as e:
                logger.error(f"Error handling {kind} from {remote_id}: {e}", exc_info=True)
            finally:
                queue.task_done()

    async def signals_settled(self):
        """Wait until every signal received so far has been handled by its link."""
        await asyncio.gather(*(queue.join() for queue in list(self._signal_queues.values())))

    async def _stop_signal_worker(self, remote_id: str):
        self._signal_queues.pop(remote_id, None)
        task = self._signal_workers.pop(remote_id, None)
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _on_kicked(self, message: Kicked):
        logger.info(f"Kicked from room {self.room_id}: {message.reason}")
        self._notify("KICKED", message)
        await self._reset_room()

    async def _on_pong(self, message: Pong):
        latency = self.monitor.record_pong(message.timestamp)
        if latency is not None:
            logger.debug(f"Signaling latency {latency:.0f} ms")

    async def _on_error(self, message: ErrorEnvelope):
        logger.warning(f"Server error {message.kind}: {message.message}")
        self._notify("ERROR", message)

    def _on_link_failed(self, link: PeerLink):
        self._notify("LINK_FAILED", link.remote_id)

    def _on_quality_sample(self, sample: QualitySample):
        self._notify("QUALITY_SAMPLE", sample)

    def _on_liveness_lost(self, waited: float):
        self._notify("LIVENESS_LOST", waited)

    async def _reset_room(self):
        await self.monitor.stop()
        for remote_id in list(self._signal_workers):
            await self._stop_signal_worker(remote_id)
        await self.mesh.close_all()
        self.room_id = None
        self.is_host = False
        self.joined.clear()

    async def close(self):
        await self._reset_room()
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except asyncio.CancelledError:
                pass
            self._listen_task = None
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
