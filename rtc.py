"""aiortc-backed media connection used by the negotiation engine."""
from typing import Iterable

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from logging_config import get_logger

logger = get_logger(__name__)


def build_configuration(relay_servers: Iterable[dict]) -> RTCConfiguration:
    """Turn the opaque relay-server list from join-accepted into an RTCConfiguration."""
    ice_servers = []
    for server in relay_servers or []:
        urls = server.get("urls")
        if not urls:
            logger.warning(f"Skipping relay server without urls: {server}")
            continue
        ice_servers.append(
            RTCIceServer(urls=urls, username=server.get("username"), credential=server.get("credential"))
        )
    return RTCConfiguration(iceServers=ice_servers)


class AiortcConnection:
    def __init__(self, remote_id: str, relay_servers: Iterable[dict] = ()):
        self.remote_id = remote_id
        self.pc = RTCPeerConnection(build_configuration(relay_servers))
        self._state_handler = None

        @self.pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.debug(f"Connection state with {remote_id}: {self.pc.connectionState}")
            if self._state_handler is not None:
                await self._state_handler(self.pc.connectionState)

    def set_state_handler(self, handler):
        self._state_handler = handler

    def add_track(self, track):
        return self.pc.addTrack(track)

    def remove_track(self, track) -> bool:
        """Stop sending a track. Its transceiver and m-line stay in later offers."""
        for sender in self.pc.getSenders():
            if sender.track is track:
                sender.replaceTrack(None)
                return True
        return False

    async def create_offer(self, ice_restart: bool = False) -> dict:
        # aiortc has no iceRestart option, a fresh offer re-runs gathering on new transports only
        offer = await self.pc.createOffer()
        return {"type": offer.type, "sdp": offer.sdp}

    async def create_answer(self) -> dict:
        answer = await self.pc.createAnswer()
        return {"type": answer.type, "sdp": answer.sdp}

    async def set_local_description(self, description: dict) -> None:
        await self.pc.setLocalDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))
        # aiortc gathers candidates here rather than trickling them, so the
        # description that goes over the wire must be the gathered one
        description["sdp"] = self.pc.localDescription.sdp

    async def set_remote_description(self, description: dict) -> None:
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=description["sdp"], type=description["type"]))

    async def add_ice_candidate(self, candidate: dict) -> None:
        raw = (candidate or {}).get("candidate", "")
        if not raw:
            logger.debug(f"End of candidates from {self.remote_id}")
            return
        if raw.startswith("candidate:"):
            raw = raw[len("candidate:"):]
        ice_candidate = candidate_from_sdp(raw)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice_candidate)

    async def restart_ice(self) -> None:
        logger.info(f"aiortc cannot restart ICE in place for {self.remote_id}, renegotiating instead")

    async def rollback(self) -> None:
        await self.pc.setLocalDescription(RTCSessionDescription(sdp="", type="rollback"))

    async def get_stats(self) -> list:
        report = await self.pc.getStats()
        return list(report.values())

    async def close(self) -> None:
        await self.pc.close()


def connection_factory(relay_servers: Iterable[dict]):
    """Build the per-peer factory PeerMesh expects."""

    def create(remote_id: str) -> AiortcConnection:
        return AiortcConnection(remote_id, relay_servers)

    return create
