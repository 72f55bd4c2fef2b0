"""Connection quality sampling and signaling liveness.

Everything here is observational. A bad sample or a missed pong is logged and
reported through callbacks; tearing a link down is left to the negotiation
engine's own failure policy.
"""
import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from constants import (
    HEALTH_PING_INTERVAL_SECONDS,
    HEALTH_PONG_TIMEOUT_SECONDS,
    HEALTH_SAMPLE_INTERVAL_SECONDS,
    POOR_QUALITY_PACKET_LOSS,
    POOR_QUALITY_RTT_MS,
    QUALITY_REPORT_INTERVAL_SECONDS,
)
from logging_config import get_logger
from negotiation import LinkState, PeerMesh

logger = get_logger(__name__)


def _field(report: Any, name: str, default=None):
    if isinstance(report, dict):
        return report.get(name, default)
    return getattr(report, name, default)


@dataclass
class StatsSnapshot:
    timestamp: float
    bytes_sent: int = 0
    bytes_received: int = 0
    packets_received: int = 0
    packets_lost: int = 0
    rtt_ms: float = 0.0


@dataclass
class QualitySample:
    remote_id: str
    timestamp: float
    bitrate_kbps: float
    packet_loss: float
    rtt_ms: float

    @property
    def is_poor(self) -> bool:
        return self.packet_loss > POOR_QUALITY_PACKET_LOSS or self.rtt_ms > POOR_QUALITY_RTT_MS


def parse_stats(reports: Iterable[Any], timestamp: float) -> StatsSnapshot:
    """Fold a stats report (aiortc stats objects or browser-style dicts) into counters."""
    snapshot = StatsSnapshot(timestamp=timestamp)
    transport_bytes = None
    for report in reports:
        kind = _field(report, "type")
        if kind == "transport":
            transport_bytes = (_field(report, "bytesSent", 0) or 0, _field(report, "bytesReceived", 0) or 0)
        elif kind == "outbound-rtp":
            snapshot.bytes_sent += _field(report, "bytesSent", 0) or 0
        elif kind == "inbound-rtp":
            snapshot.bytes_received += _field(report, "bytesReceived", 0) or 0
            snapshot.packets_received += _field(report, "packetsReceived", 0) or 0
            snapshot.packets_lost += _field(report, "packetsLost", 0) or 0
        elif kind == "remote-inbound-rtp":
            rtt = _field(report, "roundTripTime")
            if rtt:
                snapshot.rtt_ms = max(snapshot.rtt_ms, rtt * 1000)
        elif kind == "candidate-pair" and _field(report, "state") == "succeeded":
            rtt = _field(report, "currentRoundTripTime")
            if rtt:
                snapshot.rtt_ms = max(snapshot.rtt_ms, rtt * 1000)
    if transport_bytes is not None and not (snapshot.bytes_sent or snapshot.bytes_received):
        snapshot.bytes_sent, snapshot.bytes_received = transport_bytes
    return snapshot


def compute_sample(remote_id: str, previous: Optional[StatsSnapshot], current: StatsSnapshot) -> QualitySample:
    bitrate = 0.0
    packet_loss = 0.0
    if previous is not None and current.timestamp > previous.timestamp:
        elapsed = current.timestamp - previous.timestamp
        delta_bytes = (current.bytes_sent - previous.bytes_sent) + (current.bytes_received - previous.bytes_received)
        bitrate = max(delta_bytes, 0) * 8 / 1000 / elapsed
        received = current.packets_received - previous.packets_received
        lost = current.packets_lost - previous.packets_lost
        if received + lost > 0 and lost > 0:
            packet_loss = lost / (received + lost) * 100
    elif current.packets_lost and current.packets_received:
        packet_loss = current.packets_lost / (current.packets_lost + current.packets_received) * 100
    return QualitySample(
        remote_id=remote_id,
        timestamp=current.timestamp,
        bitrate_kbps=round(bitrate, 1),
        packet_loss=round(packet_loss, 1),
        rtt_ms=round(current.rtt_ms, 1),
    )


class ConnectionHealthMonitor:
    def __init__(
        self,
        mesh: PeerMesh,
        send_ping: Callable[[float], Awaitable[None]],
        sample_interval: float = HEALTH_SAMPLE_INTERVAL_SECONDS,
        ping_interval: float = HEALTH_PING_INTERVAL_SECONDS,
        pong_timeout: float = HEALTH_PONG_TIMEOUT_SECONDS,
        send_report: Optional[Callable[[dict], Awaitable[None]]] = None,
        report_interval: float = QUALITY_REPORT_INTERVAL_SECONDS,
        on_sample: Optional[Callable[[QualitySample], None]] = None,
        on_liveness_lost: Optional[Callable[[float], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.mesh = mesh
        self.send_ping = send_ping
        self.sample_interval = sample_interval
        self.ping_interval = ping_interval
        self.pong_timeout = pong_timeout
        self.send_report = send_report
        self.report_interval = report_interval
        self.on_sample = on_sample
        self.on_liveness_lost = on_liveness_lost
        self.clock = clock
        self.latest: Dict[str, QualitySample] = {}
        self.last_latency_ms: Optional[float] = None
        self.liveness_ok = True
        self._snapshots: Dict[str, StatsSnapshot] = {}
        self._outstanding_ping: Optional[float] = None
        self._tasks = []

    async def sample_once(self) -> Dict[str, QualitySample]:
        self.check_liveness()
        now = self.clock()
        live = set()
        for remote_id, engine in list(self.mesh.engines.items()):
            if engine.link.state not in (LinkState.CONNECTED, LinkState.DISCONNECTED):
                continue
            live.add(remote_id)
            try:
                reports = await engine.connection.get_stats()
            except Exception as e:
                logger.debug(f"Could not read stats for {remote_id}: {e}")
                continue
            snapshot = parse_stats(reports, now)
            sample = compute_sample(remote_id, self._snapshots.get(remote_id), snapshot)
            self._snapshots[remote_id] = snapshot
            self.latest[remote_id] = sample
            if sample.is_poor:
                logger.warning(
                    f"Poor connection quality with {remote_id}: loss={sample.packet_loss}% rtt={sample.rtt_ms}ms"
                )
            if self.on_sample is not None:
                self.on_sample(sample)

        for remote_id in set(self._snapshots) - live:
            self._snapshots.pop(remote_id, None)
            self.latest.pop(remote_id, None)
        return dict(self.latest)

    def averages(self) -> dict:
        samples = list(self.latest.values())
        count = len(samples)
        if not count:
            return {"peers_count": 0, "avg_bitrate_kbps": 0.0, "avg_packet_loss": 0.0, "avg_rtt_ms": 0.0}
        return {
            "peers_count": count,
            "avg_bitrate_kbps": sum(s.bitrate_kbps for s in samples) / count,
            "avg_packet_loss": sum(s.packet_loss for s in samples) / count,
            "avg_rtt_ms": sum(s.rtt_ms for s in samples) / count,
        }

    async def report_once(self) -> bool:
        """Send the current averages, skipped until there is a sample to report."""
        if self.send_report is None or not self.latest:
            return False
        await self.send_report(self.averages())
        return True

    async def ping_once(self):
        self.check_liveness()
        self._outstanding_ping = self.clock() * 1000
        await self.send_ping(self._outstanding_ping)

    def check_liveness(self) -> bool:
        """Flag a ping that went unanswered for longer than the pong timeout."""
        if self._outstanding_ping is None:
            return self.liveness_ok
        waited = self.clock() - self._outstanding_ping / 1000
        if waited >= self.pong_timeout and self.liveness_ok:
            self._liveness_lost(waited)
        return self.liveness_ok

    def _liveness_lost(self, waited: float):
        logger.warning(f"No pong from signaling server for {waited:.1f}s")
        self.liveness_ok = False
        if self.on_liveness_lost is not None:
            self.on_liveness_lost(waited)

    def record_pong(self, timestamp: float) -> Optional[float]:
        """Match a pong to the outstanding ping and return the round trip in ms."""
        if self._outstanding_ping is None or timestamp != self._outstanding_ping:
            logger.debug(f"Ignoring stale pong {timestamp}")
            return None
        self._outstanding_ping = None
        self.last_latency_ms = self.clock() * 1000 - timestamp
        if not self.liveness_ok:
            logger.info("Signaling server answering pings again")
        self.liveness_ok = True
        return self.last_latency_ms

    def start(self):
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._loop(self.sample_interval, self.sample_once)),
            asyncio.create_task(self._loop(self.ping_interval, self.ping_once)),
        ]
        if self.send_report is not None:
            self._tasks.append(asyncio.create_task(self._loop(self.report_interval, self.report_once)))

    async def stop(self):
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _loop(self, interval: float, step):
        while True:
            await asyncio.sleep(interval)
            try:
                await step()
            except Exception as e:
                logger.error(f"Health monitor step failed: {e}", exc_info=True)
