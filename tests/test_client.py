import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from client import SignalingClient
from health_monitor import QualitySample
from negotiation import LinkState
from tests.fakes import FakeConnection


class FakeServerSocket:
    """Client-side websocket stand-in that records outgoing frames."""

    def __init__(self):
        self.sent = []
        self.close = AsyncMock()

    async def send(self, data: str):
        self.sent.append(json.loads(data))

    def of_type(self, message_type: str) -> list:
        return [m for m in self.sent if m["type"] == message_type]

    def signals(self, kind: str = None) -> list:
        return [(m["to"], m["kind"]) for m in self.of_type("signal") if kind is None or m["kind"] == kind]


def _accepted(participant_id, existing, is_host=False) -> str:
    return json.dumps(
        {
            "type": "join-accepted",
            "participantId": participant_id,
            "existingMembers": [{"id": pid, "nickname": pid.upper()} for pid in existing],
            "isHost": is_host,
            "roomMeta": {"id": "lobby", "createdAt": 1.0, "memberCount": len(existing) + 1, "capacity": 10},
            "relayServers": [],
        }
    )


def _signal(from_id, kind, body) -> str:
    return json.dumps(
        {"type": "signal", "from": from_id, "roomId": "lobby", "kind": kind, "body": body, "timestamp": 3.0}
    )


def _offer(from_id) -> str:
    return _signal(from_id, "offer", {"type": "offer", "sdp": "v=0"})


def _answer(from_id) -> str:
    return _signal(from_id, "answer", {"type": "answer", "sdp": "v=0"})


@pytest.fixture
def events():
    return MagicMock()


@pytest.fixture
def connections():
    return {}


@pytest.fixture
def client(events, connections):
    def factory(remote_id):
        connections[remote_id] = FakeConnection()
        return connections[remote_id]

    signaling = SignalingClient(uri="ws://test/ws", connection_factory=factory, event_callback=events)
    signaling.websocket = FakeServerSocket()
    return signaling


async def _connected_to(client, *remote_ids):
    await client.handle_raw(_accepted("c", list(remote_ids)))
    for remote_id in remote_ids:
        await client.handle_raw(_answer(remote_id))
    await client.signals_settled()
    assert all(client.mesh.get(remote_id).state == LinkState.CONNECTED for remote_id in remote_ids)


# ===== Joining =====


@pytest.mark.asyncio
async def test_join_request_frame(client):
    await client.join("lobby", "Carol")
    assert client.websocket.sent == [{"type": "join-request", "roomId": "lobby", "nickname": "Carol"}]


@pytest.mark.asyncio
async def test_join_accepted_offers_to_existing_members(client, events):
    await client.handle_raw(_accepted("c", ["a", "b"]))

    offers = client.websocket.of_type("signal")
    assert sorted(frame["to"] for frame in offers) == ["a", "b"]
    assert all(frame["kind"] == "offer" for frame in offers)
    assert client.participant_id == "c"
    assert client.room_id == "lobby"
    assert client.joined.is_set()
    assert events.call_args_list[0].args[0] == "JOINED"

    await client.close()
    assert client.websocket is None


@pytest.mark.asyncio
async def test_newcomer_offer_is_answered(client):
    await client.handle_raw(_accepted("a", [], is_host=True))
    await client.handle_raw(json.dumps({"type": "member-joined", "id": "c", "nickname": "Carol", "joinedAt": 2.0}))
    assert client.websocket.of_type("signal") == []

    await client.handle_raw(_offer("c"))
    await client.signals_settled()

    assert client.websocket.signals() == [("c", "answer")]
    assert client.mesh.get("c").state == LinkState.CONNECTED
    await client.close()


@pytest.mark.asyncio
async def test_host_change_updates_role(client):
    await client.handle_raw(_accepted("b", ["a"]))
    assert not client.is_host

    await client.handle_raw(json.dumps({"type": "host-transferred", "roomId": "lobby"}))
    assert client.is_host

    await client.handle_raw(json.dumps({"type": "host-changed", "newHostId": "z"}))
    assert not client.is_host
    await client.close()


# ===== Inbound signals =====


@pytest.mark.asyncio
async def test_slow_link_does_not_hold_up_other_frames(events):
    gate = asyncio.Event()
    connections = {}

    def factory(remote_id):
        connections[remote_id] = FakeConnection(remote_gate=gate if remote_id == "a" else None)
        return connections[remote_id]

    client = SignalingClient(uri="ws://test/ws", connection_factory=factory, event_callback=events)
    client.websocket = FakeServerSocket()
    await client.handle_raw(_accepted("c", [], is_host=True))

    await client.handle_raw(_offer("a"))
    await client.handle_raw(_offer("b"))
    await asyncio.sleep(0.01)

    # "a" is still applying its offer while "b" has been answered
    assert client.mesh.get("a").state == LinkState.ANSWERING
    assert client.websocket.signals() == [("b", "answer")]

    await client.monitor.ping_once()
    timestamp = client.websocket.of_type("ping")[0]["timestamp"]
    await client.handle_raw(json.dumps({"type": "pong", "timestamp": timestamp, "serverTimestamp": timestamp}))
    assert client.monitor.last_latency_ms is not None

    gate.set()
    await client.signals_settled()

    assert sorted(client.websocket.signals()) == [("a", "answer"), ("b", "answer")]
    assert client.mesh.get("a").state == LinkState.CONNECTED
    await client.close()


@pytest.mark.asyncio
async def test_signals_from_one_peer_are_handled_in_order(client, connections):
    await client.handle_raw(_accepted("c", ["a"]))
    await client.handle_raw(_signal("a", "candidate", {"candidate": "c1", "sdpMid": "0", "sdpMLineIndex": 0}))
    await client.handle_raw(_answer("a"))
    await client.handle_raw(_signal("a", "candidate", {"candidate": "c2", "sdpMid": "0", "sdpMLineIndex": 0}))

    await client.signals_settled()

    assert connections["a"].applied_candidates == ["c1", "c2"]
    assert client.mesh.get("a").state == LinkState.CONNECTED
    await client.close()


# ===== Leaving and removal =====


@pytest.mark.asyncio
async def test_kicked_closes_all_links(client, events):
    await client.handle_raw(_accepted("c", ["a", "b"]))
    engines = list(client.mesh.engines.values())

    await client.handle_raw(json.dumps({"type": "kicked", "reason": "spam", "hostNickname": "Alice"}))

    assert client.mesh.engines == {}
    assert all(engine.state == LinkState.CLOSED for engine in engines)
    assert client.room_id is None
    assert [call.args[0] for call in events.call_args_list][-1] == "KICKED"
    await client.close()


@pytest.mark.asyncio
async def test_member_left_closes_link(client):
    await _connected_to(client, "a")
    engine = client.mesh.get("a")

    await client.handle_raw(json.dumps({"type": "member-left", "id": "a"}))

    assert engine.state == LinkState.CLOSED
    assert client.mesh.get("a") is None
    assert "a" not in client._signal_workers
    await client.close()


@pytest.mark.asyncio
async def test_pong_is_matched_to_outstanding_ping(client):
    await client.monitor.ping_once()
    timestamp = client.websocket.of_type("ping")[0]["timestamp"]

    await client.handle_raw(json.dumps({"type": "pong", "timestamp": timestamp, "serverTimestamp": timestamp}))

    assert client.monitor.last_latency_ms is not None
    assert client.monitor.liveness_ok


@pytest.mark.asyncio
async def test_malformed_server_frame_is_ignored(client, events):
    await client.handle_raw("{broken")
    await client.handle_raw(json.dumps({"type": "mystery"}))
    events.assert_not_called()


@pytest.mark.asyncio
async def test_leave_and_quality_report_frames(client):
    await client.handle_raw(_accepted("c", ["a"]))
    await client.report_quality()
    await client.leave()

    report = client.websocket.of_type("quality-report")[0]
    assert report["peersCount"] == 0
    assert client.websocket.sent[-1] == {"type": "leave-request"}
    assert client.mesh.engines == {}


# ===== Local tracks =====


@pytest.mark.asyncio
async def test_added_track_reaches_every_link_and_renegotiates(client, connections):
    await _connected_to(client, "a", "b")
    assert sorted(client.websocket.signals("offer")) == [("a", "offer"), ("b", "offer")]

    await client.add_track("camera")

    assert connections["a"].tracks == ["camera"]
    assert connections["b"].tracks == ["camera"]
    assert sorted(client.websocket.signals("offer")) == [("a", "offer"), ("a", "offer"), ("b", "offer"), ("b", "offer")]
    await client.close()


@pytest.mark.asyncio
async def test_links_opened_later_start_with_local_tracks(client, connections):
    await client.add_track("microphone")
    await client.handle_raw(_accepted("c", ["a"]))

    assert connections["a"].tracks == ["microphone"]
    assert connections["a"].calls.index(("add_track", "microphone")) < connections["a"].calls.index(
        ("create_offer", False)
    )
    await client.close()


@pytest.mark.asyncio
async def test_removed_track_renegotiates_and_unknown_track_is_ignored(client, connections):
    await _connected_to(client, "a")
    await client.add_track("screen")
    await client.handle_raw(_answer("a"))
    await client.signals_settled()

    assert await client.remove_track("screen")
    assert not await client.remove_track("screen")

    assert connections["a"].tracks == []
    assert client.local_tracks == []
    assert client.websocket.signals("offer") == [("a", "offer")] * 3
    await client.close()


# ===== Quality reporting =====


@pytest.mark.asyncio
async def test_quality_reports_are_sent_periodically_after_join(client, events):
    client.monitor.sample_interval = 60
    client.monitor.ping_interval = 60
    client.monitor.report_interval = 0.01
    client.monitor.latest["a"] = QualitySample(
        remote_id="a", timestamp=1.0, bitrate_kbps=800.0, packet_loss=2.0, rtt_ms=90.0
    )

    socket = client.websocket

    await client.handle_raw(_accepted("c", ["a"]))
    await asyncio.sleep(0.05)
    await client.close()

    reports = socket.of_type("quality-report")
    assert reports
    assert reports[0]["peersCount"] == 1
    assert reports[0]["avgBitrateKbps"] == 800.0


@pytest.mark.asyncio
async def test_quality_samples_are_forwarded_to_the_callback(client, connections, events):
    await _connected_to(client, "a")

    await client.monitor.sample_once()

    kinds = [call.args[0] for call in events.call_args_list]
    assert "QUALITY_SAMPLE" in kinds
    assert events.call_args_list[kinds.index("QUALITY_SAMPLE")].args[1].remote_id == "a"
    await client.close()
