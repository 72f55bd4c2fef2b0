import asyncio

import pytest

from negotiation import LinkState, NegotiationEngine, PeerLink, PeerMesh
from tests.fakes import FakeConnection, SignalRecorder, candidate

OFFER = {"type": "offer", "sdp": "v=0 remote-offer"}
ANSWER = {"type": "answer", "sdp": "v=0 remote-answer"}


def _engine(initiator=True, connection=None, grace_period=10, restart_timeout=30):
    connection = connection or FakeConnection()
    signals = SignalRecorder()
    link = PeerLink(local_id="local", remote_id="remote", initiator=initiator)
    engine = NegotiationEngine(link, connection, signals, grace_period=grace_period, restart_timeout=restart_timeout)
    return engine, connection, signals


async def _connected_initiator(**kwargs):
    engine, connection, signals = _engine(initiator=True, **kwargs)
    await engine.start()
    await engine.handle_signal("answer", ANSWER)
    assert engine.state == LinkState.CONNECTED
    return engine, connection, signals


# ===== Offer / answer =====


@pytest.mark.asyncio
async def test_initiator_offers_then_connects_on_answer():
    engine, connection, signals = _engine(initiator=True)

    await engine.start()
    assert engine.state == LinkState.AWAITING_ANSWER
    assert signals.kinds() == ["offer"]

    await engine.handle_signal("answer", ANSWER)
    assert engine.state == LinkState.CONNECTED
    assert not engine.link.exchange_in_flight
    assert connection.called("set_remote") == [("set_remote", "answer")]


@pytest.mark.asyncio
async def test_responder_answers_offer():
    engine, connection, signals = _engine(initiator=False)

    await engine.handle_signal("offer", OFFER)

    assert engine.state == LinkState.CONNECTED
    assert signals.kinds() == ["answer"]
    assert connection.called("set_local") == [("set_local", "answer")]


@pytest.mark.asyncio
async def test_offer_creation_failure_fails_link():
    engine, connection, signals = _engine(connection=FakeConnection(fail_offer=True))

    await engine.start()

    assert engine.state == LinkState.FAILED
    assert connection.closed
    assert signals.sent == []


@pytest.mark.asyncio
async def test_unknown_signal_kind_is_ignored():
    engine, _, signals = _engine(initiator=False)
    await engine.handle_signal("bogus", {})
    assert engine.state == LinkState.NEW
    assert signals.sent == []


# ===== Candidates =====


@pytest.mark.asyncio
async def test_early_candidates_flush_in_arrival_order():
    engine, connection, _ = _engine(initiator=True)
    await engine.start()

    for name in ("c1", "c2", "c3"):
        await engine.handle_signal("candidate", candidate(name))
    assert connection.applied_candidates == []
    assert len(engine.link.pending_candidates) == 3

    await engine.handle_signal("answer", ANSWER)

    assert connection.applied_candidates == ["c1", "c2", "c3"]
    assert not engine.link.pending_candidates


@pytest.mark.asyncio
async def test_responder_flushes_candidates_received_before_offer():
    engine, connection, signals = _engine(initiator=False)
    await engine.handle_signal("candidate", candidate("c1"))
    await engine.handle_signal("candidate", candidate("c2"))

    await engine.handle_signal("offer", OFFER)

    assert connection.applied_candidates == ["c1", "c2"]
    assert signals.kinds() == ["answer"]


@pytest.mark.asyncio
async def test_failing_queued_candidate_is_skipped():
    engine, connection, _ = _engine(connection=FakeConnection(failing_candidates={"c2"}))
    await engine.start()
    for name in ("c1", "c2", "c3"):
        await engine.handle_signal("candidate", candidate(name))

    await engine.handle_signal("answer", ANSWER)

    assert connection.applied_candidates == ["c1", "c3"]
    assert engine.state == LinkState.CONNECTED


@pytest.mark.asyncio
async def test_late_candidates_apply_immediately_and_failures_are_not_fatal():
    engine, connection, _ = await _connected_initiator(connection=FakeConnection(failing_candidates={"bad"}))

    await engine.handle_signal("candidate", candidate("bad"))
    await engine.handle_signal("candidate", candidate("good"))

    assert connection.applied_candidates == ["good"]
    assert engine.state == LinkState.CONNECTED


# ===== Renegotiation and glare =====


@pytest.mark.asyncio
async def test_renegotiation_is_deferred_until_exchange_completes():
    engine, _, signals = _engine(initiator=True)
    await engine.start()

    assert not await engine.renegotiate()
    assert engine.link.renegotiation_pending

    await engine.handle_signal("answer", ANSWER)

    assert signals.kinds() == ["offer", "offer"]
    assert not engine.link.renegotiation_pending
    assert engine.link.local_offer_pending


@pytest.mark.asyncio
async def test_renegotiation_while_connected_sends_offer():
    engine, connection, signals = await _connected_initiator()

    assert await engine.renegotiate()
    assert signals.kinds() == ["offer", "offer"]
    assert engine.state == LinkState.CONNECTED

    await engine.handle_signal("answer", ANSWER)
    assert not engine.link.exchange_in_flight


@pytest.mark.asyncio
async def test_impolite_side_ignores_colliding_offer():
    engine, connection, signals = await _connected_initiator()
    await engine.renegotiate()

    await engine.handle_signal("offer", OFFER)

    assert signals.kinds() == ["offer", "offer"]
    assert connection.called("rollback") == []


@pytest.mark.asyncio
async def test_polite_side_rolls_back_and_answers_colliding_offer():
    engine, connection, signals = _engine(initiator=False)
    await engine.handle_signal("offer", OFFER)
    await engine.renegotiate()
    assert signals.kinds() == ["answer", "offer"]

    await engine.handle_signal("offer", OFFER)

    assert connection.called("rollback") == [("rollback",)]
    # own renegotiation is retried after answering
    assert signals.kinds() == ["answer", "offer", "answer", "offer"]


# ===== Recovery =====


@pytest.mark.asyncio
async def test_disconnect_recovers_inside_grace_window():
    engine, connection, _ = await _connected_initiator(grace_period=0.02)

    await connection.state_handler("disconnected")
    assert engine.state == LinkState.DISCONNECTED
    assert engine.link.grace_timer is not None

    await connection.state_handler("connected")
    assert engine.state == LinkState.CONNECTED
    assert engine.link.grace_timer is None

    await asyncio.sleep(0.05)
    assert connection.called("restart_ice") == []


@pytest.mark.asyncio
async def test_renegotiation_requested_while_disconnected_runs_on_reconnect():
    engine, connection, signals = await _connected_initiator()

    await connection.state_handler("disconnected")
    assert not await engine.renegotiate()

    await connection.state_handler("connected")

    assert signals.kinds() == ["offer", "offer"]
    assert not engine.link.renegotiation_pending
    assert engine.link.local_offer_pending


@pytest.mark.asyncio
async def test_renegotiation_requested_during_restart_runs_after_recovery():
    engine, connection, signals = await _connected_initiator(restart_timeout=1)

    await connection.state_handler("failed")
    assert signals.kinds() == ["offer", "offer"]
    assert not await engine.renegotiate()

    await engine.handle_signal("answer", ANSWER)
    assert engine.state == LinkState.DISCONNECTED
    assert engine.link.renegotiation_pending

    await connection.state_handler("connected")

    assert signals.kinds() == ["offer", "offer", "offer"]
    assert not engine.link.renegotiation_pending
    assert engine.link.restart_timer is None


@pytest.mark.asyncio
async def test_disconnect_past_grace_triggers_restart_and_recovery_rearms():
    engine, connection, signals = await _connected_initiator(grace_period=0.01, restart_timeout=1)

    await connection.state_handler("disconnected")
    await asyncio.sleep(0.05)

    assert connection.called("restart_ice") == [("restart_ice",)]
    assert ("create_offer", True) in connection.calls
    assert engine.link.restart_timer is not None

    await connection.state_handler("connected")

    assert engine.state == LinkState.CONNECTED
    assert engine.link.restart_timer is None
    assert not engine.link.restart_attempted


@pytest.mark.asyncio
async def test_failed_transport_restart_timeout_removes_link():
    failed_links = []
    connections = {}

    def factory(remote_id):
        connections[remote_id] = FakeConnection()
        return connections[remote_id]

    mesh = PeerMesh(factory, SignalRecorder(), restart_timeout=0.02, on_link_failed=failed_links.append)
    await mesh.on_join_accepted("local", ["remote"])
    await mesh.on_signal("remote", "answer", ANSWER)
    assert mesh.active_links == {"remote"}

    connection = connections["remote"]
    await connection.state_handler("failed")
    assert connection.called("restart_ice") == [("restart_ice",)]

    await asyncio.sleep(0.06)

    assert "remote" not in mesh.active_links
    assert mesh.get("remote") is None
    assert [link.state for link in failed_links] == [LinkState.FAILED]
    assert connection.closed


@pytest.mark.asyncio
async def test_only_one_restart_is_attempted_per_incident():
    engine, connection, _ = await _connected_initiator(restart_timeout=0.02)
    await connection.state_handler("failed")
    await connection.state_handler("failed")

    assert engine.state == LinkState.DISCONNECTED
    assert len(connection.called("restart_ice")) == 1

    await asyncio.sleep(0.06)

    assert engine.state == LinkState.FAILED
    assert engine.link.grace_timer is None
    assert engine.link.restart_timer is None


# ===== Teardown =====


@pytest.mark.asyncio
async def test_close_discards_queue_and_ignores_late_answer():
    engine, connection, _ = _engine(initiator=True)
    await engine.start()
    await engine.handle_signal("candidate", candidate("c1"))

    await engine.close()
    await engine.handle_signal("answer", ANSWER)

    assert engine.state == LinkState.CLOSED
    assert not engine.link.pending_candidates
    assert connection.called("set_remote") == []
    assert connection.closed


# ===== Mesh =====


@pytest.mark.asyncio
async def test_mesh_joiner_offers_to_every_existing_member():
    signals = SignalRecorder()
    mesh = PeerMesh(lambda remote_id: FakeConnection(), signals)

    await mesh.on_join_accepted("c", ["a", "b"])

    assert sorted(to for to, kind, _ in signals.sent if kind == "offer") == ["a", "b"]
    assert all(mesh.get(remote).link.initiator for remote in ("a", "b"))


@pytest.mark.asyncio
async def test_mesh_existing_member_waits_for_newcomer_offer():
    signals = SignalRecorder()
    mesh = PeerMesh(lambda remote_id: FakeConnection(), signals, local_id="a")

    engine = mesh.on_member_joined("c")
    assert not engine.link.initiator
    assert signals.sent == []

    await mesh.on_signal("c", "offer", OFFER)
    assert signals.kinds("c") == ["answer"]


@pytest.mark.asyncio
async def test_mesh_ignores_answer_without_link_and_closes_on_leave():
    mesh = PeerMesh(lambda remote_id: FakeConnection(), SignalRecorder(), local_id="a")
    await mesh.on_signal("ghost", "answer", ANSWER)
    assert mesh.get("ghost") is None

    engine = mesh.on_member_joined("b")
    await mesh.on_member_left("b")
    assert engine.state == LinkState.CLOSED
    assert mesh.active_links == set()


@pytest.mark.asyncio
async def test_mesh_closes_everything_when_kicked():
    mesh = PeerMesh(lambda remote_id: FakeConnection(), SignalRecorder())
    await mesh.on_join_accepted("c", ["a", "b"])
    engines = list(mesh.engines.values())

    await mesh.on_kicked()

    assert mesh.engines == {}
    assert all(engine.state == LinkState.CLOSED for engine in engines)
