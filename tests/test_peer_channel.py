import asyncio

from config import default_config
from messages import Role, signal_to_payload, OfferSignal, CandidateSignal
from peer_channel import PeerChannelAdapter
from peer_handshake import HandshakeState
from relay_manager import SignalRelay
from server_data import ServerData

from tests.fakes import CANDIDATE_LINE, FakeChannel, FakeConnector, FakePeerFactory, RelayBridge, sdp, wait_until


def make_adapter(start_resolve_delay=0.05):
    config = default_config()
    config["client"]["reconnect_delay"] = 0
    config["peer"]["start_resolve_delay"] = start_resolve_delay
    connector, factory = FakeConnector(), FakePeerFactory()
    return PeerChannelAdapter(config, connector=connector, peer_factory=factory), connector, factory


def test_evaluator_holds_image_until_channel_opens():
    async def scenario():
        adapter, connector, factory = make_adapter()
        await adapter.connect("eva", Role.EVALUATOR)
        await asyncio.wait_for(adapter.start_session("cli"), timeout=1)
        socket = connector.sockets[0]
        assert [event for event, data in socket.sent][:2] == ["register", "start_session"]
        signals = socket.events("webrtc_signal")
        assert signals[0]["targetUserId"] == "cli"
        assert signals[0]["signal"]["type"] == "offer"
        assert signals[1]["signal"]["candidate"] == CANDIDATE_LINE
        assert adapter.handshake.state == HandshakeState.OFFER_SENT

        await adapter.send_image_update(0, "https://images.test/0")
        assert adapter.get_latency_metrics().successful_messages == 1
        channel = factory.created[0].channels[0]
        assert channel.sent == []

        socket.push("webrtc_signal", {"fromUserId": "cli", "signal": {"type": "answer", "sdp": sdp()}})
        await wait_until(lambda: adapter.handshake.state == HandshakeState.CHANNEL_OPENING)
        await channel.open()
        assert [message["imageIndex"] for message in channel.sent] == [0]

        # client side opened late and asks for the current image
        await channel.emit("message", '{"type": "ready"}')
        assert [message["imageIndex"] for message in channel.sent] == [0, 0]

        await channel.emit("message", '{"type": "ack", "sentAt": 100, "receivedAt": 140}')
        metrics = adapter.get_latency_metrics()
        assert metrics.sample_count == 1
        assert metrics.last_ms == 40

        await adapter.send_image_update(1, "https://images.test/1")
        assert channel.sent[-1]["imageIndex"] == 1
        assert adapter.get_latency_metrics().successful_messages == 2
        await adapter.disconnect()

    asyncio.run(scenario())


def test_start_session_resolves_early_without_answer():
    async def scenario():
        adapter, connector, factory = make_adapter(start_resolve_delay=0.01)
        await adapter.connect("eva", Role.EVALUATOR)
        await asyncio.wait_for(adapter.start_session("cli"), timeout=1)
        assert not adapter.handshake.channel_open
        await adapter.disconnect()

    asyncio.run(scenario())


def test_send_without_session_fails():
    async def scenario():
        adapter, connector, factory = make_adapter()
        await adapter.connect("eva", Role.EVALUATOR)
        await adapter.send_image_update(0, "https://images.test/0")
        metrics = adapter.get_latency_metrics()
        assert (metrics.successful_messages, metrics.failed_messages) == (0, 1)
        await adapter.disconnect()

    asyncio.run(scenario())


def test_client_answers_sends_ready_and_acks():
    async def scenario():
        adapter, connector, factory = make_adapter()
        updates, ended = [], []
        adapter.on_image_update(lambda index, url, signed: updates.append((index, signed)))
        adapter.on_session_end(lambda: ended.append(True))
        await adapter.connect("cli", Role.CLIENT)
        socket = connector.sockets[0]

        socket.push("session_started", {"sessionId": "sess_1", "evaluatorId": "eva"})
        # a candidate overtaking the offer
        socket.push("webrtc_signal", {"fromUserId": "eva", "signal": signal_to_payload(CandidateSignal(CANDIDATE_LINE, "0", 0))})
        socket.push("webrtc_signal", {"fromUserId": "eva", "signal": signal_to_payload(OfferSignal(sdp()))})
        await wait_until(lambda: socket.events("webrtc_signal"))

        pc, = factory.created
        assert len(pc.added) == 1
        answer = socket.events("webrtc_signal")[0]
        assert answer == {"targetUserId": "eva", "signal": {"type": "answer", "sdp": sdp()}}

        channel = FakeChannel("image-sync", ready_state="open")
        await pc.emit("datachannel", channel)
        assert channel.sent == [{"type": "ready"}]

        await channel.emit("message", '{"imageIndex": 2, "imageUrl": "https://images.test/2", '
                                      '"signedUrl": "https://signed.test/2", "sentAt": 5}')
        assert updates == [(2, "https://signed.test/2")]
        ack = channel.sent[-1]
        assert ack["type"] == "ack" and ack["sentAt"] == 5
        assert adapter.get_latency_metrics().successful_messages == 1

        await channel.emit("message", "garbage")
        assert adapter.get_latency_metrics().failed_messages == 1

        channel.close()
        await channel.emit("close")
        assert ended == [True]
        assert adapter.session is None
        await adapter.disconnect()

    asyncio.run(scenario())


def test_signals_from_strangers_are_ignored():
    async def scenario():
        adapter, connector, factory = make_adapter()
        await adapter.connect("eva", Role.EVALUATOR)
        await adapter.start_session("cli")
        socket = connector.sockets[0]
        socket.push("webrtc_signal", {"fromUserId": "mallory", "signal": {"type": "answer", "sdp": sdp()}})
        socket.push("webrtc_signal", {"fromUserId": "cli", "signal": {"type": "bogus"}})
        await wait_until(lambda: adapter.get_latency_metrics().failed_messages == 1)
        assert adapter.handshake.state == HandshakeState.OFFER_SENT
        await adapter.disconnect()

    asyncio.run(scenario())


def test_fresh_adapter_metrics_are_empty():
    adapter, connector, factory = make_adapter()
    metrics = adapter.get_latency_metrics()
    assert metrics.sample_count == 0
    assert metrics.min_ms == float("inf")
    assert (metrics.successful_messages, metrics.failed_messages, metrics.reconnection_attempts) == (0, 0, 0)


def test_channel_close_ends_session_once():
    async def scenario():
        adapter, connector, factory = make_adapter()
        ended = []
        adapter.on_session_end(lambda: ended.append(True))
        await adapter.connect("cli", Role.CLIENT)
        socket = connector.sockets[0]

        socket.push("session_started", {"sessionId": "sess_1", "evaluatorId": "eva"})
        socket.push("webrtc_signal", {"fromUserId": "eva", "signal": signal_to_payload(OfferSignal(sdp()))})
        await wait_until(lambda: socket.events("webrtc_signal"))
        channel = FakeChannel("image-sync", ready_state="open")
        await factory.created[0].emit("datachannel", channel)

        channel.close()
        await channel.emit("close")
        assert ended == [True]

        # the relay's own notice of the same end follows the channel close
        socket.push("session_ended", {"sessionId": "sess_1"})
        socket.push("session_started", {"sessionId": "sess_2", "evaluatorId": "eva"})
        await wait_until(lambda: adapter.session is not None and adapter.session.session_id == "sess_2")
        assert ended == [True]
        await adapter.disconnect()

    asyncio.run(scenario())


def test_restart_right_after_end_keeps_the_new_handshake():
    async def scenario():
        config = default_config()
        config["client"]["reconnect_delay"] = 0
        config["peer"]["start_resolve_delay"] = 0.05
        relay = SignalRelay(config, ServerData())
        adapter = PeerChannelAdapter(config, connector=RelayBridge(relay), peer_factory=FakePeerFactory())
        ended = []
        adapter.on_session_end(lambda: ended.append(True))
        await adapter.connect("eva", Role.EVALUATOR)

        await adapter.start_session("cli")
        first_id = adapter.session.session_id
        assert first_id is not None
        await adapter.end_session()
        await adapter.start_session("cli")
        await wait_until(lambda: adapter.session.session_id is not None)

        assert adapter.handshake is not None
        assert adapter.session.session_id != first_id
        await adapter.send_image_update(0, "https://images.test/0")
        metrics = adapter.get_latency_metrics()
        assert (metrics.successful_messages, metrics.failed_messages) == (1, 0)
        assert ended == []
        await adapter.disconnect()

    asyncio.run(scenario())
