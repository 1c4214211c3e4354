import asyncio
import logging

import pytest

from config import default_config
from messages import Role, SessionInfo, Transport
from relay_manager import SignalRelay
from relayed_channel import RelayedChannelAdapter
from server_data import ServerData
from session_protocol import ConnectError

from tests.fakes import FailingConnector, FakeConnector, RelayBridge, wait_until


def make_config(**client):
    config = default_config()
    config["client"].update({"reconnect_delay": 0, "session_start_timeout": 0.2, **client})
    return config


def test_connect_registers_first():
    async def scenario():
        connector = FakeConnector()
        adapter = RelayedChannelAdapter(make_config(), connector=connector)
        await adapter.connect("eva", Role.EVALUATOR)
        socket, = connector.sockets
        assert socket.sent[0] == ("register", {"userId": "eva", "role": "evaluator", "package": "socketio"})
        assert adapter.connected
        await adapter.disconnect()
        assert not adapter.connected

    asyncio.run(scenario())


def test_connect_failure_raises():
    async def scenario():
        adapter = RelayedChannelAdapter(make_config(), connector=FailingConnector())
        with pytest.raises(ConnectError):
            await adapter.connect("eva", Role.EVALUATOR)

    asyncio.run(scenario())


def test_start_session_waits_for_confirmation():
    async def scenario():
        adapter = RelayedChannelAdapter(make_config(), connector=FakeConnector())
        await adapter.connect("eva", Role.EVALUATOR)
        await adapter.start_session("cli")
        assert adapter.session.session_id == "sess_test"
        assert adapter.session.client_id == "cli"
        await adapter.disconnect()

    asyncio.run(scenario())


def test_start_session_timeout_resolves():
    async def scenario():
        adapter = RelayedChannelAdapter(make_config(), connector=FakeConnector(auto_confirm=False))
        await adapter.connect("eva", Role.EVALUATOR)
        await adapter.start_session("cli")
        assert adapter.session.session_id is None
        await adapter.send_image_update(0, "https://images.test/0")
        assert adapter.get_latency_metrics().successful_messages == 1
        await adapter.disconnect()

    asyncio.run(scenario())


def test_send_counts_exactly_once():
    async def scenario():
        connector = FakeConnector()
        adapter = RelayedChannelAdapter(make_config(), connector=connector)
        await adapter.connect("eva", Role.EVALUATOR)
        await adapter.send_image_update(0, "https://images.test/0")
        metrics = adapter.get_latency_metrics()
        assert (metrics.successful_messages, metrics.failed_messages) == (0, 1)

        await adapter.start_session("cli")
        await adapter.send_image_update(1, "https://images.test/1", "https://signed.test/1")
        metrics = adapter.get_latency_metrics()
        assert (metrics.successful_messages, metrics.failed_messages) == (1, 1)
        update, = connector.sockets[0].events("image_update")
        assert update["imageIndex"] == 1
        assert update["signedUrl"] == "https://signed.test/1"
        assert isinstance(update["sentAt"], int)
        await adapter.disconnect()

    asyncio.run(scenario())


def test_reconnect_registers_again_before_sending():
    async def scenario():
        connector = FakeConnector()
        adapter = RelayedChannelAdapter(make_config(), connector=connector)
        ended = []
        adapter.on_session_end(lambda: ended.append(True))
        await adapter.connect("eva", Role.EVALUATOR)
        await adapter.start_session("cli")

        connector.sockets[0].drop()
        await wait_until(lambda: len(connector.sockets) == 2 and adapter.connected)
        assert ended == [True]
        assert adapter.get_latency_metrics().reconnection_attempts == 1

        await adapter.start_session("cli")
        await adapter.send_image_update(2, "https://images.test/2")
        events = [event for event, data in connector.sockets[1].sent]
        assert events == ["register", "start_session", "image_update"]
        await adapter.disconnect()

    asyncio.run(scenario())


def test_client_receives_updates_and_acks():
    async def scenario():
        connector = FakeConnector()
        adapter = RelayedChannelAdapter(make_config(), connector=connector)
        sessions, updates = [], []
        adapter.on_session_start(sessions.append)
        adapter.on_image_update(lambda index, url, signed: updates.append((index, url, signed)))
        await adapter.connect("cli", Role.CLIENT)
        socket = connector.sockets[0]

        socket.push("session_started", {"sessionId": "sess_1", "evaluatorId": "eva", "evaluatorName": "Eva"})
        socket.push("image_update", {"imageIndex": 4, "imageUrl": "https://images.test/4", "sentAt": 1})
        await wait_until(lambda: updates)

        assert sessions == [SessionInfo("sess_1", "eva", "Eva", started_at=sessions[0].started_at)]
        assert updates == [(4, "https://images.test/4", None)]
        ack, = socket.events("image_ack")
        assert ack["sentAt"] == 1 and ack["receivedAt"] >= 1
        metrics = adapter.get_latency_metrics()
        assert metrics.successful_messages == 1
        assert metrics.sample_count == 1
        await adapter.disconnect()

    asyncio.run(scenario())


def test_malformed_frames_count_as_failures():
    async def scenario():
        connector = FakeConnector()
        adapter = RelayedChannelAdapter(make_config(), connector=connector)
        await adapter.connect("cli", Role.CLIENT)
        connector.sockets[0].push_raw("{not json")
        connector.sockets[0].push("image_update", {"imageIndex": "zero", "imageUrl": "u"})
        await wait_until(lambda: adapter.get_latency_metrics().failed_messages == 2)
        await adapter.disconnect()

    asyncio.run(scenario())


def test_evaluator_records_ack_latency():
    async def scenario():
        connector = FakeConnector()
        adapter = RelayedChannelAdapter(make_config(), connector=connector)
        await adapter.connect("eva", Role.EVALUATOR)
        connector.sockets[0].push("image_ack", {"sentAt": 1000, "receivedAt": 1025})
        await wait_until(lambda: adapter.get_latency_metrics().sample_count == 1)
        assert adapter.get_latency_metrics().last_ms == 25
        assert adapter.transport == Transport.RELAYED
        await adapter.disconnect()

    asyncio.run(scenario())


def test_fresh_adapter_metrics_are_empty():
    adapter = RelayedChannelAdapter(make_config(), connector=FakeConnector())
    metrics = adapter.get_latency_metrics()
    assert metrics.sample_count == 0
    assert metrics.min_ms == float("inf")
    assert (metrics.successful_messages, metrics.failed_messages, metrics.reconnection_attempts) == (0, 0, 0)


def test_restart_right_after_end_keeps_the_new_session():
    async def scenario():
        relay = SignalRelay(default_config(), ServerData())
        bridge = RelayBridge(relay)
        evaluator = RelayedChannelAdapter(make_config(), connector=bridge)
        client = RelayedChannelAdapter(make_config(), connector=bridge)
        updates, ended = [], []
        client.on_image_update(lambda index, url, signed: updates.append(index))
        client.on_session_end(lambda: ended.append(True))
        await client.connect("cli", Role.CLIENT)
        await evaluator.connect("eva", Role.EVALUATOR)

        await evaluator.start_session("cli")
        first_id = evaluator.session.session_id
        await evaluator.send_image_update(0, "https://images.test/0")
        await evaluator.end_session()
        await evaluator.start_session("cli")
        await evaluator.send_image_update(1, "https://images.test/1")
        await wait_until(lambda: updates == [0, 1])

        # the relay confirmed the first end while the second start was waiting
        assert evaluator.session.client_id == "cli"
        assert evaluator.session.session_id not in (None, first_id)
        metrics = evaluator.get_latency_metrics()
        assert (metrics.successful_messages, metrics.failed_messages) == (2, 0)
        assert client.session.session_id == evaluator.session.session_id
        assert ended == [True]

        await evaluator.end_session()
        await wait_until(lambda: client.session is None)
        assert ended == [True, True]
        await evaluator.disconnect()
        await client.disconnect()

    asyncio.run(scenario())

def test_log_lines_are_tagged_relay(caplog):
    async def scenario():
        adapter = RelayedChannelAdapter(make_config(), connector=FakeConnector())
        await adapter.start_session("cli")

    with caplog.at_level(logging.WARNING):
        asyncio.run(scenario())
    messages = [record.getMessage() for record in caplog.records]
    assert messages and all(message.startswith("[relay]") for message in messages)
