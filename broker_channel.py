"""
ImageSync
Copyright (C) 2024 thiccaxe

This program is free software: you can redistribute it and/or modify
it under the terms of the GNU Affero General Public License as published
by the Free Software Foundation, either version 3 of the License, or
(at your option) any later version.

This program is distributed in the hope that it will be useful,
but WITHOUT ANY WARRANTY; without even the implied warranty of
MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
GNU Affero General Public License for more details.

You should have received a copy of the GNU Affero General Public License
along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""

import asyncio
import json
import logging
import ssl
import uuid
from typing import Optional
from urllib.parse import urlsplit

import aiohttp
import aiomqtt

from messages import AckMessage, ImageUpdateMessage, ParseFailure, Role, SessionInfo, Transport, now_ms
from segment_client import post_presence
from session_protocol import ConnectError, SessionProtocol


def client_topic(prefix: str, client_id: str, suffix: str) -> str:
    return f"{prefix}/clients/{client_id}/{suffix}"


def ack_topic(prefix: str, evaluator_id: str) -> str:
    return f"{prefix}/acks/{evaluator_id}"


def parse_broker_url(url: str) -> dict:
    """
    mqtt://host:1883, mqtts://host:8883, ws://host:8083/mqtt or wss://host:8084/mqtt -> aiomqtt.Client kwargs
    """
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as e:
        raise ConnectError(f"invalid broker url {url!r}") from e
    if not parts.hostname:
        raise ConnectError(f"invalid broker url {url!r}: no host")

    if parts.scheme in ("mqtt", "tcp"):
        params = {"transport": "tcp", "port": port or 1883}
    elif parts.scheme in ("mqtts", "ssl"):
        params = {"transport": "tcp", "port": port or 8883, "tls_context": ssl.create_default_context()}
    elif parts.scheme == "ws":
        params = {"transport": "websockets", "port": port or 80, "websocket_path": parts.path or "/mqtt"}
    elif parts.scheme == "wss":
        params = {"transport": "websockets", "port": port or 443, "websocket_path": parts.path or "/mqtt",
                  "tls_context": ssl.create_default_context()}
    else:
        raise ConnectError(f"invalid broker url {url!r}: unsupported scheme {parts.scheme!r}")
    params["hostname"] = parts.hostname
    return params


class BrokerChannelAdapter(SessionProtocol):
    """
    Topic based pub/sub through an MQTT broker, no server in the data path.

    The broker may duplicate or reorder deliveries. Nothing here deduplicates image updates; consumers must
    tolerate repeated image indices.
    """
    transport = Transport.BROKER

    def __init__(self, config: dict, client_factory=None):
        super().__init__(config)
        self._client_factory = client_factory or aiomqtt.Client
        self._client = None
        self._broker_params: Optional[dict] = None
        self._subscriptions: list[str] = []
        self._listen_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._closing = False

        self._session: Optional[SessionInfo] = None
        self._client_id: Optional[str] = None  # evaluator: who we publish to
        self._evaluator_id: Optional[str] = None  # client: who we ack to

    @property
    def _prefix(self) -> str:
        return self._config["broker"]["topic_prefix"]

    @property
    def _qos(self) -> int:
        return self._config["broker"]["qos"]

    @property
    def connected(self) -> bool:
        return self._client is not None

    @property
    def session(self) -> Optional[SessionInfo]:
        return self._session

    async def connect(self, user_id: str, role: Role) -> None:
        if self._client is not None:
            await self.disconnect()
        self._user_id = user_id
        self._role = role
        self._closing = False

        self._broker_params = parse_broker_url(self._config["broker"]["url"])
        if role == Role.CLIENT:
            self._subscriptions = [client_topic(self._prefix, user_id, suffix) for suffix in ("start", "image", "end")]
        else:
            self._subscriptions = [ack_topic(self._prefix, user_id)]

        self._client = await self._open_client()
        logging.info(f"[mqtt] connected to {self._broker_params['hostname']} as {user_id} ({role.value})")
        self._listen_task = asyncio.create_task(self._listen())
        if role == Role.CLIENT and self._config["client"].get("segment_url"):
            self._heartbeat_task = asyncio.create_task(self._heartbeat())

    async def _open_client(self):
        timeout = self._config["client"]["connect_timeout"]
        client = self._client_factory(
            identifier=f"image-sync-{self._user_id}-{uuid.uuid4().hex[:8]}",
            timeout=timeout,
            **self._broker_params,
        )
        try:
            await asyncio.wait_for(client.__aenter__(), timeout)
            for topic in self._subscriptions:
                await client.subscribe(topic, qos=self._qos)
        except (aiomqtt.MqttError, asyncio.TimeoutError, OSError) as e:
            raise ConnectError(f"could not connect to broker {self._config['broker']['url']}: {e}") from e
        return client

    async def disconnect(self) -> None:
        self._closing = True
        for task in (self._listen_task, self._heartbeat_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._listen_task = None
        self._heartbeat_task = None

        client, self._client = self._client, None
        if client is not None:
            try:
                await client.__aexit__(None, None, None)
            except Exception as e:
                logging.debug(f"[mqtt] error while disconnecting: {e}")
        self._session = None
        self._client_id = None
        self._evaluator_id = None
        self._clear_callbacks()

    async def start_session(self, client_id: str) -> None:
        if self._client is None or self._role != Role.EVALUATOR:
            logging.warning(f"[mqtt] start_session needs a connected evaluator")
            return
        self._client_id = client_id
        self._session = SessionInfo(
            f"mqtt_{self._user_id}_{client_id}_{now_ms()}", evaluator_id=self._user_id, client_id=client_id
        )
        # fire and forget: nothing at the broker layer tells us the client picked it up
        await self._publish(client_topic(self._prefix, client_id, "start"), {
            "sessionId": self._session.session_id,
            "evaluatorId": self._user_id,
            "evaluatorName": self._user_id,
        })

    async def send_image_update(self, image_index: int, image_url: str, signed_url: Optional[str] = None) -> None:
        if self._client is None or self._role != Role.EVALUATOR or self._client_id is None:
            self._metrics.record_failure()
            return
        message = ImageUpdateMessage(image_index, image_url, now_ms(), signed_url)
        if await self._publish(client_topic(self._prefix, self._client_id, "image"), message.to_payload()):
            self._metrics.record_success()
        else:
            self._metrics.record_failure()

    async def end_session(self) -> None:
        if self._client is not None and self._role == Role.EVALUATOR and self._client_id is not None:
            await self._publish(client_topic(self._prefix, self._client_id, "end"), {})
        self._session = None
        self._client_id = None
        self._evaluator_id = None

    async def _publish(self, topic: str, payload: dict, qos: Optional[int] = None) -> bool:
        client = self._client
        if client is None:
            return False
        try:
            await client.publish(topic, payload=json.dumps(payload), qos=self._qos if qos is None else qos)
            return True
        except aiomqtt.MqttError as e:
            logging.warning(f"[mqtt] publish to {topic} failed: {e}")
            return False

    async def _listen(self):
        while not self._closing:
            try:
                async for message in self._client.messages:
                    await self._dispatch(message.topic.value, message.payload)
                return
            except aiomqtt.MqttError as e:
                if self._closing:
                    return
                logging.warning(f"[mqtt] lost broker connection: {e}")
            await self._reconnect()

    async def _reconnect(self):
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.__aexit__(None, None, None)
            except Exception as e:
                logging.debug(f"[mqtt] error while closing lost connection: {e}")
        while not self._closing:
            self._metrics.record_reconnect()
            await asyncio.sleep(self._config["broker"]["reconnect_period"])
            try:
                self._client = await self._open_client()
                logging.info(f"[mqtt] reconnected to broker")
                return
            except ConnectError as e:
                logging.debug(f"[mqtt] reconnect failed: {e}")

    async def _heartbeat(self):
        interval = self._config["broker"]["heartbeat_interval"]
        base_url = self._config["client"]["segment_url"]
        async with aiohttp.ClientSession() as http:
            while not self._closing:
                try:
                    await post_presence(http, base_url, self._user_id, self._role, self.transport)
                except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                    logging.debug(f"[mqtt] presence heartbeat failed: {e}")
                await asyncio.sleep(interval)

    async def _dispatch(self, topic: str, payload):
        try:
            if isinstance(payload, (bytes, bytearray)):
                payload = payload.decode("utf-8")
            data = json.loads(payload)
            if not isinstance(data, dict):
                raise ParseFailure(f"payload on {topic} is not an object")
        except (UnicodeDecodeError, ValueError, TypeError, ParseFailure) as e:
            self._metrics.record_failure()
            logging.warning(f"[mqtt] dropped message on {topic}: {e}")
            return
        logging.debug(f"[mqtt] {topic}: {data}")

        if self._role == Role.EVALUATOR:
            if topic == ack_topic(self._prefix, self._user_id):
                try:
                    ack = AckMessage.from_payload(data)
                except ParseFailure as e:
                    self._metrics.record_failure()
                    logging.debug(f"[mqtt] dropped ack: {e}")
                    return
                self._metrics.record_ack(ack.sent_at, ack.received_at)
            return

        if topic == client_topic(self._prefix, self._user_id, "start"):
            session = SessionInfo.from_payload(data)
            if self._session is not None and session.session_id is not None \
                    and session.session_id == self._session.session_id:
                logging.debug(f"[mqtt] repeated start of {session.session_id}, ignoring")
                return
            self._session = session
            self._evaluator_id = self._session.evaluator_id
            await self._emit_session_start(self._session)
        elif topic == client_topic(self._prefix, self._user_id, "image"):
            await self._on_image(data)
        elif topic == client_topic(self._prefix, self._user_id, "end"):
            self._session = None
            self._evaluator_id = None
            await self._emit_session_end()

    async def _on_image(self, data: dict):
        try:
            message = ImageUpdateMessage.from_payload(data)
        except ParseFailure as e:
            self._metrics.record_failure()
            logging.warning(f"[mqtt] dropped image update: {e}")
            return
        received_at = now_ms()
        self._metrics.record_ack(message.sent_at, received_at)
        self._metrics.record_success()
        if self._evaluator_id is not None:
            await self._publish(
                ack_topic(self._prefix, self._evaluator_id), AckMessage(message.sent_at, received_at).to_payload(),
                qos=0,
            )
        await self._emit_image_update(message)
