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
import dataclasses
import logging
from typing import Optional

from aiortc.exceptions import InvalidStateError

from messages import (
    AckMessage,
    ImageUpdateMessage,
    OfferSignal,
    ParseFailure,
    ReadyMessage,
    Role,
    SessionInfo,
    Transport,
    channel_message_from_json,
    channel_message_to_json,
    now_ms,
    signal_from_payload,
    signal_to_payload,
)
from peer_handshake import PeerHandshake
from relay_connection import RelayConnection
from session_protocol import HandshakeFailure, SessionProtocol


class PeerChannelAdapter(SessionProtocol):
    """
    Image updates over a WebRTC data channel, with the relay used for signaling only.

    start_session() returns after a short bounded delay instead of waiting for the whole handshake. An image sent
    before the channel opens is kept as pending and sent on open; the client also asks for the current image with
    a `ready` message once its side of the channel is open.
    """
    transport = Transport.PEER

    def __init__(self, config: dict, connector=None, peer_factory=None):
        super().__init__(config)
        self._connector = connector
        self._peer_factory = peer_factory
        self._relay: Optional[RelayConnection] = None
        self._handshake: Optional[PeerHandshake] = None
        self._remote_user_id: Optional[str] = None
        self._session: Optional[SessionInfo] = None

        self._pending: Optional[ImageUpdateMessage] = None
        self._current: Optional[ImageUpdateMessage] = None
        self._opened: Optional[asyncio.Event] = None
        self._receive_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._relay is not None and self._relay.connected

    @property
    def session(self) -> Optional[SessionInfo]:
        return self._session

    @property
    def handshake(self) -> Optional[PeerHandshake]:
        return self._handshake

    async def connect(self, user_id: str, role: Role) -> None:
        if self._relay is not None:
            await self.disconnect()
        self._user_id = user_id
        self._role = role

        client_config = self._config["client"]
        relay = RelayConnection(
            client_config["relay_url"], self.transport, self._metrics,
            connect_timeout=client_config["connect_timeout"],
            reconnect_delay=client_config["reconnect_delay"],
            connector=self._connector,
        )
        relay.on("webrtc_signal", self._on_signal)
        relay.on("session_started", self._on_session_started)
        relay.on("session_ended", self._on_session_ended)
        relay.on_connection_lost = self._finish_session
        await relay.open(user_id, role)
        self._relay = relay

        if role == Role.CLIENT:
            # exists before any offer so early candidates have somewhere to wait
            self._handshake = self._new_handshake()

    def _new_handshake(self) -> PeerHandshake:
        peer_config = self._config["peer"]
        handshake = PeerHandshake(
            self._role, self._send_signal, peer_config["ice_servers"],
            label=peer_config["data_channel_label"], peer_factory=self._peer_factory,
        )
        handshake.on_channel_open = self._on_channel_open
        handshake.on_channel_message = self._on_channel_message
        handshake.on_channel_close = self._finish_session
        handshake.on_failed = self._on_handshake_failed
        return handshake

    async def disconnect(self) -> None:
        handshake, self._handshake = self._handshake, None
        if handshake is not None:
            try:
                await handshake.close()
            except Exception as e:
                logging.debug(f"[webrtc] error while closing peer connection: {e}")
        relay, self._relay = self._relay, None
        if relay is not None:
            try:
                await relay.close()
            except Exception as e:
                logging.debug(f"[webrtc] error while disconnecting: {e}")
        self._remote_user_id = None
        self._session = None
        self._pending = None
        self._current = None
        self._clear_callbacks()

    async def start_session(self, client_id: str) -> None:
        if not self.connected or self._role != Role.EVALUATOR:
            logging.warning(f"[webrtc] start_session needs a connected evaluator")
            return
        if self._handshake is not None:
            await self._handshake.close()
        self._remote_user_id = client_id
        self._session = SessionInfo(None, evaluator_id=self._user_id, client_id=client_id)
        self._pending = None
        self._current = None
        self._opened = asyncio.Event()

        await self._relay.send("start_session", {"clientId": client_id})
        self._handshake = self._new_handshake()
        try:
            await self._handshake.start_offer()
        except HandshakeFailure as e:
            self._metrics.record_failure()
            logging.warning(f"[webrtc] {e}")
            return

        try:
            await asyncio.wait_for(self._opened.wait(), self._config["peer"]["start_resolve_delay"])
        except asyncio.TimeoutError:
            logging.debug(f"[webrtc] data channel not open yet, images will be held until it is")

    async def send_image_update(self, image_index: int, image_url: str, signed_url: Optional[str] = None) -> None:
        if self._role != Role.EVALUATOR or self._handshake is None or self._remote_user_id is None:
            self._metrics.record_failure()
            return
        message = ImageUpdateMessage(image_index, image_url, now_ms(), signed_url)
        self._current = message
        if self._handshake.channel_open:
            if self._transmit(message):
                self._metrics.record_success()
            else:
                self._metrics.record_failure()
            return
        # handshake still running: remembered and sent once the channel opens
        self._pending = message
        self._metrics.record_success()

    async def end_session(self) -> None:
        if self._handshake is not None:
            await self._handshake.close()
            if self._role == Role.EVALUATOR:
                self._handshake = None
        if self._relay is not None:
            await self._relay.send("end_session", {})
        self._remote_user_id = None
        self._session = None
        self._pending = None
        self._current = None

    def _transmit(self, message) -> bool:
        try:
            return self._handshake is not None and self._handshake.send(channel_message_to_json(message))
        except InvalidStateError as e:
            logging.debug(f"[webrtc] data channel refused message: {e}")
            return False

    async def _send_signal(self, signal):
        if self._relay is None or self._remote_user_id is None:
            logging.debug(f"[webrtc] no signaling target for {type(signal).__name__}")
            return
        await self._relay.send("webrtc_signal", {
            "targetUserId": self._remote_user_id,
            "signal": signal_to_payload(signal),
        })

    async def _on_signal(self, data: dict):
        from_user_id = data.get("fromUserId")
        try:
            signal = signal_from_payload(data.get("signal"))
        except ParseFailure as e:
            self._metrics.record_failure()
            logging.warning(f"[webrtc] dropped signal from {from_user_id}: {e}")
            return

        if self._role == Role.CLIENT and isinstance(signal, OfferSignal):
            self._remote_user_id = from_user_id
        elif self._remote_user_id is not None and from_user_id != self._remote_user_id:
            logging.debug(f"[webrtc] ignoring signal from {from_user_id}")
            return
        if self._handshake is None:
            logging.debug(f"[webrtc] no handshake for signal from {from_user_id}")
            return

        try:
            await self._handshake.handle_signal(signal)
        except HandshakeFailure as e:
            self._metrics.record_failure()
            logging.warning(f"[webrtc] {e}")
            if self._opened is not None:
                self._opened.set()

    async def _on_channel_open(self):
        if self._role == Role.EVALUATOR:
            pending, self._pending = self._pending, None
            if pending is not None:
                self._transmit(dataclasses.replace(pending, sent_at=now_ms()))
            if self._opened is not None:
                self._opened.set()
        else:
            self._transmit(ReadyMessage())

    async def _on_channel_message(self, raw):
        async with self._receive_lock:
            try:
                message = channel_message_from_json(raw)
            except ParseFailure as e:
                self._metrics.record_failure()
                logging.warning(f"[webrtc] dropped data channel message: {e}")
                return

            if self._role == Role.EVALUATOR:
                if isinstance(message, ReadyMessage):
                    if self._current is not None:
                        logging.debug(f"[webrtc] client ready, resending image {self._current.image_index}")
                        self._pending = None
                        self._transmit(dataclasses.replace(self._current, sent_at=now_ms()))
                elif isinstance(message, AckMessage):
                    self._metrics.record_ack(message.sent_at, message.received_at)
                return

            if isinstance(message, ImageUpdateMessage):
                received_at = now_ms()
                self._metrics.record_ack(message.sent_at, received_at)
                self._metrics.record_success()
                self._transmit(AckMessage(message.sent_at, received_at))
                await self._emit_image_update(message)

    async def _on_handshake_failed(self):
        self._metrics.record_failure()
        logging.warning(f"[webrtc] peer connection failed")
        if self._opened is not None:
            self._opened.set()

    async def _on_session_started(self, data: dict):
        if self._role == Role.EVALUATOR:
            if self._session is not None:
                self._session = dataclasses.replace(self._session, session_id=data.get("sessionId"))
            return
        self._session = SessionInfo.from_payload(data)
        self._remote_user_id = self._session.evaluator_id
        logging.info(f"[webrtc] session {self._session.session_id} started by {self._session.evaluator_id}")
        await self._emit_session_start(self._session)

    async def _on_session_ended(self, data: dict):
        if not self._names_session(self._session, data):
            logging.debug(f"[webrtc] ignoring end of {data.get('sessionId')}")
            return
        await self._finish_session()

    async def _finish_session(self):
        """Data channel close, relay session end and relay loss all land here."""
        active = self._session is not None or self._remote_user_id is not None
        self._session = None
        self._remote_user_id = None
        self._pending = None
        self._current = None
        if self._handshake is not None:
            await self._handshake.close()
            if self._role == Role.EVALUATOR:
                self._handshake = None
        if active:
            await self._emit_session_end()
