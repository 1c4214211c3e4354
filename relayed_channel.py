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

import logging
from typing import Optional

from messages import AckMessage, ImageUpdateMessage, ParseFailure, Role, SessionInfo, Transport, now_ms
from relay_connection import RelayConnection
from session_protocol import SessionProtocol


class RelayedChannelAdapter(SessionProtocol):
    """
    Everything goes through the relay server: session control, image updates and the latency acks.
    """
    transport = Transport.RELAYED

    def __init__(self, config: dict, connector=None):
        super().__init__(config)
        self._connector = connector
        self._relay: Optional[RelayConnection] = None
        self._session: Optional[SessionInfo] = None
        self._client_id: Optional[str] = None

    @property
    def connected(self) -> bool:
        return self._relay is not None and self._relay.connected

    @property
    def session(self) -> Optional[SessionInfo]:
        return self._session

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
        relay.on("image_update", self._on_image_update)
        relay.on("image_ack", self._on_image_ack)
        relay.on("session_started", self._on_session_started)
        relay.on("session_ended", self._on_session_ended)
        relay.on_connection_lost = self._on_connection_lost
        await relay.open(user_id, role)
        self._relay = relay

    async def disconnect(self) -> None:
        relay, self._relay = self._relay, None
        if relay is not None:
            try:
                await relay.close()
            except Exception as e:
                logging.debug(f"[relay] error while disconnecting: {e}")
        self._session = None
        self._client_id = None
        self._clear_callbacks()

    async def start_session(self, client_id: str) -> None:
        if not self.connected or self._role != Role.EVALUATOR:
            logging.warning(f"[relay] start_session needs a connected evaluator")
            return
        self._client_id = client_id
        reply = await self._relay.request(
            "start_session", {"clientId": client_id}, "session_started",
            timeout=self._config["client"]["session_start_timeout"],
        )
        if reply is None:
            logging.warning(f"[relay] session with {client_id} not confirmed, continuing without a session id")
            self._session = SessionInfo(None, evaluator_id=self._user_id, client_id=client_id)
            return
        self._session = SessionInfo(reply.get("sessionId"), evaluator_id=self._user_id, client_id=client_id)
        logging.info(f"[relay] session {self._session.session_id} started with {client_id}")

    async def send_image_update(self, image_index: int, image_url: str, signed_url: Optional[str] = None) -> None:
        if self._relay is None or self._role != Role.EVALUATOR or self._client_id is None:
            self._metrics.record_failure()
            return
        message = ImageUpdateMessage(image_index, image_url, now_ms(), signed_url)
        if await self._relay.send("image_update", message.to_payload()):
            self._metrics.record_success()
        else:
            self._metrics.record_failure()

    async def end_session(self) -> None:
        if self._relay is not None:
            await self._relay.send("end_session", {})
        self._session = None
        self._client_id = None

    async def _on_image_update(self, data: dict):
        try:
            message = ImageUpdateMessage.from_payload(data)
        except ParseFailure as e:
            self._metrics.record_failure()
            logging.warning(f"[relay] dropped image update: {e}")
            return
        received_at = now_ms()
        self._metrics.record_ack(message.sent_at, received_at)
        self._metrics.record_success()
        if self._relay is not None:
            await self._relay.send("image_ack", AckMessage(message.sent_at, received_at).to_payload())
        await self._emit_image_update(message)

    async def _on_image_ack(self, data: dict):
        try:
            ack = AckMessage.from_payload(data)
        except ParseFailure as e:
            self._metrics.record_failure()
            logging.debug(f"[relay] dropped ack: {e}")
            return
        self._metrics.record_ack(ack.sent_at, ack.received_at)

    async def _on_session_started(self, data: dict):
        if self._role != Role.CLIENT:
            return  # evaluator confirmation is consumed by start_session
        self._session = SessionInfo.from_payload(data)
        logging.info(f"[relay] session {self._session.session_id} started by {self._session.evaluator_id}")
        await self._emit_session_start(self._session)

    async def _on_session_ended(self, data: dict):
        if not self._names_session(self._session, data):
            logging.debug(f"[relay] ignoring end of {data.get('sessionId')}")
            return
        logging.info(f"[relay] session {self._session.session_id} ended")
        self._session = None
        self._client_id = None
        await self._emit_session_end()

    async def _on_connection_lost(self):
        if self._session is None and self._client_id is None:
            return
        # the relay drops sessions of disconnected parties
        self._session = None
        self._client_id = None
        await self._emit_session_end()
