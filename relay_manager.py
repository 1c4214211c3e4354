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
import uuid
from typing import Optional

import websockets
from websockets.asyncio.server import ServerConnection

from messages import Role, encode_event
from server_data import RelayPeer, RelaySession, ServerData


class SignalRelay:
    """
    Routes session control, image updates, acks and webrtc signals between registered users.

    Payloads are forwarded as received; the relay only looks at the fields it routes by.
    """

    def __init__(self, config, data: ServerData):
        self._config = config
        self._data = data
        self._handlers = {
            "register": self.register,
            "start_session": self.start_session,
            "image_update": self.forward_image_update,
            "image_ack": self.forward_image_ack,
            "end_session": self.end_session,
            "webrtc_signal": self.relay_signal,
            "heartbeat": self.heartbeat,
        }

    def peer_for(self, websocket: ServerConnection) -> Optional[RelayPeer]:
        for peer in self._data.connected_users.values():
            if peer.websocket is websocket:
                return peer
        return None

    def available_clients(self, package: Optional[str] = None) -> list[str]:
        live = [
            peer.user_id for peer in self._data.connected_users.values()
            if peer.role == Role.CLIENT and (package is None or peer.package == package)
        ]
        return sorted(set(live) | set(self._data.presence.fresh(Role.CLIENT, package)))

    async def send_to(self, user_id: str, event: str, data: Optional[dict] = None) -> bool:
        peer = self._data.connected_users.get(user_id)
        if peer is None:
            logging.debug(f"Wanted to send {event} to {user_id} while not connected")
            return False
        try:
            await peer.websocket.send(encode_event(event, data))
            return True
        except websockets.exceptions.ConnectionClosed:
            logging.debug(f"Connection of {user_id} closed while sending {event}")
            return False

    async def handle_event(self, websocket: ServerConnection, event: str, data: dict):
        handler = self._handlers.get(event)
        if handler is None:
            logging.warning(f"Unknown event {event}")
            return
        if event != "register" and self.peer_for(websocket) is None:
            logging.warning(f"Dropping {event} from an unregistered connection")
            return
        await handler(websocket, data)

    async def register(self, websocket: ServerConnection, data: dict):
        user_id, role = data.get("userId"), data.get("role")
        if not isinstance(user_id, str) or not user_id or role not in (Role.EVALUATOR.value, Role.CLIENT.value):
            logging.warning(f"Ignoring malformed register {data}")
            return
        package = data.get("package") if isinstance(data.get("package"), str) else None

        old = self._data.connected_users.get(user_id)
        if old is not None and old.websocket is not websocket:
            logging.debug(f"{user_id} registered again, replacing the old connection")
        self._data.connected_users[user_id] = RelayPeer(user_id, Role(role), package, websocket, data.get("name"))
        logging.info(f"{user_id} registered as {role} ({package})")

        if role == Role.CLIENT.value:
            await self.broadcast_clients()

    async def user_disconnected(self, websocket: ServerConnection):
        peer = self.peer_for(websocket)
        if peer is None:
            return
        del self._data.connected_users[peer.user_id]
        logging.info(f"{peer.user_id} disconnected")

        session = self._data.session_of(peer.user_id)
        if session is not None:
            self._drop_session(session)
            other = session.client_id if peer.user_id == session.evaluator_id else session.evaluator_id
            await self.send_to(other, "session_ended", {"sessionId": session.session_id})

        if peer.role == Role.CLIENT:
            await self.broadcast_clients()

    async def start_session(self, websocket: ServerConnection, data: dict):
        evaluator = self.peer_for(websocket)
        client_id = data.get("clientId")
        if evaluator.role != Role.EVALUATOR or not isinstance(client_id, str):
            logging.warning(f"Ignoring start_session from {evaluator.user_id}: {data}")
            return

        previous = self._data.sessions.get(evaluator.user_id)
        if previous is not None:
            logging.debug(f"{evaluator.user_id} starts over, ending {previous.session_id}")
            self._drop_session(previous)
            await self.send_to(previous.client_id, "session_ended", {"sessionId": previous.session_id})

        session = RelaySession(f"sess_{uuid.uuid4().hex}", evaluator.user_id, client_id)
        self._data.sessions[evaluator.user_id] = session

        client = self._data.connected_users.get(client_id)
        if client is not None and client.role == Role.CLIENT \
                and (evaluator.package is None or client.package == evaluator.package):
            await self.send_to(client_id, "session_started", {
                "sessionId": session.session_id,
                "evaluatorId": evaluator.user_id,
                "evaluatorName": evaluator.name or evaluator.user_id,
            })
        else:
            logging.warning(f"Client {client_id} is not connected over {evaluator.package}, "
                            f"images will be dropped until it is")

        await self.send_to(evaluator.user_id, "session_started", {
            "sessionId": session.session_id,
            "clientId": client_id,
        })
        logging.info(f"Session {session.session_id}: {evaluator.user_id} -> {client_id}")

    async def forward_image_update(self, websocket: ServerConnection, data: dict):
        sender = self.peer_for(websocket)
        session = self._data.sessions.get(sender.user_id)
        if session is None:
            logging.debug(f"image_update from {sender.user_id} without a session")
            return
        await self.send_to(session.client_id, "image_update", data)

    async def forward_image_ack(self, websocket: ServerConnection, data: dict):
        sender = self.peer_for(websocket)
        session = self._data.session_of(sender.user_id)
        if session is None or session.client_id != sender.user_id:
            logging.debug(f"image_ack from {sender.user_id} without a session")
            return
        await self.send_to(session.evaluator_id, "image_ack", data)

    async def end_session(self, websocket: ServerConnection, data: dict):
        sender = self.peer_for(websocket)
        session = self._data.session_of(sender.user_id)
        if session is None:
            await self.send_to(sender.user_id, "session_ended", {"sessionId": None})
            return
        self._drop_session(session)
        other = session.client_id if sender.user_id == session.evaluator_id else session.evaluator_id
        await self.send_to(other, "session_ended", {"sessionId": session.session_id})
        logging.info(f"Session {session.session_id} ended by {sender.user_id}")
        await self.send_to(sender.user_id, "session_ended", {"sessionId": session.session_id})

    async def relay_signal(self, websocket: ServerConnection, data: dict):
        sender = self.peer_for(websocket)
        target = data.get("targetUserId")
        if not isinstance(target, str):
            logging.warning(f"webrtc_signal from {sender.user_id} without a target")
            return
        if not await self.send_to(target, "webrtc_signal", {"fromUserId": sender.user_id, "signal": data.get("signal")}):
            logging.debug(f"webrtc_signal for {target} dropped, not connected")

    async def heartbeat(self, websocket: ServerConnection, data: dict):
        sender = self.peer_for(websocket)
        self._data.presence.touch(sender.user_id, sender.role, sender.package)

    async def broadcast_clients(self):
        for peer in list(self._data.connected_users.values()):
            await self.send_to(peer.user_id, "clients_updated", {"clients": self.available_clients(peer.package)})

    def _drop_session(self, session: RelaySession):
        if self._data.sessions.get(session.evaluator_id) is session:
            del self._data.sessions[session.evaluator_id]
