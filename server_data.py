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
import time
from typing import Optional

from websockets.asyncio.server import ServerConnection

from messages import Role, now_ms


@dataclasses.dataclass
class RelayPeer:
    user_id: str
    role: Role
    package: Optional[str]
    websocket: ServerConnection
    name: Optional[str] = None


@dataclasses.dataclass
class RelaySession:
    session_id: str
    evaluator_id: str
    client_id: str
    started_at: int = dataclasses.field(default_factory=now_ms)


@dataclasses.dataclass
class PresenceEntry:
    role: Role
    package: Optional[str]
    last_seen: float


class PresenceTable:
    """
    Presence without a live relay connection, kept alive by heartbeats. Entries older than `stale_after` seconds
    are left out of availability queries.
    """

    def __init__(self, stale_after: float = 30.0):
        self.stale_after = stale_after
        self._entries: dict[str, PresenceEntry] = dict()

    def touch(self, user_id: str, role: Role, package: Optional[str], now: Optional[float] = None):
        self._entries[user_id] = PresenceEntry(role, package, time.time() if now is None else now)

    def remove(self, user_id: str):
        self._entries.pop(user_id, None)

    def fresh(self, role: Role, package: Optional[str] = None, now: Optional[float] = None) -> list[str]:
        now = time.time() if now is None else now
        return [
            user_id for user_id, entry in self._entries.items()
            if entry.role == role
            and (package is None or entry.package == package)
            and now - entry.last_seen <= self.stale_after
        ]

    def prune(self, now: Optional[float] = None):
        now = time.time() if now is None else now
        for user_id in [u for u, entry in self._entries.items() if now - entry.last_seen > self.stale_after]:
            del self._entries[user_id]


@dataclasses.dataclass
class StoredSegment:
    segment_id: str
    image_index: int
    session_id: Optional[str]
    evaluator_id: Optional[str]
    client_id: Optional[str]
    signed_url: Optional[str]
    audio_payload: Optional[str]
    received_at: int = dataclasses.field(default_factory=now_ms)

    def summary(self) -> dict:
        return {
            "segmentId": self.segment_id,
            "sessionId": self.session_id,
            "evaluatorId": self.evaluator_id,
            "clientId": self.client_id,
            "imageIndex": self.image_index,
            "signedUrl": self.signed_url,
            "hasAudio": self.audio_payload is not None,
            "receivedAt": self.received_at,
        }


class ServerData:

    def __init__(self, presence_stale_seconds: float = 30.0):
        self.connected_users: dict[str, RelayPeer] = dict()
        self.sessions: dict[str, RelaySession] = dict()  # by evaluator id
        self.presence = PresenceTable(presence_stale_seconds)
        self.segments: dict[str, StoredSegment] = dict()

        self.shutdown_event = asyncio.Event()

    def session_of(self, user_id: str) -> Optional[RelaySession]:
        session = self.sessions.get(user_id)
        if session is not None:
            return session
        for session in self.sessions.values():
            if session.client_id == user_id:
                return session
        return None
