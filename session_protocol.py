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

import inspect
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional, Union

from latency import LatencyMetrics, LatencyTracker
from messages import ImageUpdateMessage, Role, SessionInfo, Transport


class ConnectError(Exception): pass


class SendFailure(Exception): pass


class HandshakeFailure(Exception): pass


ImageUpdateCallback = Callable[[int, str, Optional[str]], Union[None, Awaitable[None]]]
SessionStartCallback = Callable[[SessionInfo], Union[None, Awaitable[None]]]
SessionEndCallback = Callable[[], Union[None, Awaitable[None]]]


class SessionProtocol(ABC):
    """
    Contract shared by every transport adapter.

    Each event has exactly one callback slot: registering replaces whatever was there, registering None clears it.
    Only connect() raises to the caller; sends and session teardown are best effort and surface failures through
    the latency metrics counters.
    """
    transport: Transport

    def __init__(self, config: dict):
        self._config = config
        self._metrics = LatencyTracker()
        self._user_id: Optional[str] = None
        self._role: Optional[Role] = None

        self._image_update_callback: Optional[ImageUpdateCallback] = None
        self._session_start_callback: Optional[SessionStartCallback] = None
        self._session_end_callback: Optional[SessionEndCallback] = None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def role(self) -> Optional[Role]:
        return self._role

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass

    @abstractmethod
    async def connect(self, user_id: str, role: Role) -> None:
        """
        Establish the underlying channel and announce presence.

        Raises:
            ConnectError: transport unreachable, refused or timed out
        """
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Tear down the channel, callbacks and session state. Never raises."""
        pass

    @abstractmethod
    async def start_session(self, client_id: str) -> None:
        """Evaluator only. Returns once the transport is ready to send, bounded by a timeout."""
        pass

    @abstractmethod
    async def send_image_update(self, image_index: int, image_url: str, signed_url: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def end_session(self) -> None:
        pass

    def on_image_update(self, callback: Optional[ImageUpdateCallback]) -> None:
        self._image_update_callback = callback

    def on_session_start(self, callback: Optional[SessionStartCallback]) -> None:
        self._session_start_callback = callback

    def on_session_end(self, callback: Optional[SessionEndCallback]) -> None:
        self._session_end_callback = callback

    def get_latency_metrics(self) -> LatencyMetrics:
        return self._metrics.snapshot()

    @staticmethod
    def _names_session(current: Optional[SessionInfo], data: dict) -> bool:
        """
        Whether a relay `session_ended` refers to the current session. A late end of an earlier session, or any end
        while the current session still waits for its id, does not.
        """
        if current is None or current.session_id is None:
            return False
        return data.get("sessionId") == current.session_id

    def _clear_callbacks(self):
        self._image_update_callback = None
        self._session_start_callback = None
        self._session_end_callback = None

    async def _emit_image_update(self, message: ImageUpdateMessage):
        await self._invoke(self._image_update_callback, message.image_index, message.image_url, message.signed_url)

    async def _emit_session_start(self, info: SessionInfo):
        await self._invoke(self._session_start_callback, info)

    async def _emit_session_end(self):
        await self._invoke(self._session_end_callback)

    async def _invoke(self, callback, *args):
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logging.warning(f"[{self.transport.value}] callback {callback!r} raised")
            logging.exception(e)
