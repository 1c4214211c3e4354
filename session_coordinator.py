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
import inspect
import logging
from typing import Callable, Optional

from latency import LatencyMetrics
from messages import Role, SessionInfo, Transport
from segment_capture import NullRecorder, Recorder, SegmentCaptureMachine
from session_protocol import SessionProtocol
from transports import create_adapter


class SessionCoordinator:
    """
    Owns the one active adapter of a user and routes its events.

    Switching transports tears the old adapter down completely before the new one connects. On the client side
    every session start gets a fresh SegmentCaptureMachine fed by the adapter's image updates and session end.
    On the evaluator side it steps through the image list; for the webrtc transport each image is resent a few
    times after fixed delays, since the data channel may open well after the first send.
    """

    def __init__(self, config: dict, user_id: str, role: Role, recorder: Optional[Recorder] = None,
                 uploader=None, adapter_factory: Callable[..., SessionProtocol] = create_adapter):
        self._config = config
        self._user_id = user_id
        self._role = role
        self._recorder = recorder or NullRecorder()
        self._uploader = uploader
        self._adapter_factory = adapter_factory

        self._adapter: Optional[SessionProtocol] = None
        self._capture: Optional[SegmentCaptureMachine] = None
        self._session: Optional[SessionInfo] = None

        self.images: list[str] = []
        self.current_index: Optional[int] = None
        self._resend_task: Optional[asyncio.Task] = None

        self.on_display: Optional[Callable] = None  # (image_index, image_url)
        self.on_session_change: Optional[Callable] = None  # (SessionInfo or None)

    @property
    def adapter(self) -> Optional[SessionProtocol]:
        return self._adapter

    @property
    def transport(self) -> Optional[Transport]:
        return self._adapter.transport if self._adapter is not None else None

    @property
    def session(self) -> Optional[SessionInfo]:
        return self._session

    @property
    def capture(self) -> Optional[SegmentCaptureMachine]:
        return self._capture

    def latency_metrics(self) -> Optional[LatencyMetrics]:
        return self._adapter.get_latency_metrics() if self._adapter is not None else None

    async def use_transport(self, transport: Transport, **adapter_kwargs):
        """Raises ConnectError from the new adapter; the old one is gone either way."""
        await self._teardown()
        adapter = self._adapter_factory(transport, self._config, **adapter_kwargs)
        adapter.on_image_update(self._on_image_update)
        adapter.on_session_start(self._on_session_start)
        adapter.on_session_end(self._on_session_end)
        await adapter.connect(self._user_id, self._role)
        self._adapter = adapter
        logging.info(f"Using {adapter.transport.value} as {self._user_id}")

    async def close(self):
        await self._teardown()
        if self._uploader is not None:
            await self._uploader.close()

    async def _teardown(self):
        self._cancel_resend()
        adapter, self._adapter = self._adapter, None
        if adapter is None:
            return
        if self._capture is not None:
            await self._on_session_end()
        await adapter.disconnect()

    # evaluator

    async def start_session(self, client_id: str, images: list[str]):
        if self._adapter is None:
            raise RuntimeError("no transport connected")
        self.images = list(images)
        self.current_index = None
        await self._adapter.start_session(client_id)
        self._session = self._adapter.session or SessionInfo(None, evaluator_id=self._user_id, client_id=client_id)
        await self._notify(self.on_session_change, self._session)
        if self.images:
            await self.show(0)

    async def show(self, index: int):
        if not 0 <= index < len(self.images):
            raise IndexError(f"image {index} out of range 0..{len(self.images) - 1}")
        self._cancel_resend()
        self.current_index = index
        await self._send_current()
        resend_delays = self._config["peer"]["resend_delays"]
        if self.transport == Transport.PEER and resend_delays:
            self._resend_task = asyncio.create_task(self._resend(index, resend_delays))

    async def next_image(self) -> bool:
        if self.current_index is None or self.current_index + 1 >= len(self.images):
            return False
        await self.show(self.current_index + 1)
        return True

    async def previous_image(self) -> bool:
        if self.current_index is None or self.current_index == 0:
            return False
        await self.show(self.current_index - 1)
        return True

    async def end_session(self):
        self._cancel_resend()
        if self._adapter is not None:
            await self._adapter.end_session()
        self.current_index = None
        if self._role == Role.EVALUATOR and self._session is not None:
            self._session = None
            await self._notify(self.on_session_change, None)

    async def _send_current(self):
        url = self.images[self.current_index]
        # images are public, the url doubles as the signed reference
        await self._adapter.send_image_update(self.current_index, url, url)

    async def _resend(self, index: int, delays: list[float]):
        for delay in delays:
            await asyncio.sleep(delay)
            if self._adapter is None or self.current_index != index:
                return
            logging.debug(f"Resending image {index}")
            await self._send_current()

    def _cancel_resend(self):
        if self._resend_task is not None:
            self._resend_task.cancel()
            self._resend_task = None

    # client

    async def _on_session_start(self, info: SessionInfo):
        if info.client_id is None:
            info = dataclasses.replace(info, client_id=self._user_id)
        if self._session is not None and info.session_id is not None \
                and info.session_id == self._session.session_id:
            # one capture machine per session, even when the start is delivered twice
            logging.debug(f"Session {info.session_id} already running, ignoring repeated start")
            return
        if self._capture is not None:
            await self._capture.on_session_end()
        self._session = info
        if self._uploader is not None:
            self._capture = SegmentCaptureMachine(self._recorder, self._uploader, info)
        await self._notify(self.on_session_change, info)

    async def _on_image_update(self, image_index: int, image_url: str, signed_url: Optional[str]):
        await self._notify(self.on_display, image_index, image_url)
        if self._capture is not None:
            await self._capture.on_image_update(image_index, signed_url)

    async def _on_session_end(self):
        capture, self._capture = self._capture, None
        if capture is not None:
            await capture.on_session_end()
        if self._role == Role.EVALUATOR:
            self._cancel_resend()
            self.current_index = None
        if self._session is not None:
            self._session = None
            await self._notify(self.on_session_change, None)

    @staticmethod
    async def _notify(callback, *args):
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
