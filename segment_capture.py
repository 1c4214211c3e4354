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

import base64
import dataclasses
import logging
from abc import ABC, abstractmethod
from typing import Optional

from messages import SegmentRecord, SessionInfo
from segment_client import SegmentSubmitError


class RecorderError(Exception): pass


class Recorder(ABC):
    @abstractmethod
    async def begin(self) -> None:
        pass

    @abstractmethod
    async def finish(self) -> Optional[bytes]:
        """Stop the running capture and return its audio, or None when there is nothing."""
        pass


class NullRecorder(Recorder):
    """Records nothing; segments then carry only the signed image reference."""

    async def begin(self) -> None:
        pass

    async def finish(self) -> Optional[bytes]:
        return None


@dataclasses.dataclass(frozen=True)
class CapturedImage:
    image_index: int
    signed_url: Optional[str]


class SegmentCaptureMachine:
    """
    Decides from image updates and the session end alone when to begin a capture and when to flush one.

    There are no timers and no queue: a segment for the previous image is flushed exactly when a different image
    index arrives, or when the session ends. A repeated index is ignored entirely, so duplicated or reordered
    deliveries from any transport never produce a second segment for the same image.

    One machine belongs to one session; SessionCoordinator creates a new one for every session start.
    """

    def __init__(self, recorder: Recorder, sink, session: Optional[SessionInfo] = None):
        self._recorder = recorder
        self._sink = sink
        self._session = session

        self._previous: Optional[CapturedImage] = None
        self._capture_active = False
        self._flushed_indices: set[int] = set()

    @property
    def previous(self) -> Optional[CapturedImage]:
        return self._previous

    @property
    def capture_active(self) -> bool:
        return self._capture_active

    @property
    def flushed_indices(self) -> frozenset[int]:
        return frozenset(self._flushed_indices)

    async def on_image_update(self, image_index: int, signed_url: Optional[str] = None):
        previous = self._previous
        if previous is not None and previous.image_index == image_index:
            logging.debug(f"Repeated delivery of image {image_index}, ignoring")
            return

        if previous is not None and self._capture_active:
            await self._flush(previous)
        await self._begin()
        self._previous = CapturedImage(image_index, signed_url)

    async def on_session_end(self):
        previous = self._previous
        if previous is not None and self._capture_active and previous.image_index not in self._flushed_indices:
            await self._flush(previous)
        elif self._capture_active:
            await self._discard()
        self._previous = None
        self._capture_active = False
        self._flushed_indices = set()

    async def _begin(self):
        self._capture_active = True
        try:
            await self._recorder.begin()
        except RecorderError as e:
            # the segment still goes out, just without audio
            logging.warning(f"Could not begin audio capture: {e}")

    async def _finish(self) -> Optional[bytes]:
        self._capture_active = False
        try:
            return await self._recorder.finish()
        except RecorderError as e:
            logging.warning(f"Could not finish audio capture: {e}")
            return None

    async def _discard(self):
        await self._finish()

    async def _flush(self, captured: CapturedImage):
        if captured.image_index in self._flushed_indices:
            # image came back after a reorder; its segment is already out
            logging.debug(f"Image {captured.image_index} already flushed, dropping its second capture")
            await self._discard()
            return
        self._flushed_indices.add(captured.image_index)

        audio = await self._finish()
        record = SegmentRecord(
            image_index=captured.image_index,
            signed_url=captured.signed_url,
            audio_payload=base64.b64encode(audio).decode("ascii") if audio else None,
            session_id=self._session.session_id if self._session else None,
            evaluator_id=self._session.evaluator_id if self._session else None,
            client_id=self._session.client_id if self._session else None,
        )
        if record.signed_url is None and record.audio_payload is None:
            logging.warning(f"Segment for image {captured.image_index} has neither image reference nor audio")
            return
        try:
            segment_id = await self._sink.submit(record)
        except SegmentSubmitError as e:
            logging.warning(f"Segment for image {captured.image_index} not stored: {e}")
            return
        logging.info(f"Segment {segment_id} submitted")
