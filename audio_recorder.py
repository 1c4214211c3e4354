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

import io
import logging
import threading
import wave
from typing import Optional

import numpy as np
import sounddevice as sd

from segment_capture import Recorder, RecorderError


def encode_wav(samples: np.ndarray, sample_rate: int, channels: int) -> bytes:
    """float32 samples in [-1, 1] -> 16 bit PCM WAV"""
    pcm = (np.clip(samples, -1.0, 1.0) * 32767).astype(np.int16)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm.tobytes())
    return buffer.getvalue()


class SoundDeviceRecorder(Recorder):
    """
    Microphone capture through sounddevice. One input stream per capture; chunks are collected on the audio thread
    and joined into a WAV file when the capture finishes.
    """

    def __init__(self, sample_rate: int = 16000, channels: int = 1, device: Optional[int] = None):
        self.sample_rate = sample_rate
        self.channels = channels
        self.device = device
        self._stream: Optional[sd.InputStream] = None
        self._chunks: list[np.ndarray] = []
        self._lock = threading.Lock()

    def _callback(self, indata, frames, time, status):
        if status:
            logging.debug(f"Audio input status: {status}")
        with self._lock:
            self._chunks.append(indata.copy())

    async def begin(self) -> None:
        if self._stream is not None:
            await self.finish()
        with self._lock:
            self._chunks = []
        try:
            self._stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=self.channels,
                device=self.device,
                dtype=np.float32,
                callback=self._callback,
            )
            self._stream.start()
        except sd.PortAudioError as e:
            self._stream = None
            raise RecorderError(f"could not open input device: {e}") from e
        logging.debug(f"Audio capture started")

    async def finish(self) -> Optional[bytes]:
        stream, self._stream = self._stream, None
        if stream is None:
            return None
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as e:
            raise RecorderError(f"could not stop input device: {e}") from e
        with self._lock:
            chunks, self._chunks = self._chunks, []
        if not chunks:
            return None
        samples = np.concatenate(chunks)
        logging.debug(f"Audio capture finished, {len(samples) / self.sample_rate:.1f}s")
        return encode_wav(samples, self.sample_rate, self.channels)
