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

import enum
import logging
from typing import Awaitable, Callable, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from messages import AnswerSignal, CandidateSignal, OfferSignal, Role, SignalEnvelope
from session_protocol import HandshakeFailure


class HandshakeState(enum.Enum):
    IDLE = "idle"
    OFFER_SENT = "offer-sent"
    OFFER_RECEIVED = "offer-received"
    ANSWER_EXCHANGED = "answer-exchanged"
    CHANNEL_OPENING = "channel-opening"
    CHANNEL_OPEN = "channel-open"
    CLOSED = "closed"


def candidates_from_sdp(sdp: str) -> list[CandidateSignal]:
    """
    Pull the a=candidate lines out of a local description, tagged with their media section.
    """
    candidates = []
    sections = sdp.replace("\r\n", "\n").split("\nm=")[1:]
    for mline_index, section in enumerate(sections):
        lines = section.split("\n")
        mid = next((line[len("a=mid:"):] for line in lines if line.startswith("a=mid:")), None)
        for line in lines:
            if line.startswith("a=candidate:"):
                candidates.append(CandidateSignal(line[len("a="):].strip(), mid, mline_index))
    return candidates


def default_peer_factory(ice_servers: list[str]) -> RTCPeerConnection:
    return RTCPeerConnection(RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers]))


class PeerHandshake:
    """
    Offer/answer/candidate exchange for one peer connection, plus the data channel it yields.

    The evaluator always offers and always creates the channel; the client answers and receives the channel.
    Remote candidates that show up before the remote description is applied are held back and applied right
    after it.
    """

    def __init__(self, role: Role, send_signal: Callable[[SignalEnvelope], Awaitable[None]],
                 ice_servers: list[str], label: str = "image-sync", peer_factory=None):
        self.role = role
        self.state = HandshakeState.IDLE
        self._send_signal = send_signal
        self._ice_servers = ice_servers
        self._label = label
        self._peer_factory = peer_factory or default_peer_factory

        self._pc = None
        self._channel = None
        self._remote_description_set = False
        self._pending_candidates: list[CandidateSignal] = []
        self._generation = 0

        self.on_channel_open: Optional[Callable[[], Awaitable[None]]] = None
        self.on_channel_message: Optional[Callable[[object], Awaitable[None]]] = None
        self.on_channel_close: Optional[Callable[[], Awaitable[None]]] = None
        self.on_failed: Optional[Callable[[], Awaitable[None]]] = None

    @property
    def channel(self):
        return self._channel

    @property
    def channel_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open"

    @property
    def pending_candidate_count(self) -> int:
        return len(self._pending_candidates)

    def _create_peer_connection(self):
        self._generation += 1
        generation = self._generation
        pc = self._peer_factory(self._ice_servers)

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            if generation != self._generation:
                return
            logging.debug(f"[webrtc] connection state {pc.connectionState}")
            if pc.connectionState == "failed" and self.on_failed is not None:
                await self.on_failed()

        if self.role == Role.CLIENT:
            @pc.on("datachannel")
            async def on_datachannel(channel):
                if generation != self._generation:
                    return
                logging.debug(f"[webrtc] data channel {channel.label} announced")
                await self._attach_channel(channel, generation)

        self._pc = pc
        return pc

    async def _attach_channel(self, channel, generation: int):
        self._channel = channel
        if self.role == Role.CLIENT and self.state != HandshakeState.CHANNEL_OPEN:
            self.state = HandshakeState.CHANNEL_OPENING

        @channel.on("open")
        async def on_open():
            if generation == self._generation:
                await self._channel_opened()

        @channel.on("message")
        async def on_message(message):
            if generation == self._generation and self.on_channel_message is not None:
                await self.on_channel_message(message)

        @channel.on("close")
        async def on_close():
            if generation != self._generation:
                return
            self.state = HandshakeState.CLOSED
            if self.on_channel_close is not None:
                await self.on_channel_close()

        # a received channel may already be open by the time it is announced
        if channel.readyState == "open":
            await self._channel_opened()

    async def _channel_opened(self):
        if self.state == HandshakeState.CHANNEL_OPEN:
            return
        self.state = HandshakeState.CHANNEL_OPEN
        logging.info(f"[webrtc] data channel open ({self.role.value})")
        if self.on_channel_open is not None:
            await self.on_channel_open()

    async def start_offer(self):
        if self.role != Role.EVALUATOR:
            raise HandshakeFailure("only the evaluator offers")
        if self._pc is not None:
            await self._discard_peer_connection()
        pc = self._create_peer_connection()
        generation = self._generation
        channel = pc.createDataChannel(self._label, ordered=True)
        await self._attach_channel(channel, generation)
        try:
            offer = await pc.createOffer()
            await pc.setLocalDescription(offer)
        except Exception as e:
            raise HandshakeFailure(f"could not create offer: {e}") from e
        self.state = HandshakeState.OFFER_SENT
        await self._send_signal(OfferSignal(pc.localDescription.sdp))
        await self._forward_local_candidates()

    async def handle_signal(self, signal: SignalEnvelope):
        if isinstance(signal, OfferSignal):
            await self._accept_offer(signal)
        elif isinstance(signal, AnswerSignal):
            await self._accept_answer(signal)
        elif isinstance(signal, CandidateSignal):
            await self._add_candidate(signal)
        else:
            raise TypeError(f"unhandled signal {signal!r}")

    async def _accept_offer(self, signal: OfferSignal):
        if self.role != Role.CLIENT:
            logging.warning(f"[webrtc] evaluator ignoring offer")
            return
        if self._pc is not None:
            logging.info(f"[webrtc] new offer replaces the existing peer connection")
            await self._discard_peer_connection()

        pc = self._create_peer_connection()
        self.state = HandshakeState.OFFER_RECEIVED
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=signal.sdp, type="offer"))
            self._remote_description_set = True
            await self._drain_candidates()
            answer = await pc.createAnswer()
            await pc.setLocalDescription(answer)
        except Exception as e:
            raise HandshakeFailure(f"could not answer offer: {e}") from e
        if self.state == HandshakeState.OFFER_RECEIVED:
            self.state = HandshakeState.ANSWER_EXCHANGED
        await self._send_signal(AnswerSignal(pc.localDescription.sdp))
        await self._forward_local_candidates()

    async def _accept_answer(self, signal: AnswerSignal):
        if self.role != Role.EVALUATOR or self.state != HandshakeState.OFFER_SENT:
            logging.warning(f"[webrtc] unexpected answer in state {self.state.value}")
            return
        try:
            await self._pc.setRemoteDescription(RTCSessionDescription(sdp=signal.sdp, type="answer"))
        except Exception as e:
            raise HandshakeFailure(f"could not apply answer: {e}") from e
        self._remote_description_set = True
        self.state = HandshakeState.ANSWER_EXCHANGED
        await self._drain_candidates()
        if self.state == HandshakeState.ANSWER_EXCHANGED:
            self.state = HandshakeState.CHANNEL_OPENING

    async def _add_candidate(self, signal: CandidateSignal):
        if self._pc is None or not self._remote_description_set:
            self._pending_candidates.append(signal)
            return
        await self._apply_candidate(signal)

    async def _drain_candidates(self):
        pending, self._pending_candidates = self._pending_candidates, []
        for signal in pending:
            await self._apply_candidate(signal)

    async def _apply_candidate(self, signal: CandidateSignal):
        try:
            candidate = candidate_from_sdp(signal.candidate.split(":", 1)[1])
            candidate.sdpMid = signal.sdp_mid
            candidate.sdpMLineIndex = signal.sdp_mline_index
            await self._pc.addIceCandidate(candidate)
        except Exception as e:
            # duplicate and stale candidates are routine
            logging.debug(f"[webrtc] ignoring candidate {signal.candidate!r}: {e}")

    async def _forward_local_candidates(self):
        for candidate in candidates_from_sdp(self._pc.localDescription.sdp):
            await self._send_signal(candidate)

    def send(self, text: str) -> bool:
        if not self.channel_open:
            return False
        self._channel.send(text)
        return True

    async def _discard_peer_connection(self):
        self._generation += 1  # silences handlers of the old connection
        channel, self._channel = self._channel, None
        pc, self._pc = self._pc, None
        self._remote_description_set = False
        self._pending_candidates = []
        if channel is not None:
            channel.close()
        if pc is not None:
            await pc.close()

    async def close(self):
        await self._discard_peer_connection()
        self.state = HandshakeState.CLOSED
