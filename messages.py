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

import dataclasses
import enum
import json
import time
from typing import Optional, Union


class ParseFailure(Exception): pass


class Role(str, enum.Enum):
    EVALUATOR = "evaluator"
    CLIENT = "client"


class Transport(str, enum.Enum):
    RELAYED = "socketio"
    BROKER = "mqtt"
    PEER = "webrtc"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclasses.dataclass(frozen=True)
class ImageUpdateMessage:
    image_index: int
    image_url: str
    sent_at: int
    signed_url: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {
            "imageIndex": self.image_index,
            "imageUrl": self.image_url,
            "sentAt": self.sent_at,
        }
        if self.signed_url is not None:
            payload["signedUrl"] = self.signed_url
        return payload

    @staticmethod
    def from_payload(payload) -> "ImageUpdateMessage":
        if not isinstance(payload, dict):
            raise ParseFailure(f"image update is not an object: {payload!r}")
        image_index = payload.get("imageIndex")
        image_url = payload.get("imageUrl")
        if not isinstance(image_index, int) or isinstance(image_index, bool) or image_index < 0:
            raise ParseFailure(f"bad imageIndex {image_index!r}")
        if not isinstance(image_url, str):
            raise ParseFailure(f"bad imageUrl {image_url!r}")
        sent_at = payload.get("sentAt")
        if not isinstance(sent_at, (int, float)) or isinstance(sent_at, bool):
            sent_at = now_ms()
        signed_url = payload.get("signedUrl")
        if signed_url is not None and not isinstance(signed_url, str):
            raise ParseFailure(f"bad signedUrl {signed_url!r}")
        return ImageUpdateMessage(image_index, image_url, int(sent_at), signed_url)


@dataclasses.dataclass(frozen=True)
class SessionInfo:
    session_id: Optional[str]
    evaluator_id: Optional[str] = None
    evaluator_name: Optional[str] = None
    client_id: Optional[str] = None
    started_at: int = dataclasses.field(default_factory=now_ms)

    @staticmethod
    def from_payload(payload: dict) -> "SessionInfo":
        return SessionInfo(
            session_id=payload.get("sessionId"),
            evaluator_id=payload.get("evaluatorId"),
            evaluator_name=payload.get("evaluatorName"),
            client_id=payload.get("clientId"),
        )


@dataclasses.dataclass(frozen=True)
class SegmentRecord:
    image_index: int
    signed_url: Optional[str]
    audio_payload: Optional[str]  # base64
    session_id: Optional[str] = None
    evaluator_id: Optional[str] = None
    client_id: Optional[str] = None

    def to_payload(self) -> dict:
        payload = {"imageIndex": self.image_index}
        for key, value in (
                ("sessionId", self.session_id),
                ("evaluatorId", self.evaluator_id),
                ("clientId", self.client_id),
                ("signedUrl", self.signed_url),
                ("audioPayload", self.audio_payload),
        ):
            if value is not None:
                payload[key] = value
        return payload


"""
Signaling envelopes. Relayed verbatim by the server, interpreted only by the peer handshake.
"""


@dataclasses.dataclass(frozen=True)
class OfferSignal:
    sdp: str


@dataclasses.dataclass(frozen=True)
class AnswerSignal:
    sdp: str


@dataclasses.dataclass(frozen=True)
class CandidateSignal:
    candidate: str  # "candidate:..." line without the leading "a="
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None


SignalEnvelope = Union[OfferSignal, AnswerSignal, CandidateSignal]


def signal_to_payload(signal: SignalEnvelope) -> dict:
    if isinstance(signal, OfferSignal):
        return {"type": "offer", "sdp": signal.sdp}
    elif isinstance(signal, AnswerSignal):
        return {"type": "answer", "sdp": signal.sdp}
    elif isinstance(signal, CandidateSignal):
        return {
            "candidate": signal.candidate,
            "sdpMid": signal.sdp_mid,
            "sdpMLineIndex": signal.sdp_mline_index,
        }
    raise TypeError(f"not a signal envelope: {signal!r}")


def signal_from_payload(payload) -> SignalEnvelope:
    if not isinstance(payload, dict):
        raise ParseFailure(f"signal is not an object: {payload!r}")
    signal_type = payload.get("type")
    if signal_type in ("offer", "answer"):
        sdp = payload.get("sdp")
        if not isinstance(sdp, str):
            raise ParseFailure(f"{signal_type} without sdp")
        return OfferSignal(sdp) if signal_type == "offer" else AnswerSignal(sdp)
    candidate = payload.get("candidate")
    if isinstance(candidate, dict):  # browser-style nested RTCIceCandidateInit
        payload = candidate
        candidate = candidate.get("candidate")
    if isinstance(candidate, str):
        sdp_mline_index = payload.get("sdpMLineIndex")
        return CandidateSignal(
            candidate=candidate,
            sdp_mid=payload.get("sdpMid"),
            sdp_mline_index=int(sdp_mline_index) if sdp_mline_index is not None else None,
        )
    raise ParseFailure(f"unknown signal {payload!r}")


"""
Data channel payloads. Image payloads are bare ImageUpdateMessage objects, control payloads carry a type.
"""


@dataclasses.dataclass(frozen=True)
class ReadyMessage:
    pass


@dataclasses.dataclass(frozen=True)
class AckMessage:
    sent_at: int
    received_at: int

    def to_payload(self) -> dict:
        return {"sentAt": self.sent_at, "receivedAt": self.received_at}

    @staticmethod
    def from_payload(payload) -> "AckMessage":
        if not isinstance(payload, dict):
            raise ParseFailure(f"ack is not an object: {payload!r}")
        sent_at, received_at = payload.get("sentAt"), payload.get("receivedAt")
        for value in (sent_at, received_at):
            if not isinstance(value, (int, float)) or isinstance(value, bool):
                raise ParseFailure(f"bad ack timestamps {payload!r}")
        return AckMessage(int(sent_at), int(received_at))


ChannelMessage = Union[ImageUpdateMessage, ReadyMessage, AckMessage]


def channel_message_to_json(message: ChannelMessage) -> str:
    if isinstance(message, ImageUpdateMessage):
        return json.dumps(message.to_payload())
    elif isinstance(message, ReadyMessage):
        return json.dumps({"type": "ready"})
    elif isinstance(message, AckMessage):
        return json.dumps({"type": "ack", **message.to_payload()})
    raise TypeError(f"not a channel message: {message!r}")


def channel_message_from_json(raw) -> ChannelMessage:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ParseFailure(f"data channel sent non-JSON data") from e
    if not isinstance(payload, dict):
        raise ParseFailure(f"data channel payload is not an object: {payload!r}")
    message_type = payload.get("type")
    if message_type == "ready":
        return ReadyMessage()
    elif message_type == "ack":
        return AckMessage.from_payload(payload)
    return ImageUpdateMessage.from_payload(payload)


def encode_event(event: str, data: Optional[dict] = None) -> str:
    return json.dumps({"event": event, "data": data if data is not None else {}})


def decode_event(raw) -> tuple[str, dict]:
    try:
        packet = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ParseFailure("non-JSON frame") from e
    if not isinstance(packet, dict) or not isinstance(packet.get("event"), str):
        raise ParseFailure(f"malformed packet - no event")
    data = packet.get("data")
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ParseFailure(f"malformed packet - data is not an object")
    return packet["event"], data
