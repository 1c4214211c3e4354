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
import binascii
import json
import logging
from pathlib import Path
from typing import Optional

import aiofiles
import aiofiles.os
from aiohttp import web
from voluptuous import Schema, Required, Optional as OptionalKey, Any, All, Range, Length, In, REMOVE_EXTRA
import voluptuous.error

from messages import Role
from relay_manager import SignalRelay
from server_data import ServerData, StoredSegment

NullableString = Any(None, str)

SEGMENT_SCHEMA = Schema({
    Required('imageIndex'): All(int, Range(min=0)),
    OptionalKey('sessionId'): NullableString,
    OptionalKey('evaluatorId'): NullableString,
    OptionalKey('clientId'): NullableString,
    OptionalKey('signedUrl'): NullableString,
    OptionalKey('audioPayload'): NullableString,
}, extra=REMOVE_EXTRA)

PRESENCE_SCHEMA = Schema({
    Required('userId'): All(str, Length(min=1)),
    Required('role'): In([role.value for role in Role]),
    OptionalKey('package'): NullableString,
}, extra=REMOVE_EXTRA)


def segment_id_for(evaluator_id: Optional[str], client_id: Optional[str], image_index: int) -> str:
    return f"{evaluator_id or 'unknown'}_{client_id or 'unknown'}_{image_index}"


def _error(message: str, status: int = 400) -> web.Response:
    return web.json_response({"error": message}, status=status)


class SegmentServer:
    """
    HTTP side of the server: segment ingestion, the segment listing, presence heartbeats and the client list.
    """

    def __init__(self, config, data: ServerData, relay: SignalRelay):
        self._config = config
        self._data = data
        self._relay = relay
        directory = self._config["segments"]["directory"]
        self._directory: Optional[Path] = Path(directory) if directory else None
        self._runner: Optional[web.AppRunner] = None

    def make_app(self) -> web.Application:
        app = web.Application()
        app.add_routes([
            web.post("/segment", self.post_segment),
            web.get("/segments", self.get_segments),
            web.post("/presence", self.post_presence),
            web.get("/clients", self.get_clients),
        ])
        return app

    @staticmethod
    async def _read_json(request: web.Request, schema: Schema) -> dict:
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise web.HTTPBadRequest(text=json.dumps({"error": f"body is not JSON: {e}"}),
                                     content_type="application/json")
        try:
            return schema(body)
        except voluptuous.error.Invalid as e:
            raise web.HTTPBadRequest(text=json.dumps({"error": str(e)}), content_type="application/json")

    async def post_segment(self, request: web.Request) -> web.Response:
        body = await self._read_json(request, SEGMENT_SCHEMA)
        signed_url, audio_payload = body.get("signedUrl"), body.get("audioPayload")
        if signed_url is None and audio_payload is None:
            return _error("signedUrl or audioPayload is required")

        segment = StoredSegment(
            segment_id=segment_id_for(body.get("evaluatorId"), body.get("clientId"), body["imageIndex"]),
            image_index=body["imageIndex"],
            session_id=body.get("sessionId"),
            evaluator_id=body.get("evaluatorId"),
            client_id=body.get("clientId"),
            signed_url=signed_url,
            audio_payload=audio_payload,
        )
        if audio_payload is not None and self._directory is not None:
            try:
                audio = base64.b64decode(audio_payload, validate=True)
            except binascii.Error:
                return _error("audioPayload is not valid base64")
            await self._write_audio(segment.segment_id, audio)

        if segment.segment_id in self._data.segments:
            logging.debug(f"Segment {segment.segment_id} overwritten")
        self._data.segments[segment.segment_id] = segment
        logging.info(f"Segment {segment.segment_id} stored (audio: {audio_payload is not None})")
        return web.json_response({"ok": True, "segmentId": segment.segment_id})

    async def _write_audio(self, segment_id: str, audio: bytes):
        await aiofiles.os.makedirs(self._directory, exist_ok=True)
        async with aiofiles.open(self._directory / f"{segment_id}.wav", 'wb') as audio_file:
            await audio_file.write(audio)

    async def get_segments(self, request: web.Request) -> web.Response:
        segments = sorted(self._data.segments.values(), key=lambda s: (s.session_id or "", s.image_index))
        return web.json_response({"segments": [segment.summary() for segment in segments]})

    async def post_presence(self, request: web.Request) -> web.Response:
        body = await self._read_json(request, PRESENCE_SCHEMA)
        self._data.presence.touch(body["userId"], Role(body["role"]), body.get("package"))
        logging.debug(f"Presence heartbeat from {body['userId']}")
        return web.json_response({"ok": True})

    async def get_clients(self, request: web.Request) -> web.Response:
        package = request.query.get("package") or None
        clients = self._relay.available_clients(package)
        return web.json_response({"clients": [{"id": user_id, "online": True} for user_id in clients]})

    async def __aenter__(self):
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._config["server"]["host"], int(self._config["server"]["http_port"]))
        await site.start()
        logging.debug(f"Started segment server on port {self._config['server']['http_port']}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logging.debug(f"Stopped segment server")
