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
import logging

import websockets
from websockets.asyncio.server import ServerConnection, serve

from messages import ParseFailure, decode_event
from relay_manager import SignalRelay
from server_data import ServerData


class WebsocketServer:

    def __init__(self, config, data: ServerData, relay: SignalRelay):
        self._config = config
        self._data = data
        self._relay = relay
        self._websocket_server = serve(self.handler, self._config["server"]["host"],
                                       int(self._config["server"]["websocket_port"]))

    async def handler(self, websocket: ServerConnection):
        logging.debug(f"Websocket connection from {websocket.remote_address}")
        shutdown_wait_task = asyncio.create_task(self._data.shutdown_event.wait())
        try:
            while True:
                recv_task = asyncio.create_task(websocket.recv())
                done, pending = await asyncio.wait(
                    [recv_task, shutdown_wait_task],
                    return_when=asyncio.FIRST_COMPLETED
                )

                # shutdown case
                if self._data.shutdown_event.is_set():
                    recv_task.cancel()
                    await websocket.close()
                    break

                # raises ConnectionClosed once the peer is gone
                message = await recv_task
                if isinstance(message, str):
                    await self._parse_message(websocket, message)
        except websockets.exceptions.ConnectionClosed:
            logging.debug(f"Websocket connection closed")
        finally:
            shutdown_wait_task.cancel()
            await self._relay.user_disconnected(websocket)

    async def _parse_message(self, websocket: ServerConnection, message: str):
        try:
            event, data = decode_event(message)
        except ParseFailure as e:
            logging.warning(f"Dropping websocket frame: {e}")
            return
        logging.debug(f"Received message: {event} {data}")
        await self._relay.handle_event(websocket, event, data)

    async def __aenter__(self):
        if self._websocket_server is not None:
            logging.debug(f"Starting websocket server")
            return await self._websocket_server.__aenter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._websocket_server is not None:
            logging.debug(f"Stopping websocket server")
            return await self._websocket_server.__aexit__(exc_type, exc_val, exc_tb)
