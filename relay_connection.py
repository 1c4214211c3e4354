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
import inspect
import logging
from typing import Awaitable, Callable, Optional

import websockets

from latency import LatencyTracker
from messages import ParseFailure, Role, Transport, decode_event, encode_event
from session_protocol import ConnectError

EventHandler = Callable[[dict], Optional[Awaitable[None]]]


class RelayConnection:
    """
    Websocket link from an adapter to the relay.

    The link reconnects on its own. Every (re)connection announces identity with `register` before anything else
    may be sent, since the relay cannot route to an unregistered connection.
    """

    def __init__(self, url: str, package: Transport, metrics: LatencyTracker,
                 connect_timeout: float = 10.0, reconnect_delay: float = 1.0, connector=None):
        self._url = url
        self._package = package
        self._metrics = metrics
        self._connect_timeout = connect_timeout
        self._reconnect_delay = reconnect_delay
        self._connector = connector or websockets.connect

        self._user_id: Optional[str] = None
        self._role: Optional[Role] = None
        self._websocket = None
        self._task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._closing = False

        self._handlers: dict[str, EventHandler] = dict()
        self._waiters: dict[str, list[asyncio.Future]] = dict()
        self.on_reconnect: Optional[Callable[[], Awaitable[None]]] = None
        self.on_connection_lost: Optional[Callable[[], Awaitable[None]]] = None

    @property
    def connected(self) -> bool:
        return self._websocket is not None

    def on(self, event: str, handler: Optional[EventHandler]):
        if handler is None:
            self._handlers.pop(event, None)
        else:
            self._handlers[event] = handler

    async def open(self, user_id: str, role: Role):
        self._user_id = user_id
        self._role = role
        self._closing = False
        self._ready = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run())
        try:
            await self._ready
        except ConnectError:
            self._task = None
            raise

    async def close(self):
        self._closing = True
        for futures in self._waiters.values():
            for future in futures:
                if not future.done():
                    future.cancel()
        self._waiters.clear()
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            try:
                await websocket.close()
            except Exception as e:
                logging.debug(f"[relay] error while closing websocket: {e}")
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def send(self, event: str, data: Optional[dict] = None) -> bool:
        websocket = self._websocket
        if websocket is None:
            logging.debug(f"[relay] wanted to send {event} while not connected")
            return False
        try:
            await websocket.send(encode_event(event, data))
            return True
        except websockets.exceptions.ConnectionClosed:
            logging.debug(f"[relay] connection closed while sending {event}")
            return False

    async def request(self, event: str, data: Optional[dict], reply_event: str, timeout: float) -> Optional[dict]:
        """
        Send `event` and wait once for `reply_event`. Returns None on timeout or when the send failed.
        """
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(reply_event, []).append(future)
        try:
            if not await self.send(event, data):
                return None
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logging.warning(f"[relay] no {reply_event} within {timeout}s")
            return None
        finally:
            waiters = self._waiters.get(reply_event, [])
            if future in waiters:
                waiters.remove(future)

    async def _register(self, websocket):
        await websocket.send(encode_event("register", {
            "userId": self._user_id,
            "role": self._role.value,
            "package": self._package.value,
        }))

    async def _run(self):
        first = True
        while not self._closing:
            try:
                websocket = await self._connector(self._url, open_timeout=self._connect_timeout)
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                if first:
                    self._ready.set_exception(ConnectError(f"could not reach relay at {self._url}: {e}"))
                    return
                logging.debug(f"[relay] reconnect failed: {e}")
                await asyncio.sleep(self._reconnect_delay)
                continue

            try:
                await self._register(websocket)
            except websockets.exceptions.ConnectionClosed as e:
                if first:
                    self._ready.set_exception(ConnectError(f"relay closed during registration: {e}"))
                    return
                await asyncio.sleep(self._reconnect_delay)
                continue

            self._websocket = websocket
            if first:
                logging.info(f"[relay] connected to {self._url} as {self._user_id} ({self._role.value})")
                self._ready.set_result(None)
                first = False
            else:
                self._metrics.record_reconnect()
                logging.info(f"[relay] reconnected and re-registered as {self._user_id}")
                if self.on_reconnect is not None:
                    await self._call(self.on_reconnect)

            try:
                async for raw in websocket:
                    await self._dispatch(raw)
            except websockets.exceptions.ConnectionClosed:
                logging.debug(f"[relay] connection closed")

            self._websocket = None
            if self._closing:
                break
            logging.warning(f"[relay] lost connection to {self._url}, reconnecting")
            if self.on_connection_lost is not None:
                await self._call(self.on_connection_lost)
            await asyncio.sleep(self._reconnect_delay)

    async def _dispatch(self, raw):
        try:
            event, data = decode_event(raw)
        except ParseFailure as e:
            self._metrics.record_failure()
            logging.warning(f"[relay] dropped frame: {e}")
            return
        logging.debug(f"[relay] received {event}: {data}")

        for future in self._waiters.pop(event, []):
            if not future.done():
                future.set_result(data)

        handler = self._handlers.get(event)
        if handler is not None:
            await self._call(handler, data)

    @staticmethod
    async def _call(handler, *args):
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logging.exception(e)
