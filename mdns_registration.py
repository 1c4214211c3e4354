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

import logging
import socket

import zeroconf
from zeroconf import IPVersion
from zeroconf.asyncio import AsyncZeroconf, AsyncServiceInfo

SERVICE_TYPE = "_image-sync._tcp.local."


class ZeroconfManager:

    def __init__(self):
        self._zeroconf = AsyncZeroconf(ip_version=IPVersion.V4Only)

    async def register_service(self, service: AsyncServiceInfo):
        await self._zeroconf.async_register_service(service)

    async def unregister_all_services(self):
        await self._zeroconf.async_unregister_all_services()

    async def close(self):
        await self._zeroconf.async_close()


class ZeroconfException(Exception): pass


def build_service_info(config) -> AsyncServiceInfo:
    server = config["server"]
    address = server["advertise_address"] or socket.gethostbyname(socket.gethostname())
    return AsyncServiceInfo(
        SERVICE_TYPE,
        f"{server['name']}.{SERVICE_TYPE}",
        addresses=[socket.inet_aton(address)],
        port=int(server["websocket_port"]),
        properties={
            "http_port": str(server["http_port"]),
            "transports": "socketio,webrtc",
        },
        server=f"{server['name']}.local.",
    )


class ImageSyncZeroconf:
    """Advertises the relay websocket so clients on the LAN can find it."""
    _service: AsyncServiceInfo

    def __init__(self, config):
        self._config = config
        self._manager = None

    async def start(self):
        try:
            self._manager = ZeroconfManager()
            self._service = build_service_info(self._config)
            await self._manager.register_service(self._service)
            logging.debug(f"Registered services.")
        except (zeroconf.Error, OSError) as e:
            logging.exception(e)
            raise ZeroconfException() from e

    async def stop(self):
        if self._manager is None:
            return
        await self._manager.unregister_all_services()
        await self._manager.close()
        self._manager = None
        logging.debug(f"Unregistered services.")

    async def __aenter__(self):
        if self._config["server"]["mdns"]:
            await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
