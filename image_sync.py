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
import os

from config import Config, ConfigurationLoadError
from logger import setup_logging
from mdns_registration import ImageSyncZeroconf, ZeroconfException
from relay_manager import SignalRelay
from segment_server import SegmentServer
from server_data import ServerData
from websocket_server import WebsocketServer


class ImageSyncServer:

    def __init__(self, config):
        self._config = config
        self._mdns = ImageSyncZeroconf(self._config)
        self._data = ServerData(self._config["relay"]["presence_stale_seconds"])
        self._relay = SignalRelay(self._config, self._data)
        self._websocket_server = WebsocketServer(self._config, self._data, self._relay)
        self._segment_server = SegmentServer(self._config, self._data, self._relay)

    async def begin(self):
        logging.info("Starting ImageSync Server")
        async with self._mdns:
            logging.info(f"Starting Relay Websocket Server on port {self._config['server']['websocket_port']}")
            async with self._websocket_server:
                logging.info(f"Starting Segment Server on port {self._config['server']['http_port']}")
                async with self._segment_server:
                    try:
                        logging.info("Ctrl^C to quit")
                        while True:
                            await asyncio.sleep(1)
                            self._data.presence.prune()
                    except asyncio.CancelledError:
                        logging.info("Cancelled ...")
                    except KeyboardInterrupt:
                        logging.info("Cancelled ...")
                    finally:
                        logging.info("Stopping Server ...")
                        self._data.shutdown_event.set()


async def main():
    logging.info("Starting image sync ...")

    config = Config(os.environ.get("IMAGE_SYNC_CONFIG", "./config.toml"))

    try:
        await config.initialize()

        server = ImageSyncServer(config.values)
        await server.begin()
    except ConfigurationLoadError:
        logging.error("Could not load configuration. Exiting")
        return
    except ZeroconfException:
        logging.error("Could not advertise the relay over mDNS. Exiting")
        return


def run():
    setup_logging()
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
