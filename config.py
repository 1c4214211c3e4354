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

from voluptuous import Schema, Optional, Any, All, Range, Length, Url
import voluptuous.error
import aiofiles
import tomlkit
import tomlkit.exceptions
from pathlib import Path


class ConfigurationLoadError(Exception): pass


Port = All(int, Range(min=0, max=65535))
Seconds = All(Any(int, float), Range(min=0))

CONFIG_SCHEMA = Schema({
    Optional('server', default={}): {
        Optional('name', default="ImageSync"): All(str, Length(min=1)),
        Optional('host', default="0.0.0.0"): str,
        Optional('websocket_port', default=3001): Port,
        Optional('http_port', default=3002): Port,
        Optional('mdns', default=False): bool,
        Optional('advertise_address', default=None): Any(None, str),
    },
    Optional('relay', default={}): {
        Optional('presence_stale_seconds', default=30): Seconds,
    },
    Optional('segments', default={}): {
        Optional('directory', default=None): Any(None, All(str, Length(min=1))),
    },
    Optional('client', default={}): {
        Optional('relay_url', default="ws://localhost:3001"): str,
        Optional('segment_url', default=None): Any(None, Url()),
        Optional('connect_timeout', default=10): Seconds,
        Optional('session_start_timeout', default=5): Seconds,
        Optional('reconnect_delay', default=1): Seconds,
    },
    Optional('broker', default={}): {
        Optional('url', default="mqtt://localhost:1883"): str,
        Optional('topic_prefix', default="image-sync"): All(str, Length(min=1)),
        Optional('qos', default=1): All(int, Range(min=0, max=2)),
        Optional('reconnect_period', default=1): Seconds,
        Optional('heartbeat_interval', default=10): Seconds,
    },
    Optional('peer', default={}): {
        Optional('ice_servers', default=["stun:stun.l.google.com:19302"]): [str],
        Optional('start_resolve_delay', default=0.5): Seconds,
        Optional('resend_delays', default=[0.5, 1.0, 2.0]): [Seconds],
        Optional('data_channel_label', default="image-sync"): All(str, Length(min=1)),
    },
})


def default_config() -> dict:
    """The effective configuration of an empty config file."""
    return CONFIG_SCHEMA({})


class Config:
    values: dict
    config_opened: bool = False

    def __init__(self, config_location: Path):
        self.config_location = config_location
        self.config_schema = CONFIG_SCHEMA

    def __getitem__(self, section: str) -> dict:
        return self.values[section]

    async def initialize(self):
        try:
            async with aiofiles.open(self.config_location, 'r') as config_file:
                file_data = await config_file.read()
                config = tomlkit.parse(file_data)
                logging.debug("Loaded Configuration without toml format error")
                logging.debug("Validating against Schema.")
                self.values = self.config_schema(config.unwrap())
                self.config_opened = True
                logging.debug("Validated against Schema.")
        except FileNotFoundError as e:
            logging.exception(e)
            logging.warning(
                f"Could not find {self.config_location}. Copy from .example/config.toml to {self.config_location}")
            raise ConfigurationLoadError() from e
        except IOError as e:
            logging.exception(e)
            logging.warning(f"Could not open file {self.config_location}")
            raise ConfigurationLoadError() from e
        except tomlkit.exceptions.ParseError as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} is invalid")
            raise ConfigurationLoadError() from e
        except voluptuous.error.MultipleInvalid as e:
            logging.exception(e)
            logging.warning(f"Configuration in {self.config_location} does not match expected format")
            logging.warning(f"Issue configuration item: {e.path}")
            raise ConfigurationLoadError() from e

        logging.info(f"Configuration loaded.")
