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

from typing import Callable, Union

from broker_channel import BrokerChannelAdapter
from messages import Transport
from peer_channel import PeerChannelAdapter
from relayed_channel import RelayedChannelAdapter
from session_protocol import SessionProtocol

ADAPTERS: dict[Transport, Callable[..., SessionProtocol]] = {
    Transport.RELAYED: RelayedChannelAdapter,
    Transport.BROKER: BrokerChannelAdapter,
    Transport.PEER: PeerChannelAdapter,
}


def create_adapter(transport: Union[Transport, str], config: dict, **kwargs) -> SessionProtocol:
    """
    A fresh adapter for every call; adapters are never shared between sessions.

    Extra keyword arguments (connector, client_factory, peer_factory) go to the adapter's constructor.
    """
    try:
        transport = Transport(transport)
    except ValueError:
        raise ValueError(f"unknown transport {transport!r}, expected one of {[t.value for t in Transport]}")
    return ADAPTERS[transport](config, **kwargs)
