import asyncio
import json
from types import SimpleNamespace

from aiortc import RTCSessionDescription

from messages import decode_event, encode_event

CANDIDATE_LINE = "candidate:1 1 udp 2130706431 192.168.1.2 50000 typ host"
OTHER_CANDIDATE_LINE = "candidate:2 1 udp 1694498815 203.0.113.7 50001 typ srflx raddr 192.168.1.2 rport 50000"


def sdp(with_candidate: bool = True) -> str:
    lines = [
        "v=0",
        "o=- 1 1 IN IP4 0.0.0.0",
        "s=-",
        "t=0 0",
        "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
        "c=IN IP4 0.0.0.0",
        "a=mid:0",
    ]
    if with_candidate:
        lines.append(f"a={CANDIDATE_LINE}")
    return "\r\n".join(lines) + "\r\n"


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class FakeServerConnection:
    """Relay side of a websocket: records everything the relay sends."""

    def __init__(self):
        self.sent = []

    async def send(self, raw):
        self.sent.append(decode_event(raw))

    def events(self, name):
        return [data for event, data in self.sent if event == name]


class FakeClientSocket:
    """Adapter side of a websocket to the relay."""

    def __init__(self, auto_confirm: bool = True):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False
        self.auto_confirm = auto_confirm

    async def send(self, raw):
        event, data = decode_event(raw)
        self.sent.append((event, data))
        if event == "start_session" and self.auto_confirm:
            self.push("session_started", {"sessionId": "sess_test", "clientId": data["clientId"]})

    def push(self, event, data=None):
        self.incoming.put_nowait(encode_event(event, data))

    def push_raw(self, raw):
        self.incoming.put_nowait(raw)

    def drop(self):
        self.incoming.put_nowait(None)

    def events(self, name):
        return [data for event, data in self.sent if event == name]

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(None)


class FakeConnector:

    def __init__(self, auto_confirm: bool = True):
        self.sockets = []
        self.auto_confirm = auto_confirm

    async def __call__(self, url, open_timeout=None):
        socket = FakeClientSocket(self.auto_confirm)
        self.sockets.append(socket)
        return socket


class FailingConnector:

    async def __call__(self, url, open_timeout=None):
        raise OSError("connection refused")


class FakeEmitter:

    def __init__(self):
        self.handlers = {}

    def on(self, event):
        def decorator(handler):
            self.handlers[event] = handler
            return handler
        return decorator

    async def emit(self, event, *args):
        await self.handlers[event](*args)


class FakeChannel(FakeEmitter):

    def __init__(self, label, ready_state="connecting"):
        super().__init__()
        self.label = label
        self.readyState = ready_state
        self.sent = []
        self.closed = False

    def send(self, text):
        self.sent.append(json.loads(text))

    def close(self):
        self.closed = True
        self.readyState = "closed"

    async def open(self):
        self.readyState = "open"
        await self.emit("open")


class FakePeerConnection(FakeEmitter):

    def __init__(self, fail_candidates: bool = False):
        super().__init__()
        self.added = []
        self.channels = []
        self.localDescription = None
        self.remoteDescription = None
        self.connectionState = "new"
        self.closed = False
        self.fail_candidates = fail_candidates

    def createDataChannel(self, label, ordered=True):
        channel = FakeChannel(label)
        self.channels.append(channel)
        return channel

    async def createOffer(self):
        return RTCSessionDescription(sdp=sdp(), type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=sdp(), type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        if self.fail_candidates:
            raise ValueError("stale candidate")
        self.added.append(candidate)

    async def close(self):
        self.closed = True


class FakePeerFactory:

    def __init__(self, **kwargs):
        self.created = []
        self.kwargs = kwargs

    def __call__(self, ice_servers):
        pc = FakePeerConnection(**self.kwargs)
        self.created.append(pc)
        return pc


class FakeMqttClient:
    """Just enough of aiomqtt.Client for the broker adapter."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.subscribed = []
        self.published = []
        self.entered = False
        self.exited = False
        self.queue = asyncio.Queue()

    async def __aenter__(self):
        self.entered = True
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.exited = True

    async def subscribe(self, topic, qos=0):
        self.subscribed.append((topic, qos))

    async def publish(self, topic, payload=None, qos=0):
        self.published.append((topic, json.loads(payload), qos))

    @property
    def messages(self):
        return self._messages()

    async def _messages(self):
        while True:
            item = await self.queue.get()
            if isinstance(item, Exception):
                raise item
            yield item

    def fail(self, error):
        self.queue.put_nowait(error)

    def deliver(self, topic, payload):
        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
        self.queue.put_nowait(SimpleNamespace(topic=SimpleNamespace(value=topic), payload=raw))

    def published_to(self, topic):
        return [(payload, qos) for t, payload, qos in self.published if t == topic]


class FakeMqttFactory:

    def __init__(self):
        self.clients = []

    def __call__(self, **kwargs):
        client = FakeMqttClient(**kwargs)
        self.clients.append(client)
        return client


class BridgedServerConnection:
    """Relay side of a bridged socket: whatever the relay sends lands in the adapter's queue."""

    def __init__(self, client_socket):
        self.client_socket = client_socket

    async def send(self, raw):
        self.client_socket.incoming.put_nowait(raw)


class BridgedClientSocket(FakeClientSocket):

    def __init__(self, relay):
        super().__init__(auto_confirm=False)
        self.relay = relay
        self.server_side = BridgedServerConnection(self)

    async def send(self, raw):
        event, data = decode_event(raw)
        self.sent.append((event, data))
        await self.relay.handle_event(self.server_side, event, data)

    async def close(self):
        await super().close()
        await self.relay.user_disconnected(self.server_side)


class RelayBridge:
    """Connector that plugs adapters straight into a SignalRelay."""

    def __init__(self, relay):
        self.relay = relay
        self.sockets = []

    async def __call__(self, url, open_timeout=None):
        socket = BridgedClientSocket(self.relay)
        self.sockets.append(socket)
        return socket
