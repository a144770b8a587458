import asyncio
import json
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import pytest

from excavator_teleop.adapters.mqtt import MQTTConnectionError
from excavator_teleop.core import (
    BusUnavailableError,
    ChannelError,
    JointCommand,
    SignalingError,
    StreamInfo,
)
from excavator_teleop.session import events as ev


class FakeTransport:
    """Records every request; events are injected with ``emit``."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []
        self.sent: List[tuple] = []
        self.fail_on: set[str] = set()
        self.handler: Optional[Callable[[Any], None]] = None
        self._ids = 0

    def set_event_handler(self, handler):
        self.handler = handler

    def emit(self, event) -> None:
        assert self.handler is not None
        self.handler(event)

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def _next_id(self, prefix: str) -> str:
        self._ids += 1
        return f"{prefix}{self._ids}"

    async def register(self, identity):
        self.calls.append(("register", identity))
        if "register" in self.fail_on:
            raise SignalingError("identity taken")
        self.emit(ev.Registered(identity))

    async def open_data_channel(self, remote, *, label):
        self.calls.append(("open", remote, label))
        return self._next_id("ch")

    async def send(self, channel_id, payload):
        if "send" in self.fail_on:
            raise ChannelError("send failed")
        self.sent.append((channel_id, dict(payload)))

    async def close_data_channel(self, channel_id):
        self.calls.append(("close_data", channel_id))
        if "close_data" in self.fail_on:
            raise ChannelError("close failed")

    async def call(self, remote, stream):
        call_id = self._next_id("call")
        self.calls.append(("call", remote, stream))
        return call_id

    async def answer(self, call_id):
        self.calls.append(("answer", call_id))

    async def close_media(self, call_id):
        self.calls.append(("close_media", call_id))
        if "close_media" in self.fail_on:
            raise ChannelError("hangup failed")

    async def release(self):
        self.calls.append(("release",))
        if "release" in self.fail_on:
            raise SignalingError("release failed")


class FakeBus:
    def __init__(self) -> None:
        self.connected = True
        self.fail = False
        self.published: List[JointCommand] = []

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def publish(self, command: JointCommand) -> None:
        if self.fail:
            raise BusUnavailableError("bus dropped the message")
        self.published.append(command)


class FakeMediaSource:
    """Returns the queued results in order, repeating the last one."""

    def __init__(self, *results: Optional[StreamInfo]) -> None:
        self.results = list(results) or [None]
        self.probes = 0
        self.closed = False

    async def probe(self):
        self.probes += 1
        index = min(self.probes, len(self.results)) - 1
        return self.results[index]

    async def close(self):
        self.closed = True


class InMemoryBroker:
    """Topic router standing in for an MQTT broker.

    ``client_factory`` produces objects with the ``MQTTClient`` surface used
    by the relay transport.
    """

    def __init__(self) -> None:
        self.subscriptions: Dict[str, List["BrokerClient"]] = defaultdict(list)
        self.log: List[tuple[str, dict]] = []
        self.clients: List["BrokerClient"] = []

    def client_factory(self, client_id: str) -> "BrokerClient":
        client = BrokerClient(self, client_id)
        self.clients.append(client)
        return client

    def route(self, topic: str, payload: bytes) -> None:
        try:
            self.log.append((topic, json.loads(payload)))
        except ValueError:
            self.log.append((topic, {"raw": payload}))
        loop = asyncio.get_running_loop()
        for client in list(self.subscriptions.get(topic, ())):
            loop.call_soon(client.deliver, topic, payload)


class BrokerClient:
    def __init__(self, broker: InMemoryBroker, client_id: str) -> None:
        self.broker = broker
        self.client_id = client_id
        self.connected = False
        self.refuse = False
        self._handler = None
        self._disconnect_handlers: List[Callable[[int], None]] = []

    def set_message_handler(self, handler):
        self._handler = handler

    def register_disconnect_handler(self, handler):
        self._disconnect_handlers.append(handler)

    async def connect(self, timeout=None):
        if self.refuse:
            raise MQTTConnectionError("MQTT broker rejected connection (rc=5)")
        self.connected = True

    async def disconnect(self, timeout=5.0):
        self.connected = False
        for topic, clients in self.broker.subscriptions.items():
            if self in clients:
                clients.remove(self)

    def drop(self, rc: int = 7) -> None:
        self.connected = False
        for handler in self._disconnect_handlers:
            handler(rc)

    def subscribe(self, topic, qos=1):
        self.broker.subscriptions[topic].append(self)

    def unsubscribe(self, topic):
        if self in self.broker.subscriptions.get(topic, []):
            self.broker.subscriptions[topic].remove(self)

    def publish(self, topic, payload, qos=1, retain=False):
        if not self.connected:
            raise MQTTConnectionError("MQTT client not connected")
        self.broker.route(topic, payload)

    def deliver(self, topic, payload):
        if self._handler is not None and self.connected:
            self._handler(topic, payload)


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def bus() -> FakeBus:
    return FakeBus()


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def media_source_factory():
    return FakeMediaSource


@pytest.fixture
def eventually():
    return _eventually
