import asyncio
from typing import Callable, List, Optional, Sequence, Tuple

import pytest

from ttn_bridge.adapters.mqtt import InboundMessage, MQTTConnectionError, SessionInfo

UPLINK_TOPIC = "v3/itp-project-1@ttn/devices/uno-0004a30b001c1b03/up"


class FakeTransport:
    """In-memory stand-in for MQTTClient with a scripted inbound queue."""

    def __init__(
        self,
        *args,
        session_present: bool = False,
        connect_error: Optional[Exception] = None,
        subscribe_error: Optional[Exception] = None,
        publish_failures: int = 0,
        **kwargs,
    ) -> None:
        self.init_args = args
        self.init_kwargs = kwargs
        self.session_present = session_present
        self.connect_error = connect_error
        self.subscribe_error = subscribe_error
        self.publish_failures = publish_failures

        self.events: List[str] = []
        self.subscribed: List[List[Tuple[str, int]]] = []
        self.unsubscribed: List[List[str]] = []
        self.published: List[Tuple[str, bytes, int]] = []
        self.reconnect_delay: Optional[Tuple[float, float]] = None
        self.connect_handlers: List[Callable[[SessionInfo], None]] = []
        self.disconnect_handlers: List[Callable[[int], None]] = []

        self._queue: Optional[asyncio.Queue] = None
        self._consuming = False
        self._connected = False

    # transport surface ----------------------------------------------
    @property
    def consumer_closed(self) -> bool:
        return not self._consuming

    def start_consuming(self) -> None:
        self.events.append("start_consuming")
        self._queue = asyncio.Queue()
        self._consuming = True

    def stop_consuming(self) -> None:
        self.events.append("stop_consuming")
        if not self._consuming:
            return
        self._consuming = False
        assert self._queue is not None
        self._queue.put_nowait(None)

    def reconnect_delay_set(self, min_delay: float, max_delay: float) -> None:
        self.reconnect_delay = (min_delay, max_delay)

    async def connect(self, timeout: float = 30.0) -> SessionInfo:
        self.events.append("connect")
        if self.connect_error is not None:
            raise self.connect_error
        self._connected = True
        return SessionInfo(session_present=self.session_present)

    async def disconnect(self, timeout: float = 5.0) -> None:
        self.events.append("disconnect")
        self._connected = False

    async def receive(self) -> Optional[InboundMessage]:
        if not self._consuming or self._queue is None:
            return None
        message = await self._queue.get()
        if not self._consuming:
            return None
        return message

    def subscribe(self, topics: Sequence[Tuple[str, int]]) -> None:
        self.events.append("subscribe")
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscribed.append(list(topics))

    def unsubscribe(self, topics: Sequence[str]) -> None:
        self.events.append("unsubscribe")
        self.unsubscribed.append(list(topics))

    def register_connect_handler(self, handler: Callable[[SessionInfo], None]) -> None:
        self.connect_handlers.append(handler)

    def register_disconnect_handler(self, handler: Callable[[int], None]) -> None:
        self.disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    def publish(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False) -> None:
        if self.publish_failures > 0:
            self.publish_failures -= 1
            raise MQTTConnectionError("Publish failed with rc=4")
        self.published.append((topic, payload, qos))

    async def wait_for_publish(self, timeout: float = 5.0) -> None:
        self.events.append("wait_for_publish")

    # test helpers ---------------------------------------------------
    def deliver(self, payload: bytes, topic: str = UPLINK_TOPIC) -> None:
        assert self._queue is not None
        self._queue.put_nowait(InboundMessage(topic=topic, payload=payload))

    def drop_link(self, rc: int = 7) -> None:
        assert self._queue is not None
        self._connected = False
        self._queue.put_nowait(None)
        for handler in list(self.disconnect_handlers):
            handler(rc)

    def restore_link(self, *, session_present: bool) -> None:
        self._connected = True
        for handler in list(self.connect_handlers):
            handler(SessionInfo(session_present=session_present))

    def pending(self) -> int:
        return 0 if self._queue is None else self._queue.qsize()


@pytest.fixture
def fake_transport():
    """Factory for FakeTransport instances."""

    return FakeTransport


@pytest.fixture
def wait_until():
    async def _wait(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.01)

    return _wait
