"""MQTT adapter encapsulating paho-mqtt client usage."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

import paho.mqtt.client as mqtt

from ..config import BrokerConfig

LOGGER = logging.getLogger(__name__)
PAHO_LOGGER = logging.getLogger(f"{__name__}.paho")

TopicFilter = Tuple[str, int]


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to establish a connection."""


@dataclass(slots=True, frozen=True)
class SessionInfo:
    session_present: bool


@dataclass(slots=True, frozen=True)
class InboundMessage:
    topic: str
    payload: bytes
    qos: int = 0
    retain: bool = False


def _flag(flags: Any, name: str) -> bool:
    if flags is None:
        return False
    if isinstance(flags, dict):
        return bool(flags.get(name, False))
    return bool(getattr(flags, name, False))


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    Inbound messages are handed over to the event loop and queued until
    :meth:`receive` pulls them. Consumption must be armed with
    :meth:`start_consuming` before :meth:`connect`; a persistent session may
    redeliver its backlog right after the CONNACK.

    :meth:`receive` returns ``None`` either on link loss (consumer still
    open) or once :meth:`stop_consuming` was called (``consumer_closed`` is
    then true).
    """

    def __init__(
        self,
        config: BrokerConfig,
        *,
        client_id: str,
        password: Optional[str] = None,
        clean_session: bool = False,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.clean_session = clean_session
        self._password = password

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue[Optional[InboundMessage]]] = None
        self._consuming = False
        self._connected_event: Optional[asyncio.Event] = None
        self._disconnect_event: Optional[asyncio.Event] = None
        self._last_connect_rc: Any = None
        self._session: Optional[SessionInfo] = None
        self._connected: bool = False
        self._reconnect_delay: Tuple[int, int] = (2, 30)
        self._last_publish: Optional[mqtt.MQTTMessageInfo] = None
        self._disconnect_handlers: List[Callable[[Any], None]] = []
        self._connect_handlers: List[Callable[[SessionInfo], None]] = []

    # ------------------------------------------------------------------
    # Consumer handle
    # ------------------------------------------------------------------
    def start_consuming(self) -> None:
        """Arm the inbound queue. Must run on the event loop."""

        self._loop = asyncio.get_running_loop()
        if self._queue is None or not self._consuming:
            self._queue = asyncio.Queue()
        self._consuming = True

    def stop_consuming(self) -> None:
        """Close the consumer handle and wake a pending :meth:`receive`."""

        if not self._consuming:
            return
        self._consuming = False
        if self._queue is not None:
            self._queue.put_nowait(None)

    @property
    def consumer_closed(self) -> bool:
        return not self._consuming

    async def receive(self) -> Optional[InboundMessage]:
        """Wait for the next inbound message.

        Returns ``None`` on link loss or when the consumer was closed.
        """

        if not self._consuming or self._queue is None:
            return None
        message = await self._queue.get()
        if not self._consuming:
            return None
        return message

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    def reconnect_delay_set(self, min_delay: float, max_delay: float) -> None:
        """Configure the transport's automatic reconnect backoff."""

        low = max(1, int(round(min_delay)))
        high = max(low, int(round(max_delay)))
        self._reconnect_delay = (low, high)
        if self._client is not None:
            self._client.reconnect_delay_set(min_delay=low, max_delay=high)

    async def connect(self, timeout: float = 30.0) -> SessionInfo:
        """Connect to the MQTT broker and wait for acknowledgement."""

        self._loop = asyncio.get_running_loop()
        self._connected_event = asyncio.Event()
        self._disconnect_event = asyncio.Event()
        self._last_connect_rc = None
        self._session = None

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            clean_session=self.clean_session,
        )
        client.enable_logger(PAHO_LOGGER)

        if self.config.username:
            client.username_pw_set(self.config.username, self._password)
        if self.config.tls:
            client.tls_set()

        low, high = self._reconnect_delay
        client.reconnect_delay_set(min_delay=low, max_delay=high)

        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message

        self._client = client

        LOGGER.info(
            "Connecting to MQTT broker %s:%s (clean_session=%s)",
            self.config.host,
            self.config.port,
            self.clean_session,
        )

        try:
            client.connect_async(
                self.config.host, self.config.port, self.config.keepalive
            )
        except (OSError, ValueError) as exc:
            self._client = None
            raise MQTTConnectionError(f"Invalid MQTT connection parameters: {exc}") from exc
        client.loop_start()

        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
            if self._last_connect_rc is None or self._last_connect_rc != 0:
                raise MQTTConnectionError(
                    f"MQTT broker rejected connection (rc={self._last_connect_rc})"
                )
        except asyncio.TimeoutError as exc:
            self._abort(client)
            raise MQTTConnectionError("Timed out connecting to MQTT broker") from exc
        except MQTTConnectionError:
            self._abort(client)
            raise

        assert self._session is not None
        return self._session

    async def disconnect(self, timeout: float = 5.0) -> None:
        """Gracefully disconnect from the broker."""

        if not self._client:
            return

        assert self._disconnect_event is not None

        if not self._connected:
            self._client.loop_stop()
            self._client = None
            return

        self._disconnect_event.clear()
        self._client.disconnect()

        try:
            await asyncio.wait_for(self._disconnect_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Timed out waiting for MQTT disconnect acknowledgement")
        finally:
            self._client.loop_stop()
            self._client = None
        self._connected = False

    def _abort(self, client: mqtt.Client) -> None:
        client.loop_stop()
        self._client = None
        self._connected = False

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------
    def publish(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")

        info = self._client.publish(topic, payload, qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Publish failed with rc={info.rc}")
        self._last_publish = info

    async def wait_for_publish(self, timeout: float = 5.0) -> None:
        """Wait until the most recent publish left the client."""

        info = self._last_publish
        if info is None:
            return
        try:
            await asyncio.to_thread(info.wait_for_publish, timeout)
        except (RuntimeError, ValueError) as exc:
            raise MQTTConnectionError(f"Publish was not sent: {exc}") from exc
        if not info.is_published():
            raise MQTTConnectionError("Timed out waiting for publish to complete")

    def subscribe(self, topics: Sequence[TopicFilter]) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")
        if not topics:
            return
        result, _ = self._client.subscribe(list(topics))
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Subscribe failed with rc={result}")

    def unsubscribe(self, topics: Sequence[str]) -> None:
        if not self._client:
            raise MQTTConnectionError("MQTT client not connected")
        if not topics:
            return
        result, _ = self._client.unsubscribe(list(topics))
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise MQTTConnectionError(f"Unsubscribe failed with rc={result}")

    def register_disconnect_handler(self, handler: Callable[[Any], None]) -> None:
        self._disconnect_handlers.append(handler)

    def register_connect_handler(self, handler: Callable[[SessionInfo], None]) -> None:
        self._connect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._connected

    # ------------------------------------------------------------------
    # Internal callbacks bridging the threaded paho callbacks into asyncio
    # ------------------------------------------------------------------
    def _call_in_loop(self, callback: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        session = SessionInfo(session_present=_flag(flags, "session_present"))
        self._call_in_loop(self._handle_connack, session, reason_code)

    def _handle_connack(self, session: SessionInfo, reason_code: Any) -> None:
        self._last_connect_rc = reason_code
        if reason_code == 0:
            LOGGER.info(
                "Connected to MQTT broker (session_present=%s)",
                session.session_present,
            )
            self._connected = True
            self._session = session
            if self._connected_event:
                self._connected_event.set()
            for handler in list(self._connect_handlers):
                try:
                    handler(session)
                except Exception:
                    LOGGER.exception("MQTT connect handler raised an exception")
        else:
            LOGGER.error("MQTT connection failed with rc=%s", reason_code)
            self._connected = False
            if self._connected_event:
                self._connected_event.set()

    def _on_disconnect(
        self, client, userdata, disconnect_flags, reason_code, properties=None
    ) -> None:
        self._call_in_loop(self._handle_disconnect, reason_code)

    def _handle_disconnect(self, reason_code: Any) -> None:
        LOGGER.info("Disconnected from MQTT broker (rc=%s)", reason_code)
        was_connected = self._connected
        self._connected = False
        if self._disconnect_event:
            self._disconnect_event.set()
        if was_connected and self._consuming and self._queue is not None:
            self._queue.put_nowait(None)
        for handler in list(self._disconnect_handlers):
            try:
                handler(reason_code)
            except Exception:
                LOGGER.exception("MQTT disconnect handler raised an exception")

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        inbound = InboundMessage(
            topic=message.topic,
            payload=bytes(message.payload),
            qos=getattr(message, "qos", 0),
            retain=bool(getattr(message, "retain", False)),
        )
        self._call_in_loop(self._enqueue, inbound)

    def _enqueue(self, message: InboundMessage) -> None:
        if not self._consuming or self._queue is None:
            LOGGER.debug("Dropping message on %s; consumer not armed", message.topic)
            return
        self._queue.put_nowait(message)
