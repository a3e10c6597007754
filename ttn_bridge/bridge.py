"""Message bridge between the MQTT uplink stream and the device state.

The bridge owns the subscription and a single consumer task that pulls one
message at a time, decodes it and applies it to :class:`DeviceState` before
pulling the next. Reconnection is left to the transport; the bridge only
notices link loss, keeps consuming, and re-subscribes when the broker comes
back without the session.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Callable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from .adapters.mqtt import InboundMessage, MQTTConnectionError, SessionInfo
from .errors import DecodeError, StartupError, TransientLinkError
from .telemetry.decoder import decode
from .telemetry.events import TelemetryEvent, Unknown
from .telemetry.state import DeviceState
from .topics import device_id_from_topic

LOGGER = logging.getLogger(__name__)

TopicFilter = Tuple[str, int]
Decoder = Callable[[bytes], TelemetryEvent]
StatusListener = Callable[["BridgeState", bool], None]


def _source(message: InboundMessage) -> str:
    return device_id_from_topic(message.topic) or message.topic


class BridgeState(str, Enum):
    """Lifecycle of the message bridge."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    CONSUMING = "consuming"
    DRAINING = "draining"
    CLOSED = "closed"


class BridgeTransport(Protocol):
    """Subset of :class:`~ttn_bridge.adapters.mqtt.MQTTClient` used by the bridge."""

    @property
    def consumer_closed(self) -> bool: ...

    def start_consuming(self) -> None: ...

    def stop_consuming(self) -> None: ...

    def reconnect_delay_set(self, min_delay: float, max_delay: float) -> None: ...

    async def connect(self, timeout: float = 30.0) -> SessionInfo: ...

    async def disconnect(self, timeout: float = 5.0) -> None: ...

    async def receive(self) -> Optional[InboundMessage]: ...

    def subscribe(self, topics: Sequence[TopicFilter]) -> None: ...

    def unsubscribe(self, topics: Sequence[str]) -> None: ...

    def register_connect_handler(self, handler: Callable[[SessionInfo], None]) -> None: ...

    def register_disconnect_handler(self, handler: Callable[[Any], None]) -> None: ...

    def is_connected(self) -> bool: ...


@dataclass(slots=True)
class BridgeStats:
    received: int = 0
    state_changes: int = 0
    unknown: int = 0
    decode_errors: int = 0
    link_losses: int = 0
    subscribe_calls: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "received": self.received,
            "stateChanges": self.state_changes,
            "unknown": self.unknown,
            "decodeErrors": self.decode_errors,
            "linkLosses": self.link_losses,
            "subscribeCalls": self.subscribe_calls,
        }


class MessageBridge:
    """Consumes uplinks from the transport and applies them to device state."""

    def __init__(
        self,
        transport: BridgeTransport,
        device_state: DeviceState,
        *,
        topics: Sequence[TopicFilter],
        decoder: Decoder = decode,
        persistent_session: bool = True,
        connect_timeout: float = 30.0,
        drain_timeout: float = 5.0,
        reconnect_initial: float = 2.0,
        reconnect_max: float = 30.0,
    ) -> None:
        if not topics:
            raise ValueError("MessageBridge requires at least one topic filter")

        self._transport = transport
        self._device_state = device_state
        self._topics: List[TopicFilter] = list(topics)
        self._decoder = decoder
        self._persistent_session = persistent_session
        self._connect_timeout = connect_timeout
        self._drain_timeout = drain_timeout
        self._reconnect_initial = reconnect_initial
        self._reconnect_max = reconnect_max

        self._state = BridgeState.DISCONNECTED
        self._reconnect_pending = False
        self._last_link_error: Optional[TransientLinkError] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._shutdown_lock = asyncio.Lock()
        self._status_listeners: List[StatusListener] = []
        self.stats = BridgeStats()

    @property
    def state(self) -> BridgeState:
        return self._state

    @property
    def reconnect_pending(self) -> bool:
        """True while consuming but the transport reported link loss."""

        return self._reconnect_pending

    @property
    def last_link_error(self) -> Optional[TransientLinkError]:
        return self._last_link_error

    @property
    def topics(self) -> List[TopicFilter]:
        return list(self._topics)

    def register_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Connect, subscribe if the session is new and start consuming.

        Raises:
            StartupError: The initial connect or subscribe failed.
        """

        if self._state is not BridgeState.DISCONNECTED:
            raise RuntimeError(f"MessageBridge cannot start from state {self._state.value}")

        transport = self._transport
        transport.reconnect_delay_set(self._reconnect_initial, self._reconnect_max)
        transport.register_connect_handler(self._on_transport_connected)
        transport.register_disconnect_handler(self._on_transport_disconnected)

        # A resumed session can flush its backlog right after CONNACK
        transport.start_consuming()

        self._set_state(BridgeState.CONNECTING)
        try:
            session = await transport.connect(timeout=self._connect_timeout)
        except MQTTConnectionError as exc:
            transport.stop_consuming()
            self._set_state(BridgeState.DISCONNECTED)
            raise StartupError(f"Initial MQTT connect failed: {exc}") from exc

        self._set_state(BridgeState.SUBSCRIBING)
        try:
            self._subscribe_if_needed(session)
        except MQTTConnectionError as exc:
            transport.stop_consuming()
            with contextlib.suppress(MQTTConnectionError):
                await transport.disconnect()
            self._set_state(BridgeState.DISCONNECTED)
            raise StartupError(f"Initial MQTT subscribe failed: {exc}") from exc

        self._set_state(BridgeState.CONSUMING)
        self._task = asyncio.create_task(self._consume_loop(), name="ttn-bridge-consume")
        self._task.add_done_callback(self._on_consumer_done)

    def _subscribe_if_needed(self, session: SessionInfo) -> None:
        if session.session_present:
            LOGGER.info(
                "Broker resumed existing session; keeping %d subscription(s)",
                len(self._topics),
            )
            return

        self._transport.subscribe(self._topics)
        self.stats.subscribe_calls += 1
        LOGGER.info(
            "Subscribed to %s",
            ", ".join(f"{topic} (qos={qos})" for topic, qos in self._topics),
        )

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------
    async def _consume_loop(self) -> None:
        transport = self._transport
        LOGGER.debug("Bridge consumer started")
        while True:
            message = await transport.receive()
            if message is None:
                if transport.consumer_closed:
                    break
                self._on_link_lost()
                continue
            self._process(message)
            # Let a pending shutdown stop the consumer before the next message
            await asyncio.sleep(0)
        LOGGER.debug("Bridge consumer stopped")

    def _process(self, message: InboundMessage) -> None:
        self.stats.received += 1

        try:
            event = self._decoder(message.payload)
        except DecodeError as exc:
            self.stats.decode_errors += 1
            LOGGER.warning(
                "Skipping malformed uplink from %s: %s", _source(message), exc
            )
            return
        except Exception:
            self.stats.decode_errors += 1
            LOGGER.exception("Decoder failed on uplink from %s", _source(message))
            return

        if isinstance(event, Unknown):
            self.stats.unknown += 1
            LOGGER.debug(
                "Ignoring uplink type %r from %s", event.payload_type, _source(message)
            )
            return

        try:
            changed = self._device_state.apply_event(event)
        except Exception:
            LOGGER.exception("Failed to apply %s", event)
            return

        if changed:
            self.stats.state_changes += 1
        LOGGER.debug("Applied %s (changed=%s)", event, changed)

    def _on_link_lost(self) -> None:
        self.stats.link_losses += 1
        if self._transport.is_connected():
            LOGGER.info("MQTT link dropped and was already restored")
            return
        LOGGER.warning(
            "%s; waiting for automatic reconnect",
            self._last_link_error or "MQTT link lost",
        )
        self._reconnect_pending = True
        self._notify_status()

    def _on_transport_connected(self, session: SessionInfo) -> None:
        if self._state is not BridgeState.CONSUMING:
            return

        LOGGER.info(
            "MQTT link restored (session_present=%s)", session.session_present
        )
        self._reconnect_pending = False
        try:
            self._subscribe_if_needed(session)
        except MQTTConnectionError as exc:
            LOGGER.error("Re-subscribe after reconnect failed: %s", exc)
        self._notify_status()

    def _on_transport_disconnected(self, reason_code: Any) -> None:
        if self._state is not BridgeState.CONSUMING:
            return
        self._last_link_error = TransientLinkError(f"MQTT link lost (rc={reason_code})")

    def _on_consumer_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Bridge consumer terminated unexpectedly", exc_info=exc)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    async def shutdown(self) -> None:
        """Stop consuming, finish the in-flight message, release and disconnect.

        Safe to call more than once; later calls return once the first has
        completed.
        """

        async with self._shutdown_lock:
            if self._state is BridgeState.CLOSED:
                return
            if self._state is BridgeState.DISCONNECTED:
                self._set_state(BridgeState.CLOSED)
                return

            self._set_state(BridgeState.DRAINING)
            LOGGER.info("Shutting down message bridge")

            self._transport.stop_consuming()
            await self._wait_for_consumer()
            self._release_subscription()

            try:
                await self._transport.disconnect()
            except MQTTConnectionError as exc:
                LOGGER.warning("MQTT disconnect failed: %s", exc)

            self._reconnect_pending = False
            self._set_state(BridgeState.CLOSED)
            LOGGER.info("Message bridge closed")

    async def _wait_for_consumer(self) -> None:
        task = self._task
        if task is None:
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self._drain_timeout)
        except asyncio.TimeoutError:
            LOGGER.warning(
                "Consumer did not drain within %.1fs; cancelling", self._drain_timeout
            )
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        except Exception:
            LOGGER.debug("Consumer ended with an error during drain", exc_info=True)
        finally:
            self._task = None

    def _release_subscription(self) -> None:
        if self._persistent_session:
            LOGGER.debug("Leaving broker-side subscriptions for the persistent session")
            return
        try:
            self._transport.unsubscribe([topic for topic, _ in self._topics])
        except MQTTConnectionError as exc:
            LOGGER.warning("Unsubscribe during shutdown failed: %s", exc)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def _set_state(self, state: BridgeState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        LOGGER.debug("Bridge state %s -> %s", previous.value, state.value)
        self._notify_status()

    def _notify_status(self) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(self._state, self._reconnect_pending)
            except Exception:
                LOGGER.exception("Bridge status listener raised an exception")

    def describe(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "reconnectPending": self._reconnect_pending,
            "lastLinkError": (
                str(self._last_link_error) if self._last_link_error is not None else None
            ),
            "stats": self.stats.as_dict(),
        }
