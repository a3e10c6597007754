"""Downlink command encoding and dispatch."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Dict, Mapping, Optional, Protocol

from . import constants
from .adapters.mqtt import MQTTConnectionError
from .config import DownlinkConfig
from .errors import PublishError
from .topics import downlink_topic

LOGGER = logging.getLogger(__name__)


class DeliveryGuarantee(IntEnum):
    """MQTT QoS levels used for downlinks."""

    AT_MOST_ONCE = 0
    AT_LEAST_ONCE = 1


class DownlinkPriority(str, Enum):
    """Downlink queue priorities understood by The Things Stack."""

    LOWEST = "LOWEST"
    LOW = "LOW"
    BELOW_NORMAL = "BELOW_NORMAL"
    NORMAL = "NORMAL"
    ABOVE_NORMAL = "ABOVE_NORMAL"
    HIGH = "HIGH"
    HIGHEST = "HIGHEST"

    @classmethod
    def parse(cls, value: str) -> "DownlinkPriority":
        try:
            return cls(value.strip().upper())
        except ValueError as exc:
            raise ValueError(f"Unknown downlink priority: {value}") from exc


@dataclass(slots=True, frozen=True)
class OutboundCommand:
    target_device: str
    payload: bytes
    delivery_guarantee: DeliveryGuarantee = DeliveryGuarantee.AT_MOST_ONCE


def encode_command(
    command_type: str,
    fields: Mapping[str, Any],
    *,
    device_id: str,
    app: str = constants.DEFAULT_APP,
    f_port: int = 1,
    priority: DownlinkPriority = DownlinkPriority.NORMAL,
    guarantee: DeliveryGuarantee = DeliveryGuarantee.AT_MOST_ONCE,
) -> OutboundCommand:
    """Wrap an application command in the TTN downlink envelope."""

    if not device_id:
        raise ValueError("Downlink target device must not be empty")
    if not 1 <= f_port <= 223:
        raise ValueError(f"FPort out of range: {f_port}")

    decoded: Dict[str, Any] = {"app": app, "type": command_type}
    decoded.update(fields)
    envelope = {
        "downlinks": [
            {
                "f_port": f_port,
                "decoded_payload": decoded,
                "priority": DownlinkPriority(priority).value,
            }
        ]
    }
    payload = json.dumps(envelope, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return OutboundCommand(
        target_device=device_id,
        payload=payload,
        delivery_guarantee=DeliveryGuarantee(guarantee),
    )


def encode_set_led(
    on: bool,
    *,
    device_id: str,
    app: str = constants.DEFAULT_APP,
    f_port: int = 1,
    priority: DownlinkPriority = DownlinkPriority.NORMAL,
    guarantee: DeliveryGuarantee = DeliveryGuarantee.AT_MOST_ONCE,
) -> OutboundCommand:
    return encode_command(
        constants.DOWNLINK_TYPE_LED,
        {"led": 1 if on else 0},
        device_id=device_id,
        app=app,
        f_port=f_port,
        priority=priority,
        guarantee=guarantee,
    )


class CommandPublisher(Protocol):
    def publish(
        self, topic: str, payload: bytes, qos: int = 0, retain: bool = False
    ) -> None: ...


class CommandDispatcher:
    """Hands encoded commands to the transport on the device downlink topic."""

    def __init__(
        self,
        client: CommandPublisher,
        *,
        namespace: str,
        device_id: str,
        app: str = constants.DEFAULT_APP,
        config: Optional[DownlinkConfig] = None,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._device_id = device_id
        self._app = app
        self._config = config or DownlinkConfig()
        self._priority = DownlinkPriority.parse(self._config.priority)

    @property
    def device_id(self) -> str:
        return self._device_id

    def build_set_led(self, on: bool) -> OutboundCommand:
        return encode_set_led(
            on,
            device_id=self._device_id,
            app=self._app,
            f_port=self._config.f_port,
            priority=self._priority,
            guarantee=DeliveryGuarantee(min(self._config.qos, 1)),
        )

    def topic_for(self, command: OutboundCommand) -> str:
        return downlink_topic(self._namespace, command.target_device, self._config.mode)

    async def send(self, command: OutboundCommand) -> None:
        """Publish ``command``; raises :class:`PublishError` on failure."""

        topic = self.topic_for(command)
        try:
            self._publish(topic, command)
        except PublishError as exc:
            if not self._config.retry_once:
                raise
            LOGGER.warning(
                "Downlink publish failed (%s); retrying once in %.1fs",
                exc,
                self._config.retry_delay_seconds,
            )
            await asyncio.sleep(self._config.retry_delay_seconds)
            self._publish(topic, command)

        LOGGER.info(
            "Downlink queued for %s on %s (%d bytes)",
            command.target_device,
            topic,
            len(command.payload),
        )

    def _publish(self, topic: str, command: OutboundCommand) -> None:
        try:
            self._client.publish(
                topic, command.payload, qos=int(command.delivery_guarantee)
            )
        except MQTTConnectionError as exc:
            raise PublishError(str(exc), topic=topic) from exc
