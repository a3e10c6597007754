"""Topic naming for The Things Stack MQTT integration."""

from __future__ import annotations

from typing import Optional

TOPIC_VERSION = "v3"

_DOWNLINK_SUFFIXES = {
    "push": "down/push",
    "replace": "down/replace",
}


def _device_prefix(namespace: str, device_id: str) -> str:
    if not namespace:
        raise ValueError("Topic namespace must not be empty")
    if not device_id:
        raise ValueError("Device id must not be empty")
    return f"{TOPIC_VERSION}/{namespace}/devices/{device_id}"


def uplink_topic(namespace: str, device_id: str) -> str:
    return f"{_device_prefix(namespace, device_id)}/up"


def downlink_topic(namespace: str, device_id: str, mode: str = "push") -> str:
    try:
        suffix = _DOWNLINK_SUFFIXES[mode]
    except KeyError as exc:
        raise ValueError(f"Unknown downlink mode: {mode}") from exc
    return f"{_device_prefix(namespace, device_id)}/{suffix}"


def device_id_from_topic(topic: str) -> Optional[str]:
    """Extract the device id from a ``v3/<ns>/devices/<id>/...`` topic."""

    parts = topic.split("/")
    if len(parts) < 5 or parts[0] != TOPIC_VERSION or parts[2] != "devices":
        return None
    return parts[3] or None
