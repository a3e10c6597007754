"""Uplink decoding and device state."""

from .decoder import decode
from .events import LedStatus, TelemetryEvent, TemperatureReading, Unknown
from .state import DeviceState, DeviceStateView

__all__ = [
    "DeviceState",
    "DeviceStateView",
    "LedStatus",
    "TelemetryEvent",
    "TemperatureReading",
    "Unknown",
    "decode",
]
