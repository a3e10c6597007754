"""Typed telemetry events decoded from device uplinks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(slots=True, frozen=True)
class TemperatureReading:
    value: float


@dataclass(slots=True, frozen=True)
class LedStatus:
    on: bool


@dataclass(slots=True, frozen=True)
class Unknown:
    """Uplink whose discriminant this bridge does not understand.

    Payload types added by newer firmware end up here.
    """

    raw: bytes
    payload_type: Optional[str] = None


TelemetryEvent = Union[TemperatureReading, LedStatus, Unknown]
