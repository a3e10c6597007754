"""Decoder turning TTN uplink envelopes into typed telemetry events."""

from __future__ import annotations

import json
import math
from typing import Any, Mapping

from .. import constants
from ..errors import DecodeError
from .events import LedStatus, TelemetryEvent, TemperatureReading, Unknown


def decode(raw_payload: bytes) -> TelemetryEvent:
    """Decode one inbound payload.

    ``raw_payload`` is either a TTN uplink envelope (the application record
    lives under ``uplink_message.decoded_payload``) or the bare application
    record. Unrecognised ``type`` values yield :class:`Unknown`.

    Raises:
        DecodeError: The payload is not JSON, carries no application record,
            or its discriminant or value fields are missing or mistyped.
    """

    document = _load_json(raw_payload)
    record = _application_record(document, raw_payload)

    payload_type = record.get("type")
    if not isinstance(payload_type, str):
        raise DecodeError(
            "Uplink record has no string 'type' field", raw=raw_payload
        )

    if payload_type == constants.UPLINK_TYPE_TEMPERATURE:
        return TemperatureReading(value=_temperature_value(record, raw_payload))

    if payload_type == constants.UPLINK_TYPE_LED_STATUS:
        return LedStatus(on=_led_value(record, raw_payload))

    return Unknown(raw=raw_payload, payload_type=payload_type)


def _load_json(raw_payload: bytes) -> Any:
    try:
        return json.loads(raw_payload)
    except (UnicodeDecodeError, ValueError) as exc:
        raise DecodeError(f"Uplink is not valid JSON: {exc}", raw=raw_payload) from exc


def _application_record(document: Any, raw_payload: bytes) -> Mapping[str, Any]:
    if not isinstance(document, dict):
        raise DecodeError("Uplink is not a JSON object", raw=raw_payload)

    if "uplink_message" not in document:
        return document

    uplink = document["uplink_message"]
    if not isinstance(uplink, dict):
        raise DecodeError("'uplink_message' is not an object", raw=raw_payload)

    record = uplink.get("decoded_payload")
    if not isinstance(record, dict):
        raise DecodeError(
            "Uplink carries no decoded_payload object", raw=raw_payload
        )
    return record


def _temperature_value(record: Mapping[str, Any], raw_payload: bytes) -> float:
    value = record.get("value")
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise DecodeError("Temperature 'value' is not a number", raw=raw_payload)
    try:
        result = float(value)
    except OverflowError as exc:
        raise DecodeError("Temperature 'value' is out of range", raw=raw_payload) from exc
    if not math.isfinite(result):
        raise DecodeError("Temperature 'value' is not finite", raw=raw_payload)
    return result


def _led_value(record: Mapping[str, Any], raw_payload: bytes) -> bool:
    value = record.get("led")
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return value == 1
    raise DecodeError("LED status 'led' must be 0 or 1", raw=raw_payload)
