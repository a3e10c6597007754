"""Constants used across the ttn-bridge package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "ttn-bridge"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_BROKER_HOST = "eu1.cloud.thethings.network"
DEFAULT_BROKER_PORT = 1883
DEFAULT_BROKER_TLS_PORT = 8883
DEFAULT_USERNAME = "itp-project-1@ttn"

DEFAULT_DEVICE_ID = "uno-0004a30b001c1b03"
DEFAULT_APP = "itp-project"

DEFAULT_API_KEY_ENV = "TTN_API_KEY"

# Uplink payload discriminants emitted by the device firmware.
UPLINK_TYPE_TEMPERATURE = "temp"
UPLINK_TYPE_LED_STATUS = "ledstatus"

# Downlink discriminant understood by the device firmware.
DOWNLINK_TYPE_LED = "led"
