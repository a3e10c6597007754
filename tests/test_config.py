from pathlib import Path

import pytest

from ttn_bridge import constants
from ttn_bridge.config import load_config, resolve_client_id, save_config
from ttn_bridge.errors import StartupError


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "ttn-bridge.cfg"
    config = load_config(config_path)

    assert config.broker.host == constants.DEFAULT_BROKER_HOST
    assert config.broker.port == 1883
    assert config.broker.tls is False
    assert config.namespace == constants.DEFAULT_USERNAME
    assert config.device.device_id == constants.DEFAULT_DEVICE_ID
    assert config.device.app == "itp-project"
    assert config.credentials.api_key_env == "TTN_API_KEY"
    assert config.subscription.topics == []
    assert config.subscription.qos == 1
    assert config.downlink.f_port == 1
    assert config.downlink.priority == "NORMAL"
    assert config.downlink.mode == "push"
    assert config.downlink.retry_once is False
    assert config.resilience.reconnect_initial_seconds == 2.0
    assert config.resilience.reconnect_max_seconds == 30.0
    assert config.resilience.persistent_session is True
    assert config.logging.path is None
    assert config.health.enabled is False
    assert config.path == config_path


def test_load_config_parses_broker_host_with_port(tmp_path: Path) -> None:
    config_path = tmp_path / "ttn-bridge.cfg"
    config_path.write_text("[broker]\nhost = localhost:61198\n", encoding="utf-8")

    config = load_config(config_path)

    assert config.broker.host == "localhost"
    assert config.broker.port == 61198
    assert config.raw.get("broker", "host") == "localhost"
    assert config.raw.get("broker", "port") == "61198"


def test_tls_switches_default_port(tmp_path: Path) -> None:
    config_path = tmp_path / "ttn-bridge.cfg"
    config_path.write_text("[broker]\ntls = true\n", encoding="utf-8")

    config = load_config(config_path)

    assert config.broker.tls is True
    assert config.broker.port == 8883


def test_load_config_overrides_defaults(tmp_path: Path) -> None:
    config_file = tmp_path / "ttn-bridge.cfg"
    config_file.write_text(
        """
[broker]
host = nam1.cloud.thethings.network
port = 1884
username = other-app@ttn
client_id = bench-bridge

[device]
device_id = uno-bench
app = bench

[credentials]
api_key_env = BENCH_KEY

[subscription]
topics = v3/other-app@ttn/devices/+/up, v3/other-app@ttn/devices/uno-bench/up
qos = 0

[downlink]
f_port = 15
priority = high
qos = 1
mode = replace
retry_once = yes

[resilience]
persistent_session = false

[logging]
level = DEBUG
path = ~/ttn-bridge.log
""".strip()
        + "\n",
        encoding="utf-8",
    )

    config = load_config(config_file)

    assert config.broker.host == "nam1.cloud.thethings.network"
    assert config.broker.port == 1884
    assert config.namespace == "other-app@ttn"
    assert resolve_client_id(config) == "bench-bridge"
    assert config.device.device_id == "uno-bench"
    assert config.device.app == "bench"
    assert config.credentials.api_key_env == "BENCH_KEY"
    assert config.subscription.topics == [
        "v3/other-app@ttn/devices/+/up",
        "v3/other-app@ttn/devices/uno-bench/up",
    ]
    assert config.subscription.qos == 0
    assert config.downlink.f_port == 15
    assert config.downlink.priority == "HIGH"
    assert config.downlink.qos == 1
    assert config.downlink.mode == "replace"
    assert config.downlink.retry_once is True
    assert config.resilience.persistent_session is False
    assert config.logging.level == "DEBUG"
    assert config.logging.path == Path("~/ttn-bridge.log").expanduser()


def test_out_of_range_values_are_clamped(tmp_path: Path) -> None:
    config_path = tmp_path / "ttn-bridge.cfg"
    config_path.write_text(
        """
[subscription]
qos = 5

[downlink]
f_port = 500
mode = sideways

[resilience]
reconnect_initial_seconds = 0.1
reconnect_max_seconds = 0.2
drain_timeout_seconds = 0
""".strip()
        + "\n",
        encoding="utf-8",
    )

    config = load_config(config_path)

    assert config.subscription.qos == 2
    assert config.downlink.f_port == 223
    assert config.downlink.mode == "push"
    assert config.resilience.reconnect_initial_seconds == 0.5
    assert config.resilience.reconnect_max_seconds == 0.5
    assert config.resilience.drain_timeout_seconds == 0.1


def test_default_client_id_is_stable(tmp_path: Path) -> None:
    config = load_config(tmp_path / "ttn-bridge.cfg")

    assert resolve_client_id(config) == f"ttn-bridge-{constants.DEFAULT_DEVICE_ID}"
    assert resolve_client_id(config) == resolve_client_id(load_config(config.path))


def test_save_config_round_trips(tmp_path: Path) -> None:
    config_path = tmp_path / "nested" / "ttn-bridge.cfg"
    config = load_config(config_path)
    config.raw.set("device", "device_id", "uno-saved")

    save_config(config)
    reloaded = load_config(config_path)

    assert config_path.exists()
    assert reloaded.device.device_id == "uno-saved"


def test_unknown_downlink_priority_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "ttn-bridge.cfg"
    config_path.write_text("[downlink]\npriority = urgent\n", encoding="utf-8")

    with pytest.raises(StartupError, match="URGENT"):
        load_config(config_path)
