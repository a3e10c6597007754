"""Configuration loader for ttn-bridge."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from . import constants
from .errors import StartupError

DOWNLINK_MODES = ("push", "replace")
DOWNLINK_PRIORITIES = (
    "LOWEST",
    "LOW",
    "BELOW_NORMAL",
    "NORMAL",
    "ABOVE_NORMAL",
    "HIGH",
    "HIGHEST",
)


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    tls: bool = False
    client_id: Optional[str] = None
    keepalive: int = 60
    username: str = constants.DEFAULT_USERNAME  # Also the topic namespace on TTN


@dataclass(slots=True)
class DeviceConfig:
    device_id: str = constants.DEFAULT_DEVICE_ID
    app: str = constants.DEFAULT_APP


@dataclass(slots=True)
class CredentialsConfig:
    api_key_env: str = constants.DEFAULT_API_KEY_ENV


@dataclass(slots=True)
class SubscriptionConfig:
    topics: List[str] = field(default_factory=list)  # Empty means the device uplink topic
    qos: int = 1


@dataclass(slots=True)
class DownlinkConfig:
    f_port: int = 1
    priority: str = "NORMAL"
    qos: int = 0
    mode: str = "push"
    retry_once: bool = False
    retry_delay_seconds: float = 1.0


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 2.0
    reconnect_max_seconds: float = 30.0
    connect_timeout_seconds: float = 30.0
    drain_timeout_seconds: float = 5.0
    persistent_session: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class BridgeConfig:
    broker: BrokerConfig
    device: DeviceConfig
    credentials: CredentialsConfig
    subscription: SubscriptionConfig
    downlink: DownlinkConfig
    resilience: ResilienceConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path

    @property
    def namespace(self) -> str:
        return self.broker.username


def _parse_list(value: str, *, default: Iterable[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _clamp_qos(value: int) -> int:
    return max(0, min(2, value))


def load_config(path: Optional[Path] = None) -> BridgeConfig:
    """Load configuration from disk, applying defaults where necessary.

    Raises:
        StartupError: A value is present but not one the bridge understands.
    """

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": "",
                "tls": "false",
                "keepalive": "60",
                "username": constants.DEFAULT_USERNAME,
            },
            "device": {
                "device_id": constants.DEFAULT_DEVICE_ID,
                "app": constants.DEFAULT_APP,
            },
            "credentials": {
                "api_key_env": constants.DEFAULT_API_KEY_ENV,
            },
            "subscription": {
                "topics": "",
                "qos": "1",
            },
            "downlink": {
                "f_port": "1",
                "priority": "NORMAL",
                "qos": "0",
                "mode": "push",
                "retry_once": "false",
                "retry_delay_seconds": "1.0",
            },
            "resilience": {
                "reconnect_initial_seconds": "2.0",
                "reconnect_max_seconds": "30.0",
                "connect_timeout_seconds": "30.0",
                "drain_timeout_seconds": "5.0",
                "persistent_session": "true",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    host_value = parser.get("broker", "host")
    tls = parser.getboolean("broker", "tls", fallback=False)
    default_port = (
        constants.DEFAULT_BROKER_TLS_PORT if tls else constants.DEFAULT_BROKER_PORT
    )
    if parser.has_option("broker", "port") and parser.get("broker", "port"):
        port_value = parser.getint("broker", "port", fallback=default_port)
    else:
        port_value = default_port

    if ":" in host_value:
        host_part, port_part = host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            host_value = host_part
            port_value = parsed_port
            parser.set("broker", "host", host_part)
            parser.set("broker", "port", str(parsed_port))

    broker = BrokerConfig(
        host=host_value,
        port=port_value,
        tls=tls,
        client_id=parser.get("broker", "client_id", fallback=None) or None,
        keepalive=max(5, parser.getint("broker", "keepalive", fallback=60)),
        username=parser.get("broker", "username"),
    )

    device = DeviceConfig(
        device_id=parser.get("device", "device_id"),
        app=parser.get("device", "app"),
    )

    credentials = CredentialsConfig(
        api_key_env=parser.get("credentials", "api_key_env")
        or constants.DEFAULT_API_KEY_ENV,
    )

    subscription = SubscriptionConfig(
        topics=_parse_list(parser.get("subscription", "topics", fallback=""), default=[]),
        qos=_clamp_qos(parser.getint("subscription", "qos", fallback=1)),
    )

    downlink_defaults = DownlinkConfig()
    mode = parser.get("downlink", "mode", fallback="push").strip().lower()
    if mode not in DOWNLINK_MODES:
        mode = downlink_defaults.mode
    priority = parser.get("downlink", "priority", fallback="NORMAL").strip().upper()
    if priority not in DOWNLINK_PRIORITIES:
        raise StartupError(
            f"Unknown downlink priority {priority!r}; "
            f"expected one of {', '.join(DOWNLINK_PRIORITIES)}"
        )

    downlink = DownlinkConfig(
        f_port=max(1, min(223, parser.getint("downlink", "f_port", fallback=1))),
        priority=priority,
        qos=_clamp_qos(parser.getint("downlink", "qos", fallback=0)),
        mode=mode,
        retry_once=parser.getboolean("downlink", "retry_once", fallback=False),
        retry_delay_seconds=max(
            0.0,
            parser.getfloat(
                "downlink",
                "retry_delay_seconds",
                fallback=downlink_defaults.retry_delay_seconds,
            ),
        ),
    )

    reconnect_initial = max(
        0.5, parser.getfloat("resilience", "reconnect_initial_seconds", fallback=2.0)
    )
    resilience = ResilienceConfig(
        reconnect_initial_seconds=reconnect_initial,
        reconnect_max_seconds=max(
            reconnect_initial,
            parser.getfloat("resilience", "reconnect_max_seconds", fallback=30.0),
        ),
        connect_timeout_seconds=max(
            1.0,
            parser.getfloat("resilience", "connect_timeout_seconds", fallback=30.0),
        ),
        drain_timeout_seconds=max(
            0.1,
            parser.getfloat("resilience", "drain_timeout_seconds", fallback=5.0),
        ),
        persistent_session=parser.getboolean(
            "resilience", "persistent_session", fallback=True
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return BridgeConfig(
        broker=broker,
        device=device,
        credentials=credentials,
        subscription=subscription,
        downlink=downlink,
        resilience=resilience,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )


def save_config(config: BridgeConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)


def resolve_client_id(config: BridgeConfig) -> str:
    """Return a client id that stays stable across runs.

    Persistent sessions are keyed on the client id by the broker.
    """

    if config.broker.client_id:
        return config.broker.client_id
    return f"{constants.APP_NAME}-{config.device.device_id}"
