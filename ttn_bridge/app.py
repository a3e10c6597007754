"""Main application entry-point for ttn-bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
from typing import Callable, List, Mapping, Optional

from .adapters import MQTTClient, MQTTConnectionError
from .bridge import BridgeState, MessageBridge, TopicFilter
from .commands import CommandDispatcher
from .config import BridgeConfig, load_config, resolve_client_id
from .control import ConsoleInput, ControlSurface, log_state_change
from .errors import PublishError, StartupError
from .health import HealthReporter, HealthServer
from .logging import configure_logging
from .telemetry import DeviceState
from .topics import uplink_topic

LOGGER = logging.getLogger(__name__)

SECRET_PREFIX_LENGTH = 8

ClientFactory = Callable[..., MQTTClient]


def resolve_api_key(
    config: BridgeConfig, environ: Optional[Mapping[str, str]] = None
) -> str:
    """Read the broker API key from the environment.

    Raises:
        StartupError: The variable is unset or empty.
    """

    env = os.environ if environ is None else environ
    name = config.credentials.api_key_env
    value = env.get(name, "")
    if not value:
        raise StartupError(f"Please set the environment variable {name}")
    return value


def mask_secret(value: str) -> str:
    return f"{value[:SECRET_PREFIX_LENGTH]}..."


def subscription_filters(config: BridgeConfig) -> List[TopicFilter]:
    topics = config.subscription.topics or [
        uplink_topic(config.namespace, config.device.device_id)
    ]
    return [(topic, config.subscription.qos) for topic in topics]


def build_dispatcher(config: BridgeConfig, client: MQTTClient) -> CommandDispatcher:
    try:
        return CommandDispatcher(
            client,
            namespace=config.namespace,
            device_id=config.device.device_id,
            app=config.device.app,
            config=config.downlink,
        )
    except ValueError as exc:
        raise StartupError(f"Invalid downlink configuration: {exc}") from exc


class BridgeApp:
    """Coordinates bridge startup, the control surface and ordered shutdown."""

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        *,
        environ: Optional[Mapping[str, str]] = None,
        client_factory: ClientFactory = MQTTClient,
        interactive: bool = True,
    ) -> None:
        self._config = config or load_config()
        self._environ = environ
        self._client_factory = client_factory
        self._interactive = interactive

        self.device_state = DeviceState()
        self._client: Optional[MQTTClient] = None
        self._bridge: Optional[MessageBridge] = None
        self._surface: Optional[ControlSurface] = None
        self._console: Optional[ConsoleInput] = None
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._signals_installed: List[signal.Signals] = []

    @property
    def bridge(self) -> Optional[MessageBridge]:
        return self._bridge

    @property
    def surface(self) -> Optional[ControlSurface]:
        return self._surface

    async def run(self) -> None:
        """Start the bridge and block until shutdown is requested.

        Raises:
            StartupError: Missing credential or failed initial connect.
        """

        self._loop = asyncio.get_running_loop()
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()

        config = self._config
        LOGGER.info("ttn-bridge starting with config: %s", config.path)

        try:
            await self._start_services()
            LOGGER.info("ttn-bridge running; awaiting shutdown signal")
            await self._shutdown_event.wait()
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        """Ask :meth:`run` to stop; safe to call repeatedly and from any thread."""

        loop = self._loop
        event = self._shutdown_event
        if loop is None or event is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(event.set)

    @classmethod
    def start(cls, config: Optional[BridgeConfig] = None, *, interactive: bool = True) -> int:
        instance = cls(config=config, interactive=interactive)
        logging_config = instance._config.logging
        configure_logging(
            logging_config.level,
            log_path=logging_config.path,
            log_network=logging_config.log_network,
            # The status block owns the terminal once a log file takes the detail
            console_level="WARNING" if interactive and logging_config.path else None,
        )
        try:
            asyncio.run(instance.run())
        except StartupError as exc:
            LOGGER.error("Startup failed: %s", exc)
            return 1
        except KeyboardInterrupt:
            LOGGER.info("ttn-bridge received shutdown signal")
        return 0

    async def _start_services(self) -> None:
        config = self._config

        api_key = resolve_api_key(config, self._environ)
        LOGGER.info("Using API key: %s", mask_secret(api_key))

        resilience = config.resilience
        client = self._client_factory(
            config.broker,
            client_id=resolve_client_id(config),
            password=api_key,
            clean_session=not resilience.persistent_session,
        )
        self._client = client

        bridge = MessageBridge(
            client,
            self.device_state,
            topics=subscription_filters(config),
            persistent_session=resilience.persistent_session,
            connect_timeout=resilience.connect_timeout_seconds,
            drain_timeout=resilience.drain_timeout_seconds,
            reconnect_initial=resilience.reconnect_initial_seconds,
            reconnect_max=resilience.reconnect_max_seconds,
        )
        bridge.register_status_listener(self._on_bridge_status)
        self._bridge = bridge

        self._health.set_providers(
            bridge_provider=bridge.describe,
            device_provider=lambda: self.device_state.snapshot().as_dict(),
        )
        await self._health.update("mqtt", False, "connecting")
        await self._start_health_server()

        dispatcher: Optional[CommandDispatcher] = None
        if self._interactive:
            dispatcher = build_dispatcher(config, client)
        else:
            self.device_state.add_listener(log_state_change)

        await bridge.start()

        if dispatcher is not None:
            surface = ControlSurface(self.device_state, dispatcher)
            bridge.register_status_listener(surface.on_bridge_status)
            surface.on_bridge_status(bridge.state, bridge.reconnect_pending)
            surface.start()
            self._surface = surface
            await self._health.update("control", True, None)
            self._attach_console(surface)

        self._install_signal_handlers()

    def _attach_console(self, surface: ControlSurface) -> None:
        console = ConsoleInput(surface, self.request_shutdown)
        try:
            console.attach()
        except (NotImplementedError, OSError, ValueError) as exc:
            LOGGER.warning("Console input unavailable: %s", exc)
            return
        self._console = console

    def _install_signal_handlers(self) -> None:
        loop = self._loop
        if loop is None:
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            self._signals_installed.append(sig)

    def _remove_signal_handlers(self) -> None:
        loop = self._loop
        for sig in self._signals_installed:
            if loop is not None:
                with contextlib.suppress(NotImplementedError, RuntimeError, ValueError):
                    loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
            await self._health.update("health-endpoint", False, str(exc))
        else:
            self._health_server = server
            await self._health.update("health-endpoint", True, None)

    def _on_bridge_status(self, state: BridgeState, reconnect_pending: bool) -> None:
        if state is BridgeState.CONSUMING:
            if reconnect_pending:
                self._schedule_health_update("mqtt", False, "link lost; reconnecting")
            else:
                self._schedule_health_update("mqtt", True, None)
        elif state in (BridgeState.CONNECTING, BridgeState.SUBSCRIBING):
            self._schedule_health_update("mqtt", False, state.value)

    def _schedule_health_update(
        self, name: str, healthy: bool, detail: Optional[str]
    ) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return

        async def _runner() -> None:
            await self._health.update(name, healthy, detail)

        loop.call_soon_threadsafe(lambda: asyncio.ensure_future(_runner()))

    async def _stop_services(self) -> None:
        LOGGER.info("Shutting down...")
        self._remove_signal_handlers()

        if self._console is not None:
            self._console.detach()
            self._console = None

        if self._surface is not None:
            await self._surface.close()
            self._surface = None
            await self._health.update("control", False, "shutdown")
        else:
            self.device_state.remove_listener(log_state_change)

        if self._bridge is not None:
            await self._bridge.shutdown()
            await self._health.update("mqtt", False, "shutdown")

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        LOGGER.info("Shutdown complete")


async def send_led_once(
    config: BridgeConfig,
    on: bool,
    *,
    environ: Optional[Mapping[str, str]] = None,
    client_factory: ClientFactory = MQTTClient,
    timeout: float = 10.0,
) -> None:
    """Connect, queue a single LED downlink and disconnect.

    Raises:
        StartupError: Missing credential or failed connect.
        PublishError: The downlink could not be sent.
    """

    api_key = resolve_api_key(config, environ)
    LOGGER.info("Using API key: %s", mask_secret(api_key))

    # A separate, clean session leaves a running bridge's session untouched
    client = client_factory(
        config.broker,
        client_id=f"{resolve_client_id(config)}-cmd",
        password=api_key,
        clean_session=True,
    )
    dispatcher = build_dispatcher(config, client)
    try:
        await client.connect(timeout=config.resilience.connect_timeout_seconds)
    except MQTTConnectionError as exc:
        raise StartupError(f"MQTT connect failed: {exc}") from exc

    try:
        await dispatcher.send(dispatcher.build_set_led(on))
        try:
            await client.wait_for_publish(timeout)
        except MQTTConnectionError as exc:
            raise PublishError(str(exc)) from exc
    finally:
        await client.disconnect()
