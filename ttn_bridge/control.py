"""Terminal control surface: renders device state and issues LED commands."""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging
import os
import sys
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Set, TextIO

from .bridge import BridgeState
from .commands import CommandDispatcher, OutboundCommand
from .errors import PublishError
from .telemetry.state import DeviceState, DeviceStateView

LOGGER = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=10)
DEFAULT_REFRESH_INTERVAL = 30.0
READ_CHUNK = 4096

HELP_TEXT = "Commands: on | off | toggle | status | help | exit"


def _describe_link(state: BridgeState, reconnect_pending: bool) -> str:
    if state is BridgeState.CONSUMING:
        return "reconnecting" if reconnect_pending else "connected"
    return state.value


class TerminalRenderer:
    """Writes a plain-text status block for the current device state."""

    def __init__(
        self,
        stream: Optional[TextIO] = None,
        *,
        device_id: str = "",
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._stream = stream or sys.stdout
        self._device_id = device_id
        self._stale_after = stale_after
        self._clock = clock

    def format(
        self, view: DeviceStateView, link: str, notice: Optional[str] = None
    ) -> str:
        now = self._clock()
        if view.last_temperature is None:
            temperature = "--"
        else:
            temperature = f"{view.last_temperature:.1f} °C"
            age = view.temperature_age(now)
            if age is not None:
                temperature += f" ({int(age.total_seconds())}s ago)"
            if view.is_temperature_stale(self._stale_after, now):
                temperature += " [stale]"

        if view.led_on is None:
            led = "unknown"
        else:
            led = "on" if view.led_on else "off"

        lines = [
            f"Device      {self._device_id}" if self._device_id else None,
            f"Temperature {temperature}",
            f"LED         {led}",
            f"Link        {link}",
            notice,
        ]
        return "\n".join(line for line in lines if line) + "\n"

    def render(
        self, view: DeviceStateView, link: str, notice: Optional[str] = None
    ) -> None:
        self._stream.write(self.format(view, link, notice))
        self._stream.write("\n")
        self._stream.flush()


class ControlSurface:
    """Event-driven render loop plus user-initiated LED commands.

    Device state and bridge status changes wake the render loop through an
    :class:`asyncio.Event` set with ``call_soon_threadsafe``, so listeners may
    fire from any thread. The block is also redrawn every ``refresh_interval``
    seconds so reading ages and the stale marker keep moving on a quiet device.
    Each command publish runs as its own task.
    """

    def __init__(
        self,
        device_state: DeviceState,
        dispatcher: CommandDispatcher,
        *,
        renderer: Optional[TerminalRenderer] = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
    ) -> None:
        self._device_state = device_state
        self._dispatcher = dispatcher
        self._renderer = renderer or TerminalRenderer(device_id=dispatcher.device_id)
        self._refresh_interval = refresh_interval
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._dirty: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._pending: Set[asyncio.Task[None]] = set()
        self._closing = False
        self._link = BridgeState.DISCONNECTED.value
        self._notice: Optional[str] = None
        self.render_count = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def start(self) -> None:
        if self._task is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._dirty = asyncio.Event()
        self._closing = False
        self._device_state.add_listener(self._on_state_changed)
        self._task = asyncio.create_task(self._render_loop(), name="ttn-bridge-render")
        self.refresh()

    async def close(self, timeout: float = 5.0) -> None:
        """Stop rendering and wait for in-flight publishes."""

        if self._task is None:
            return
        self._device_state.remove_listener(self._on_state_changed)
        self._closing = True
        self.refresh()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

        if self._pending:
            _, pending = await asyncio.wait(set(self._pending), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                LOGGER.warning("Cancelled %d unfinished downlink publish(es)", len(pending))

    def refresh(self) -> None:
        """Request a re-render; safe to call from any thread."""

        loop = self._loop
        dirty = self._dirty
        if loop is None or dirty is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(dirty.set)

    def on_bridge_status(self, state: BridgeState, reconnect_pending: bool) -> None:
        self._link = _describe_link(state, reconnect_pending)
        self.refresh()

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------
    def set_led(self, on: bool) -> asyncio.Task[None]:
        command = self._dispatcher.build_set_led(on)
        return self._dispatch(command, f"LED {'on' if on else 'off'}")

    def toggle_led(self) -> asyncio.Task[None]:
        current = self._device_state.snapshot().led_on
        return self.set_led(not current)

    def _dispatch(self, command: OutboundCommand, label: str) -> asyncio.Task[None]:
        task = asyncio.create_task(self._send(command, label))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send(self, command: OutboundCommand, label: str) -> None:
        try:
            await self._dispatcher.send(command)
        except PublishError as exc:
            LOGGER.warning("Dropping downlink '%s': %s", label, exc)
            self._notice = f"Command failed: {label} ({exc})"
        except Exception as exc:
            LOGGER.exception("Unexpected error sending downlink '%s'", label)
            self._notice = f"Command failed: {label} ({exc})"
        else:
            self._notice = f"Sent: {label}"
        self.refresh()

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------
    def _on_state_changed(self, view: DeviceStateView) -> None:
        self.refresh()

    async def _render_loop(self) -> None:
        assert self._dirty is not None
        while True:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._dirty.wait(), timeout=self._refresh_interval)
            self._dirty.clear()
            if self._closing:
                break
            self._render()

    def _render(self) -> None:
        view = self._device_state.snapshot()
        try:
            self._renderer.render(view, self._link, self._notice)
        except Exception:
            LOGGER.exception("Rendering device state failed")
        self.render_count += 1


class ConsoleInput:
    """Maps lines typed on the terminal to control surface actions."""

    def __init__(
        self,
        surface: ControlSurface,
        request_shutdown: Callable[[], None],
        *,
        stream: Optional[TextIO] = None,
        output: Optional[TextIO] = None,
    ) -> None:
        self._surface = surface
        self._request_shutdown = request_shutdown
        self._stream = stream or sys.stdin
        self._output = output or sys.stdout
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._partial = ""

    def attach(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(self._stream.fileno(), self._on_readable)
        self._output.write(HELP_TEXT + "\n")
        self._output.flush()

    def detach(self) -> None:
        if self._loop is None:
            return
        with contextlib.suppress(ValueError, OSError):
            self._loop.remove_reader(self._stream.fileno())
        self._loop = None

    def _on_readable(self) -> None:
        # Read the descriptor directly; readline() would strand buffered lines
        data = os.read(self._stream.fileno(), READ_CHUNK)
        if not data:
            LOGGER.debug("Console input closed")
            self.detach()
            self.feed(self._decoder.decode(b"", final=True) + "\n")
            return
        self.feed(self._decoder.decode(data))

    def feed(self, text: str) -> None:
        """Run every complete line in ``text``; a trailing partial line waits."""

        lines = (self._partial + text).split("\n")
        self._partial = lines.pop()
        for line in lines:
            self.handle_line(line)

    def handle_line(self, line: str) -> bool:
        """Run the action named by ``line``; returns False for unknown input."""

        command = line.strip().lower()
        if not command:
            return True
        if command == "on":
            self._surface.set_led(True)
        elif command == "off":
            self._surface.set_led(False)
        elif command == "toggle":
            self._surface.toggle_led()
        elif command == "status":
            self._surface.refresh()
        elif command == "help":
            self._output.write(HELP_TEXT + "\n")
            self._output.flush()
        elif command in ("exit", "quit"):
            self._request_shutdown()
        else:
            self._output.write(f"Unknown command: {command}\n{HELP_TEXT}\n")
            self._output.flush()
            return False
        return True


def log_state_change(view: DeviceStateView) -> None:
    """Device state listener used when running without a terminal UI."""

    LOGGER.info(
        "Device state: temperature=%s led=%s",
        "--" if view.last_temperature is None else f"{view.last_temperature:.1f}",
        "unknown" if view.led_on is None else ("on" if view.led_on else "off"),
    )
