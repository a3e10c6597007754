"""Latest known device state shared between the bridge and the control surface."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .events import LedStatus, TelemetryEvent, TemperatureReading

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], datetime]
StateListener = Callable[["DeviceStateView"], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class DeviceStateView:
    """Read-only copy of :class:`DeviceState` taken under its lock."""

    last_temperature: Optional[float] = None
    last_temperature_at: Optional[datetime] = None
    led_on: Optional[bool] = None

    def temperature_age(self, now: Optional[datetime] = None) -> Optional[timedelta]:
        if self.last_temperature_at is None:
            return None
        return (now or _utcnow()) - self.last_temperature_at

    def is_temperature_stale(
        self, max_age: timedelta, now: Optional[datetime] = None
    ) -> bool:
        """True when no reading arrived yet or the latest is older than ``max_age``."""

        age = self.temperature_age(now)
        return age is None or age > max_age

    def as_dict(self) -> Dict[str, Any]:
        return {
            "temperature": self.last_temperature,
            "temperatureAt": (
                self.last_temperature_at.isoformat(timespec="seconds")
                if self.last_temperature_at is not None
                else None
            ),
            "ledOn": self.led_on,
        }


class DeviceState:
    """Thread-safe holder of the latest temperature and LED state.

    :meth:`apply_event` is the only writer. Temperature and its timestamp are
    replaced together inside one critical section so :meth:`snapshot` never
    sees one without the other. Listeners run after the lock is released.
    """

    def __init__(self, *, clock: Clock = _utcnow) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._temperature: Optional[float] = None
        self._temperature_at: Optional[datetime] = None
        self._led_on: Optional[bool] = None
        self._listeners: List[StateListener] = []

    def apply_event(self, event: TelemetryEvent) -> bool:
        """Apply a decoded event; returns whether observable state changed."""

        with self._lock:
            if isinstance(event, TemperatureReading):
                # A repeated value still refreshes the timestamp, which is observable
                self._temperature = event.value
                self._temperature_at = self._clock()
                changed = True
            elif isinstance(event, LedStatus):
                changed = self._led_on != event.on
                self._led_on = event.on
            else:
                changed = False
            view = self._view_locked() if changed else None

        if view is not None:
            self._notify(view)
        return changed

    def snapshot(self) -> DeviceStateView:
        with self._lock:
            return self._view_locked()

    def add_listener(self, listener: StateListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def _view_locked(self) -> DeviceStateView:
        return DeviceStateView(
            last_temperature=self._temperature,
            last_temperature_at=self._temperature_at,
            led_on=self._led_on,
        )

    def _notify(self, view: DeviceStateView) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(view)
            except Exception:
                LOGGER.exception("Device state listener raised an exception")
