"""Health reporting utilities for ttn-bridge."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)

DetailProvider = Callable[[], Dict[str, Any]]


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks component statuses for the running bridge.

    ``bridge_provider`` and ``device_provider`` are polled on each snapshot and
    their output is embedded as ``bridgeState`` and ``device``.
    """

    def __init__(
        self,
        *,
        bridge_provider: Optional[DetailProvider] = None,
        device_provider: Optional[DetailProvider] = None,
    ) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._lock = asyncio.Lock()
        self._bridge_provider = bridge_provider
        self._device_provider = device_provider

    def set_providers(
        self,
        *,
        bridge_provider: Optional[DetailProvider] = None,
        device_provider: Optional[DetailProvider] = None,
    ) -> None:
        if bridge_provider is not None:
            self._bridge_provider = bridge_provider
        if device_provider is not None:
            self._device_provider = device_provider

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            entries = list(self._status.values())

        components = [status.as_dict() for status in entries]
        overall = "ok" if all(item["healthy"] for item in components) else "degraded"

        payload: Dict[str, object] = {"status": overall, "components": components}
        if self._bridge_provider is not None:
            bridge = self._bridge_provider()
            payload["bridgeState"] = bridge
            if bridge.get("reconnectPending") or bridge.get("state") != "consuming":
                payload["status"] = "degraded"
        if self._device_provider is not None:
            payload["device"] = self._device_provider()

        return payload


class HealthServer:
    """Minimal HTTP server exposing `/healthz` for status checks."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
