"""Health and status endpoint for one side of the link."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from aiohttp import web

from .core import ChannelState
from .telemetry import TelemetrySurface

LOGGER = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class ComponentHealth:
    """Last known state of one channel.

    Required components are healthy only while connected; optional ones (the
    video link) only count against health when they report an error.
    """

    name: str
    state: ChannelState
    required: bool = True
    detail: Optional[str] = None
    since: datetime = field(default_factory=_now)

    @property
    def healthy(self) -> bool:
        if self.required:
            return self.state is ChannelState.CONNECTED
        return self.state is not ChannelState.ERROR

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "healthy": self.healthy,
            "required": self.required,
            "detail": self.detail,
            "since": self.since.isoformat(timespec="seconds"),
        }


@dataclass(slots=True, frozen=True)
class AppHealth:
    state: str
    healthy: bool
    detail: Optional[str] = None
    since: datetime = field(default_factory=_now)


class HealthReporter:
    """Channel states plus the application lifecycle state."""

    def __init__(self) -> None:
        self._components: Dict[str, ComponentHealth] = {}
        self._app: Optional[AppHealth] = None
        self._lock = asyncio.Lock()

    async def record(
        self,
        name: str,
        state: ChannelState,
        *,
        required: bool = True,
        detail: Optional[str] = None,
    ) -> None:
        async with self._lock:
            previous = self._components.get(name)
            if previous is not None and previous.state is state:
                self._components[name] = replace(
                    previous, required=required, detail=detail
                )
                return
            self._components[name] = ComponentHealth(
                name, state, required=required, detail=detail
            )

    async def set_app_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._app = AppHealth(state, healthy, detail)

    async def snapshot(self) -> Dict[str, Any]:
        async with self._lock:
            components = list(self._components.values())
            app = self._app

        healthy = all(item.healthy for item in components)
        if app is not None and not app.healthy:
            healthy = False

        payload: Dict[str, Any] = {
            "status": "ok" if healthy else "degraded",
            "components": [item.as_dict() for item in components],
        }
        if app is not None:
            payload["appState"] = {
                "state": app.state,
                "healthy": app.healthy,
                "detail": app.detail,
                "since": app.since.isoformat(timespec="seconds"),
            }
        return payload


class StatusServer:
    """Read-only HTTP endpoint: ``/healthz`` for probes, ``/status`` for UIs."""

    def __init__(
        self,
        reporter: HealthReporter,
        surface: TelemetrySurface,
        host: str,
        port: int,
    ) -> None:
        self._reporter = reporter
        self._surface = surface
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.get("/healthz", self._handle_health),
                web.get("/status", self._handle_status),
            ]
        )
        return app

    async def start(self) -> None:
        runner = web.AppRunner(self.build_app(), access_log=None)
        await runner.setup()
        try:
            await web.TCPSite(runner, self._host, self._port).start()
        except OSError:
            await runner.cleanup()
            raise
        self._runner = runner
        LOGGER.info("Status endpoint on http://%s:%s/status", self._host, self._port)

    async def stop(self) -> None:
        runner = self._runner
        self._runner = None
        if runner is None:
            return
        with contextlib.suppress(Exception):
            await runner.cleanup()

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        return web.json_response(
            snapshot, status=200 if snapshot["status"] == "ok" else 503
        )

    async def _handle_status(self, request: web.Request) -> web.Response:
        return web.json_response(self._surface.snapshot().as_dict())
