"""Application wiring for the operator and machine sides."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional, Set

from .adapters import CameraMediaSource, MqttRelayTransport, RosbridgeClient
from .config import TeleopConfig, load_config
from .core import (
    BusClient,
    ChannelState,
    ConnectionStatus,
    ControlFrame,
    ControllerSource,
    MachineTelemetry,
    MediaSource,
    Role,
    SignalingTransport,
)
from .health import HealthReporter, StatusServer
from .input import InputNormalizer, ManualControllerSource
from .logging import configure_logging
from .publisher import CommandPublisher
from .session import PeerSession
from .telemetry import TelemetrySurface

LOGGER = logging.getLogger(__name__)


class AppState(str, Enum):
    COLD_START = "cold_start"
    CONNECTING = "connecting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


class TeleopApp:
    """Runs one side of the link: the operator console or the machine.

    Collaborators default to the MQTT relay, the rosbridge bus and the HTTP
    camera from the configuration, and can be injected for testing.
    """

    def __init__(
        self,
        role: Role,
        config: Optional[TeleopConfig] = None,
        *,
        transport: Optional[SignalingTransport] = None,
        bus: Optional[BusClient] = None,
        controller: Optional[ControllerSource] = None,
        media_source: Optional[MediaSource] = None,
    ) -> None:
        self.role = role
        self._config = config or load_config()
        self._surface = TelemetrySurface()
        self._health = HealthReporter()
        self._health_server: Optional[StatusServer] = None
        self._state = AppState.COLD_START
        self._state_detail: Optional[str] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._tasks: Set[asyncio.Task[None]] = set()

        self._transport = transport or MqttRelayTransport(self._config.signaling)

        media = self._config.media
        if media_source is None and role is Role.MACHINE and media.enabled:
            if media.snapshot_url:
                media_source = CameraMediaSource.from_url(media.snapshot_url)
        self._media_source = media_source

        self.session = PeerSession(
            role,
            self._transport,
            surface=self._surface,
            media_source=self._media_source,
            media_config=media,
        )

        self.normalizer: Optional[InputNormalizer] = None
        self.publisher: Optional[CommandPublisher] = None
        self._bus: Optional[BusClient] = None

        if role is Role.OPERATOR:
            self.controller = controller or ManualControllerSource()
            self.normalizer = InputNormalizer(self.controller, self._config.input)
            self.normalizer.add_listener(self._on_frame)
            self._surface.bind_frames(self.normalizer.mailbox)
        else:
            resilience = self._config.resilience
            self._bus = bus or RosbridgeClient(
                self._config.control_bus,
                reconnect_initial=resilience.reconnect_initial_seconds,
                reconnect_max=resilience.reconnect_max_seconds,
            )
            self.publisher = CommandPublisher(
                self._bus,
                self.session.frames,
                self._surface.board,
                self._config.publisher,
            )
            if isinstance(self._bus, RosbridgeClient):
                self._bus.set_state_callback(self.publisher.on_bus_state)

        self._surface.subscribe(self._on_status)

    # ------------------------------------------------------------------
    # Presentation layer API
    # ------------------------------------------------------------------

    @property
    def config(self) -> TeleopConfig:
        return self._config

    @property
    def surface(self) -> TelemetrySurface:
        return self._surface

    @property
    def state(self) -> AppState:
        return self._state

    async def connect(self, machine_id: str) -> None:
        """Start every component and open the session for ``machine_id``."""

        await self._transition_state(AppState.CONNECTING, detail=f"machine {machine_id}")
        await self._start_health_server()

        if isinstance(self._bus, RosbridgeClient):
            await self._bus.start()
        if self.publisher is not None:
            self.publisher.start()
        if self.normalizer is not None:
            self.normalizer.start()

        await self.session.start(machine_id)

    async def disconnect(self) -> None:
        await self.session.disconnect()

    async def reconnect(self) -> None:
        await self.session.reconnect()

    async def video_stalled(self) -> None:
        await self.session.report_video_stalled()

    async def video_resumed(self) -> None:
        await self.session.report_video_resumed()

    async def publish_telemetry(self, telemetry: MachineTelemetry) -> bool:
        """Record machine readings locally and forward them to the operator."""

        self._surface.update_machine(telemetry)
        return await self.session.send_telemetry(telemetry)

    async def stop(self) -> None:
        await self._transition_state(AppState.STOPPING, detail="shutting down")

        if self.normalizer is not None:
            await self.normalizer.stop()
        if self.publisher is not None:
            await self.publisher.stop()

        await self.session.disconnect("application stopping")
        await self.session.drain()

        if isinstance(self._bus, RosbridgeClient):
            await self._bus.stop()

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    async def run(self, machine_id: str) -> None:
        self._shutdown_event = asyncio.Event()
        LOGGER.info(
            "excavator-teleop %s starting for machine %s (config: %s)",
            self.role.value,
            machine_id,
            self._config.path,
        )
        try:
            await self.connect(machine_id)
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("excavator-teleop received shutdown signal")
            raise
        finally:
            await self.stop()

    @classmethod
    def start(
        cls, role: Role, machine_id: str, config: Optional[TeleopConfig] = None
    ) -> None:
        instance = cls(role, config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
            side=role.value,
        )
        try:
            asyncio.run(instance.run(machine_id))
        except KeyboardInterrupt:
            LOGGER.info("excavator-teleop received shutdown signal")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _on_frame(self, frame: ControlFrame) -> None:
        if not self.session.is_open:
            return
        self._spawn(self._send_frame(frame))

    async def _send_frame(self, frame: ControlFrame) -> None:
        await self.session.send_frame(frame)

    def _on_status(self, status: ConnectionStatus) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return
        self._spawn(self._refresh_health(status))

    async def _refresh_health(self, status: ConnectionStatus) -> None:
        detail = self.session.snapshot.detail
        await self._health.record("data_channel", status.data_channel, detail=detail)
        await self._health.record("media_channel", status.media_channel, required=False)

        healthy = status.data_channel is ChannelState.CONNECTED
        if self.role is Role.MACHINE:
            await self._health.record("control_bus", status.bus)
            healthy = healthy and status.bus is ChannelState.CONNECTED

        if self._state is AppState.STOPPING:
            return
        if healthy:
            await self._transition_state(AppState.ACTIVE, detail="link established")
        elif self._state is not AppState.CONNECTING or status.data_channel is ChannelState.ERROR:
            await self._transition_state(
                AppState.DEGRADED, detail=f"session {self.session.state.value}"
            )

    async def _transition_state(
        self, state: AppState, *, detail: Optional[str] = None
    ) -> None:
        if state == self._state and detail == self._state_detail:
            return

        previous = self._state
        self._state = state
        self._state_detail = detail

        message_detail = detail or state.value
        LOGGER.info(
            "App state transition %s -> %s (%s)",
            previous.value,
            state.value,
            message_detail,
        )
        await self._health.set_app_state(
            state.value,
            healthy=state == AppState.ACTIVE,
            detail=message_detail,
        )

    async def _start_health_server(self) -> None:
        resilience = self._config.resilience
        if not resilience.health_enabled or self._health_server is not None:
            return
        server = StatusServer(
            self._health,
            self._surface,
            resilience.health_host,
            resilience.health_port,
        )
        try:
            await server.start()
        except OSError as exc:
            LOGGER.warning("Status endpoint unavailable: %s", exc)
            return
        self._health_server = server

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
