"""Fixed-rate command publisher feeding the control bus."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Callable, Optional

from .config import PublisherConfig
from .core import BusClient, ChannelState, ControlFrame, JointCommand, LatestValue
from .telemetry import StatusBoard

LOGGER = logging.getLogger(__name__)


class CommandPublisher:
    """Turns the latest received control frame into one bus message per tick.

    Ticks that were missed while the loop was busy are skipped, never replayed.
    """

    def __init__(
        self,
        bus: BusClient,
        frames: LatestValue[ControlFrame],
        board: StatusBoard,
        config: Optional[PublisherConfig] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bus = bus
        self._frames = frames
        self._board = board
        self._config = config or PublisherConfig()
        self._clock = clock
        self._task: Optional[asyncio.Task[None]] = None
        self._published = 0
        self._skipped_ticks = 0

    @property
    def published(self) -> int:
        return self._published

    @property
    def skipped_ticks(self) -> int:
        return self._skipped_ticks

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def on_bus_state(self, state: ChannelState, detail: Optional[str] = None) -> None:
        """Status callback for the bus client."""

        if detail:
            LOGGER.debug("Control bus %s: %s", state.value, detail)
        self._board.update(bus=state)

    async def tick(self) -> Optional[JointCommand]:
        """Run one publish cycle; returns the command that was sent, if any."""

        frame = self._frames.get()
        if frame is None:
            return None

        if not self._bus.is_connected:
            # An error reported by the bus client outranks a plain disconnect.
            if self._board.status.bus is not ChannelState.ERROR:
                self._board.update(bus=ChannelState.DISCONNECTED)
            return None

        command = JointCommand.from_frame(frame, timestamp=self._clock())
        try:
            await self._bus.publish(command)
        except Exception as exc:
            LOGGER.warning("Publishing joint command failed: %s", exc)
            self._board.update(bus=ChannelState.ERROR)
            return None

        self._published += 1
        self._board.update(bus=ChannelState.CONNECTED)
        return command

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run(self) -> None:
        interval = self._config.interval_seconds
        loop = asyncio.get_running_loop()
        LOGGER.info("Publishing joint commands every %.0f ms", interval * 1000)

        next_tick = loop.time()
        while True:
            try:
                await self.tick()
            except Exception:
                LOGGER.exception("Publisher tick failed")

            next_tick += interval
            now = loop.time()
            if now > next_tick:
                missed = int((now - next_tick) // interval) + 1
                self._skipped_ticks += missed
                next_tick += missed * interval
            await asyncio.sleep(next_tick - now)
