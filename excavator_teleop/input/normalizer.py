"""Dual-controller axis normalisation.

Turns raw axis samples from two controllers into a bounded
``ControlFrame``. Plain axes only pass through a deadzone; the track axes
use the three-detent calibration of the excavator's pedal hardware:

========  =======  ==========================
detent    raw      normalised
========  =======  ==========================
FORWARD   -1.0     1.0
STILL     1.286    0.0
BACKWARD  0.143    -1.0
========  =======  ==========================
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Callable, List, Optional, Sequence

from ..config import ControllerMapping, InputConfig, TrackCalibration
from ..core import ControlFrame, ControllerSource, LatestValue, clamp_unit

LOGGER = logging.getLogger(__name__)

FrameListener = Callable[[ControlFrame], None]


def normalize_axis(value: float, deadzone: float) -> float:
    """Suppress stick noise: values inside the deadzone read as neutral."""

    if math.isnan(value):
        return 0.0
    return value if abs(value) > deadzone else 0.0


def normalize_track(
    value: float, calibration: TrackCalibration, deadzone: float
) -> float:
    """Map a raw track axis onto [-1, 1] using its three detents."""

    if math.isnan(value):
        return 0.0

    forward = calibration.forward
    still = calibration.still
    backward = calibration.backward

    if abs(value - still) < deadzone:
        return 0.0

    # The backward detent sits between rest and full forward, so its ramp
    # has to be tested first or it would be swallowed by the forward ramp.
    if min(backward, still) <= value <= max(backward, still):
        return max(-(still - value) / (still - backward), -1.0)

    if (still - value) * (still - forward) > 0:
        return min((still - value) / (still - forward), 1.0)

    # Past rest on the side away from both detents: treat as at rest.
    return 0.0


class InputNormalizer:
    """Samples a ``ControllerSource`` and exposes the latest ControlFrame."""

    def __init__(
        self,
        source: ControllerSource,
        config: Optional[InputConfig] = None,
    ) -> None:
        self._source = source
        self._config = config or InputConfig()
        self._latest: LatestValue[ControlFrame] = LatestValue()
        self._latest.put(ControlFrame())
        self._listeners: List[FrameListener] = []
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def latest(self) -> ControlFrame:
        frame = self._latest.get()
        return frame if frame is not None else ControlFrame()

    @property
    def mailbox(self) -> LatestValue[ControlFrame]:
        return self._latest

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def add_listener(self, listener: FrameListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: FrameListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def sample(self) -> ControlFrame:
        """Read both controllers once and publish the resulting frame."""

        mapping: ControllerMapping = self._config.mapping
        left = self._read(mapping.left_controller)
        right = self._read(mapping.right_controller)

        frame = ControlFrame(
            swing=self._plain(left, mapping.swing_axis),
            stick=self._plain(left, mapping.stick_axis),
            left_track=self._track(left, mapping.left_track_axis),
            bucket=self._plain(right, mapping.bucket_axis),
            boom=self._plain(right, mapping.boom_axis),
            right_track=self._track(right, mapping.right_track_axis),
        )
        self._latest.put(frame)

        for listener in list(self._listeners):
            try:
                listener(frame)
            except Exception:
                LOGGER.exception("Control frame listener failed")

        return frame

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        self._stop_event.set()
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        interval = self._config.sample_interval_seconds
        LOGGER.debug("Sampling controllers every %.0f ms", interval * 1000)
        while not self._stop_event.is_set():
            try:
                self.sample()
            except Exception:
                LOGGER.exception("Controller sampling failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _read(self, index: int) -> Optional[Sequence[float]]:
        try:
            return self._source.read_axes(index)
        except Exception:
            LOGGER.warning("Controller %d could not be read", index, exc_info=True)
            return None

    def _plain(self, axes: Optional[Sequence[float]], index: int) -> float:
        raw = _axis(axes, index)
        if raw is None:
            return 0.0
        return clamp_unit(normalize_axis(raw, self._config.deadzone))

    def _track(self, axes: Optional[Sequence[float]], index: int) -> float:
        raw = _axis(axes, index)
        if raw is None:
            return 0.0
        return clamp_unit(
            normalize_track(raw, self._config.calibration, self._config.deadzone)
        )


def _axis(axes: Optional[Sequence[float]], index: int) -> Optional[float]:
    if axes is None or index < 0 or index >= len(axes):
        return None
    try:
        return float(axes[index])
    except (TypeError, ValueError):
        return None
