"""Read-only status and telemetry surface for the presentation layer."""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from .core import ChannelState, ConnectionStatus, ControlFrame, LatestValue, MachineTelemetry

LOGGER = logging.getLogger(__name__)

StatusListener = Callable[[ConnectionStatus], None]

# Sequence numbers still awaiting an ack after this long count as lost.
ACK_TIMEOUT_SECONDS = 1.0
LINK_WINDOW = 100


class StatusBoard:
    """Holds the connection status triple and notifies listeners on change."""

    def __init__(self) -> None:
        self._status = ConnectionStatus()
        self._lock = Lock()
        self._listeners: List[StatusListener] = []

    @property
    def status(self) -> ConnectionStatus:
        with self._lock:
            return self._status

    def update(
        self,
        *,
        data: Optional[ChannelState] = None,
        media: Optional[ChannelState] = None,
        bus: Optional[ChannelState] = None,
    ) -> ConnectionStatus:
        with self._lock:
            previous = self._status
            current = replace(
                previous,
                data_channel=data if data is not None else previous.data_channel,
                media_channel=media if media is not None else previous.media_channel,
                bus=bus if bus is not None else previous.bus,
            )
            self._status = current
            listeners = list(self._listeners)

        if current != previous:
            LOGGER.debug("Connection status: %s", current.as_dict())
            for listener in listeners:
                try:
                    listener(current)
                except Exception:
                    LOGGER.exception("Status listener failed")
        return current

    def add_listener(self, listener: StatusListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)


@dataclass(slots=True, frozen=True)
class LinkQuality:
    latency_ms: Optional[float] = None
    packet_loss: Optional[float] = None
    frames_sent: int = 0
    frames_acked: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return {
            "latencyMs": self.latency_ms,
            "packetLoss": self.packet_loss,
            "framesSent": self.frames_sent,
            "framesAcked": self.frames_acked,
        }


class LinkMonitor:
    """Derives latency and packet loss from machine acknowledgements.

    Latency is the round trip of the most recent acknowledged frame, smoothed
    with an exponential moving average. Packet loss is measured over the last
    ``window`` sequence numbers that are either acknowledged or overdue.
    """

    def __init__(
        self,
        *,
        window: int = LINK_WINDOW,
        ack_timeout: float = ACK_TIMEOUT_SECONDS,
        smoothing: float = 0.3,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window = window
        self._ack_timeout = ack_timeout
        self._smoothing = smoothing
        self._clock = clock
        self._lock = Lock()
        self._pending: "OrderedDict[int, float]" = OrderedDict()
        self._outcomes: List[bool] = []
        self._latency_ms: Optional[float] = None
        self._sent = 0
        self._acked = 0

    def record_sent(self, seq: int) -> None:
        with self._lock:
            self._pending[seq] = self._clock()
            self._sent += 1
            self._expire_locked()

    def record_ack(self, seq: int) -> Optional[float]:
        """Register an ack; returns the round trip in milliseconds if known."""

        with self._lock:
            sent_at = self._pending.pop(seq, None)
            if sent_at is None:
                return None
            rtt_ms = (self._clock() - sent_at) * 1000.0
            self._acked += 1
            self._push_outcome(True)
            if self._latency_ms is None:
                self._latency_ms = rtt_ms
            else:
                self._latency_ms += self._smoothing * (rtt_ms - self._latency_ms)
            return rtt_ms

    def quality(self) -> LinkQuality:
        with self._lock:
            self._expire_locked()
            loss: Optional[float] = None
            if self._outcomes:
                lost = sum(1 for acked in self._outcomes if not acked)
                loss = lost / len(self._outcomes)
            return LinkQuality(
                latency_ms=self._latency_ms,
                packet_loss=loss,
                frames_sent=self._sent,
                frames_acked=self._acked,
            )

    def reset(self) -> None:
        with self._lock:
            self._pending.clear()
            self._outcomes.clear()
            self._latency_ms = None
            self._sent = 0
            self._acked = 0

    def _expire_locked(self) -> None:
        deadline = self._clock() - self._ack_timeout
        while self._pending:
            seq, sent_at = next(iter(self._pending.items()))
            if sent_at > deadline:
                break
            del self._pending[seq]
            self._push_outcome(False)

    def _push_outcome(self, acked: bool) -> None:
        self._outcomes.append(acked)
        if len(self._outcomes) > self._window:
            del self._outcomes[: len(self._outcomes) - self._window]


@dataclass(slots=True, frozen=True)
class TelemetrySnapshot:
    status: ConnectionStatus
    session_state: str
    latest_frame: Optional[ControlFrame] = None
    link: LinkQuality = field(default_factory=LinkQuality)
    machine: Optional[MachineTelemetry] = None
    detail: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.as_dict(),
            "sessionState": self.session_state,
            "detail": self.detail,
            "latestFrame": self.latest_frame.to_wire() if self.latest_frame else None,
            "link": self.link.as_dict(),
            "machine": self.machine.as_dict() if self.machine else None,
        }


SessionStateProvider = Callable[[], str]
DetailProvider = Callable[[], Optional[str]]


class TelemetrySurface:
    """Aggregates everything the presentation layer may display."""

    def __init__(
        self,
        board: Optional[StatusBoard] = None,
        link: Optional[LinkMonitor] = None,
    ) -> None:
        self.board = board or StatusBoard()
        self.link = link or LinkMonitor()
        self._frames: Optional[LatestValue[ControlFrame]] = None
        self._state_provider: SessionStateProvider = lambda: "idle"
        self._detail_provider: DetailProvider = lambda: None
        self._machine = LatestValue[MachineTelemetry]()

    def bind_frames(self, frames: LatestValue[ControlFrame]) -> None:
        self._frames = frames

    def bind_session(
        self,
        state_provider: SessionStateProvider,
        detail_provider: Optional[DetailProvider] = None,
    ) -> None:
        self._state_provider = state_provider
        if detail_provider is not None:
            self._detail_provider = detail_provider

    def update_machine(self, telemetry: MachineTelemetry) -> None:
        self._machine.put(telemetry)

    @property
    def machine(self) -> Optional[MachineTelemetry]:
        return self._machine.get()

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a status listener; returns a callable that unsubscribes."""

        self.board.add_listener(listener)
        return lambda: self.board.remove_listener(listener)

    def snapshot(self) -> TelemetrySnapshot:
        return TelemetrySnapshot(
            status=self.board.status,
            session_state=self._state_provider(),
            latest_frame=self._frames.get() if self._frames is not None else None,
            link=self.link.quality(),
            machine=self._machine.get(),
            detail=self._detail_provider(),
        )
