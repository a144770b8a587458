"""Peer session executor.

``PeerSession`` feeds transport events and owner commands through the pure
state machine in :mod:`.state` and performs the resulting effects against the
signaling transport. Events are processed one at a time under a lock so the
effects of one transition complete before the next event is considered.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Awaitable, Optional, Set

from .. import constants
from ..config import MediaConfig
from ..core import (
    ControlFrame,
    LatestValue,
    MachineTelemetry,
    MalformedFrameError,
    MediaSource,
    MediaSourceError,
    Role,
    SignalingError,
    SignalingTransport,
    session_identity,
)
from ..telemetry import TelemetrySurface
from . import events as ev
from . import protocol
from .state import (
    AnswerMediaCall,
    CancelMediaRetry,
    ClearLatestFrame,
    CloseDataChannel,
    CloseMedia,
    Effect,
    OpenDataChannel,
    RegisterIdentity,
    ReleaseIdentity,
    SendGreeting,
    SessionSnapshot,
    SessionState,
    StartMediaCall,
    UpdateStatus,
    transition,
)

LOGGER = logging.getLogger(__name__)


class PeerSession:
    """One operator or machine endpoint of the teleoperation link."""

    def __init__(
        self,
        role: Role,
        transport: SignalingTransport,
        *,
        surface: Optional[TelemetrySurface] = None,
        frames: Optional[LatestValue[ControlFrame]] = None,
        media_source: Optional[MediaSource] = None,
        media_config: Optional[MediaConfig] = None,
        label: str = constants.DATA_CHANNEL_LABEL,
    ) -> None:
        self._snapshot = SessionSnapshot(role=role)
        self._transport = transport
        self._surface = surface or TelemetrySurface()
        self._frames: LatestValue[ControlFrame] = frames or LatestValue()
        self._media_source = media_source
        self._media_config = media_config or MediaConfig()
        self._label = label

        self._lock = asyncio.Lock()
        self._media_task: Optional[asyncio.Task[None]] = None
        self._pending: Set[asyncio.Task[None]] = set()
        self._seq = 0

        self._transport.set_event_handler(self.handle_event)
        if role is Role.MACHINE:
            self._surface.bind_frames(self._frames)
        self._surface.bind_session(
            lambda: self._snapshot.state.value, lambda: self._snapshot.detail
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def role(self) -> Role:
        return self._snapshot.role

    @property
    def state(self) -> SessionState:
        return self._snapshot.state

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def frames(self) -> LatestValue[ControlFrame]:
        """Mailbox holding the latest control frame received from the operator."""

        return self._frames

    @property
    def surface(self) -> TelemetrySurface:
        return self._surface

    @property
    def is_open(self) -> bool:
        return self._snapshot.state.has_data_channel

    # ------------------------------------------------------------------
    # Owner commands
    # ------------------------------------------------------------------

    async def start(self, machine_id: str) -> None:
        """Register with the signaling service for ``machine_id``."""

        session_identity(self.role, machine_id)
        if self._snapshot.state not in (SessionState.IDLE, SessionState.CLOSED):
            raise SignalingError(
                f"Session already active in state {self._snapshot.state.value}"
            )
        await self.dispatch(ev.StartRequested(machine_id))

    async def disconnect(self, reason: str = "disconnect requested") -> None:
        """Tear everything down. Safe to call repeatedly."""

        await self.dispatch(ev.DisconnectRequested(reason))
        await self._cancel_media_task()
        if self._media_source is not None:
            await self._guarded(self._media_source.close(), "closing media source")

    async def reconnect(self) -> None:
        machine_id = self._snapshot.machine_id
        if machine_id is None:
            raise SignalingError("Session has never been started")
        LOGGER.info("Reconnecting %s session for %s", self.role.value, machine_id)
        await self.disconnect("reconnect requested")
        await self.start(machine_id)

    async def report_video_stalled(self) -> None:
        """Called by the video player when playback waits for data."""

        call_id = self._snapshot.media_call
        if call_id is not None:
            await self.dispatch(ev.MediaStalled(call_id))

    async def report_video_resumed(self) -> None:
        call_id = self._snapshot.media_call
        if call_id is not None:
            await self.dispatch(ev.MediaResumed(call_id))

    async def send_frame(self, frame: ControlFrame) -> bool:
        """Send one control frame to the machine; False when no channel is open."""

        channel_id = self._snapshot.data_channel
        if not self.is_open or channel_id is None:
            return False

        self._seq += 1
        seq = self._seq
        payload = protocol.encode_control(frame, seq=seq, sent_at=time.time())
        self._surface.link.record_sent(seq)
        return await self._send(channel_id, payload)

    async def send_telemetry(self, telemetry: MachineTelemetry) -> bool:
        channel_id = self._snapshot.data_channel
        if not self.is_open or channel_id is None:
            return False
        return await self._send(channel_id, protocol.encode_telemetry(telemetry))

    # ------------------------------------------------------------------
    # Event processing
    # ------------------------------------------------------------------

    def handle_event(self, event: Any) -> None:
        """Transport callback; schedules ``dispatch`` on the running loop."""

        self._track(self.dispatch(event))

    async def drain(self) -> None:
        """Wait until every scheduled event has been processed."""

        while self._pending:
            await asyncio.wait(set(self._pending))

    async def dispatch(self, event: Any) -> None:
        async with self._lock:
            queue = [event]
            while queue:
                current = queue.pop(0)
                try:
                    queue.extend(await self._process(current))
                except Exception:
                    LOGGER.exception(
                        "Failed to process %s in state %s",
                        type(current).__name__,
                        self._snapshot.state.value,
                    )

    async def _process(self, event: Any) -> list[Any]:
        if isinstance(event, ev.DataReceived):
            await self._on_data(event)
            return []

        previous = self._snapshot
        result = transition(previous, event)
        self._snapshot = result.snapshot
        if result.state is not previous.state:
            LOGGER.info(
                "%s session: %s -> %s (%s)%s",
                self.role.value,
                previous.state.value,
                result.state.value,
                type(event).__name__,
                f": {result.snapshot.detail}" if result.snapshot.detail else "",
            )

        follow_up: list[Any] = []
        for effect in result.effects:
            follow_up.extend(await self._apply(effect))
        return follow_up

    async def _apply(self, effect: Effect) -> list[Any]:
        """Perform one effect. Failures become follow-up events, never raise."""

        if isinstance(effect, UpdateStatus):
            self._surface.board.update(data=effect.data, media=effect.media)
            return []

        if isinstance(effect, RegisterIdentity):
            try:
                await self._transport.register(effect.identity)
            except Exception as exc:
                LOGGER.warning("Registering %s failed: %s", effect.identity, exc)
                return [ev.SignalingFailed(str(exc) or type(exc).__name__)]
            return []

        if isinstance(effect, OpenDataChannel):
            try:
                channel_id = await self._transport.open_data_channel(
                    effect.remote, label=self._label
                )
            except Exception as exc:
                LOGGER.warning("Opening data channel to %s failed: %s", effect.remote, exc)
                return [ev.SignalingFailed(str(exc) or type(exc).__name__)]
            return [ev.DataChannelRequested(channel_id)]

        if isinstance(effect, SendGreeting):
            self._seq = 0
            self._surface.link.reset()
            await self._send(effect.channel_id, protocol.encode_greeting())
            return []

        if isinstance(effect, StartMediaCall):
            self._start_media_task(effect.remote)
            return []

        if isinstance(effect, AnswerMediaCall):
            try:
                await self._transport.answer(effect.call_id)
            except Exception as exc:
                LOGGER.warning("Answering media call %s failed: %s", effect.call_id, exc)
                return [ev.MediaError(effect.call_id, str(exc) or type(exc).__name__)]
            return [ev.MediaAccepted(effect.call_id, effect.stream)]

        if isinstance(effect, CancelMediaRetry):
            await self._cancel_media_task()
            return []

        if isinstance(effect, CloseMedia):
            await self._guarded(
                self._transport.close_media(effect.call_id),
                "closing media call %s" % effect.call_id,
            )
            return []

        if isinstance(effect, CloseDataChannel):
            await self._guarded(
                self._transport.close_data_channel(effect.channel_id),
                "closing data channel %s" % effect.channel_id,
            )
            return []

        if isinstance(effect, ReleaseIdentity):
            await self._guarded(
                self._transport.release(), "releasing identity %s" % effect.identity
            )
            return []

        if isinstance(effect, ClearLatestFrame):
            self._frames.clear()
            return []

        LOGGER.warning("Unhandled session effect %r", effect)
        return []

    async def _on_data(self, event: ev.DataReceived) -> None:
        if not self.is_open or event.channel_id != self._snapshot.data_channel:
            LOGGER.debug("Dropping data from inactive channel %s", event.channel_id)
            return

        try:
            message = protocol.decode_message(event.payload)
        except MalformedFrameError as exc:
            LOGGER.warning("Dropping malformed payload on %s: %s", event.channel_id, exc)
            return

        if isinstance(message, protocol.ControlMessage):
            if self.role is not Role.MACHINE:
                LOGGER.debug("Ignoring control frame received by operator")
                return
            self._frames.put(message.frame)
            if message.seq is not None:
                await self._send(
                    event.channel_id, protocol.encode_ack(message.seq, message.sent_at)
                )
        elif isinstance(message, protocol.AckMessage):
            rtt = self._surface.link.record_ack(message.seq)
            if rtt is not None:
                LOGGER.debug("Ack %d round trip %.1f ms", message.seq, rtt)
        elif isinstance(message, protocol.TelemetryMessage):
            self._surface.update_machine(message.telemetry)
        elif isinstance(message, protocol.GreetingMessage):
            LOGGER.info("Peer on %s says %s", event.channel_id, message.text)

    # ------------------------------------------------------------------
    # Media retry
    # ------------------------------------------------------------------

    def _start_media_task(self, remote: str) -> None:
        if self._media_source is None or not self._media_config.enabled:
            LOGGER.info("No media source configured; control continues without video")
            return
        if self._media_task is not None and not self._media_task.done():
            LOGGER.debug("Media call already being set up")
            return
        self._media_task = asyncio.get_running_loop().create_task(
            self._media_loop(remote)
        )

    async def _media_loop(self, remote: str) -> None:
        assert self._media_source is not None
        retry_interval = self._media_config.retry_interval_seconds
        max_retries = max(1, self._media_config.max_retries)
        attempts = 0

        while True:
            attempts += 1
            stream = None
            try:
                stream = await self._media_source.probe()
            except MediaSourceError as exc:
                LOGGER.debug("Media source not ready (attempt %d): %s", attempts, exc)
            except Exception:
                LOGGER.warning(
                    "Media source probe failed (attempt %d)", attempts, exc_info=True
                )

            if stream is not None and stream.is_playable:
                try:
                    call_id = await self._transport.call(remote, stream)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    LOGGER.warning("Placing media call to %s failed: %s", remote, exc)
                else:
                    self._track(self.dispatch(ev.MediaCallPlaced(call_id)))
                    return

            if attempts >= max_retries:
                LOGGER.warning(
                    "Media source unavailable after %d attempts; continuing without video",
                    attempts,
                )
                self._track(self.dispatch(ev.MediaSourceUnavailable(attempts)))
                return

            await asyncio.sleep(retry_interval)

    async def _cancel_media_task(self) -> None:
        task = self._media_task
        self._media_task = None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _send(self, channel_id: str, payload: dict[str, Any]) -> bool:
        try:
            await self._transport.send(channel_id, payload)
        except Exception as exc:
            LOGGER.warning("Sending on data channel %s failed: %s", channel_id, exc)
            return False
        return True

    async def _guarded(self, awaitable: Awaitable[Any], action: str) -> None:
        try:
            await awaitable
        except Exception as exc:
            LOGGER.warning("Error while %s: %s", action, exc)

    def _track(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
