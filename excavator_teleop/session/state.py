"""Peer session state machine.

The machine is a pure function: ``transition(snapshot, event)`` returns the
next snapshot and the side effects the owner must perform, in order. It never
touches the transport, so every lifecycle path can be exercised without a
network.

::

    idle -> connecting -> awaiting_peer -> data_open
         -> (media_negotiating -> media_open)? -> closed

``error`` is reachable from every non-terminal state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple, Union

from ..core import ChannelState, Role, session_identity
from . import events as ev

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_PEER = "awaiting_peer"
    DATA_OPEN = "data_open"
    MEDIA_NEGOTIATING = "media_negotiating"
    MEDIA_OPEN = "media_open"
    CLOSED = "closed"
    ERROR = "error"

    @property
    def has_data_channel(self) -> bool:
        return self in (
            SessionState.DATA_OPEN,
            SessionState.MEDIA_NEGOTIATING,
            SessionState.MEDIA_OPEN,
        )


# ---------------------------------------------------------------------------
# Effects
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class RegisterIdentity:
    identity: str


@dataclass(slots=True, frozen=True)
class OpenDataChannel:
    remote: str


@dataclass(slots=True, frozen=True)
class CloseDataChannel:
    channel_id: str


@dataclass(slots=True, frozen=True)
class SendGreeting:
    channel_id: str


@dataclass(slots=True, frozen=True)
class StartMediaCall:
    remote: str


@dataclass(slots=True, frozen=True)
class AnswerMediaCall:
    call_id: str
    stream: object


@dataclass(slots=True, frozen=True)
class CloseMedia:
    call_id: str


@dataclass(slots=True, frozen=True)
class CancelMediaRetry:
    pass


@dataclass(slots=True, frozen=True)
class ClearLatestFrame:
    pass


@dataclass(slots=True, frozen=True)
class ReleaseIdentity:
    identity: str


@dataclass(slots=True, frozen=True)
class UpdateStatus:
    data: Optional[ChannelState] = None
    media: Optional[ChannelState] = None


Effect = Union[
    RegisterIdentity,
    OpenDataChannel,
    CloseDataChannel,
    SendGreeting,
    StartMediaCall,
    AnswerMediaCall,
    CloseMedia,
    CancelMediaRetry,
    ClearLatestFrame,
    ReleaseIdentity,
    UpdateStatus,
]


@dataclass(slots=True, frozen=True)
class SessionSnapshot:
    """Everything the state machine knows about one session."""

    role: Role
    state: SessionState = SessionState.IDLE
    machine_id: Optional[str] = None
    identity: Optional[str] = None
    identity_held: bool = False
    data_channel: Optional[str] = None
    remote: Optional[str] = None
    media_call: Optional[str] = None
    detail: Optional[str] = None

    @property
    def expected_remote(self) -> Optional[str]:
        if self.machine_id is None:
            return None
        return session_identity(self.role.counterpart, self.machine_id)


@dataclass(slots=True, frozen=True)
class Transition:
    snapshot: SessionSnapshot
    effects: Tuple[Effect, ...] = ()

    @property
    def state(self) -> SessionState:
        return self.snapshot.state


def transition(snapshot: SessionSnapshot, event: object) -> Transition:
    """Compute the next snapshot and effects for ``event``."""

    if isinstance(event, ev.DisconnectRequested):
        return _teardown(snapshot, SessionState.CLOSED, detail=event.reason)

    if isinstance(event, ev.StartRequested):
        return _on_start(snapshot, event)

    if isinstance(event, ev.MediaCallPlaced):
        return _on_media_placed(snapshot, event)

    if snapshot.state in (SessionState.IDLE, SessionState.CLOSED):
        return _ignore(snapshot, event)

    if isinstance(event, ev.SignalingFailed):
        if snapshot.state is SessionState.ERROR:
            return Transition(snapshot)
        return _fail(snapshot, event.detail)

    if isinstance(event, ev.Registered):
        return _on_registered(snapshot, event)

    if isinstance(event, ev.DataChannelRequested):
        if snapshot.state is SessionState.AWAITING_PEER and snapshot.role.is_initiator:
            return Transition(replace(snapshot, data_channel=event.channel_id))
        return Transition(snapshot, (CloseDataChannel(event.channel_id),))

    if isinstance(event, ev.DataChannelOpened):
        return _on_data_opened(snapshot, event)

    if isinstance(event, ev.DataChannelClosed):
        return _on_data_closed(snapshot, event)

    if isinstance(event, ev.DataChannelError):
        return _on_data_error(snapshot, event)

    if isinstance(event, ev.MediaCallIncoming):
        return _on_media_incoming(snapshot, event)

    if isinstance(event, ev.MediaAccepted):
        return _on_media_accepted(snapshot, event)

    if isinstance(event, ev.MediaAnswered):
        if (
            snapshot.state is SessionState.MEDIA_NEGOTIATING
            and event.call_id == snapshot.media_call
        ):
            return Transition(
                replace(snapshot, state=SessionState.MEDIA_OPEN, detail=None),
                (UpdateStatus(media=ChannelState.CONNECTED),),
            )
        return _ignore(snapshot, event)

    if isinstance(event, ev.MediaClosed):
        if snapshot.media_call is None or event.call_id != snapshot.media_call:
            return _ignore(snapshot, event)
        return _media_closed(snapshot)

    if isinstance(event, ev.MediaError):
        if snapshot.media_call is None or event.call_id != snapshot.media_call:
            return _ignore(snapshot, event)
        return _media_failed(snapshot, event.detail)

    if isinstance(event, (ev.MediaStalled, ev.MediaResumed)):
        return _on_media_playback(snapshot, event)

    if isinstance(event, ev.MediaSourceUnavailable):
        if snapshot.state is not SessionState.DATA_OPEN:
            return _ignore(snapshot, event)
        return Transition(
            replace(
                snapshot,
                detail=f"media source unavailable after {event.attempts} attempts",
            ),
            (UpdateStatus(media=ChannelState.ERROR),),
        )

    return _ignore(snapshot, event)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _on_start(snapshot: SessionSnapshot, event: ev.StartRequested) -> Transition:
    if snapshot.state not in (SessionState.IDLE, SessionState.CLOSED):
        # Error keeps its resources until an explicit disconnect.
        return _ignore(snapshot, event)

    identity = session_identity(snapshot.role, event.machine_id)
    fresh = SessionSnapshot(
        role=snapshot.role,
        state=SessionState.CONNECTING,
        machine_id=event.machine_id.strip(),
        identity=identity,
        identity_held=True,
    )
    return Transition(
        fresh,
        (
            UpdateStatus(
                data=ChannelState.CONNECTING, media=ChannelState.DISCONNECTED
            ),
            RegisterIdentity(identity),
        ),
    )


def _on_registered(snapshot: SessionSnapshot, event: ev.Registered) -> Transition:
    if snapshot.state is not SessionState.CONNECTING:
        return _ignore(snapshot, event)

    awaiting = replace(snapshot, state=SessionState.AWAITING_PEER)
    if snapshot.role.is_initiator:
        remote = snapshot.expected_remote
        assert remote is not None
        return Transition(awaiting, (OpenDataChannel(remote),))

    # Responder: registered and ready, nobody connected yet.
    return Transition(awaiting, (UpdateStatus(data=ChannelState.DISCONNECTED),))


def _on_data_opened(
    snapshot: SessionSnapshot, event: ev.DataChannelOpened
) -> Transition:
    if event.remote != snapshot.expected_remote:
        LOGGER.warning(
            "Rejecting data channel %s from unexpected peer %s",
            event.channel_id,
            event.remote,
        )
        return Transition(snapshot, (CloseDataChannel(event.channel_id),))

    if snapshot.state is SessionState.AWAITING_PEER:
        if snapshot.role.is_initiator and snapshot.data_channel not in (
            None,
            event.channel_id,
        ):
            return Transition(snapshot, (CloseDataChannel(event.channel_id),))
        return _open_data(snapshot, event, ())

    if snapshot.state.has_data_channel:
        if event.channel_id == snapshot.data_channel:
            return Transition(snapshot)
        # Same counterpart reconnected: the new channel supersedes the old one.
        LOGGER.info(
            "Data channel %s supersedes %s for %s",
            event.channel_id,
            snapshot.data_channel,
            event.remote,
        )
        cleanup: list[Effect] = [CancelMediaRetry()]
        if snapshot.media_call is not None:
            cleanup.append(CloseMedia(snapshot.media_call))
        if snapshot.data_channel is not None:
            cleanup.append(CloseDataChannel(snapshot.data_channel))
        cleanup.append(UpdateStatus(media=ChannelState.DISCONNECTED))
        return _open_data(replace(snapshot, media_call=None), event, tuple(cleanup))

    return Transition(snapshot, (CloseDataChannel(event.channel_id),))


def _open_data(
    snapshot: SessionSnapshot,
    event: ev.DataChannelOpened,
    prefix: Tuple[Effect, ...],
) -> Transition:
    opened = replace(
        snapshot,
        state=SessionState.DATA_OPEN,
        data_channel=event.channel_id,
        remote=event.remote,
        detail=None,
    )
    effects: list[Effect] = list(prefix)
    effects.append(UpdateStatus(data=ChannelState.CONNECTED))
    if snapshot.role.is_initiator:
        effects.append(SendGreeting(event.channel_id))
    else:
        effects.append(StartMediaCall(event.remote))
    return Transition(opened, tuple(effects))


def _on_data_closed(
    snapshot: SessionSnapshot, event: ev.DataChannelClosed
) -> Transition:
    if event.channel_id != snapshot.data_channel:
        return _ignore(snapshot, event)

    if snapshot.role.is_initiator:
        return _teardown(
            snapshot,
            SessionState.ERROR,
            detail="data channel closed by peer",
            data_state=ChannelState.DISCONNECTED,
            release=False,
            close_data=False,
        )

    # Responder keeps its identity and waits for the next operator.
    effects = _media_cleanup(snapshot)
    effects.append(ClearLatestFrame())
    effects.append(
        UpdateStatus(data=ChannelState.DISCONNECTED, media=ChannelState.DISCONNECTED)
    )
    return Transition(
        replace(
            snapshot,
            state=SessionState.AWAITING_PEER,
            data_channel=None,
            remote=None,
            media_call=None,
            detail="operator disconnected",
        ),
        tuple(effects),
    )


def _on_data_error(snapshot: SessionSnapshot, event: ev.DataChannelError) -> Transition:
    if event.channel_id != snapshot.data_channel:
        return _ignore(snapshot, event)
    return _fail(snapshot, event.detail)


def _on_media_placed(snapshot: SessionSnapshot, event: ev.MediaCallPlaced) -> Transition:
    if snapshot.state is not SessionState.DATA_OPEN or snapshot.media_call is not None:
        return Transition(snapshot, (CloseMedia(event.call_id),))
    return Transition(
        replace(
            snapshot,
            state=SessionState.MEDIA_NEGOTIATING,
            media_call=event.call_id,
        ),
        (UpdateStatus(media=ChannelState.CONNECTING),),
    )


def _on_media_incoming(
    snapshot: SessionSnapshot, event: ev.MediaCallIncoming
) -> Transition:
    if snapshot.media_call is not None:
        LOGGER.info(
            "Media call %s from %s rejected: call %s already active",
            event.call_id,
            event.remote,
            snapshot.media_call,
        )
        return Transition(snapshot, (CloseMedia(event.call_id),))

    if (
        not snapshot.role.is_initiator
        or snapshot.state is not SessionState.DATA_OPEN
        or event.remote != snapshot.remote
    ):
        LOGGER.info(
            "Media call %s from %s rejected in state %s",
            event.call_id,
            event.remote,
            snapshot.state.value,
        )
        return Transition(snapshot, (CloseMedia(event.call_id),))

    return Transition(
        replace(
            snapshot,
            state=SessionState.MEDIA_NEGOTIATING,
            media_call=event.call_id,
        ),
        (
            UpdateStatus(media=ChannelState.CONNECTING),
            AnswerMediaCall(event.call_id, event.stream),
        ),
    )


def _on_media_accepted(snapshot: SessionSnapshot, event: ev.MediaAccepted) -> Transition:
    if (
        snapshot.state is not SessionState.MEDIA_NEGOTIATING
        or event.call_id != snapshot.media_call
    ):
        return _ignore(snapshot, event)

    if not event.stream.video_tracks:
        return _media_failed(snapshot, "stream has no video track")
    if not event.stream.is_playable:
        return _media_failed(snapshot, "stream reported zero frame size")

    return Transition(
        replace(snapshot, state=SessionState.MEDIA_OPEN, detail=None),
        (UpdateStatus(media=ChannelState.CONNECTED),),
    )


def _on_media_playback(
    snapshot: SessionSnapshot, event: Union[ev.MediaStalled, ev.MediaResumed]
) -> Transition:
    if (
        snapshot.state is not SessionState.MEDIA_OPEN
        or event.call_id != snapshot.media_call
    ):
        return _ignore(snapshot, event)

    if isinstance(event, ev.MediaStalled):
        # Playback is waiting for data; the call itself is still up.
        return Transition(
            replace(snapshot, detail="video stalled"),
            (UpdateStatus(media=ChannelState.CONNECTING),),
        )
    return Transition(
        replace(snapshot, detail=None),
        (UpdateStatus(media=ChannelState.CONNECTED),),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _media_cleanup(snapshot: SessionSnapshot) -> list[Effect]:
    effects: list[Effect] = [CancelMediaRetry()]
    if snapshot.media_call is not None:
        effects.append(CloseMedia(snapshot.media_call))
    return effects


def _media_closed(snapshot: SessionSnapshot) -> Transition:
    """Video ended cleanly; control continues in ``data_open``."""

    return Transition(
        replace(
            snapshot,
            state=SessionState.DATA_OPEN,
            media_call=None,
            detail=None,
        ),
        (UpdateStatus(media=ChannelState.DISCONNECTED),),
    )


def _media_failed(snapshot: SessionSnapshot, detail: str) -> Transition:
    """A failed negotiation or media channel error ends the video attempt.

    Only the call is closed. The data channel and the frame mailbox stay as
    they are, so control continues in ``data_open`` with media ``error``.
    """

    effects = _media_cleanup(snapshot)
    effects.append(UpdateStatus(media=ChannelState.ERROR))
    return Transition(
        replace(
            snapshot,
            state=SessionState.DATA_OPEN,
            media_call=None,
            detail=detail,
        ),
        tuple(effects),
    )


def _fail(snapshot: SessionSnapshot, detail: str) -> Transition:
    return _teardown(
        snapshot,
        SessionState.ERROR,
        detail=detail,
        data_state=ChannelState.ERROR,
        release=False,
    )


def _teardown(
    snapshot: SessionSnapshot,
    target: SessionState,
    *,
    detail: Optional[str],
    data_state: ChannelState = ChannelState.DISCONNECTED,
    release: bool = True,
    close_data: bool = True,
) -> Transition:
    """Release resources in reverse order of acquisition.

    Media first, then the data channel, then the signaling identity. The
    identity is only released while held, which makes repeated disconnects
    no-ops.
    """

    if snapshot.state is SessionState.CLOSED and target is SessionState.CLOSED:
        return Transition(snapshot)

    effects = _media_cleanup(snapshot)
    if close_data and snapshot.data_channel is not None:
        effects.append(CloseDataChannel(snapshot.data_channel))
    identity_held = snapshot.identity_held
    if release and identity_held and snapshot.identity is not None:
        effects.append(ReleaseIdentity(snapshot.identity))
        identity_held = False
    effects.append(ClearLatestFrame())
    effects.append(UpdateStatus(data=data_state, media=ChannelState.DISCONNECTED))

    return Transition(
        replace(
            snapshot,
            state=target,
            identity_held=identity_held,
            data_channel=None,
            remote=None,
            media_call=None,
            detail=detail,
        ),
        tuple(effects),
    )


def _ignore(snapshot: SessionSnapshot, event: object) -> Transition:
    LOGGER.debug(
        "Ignoring %s in state %s", type(event).__name__, snapshot.state.value
    )
    return Transition(snapshot)
