"""Events consumed by the peer session state machine.

Transport events are emitted by a ``SignalingTransport``; command events
originate from the session owner or the session's own timers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..core import StreamInfo


# ---------------------------------------------------------------------------
# Transport events
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class Registered:
    identity: str


@dataclass(slots=True, frozen=True)
class SignalingFailed:
    detail: str


@dataclass(slots=True, frozen=True)
class DataChannelOpened:
    channel_id: str
    remote: str


@dataclass(slots=True, frozen=True)
class DataReceived:
    channel_id: str
    payload: Any


@dataclass(slots=True, frozen=True)
class DataChannelClosed:
    channel_id: str


@dataclass(slots=True, frozen=True)
class DataChannelError:
    channel_id: str
    detail: str


@dataclass(slots=True, frozen=True)
class MediaCallIncoming:
    call_id: str
    remote: str
    stream: StreamInfo = field(default_factory=StreamInfo)


@dataclass(slots=True, frozen=True)
class MediaAnswered:
    call_id: str


@dataclass(slots=True, frozen=True)
class MediaClosed:
    call_id: str


@dataclass(slots=True, frozen=True)
class MediaError:
    call_id: str
    detail: str


# ---------------------------------------------------------------------------
# Session commands
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class StartRequested:
    machine_id: str


@dataclass(slots=True, frozen=True)
class DisconnectRequested:
    reason: str = "disconnect requested"


@dataclass(slots=True, frozen=True)
class DataChannelRequested:
    """The transport accepted a channel request and assigned this id."""

    channel_id: str


@dataclass(slots=True, frozen=True)
class MediaCallPlaced:
    call_id: str


@dataclass(slots=True, frozen=True)
class MediaAccepted:
    """An inbound call was answered; its stream still has to be checked."""

    call_id: str
    stream: StreamInfo


@dataclass(slots=True, frozen=True)
class MediaSourceUnavailable:
    attempts: int


@dataclass(slots=True, frozen=True)
class MediaStalled:
    """The player ran out of video data; the call is still open."""

    call_id: str


@dataclass(slots=True, frozen=True)
class MediaResumed:
    call_id: str
