"""Core primitives for excavator-teleop."""

from .errors import (
    BusUnavailableError,
    ChannelError,
    MalformedFrameError,
    MediaSourceError,
    SignalingError,
    TeleopError,
)
from .mailbox import LatestValue
from .models import (
    CONTROL_FIELDS,
    ChannelState,
    ConnectionStatus,
    ControlFrame,
    EngineStatus,
    JointCommand,
    MachineStatus,
    MachineTelemetry,
    Role,
    StreamInfo,
    TrackInfo,
    clamp_unit,
    session_identity,
)
from .protocols import BusClient, ControllerSource, MediaSource, SignalingTransport

__all__ = [
    "CONTROL_FIELDS",
    "BusClient",
    "BusUnavailableError",
    "ChannelError",
    "ChannelState",
    "ConnectionStatus",
    "ControlFrame",
    "ControllerSource",
    "EngineStatus",
    "JointCommand",
    "LatestValue",
    "MachineStatus",
    "MachineTelemetry",
    "MalformedFrameError",
    "MediaSource",
    "MediaSourceError",
    "Role",
    "SignalingError",
    "SignalingTransport",
    "StreamInfo",
    "TeleopError",
    "TrackInfo",
    "clamp_unit",
    "session_identity",
]
