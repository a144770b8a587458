"""Domain models shared by the input, session and publisher components."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Tuple

from .. import constants


class ChannelState(str, Enum):
    """Connection state reported for each channel."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Role(str, Enum):
    """Which end of the link a session represents."""

    OPERATOR = "operator"
    MACHINE = "machine"

    @property
    def is_initiator(self) -> bool:
        return self is Role.OPERATOR

    @property
    def counterpart(self) -> "Role":
        return Role.MACHINE if self is Role.OPERATOR else Role.OPERATOR


def session_identity(role: Role, machine_id: str) -> str:
    """Signaling identity for ``role`` attached to ``machine_id``."""

    machine_id = machine_id.strip()
    if not machine_id:
        raise ValueError("Machine identifier cannot be empty")
    return f"{role.value}{machine_id}"


def clamp_unit(value: float) -> float:
    """Clamp to [-1, 1]; NaN is treated as neutral."""

    if math.isnan(value):
        return 0.0
    return max(-1.0, min(1.0, value))


# Wire name -> attribute name for ControlFrame.
CONTROL_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("leftTrack", "left_track"),
    ("rightTrack", "right_track"),
    ("swing", "swing"),
    ("boom", "boom"),
    ("stick", "stick"),
    ("bucket", "bucket"),
)


@dataclass(slots=True, frozen=True)
class ControlFrame:
    """Normalised actuator intents, each bounded to [-1, 1]."""

    left_track: float = 0.0
    right_track: float = 0.0
    swing: float = 0.0
    boom: float = 0.0
    stick: float = 0.0
    bucket: float = 0.0

    def __post_init__(self) -> None:
        for _, attr in CONTROL_FIELDS:
            object.__setattr__(self, attr, clamp_unit(float(getattr(self, attr))))

    @classmethod
    def from_wire(cls, payload: Mapping[str, Any]) -> "ControlFrame":
        return cls(**{attr: payload[wire] for wire, attr in CONTROL_FIELDS})

    def to_wire(self) -> dict[str, float]:
        return {wire: getattr(self, attr) for wire, attr in CONTROL_FIELDS}


@dataclass(slots=True, frozen=True)
class JointCommand:
    """One publish tick worth of joint targets for the control bus."""

    joint_names: Tuple[str, ...]
    position: Tuple[float, ...]
    velocity: Tuple[float, ...]
    effort: Tuple[float, ...]
    timestamp: float

    @classmethod
    def from_frame(
        cls, frame: ControlFrame, *, timestamp: Optional[float] = None
    ) -> "JointCommand":
        position = (
            -frame.bucket * constants.LINEAR_JOINT_SCALE,
            -frame.boom * constants.LINEAR_JOINT_SCALE,
            -frame.stick * constants.LINEAR_JOINT_SCALE,
            frame.swing * constants.ROTATE_JOINT_SCALE,
        )
        zeros = (0.0,) * len(constants.JOINT_NAMES)
        return cls(
            joint_names=constants.JOINT_NAMES,
            position=position,
            velocity=zeros,
            effort=zeros,
            timestamp=time.time() if timestamp is None else timestamp,
        )

    def as_joint_state(self, frame_id: str = "") -> dict[str, Any]:
        """Render as a ``sensor_msgs/msg/JointState`` message body."""

        seconds = int(self.timestamp)
        nanoseconds = int(round((self.timestamp - seconds) * 1e9))
        if nanoseconds >= 1_000_000_000:
            seconds += 1
            nanoseconds -= 1_000_000_000
        return {
            "header": {
                "stamp": {"sec": seconds, "nanosec": nanoseconds},
                "frame_id": frame_id,
            },
            "name": list(self.joint_names),
            "position": list(self.position),
            "velocity": list(self.velocity),
            "effort": list(self.effort),
        }


@dataclass(slots=True, frozen=True)
class ConnectionStatus:
    data_channel: ChannelState = ChannelState.DISCONNECTED
    media_channel: ChannelState = ChannelState.DISCONNECTED
    bus: ChannelState = ChannelState.DISCONNECTED

    def as_dict(self) -> dict[str, str]:
        return {
            "dataChannelState": self.data_channel.value,
            "mediaChannelState": self.media_channel.value,
            "busState": self.bus.value,
        }


@dataclass(slots=True, frozen=True)
class TrackInfo:
    kind: str
    width: int = 0
    height: int = 0


@dataclass(slots=True, frozen=True)
class StreamInfo:
    """Descriptor of a media stream as announced on a call."""

    tracks: Tuple[TrackInfo, ...] = ()

    @property
    def video_tracks(self) -> Tuple[TrackInfo, ...]:
        return tuple(track for track in self.tracks if track.kind == "video")

    @property
    def is_playable(self) -> bool:
        """A stream needs a video track with non-zero first-frame dimensions."""

        return any(
            track.width > 0 and track.height > 0 for track in self.video_tracks
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "tracks": [
                {"kind": track.kind, "width": track.width, "height": track.height}
                for track in self.tracks
            ]
        }

    @classmethod
    def from_dict(cls, payload: Optional[Mapping[str, Any]]) -> "StreamInfo":
        if not isinstance(payload, Mapping):
            return cls()
        tracks = []
        for item in payload.get("tracks") or ():
            if not isinstance(item, Mapping):
                continue
            try:
                tracks.append(
                    TrackInfo(
                        kind=str(item.get("kind", "")),
                        width=int(item.get("width") or 0),
                        height=int(item.get("height") or 0),
                    )
                )
            except (TypeError, ValueError):
                continue
        return cls(tracks=tuple(tracks))


class MachineStatus(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    OFFLINE = "offline"


class EngineStatus(str, Enum):
    GOOD = "good"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(slots=True, frozen=True)
class MachineTelemetry:
    """Scalar machine readings supplied by the fleet backend or the machine."""

    machine_id: str
    status: MachineStatus = MachineStatus.NORMAL
    fuel_level: Optional[float] = None
    battery_level: Optional[float] = None
    hydraulic_pressure: Optional[float] = None
    working_hours: Optional[float] = None
    fuel_consumption: Optional[float] = None
    engine_status: EngineStatus = EngineStatus.GOOD
    updated_at: float = field(default_factory=time.time)

    def as_dict(self) -> dict[str, Any]:
        return {
            "machineId": self.machine_id,
            "status": self.status.value,
            "fuelLevel": self.fuel_level,
            "batteryLevel": self.battery_level,
            "hydraulicPressure": self.hydraulic_pressure,
            "workingHours": self.working_hours,
            "fuelConsumption": self.fuel_consumption,
            "engineStatus": self.engine_status.value,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "MachineTelemetry":
        def _number(key: str) -> Optional[float]:
            value = payload.get(key)
            if value is None or isinstance(value, bool):
                return None
            return float(value)

        return cls(
            machine_id=str(payload["machineId"]),
            status=MachineStatus(payload.get("status", MachineStatus.NORMAL.value)),
            fuel_level=_number("fuelLevel"),
            battery_level=_number("batteryLevel"),
            hydraulic_pressure=_number("hydraulicPressure"),
            working_hours=_number("workingHours"),
            fuel_consumption=_number("fuelConsumption"),
            engine_status=EngineStatus(
                payload.get("engineStatus", EngineStatus.GOOD.value)
            ),
            updated_at=_number("updatedAt") or time.time(),
        )
