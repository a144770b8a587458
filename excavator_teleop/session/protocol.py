"""Data channel message codec.

Messages are JSON-compatible mappings with a ``type`` discriminator. A bare
mapping holding the six control fields is accepted as a control frame for
peers that do not wrap their frames.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from ..core import CONTROL_FIELDS, ControlFrame, MachineTelemetry, MalformedFrameError

GREETING = "operator_connected"

MESSAGE_CONTROL = "control"
MESSAGE_ACK = "ack"
MESSAGE_TELEMETRY = "telemetry"
MESSAGE_GREETING = "greeting"


@dataclass(slots=True, frozen=True)
class ControlMessage:
    frame: ControlFrame
    seq: Optional[int] = None
    sent_at: Optional[float] = None


@dataclass(slots=True, frozen=True)
class AckMessage:
    seq: int
    sent_at: Optional[float] = None


@dataclass(slots=True, frozen=True)
class TelemetryMessage:
    telemetry: MachineTelemetry


@dataclass(slots=True, frozen=True)
class GreetingMessage:
    text: str = GREETING


Message = Union[ControlMessage, AckMessage, TelemetryMessage, GreetingMessage]


def encode_control(
    frame: ControlFrame, *, seq: int, sent_at: float
) -> dict[str, Any]:
    return {
        "type": MESSAGE_CONTROL,
        "seq": seq,
        "sentAt": sent_at,
        "frame": frame.to_wire(),
    }


def encode_ack(seq: int, sent_at: Optional[float]) -> dict[str, Any]:
    return {"type": MESSAGE_ACK, "seq": seq, "sentAt": sent_at}


def encode_telemetry(telemetry: MachineTelemetry) -> dict[str, Any]:
    return {"type": MESSAGE_TELEMETRY, "telemetry": telemetry.as_dict()}


def encode_greeting() -> dict[str, Any]:
    return {"type": MESSAGE_GREETING, "message": GREETING}


def decode_message(payload: Any) -> Message:
    """Decode one data channel payload.

    Raises:
        MalformedFrameError: the payload is not a recognised message.
    """

    if isinstance(payload, str):
        # Plain text greeting from peers that send the bare marker.
        if payload == GREETING:
            return GreetingMessage()
        raise MalformedFrameError(f"Unexpected text payload: {payload[:64]!r}")

    if not isinstance(payload, Mapping):
        raise MalformedFrameError(
            f"Payload must be a mapping, got {type(payload).__name__}"
        )

    kind = payload.get("type")
    if kind is None:
        return ControlMessage(frame=decode_frame(payload))

    if kind == MESSAGE_CONTROL:
        frame_payload = payload.get("frame")
        if not isinstance(frame_payload, Mapping):
            raise MalformedFrameError("Control message is missing its frame")
        return ControlMessage(
            frame=decode_frame(frame_payload),
            seq=_optional_int(payload.get("seq"), "seq"),
            sent_at=_optional_number(payload.get("sentAt"), "sentAt"),
        )

    if kind == MESSAGE_ACK:
        seq = _optional_int(payload.get("seq"), "seq")
        if seq is None:
            raise MalformedFrameError("Ack message is missing seq")
        return AckMessage(
            seq=seq, sent_at=_optional_number(payload.get("sentAt"), "sentAt")
        )

    if kind == MESSAGE_TELEMETRY:
        body = payload.get("telemetry")
        if not isinstance(body, Mapping):
            raise MalformedFrameError("Telemetry message is missing its body")
        try:
            return TelemetryMessage(MachineTelemetry.from_dict(body))
        except (KeyError, TypeError, ValueError) as exc:
            raise MalformedFrameError(f"Invalid telemetry: {exc}") from exc

    if kind == MESSAGE_GREETING:
        return GreetingMessage(str(payload.get("message") or GREETING))

    raise MalformedFrameError(f"Unknown message type: {kind!r}")


def decode_frame(payload: Mapping[str, Any]) -> ControlFrame:
    """Validate the six control fields and build a clamped frame."""

    values: dict[str, float] = {}
    for wire, attr in CONTROL_FIELDS:
        if wire not in payload:
            raise MalformedFrameError(f"Control frame is missing {wire!r}")
        value = _number(payload[wire], wire)
        if math.isnan(value):
            raise MalformedFrameError(f"Control field {wire!r} is NaN")
        values[attr] = value
    return ControlFrame(**values)


def _number(value: Any, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedFrameError(
            f"Field {name!r} must be numeric, got {type(value).__name__}"
        )
    return float(value)


def _optional_number(value: Any, name: str) -> Optional[float]:
    if value is None:
        return None
    return _number(value, name)


def _optional_int(value: Any, name: str) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedFrameError(f"Field {name!r} must be an integer")
    return value
