"""Peer session: lifecycle state machine, data channel codec and executor."""

from . import events
from .peer import PeerSession
from .protocol import GREETING, decode_frame, decode_message
from .state import SessionSnapshot, SessionState, Transition, transition

__all__ = [
    "GREETING",
    "PeerSession",
    "SessionSnapshot",
    "SessionState",
    "Transition",
    "decode_frame",
    "decode_message",
    "events",
    "transition",
]
