"""Protocol definitions for the data plane collaborators."""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from .models import ChannelState, JointCommand, StreamInfo

TransportEventHandler = Callable[[Any], None]
BusStateCallback = Callable[[ChannelState, Optional[str]], None]


class SignalingTransport(Protocol):
    """Rendezvous/relay service carrying data and media channels.

    Requests are fire-and-forget; outcomes arrive as transport events
    (see ``excavator_teleop.session.events``) delivered on the event loop.
    """

    def set_event_handler(self, handler: Optional[TransportEventHandler]) -> None:
        ...

    async def register(self, identity: str) -> None:
        """Claim ``identity``; emits ``Registered``, raises ``SignalingError``."""
        ...

    async def open_data_channel(self, remote: str, *, label: str) -> str:
        """Request a data channel; emits ``DataChannelOpened`` on accept."""
        ...

    async def send(self, channel_id: str, payload: Mapping[str, Any]) -> None:
        ...

    async def close_data_channel(self, channel_id: str) -> None:
        ...

    async def call(self, remote: str, stream: StreamInfo) -> str:
        """Offer a media stream; emits ``MediaAnswered`` when accepted."""
        ...

    async def answer(self, call_id: str) -> None:
        ...

    async def close_media(self, call_id: str) -> None:
        ...

    async def release(self) -> None:
        """Give the identity back to the signaling service."""
        ...


class BusClient(Protocol):
    """Control bus accepting JointCommand messages."""

    @property
    def is_connected(self) -> bool:
        ...

    async def publish(self, command: JointCommand) -> None:
        ...


class ControllerSource(Protocol):
    """Raw axis provider for one or more game controllers."""

    def read_axes(self, index: int) -> Optional[Sequence[float]]:
        """Axis vector of controller ``index`` or None when absent."""
        ...


class MediaSource(Protocol):
    """Local capture source offered on the media channel."""

    async def probe(self) -> Optional[StreamInfo]:
        """Describe the live stream, or None while no capture is available."""
        ...

    async def close(self) -> None:
        ...
