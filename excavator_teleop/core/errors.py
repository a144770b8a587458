"""Exception hierarchy for the remote operation data plane.

Every failure is owned by one component and translated into a
``ChannelState`` there; these exceptions never terminate the agent.
"""

from __future__ import annotations


class TeleopError(RuntimeError):
    """Base class for data plane failures."""


class SignalingError(TeleopError):
    """Identity registration or remote lookup failed."""


class ChannelError(TeleopError):
    """A data or media channel reported an error or closed unexpectedly."""


class MalformedFrameError(TeleopError, ValueError):
    """Inbound data channel payload does not have the control frame shape."""


class BusUnavailableError(TeleopError):
    """The control bus connection is not established."""


class MediaSourceError(TeleopError):
    """No capture source became available for the media channel."""
