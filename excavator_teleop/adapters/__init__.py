"""Adapter modules for external integrations."""

from .camera import CameraClient, CameraError, CameraMediaSource, Snapshot
from .mqtt import MQTTClient, MQTTConnectionError
from .relay import MqttRelayTransport
from .rosbridge import RosbridgeClient

__all__ = [
    "CameraClient",
    "CameraError",
    "CameraMediaSource",
    "MQTTClient",
    "MQTTConnectionError",
    "MqttRelayTransport",
    "RosbridgeClient",
    "Snapshot",
]
