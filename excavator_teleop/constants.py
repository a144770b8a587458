"""Constants used across the excavator-teleop package."""

from __future__ import annotations

import math
from pathlib import Path

APP_NAME = "excavator-teleop"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / DEFAULT_CONFIG_FILENAME

DEFAULT_BROKER_HOST = "localhost:1883"
DEFAULT_TOPIC_PREFIX = "teleop"

DEFAULT_ROSBRIDGE_URL = "ws://localhost:9090"
DEFAULT_JOINT_TOPIC = "/pc2000_joint_command"
DEFAULT_JOINT_MESSAGE_TYPE = "sensor_msgs/msg/JointState"

DEFAULT_PUBLISH_INTERVAL_MS = 100
DEFAULT_SAMPLE_INTERVAL_MS = 16

# Input calibration. The track axes report one combined value with three
# physical detents instead of a bipolar range.
DEFAULT_DEADZONE = 0.1
TRACK_FORWARD = -1.0
TRACK_STILL = 1.286
TRACK_BACKWARD = 0.143

# Joint order and geometry of the PC2000 joint controller.
JOINT_NAMES = ("bucket_linear", "arm_linear", "boom_linear", "body_rotate")
LINEAR_JOINT_SCALE = 3.0
ROTATE_JOINT_SCALE = math.pi

DEFAULT_MEDIA_RETRY_SECONDS = 1.0
DEFAULT_MEDIA_MAX_RETRIES = 30

DATA_CHANNEL_LABEL = "excavator-control-connection"
