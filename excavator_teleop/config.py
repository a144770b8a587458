"""Configuration loader for excavator-teleop."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

from . import constants


class ConfigurationError(ValueError):
    """Raised when a configuration value cannot be used."""


@dataclass(slots=True)
class SignalingConfig:
    broker_host: str = "localhost"
    broker_port: int = 1883
    username: Optional[str] = None
    password: Optional[str] = None
    topic_prefix: str = constants.DEFAULT_TOPIC_PREFIX
    keepalive_seconds: int = 30
    connect_timeout_seconds: float = 10.0


@dataclass(slots=True)
class ControlBusConfig:
    url: str = constants.DEFAULT_ROSBRIDGE_URL
    topic: str = constants.DEFAULT_JOINT_TOPIC
    message_type: str = constants.DEFAULT_JOINT_MESSAGE_TYPE


@dataclass(slots=True)
class PublisherConfig:
    interval_ms: int = constants.DEFAULT_PUBLISH_INTERVAL_MS

    @property
    def interval_seconds(self) -> float:
        return self.interval_ms / 1000.0


@dataclass(slots=True)
class TrackCalibration:
    forward: float = constants.TRACK_FORWARD
    still: float = constants.TRACK_STILL
    backward: float = constants.TRACK_BACKWARD


@dataclass(slots=True)
class ControllerMapping:
    """Which controller/axis carries each actuator intent."""

    left_controller: int = 0
    swing_axis: int = 0
    stick_axis: int = 1
    left_track_axis: int = 9
    right_controller: int = 1
    bucket_axis: int = 0
    boom_axis: int = 1
    right_track_axis: int = 9


@dataclass(slots=True)
class InputConfig:
    deadzone: float = constants.DEFAULT_DEADZONE
    sample_interval_ms: int = constants.DEFAULT_SAMPLE_INTERVAL_MS
    calibration: TrackCalibration = field(default_factory=TrackCalibration)
    mapping: ControllerMapping = field(default_factory=ControllerMapping)

    @property
    def sample_interval_seconds(self) -> float:
        return self.sample_interval_ms / 1000.0


@dataclass(slots=True)
class MediaConfig:
    enabled: bool = True
    snapshot_url: Optional[str] = None
    retry_interval_seconds: float = constants.DEFAULT_MEDIA_RETRY_SECONDS
    max_retries: int = constants.DEFAULT_MEDIA_MAX_RETRIES


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class ResilienceConfig:
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    health_enabled: bool = False
    health_host: str = "127.0.0.1"
    health_port: int = 0


@dataclass(slots=True)
class TeleopConfig:
    signaling: SignalingConfig
    control_bus: ControlBusConfig
    publisher: PublisherConfig
    input: InputConfig
    media: MediaConfig
    logging: LoggingConfig
    resilience: ResilienceConfig
    raw: ConfigParser
    path: Path


def load_config(path: Optional[Path] = None) -> TeleopConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "signaling": {
                "broker_host": constants.DEFAULT_BROKER_HOST,
                "topic_prefix": constants.DEFAULT_TOPIC_PREFIX,
                "keepalive_seconds": "30",
                "connect_timeout_seconds": "10.0",
            },
            "control_bus": {
                "url": constants.DEFAULT_ROSBRIDGE_URL,
                "topic": constants.DEFAULT_JOINT_TOPIC,
                "message_type": constants.DEFAULT_JOINT_MESSAGE_TYPE,
            },
            "publisher": {
                "interval_ms": str(constants.DEFAULT_PUBLISH_INTERVAL_MS),
            },
            "input": {
                "deadzone": str(constants.DEFAULT_DEADZONE),
                "sample_interval_ms": str(constants.DEFAULT_SAMPLE_INTERVAL_MS),
                "track_forward": str(constants.TRACK_FORWARD),
                "track_still": str(constants.TRACK_STILL),
                "track_backward": str(constants.TRACK_BACKWARD),
            },
            "media": {
                "enabled": "true",
                "retry_interval_seconds": str(constants.DEFAULT_MEDIA_RETRY_SECONDS),
                "max_retries": str(constants.DEFAULT_MEDIA_MAX_RETRIES),
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
            "resilience": {
                "reconnect_initial_seconds": "1.0",
                "reconnect_max_seconds": "30.0",
                "health_enabled": "false",
                "health_host": "127.0.0.1",
                "health_port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    broker_host_value = parser.get("signaling", "broker_host")
    broker_port_value = parser.getint("signaling", "broker_port", fallback=1883)

    if ":" in broker_host_value:
        host_part, port_part = broker_host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            broker_host_value = host_part
            broker_port_value = parsed_port
            parser.set("signaling", "broker_host", host_part)
            parser.set("signaling", "broker_port", str(parsed_port))

    signaling = SignalingConfig(
        broker_host=broker_host_value,
        broker_port=broker_port_value,
        username=parser.get("signaling", "username", fallback=None),
        password=parser.get("signaling", "password", fallback=None),
        topic_prefix=parser.get("signaling", "topic_prefix").strip("/"),
        keepalive_seconds=max(
            5, parser.getint("signaling", "keepalive_seconds", fallback=30)
        ),
        connect_timeout_seconds=parser.getfloat(
            "signaling", "connect_timeout_seconds", fallback=10.0
        ),
    )

    control_bus = ControlBusConfig(
        url=parser.get("control_bus", "url"),
        topic=parser.get("control_bus", "topic"),
        message_type=parser.get("control_bus", "message_type"),
    )

    interval_ms = parser.getint(
        "publisher", "interval_ms", fallback=constants.DEFAULT_PUBLISH_INTERVAL_MS
    )
    if interval_ms <= 0:
        raise ConfigurationError(
            f"publisher.interval_ms must be positive, got {interval_ms}"
        )
    publisher = PublisherConfig(interval_ms=interval_ms)

    deadzone = parser.getfloat(
        "input", "deadzone", fallback=constants.DEFAULT_DEADZONE
    )
    if not 0.0 <= deadzone < 1.0:
        raise ConfigurationError(f"input.deadzone must be in [0, 1), got {deadzone}")

    calibration = TrackCalibration(
        forward=parser.getfloat("input", "track_forward"),
        still=parser.getfloat("input", "track_still"),
        backward=parser.getfloat("input", "track_backward"),
    )
    if not (
        calibration.forward < calibration.backward < calibration.still
        or calibration.still < calibration.backward < calibration.forward
    ):
        raise ConfigurationError(
            "Track calibration must place backward between forward and still "
            f"(got {calibration.forward}, {calibration.backward}, {calibration.still})"
        )

    mapping_defaults = ControllerMapping()
    mapping = ControllerMapping(
        **{
            name: parser.getint(
                "input", name, fallback=getattr(mapping_defaults, name)
            )
            for name in (item.name for item in fields(ControllerMapping))
        }
    )

    input_config = InputConfig(
        deadzone=deadzone,
        sample_interval_ms=max(
            1,
            parser.getint(
                "input",
                "sample_interval_ms",
                fallback=constants.DEFAULT_SAMPLE_INTERVAL_MS,
            ),
        ),
        calibration=calibration,
        mapping=mapping,
    )

    media = MediaConfig(
        enabled=parser.getboolean("media", "enabled", fallback=True),
        snapshot_url=parser.get("media", "snapshot_url", fallback=None) or None,
        retry_interval_seconds=max(
            0.1,
            parser.getfloat(
                "media",
                "retry_interval_seconds",
                fallback=constants.DEFAULT_MEDIA_RETRY_SECONDS,
            ),
        ),
        max_retries=max(
            0,
            parser.getint(
                "media", "max_retries", fallback=constants.DEFAULT_MEDIA_MAX_RETRIES
            ),
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    resilience = ResilienceConfig(
        reconnect_initial_seconds=parser.getfloat(
            "resilience", "reconnect_initial_seconds", fallback=1.0
        ),
        reconnect_max_seconds=parser.getfloat(
            "resilience", "reconnect_max_seconds", fallback=30.0
        ),
        health_enabled=parser.getboolean(
            "resilience", "health_enabled", fallback=False
        ),
        health_host=parser.get("resilience", "health_host", fallback="127.0.0.1"),
        health_port=parser.getint("resilience", "health_port", fallback=0),
    )

    return TeleopConfig(
        signaling=signaling,
        control_bus=control_bus,
        publisher=publisher,
        input=input_config,
        media=media,
        logging=logging_config,
        resilience=resilience,
        raw=parser,
        path=config_path,
    )


def save_config(config: TeleopConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
