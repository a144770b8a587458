"""Controller input handling."""

from .normalizer import InputNormalizer, normalize_axis, normalize_track
from .sources import ManualControllerSource

__all__ = [
    "InputNormalizer",
    "ManualControllerSource",
    "normalize_axis",
    "normalize_track",
]
