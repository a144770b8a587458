"""Machine camera exposed as the media source.

The machine offers video only once its camera produces a decodable frame.
``CameraMediaSource.probe`` pulls one snapshot from the camera's HTTP
endpoint and reads the frame size with Pillow. That first-frame size travels
in the call's ``StreamInfo`` so the operator can reject a blank stream.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import aiohttp
from PIL import Image, UnidentifiedImageError

from ..core import MediaSourceError, StreamInfo, TrackInfo

LOGGER = logging.getLogger(__name__)


class CameraError(MediaSourceError):
    """A snapshot could not be used; ``reason`` is a short machine-readable code."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class _Transient(Exception):
    pass


@dataclass(slots=True, frozen=True)
class Snapshot:
    """One decoded camera frame."""

    width: int
    height: int
    content_type: str
    size_bytes: int
    captured_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def track(self) -> TrackInfo:
        return TrackInfo(kind="video", width=self.width, height=self.height)


class CameraClient:
    """Fetches snapshots from an HTTP camera endpoint.

    5xx answers, timeouts and connection errors are retried with exponential
    backoff; every other failure raises ``CameraError`` immediately.
    """

    def __init__(
        self,
        snapshot_url: str,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        max_retries: int = 2,
        base_retry_delay: float = 0.5,
        timeout: float = 10.0,
    ) -> None:
        self.snapshot_url = snapshot_url
        self._session = session
        self._owns_session = session is None
        self._max_retries = max(0, max_retries)
        self._base_retry_delay = base_retry_delay
        self._timeout = timeout

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def capture(self) -> Snapshot:
        attempts = self._max_retries + 1
        last_problem = "no attempt made"
        for attempt in range(attempts):
            if attempt:
                await asyncio.sleep(self._base_retry_delay * 2 ** (attempt - 1))
            try:
                return await self._fetch()
            except _Transient as exc:
                last_problem = str(exc)
                LOGGER.debug(
                    "Camera snapshot attempt %d/%d failed: %s",
                    attempt + 1,
                    attempts,
                    last_problem,
                )
        raise CameraError(
            "unreachable",
            f"Camera at {self.snapshot_url} failed {attempts} time(s): {last_problem}",
        )

    async def _fetch(self) -> Snapshot:
        session = self._ensure_session()
        try:
            async with session.get(self.snapshot_url) as response:
                if response.status >= 500:
                    raise _Transient(f"HTTP {response.status}")
                if response.status == 404:
                    raise CameraError("not_found", f"No camera at {self.snapshot_url}")
                if response.status != 200:
                    raise CameraError("http_error", f"Camera answered HTTP {response.status}")

                content_type = response.headers.get("Content-Type", "image/jpeg")
                if not content_type.startswith("image/"):
                    raise CameraError(
                        "not_an_image", f"Camera sent {content_type} instead of an image"
                    )
                body = await response.read()
        except asyncio.TimeoutError as exc:
            raise _Transient("timed out") from exc
        except aiohttp.ClientError as exc:
            raise _Transient(str(exc) or type(exc).__name__) from exc

        return _decode(body, content_type)

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
            self._owns_session = True
        return self._session


def _decode(body: bytes, content_type: str) -> Snapshot:
    if not body:
        raise CameraError("empty", "Camera returned an empty snapshot")
    try:
        with Image.open(io.BytesIO(body)) as image:
            width, height = image.size
    except (UnidentifiedImageError, OSError) as exc:
        raise CameraError("undecodable", f"Snapshot could not be decoded: {exc}") from exc

    LOGGER.debug("Camera frame %dx%d (%s, %d bytes)", width, height, content_type, len(body))
    return Snapshot(width, height, content_type, len(body))


class CameraMediaSource:
    """``MediaSource`` reporting the machine camera as one video track."""

    def __init__(self, client: CameraClient) -> None:
        self._client = client

    @classmethod
    def from_url(cls, snapshot_url: str, **kwargs) -> "CameraMediaSource":
        # The session already retries once per tick.
        kwargs.setdefault("max_retries", 0)
        return cls(CameraClient(snapshot_url, **kwargs))

    async def probe(self) -> Optional[StreamInfo]:
        """Describe the camera stream; raises ``MediaSourceError`` when not ready."""

        snapshot = await self._client.capture()
        if snapshot.width <= 0 or snapshot.height <= 0:
            raise CameraError("empty_frame", "Camera produced a zero-sized frame")
        return StreamInfo(tracks=(snapshot.track,))

    async def close(self) -> None:
        await self._client.close()
