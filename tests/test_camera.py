import io

import pytest
import pytest_asyncio
from aiohttp import web
from PIL import Image

from excavator_teleop.adapters import CameraClient, CameraError, CameraMediaSource
from excavator_teleop.core import MediaSourceError, TrackInfo


def png_bytes(width: int, height: int) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(200, 120, 0)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest_asyncio.fixture
async def camera_server(unused_tcp_port):
    hits = {"flaky": 0}

    async def snapshot(request):
        return web.Response(body=png_bytes(64, 48), content_type="image/png")

    async def html(request):
        return web.Response(text="<html></html>", content_type="text/html")

    async def garbage(request):
        return web.Response(body=b"\xff\xd8 not really a jpeg", content_type="image/jpeg")

    async def flaky(request):
        hits["flaky"] += 1
        if hits["flaky"] == 1:
            return web.Response(status=503)
        return web.Response(body=png_bytes(32, 16), content_type="image/png")

    app = web.Application()
    app.router.add_get("/snapshot", snapshot)
    app.router.add_get("/html", html)
    app.router.add_get("/garbage", garbage)
    app.router.add_get("/flaky", flaky)
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", unused_tcp_port)
    await site.start()
    try:
        yield f"http://127.0.0.1:{unused_tcp_port}", hits
    finally:
        await runner.cleanup()


@pytest.mark.asyncio
async def test_probe_reports_first_frame_dimensions(camera_server):
    base, _ = camera_server
    source = CameraMediaSource.from_url(f"{base}/snapshot")

    try:
        stream = await source.probe()
    finally:
        await source.close()

    assert stream is not None
    assert stream.tracks == (TrackInfo("video", 64, 48),)
    assert stream.is_playable


@pytest.mark.parametrize(
    "path, reason",
    [("/html", "not_an_image"), ("/garbage", "undecodable"), ("/missing", "not_found")],
)
@pytest.mark.asyncio
async def test_probe_rejects_unusable_responses(camera_server, path, reason):
    base, _ = camera_server
    source = CameraMediaSource.from_url(f"{base}{path}")

    try:
        with pytest.raises(MediaSourceError) as excinfo:
            await source.probe()
        assert isinstance(excinfo.value, CameraError)
        assert excinfo.value.reason == reason
    finally:
        await source.close()


@pytest.mark.asyncio
async def test_client_retries_server_errors(camera_server):
    base, hits = camera_server
    client = CameraClient(f"{base}/flaky", max_retries=2, base_retry_delay=0.01)

    try:
        snapshot = await client.capture()
    finally:
        await client.close()

    assert (snapshot.width, snapshot.height) == (32, 16)
    assert snapshot.content_type == "image/png"
    assert hits["flaky"] == 2


@pytest.mark.asyncio
async def test_unreachable_camera_is_not_ready():
    source = CameraMediaSource.from_url("http://127.0.0.1:9/snapshot", timeout=1.0)

    try:
        with pytest.raises(MediaSourceError):
            await source.probe()
    finally:
        await source.close()


@pytest.mark.asyncio
async def test_client_gives_up_after_retries(unused_tcp_port):
    async def broken(request):
        return web.Response(status=500)

    app = web.Application()
    app.router.add_get("/snapshot", broken)
    runner = web.AppRunner(app)
    await runner.setup()
    await web.TCPSite(runner, "127.0.0.1", unused_tcp_port).start()
    client = CameraClient(
        f"http://127.0.0.1:{unused_tcp_port}/snapshot",
        max_retries=1,
        base_retry_delay=0.01,
    )

    try:
        with pytest.raises(CameraError) as excinfo:
            await client.capture()
    finally:
        await client.close()
        await runner.cleanup()

    assert excinfo.value.reason == "unreachable"
    assert "2 time(s)" in str(excinfo.value)
