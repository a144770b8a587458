"""rosbridge v2 client publishing joint commands over a websocket."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
from typing import Any, Optional

import aiohttp

from ..config import ControlBusConfig
from ..core import BusUnavailableError, ChannelState, JointCommand
from ..core.protocols import BusStateCallback

LOGGER = logging.getLogger(__name__)


class RosbridgeClient:
    """Keeps one rosbridge websocket open and advertises the joint topic.

    A supervisor task reconnects with full-jitter exponential backoff. Every
    connection change is reported through ``on_state`` so the status board
    can track the bus.
    """

    def __init__(
        self,
        config: ControlBusConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        reconnect_initial: float = 1.0,
        reconnect_max: float = 30.0,
        on_state: Optional[BusStateCallback] = None,
    ) -> None:
        self.config = config
        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max

        self._http = session
        self._owns_http = session is None
        self._on_state = on_state
        self._supervisor: Optional[asyncio.Task[None]] = None
        self._stopping = asyncio.Event()
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._advertised = False
        self._advertise_seq = 0
        self._state = ChannelState.DISCONNECTED

    @property
    def is_connected(self) -> bool:
        return self._usable_socket() is not None

    @property
    def state(self) -> ChannelState:
        return self._state

    def set_state_callback(self, callback: Optional[BusStateCallback]) -> None:
        self._on_state = callback

    async def start(self) -> None:
        if self._supervisor is not None:
            return
        self._stopping.clear()
        self._supervisor = asyncio.create_task(self._supervise())
        await asyncio.sleep(0)

    async def stop(self) -> None:
        """Unadvertise, close the socket and stop reconnecting."""

        self._stopping.set()

        ws = self._usable_socket()
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.send_json({"op": "unadvertise", "topic": self.config.topic})
            with contextlib.suppress(Exception):
                await ws.close()

        supervisor, self._supervisor = self._supervisor, None
        if supervisor is not None:
            supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await supervisor

        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None

        self._set_state(ChannelState.DISCONNECTED, "stopped")

    async def publish(self, command: JointCommand) -> None:
        """Publish one JointState message on the configured topic.

        Raises:
            BusUnavailableError: the websocket is down or the send failed.
        """

        ws = self._usable_socket()
        if ws is None:
            raise BusUnavailableError("rosbridge connection is not available")

        try:
            await ws.send_json(
                {
                    "op": "publish",
                    "topic": self.config.topic,
                    "msg": command.as_joint_state(),
                }
            )
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            raise BusUnavailableError(f"rosbridge publish failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Connection supervision
    # ------------------------------------------------------------------
    async def _supervise(self) -> None:
        backoff = self.reconnect_initial

        while not self._stopping.is_set():
            self._set_state(ChannelState.CONNECTING)
            try:
                async with self._client_session().ws_connect(self.config.url) as ws:
                    LOGGER.info("Connected to rosbridge at %s", self.config.url)
                    backoff = self.reconnect_initial
                    await self._serve(ws)
                if self._stopping.is_set():
                    break
                LOGGER.warning("rosbridge closed the connection")
                self._set_state(ChannelState.DISCONNECTED, "connection closed")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self._stopping.is_set():
                    break
                LOGGER.warning("rosbridge websocket error: %s", exc)
                self._set_state(ChannelState.ERROR, str(exc))

            delay = random.uniform(0, backoff)
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            backoff = min(backoff * 2, self.reconnect_max)

    async def _serve(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._ws = ws
        try:
            await self._advertise(ws)
            self._set_state(ChannelState.CONNECTED)
            async for message in ws:
                if self._stopping.is_set():
                    return
                if message.type == aiohttp.WSMsgType.TEXT:
                    self._log_status(message.data)
                elif message.type == aiohttp.WSMsgType.ERROR:
                    raise ws.exception() or RuntimeError("rosbridge websocket failed")
        finally:
            self._ws = None
            self._advertised = False

    async def _advertise(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        self._advertise_seq += 1
        await ws.send_json(
            {
                "op": "advertise",
                "id": f"advertise:{self.config.topic}:{self._advertise_seq}",
                "topic": self.config.topic,
                "type": self.config.message_type,
            }
        )
        self._advertised = True
        LOGGER.debug("Advertised %s as %s", self.config.topic, self.config.message_type)

    def _client_session(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
            self._owns_http = True
        return self._http

    def _usable_socket(self) -> Optional[aiohttp.ClientWebSocketResponse]:
        ws = self._ws
        if ws is None or ws.closed or not self._advertised:
            return None
        return ws

    def _log_status(self, raw: str) -> None:
        try:
            payload: Any = json.loads(raw)
        except json.JSONDecodeError:
            return
        if isinstance(payload, dict) and payload.get("op") == "status":
            level = payload.get("level", "info")
            log = LOGGER.warning if level in ("error", "warning") else LOGGER.debug
            log("rosbridge status (%s): %s", level, payload.get("msg"))

    def _set_state(self, state: ChannelState, detail: Optional[str] = None) -> None:
        if state is self._state:
            return
        self._state = state
        if self._on_state is None:
            return
        try:
            self._on_state(state, detail)
        except Exception:
            LOGGER.exception("Bus state callback failed")
