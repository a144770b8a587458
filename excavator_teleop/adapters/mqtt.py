"""paho-mqtt client bridged onto asyncio for the signaling relay."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

import paho.mqtt.client as mqtt

from ..config import SignalingConfig

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
DisconnectHandler = Callable[[int], None]


class MQTTConnectionError(RuntimeError):
    """Raised when the broker is unreachable or refuses a request."""


def _code(reason_code: Any) -> int:
    """paho 2.x hands out ReasonCode objects; compare them as integers."""

    return int(getattr(reason_code, "value", reason_code))


class MQTTClient:
    """One broker connection owned by a relay identity.

    paho runs its own network thread. Connection acknowledgements, messages
    and disconnects are handed to the event loop with
    ``call_soon_threadsafe``; handlers always run on the loop.
    """

    def __init__(
        self,
        config: SignalingConfig,
        *,
        client_id: str,
        keepalive: Optional[int] = None,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = (
            keepalive if keepalive is not None else config.keepalive_seconds
        )

        self._paho: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Future[int]] = None
        self._gone: Optional[asyncio.Event] = None
        self._online = False
        self._message_handler: Optional[MessageHandler] = None
        self._disconnect_handlers: List[DisconnectHandler] = []

    async def connect(self, timeout: Optional[float] = None) -> None:
        """Open the connection; returns once the broker accepted it."""

        loop = asyncio.get_running_loop()
        self._loop = loop
        self._connack = loop.create_future()
        self._gone = asyncio.Event()
        self._paho = self._build_client()

        LOGGER.info(
            "Connecting %s to relay broker %s:%s",
            self.client_id,
            self.config.broker_host,
            self.config.broker_port,
        )
        self._paho.connect_async(
            self.config.broker_host, self.config.broker_port, self.keepalive
        )
        self._paho.loop_start()

        wait = timeout if timeout is not None else self.config.connect_timeout_seconds
        try:
            rc = await asyncio.wait_for(asyncio.shield(self._connack), timeout=wait)
        except asyncio.TimeoutError as exc:
            self._abandon()
            raise MQTTConnectionError(
                f"No answer from relay broker within {wait:.1f}s"
            ) from exc

        if rc != 0:
            self._abandon()
            raise MQTTConnectionError(f"Relay broker refused {self.client_id} (rc={rc})")

    async def disconnect(self, timeout: float = 5.0) -> None:
        paho = self._paho
        if paho is None:
            return

        paho.disconnect()
        assert self._gone is not None
        try:
            await asyncio.wait_for(self._gone.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            LOGGER.warning("Relay broker did not confirm disconnect of %s", self.client_id)
        finally:
            self._abandon()

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        info = self._require("publish").publish(topic, payload, qos=qos, retain=retain)
        _check(info.rc, f"publish to {topic}")

    def subscribe(self, topic: str, qos: int = 1) -> None:
        rc, _ = self._require("subscribe").subscribe(topic, qos=qos)
        _check(rc, f"subscribe to {topic}")

    def unsubscribe(self, topic: str) -> None:
        rc, _ = self._require("unsubscribe").unsubscribe(topic)
        _check(rc, f"unsubscribe from {topic}")

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    def register_disconnect_handler(self, handler: DisconnectHandler) -> None:
        self._disconnect_handlers.append(handler)

    def is_connected(self) -> bool:
        return self._online

    # ------------------------------------------------------------------
    # paho callbacks (network thread)
    # ------------------------------------------------------------------
    def _on_connect(
        self, client: mqtt.Client, userdata, flags, reason_code, properties=None
    ) -> None:
        rc = _code(reason_code)
        self._online = rc == 0
        if rc == 0:
            LOGGER.info("%s connected to relay broker", self.client_id)
        else:
            LOGGER.error("%s rejected by relay broker (rc=%s)", self.client_id, rc)
        self._to_loop(self._resolve_connack, rc)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata,
        disconnect_flags,
        reason_code,
        properties=None,
    ) -> None:
        rc = _code(reason_code)
        self._online = False
        LOGGER.info("%s left relay broker (rc=%s)", self.client_id, rc)
        if self._gone is not None:
            self._to_loop(self._gone.set)
        for handler in list(self._disconnect_handlers):
            self._to_loop(handler, rc)

    def _on_message(
        self, client: mqtt.Client, userdata, message: mqtt.MQTTMessage
    ) -> None:
        if self._message_handler is not None:
            self._to_loop(self._deliver, message.topic, message.payload)

    # ------------------------------------------------------------------
    # Loop side
    # ------------------------------------------------------------------
    def _build_client(self) -> mqtt.Client:
        paho = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id)
        paho.enable_logger(logging.getLogger("paho.mqtt.client"))
        if self.config.username:
            paho.username_pw_set(self.config.username, self.config.password)
        paho.on_connect = self._on_connect
        paho.on_disconnect = self._on_disconnect
        paho.on_message = self._on_message
        return paho

    def _abandon(self) -> None:
        if self._paho is not None:
            self._paho.loop_stop()
        self._paho = None
        self._online = False

    def _require(self, action: str) -> mqtt.Client:
        if self._paho is None:
            raise MQTTConnectionError(f"Cannot {action}: {self.client_id} is offline")
        return self._paho

    def _resolve_connack(self, rc: int) -> None:
        if self._connack is not None and not self._connack.done():
            self._connack.set_result(rc)

    def _to_loop(self, callback: Callable[..., Any], *args: Any) -> None:
        if self._loop is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(callback, *args)

    def _deliver(self, topic: str, payload: bytes) -> None:
        handler = self._message_handler
        if handler is None:
            return
        try:
            result = handler(topic, payload)
            if asyncio.iscoroutine(result):
                asyncio.ensure_future(result)
        except Exception:
            LOGGER.exception("Relay message handler failed for %s", topic)


def _check(rc: int, action: str) -> None:
    if rc != mqtt.MQTT_ERR_SUCCESS:
        raise MQTTConnectionError(f"Relay broker could not {action} (rc={rc})")
