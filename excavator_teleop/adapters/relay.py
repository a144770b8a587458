"""Signaling and relay transport over MQTT.

Every registered identity owns an inbox topic ``{prefix}/peers/{identity}``.
Peers address each other by publishing JSON envelopes to the other side's
inbox. Envelopes carry ``type`` and ``from`` plus type specific fields:

``connect``  ``{channelId, label, reliable}``  open a data channel
``accept``   ``{channelId}``                   data channel accepted
``data``     ``{channelId, payload}``          one data channel message
``close``    ``{channelId}``                   data channel closed
``call``     ``{callId, stream}``              offer a media stream
``answer``   ``{callId}``                      media call accepted
``hangup``   ``{callId}``                      media call ended

The responder accepts every ``connect`` it receives; admission is the peer
session's decision.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Callable, Dict, Mapping, Optional

from ..config import SignalingConfig
from ..core import ChannelError, SignalingError, StreamInfo
from ..core.protocols import TransportEventHandler
from ..session import events as ev
from .mqtt import MQTTClient, MQTTConnectionError

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[str], MQTTClient]

CONTROL_QOS = 1
DATA_QOS = 0


class MqttRelayTransport:
    """``SignalingTransport`` implementation backed by an MQTT broker."""

    def __init__(
        self,
        config: SignalingConfig,
        *,
        client_factory: Optional[ClientFactory] = None,
    ) -> None:
        self._config = config
        self._client_factory = client_factory or (
            lambda client_id: MQTTClient(config, client_id=client_id)
        )
        self._client: Optional[MQTTClient] = None
        self._identity: Optional[str] = None
        self._handler: Optional[TransportEventHandler] = None
        self._releasing = False

        self._pending_channels: Dict[str, str] = {}
        self._channels: Dict[str, str] = {}
        self._calls: Dict[str, str] = {}

    @property
    def identity(self) -> Optional[str]:
        return self._identity

    def inbox(self, identity: str) -> str:
        return f"{self._config.topic_prefix}/peers/{identity}"

    def set_event_handler(self, handler: Optional[TransportEventHandler]) -> None:
        self._handler = handler

    # ------------------------------------------------------------------
    # SignalingTransport
    # ------------------------------------------------------------------

    async def register(self, identity: str) -> None:
        if self._client is not None:
            raise SignalingError(f"Already registered as {self._identity}")

        client = self._client_factory(f"{identity}-{uuid.uuid4().hex[:8]}")
        client.set_message_handler(self._on_message)
        client.register_disconnect_handler(self._on_disconnect)
        self._releasing = False

        try:
            await client.connect()
            client.subscribe(self.inbox(identity))
        except MQTTConnectionError as exc:
            await client.disconnect()
            raise SignalingError(f"Could not register {identity}: {exc}") from exc

        self._client = client
        self._identity = identity
        LOGGER.info("Registered %s on %s", identity, self.inbox(identity))
        self._emit(ev.Registered(identity))

    async def open_data_channel(self, remote: str, *, label: str) -> str:
        channel_id = uuid.uuid4().hex
        self._pending_channels[channel_id] = remote
        self._publish(
            remote,
            {"type": "connect", "channelId": channel_id, "label": label, "reliable": False},
        )
        LOGGER.debug("Requested data channel %s (%s) to %s", channel_id, label, remote)
        return channel_id

    async def send(self, channel_id: str, payload: Mapping[str, Any]) -> None:
        remote = self._channels.get(channel_id)
        if remote is None:
            raise ChannelError(f"Data channel {channel_id} is not open")
        try:
            self._publish(
                remote,
                {"type": "data", "channelId": channel_id, "payload": dict(payload)},
                qos=DATA_QOS,
            )
        except (SignalingError, MQTTConnectionError) as exc:
            self._emit(ev.DataChannelError(channel_id, f"send failed: {exc}"))
            raise ChannelError(f"Send on {channel_id} failed: {exc}") from exc

    async def close_data_channel(self, channel_id: str) -> None:
        remote = self._channels.pop(channel_id, None) or self._pending_channels.pop(
            channel_id, None
        )
        if remote is None:
            return
        self._publish(remote, {"type": "close", "channelId": channel_id})

    async def call(self, remote: str, stream: StreamInfo) -> str:
        call_id = uuid.uuid4().hex
        self._calls[call_id] = remote
        self._publish(
            remote, {"type": "call", "callId": call_id, "stream": stream.as_dict()}
        )
        return call_id

    async def answer(self, call_id: str) -> None:
        remote = self._calls.get(call_id)
        if remote is None:
            raise ChannelError(f"Unknown media call {call_id}")
        try:
            self._publish(remote, {"type": "answer", "callId": call_id})
        except (SignalingError, MQTTConnectionError) as exc:
            self._emit(ev.MediaError(call_id, f"answer failed: {exc}"))
            raise ChannelError(f"Answering {call_id} failed: {exc}") from exc

    async def close_media(self, call_id: str) -> None:
        remote = self._calls.pop(call_id, None)
        if remote is None:
            return
        self._publish(remote, {"type": "hangup", "callId": call_id})

    async def release(self) -> None:
        client = self._client
        identity = self._identity
        self._client = None
        self._identity = None
        self._pending_channels.clear()
        self._channels.clear()
        self._calls.clear()
        if client is None:
            return

        self._releasing = True
        try:
            if identity is not None:
                client.unsubscribe(self.inbox(identity))
        except MQTTConnectionError as exc:
            LOGGER.debug("Unsubscribe during release failed: %s", exc)
        await client.disconnect()
        LOGGER.info("Released identity %s", identity)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _on_message(self, topic: str, payload: bytes) -> None:
        try:
            envelope = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            LOGGER.warning("Dropping undecodable envelope on %s: %s", topic, exc)
            return
        if not isinstance(envelope, dict):
            LOGGER.warning("Dropping non-object envelope on %s", topic)
            return

        kind = envelope.get("type")
        sender = envelope.get("from")
        if not isinstance(sender, str) or not sender:
            LOGGER.warning("Dropping %s envelope without sender", kind)
            return

        handler = getattr(self, f"_handle_{kind}", None)
        if handler is None:
            LOGGER.warning("Dropping unknown envelope type %r from %s", kind, sender)
            return
        handler(sender, envelope)

    def _handle_connect(self, sender: str, envelope: Dict[str, Any]) -> None:
        channel_id = envelope.get("channelId")
        if not isinstance(channel_id, str):
            return
        self._channels[channel_id] = sender
        try:
            self._publish(sender, {"type": "accept", "channelId": channel_id})
        except (SignalingError, MQTTConnectionError) as exc:
            self._channels.pop(channel_id, None)
            LOGGER.warning("Could not accept channel %s: %s", channel_id, exc)
            return
        LOGGER.info(
            "Accepted data channel %s (%s) from %s",
            channel_id,
            envelope.get("label"),
            sender,
        )
        self._emit(ev.DataChannelOpened(channel_id, sender))

    def _handle_accept(self, sender: str, envelope: Dict[str, Any]) -> None:
        channel_id = envelope.get("channelId")
        if self._pending_channels.get(channel_id) != sender:
            return
        del self._pending_channels[channel_id]
        self._channels[channel_id] = sender
        self._emit(ev.DataChannelOpened(channel_id, sender))

    def _handle_data(self, sender: str, envelope: Dict[str, Any]) -> None:
        channel_id = envelope.get("channelId")
        if self._channels.get(channel_id) != sender:
            LOGGER.debug("Data for unknown channel %s from %s", channel_id, sender)
            return
        self._emit(ev.DataReceived(channel_id, envelope.get("payload")))

    def _handle_close(self, sender: str, envelope: Dict[str, Any]) -> None:
        channel_id = envelope.get("channelId")
        if self._channels.get(channel_id) == sender:
            del self._channels[channel_id]
        elif self._pending_channels.get(channel_id) == sender:
            del self._pending_channels[channel_id]
        else:
            return
        self._emit(ev.DataChannelClosed(channel_id))

    def _handle_call(self, sender: str, envelope: Dict[str, Any]) -> None:
        call_id = envelope.get("callId")
        if not isinstance(call_id, str):
            return
        self._calls[call_id] = sender
        stream = StreamInfo.from_dict(envelope.get("stream"))
        self._emit(ev.MediaCallIncoming(call_id, sender, stream))

    def _handle_answer(self, sender: str, envelope: Dict[str, Any]) -> None:
        call_id = envelope.get("callId")
        if self._calls.get(call_id) == sender:
            self._emit(ev.MediaAnswered(call_id))

    def _handle_hangup(self, sender: str, envelope: Dict[str, Any]) -> None:
        call_id = envelope.get("callId")
        if self._calls.get(call_id) != sender:
            return
        del self._calls[call_id]
        self._emit(ev.MediaClosed(call_id))

    def _on_disconnect(self, rc: int) -> None:
        if self._releasing or self._client is None:
            return
        LOGGER.warning("Lost relay connection (rc=%s)", rc)
        self._emit(ev.SignalingFailed(f"relay connection lost (rc={rc})"))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _publish(
        self, remote: str, envelope: Dict[str, Any], *, qos: int = CONTROL_QOS
    ) -> None:
        if self._client is None or self._identity is None:
            raise SignalingError("Relay transport is not registered")
        envelope["from"] = self._identity
        self._client.publish(
            self.inbox(remote), json.dumps(envelope).encode("utf-8"), qos=qos
        )

    def _emit(self, event: Any) -> None:
        handler = self._handler
        if handler is None:
            LOGGER.debug("No handler for %s", type(event).__name__)
            return
        handler(event)
