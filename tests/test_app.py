"""Operator and machine applications wired together over an in-memory broker."""

import asyncio
import math

import aiohttp
import pytest

from excavator_teleop.adapters import MqttRelayTransport
from excavator_teleop.app import AppState, TeleopApp
from excavator_teleop.config import load_config
from excavator_teleop.core import ChannelState, MachineStatus, MachineTelemetry, Role
from excavator_teleop.input import ManualControllerSource
from excavator_teleop.session import SessionState

STILL = 1.286


def axes(first: float = 0.0, second: float = 0.0) -> list[float]:
    values = [0.0] * 10
    values[0] = first
    values[1] = second
    values[9] = STILL
    return values


@pytest.fixture
def config(tmp_path):
    config_path = tmp_path / "excavator-teleop.cfg"
    config_path.write_text(
        "[publisher]\ninterval_ms = 20\n\n[media]\nenabled = false\n",
        encoding="utf-8",
    )
    return load_config(config_path)


def build_pair(config, broker, bus):
    controller = ManualControllerSource()
    operator = TeleopApp(
        Role.OPERATOR,
        config,
        transport=MqttRelayTransport(
            config.signaling, client_factory=broker.client_factory
        ),
        controller=controller,
    )
    machine = TeleopApp(
        Role.MACHINE,
        config,
        transport=MqttRelayTransport(
            config.signaling, client_factory=broker.client_factory
        ),
        bus=bus,
    )
    return operator, machine, controller


@pytest.mark.asyncio
async def test_operator_input_reaches_the_control_bus(config, broker, bus, eventually):
    operator, machine, controller = build_pair(config, broker, bus)
    controller.set_axes(0, axes(first=0.6))
    controller.set_axes(1, axes())

    await machine.connect("42")
    await operator.connect("42")
    try:
        await eventually(lambda: machine.session.state is SessionState.DATA_OPEN)
        await eventually(lambda: bool(bus.published))

        command = bus.published[-1]
        assert command.joint_names == (
            "bucket_linear",
            "arm_linear",
            "boom_linear",
            "body_rotate",
        )
        assert command.position[3] == pytest.approx(0.6 * math.pi)
        assert command.position[:3] == (0.0, 0.0, 0.0)

        await eventually(lambda: machine.state is AppState.ACTIVE)
        await eventually(lambda: operator.state is AppState.ACTIVE)
        await eventually(lambda: operator.surface.link.quality().frames_acked > 0)

        status = machine.surface.snapshot().as_dict()
        assert status["status"]["dataChannelState"] == "connected"
        assert status["status"]["busState"] == "connected"
        assert status["latestFrame"]["swing"] == pytest.approx(0.6)
    finally:
        await operator.stop()
        await machine.stop()


@pytest.mark.asyncio
async def test_disconnect_stops_publishing(config, broker, bus, eventually):
    operator, machine, controller = build_pair(config, broker, bus)
    controller.set_axes(0, axes(second=-0.5))
    controller.set_axes(1, axes())

    await machine.connect("42")
    await operator.connect("42")
    try:
        await eventually(lambda: bool(bus.published))
        await eventually(lambda: machine.state is AppState.ACTIVE)

        await operator.disconnect()
        await eventually(
            lambda: machine.session.state is SessionState.AWAITING_PEER
        )
        await asyncio.sleep(0.05)
        published = len(bus.published)
        await asyncio.sleep(0.1)

        assert len(bus.published) == published
        assert operator.session.state is SessionState.CLOSED
        assert machine.session.frames.get() is None
        await eventually(lambda: machine.state is AppState.DEGRADED)
    finally:
        await operator.stop()
        await machine.stop()


@pytest.mark.asyncio
async def test_machine_telemetry_reaches_the_operator(config, broker, bus, eventually):
    operator, machine, controller = build_pair(config, broker, bus)

    await machine.connect("42")
    await operator.connect("42")
    try:
        await eventually(lambda: machine.session.is_open)

        sent = await machine.publish_telemetry(
            MachineTelemetry("42", status=MachineStatus.WARNING, fuel_level=41.0)
        )

        assert sent is True
        await eventually(lambda: operator.surface.machine is not None)
        assert operator.surface.machine.fuel_level == pytest.approx(41.0)
        assert machine.surface.machine.status is MachineStatus.WARNING
    finally:
        await operator.stop()
        await machine.stop()


@pytest.mark.asyncio
async def test_stop_releases_identity_and_bus_state(config, broker, bus, eventually):
    operator, machine, _ = build_pair(config, broker, bus)

    await machine.connect("42")
    await operator.connect("42")
    await eventually(lambda: machine.session.is_open)

    await operator.stop()
    await machine.stop()

    assert machine.state is AppState.STOPPING
    assert machine.session.state is SessionState.CLOSED
    assert not broker.subscriptions["teleop/peers/machine42"]
    assert not broker.subscriptions["teleop/peers/operator42"]
    assert machine.surface.board.status.data_channel is ChannelState.DISCONNECTED


@pytest.mark.asyncio
async def test_health_endpoint_follows_the_session(
    tmp_path, broker, bus, eventually, unused_tcp_port
):
    config_path = tmp_path / "excavator-teleop.cfg"
    config_path.write_text(
        "[media]\nenabled = false\n\n"
        "[resilience]\nhealth_enabled = true\n"
        f"health_port = {unused_tcp_port}\n",
        encoding="utf-8",
    )
    config = load_config(config_path)
    operator = TeleopApp(
        Role.OPERATOR,
        config,
        transport=MqttRelayTransport(
            config.signaling, client_factory=broker.client_factory
        ),
    )
    url = f"http://127.0.0.1:{unused_tcp_port}"

    await operator.connect("42")
    try:
        await eventually(
            lambda: operator.session.state is SessionState.AWAITING_PEER
        )
        async with aiohttp.ClientSession() as client:
            async with client.get(f"{url}/healthz") as response:
                assert response.status == 503

            async with client.get(f"{url}/status") as response:
                payload = await response.json()
                assert payload["sessionState"] == "awaiting_peer"
    finally:
        await operator.stop()


@pytest.mark.asyncio
async def test_run_returns_after_shutdown_request(config, broker, bus, eventually):
    machine = TeleopApp(
        Role.MACHINE,
        config,
        transport=MqttRelayTransport(
            config.signaling, client_factory=broker.client_factory
        ),
        bus=bus,
    )

    task = asyncio.create_task(machine.run("42"))
    await eventually(lambda: machine.session.state is SessionState.AWAITING_PEER)
    assert machine.publisher is not None and machine.publisher.is_running

    machine.request_shutdown()
    await asyncio.wait_for(task, timeout=2.0)

    assert machine.session.state is SessionState.CLOSED
    assert not machine.publisher.is_running
    assert machine.state is AppState.STOPPING
