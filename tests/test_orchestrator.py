from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from typing import Any

import pytest
from conftest import ScriptedTransport

from machinelink.client import AgentClient
from machinelink.config import MachineLinkConfig
from machinelink.exceptions import AgentRejectedError, AgentUnreachableError, InvalidTransitionError
from machinelink.models.device import LivenessState
from machinelink.orchestrator import PairingOrchestrator
from machinelink.state.events import AdvisoryKind, FlowState, StateSection, StateUpdate, TransitionEvent
from machinelink.state.store import DeviceStateStore

DOWN = AgentUnreachableError("connection refused", command="get_ping_status")


def _healthy_agent(transport: ScriptedTransport, *, provisioned: bool) -> None:
    codes = itertools.count(100001)
    transport.reply("get_ping_status", {"code": "success"})
    transport.reply("get_machine_provision_status", {"status": provisioned})
    transport.reply("generate_code", lambda _payload: {"code": str(next(codes))})
    transport.reply("provision_code", {"success": False})
    transport.reply("get_machine_id", {"machine_id": "dev-123"})
    transport.reply("get_machine_info", lambda payload: {"value": f"value of {payload['key']}"})
    transport.reply("exit_app", {})


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _states(events: list[TransitionEvent]) -> list[FlowState]:
    return [event.state for event in events if not event.is_advisory_only]


# ------------------------------------------------------------------
# Scenarios
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_already_provisioned_reaches_configured(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=True)
    events: list[TransitionEvent] = []

    async with PairingOrchestrator(agent, fast_config, on_transition=events.append) as flow:
        await flow.start()
        await flow.wait_for_state(FlowState.CONFIGURED, timeout=2.0)
        await _eventually(lambda: flow.store.liveness.active and flow.store.identity.name != "")

        snap = flow.snapshot()

    assert _states(events) == [
        FlowState.CHECKING_CONNECTIVITY,
        FlowState.CHECKING_PROVISION_STATUS,
        FlowState.RESOLVING_IDENTITY,
        FlowState.CONFIGURED,
    ]
    configured = next(e for e in events if e.state == FlowState.CONFIGURED)
    assert configured.payload == {"machine_id": "dev-123"}
    assert snap.identity.id == "dev-123"
    assert snap.identity.name == "value of identity.machine.name"
    assert snap.identity.icon_url == "value of identity.machine.icon_url"
    assert snap.code is None
    assert transport.count("generate_code") == 0


@pytest.mark.asyncio
async def test_unprovisioned_first_poll_waits_one_period(
    agent: AgentClient, transport: ScriptedTransport
) -> None:
    _healthy_agent(transport, provisioned=False)
    config = MachineLinkConfig(poll_interval=0.1, code_rotation_interval=5.0, countdown_interval=1.0)

    async with PairingOrchestrator(agent, config) as flow:
        await flow.start()
        event = await flow.wait_for_state(FlowState.POLLING_CONFIRMATION, timeout=2.0)
        assert event.payload["code"] == "100001"
        assert flow.snapshot().code == "100001"
        await _eventually(lambda: transport.count("provision_code") >= 1)

    issued_at = transport.call_times["generate_code"][0]
    first_poll = transport.call_times["provision_code"][0]
    assert first_poll - issued_at >= 0.09
    assert ("provision_code", {"code": "100001"}) in transport.calls


@pytest.mark.asyncio
async def test_invalid_code_shows_advisory_and_rotation_continues(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=False)
    events: list[TransitionEvent] = []

    async with PairingOrchestrator(agent, fast_config, on_transition=events.append) as flow:
        await flow.start()
        invalid = await flow.wait_for_state(FlowState.INVALID_CODE_SHOWN, timeout=2.0)
        assert invalid.advisory.kind == AdvisoryKind.INCORRECT_CODE

        await _eventually(lambda: transport.count("generate_code") >= 2)
        await _eventually(lambda: flow.snapshot().code == "100002")
        assert flow.state in (FlowState.POLLING_CONFIRMATION, FlowState.INVALID_CODE_SHOWN)

    rotated = [e for e in events if e.state == FlowState.POLLING_CONFIRMATION and e.payload.get("code") == "100002"]
    assert rotated
    assert rotated[0].previous == FlowState.PAIRING
    assert FlowState.FAILED not in _states(events)
    polled = {payload["code"] for command, payload in transport.calls if command == "provision_code"}
    assert "100001" in polled


@pytest.mark.asyncio
async def test_identity_deadline_gives_timed_out_not_failed(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=True)

    async def hang(_payload: dict[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(10)
        return {"machine_id": "too-late"}

    transport.reply("get_machine_id", hang)

    async with PairingOrchestrator(agent, fast_config) as flow:
        await flow.start()
        event = await flow.wait_for_state(FlowState.TIMED_OUT, timeout=2.0)

        assert event.previous == FlowState.RESOLVING_IDENTITY
        assert flow.store.identity.id == ""

        transport.reply("get_machine_id", {"machine_id": "dev-123"})
        await flow.retry()
        await flow.wait_for_state(FlowState.CONFIGURED, timeout=2.0)

    assert flow.store.identity.id == "dev-123"


@pytest.mark.asyncio
async def test_liveness_failure_keeps_configured_screen(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=True)
    events: list[TransitionEvent] = []
    liveness_at_advisory: list[LivenessState] = []

    def on_transition(event: TransitionEvent) -> None:
        events.append(event)
        if event.advisory.kind == AdvisoryKind.AGENT_UNAVAILABLE:
            liveness_at_advisory.append(flow.store.liveness)

    flow = PairingOrchestrator(agent, fast_config, on_transition=on_transition)

    async with flow:
        await flow.start()
        await flow.wait_for_state(FlowState.CONFIGURED, timeout=2.0)
        await _eventually(lambda: flow.store.liveness.active)

        transport.reply("get_ping_status", [DOWN, {"code": "success"}])
        await _eventually(lambda: bool(liveness_at_advisory))
        await _eventually(lambda: flow.advisory.kind == AdvisoryKind.NONE)

    assert liveness_at_advisory[0].active is False
    assert liveness_at_advisory[0].last_error == "connection refused"
    configured_at = next(i for i, e in enumerate(events) if e.state == FlowState.CONFIGURED)
    assert all(e.is_advisory_only for e in events[configured_at + 1 :])
    assert all(e.state == FlowState.CONFIGURED for e in events[configured_at:])


# ------------------------------------------------------------------
# Failure screens and retry
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_unreachable_agent_shows_no_connectivity_then_retry(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=True)
    transport.reply("get_ping_status", DOWN)

    async with PairingOrchestrator(agent, fast_config) as flow:
        await flow.start()
        event = await flow.wait_for_state(FlowState.NO_CONNECTIVITY, timeout=2.0)
        assert event.advisory.kind == AdvisoryKind.AGENT_UNAVAILABLE
        assert event.payload["error"] == "connection refused"

        transport.reply("get_ping_status", {"code": "success"})
        await flow.retry()
        await flow.wait_for_state(FlowState.CONFIGURED, timeout=2.0)


@pytest.mark.asyncio
async def test_confirmation_stops_rotation_and_configures(
    agent: AgentClient, transport: ScriptedTransport
) -> None:
    _healthy_agent(transport, provisioned=False)
    transport.reply("provision_code", {"success": True})
    config = MachineLinkConfig(
        poll_interval=0.05,
        code_rotation_interval=0.2,
        countdown_interval=0.02,
        identity_initial_delay=0.05,
        health_interval=1.0,
        metadata_interval=1.0,
    )

    async with PairingOrchestrator(agent, config) as flow:
        await flow.start()
        await flow.wait_for_state(FlowState.RESOLVING_IDENTITY, timeout=2.0)
        issued = transport.count("generate_code")
        await flow.wait_for_state(FlowState.CONFIGURED, timeout=2.0)
        await asyncio.sleep(0.25)

    assert issued == 1
    assert transport.count("generate_code") == 1
    assert flow.store.identity.id == "dev-123"


@pytest.mark.asyncio
async def test_confirmation_overlapping_rotation_still_configures(
    agent: AgentClient, transport: ScriptedTransport
) -> None:
    _healthy_agent(transport, provisioned=False)

    async def slow_success(_payload: dict[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(0.25)
        return {"success": True}

    transport.reply("provision_code", slow_success)
    # The first submit is still outstanding when the code rotates at 0.3s.
    config = MachineLinkConfig(
        poll_interval=0.1,
        code_rotation_interval=0.3,
        countdown_interval=1.0,
        identity_initial_delay=0.0,
        health_interval=1.0,
        metadata_interval=1.0,
    )

    async with PairingOrchestrator(agent, config) as flow:
        await flow.start()
        await flow.wait_for_state(FlowState.CONFIGURED, timeout=2.0)

    assert transport.count("generate_code") >= 2
    assert flow.store.identity.id == "dev-123"


@pytest.mark.asyncio
async def test_visible_provisioning_error_then_retry_pairs_again(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=False)
    transport.reply("provision_code", AgentRejectedError("UnauthorizedError: denied", command="provision_code"))

    async with PairingOrchestrator(agent, fast_config) as flow:
        await flow.start()
        event = await flow.wait_for_state(FlowState.TRANSIENT_FAILURE, timeout=2.0)
        assert event.advisory.kind == AdvisoryKind.ERROR
        assert event.advisory.message == "Unauthorized Error"

        calls = transport.count("provision_code")
        await asyncio.sleep(0.15)
        assert transport.count("provision_code") == calls

        transport.reply("provision_code", {"success": True})
        await flow.retry()
        await flow.wait_for_state(FlowState.CONFIGURED, timeout=2.0)


@pytest.mark.asyncio
async def test_silent_parse_errors_keep_polling(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=False)
    transport.reply("provision_code", AgentRejectedError("ParseResponseError", command="provision_code"))
    events: list[TransitionEvent] = []

    async with PairingOrchestrator(agent, fast_config, on_transition=events.append) as flow:
        await flow.start()
        await _eventually(lambda: transport.count("provision_code") >= 3)
        assert flow.state == FlowState.POLLING_CONFIRMATION
        assert flow.advisory.kind == AdvisoryKind.NONE

    assert FlowState.TRANSIENT_FAILURE not in _states(events)


@pytest.mark.asyncio
async def test_code_issuance_failure_routes_to_failed(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=False)
    transport.reply("generate_code", AgentUnreachableError("agent restarting", command="generate_code"))

    async with PairingOrchestrator(agent, fast_config) as flow:
        await flow.start()
        event = await flow.wait_for_state(FlowState.FAILED, timeout=2.0)
        assert event.previous == FlowState.PAIRING
        assert event.advisory.message is not None and "agent restarting" in event.advisory.message

        transport.reply("generate_code", {"code": "777777"})
        await flow.retry()
        event = await flow.wait_for_state(FlowState.POLLING_CONFIRMATION, timeout=2.0)

    assert event.payload["code"] == "777777"


@pytest.mark.asyncio
async def test_provision_status_error_falls_back_to_pairing(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=True)
    transport.reply(
        "get_machine_provision_status",
        AgentRejectedError("SettingsDatabaseDeleteError", command="get_machine_provision_status"),
    )

    async with PairingOrchestrator(agent, fast_config) as flow:
        await flow.start()
        await flow.wait_for_state(FlowState.POLLING_CONFIRMATION, timeout=2.0)


@pytest.mark.asyncio
async def test_retry_outside_terminal_screen_raises(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=True)

    async with PairingOrchestrator(agent, fast_config) as flow:
        await flow.start()
        await flow.wait_for_state(FlowState.CONFIGURED, timeout=2.0)

        with pytest.raises(InvalidTransitionError):
            await flow.retry()
        with pytest.raises(InvalidTransitionError):
            await flow.back()


# ------------------------------------------------------------------
# Navigation and lifecycle
# ------------------------------------------------------------------


@pytest.mark.asyncio
async def test_back_from_pairing_rechecks_connectivity(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=False)
    events: list[TransitionEvent] = []

    async with PairingOrchestrator(agent, fast_config, on_transition=events.append) as flow:
        await flow.start()
        await flow.wait_for_state(FlowState.POLLING_CONFIRMATION, timeout=2.0)
        await flow.back()
        await _eventually(lambda: transport.count("generate_code") >= 2)
        await flow.wait_for_state(FlowState.POLLING_CONFIRMATION, timeout=2.0)

    back = [e for e in events if e.state == FlowState.CHECKING_CONNECTIVITY and e.previous != FlowState.INIT]
    assert len(back) == 1
    assert back[0].previous in (FlowState.POLLING_CONFIRMATION, FlowState.INVALID_CODE_SHOWN)


@pytest.mark.asyncio
async def test_exit_tears_down_and_notifies_agent(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=True)

    async with PairingOrchestrator(agent, fast_config) as flow:
        collected: list[TransitionEvent] = []

        async def consume() -> None:
            async for event in flow.transitions():
                collected.append(event)

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)

        await flow.start()
        await flow.wait_for_state(FlowState.CONFIGURED, timeout=2.0)
        await flow.exit()
        await flow.exit()
        await asyncio.wait_for(consumer, timeout=1.0)

        version = flow.store.version
        calls = len(transport.calls)
        await asyncio.sleep(0.15)

    assert flow.state == FlowState.EXITED
    assert transport.count("exit_app") == 1
    assert collected[-1].state == FlowState.EXITED
    assert collected[-1].previous == FlowState.CONFIGURED
    assert flow.store.version == version
    assert len(transport.calls) == calls


@pytest.mark.asyncio
async def test_start_is_idempotent_and_callback_errors_are_contained(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=True)

    def broken(_event: TransitionEvent) -> None:
        raise RuntimeError("display crashed")

    async with PairingOrchestrator(agent, fast_config, on_transition=broken) as flow:
        await flow.start()
        await flow.start()
        await flow.wait_for_state(FlowState.CONFIGURED, timeout=2.0)

    assert transport.count("get_machine_provision_status") == 1


@pytest.mark.asyncio
async def test_wait_for_state_times_out(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=False)

    async with PairingOrchestrator(agent, fast_config) as flow:
        await flow.start()
        with pytest.raises(TimeoutError):
            await flow.wait_for_state(FlowState.CONFIGURED, timeout=0.1)


@pytest.mark.asyncio
async def test_countdown_reaches_presentation(
    agent: AgentClient, transport: ScriptedTransport, fast_config: MachineLinkConfig
) -> None:
    _healthy_agent(transport, provisioned=False)
    ticks: list[int] = []

    async with PairingOrchestrator(agent, fast_config, on_countdown=ticks.append) as flow:
        await flow.start()
        await flow.wait_for_state(FlowState.POLLING_CONFIRMATION, timeout=2.0)
        await _eventually(lambda: len(ticks) >= 4)

    assert ticks[:4] == [2, 1, 0, 3]
    assert set(ticks) <= {0, 1, 2, 3}


class _FailingIdentityStore(DeviceStateStore):
    def apply(self, update: StateUpdate) -> None:
        if update.section == StateSection.IDENTITY_ID:
            raise RuntimeError("store unavailable")
        super().apply(update)


@pytest.mark.asyncio
async def test_router_survives_unexpected_handler_error(
    agent: AgentClient,
    transport: ScriptedTransport,
    fast_config: MachineLinkConfig,
    caplog: pytest.LogCaptureFixture,
) -> None:
    _healthy_agent(transport, provisioned=True)

    with caplog.at_level(logging.ERROR, logger="machinelink.orchestrator"):
        async with PairingOrchestrator(agent, fast_config, store=_FailingIdentityStore()) as flow:
            await flow.start()
            event = await flow.wait_for_state(FlowState.FAILED, timeout=2.0)

    assert "dev-123" in event.payload["error"]
    assert any("Unexpected error handling update" in record.getMessage() for record in caplog.records)
