"""Pairing and liveness flow orchestration.

The orchestrator owns the :class:`FlowState` machine. Components report
outcomes into a queue; a single router task consumes it, validates each
move against :mod:`machinelink.state.policy`, applies display-state
updates and publishes :class:`TransitionEvent` values upward.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import AsyncIterator, Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict

from machinelink._redact import mask_code
from machinelink._timers import TimerGroup
from machinelink.client import AgentClient
from machinelink.config import MachineLinkConfig
from machinelink.connectivity import ConnectivityProbe
from machinelink.exceptions import AgentError, CodeIssuanceFailed, InvalidTransitionError, MachineLinkError
from machinelink.identity import IdentityResolver
from machinelink.liveness import LivenessMonitor
from machinelink.models.device import DeviceIdentity, LivenessState
from machinelink.models.pairing import (
    ConnectivityState,
    IdentityResolution,
    OutcomeKind,
    PairingCode,
    ProvisioningOutcome,
    ResolutionOutcome,
)
from machinelink.pairing import PairingCodeManager
from machinelink.provisioning import ProvisioningPoller
from machinelink.state.events import Advisory, FlowState, StateUpdate, TransitionEvent
from machinelink.state.policy import can_go_back, is_allowed_transition, is_terminal
from machinelink.state.store import DeviceStateStore

_logger = logging.getLogger(__name__)

TransitionCallback = Callable[[TransitionEvent], None]
CountdownCallback = Callable[[int], None]

TIMEOUT_MESSAGE = "Machine identity could not be resolved in time"


class FlowSnapshot(BaseModel):
    """Everything the presentation layer needs to draw the current screen."""

    model_config = ConfigDict(frozen=True)

    state: FlowState
    advisory: Advisory
    identity: DeviceIdentity
    liveness: LivenessState
    code: str | None = None
    remaining_seconds: int | None = None
    taken_at: datetime


@dataclasses.dataclass(slots=True)
class _Message:
    """One item on the router queue.

    ``timers`` is the screen group that produced the message; messages
    from a group that has since been cancelled are dropped unread.
    """

    kind: str
    value: Any = None
    timers: TimerGroup | None = None
    done: asyncio.Future[None] | None = None


@dataclasses.dataclass(slots=True)
class _StateWaiter:
    state: FlowState
    future: asyncio.Future[TransitionEvent]


class PairingOrchestrator:
    """Drives a device from first boot to the configured screen.

    Usage::

        async with AgentClient(config) as agent:
            async with PairingOrchestrator(agent, config, on_transition=show) as flow:
                await flow.start()
                await flow.wait_for_state(FlowState.CONFIGURED)

    Parameters
    ----------
    agent : AgentClient
        Client for the local agent. The orchestrator borrows it and never
        closes it.
    config : MachineLinkConfig, optional
        Cadences and deadlines. Defaults to :class:`MachineLinkConfig`.
    on_transition : callable, optional
        Called with every :class:`TransitionEvent`, including
        advisory-only events on the same screen.
    on_countdown : callable, optional
        Called with the remaining seconds of the displayed pairing code.
    store : DeviceStateStore, optional
        Display store to write into. A fresh one is created by default.
    """

    def __init__(
        self,
        agent: AgentClient,
        config: MachineLinkConfig | None = None,
        *,
        on_transition: TransitionCallback | None = None,
        on_countdown: CountdownCallback | None = None,
        store: DeviceStateStore | None = None,
    ) -> None:
        self._agent = agent
        self._config = config or MachineLinkConfig()
        self._on_transition = on_transition
        self._on_countdown = on_countdown
        self._store = store or DeviceStateStore()

        self._probe = ConnectivityProbe(agent)
        self._pairing = PairingCodeManager(
            agent,
            self._config,
            on_rotated=self._code_rotated,
            on_issue_failed=self._code_issue_failed,
            on_countdown=self._countdown,
        )
        self._poller = ProvisioningPoller(agent, self._config, on_outcome=self._provisioning_outcome)
        self._resolver = IdentityResolver(agent, self._config, store_apply=self._post_update)
        self._liveness = LivenessMonitor(
            self._probe,
            agent,
            self._config,
            store_apply=self._post_update,
            on_advisory=self._liveness_advisory,
        )

        self._state = FlowState.INIT
        self._advisory = Advisory.none()
        self._last_event: TransitionEvent | None = None
        self._failed_phase = FlowState.CHECKING_CONNECTIVITY
        self._screen: TimerGroup | None = None

        self._queue: asyncio.Queue[_Message] = asyncio.Queue()
        self._router: asyncio.Task[None] | None = None
        self._subscribers: set[asyncio.Queue[TransitionEvent | None]] = set()
        self._waiters: list[_StateWaiter] = []
        self._started = False
        self._exiting = False

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> PairingOrchestrator:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Cancel every timer and stop the router without exiting the agent."""
        screen = self._screen
        self._close_screen()
        if screen is not None:
            await screen.aclose()
        router = self._router
        self._router = None
        if router is not None and not router.done():
            router.cancel()
            await asyncio.gather(router, return_exceptions=True)
        for queue in self._subscribers:
            queue.put_nowait(None)
        for waiter in self._waiters:
            if not waiter.future.done():
                waiter.future.cancel()
        self._waiters.clear()

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def state(self) -> FlowState:
        return self._state

    @property
    def advisory(self) -> Advisory:
        return self._advisory

    @property
    def store(self) -> DeviceStateStore:
        return self._store

    @property
    def last_event(self) -> TransitionEvent | None:
        return self._last_event

    async def start(self) -> None:
        """Begin the flow. Calling it on a running orchestrator does nothing."""
        if self._started:
            _logger.debug("Orchestrator already started")
            return
        self._started = True
        await self._send(_Message("start"))

    async def retry(self) -> None:
        """Re-enter the phase that led to the current terminal screen.

        Raises
        ------
        InvalidTransitionError
            The flow is not on a retryable terminal screen.
        """
        if not is_terminal(self._state) or self._state == FlowState.EXITED:
            raise InvalidTransitionError(f"cannot retry from {self._state}")
        await self._send(_Message("retry"))

    async def back(self) -> None:
        """Leave a pairing screen and re-check connectivity.

        Raises
        ------
        InvalidTransitionError
            The flow is not on a pairing screen.
        """
        if not can_go_back(self._state):
            raise InvalidTransitionError(f"cannot go back from {self._state}")
        await self._send(_Message("back"))

    async def exit(self) -> None:
        """Tear everything down, ask the agent to quit and emit ``EXITED``."""
        if self._exiting or self._state == FlowState.EXITED:
            return
        self._exiting = True
        # Timers go first so nothing can land while the agent shuts down.
        self._close_screen()
        await self._agent.exit()
        await self._send(_Message("exit"))

    def snapshot(self) -> FlowSnapshot:
        display = self._store.snapshot()
        active = self._pairing.active
        showing_code = self._state in (
            FlowState.PAIRING,
            FlowState.POLLING_CONFIRMATION,
            FlowState.INVALID_CODE_SHOWN,
        )
        return FlowSnapshot(
            state=self._state,
            advisory=self._advisory,
            identity=display.identity,
            liveness=display.liveness,
            code=active.value if showing_code and active is not None else None,
            remaining_seconds=self._pairing.remaining_seconds if showing_code and active is not None else None,
            taken_at=display.taken_at,
        )

    async def wait_for_state(self, state: FlowState, timeout: float | None = None) -> TransitionEvent:
        """Wait until the flow enters *state* and return that event.

        Returns immediately when the flow is already there.

        Raises
        ------
        TimeoutError
            *state* was not reached within *timeout* seconds.
        """
        if self._state == state and self._last_event is not None:
            return self._last_event
        future: asyncio.Future[TransitionEvent] = asyncio.get_running_loop().create_future()
        waiter = _StateWaiter(state=state, future=future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if waiter in self._waiters:
                self._waiters.remove(waiter)

    async def transitions(self) -> AsyncIterator[TransitionEvent]:
        """Yield every event from now on until the flow exits or is closed."""
        queue: asyncio.Queue[TransitionEvent | None] = asyncio.Queue()
        self._subscribers.add(queue)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
                if event.state == FlowState.EXITED:
                    return
        finally:
            self._subscribers.discard(queue)

    # ------------------------------------------------------------------
    # Router
    # ------------------------------------------------------------------

    async def _send(self, message: _Message) -> None:
        """Queue a command and wait until the router has handled it."""
        self._ensure_router()
        message.done = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(message)
        await message.done

    def _post(self, kind: str, value: Any = None, timers: TimerGroup | None = None) -> None:
        self._queue.put_nowait(_Message(kind, value, timers))

    def _ensure_router(self) -> None:
        if self._router is None or self._router.done():
            self._router = asyncio.get_running_loop().create_task(self._route(), name="machinelink:router")

    async def _route(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                if message.timers is not None and not message.timers.active:
                    _logger.debug("Dropping %s from closed screen %s", message.kind, message.timers.name)
                elif (self._exiting or self._state == FlowState.EXITED) and message.kind != "exit":
                    _logger.debug("Dropping %s after exit", message.kind)
                else:
                    self._handle(message)
            except MachineLinkError as exc:
                _logger.warning("Handling %s failed: %s", message.kind, exc)
                if message.done is not None and not message.done.done():
                    message.done.set_exception(exc)
            except Exception as exc:
                _logger.exception("Unexpected error handling %s", message.kind)
                if message.done is not None and not message.done.done():
                    message.done.set_exception(exc)
            finally:
                if message.done is not None and not message.done.done():
                    message.done.set_result(None)

    def _handle(self, message: _Message) -> None:
        kind = message.kind
        if kind == "start":
            self._enter_connectivity()
        elif kind == "connectivity":
            self._connectivity_checked(message.value)
        elif kind == "provision_status":
            self._provision_status_known(message.value)
        elif kind == "code_issued":
            self._code_issued(message.value)
        elif kind == "code_rotated":
            self._show_code(message.value)
        elif kind == "issue_failed":
            self._close_screen()
            self._fail(FlowState.PAIRING, str(message.value))
        elif kind == "outcome":
            self._route_outcome(message.value)
        elif kind == "resolution":
            self._resolution_done(message.value)
        elif kind == "update":
            self._store.apply(message.value)
        elif kind == "advisory":
            self._advise(message.value)
        elif kind == "retry":
            self._retry()
        elif kind == "back":
            self._back()
        elif kind == "exit":
            self._close_screen()
            self._transition(FlowState.EXITED)
        else:
            raise MachineLinkError(f"unknown router message {kind!r}")

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    def _open_screen(self, name: str) -> TimerGroup:
        self._close_screen()
        self._screen = TimerGroup(name)
        return self._screen

    def _close_screen(self) -> None:
        screen = self._screen
        self._screen = None
        if screen is not None:
            screen.cancel()

    def _enter_connectivity(self) -> None:
        self._transition(FlowState.CHECKING_CONNECTIVITY)
        timers = self._open_screen("connectivity")

        async def _check() -> None:
            if self._config.connectivity_delay > 0:
                await asyncio.sleep(self._config.connectivity_delay)
            state = await self._probe.check()
            self._post("connectivity", state, timers)

        timers.spawn("probe", _check())

    def _connectivity_checked(self, state: ConnectivityState) -> None:
        if not state.reachable:
            self._close_screen()
            self._transition(
                FlowState.NO_CONNECTIVITY,
                advisory=Advisory.agent_unavailable(),
                payload={"error": state.error},
            )
            return

        self._transition(FlowState.CHECKING_PROVISION_STATUS)
        timers = self._open_screen("provision-status")

        async def _status() -> None:
            try:
                response = await self._agent.provision_status()
                provisioned = response.status
            except AgentError as exc:
                _logger.warning("Provision status unavailable, starting pairing: %s", exc)
                provisioned = False
            self._post("provision_status", provisioned, timers)

        timers.spawn("status", _status())

    def _provision_status_known(self, provisioned: bool) -> None:
        if provisioned:
            _logger.info("Machine already provisioned")
            self._enter_resolving(delay=0.0)
        else:
            self._enter_pairing()

    def _enter_pairing(self) -> None:
        self._transition(FlowState.PAIRING)
        self._pairing.discard()
        timers = self._open_screen("pairing")

        async def _issue() -> None:
            try:
                code = await self._pairing.issue()
            except CodeIssuanceFailed as exc:
                self._post("issue_failed", exc, timers)
                return
            self._post("code_issued", code, timers)

        timers.spawn("issue", _issue())

    def _code_issued(self, code: PairingCode) -> None:
        timers = self._screen
        if timers is None:
            return
        self._pairing.start(timers)
        self._poller.start(timers, code.value)
        self._transition(FlowState.POLLING_CONFIRMATION, payload=self._code_payload(code))

    def _show_code(self, code: PairingCode) -> None:
        """A rotated code replaces the one on screen."""
        self._poller.set_code(code.value)
        if self._state != FlowState.PAIRING:
            self._transition(FlowState.PAIRING)
        self._transition(FlowState.POLLING_CONFIRMATION, payload=self._code_payload(code))

    def _code_payload(self, code: PairingCode) -> dict[str, Any]:
        return {"code": code.value, "remaining_seconds": self._pairing.remaining_seconds}

    def _route_outcome(self, outcome: ProvisioningOutcome) -> None:
        if outcome.kind == OutcomeKind.CONFIRMED:
            confirmed = self._pairing.confirm(outcome.code or "")
            _logger.info("Pairing code %s confirmed", mask_code(confirmed.value))
            self._enter_resolving(delay=self._config.identity_initial_delay)
        elif outcome.kind == OutcomeKind.INVALID_CODE:
            if self._state == FlowState.POLLING_CONFIRMATION:
                self._transition(FlowState.INVALID_CODE_SHOWN, advisory=Advisory.incorrect_code())
        elif outcome.kind == OutcomeKind.TRANSIENT_ERROR:
            if not outcome.user_visible:
                return
            reason = outcome.reason or "Provisioning failed"
            self._close_screen()
            self._failed_phase = FlowState.PAIRING
            self._transition(
                FlowState.TRANSIENT_FAILURE,
                advisory=Advisory.error(reason),
                payload={"error": reason},
            )

    def _enter_resolving(self, *, delay: float) -> None:
        self._transition(FlowState.RESOLVING_IDENTITY)
        timers = self._open_screen("identity")

        async def _resolve() -> None:
            if delay > 0:
                await asyncio.sleep(delay)
            resolution = await self._resolver.resolve(self._config.identity_timeout)
            self._post("resolution", resolution, timers)

        timers.spawn("resolve", _resolve())

    def _resolution_done(self, resolution: IdentityResolution) -> None:
        self._close_screen()
        if resolution.outcome == ResolutionOutcome.SUCCESS:
            machine_id = resolution.machine_id or ""
            # The id update is queued ahead of the resolution; a rejected write leaves the old id.
            if self._store.identity.id != machine_id:
                self._fail(FlowState.RESOLVING_IDENTITY, f"machine id {machine_id!r} was not recorded")
                return
            self._enter_configured(machine_id)
        elif resolution.outcome == ResolutionOutcome.TIMEOUT:
            self._failed_phase = FlowState.RESOLVING_IDENTITY
            self._transition(FlowState.TIMED_OUT, advisory=Advisory.error(TIMEOUT_MESSAGE))
        else:
            self._fail(FlowState.RESOLVING_IDENTITY, resolution.error or "Setup failed")

    def _enter_configured(self, machine_id: str) -> None:
        self._transition(FlowState.CONFIGURED, payload={"machine_id": machine_id})
        timers = self._open_screen("configured")
        self._liveness.start(timers)

    def _fail(self, phase: FlowState, message: str) -> None:
        self._failed_phase = phase
        self._transition(FlowState.FAILED, advisory=Advisory.error(message), payload={"error": message})

    def _retry(self) -> None:
        state = self._state
        if state == FlowState.NO_CONNECTIVITY:
            self._enter_connectivity()
        elif state == FlowState.TIMED_OUT:
            self._enter_resolving(delay=0.0)
        elif state in (FlowState.FAILED, FlowState.TRANSIENT_FAILURE):
            phase = self._failed_phase
            if phase == FlowState.PAIRING:
                self._enter_pairing()
            elif phase == FlowState.RESOLVING_IDENTITY:
                self._enter_resolving(delay=0.0)
            else:
                self._enter_connectivity()
        else:
            raise InvalidTransitionError(f"cannot retry from {state}")

    def _back(self) -> None:
        if not can_go_back(self._state):
            raise InvalidTransitionError(f"cannot go back from {self._state}")
        self._close_screen()
        self._pairing.discard()
        self._enter_connectivity()

    # ------------------------------------------------------------------
    # Component callbacks (run inside screen timers)
    # ------------------------------------------------------------------

    def _post_update(self, update: StateUpdate) -> None:
        self._post("update", update, self._screen)

    def _code_rotated(self, code: PairingCode) -> None:
        self._post("code_rotated", code, self._screen)

    def _code_issue_failed(self, exc: CodeIssuanceFailed) -> None:
        self._post("issue_failed", exc, self._screen)

    def _provisioning_outcome(self, outcome: ProvisioningOutcome) -> None:
        self._post("outcome", outcome, self._screen)

    def _liveness_advisory(self, advisory: Advisory) -> None:
        self._post("advisory", advisory, self._screen)

    def _countdown(self, remaining: int) -> None:
        if self._on_countdown is None:
            return
        try:
            self._on_countdown(remaining)
        except Exception:
            _logger.debug("on_countdown callback failed", exc_info=True)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def _transition(
        self,
        target: FlowState,
        *,
        advisory: Advisory | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        previous = self._state
        if not is_allowed_transition(previous, target):
            raise InvalidTransitionError(f"no transition {previous} -> {target}")
        self._state = target
        _logger.info("Flow %s -> %s", previous, target)
        self._publish(previous, advisory or Advisory.none(), payload or {})

    def _advise(self, advisory: Advisory) -> None:
        """Change the advisory without leaving the current screen."""
        if advisory == self._advisory:
            return
        self._publish(self._state, advisory, {})

    def _publish(self, previous: FlowState, advisory: Advisory, payload: dict[str, Any]) -> None:
        self._advisory = advisory
        event = TransitionEvent(state=self._state, previous=previous, advisory=advisory, payload=payload)
        self._last_event = event

        for queue in self._subscribers:
            queue.put_nowait(event)

        remaining: list[_StateWaiter] = []
        for waiter in self._waiters:
            if waiter.future.done():
                continue
            if waiter.state == event.state and not event.is_advisory_only:
                waiter.future.set_result(event)
            else:
                remaining.append(waiter)
        self._waiters = remaining

        if self._on_transition is not None:
            try:
                self._on_transition(event)
            except Exception:
                _logger.debug("on_transition callback failed", exc_info=True)
