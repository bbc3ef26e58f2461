"""Confirmation polling for the active pairing code."""

from __future__ import annotations

import logging
from collections.abc import Callable

from machinelink._constants import PARSE_RESPONSE_ERROR_CODE, provisioning_error_label
from machinelink._redact import mask_code
from machinelink._timers import TimerGroup
from machinelink.client import AgentClient
from machinelink.config import MachineLinkConfig
from machinelink.exceptions import AgentError, AgentMalformedResponseError
from machinelink.models.pairing import OutcomeKind, ProvisioningOutcome

_logger = logging.getLogger(__name__)

POLL_TIMER = "poll"


def is_parse_failure(exc: AgentError) -> bool:
    """Whether *exc* is a response-parsing failure rather than a real refusal."""
    if isinstance(exc, AgentMalformedResponseError):
        return True
    return PARSE_RESPONSE_ERROR_CODE.lower() in str(exc).lower()


def describe_agent_error(exc: AgentError) -> str:
    """Human readable reason for a surfaced provisioning error."""
    message = str(exc)
    return provisioning_error_label(message) or message or exc.kind.value


class ProvisioningPoller:
    """Polls ``submit_code`` for the active code and classifies each reply.

    Polling runs on a fixed ``poll_interval`` cadence. The first poll for
    a code happens one full period after the code was handed in. An
    ``InvalidCode`` reply suspends polling until :meth:`set_code` brings
    the next code; ``Confirmed`` stops it for good.
    """

    def __init__(
        self,
        agent: AgentClient,
        config: MachineLinkConfig,
        *,
        on_outcome: Callable[[ProvisioningOutcome], None] | None = None,
    ) -> None:
        self._agent = agent
        self._config = config
        self._on_outcome = on_outcome
        self._timers: TimerGroup | None = None
        self._code: str | None = None
        self._suspended = False
        self._in_flight = False

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def poll(self, code: str) -> ProvisioningOutcome:
        """One ``submit_code`` round trip, classified.

        A call made while another is outstanding does not reach the agent;
        it reports ``Pending`` instead.
        """
        if self._in_flight:
            _logger.debug("Poll skipped: previous submit_code still outstanding")
            return ProvisioningOutcome.pending(code)

        self._in_flight = True
        try:
            response = await self._agent.submit_code(code)
        except AgentError as exc:
            if is_parse_failure(exc):
                _logger.debug("submit_code reply could not be parsed, polling continues: %s", exc)
                return ProvisioningOutcome.transient_error(code, str(exc), user_visible=False)
            _logger.warning("submit_code failed for code %s: %s", mask_code(code), exc)
            return ProvisioningOutcome.transient_error(code, describe_agent_error(exc), user_visible=True)
        finally:
            self._in_flight = False

        if response.success:
            return ProvisioningOutcome.confirmed(code)
        return ProvisioningOutcome.invalid_code(code)

    def start(self, timers: TimerGroup, code: str) -> None:
        """Begin polling inside the pairing screen's timer group.

        The cadence is started once per screen; later codes only replace
        the one being submitted.
        """
        self._timers = timers
        self.set_code(code)
        if timers.active and POLL_TIMER not in timers:
            timers.periodic(POLL_TIMER, self._config.poll_interval, self._tick)

    def set_code(self, code: str) -> None:
        """Switch to a freshly issued code and lift an invalid-code suspension.

        An outstanding ``submit_code`` for the previous code is left to finish.
        """
        self._code = code
        self._suspended = False

    def stop(self) -> None:
        if self._timers is not None:
            self._timers.stop(POLL_TIMER)

    async def _tick(self) -> None:
        code = self._code
        if code is None or self._suspended:
            return
        outcome = await self.poll(code)
        if self._timers is None or not self._timers.active:
            _logger.debug("Discarding poll outcome %s after teardown", outcome.kind)
            return
        # The agent has provisioned the machine even if the code rotated meanwhile.
        if code != self._code and outcome.kind != OutcomeKind.CONFIRMED:
            _logger.debug("Discarding %s for a rotated-away code", outcome.kind)
            return

        if outcome.kind == OutcomeKind.INVALID_CODE:
            self._suspended = True
        elif not outcome.keeps_polling:
            self.stop()

        if self._on_outcome is not None and outcome.kind != OutcomeKind.PENDING:
            self._on_outcome(outcome)
