"""Bounded resolution of the provisioned machine's identity."""

from __future__ import annotations

import logging
from collections.abc import Callable

from machinelink._timers import race_deadline
from machinelink.client import AgentClient
from machinelink.config import MachineLinkConfig
from machinelink.exceptions import MachineLinkError
from machinelink.models.pairing import IdentityResolution, ResolutionOutcome
from machinelink.state.events import StateSection, StateUpdate, StateWriter

_logger = logging.getLogger(__name__)


class IdentityResolver:
    """Races ``machine_id`` against a deadline.

    Every call yields exactly one of success, timeout or failure. A
    failure that arrives before the deadline is ``FAILED``, never
    ``TIMEOUT``; the distinction drives two different screens.
    """

    def __init__(
        self,
        agent: AgentClient,
        config: MachineLinkConfig,
        *,
        store_apply: Callable[[StateUpdate], None],
    ) -> None:
        self._agent = agent
        self._config = config
        self._store_apply = store_apply
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def resolve(self, timeout: float | None = None) -> IdentityResolution:
        """Resolve the machine id within *timeout* seconds.

        Parameters
        ----------
        timeout
            Deadline in seconds. Falls back to ``config.identity_timeout``.

        Raises
        ------
        MachineLinkError
            A resolution is already in flight.
        """
        if self._in_flight:
            raise MachineLinkError("identity resolution already in flight")
        deadline = timeout if timeout is not None else self._config.identity_timeout

        self._in_flight = True
        try:
            # The transport timeout must not fire before the deadline does.
            lookup = self._agent.machine_id(timeout=deadline + self._config.request_timeout)
            race = await race_deadline(lookup, deadline)
        finally:
            self._in_flight = False

        if race.timed_out:
            _logger.warning("Machine id not resolved within %.1fs", deadline)
            return IdentityResolution(outcome=ResolutionOutcome.TIMEOUT)

        if race.error is not None:
            _logger.warning("Machine id lookup failed: %s", race.error)
            return IdentityResolution(outcome=ResolutionOutcome.FAILED, error=str(race.error) or repr(race.error))

        assert race.value is not None  # noqa: S101
        machine_id = race.value.machine_id
        try:
            self._store_apply(
                StateUpdate(
                    section=StateSection.IDENTITY_ID,
                    writer=StateWriter.IDENTITY_RESOLVER,
                    data={"id": machine_id},
                )
            )
        except MachineLinkError as exc:
            return IdentityResolution(outcome=ResolutionOutcome.FAILED, error=str(exc))

        _logger.info("Resolved machine id %s", machine_id)
        return IdentityResolution(outcome=ResolutionOutcome.SUCCESS, machine_id=machine_id)
