"""Health and metadata cadences for the configured screen."""

from __future__ import annotations

import logging
from collections.abc import Callable

from machinelink._timers import TimerGroup
from machinelink.client import AgentClient
from machinelink.config import MachineLinkConfig
from machinelink.connectivity import ConnectivityProbe
from machinelink.exceptions import AgentError
from machinelink.state.events import Advisory, StateSection, StateUpdate, StateWriter

_logger = logging.getLogger(__name__)

HEALTH_TIMER = "health"
METADATA_TIMER = "metadata"


class LivenessMonitor:
    """Keeps :class:`~machinelink.models.LivenessState` and the machine's
    name/icon fresh while the configured screen is shown.

    Both cadences live in the screen's :class:`TimerGroup`. Every write
    is checked against ``timers.active`` after the agent answers, so a
    round trip that completes after teardown leaves the store untouched.
    """

    def __init__(
        self,
        probe: ConnectivityProbe,
        agent: AgentClient,
        config: MachineLinkConfig,
        *,
        store_apply: Callable[[StateUpdate], None],
        on_advisory: Callable[[Advisory], None] | None = None,
    ) -> None:
        self._probe = probe
        self._agent = agent
        self._config = config
        self._store_apply = store_apply
        self._on_advisory = on_advisory
        self._timers: TimerGroup | None = None
        self._failing = False

    @property
    def failing(self) -> bool:
        """Whether the most recent health check failed."""
        return self._failing

    def start(self, timers: TimerGroup) -> None:
        self._timers = timers
        self._failing = False
        timers.periodic(HEALTH_TIMER, self._config.health_interval, self.check_health, immediate=True)
        timers.periodic(METADATA_TIMER, self._config.metadata_interval, self.refresh_metadata, immediate=True)

    def _live(self) -> bool:
        return self._timers is not None and self._timers.active

    async def check_health(self) -> None:
        state = await self._probe.check()
        if not self._live():
            return

        self._store_apply(
            StateUpdate(
                section=StateSection.LIVENESS,
                writer=StateWriter.LIVENESS_MONITOR,
                observed_at=state.checked_at,
                data={
                    "active": state.reachable,
                    "last_checked_at": state.checked_at,
                    "last_error": state.error,
                },
            )
        )

        if state.reachable:
            if self._failing:
                _logger.info("Agent reachable again")
                self._advise(Advisory.none())
            self._failing = False
            return

        # One advisory per failure streak; the screen stays up.
        if not self._failing:
            _logger.warning("Agent health check failed: %s", state.error)
            self._advise(Advisory.agent_unavailable())
        self._failing = True

    async def refresh_metadata(self) -> None:
        try:
            name = await self._agent.machine_info(self._config.name_key)
            icon = await self._agent.machine_info(self._config.icon_key)
        except AgentError as exc:
            _logger.debug("Machine metadata refresh failed, keeping previous values: %s", exc)
            return
        if not self._live():
            return
        self._store_apply(
            StateUpdate(
                section=StateSection.IDENTITY_METADATA,
                writer=StateWriter.LIVENESS_MONITOR,
                data={"name": name.value, "icon_url": icon.value},
            )
        )

    def _advise(self, advisory: Advisory) -> None:
        if self._on_advisory is not None:
            self._on_advisory(advisory)
