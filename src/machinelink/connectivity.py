"""Agent reachability probe."""

from __future__ import annotations

import logging

from machinelink.client import AgentClient
from machinelink.exceptions import AgentError
from machinelink.models.pairing import ConnectivityState

_logger = logging.getLogger(__name__)


class ConnectivityProbe:
    """Turns one ``ping_status`` round trip into a :class:`ConnectivityState`.

    Failures are reported as state, never raised: an agent error or a
    non-success ping code both yield ``reachable=False``.
    """

    def __init__(self, agent: AgentClient) -> None:
        self._agent = agent
        self._last: ConnectivityState | None = None

    @property
    def last(self) -> ConnectivityState | None:
        """The most recent probe result, superseded on every check."""
        return self._last

    async def check(self) -> ConnectivityState:
        try:
            response = await self._agent.ping_status()
        except AgentError as exc:
            _logger.debug("Ping failed (%s): %s", exc.kind, exc)
            state = ConnectivityState(reachable=False, error=str(exc) or exc.kind.value)
        else:
            if response.is_success:
                state = ConnectivityState(reachable=True)
            else:
                _logger.debug("Ping answered with non-success code %r", response.code)
                state = ConnectivityState(reachable=False, error=f"ping status {response.code!r}")
        self._last = state
        return state
