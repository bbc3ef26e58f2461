"""Pairing code issuance, rotation and display countdown."""

from __future__ import annotations

import logging
from collections.abc import Callable

from machinelink._redact import mask_code
from machinelink._timers import TimerGroup
from machinelink.client import AgentClient
from machinelink.config import MachineLinkConfig
from machinelink.exceptions import AgentError, CodeIssuanceFailed
from machinelink.models.pairing import PairingCode

_logger = logging.getLogger(__name__)

ROTATION_TIMER = "rotation"
COUNTDOWN_TIMER = "countdown"


class PairingCodeManager:
    """Owns the single active :class:`PairingCode`.

    Rotation and countdown are two independent cadences. Rotation issues
    a new code every ``code_rotation_interval`` seconds until a code is
    confirmed. The countdown is display only: it ticks down once per
    ``countdown_interval``, shows zero, then wraps back to
    ``code_ttl_seconds`` on the following tick. Issuing a code resets it;
    it never triggers rotation.
    """

    def __init__(
        self,
        agent: AgentClient,
        config: MachineLinkConfig,
        *,
        on_rotated: Callable[[PairingCode], None] | None = None,
        on_issue_failed: Callable[[CodeIssuanceFailed], None] | None = None,
        on_countdown: Callable[[int], None] | None = None,
    ) -> None:
        self._agent = agent
        self._config = config
        self._on_rotated = on_rotated
        self._on_issue_failed = on_issue_failed
        self._on_countdown = on_countdown
        self._active: PairingCode | None = None
        self._remaining = config.code_ttl_seconds
        self._timers: TimerGroup | None = None

    @property
    def active(self) -> PairingCode | None:
        return self._active

    @property
    def remaining_seconds(self) -> int:
        return self._remaining

    async def issue(self) -> PairingCode:
        """Ask the agent for a fresh code and make it the active one.

        Raises
        ------
        CodeIssuanceFailed
            The agent could not issue a code. No code is active afterwards.
        """
        try:
            code = await self._generate()
        except CodeIssuanceFailed:
            self._active = None
            raise
        self._activate(code)
        return code

    async def _generate(self) -> PairingCode:
        try:
            response = await self._agent.generate_code()
        except AgentError as exc:
            raise CodeIssuanceFailed(f"Could not generate pairing code: {exc}") from exc
        return PairingCode(value=response.code, ttl_seconds=self._config.code_ttl_seconds)

    def _activate(self, code: PairingCode) -> None:
        self._active = code
        self._remaining = code.ttl_seconds
        _logger.info("Issued pairing code %s", mask_code(code.value))

    def start(self, timers: TimerGroup) -> None:
        """Start rotation and countdown inside the pairing screen's timer group."""
        self._timers = timers
        timers.periodic(ROTATION_TIMER, self._config.code_rotation_interval, self._rotate)
        timers.periodic(COUNTDOWN_TIMER, self._config.countdown_interval, self._tick)

    def stop(self) -> None:
        if self._timers is not None:
            self._timers.stop(ROTATION_TIMER)
            self._timers.stop(COUNTDOWN_TIMER)

    def confirm(self, value: str) -> PairingCode:
        """Mark *value* confirmed and stop rotating immediately.

        The agent may confirm a code that has just been rotated away; the
        machine is provisioned either way, so that code becomes the
        confirmed one.
        """
        self.stop()
        active = self._active
        if active is None or active.value != value:
            _logger.debug("Confirmation for a rotated-away code")
            active = PairingCode(value=value, ttl_seconds=self._config.code_ttl_seconds)
        self._active = active if active.confirmed else active.as_confirmed()
        return self._active

    def discard(self) -> None:
        self.stop()
        self._active = None
        self._remaining = self._config.code_ttl_seconds

    def _live(self) -> bool:
        return self._timers is not None and self._timers.active

    def _is_confirmed(self) -> bool:
        return self._active is not None and self._active.confirmed

    async def _rotate(self) -> None:
        active = self._active
        if active is not None and active.confirmed:
            self.stop()
            return
        try:
            code = await self._generate()
        except CodeIssuanceFailed as exc:
            if not self._live() or self._is_confirmed():
                return
            _logger.warning("Pairing code rotation failed: %s", exc)
            self._active = None
            self.stop()
            if self._on_issue_failed is not None:
                self._on_issue_failed(exc)
            return

        # A confirmation may have landed while the agent was generating.
        if not self._live() or self._is_confirmed():
            return
        self._activate(code)
        if self._on_rotated is not None:
            self._on_rotated(code)

    async def _tick(self) -> None:
        if self._active is None or self._active.confirmed:
            return
        if self._remaining <= 0:
            self._remaining = self._config.code_ttl_seconds
        else:
            self._remaining -= 1
        if self._on_countdown is not None:
            self._on_countdown(self._remaining)
