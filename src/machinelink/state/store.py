"""Single-writer display state store.

This is the only component allowed to merge state updates. Readers get
frozen snapshots, so nothing they hold can change under them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict

from machinelink.exceptions import MachineLinkError
from machinelink.models.device import DeviceIdentity, LivenessState
from machinelink.state.events import StateSection, StateUpdate
from machinelink.state.policy import may_write

_logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class DisplaySnapshot(BaseModel):
    """Read-only view handed to the presentation layer."""

    model_config = ConfigDict(frozen=True)

    identity: DeviceIdentity
    liveness: LivenessState
    taken_at: datetime


class DeviceStateStore:
    """In-memory store for the device's identity and liveness.

    Each section has exactly one writer (see
    :data:`machinelink.state.policy.SECTION_WRITERS`); a write from any
    other component is a programming error and raises.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._identity = DeviceIdentity()
        self._liveness = LivenessState()
        self.version = 0

    def apply(self, update: StateUpdate) -> None:
        """Apply a normalized state update."""
        if not may_write(update.section, update.writer):
            raise MachineLinkError(f"{update.writer} may not write {update.section}")

        if update.section == StateSection.IDENTITY_ID:
            self._apply_identity_id(str(update.data.get("id") or ""))
        elif update.section == StateSection.IDENTITY_METADATA:
            # Wholesale replacement: a refresh that omits a field clears it.
            self._identity = self._identity.model_copy(
                update={
                    "name": str(update.data.get("name") or ""),
                    "icon_url": str(update.data.get("icon_url") or ""),
                }
            )
        elif update.section == StateSection.LIVENESS:
            self._liveness = LivenessState(
                active=bool(update.data.get("active")),
                last_checked_at=update.data.get("last_checked_at") or update.observed_at,
                last_error=update.data.get("last_error"),
            )
        self.version += 1

    def _apply_identity_id(self, machine_id: str) -> None:
        if not machine_id:
            raise MachineLinkError("identity id must be non-empty")
        current = self._identity.id
        if current and current != machine_id:
            raise MachineLinkError(f"identity id already resolved as {current!r}")
        if current == machine_id:
            _logger.debug("Identity id re-resolved to the same value")
            return
        self._identity = self._identity.model_copy(update={"id": machine_id})

    @property
    def identity(self) -> DeviceIdentity:
        return self._identity

    @property
    def liveness(self) -> LivenessState:
        return self._liveness

    def snapshot(self) -> DisplaySnapshot:
        return DisplaySnapshot(identity=self._identity, liveness=self._liveness, taken_at=self._clock())
