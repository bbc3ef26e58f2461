"""Value types produced by the pairing components.

These are immutable snapshots; components replace them wholesale rather
than mutating them.
"""

from __future__ import annotations

import enum
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from machinelink.models._base import utcnow


class ConnectivityState(BaseModel):
    """Result of one agent reachability probe."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    reachable: bool
    checked_at: datetime = Field(default_factory=utcnow)
    error: str | None = None
    """Diagnostic text for an unreachable result; never affects ``reachable``."""


class PairingCode(BaseModel):
    """A short-lived code a human enters on a separate console."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    value: str
    issued_at: datetime = Field(default_factory=utcnow)
    ttl_seconds: int = 60
    confirmed: bool = False

    def as_confirmed(self) -> PairingCode:
        return self.model_copy(update={"confirmed": True})


class OutcomeKind(enum.StrEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    INVALID_CODE = "invalid_code"
    TRANSIENT_ERROR = "transient_error"


class ProvisioningOutcome(BaseModel):
    """Tagged result of one confirmation poll.

    ``reason`` and ``user_visible`` are only meaningful for
    :attr:`OutcomeKind.TRANSIENT_ERROR`. A transient error that is not
    user visible keeps polling alive; a visible one ends the pairing
    flow.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: OutcomeKind
    code: str | None = None
    reason: str | None = None
    user_visible: bool = False

    @classmethod
    def pending(cls, code: str | None = None) -> ProvisioningOutcome:
        return cls(kind=OutcomeKind.PENDING, code=code)

    @classmethod
    def confirmed(cls, code: str) -> ProvisioningOutcome:
        return cls(kind=OutcomeKind.CONFIRMED, code=code)

    @classmethod
    def invalid_code(cls, code: str) -> ProvisioningOutcome:
        return cls(kind=OutcomeKind.INVALID_CODE, code=code)

    @classmethod
    def transient_error(cls, code: str, reason: str, *, user_visible: bool) -> ProvisioningOutcome:
        return cls(kind=OutcomeKind.TRANSIENT_ERROR, code=code, reason=reason, user_visible=user_visible)

    @property
    def keeps_polling(self) -> bool:
        if self.kind == OutcomeKind.PENDING:
            return True
        return self.kind == OutcomeKind.TRANSIENT_ERROR and not self.user_visible


class ResolutionOutcome(enum.StrEnum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    FAILED = "failed"


class IdentityResolution(BaseModel):
    """Exactly one of success, timeout or failure for a single resolve call."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    outcome: ResolutionOutcome
    machine_id: str | None = None
    error: str | None = None
