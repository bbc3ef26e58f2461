"""Flow states, advisories and normalized state updates.

Components never write display state directly. They hand
:class:`StateUpdate` events to the store's ``apply`` callable, and the
orchestrator publishes :class:`TransitionEvent` values upward.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FlowState(StrEnum):
    INIT = "init"
    CHECKING_CONNECTIVITY = "checking_connectivity"
    NO_CONNECTIVITY = "no_connectivity"
    CHECKING_PROVISION_STATUS = "checking_provision_status"
    PAIRING = "pairing"
    POLLING_CONFIRMATION = "polling_confirmation"
    INVALID_CODE_SHOWN = "invalid_code_shown"
    TRANSIENT_FAILURE = "transient_failure"
    RESOLVING_IDENTITY = "resolving_identity"
    CONFIGURED = "configured"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    EXITED = "exited"


class AdvisoryKind(StrEnum):
    NONE = "none"
    INCORRECT_CODE = "incorrect_code"
    AGENT_UNAVAILABLE = "agent_unavailable"
    ERROR = "error"


class Advisory(BaseModel):
    """The single dialog or toast currently shown over a screen."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: AdvisoryKind = AdvisoryKind.NONE
    message: str | None = None

    @classmethod
    def none(cls) -> Advisory:
        return cls()

    @classmethod
    def incorrect_code(cls) -> Advisory:
        return cls(kind=AdvisoryKind.INCORRECT_CODE, message="Incorrect code, a new code is on its way")

    @classmethod
    def agent_unavailable(cls, detail: str | None = None) -> Advisory:
        message = "Machine Agent not running or not internet connectivity"
        if detail:
            message = f"{message} ({detail})"
        return cls(kind=AdvisoryKind.AGENT_UNAVAILABLE, message=message)

    @classmethod
    def error(cls, message: str) -> Advisory:
        return cls(kind=AdvisoryKind.ERROR, message=message)


class TransitionEvent(BaseModel):
    """One screen change (or advisory change on the same screen)."""

    model_config = ConfigDict(frozen=True)

    state: FlowState
    previous: FlowState | None = None
    advisory: Advisory = Field(default_factory=Advisory)
    payload: dict[str, Any] = Field(default_factory=dict)
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_advisory_only(self) -> bool:
        return self.previous == self.state


class StateWriter(StrEnum):
    """Components allowed to write display state."""

    IDENTITY_RESOLVER = "identity_resolver"
    LIVENESS_MONITOR = "liveness_monitor"


class StateSection(StrEnum):
    IDENTITY_ID = "identity_id"
    IDENTITY_METADATA = "identity_metadata"
    LIVENESS = "liveness"


class StateUpdate(BaseModel):
    """A normalized write to one section of the display store."""

    model_config = ConfigDict(frozen=True)

    section: StateSection
    writer: StateWriter
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    data: dict[str, Any] = Field(default_factory=dict)
