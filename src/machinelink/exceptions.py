"""Custom exception hierarchy for machinelink."""

from __future__ import annotations

import enum


class MachineLinkError(Exception):
    """Base exception for all machinelink errors."""


class MachineLinkConfigError(MachineLinkError):
    """Invalid or missing configuration."""


class AgentErrorKind(enum.StrEnum):
    """How an agent round trip failed."""

    UNREACHABLE = "unreachable"
    REJECTED = "rejected"
    MALFORMED_RESPONSE = "malformed_response"


class AgentError(MachineLinkError):
    """A single agent round trip failed.

    Callers branch on :attr:`kind` (or on the concrete subclass); the
    message carries the agent's own error text where there was one.
    """

    kind: AgentErrorKind = AgentErrorKind.REJECTED

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        status_code: int | None = None,
    ) -> None:
        self.command = command
        self.status_code = status_code
        super().__init__(message)


class AgentUnreachableError(AgentError):
    """The agent could not be reached (connection refused, timeout, network down)."""

    kind = AgentErrorKind.UNREACHABLE


class AgentRejectedError(AgentError):
    """The agent answered but declined the request."""

    kind = AgentErrorKind.REJECTED


class AgentMalformedResponseError(AgentError):
    """The agent's reply could not be parsed.

    Also raised when the agent itself reports a ``ParseResponseError``
    from the provisioning backend; both cases are transient from the
    caller's point of view.
    """

    kind = AgentErrorKind.MALFORMED_RESPONSE


class CodeIssuanceFailed(MachineLinkError):
    """The agent could not generate a pairing code.

    No pairing code is active after this is raised.
    """


class InvalidTransitionError(MachineLinkError):
    """The orchestrator was asked to move along an edge its state machine does not have."""
