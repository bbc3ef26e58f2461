"""Deterministic flow and write policy.

This module holds *no* I/O. It answers two questions: may the flow move
from one state to another, and which component may write which section
of the display store.
"""

from __future__ import annotations

from machinelink.state.events import FlowState, StateSection, StateWriter

_TERMINAL: frozenset[FlowState] = frozenset(
    {
        FlowState.NO_CONNECTIVITY,
        FlowState.TRANSIENT_FAILURE,
        FlowState.TIMED_OUT,
        FlowState.FAILED,
        FlowState.EXITED,
    }
)

VALID_TRANSITIONS: dict[FlowState, frozenset[FlowState]] = {
    FlowState.INIT: frozenset({FlowState.CHECKING_CONNECTIVITY}),
    FlowState.CHECKING_CONNECTIVITY: frozenset(
        {FlowState.NO_CONNECTIVITY, FlowState.CHECKING_PROVISION_STATUS}
    ),
    FlowState.CHECKING_PROVISION_STATUS: frozenset({FlowState.RESOLVING_IDENTITY, FlowState.PAIRING}),
    FlowState.PAIRING: frozenset({FlowState.POLLING_CONFIRMATION, FlowState.FAILED}),
    FlowState.POLLING_CONFIRMATION: frozenset(
        {
            FlowState.PAIRING,
            FlowState.RESOLVING_IDENTITY,
            FlowState.INVALID_CODE_SHOWN,
            FlowState.TRANSIENT_FAILURE,
            FlowState.FAILED,
        }
    ),
    FlowState.INVALID_CODE_SHOWN: frozenset({FlowState.PAIRING, FlowState.FAILED}),
    FlowState.RESOLVING_IDENTITY: frozenset({FlowState.CONFIGURED, FlowState.TIMED_OUT, FlowState.FAILED}),
    FlowState.CONFIGURED: frozenset(),
    # Terminal screens only leave through an explicit retry.
    FlowState.NO_CONNECTIVITY: frozenset({FlowState.CHECKING_CONNECTIVITY}),
    FlowState.TRANSIENT_FAILURE: frozenset({FlowState.CHECKING_CONNECTIVITY, FlowState.PAIRING}),
    FlowState.TIMED_OUT: frozenset({FlowState.RESOLVING_IDENTITY}),
    FlowState.FAILED: frozenset(
        {FlowState.CHECKING_CONNECTIVITY, FlowState.PAIRING, FlowState.RESOLVING_IDENTITY}
    ),
    FlowState.EXITED: frozenset(),
}

# Pairing screens support "back" to the connectivity check.
_BACK_SOURCES: frozenset[FlowState] = frozenset(
    {FlowState.PAIRING, FlowState.POLLING_CONFIRMATION, FlowState.INVALID_CODE_SHOWN}
)

SECTION_WRITERS: dict[StateSection, StateWriter] = {
    StateSection.IDENTITY_ID: StateWriter.IDENTITY_RESOLVER,
    StateSection.IDENTITY_METADATA: StateWriter.LIVENESS_MONITOR,
    StateSection.LIVENESS: StateWriter.LIVENESS_MONITOR,
}


def is_terminal(state: FlowState) -> bool:
    return state in _TERMINAL


def can_go_back(state: FlowState) -> bool:
    return state in _BACK_SOURCES


def is_allowed_transition(current: FlowState, target: FlowState) -> bool:
    """Whether the state machine has an edge *current* → *target*.

    Exit is always allowed; going back from a pairing screen is allowed.
    """
    if target == FlowState.EXITED:
        return current != FlowState.EXITED
    if target == FlowState.CHECKING_CONNECTIVITY and can_go_back(current):
        return True
    return target in VALID_TRANSITIONS.get(current, frozenset())


def may_write(section: StateSection, writer: StateWriter) -> bool:
    """Each section has exactly one writer."""
    return SECTION_WRITERS.get(section) == writer
