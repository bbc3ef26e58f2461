"""machinelink - Async pairing and liveness orchestration for a local machine agent."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("machinelink")
except PackageNotFoundError:
    __version__ = "0+local"
from machinelink.client import AgentClient
from machinelink.config import MachineLinkConfig
from machinelink.connectivity import ConnectivityProbe
from machinelink.exceptions import (
    AgentError,
    AgentErrorKind,
    AgentMalformedResponseError,
    AgentRejectedError,
    AgentUnreachableError,
    CodeIssuanceFailed,
    InvalidTransitionError,
    MachineLinkConfigError,
    MachineLinkError,
)
from machinelink.identity import IdentityResolver
from machinelink.liveness import LivenessMonitor
from machinelink.models import (
    ConnectivityState,
    DeviceIdentity,
    IdentityResolution,
    LivenessState,
    OutcomeKind,
    PairingCode,
    ProvisioningOutcome,
    ResolutionOutcome,
)
from machinelink.orchestrator import FlowSnapshot, PairingOrchestrator
from machinelink.pairing import PairingCodeManager
from machinelink.provisioning import ProvisioningPoller
from machinelink.state.events import Advisory, AdvisoryKind, FlowState, TransitionEvent
from machinelink.state.store import DeviceStateStore, DisplaySnapshot

__all__ = [
    "__version__",
    "Advisory",
    "AdvisoryKind",
    "AgentClient",
    "AgentError",
    "AgentErrorKind",
    "AgentMalformedResponseError",
    "AgentRejectedError",
    "AgentUnreachableError",
    "CodeIssuanceFailed",
    "ConnectivityProbe",
    "ConnectivityState",
    "DeviceIdentity",
    "DeviceStateStore",
    "DisplaySnapshot",
    "FlowSnapshot",
    "FlowState",
    "IdentityResolution",
    "IdentityResolver",
    "InvalidTransitionError",
    "LivenessMonitor",
    "LivenessState",
    "MachineLinkConfig",
    "MachineLinkConfigError",
    "MachineLinkError",
    "OutcomeKind",
    "PairingCode",
    "PairingCodeManager",
    "PairingOrchestrator",
    "ProvisioningOutcome",
    "ProvisioningPoller",
    "ResolutionOutcome",
    "TransitionEvent",
]
