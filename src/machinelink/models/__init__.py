"""Typed models for agent responses and pairing state."""

from machinelink.models._base import AgentBaseModel
from machinelink.models.agent import (
    GenerateCodeResponse,
    MachineIdResponse,
    MachineInfoResponse,
    PingResponse,
    ProvisionStatusResponse,
    SubmitCodeResponse,
)
from machinelink.models.device import DeviceIdentity, LivenessState
from machinelink.models.pairing import (
    ConnectivityState,
    IdentityResolution,
    OutcomeKind,
    PairingCode,
    ProvisioningOutcome,
    ResolutionOutcome,
)

__all__ = [
    "AgentBaseModel",
    "ConnectivityState",
    "DeviceIdentity",
    "GenerateCodeResponse",
    "IdentityResolution",
    "LivenessState",
    "MachineIdResponse",
    "MachineInfoResponse",
    "OutcomeKind",
    "PairingCode",
    "PingResponse",
    "ProvisionStatusResponse",
    "ProvisioningOutcome",
    "ResolutionOutcome",
    "SubmitCodeResponse",
]
