"""Response models for the agent's request/response commands."""

from __future__ import annotations

from pydantic import field_validator

from machinelink._constants import PING_SUCCESS_CODE
from machinelink.models._base import AgentBaseModel


class PingResponse(AgentBaseModel):
    """Reply to ``get_ping_status``."""

    code: str

    @property
    def is_success(self) -> bool:
        return self.code.strip().lower() == PING_SUCCESS_CODE


class ProvisionStatusResponse(AgentBaseModel):
    """Reply to ``get_machine_provision_status``."""

    status: bool


class MachineIdResponse(AgentBaseModel):
    """Reply to ``get_machine_id``."""

    machine_id: str

    @field_validator("machine_id")
    @classmethod
    def _require_machine_id(cls, value: str) -> str:
        machine_id = value.strip()
        if not machine_id:
            raise ValueError("machine_id must be non-empty")
        return machine_id


class MachineInfoResponse(AgentBaseModel):
    """Reply to ``get_machine_info`` for a single settings key."""

    value: str = ""


class GenerateCodeResponse(AgentBaseModel):
    """Reply to ``generate_code``."""

    code: str

    @field_validator("code")
    @classmethod
    def _require_code(cls, value: str) -> str:
        code = value.strip()
        if not code:
            raise ValueError("code must be non-empty")
        return code


class SubmitCodeResponse(AgentBaseModel):
    """Reply to ``provision_code``."""

    success: bool
