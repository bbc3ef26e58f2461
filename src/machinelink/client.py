"""Typed async client for the local agent."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, TypeVar

import aiohttp
from pydantic import ValidationError

from machinelink._constants import (
    CMD_EXIT,
    CMD_GENERATE_CODE,
    CMD_MACHINE_ID,
    CMD_MACHINE_INFO,
    CMD_PING_STATUS,
    CMD_PROVISION_STATUS,
    CMD_SUBMIT_CODE,
)
from machinelink._transport import AgentTransport, HttpAgentTransport
from machinelink.config import MachineLinkConfig
from machinelink.exceptions import AgentError, AgentMalformedResponseError, MachineLinkError
from machinelink.models._base import AgentBaseModel
from machinelink.models.agent import (
    GenerateCodeResponse,
    MachineIdResponse,
    MachineInfoResponse,
    PingResponse,
    ProvisionStatusResponse,
    SubmitCodeResponse,
)

_logger = logging.getLogger(__name__)

M = TypeVar("M", bound=AgentBaseModel)


class AgentClient:
    """Async client for the agent's request/response commands.

    Every method is exactly one round trip. Nothing is retried and
    nothing is cached; retry policy belongs to the caller.

    Usage::

        async with AgentClient(config) as agent:
            status = await agent.provision_status()
    """

    def __init__(
        self,
        config: MachineLinkConfig | None = None,
        *,
        session: aiohttp.ClientSession | None = None,
        transport: AgentTransport | None = None,
    ) -> None:
        self._config = config or MachineLinkConfig()
        self._external_session = session is not None
        self._http_session = session
        self._transport: AgentTransport | None = transport
        self._external_transport = transport is not None

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> AgentClient:
        if self._transport is None:
            if self._http_session is None:
                self._http_session = aiohttp.ClientSession()
            self._transport = HttpAgentTransport(self._config, self._http_session)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None
        if not self._external_transport:
            self._transport = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_transport(self) -> AgentTransport:
        if self._transport is None:
            raise MachineLinkError("Client not initialized. Use 'async with AgentClient(...) as agent:'")
        return self._transport

    async def _request(
        self,
        command: str,
        model: type[M],
        payload: Mapping[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> M:
        transport = self._require_transport()
        body = await transport.call(command, payload or {}, timeout=timeout)
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            raise AgentMalformedResponseError(
                f"Unexpected {command} response: {exc.error_count()} validation error(s)",
                command=command,
            ) from exc

    # ------------------------------------------------------------------
    # Agent commands
    # ------------------------------------------------------------------

    async def ping_status(self) -> PingResponse:
        """Ask the agent whether it (and its network) is up."""
        return await self._request(CMD_PING_STATUS, PingResponse)

    async def provision_status(self) -> ProvisionStatusResponse:
        """Ask whether this machine is already provisioned."""
        return await self._request(CMD_PROVISION_STATUS, ProvisionStatusResponse)

    async def machine_id(self, *, timeout: float | None = None) -> MachineIdResponse:
        """Fetch the provisioned machine's stable id.

        *timeout* replaces ``request_timeout`` for this round trip, for
        callers that bound the lookup with a deadline of their own.
        """
        return await self._request(CMD_MACHINE_ID, MachineIdResponse, timeout=timeout)

    async def machine_info(self, key: str) -> MachineInfoResponse:
        """Read one settings value (display name, icon URL) from the agent."""
        return await self._request(CMD_MACHINE_INFO, MachineInfoResponse, {"key": key})

    async def generate_code(self) -> GenerateCodeResponse:
        """Have the agent issue a fresh pairing code."""
        return await self._request(CMD_GENERATE_CODE, GenerateCodeResponse)

    async def submit_code(self, code: str) -> SubmitCodeResponse:
        """Ask whether *code* has been confirmed from the console."""
        return await self._request(CMD_SUBMIT_CODE, SubmitCodeResponse, {"code": code})

    async def exit(self) -> None:
        """Tell the agent the shell is exiting. Best effort, never raises."""
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.call(CMD_EXIT, {})
        except AgentError:
            _logger.debug("Agent exit request failed", exc_info=True)
