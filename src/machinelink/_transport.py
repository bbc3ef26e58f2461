"""Loopback HTTP transport to the local agent."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from machinelink._constants import PARSE_RESPONSE_ERROR_CODE, USER_AGENT
from machinelink._redact import redact_for_log
from machinelink.config import MachineLinkConfig
from machinelink.exceptions import (
    AgentError,
    AgentMalformedResponseError,
    AgentRejectedError,
    AgentUnreachableError,
)

_logger = logging.getLogger(__name__)


class AgentTransport(Protocol):
    """Structural transport interface used by :class:`~machinelink.client.AgentClient`.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (`HttpAgentTransport`) concrete.
    Implementations raise :class:`~machinelink.exceptions.AgentError`
    subclasses and nothing else.
    """

    async def call(
        self, command: str, payload: Mapping[str, Any], *, timeout: float | None = None
    ) -> dict[str, Any]:
        ...


def agent_error_from_message(message: str, *, command: str, status_code: int | None = None) -> AgentError:
    """Build the error for an agent-reported failure message.

    A provisioning ``ParseResponseError`` means the agent could not parse
    its upstream's reply, which callers treat like a malformed response.
    """
    if PARSE_RESPONSE_ERROR_CODE.lower() in message.lower():
        return AgentMalformedResponseError(message, command=command, status_code=status_code)
    return AgentRejectedError(message, command=command, status_code=status_code)


class HttpAgentTransport:
    """POST ``{agent_url}/{command}`` with a JSON body, one request per call."""

    def __init__(
        self,
        config: MachineLinkConfig,
        http_session: aiohttp.ClientSession,
    ) -> None:
        self._config = config
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    async def call(
        self, command: str, payload: Mapping[str, Any], *, timeout: float | None = None
    ) -> dict[str, Any]:
        """POST one command; *timeout* overrides ``request_timeout`` for this call."""
        url = f"{self._config.agent_url.rstrip('/')}/{command}"
        headers = {
            "content-type": "application/json; charset=UTF-8",
            "user-agent": USER_AGENT,
        }

        client_timeout = self._timeout if timeout is None else aiohttp.ClientTimeout(total=timeout)
        _logger.debug("POST %s %s", url, redact_for_log(dict(payload)))

        try:
            async with self._http.post(url, json=dict(payload), headers=headers, timeout=client_timeout) as resp:
                text = await resp.text()
                status = resp.status
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise AgentUnreachableError(
                f"Agent request {command} failed: {exc!r}",
                command=command,
            ) from exc

        body: Any = None
        if text.strip():
            try:
                body = json.loads(text)
            except json.JSONDecodeError as exc:
                if status >= 400:
                    raise agent_error_from_message(
                        f"HTTP {status} from {command}: {text[:200]}",
                        command=command,
                        status_code=status,
                    ) from exc
                raise AgentMalformedResponseError(
                    f"Invalid JSON from {command}: {text[:200]}",
                    command=command,
                    status_code=status,
                ) from exc

        if isinstance(body, dict) and body.get("error"):
            raise agent_error_from_message(str(body["error"]), command=command, status_code=status)

        if status >= 400:
            raise agent_error_from_message(
                f"HTTP {status} from {command}: {text[:200]}",
                command=command,
                status_code=status,
            )

        if body is None:
            return {}
        if not isinstance(body, dict):
            raise AgentMalformedResponseError(
                f"Expected a JSON object from {command}, got {type(body).__name__}",
                command=command,
                status_code=status,
            )
        return body
