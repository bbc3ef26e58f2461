from __future__ import annotations

import asyncio
import inspect
from collections.abc import Mapping
from typing import Any

import pytest

from machinelink.client import AgentClient
from machinelink.config import MachineLinkConfig
from machinelink.exceptions import AgentUnreachableError


class ScriptedTransport:
    """In-memory agent: one scripted reply per command.

    A reply may be a dict, an exception instance (raised), a callable
    taking the payload (sync or async), or a list consumed one item per
    call with the last item repeating.
    """

    def __init__(self, replies: Mapping[str, Any] | None = None) -> None:
        self.replies: dict[str, Any] = dict(replies or {})
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.call_times: dict[str, list[float]] = {}
        self.timeouts: list[float | None] = []

    def reply(self, command: str, value: Any) -> None:
        self.replies[command] = value

    def count(self, command: str) -> int:
        return sum(1 for name, _ in self.calls if name == command)

    async def call(
        self, command: str, payload: Mapping[str, Any], *, timeout: float | None = None
    ) -> dict[str, Any]:
        self.calls.append((command, dict(payload)))
        self.timeouts.append(timeout)
        self.call_times.setdefault(command, []).append(asyncio.get_running_loop().time())

        reply = self.replies.get(command)
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if callable(reply):
            reply = reply(dict(payload))
            if inspect.isawaitable(reply):
                reply = await reply
        if isinstance(reply, BaseException):
            raise reply
        if reply is None:
            raise AgentUnreachableError(f"no scripted reply for {command}", command=command)
        return dict(reply)


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def agent(transport: ScriptedTransport) -> AgentClient:
    return AgentClient(transport=transport)


@pytest.fixture
def fast_config() -> MachineLinkConfig:
    return MachineLinkConfig(
        request_timeout=1.0,
        code_rotation_interval=0.3,
        code_ttl_seconds=3,
        countdown_interval=0.02,
        poll_interval=0.05,
        identity_initial_delay=0.0,
        identity_timeout=0.2,
        health_interval=0.05,
        metadata_interval=0.05,
    )
