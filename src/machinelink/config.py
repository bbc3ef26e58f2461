"""Client configuration for machinelink."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from machinelink._constants import AGENT_URL, MACHINE_ICON_KEY, MACHINE_NAME_KEY
from machinelink.exceptions import MachineLinkConfigError


@dataclasses.dataclass(frozen=True)
class MachineLinkConfig:
    """Orchestrator configuration.

    All periods are in seconds. Defaults are the cadences the pairing
    screens have always used; tests shrink them to milliseconds.

    Parameters
    ----------
    agent_url : str
        Base URL of the local agent's loopback endpoint.
    request_timeout : float
        Per-request socket timeout for agent round trips. A request that
        exceeds it is reported as unreachable.
    connectivity_delay : float
        Delay before the gating connectivity probe.
    code_rotation_interval : float
        A fresh pairing code is issued this often until one is confirmed.
    code_ttl_seconds : int
        Countdown start value shown next to each pairing code.
    countdown_interval : float
        Period of one countdown tick.
    poll_interval : float
        Period of confirmation polling for the active code.
    identity_initial_delay : float
        Pause between code confirmation and identity resolution.
    identity_timeout : float
        Deadline for the machine id lookup.
    health_interval : float
        Agent health cadence on the configured screen.
    metadata_interval : float
        Name/icon refresh cadence on the configured screen.
    name_key : str
        Settings key holding the machine's display name.
    icon_key : str
        Settings key holding the machine's icon URL.
    """

    agent_url: str = AGENT_URL
    request_timeout: float = 10.0
    connectivity_delay: float = 0.0
    code_rotation_interval: float = 60.0
    code_ttl_seconds: int = 60
    countdown_interval: float = 1.0
    poll_interval: float = 20.0
    identity_initial_delay: float = 3.0
    identity_timeout: float = 15.0
    health_interval: float = 10.0
    metadata_interval: float = 5.0
    name_key: str = MACHINE_NAME_KEY
    icon_key: str = MACHINE_ICON_KEY

    def __post_init__(self) -> None:
        if not self.agent_url.strip():
            raise MachineLinkConfigError("agent_url must be non-empty")
        for name in (
            "request_timeout",
            "code_rotation_interval",
            "countdown_interval",
            "poll_interval",
            "identity_timeout",
            "health_interval",
            "metadata_interval",
        ):
            if getattr(self, name) <= 0:
                raise MachineLinkConfigError(f"{name} must be positive, got {getattr(self, name)}")
        for name in ("connectivity_delay", "identity_initial_delay"):
            if getattr(self, name) < 0:
                raise MachineLinkConfigError(f"{name} must not be negative, got {getattr(self, name)}")
        if self.code_ttl_seconds <= 0:
            raise MachineLinkConfigError(f"code_ttl_seconds must be positive, got {self.code_ttl_seconds}")

    @classmethod
    def from_env(cls, **overrides: Any) -> MachineLinkConfig:
        """Create configuration from environment variables.

        Reads optional ``MACHINELINK_*`` variables. Explicit keyword
        arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        MachineLinkConfig
            Populated configuration.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "MACHINELINK_AGENT_URL": "agent_url",
            "MACHINELINK_NAME_KEY": "name_key",
            "MACHINELINK_ICON_KEY": "icon_key",
        }
        _ENV_FLOAT_MAP = {
            "MACHINELINK_REQUEST_TIMEOUT": "request_timeout",
            "MACHINELINK_CONNECTIVITY_DELAY": "connectivity_delay",
            "MACHINELINK_CODE_ROTATION_INTERVAL": "code_rotation_interval",
            "MACHINELINK_COUNTDOWN_INTERVAL": "countdown_interval",
            "MACHINELINK_POLL_INTERVAL": "poll_interval",
            "MACHINELINK_IDENTITY_INITIAL_DELAY": "identity_initial_delay",
            "MACHINELINK_IDENTITY_TIMEOUT": "identity_timeout",
            "MACHINELINK_HEALTH_INTERVAL": "health_interval",
            "MACHINELINK_METADATA_INTERVAL": "metadata_interval",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None:
                config_kwargs[field_name] = val

        for env_key, field_name in _ENV_FLOAT_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = float(val)
            except ValueError as exc:
                raise MachineLinkConfigError(f"{env_key} must be a number, got {val!r}") from exc

        # code_ttl_seconds is integral, handle separately
        ttl_env = env.get("MACHINELINK_CODE_TTL_SECONDS")
        if ttl_env is not None and "code_ttl_seconds" not in overrides:
            try:
                config_kwargs["code_ttl_seconds"] = int(ttl_env)
            except ValueError as exc:
                raise MachineLinkConfigError(f"MACHINELINK_CODE_TTL_SECONDS must be an integer, got {ttl_env!r}") from exc

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
