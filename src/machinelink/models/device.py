"""Display-facing device state."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class DeviceIdentity(BaseModel):
    """Resolved identity plus refreshable display metadata.

    ``id`` is fixed once resolved; ``name`` and ``icon_url`` are replaced
    together on every successful metadata refresh.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = ""
    name: str = ""
    icon_url: str = ""

    @property
    def is_resolved(self) -> bool:
        return bool(self.id)


class LivenessState(BaseModel):
    """Latest agent health observation on the configured screen."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    active: bool = False
    last_checked_at: datetime | None = None
    last_error: str | None = None
