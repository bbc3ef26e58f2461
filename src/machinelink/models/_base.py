"""Base model for agent responses.

Every agent response model inherits from :class:`AgentBaseModel` which
provides:

* frozen instances (responses are facts, not state),
* ``extra="ignore"`` so newer agents can add fields freely,
* a ``model_validator(mode="before")`` that drops ``None`` values so the
  field default is used instead,
* a ``raw`` dict that captures the original payload.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(UTC)


class AgentBaseModel(BaseModel):
    """Base for agent response models."""

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
    )

    raw: dict[str, Any] = Field(default_factory=dict)
    """Original agent response dict."""

    @model_validator(mode="before")
    @classmethod
    def _clean_agent_values(cls, values: Any) -> Any:
        """Drop ``None`` values and stash the raw payload."""
        if not isinstance(values, dict):
            return values
        original = dict(values)
        cleaned = {key: value for key, value in original.items() if value is not None}

        # Only auto-stash raw when not explicitly provided (i.e. model_validate
        # from an agent dict).
        if "raw" not in values:
            cleaned["raw"] = original
        return cleaned
