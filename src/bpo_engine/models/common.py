from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from bpo_engine.models.enums import Stage


class StrictModel(BaseModel):
    """Base model that rejects unknown fields to keep schema strict."""

    model_config = ConfigDict(extra="forbid")


class WireModel(StrictModel):
    """Strict model that accepts both field names and wire aliases."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class CycleError(StrictModel):
    """One stage failure recorded on a cycle for operator diagnosis."""

    client_id: str
    stage: Stage
    message: str
    transaction_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
