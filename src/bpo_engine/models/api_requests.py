from __future__ import annotations

from typing import Annotated

from pydantic import AliasChoices, Field

from bpo_engine.models.common import StrictModel


class StartCycleRequest(StrictModel):
    """Request payload for starting a daily cycle."""

    # Main field name is `client_id`; accept `clienteId` from older callers.
    client_id: str | None = Field(default=None, validation_alias=AliasChoices("client_id", "clienteId"))
    force: bool = False


class ApproveAuthorizationRequest(StrictModel):
    """Reviewer sign-off on a pending authorization."""

    notes: str | None = None
    user_id: str | None = None


class RejectAuthorizationRequest(StrictModel):
    """Reviewer refusal of a pending authorization; a reason is mandatory."""

    reason: Annotated[str, Field(min_length=1)]
    user_id: str | None = None


class ResolveDoubtRequest(StrictModel):
    """Category chosen by the reviewer for an enrichment doubt."""

    category_id: Annotated[str, Field(min_length=1)]
    category_name: Annotated[str, Field(min_length=1)]
    notes: str | None = None
    user_id: str | None = None


class SkipDoubtRequest(StrictModel):
    """Postpone a doubt without deciding it."""

    reason: str | None = None
    user_id: str | None = None
