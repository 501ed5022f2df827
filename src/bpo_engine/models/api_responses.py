from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Literal

from pydantic import Field

from bpo_engine.models.common import CycleError, StrictModel
from bpo_engine.models.enums import CycleRuntimeStatus, CycleStatus
from bpo_engine.models.internal import (
    Cycle,
    EnrichmentDoubt,
    HistoryAction,
    PendingAuthorization,
)
from bpo_engine.models.version import SCHEMA_VERSION


class StartCycleResponse(StrictModel):
    """Acknowledgement for an accepted cycle start."""

    schema_version: Literal["v1"] = SCHEMA_VERSION
    cycle_id: str
    instance_id: str
    status: CycleStatus
    clients: list[str] = Field(default_factory=list)
    accepted: bool = True


class CycleCounters(StrictModel):
    clients_total: int
    clients_processed: int
    clients_failed: int
    transactions_captured: int
    transactions_classified: int
    transactions_synced: int
    transactions_review: int


class CycleStatusResponse(StrictModel):
    """Public cycle state: persisted record plus runtime execution status."""

    schema_version: Literal["v1"] = SCHEMA_VERSION
    cycle_id: str
    instance_id: str
    cycle_date: date
    status: CycleStatus
    runtime_status: CycleRuntimeStatus
    forced: bool
    counters: CycleCounters
    pending_clients: list[str] = Field(default_factory=list)
    errors: list[CycleError] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None

    @classmethod
    def from_record(cls, cycle: Cycle, runtime_status: CycleRuntimeStatus) -> "CycleStatusResponse":
        """Map internal cycle record to stable public response shape."""

        return cls(
            cycle_id=cycle.cycle_id,
            instance_id=cycle.instance_id,
            cycle_date=cycle.cycle_date,
            status=cycle.status,
            runtime_status=runtime_status,
            forced=cycle.forced,
            counters=CycleCounters(
                clients_total=cycle.clients_total,
                clients_processed=cycle.clients_processed,
                clients_failed=cycle.clients_failed,
                transactions_captured=cycle.transactions_captured,
                transactions_classified=cycle.transactions_classified,
                transactions_synced=cycle.transactions_synced,
                transactions_review=cycle.transactions_review,
            ),
            pending_clients=list(cycle.pending_clients),
            errors=list(cycle.errors),
            started_at=cycle.started_at,
            completed_at=cycle.completed_at,
            duration_ms=cycle.duration_ms,
        )


class AuthorizationListResponse(StrictModel):
    schema_version: Literal["v1"] = SCHEMA_VERSION
    total: int
    total_value: Decimal
    items: list[PendingAuthorization]


class DoubtListResponse(StrictModel):
    schema_version: Literal["v1"] = SCHEMA_VERSION
    total: int
    items: list[EnrichmentDoubt]


class HistoryListResponse(StrictModel):
    schema_version: Literal["v1"] = SCHEMA_VERSION
    total: int
    items: list[HistoryAction]


class ActionResponse(StrictModel):
    """Result of one reviewer action on an authorization or doubt."""

    schema_version: Literal["v1"] = SCHEMA_VERSION
    id: str
    status: str
    transaction_id: str
    message: str | None = None
