from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any
from uuid import uuid4

from pydantic import Field

from bpo_engine.models.common import CycleError, StrictModel
from bpo_engine.models.enums import (
    AuthorizationStatus,
    CaptureSource,
    ClientStatus,
    CycleStatus,
    Destination,
    DoubtStatus,
    DoubtType,
    HistoryActionType,
    TransactionKind,
    TransactionStatus,
)


def utcnow() -> datetime:
    """Timezone-aware current timestamp used across records."""

    return datetime.now(UTC)


class Category(StrictModel):
    """One entry of a client's chart of categories."""

    category_id: str
    name: str
    group: str | None = None  # despesa / receita / transferencia


class CategoryAssignment(StrictModel):
    """Category chosen for a transaction and how sure we are about it."""

    category_id: str
    category_name: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClientLimits(StrictModel):
    """Per-client throughput caps; None means unlimited."""

    max_transactions_per_day: int | None = Field(default=None, ge=1)


class ClientConfig(StrictModel):
    """Per-client integration and notification preferences."""

    sources: list[CaptureSource] = Field(default_factory=list)
    categories: list[Category] = Field(default_factory=list)
    notify_email: str | None = None
    notifications_enabled: bool = True
    materiality_threshold: Decimal | None = None
    limits: ClientLimits = Field(default_factory=ClientLimits)


class Client(StrictModel):
    """Registered business client; read-only to the pipeline."""

    client_id: str
    name: str
    destination: Destination | None = None
    status: ClientStatus = ClientStatus.ACTIVE
    config: ClientConfig = Field(default_factory=ClientConfig)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == ClientStatus.ACTIVE


class CapturedTransaction(StrictModel):
    """Raw transaction as returned by a capture connector."""

    source_id: str
    kind: TransactionKind
    value: Decimal
    description: str
    counterpart: str | None = None
    due_date: date | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class Transaction(StrictModel):
    """Persisted transaction owned by the record store."""

    transaction_id: str
    client_id: str
    kind: TransactionKind
    source: CaptureSource
    source_id: str
    value: Decimal
    description: str
    counterpart: str | None = None
    due_date: date | None = None
    category: CategoryAssignment | None = None
    external_ids: dict[Destination, str] = Field(default_factory=dict)
    status: TransactionStatus = TransactionStatus.NEW
    last_error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_capture(
        cls,
        *,
        client_id: str,
        source: CaptureSource,
        captured: CapturedTransaction,
    ) -> "Transaction":
        """Build a fresh `new` transaction from connector output."""

        return cls(
            transaction_id=f"tx-{uuid4().hex}",
            client_id=client_id,
            kind=captured.kind,
            source=source,
            source_id=captured.source_id,
            value=captured.value,
            description=captured.description,
            counterpart=captured.counterpart,
            due_date=captured.due_date,
        )


class Cycle(StrictModel):
    """Persisted state-machine record for one daily cycle run."""

    cycle_id: str
    instance_id: str
    cycle_date: date
    status: CycleStatus = CycleStatus.PENDING
    forced: bool = False
    clients_total: int = 0
    clients_processed: int = 0
    clients_failed: int = 0
    transactions_captured: int = 0
    transactions_classified: int = 0
    transactions_synced: int = 0
    transactions_review: int = 0
    pending_clients: list[str] = Field(default_factory=list)
    errors: list[CycleError] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int | None = None

    @classmethod
    def new(cls, *, cycle_date: date, client_ids: list[str], forced: bool) -> "Cycle":
        """Build a pending cycle; forced reruns get an instance-suffixed id."""

        instance_id = uuid4().hex
        cycle_id = cycle_date.isoformat()
        if forced:
            cycle_id = f"{cycle_id}-{instance_id[:8]}"
        return cls(
            cycle_id=cycle_id,
            instance_id=instance_id,
            cycle_date=cycle_date,
            forced=forced,
            clients_total=len(client_ids),
            pending_clients=list(client_ids),
        )


class PendingAuthorization(StrictModel):
    """Human sign-off required before a transaction may be synchronized."""

    authorization_id: str
    client_id: str
    transaction_id: str
    cycle_id: str | None = None
    kind: TransactionKind
    description: str
    value: Decimal
    due_date: date | None = None
    counterpart: str | None = None
    category_name: str | None = None
    reason: str
    status: AuthorizationStatus = AuthorizationStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    notes: str | None = None

    @staticmethod
    def id_for(transaction_id: str) -> str:
        return f"auth-{transaction_id}"


class EnrichmentDoubt(StrictModel):
    """Ambiguous classification or suspected duplicate awaiting a reviewer."""

    doubt_id: str
    client_id: str
    transaction_id: str
    cycle_id: str | None = None
    doubt_type: DoubtType
    reason: str
    description: str
    value: Decimal
    suggested_category_id: str | None = None
    suggested_category_name: str | None = None
    suggested_confidence: float | None = None
    options: list[Category] = Field(default_factory=list)
    status: DoubtStatus = DoubtStatus.PENDING
    skip_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    resolution: dict[str, Any] | None = None
    notes: str | None = None

    @staticmethod
    def id_for(doubt_type: DoubtType, transaction_id: str) -> str:
        return f"doubt-{doubt_type.value}-{transaction_id}"


class HistoryAction(StrictModel):
    """Audit entry for one reviewer action."""

    history_id: str = Field(default_factory=lambda: f"hist-{uuid4().hex}")
    client_id: str
    action: HistoryActionType
    description: str
    user_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class FeedbackRecord(StrictModel):
    """Human correction forwarded to the model-improvement collaborator."""

    transaction_id: str
    client_id: str
    original_category_id: str | None = None
    original_category_name: str | None = None
    original_confidence: float | None = None
    human_category_id: str
    human_category_name: str
    user_id: str | None = None
    comment: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class DailySummary(StrictModel):
    """Per-client outcome of one cycle, sent to the client's contact."""

    client_id: str
    client_name: str
    cycle_id: str
    cycle_date: date
    captured: int = 0
    classified: int = 0
    synced: int = 0
    in_review: int = 0
    errors: int = 0
    pending_authorizations: int = 0
    pending_doubts: int = 0
