"""Queue names and message contracts exchanged between pipeline stages."""

from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import Field, field_validator

from bpo_engine.models.common import WireModel
from bpo_engine.models.enums import (
    CaptureSource,
    Destination,
    ReviewType,
    SyncAction,
    TransactionKind,
)

CLASSIFY_QUEUE = "queue-classify"
REVIEW_QUEUES: dict[ReviewType, str] = {
    ReviewType.CLASSIFICATION: "queue-review-classification",
    ReviewType.AUTHORIZATION: "queue-review-authorization",
}


def capture_queue(source: CaptureSource) -> str:
    """Queue consumed by the capture stage for one source system."""

    return f"queue-capture-{source.value}"


def sync_queue(destination: Destination) -> str:
    """Queue consumed by the sync stage for one destination ERP."""

    return f"queue-sync-{destination.value}"


def review_queue(review_type: ReviewType) -> str:
    return REVIEW_QUEUES[review_type]


def _message_id() -> str:
    return str(uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class BaseQueueMessage(WireModel):
    """Envelope fields shared by every stage message."""

    message_id: str = Field(default_factory=_message_id, alias="messageId")
    cycle_id: str = Field(alias="cycleId")
    client_id: str = Field(alias="clientId")
    timestamp: datetime = Field(default_factory=_now)
    retry_count: int = Field(default=0, alias="retryCount")


class CaptureConfig(WireModel):
    """Optional capture window overrides."""

    start_date: date | None = Field(default=None, alias="startDate")
    end_date: date | None = Field(default=None, alias="endDate")
    force_refresh: bool = Field(default=False, alias="forceRefresh")


class CaptureMessage(BaseQueueMessage):
    kind: Literal["capture"] = "capture"
    source: CaptureSource
    config: CaptureConfig | None = None


class ClassifyData(WireModel):
    description: str = Field(alias="descricao")
    value: Decimal = Field(alias="valor")
    kind: TransactionKind = Field(alias="tipo")
    counterpart: str | None = Field(default=None, alias="contraparte")


class ClassifyMessage(BaseQueueMessage):
    kind: Literal["classify"] = "classify"
    transaction_id: str = Field(alias="transactionId")
    transaction_data: ClassifyData = Field(alias="transactionData")


class SyncData(WireModel):
    description: str = Field(alias="descricao")
    value: Decimal = Field(alias="valor")
    due_date: date | None = Field(default=None, alias="dataVencimento")
    category_id: str | None = Field(default=None, alias="categoriaId")
    counterpart: str | None = Field(default=None, alias="contraparte")


class SyncMessage(BaseQueueMessage):
    kind: Literal["sync"] = "sync"
    transaction_id: str = Field(alias="transactionId")
    destination: Destination
    # Remote decision happens in the reconciler; this is the producer's hint.
    action: SyncAction
    data: SyncData

    @field_validator("action")
    @classmethod
    def _no_skip_on_the_wire(cls, value: SyncAction) -> SyncAction:
        if value == SyncAction.SKIP:
            raise ValueError("sync messages carry create or update only")
        return value


class ReviewSuggestion(WireModel):
    category_id: str | None = Field(default=None, alias="categoriaId")
    category_name: str | None = Field(default=None, alias="categoriaNome")
    confidence: float | None = Field(default=None, alias="confianca")


class ReviewMessage(BaseQueueMessage):
    kind: Literal["review"] = "review"
    transaction_id: str = Field(alias="transactionId")
    review_type: ReviewType = Field(alias="tipo")
    reason: str = Field(alias="motivo")
    suggestion: ReviewSuggestion | None = Field(default=None, alias="sugestao")
    duplicate_of: str | None = Field(default=None, alias="duplicadoDe")


QueueMessage = Annotated[
    Union[CaptureMessage, ClassifyMessage, SyncMessage, ReviewMessage],
    Field(discriminator="kind"),
]


def queue_for(message: BaseQueueMessage) -> str:
    """Queue a stage message is published to."""

    match message:
        case CaptureMessage(source=source):
            return capture_queue(source)
        case ClassifyMessage():
            return CLASSIFY_QUEUE
        case SyncMessage(destination=destination):
            return sync_queue(destination)
        case ReviewMessage(review_type=review_type):
            return review_queue(review_type)
        case _:
            raise TypeError(f"no queue for message type {type(message).__name__}")
