from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import date
from decimal import Decimal
from typing import Protocol

from bpo_engine.models.enums import (
    AuthorizationStatus,
    CaptureSource,
    DoubtStatus,
    DoubtType,
    TransactionKind,
    TransactionStatus,
)
from bpo_engine.models.internal import (
    CategoryAssignment,
    CapturedTransaction,
    Client,
    Cycle,
    DailySummary,
    EnrichmentDoubt,
    FeedbackRecord,
    HistoryAction,
    PendingAuthorization,
    Transaction,
)
from bpo_engine.models.messages import BaseQueueMessage

MessageHandler = Callable[[BaseQueueMessage], Awaitable[None]]


class ClientRepository(Protocol):
    """Read access to the registered client base."""

    async def get(self, client_id: str) -> Client | None:
        """Load one client by id."""

        ...

    async def list_active(self) -> list[Client]:
        """Return clients eligible for a cycle."""

        ...


class TransactionRepository(Protocol):
    """Persistence contract for transactions."""

    async def get(self, transaction_id: str) -> Transaction | None:
        """Load one transaction by id."""

        ...

    async def save(self, transaction: Transaction) -> None:
        """Insert or update one transaction."""

        ...

    async def find_by_source(
        self, client_id: str, source: CaptureSource, source_id: str
    ) -> Transaction | None:
        """Find the transaction captured from a given source record."""

        ...

    async def list_by_status(
        self, client_id: str, status: TransactionStatus
    ) -> list[Transaction]:
        """List a client's transactions currently at `status`."""

        ...

    async def find_duplicates(self, transaction: Transaction) -> list[Transaction]:
        """Earlier live transactions of the client with the same value, counterpart and due date."""

        ...


class CycleRepository(Protocol):
    """Persistence contract for cycle records."""

    async def create(self, cycle: Cycle) -> None:
        """Persist a new cycle record."""

        ...

    async def get(self, cycle_id: str) -> Cycle | None:
        """Load one cycle by id."""

        ...

    async def save(self, cycle: Cycle) -> None:
        """Update a cycle; terminal records are never overwritten."""

        ...

    async def list_by_date(self, cycle_date: date) -> list[Cycle]:
        """List every cycle recorded for a date."""

        ...


class ReviewRepository(Protocol):
    """Persistence contract for authorizations, doubts and review history."""

    async def get_authorization(self, authorization_id: str) -> PendingAuthorization | None:
        ...

    async def save_authorization(self, authorization: PendingAuthorization) -> None:
        ...

    async def list_authorizations(
        self,
        *,
        status: AuthorizationStatus | None = None,
        client_id: str | None = None,
        kind: TransactionKind | None = None,
    ) -> list[PendingAuthorization]:
        ...

    async def get_doubt(self, doubt_id: str) -> EnrichmentDoubt | None:
        ...

    async def save_doubt(self, doubt: EnrichmentDoubt) -> None:
        ...

    async def list_doubts(
        self,
        *,
        status: DoubtStatus | None = None,
        client_id: str | None = None,
        doubt_type: DoubtType | None = None,
    ) -> list[EnrichmentDoubt]:
        ...

    async def add_history(self, action: HistoryAction) -> None:
        ...

    async def list_history(
        self, *, client_id: str | None = None, limit: int = 100
    ) -> list[HistoryAction]:
        """Latest reviewer actions first."""

        ...


class MessageBroker(Protocol):
    """Queue abstraction shared by stages, review gate and worker."""

    def register_handler(self, queue_name: str, handler: MessageHandler) -> None:
        """Bind the consumer for one queue."""

        ...

    async def publish(self, queue_name: str, message: BaseQueueMessage) -> None:
        """Enqueue one message."""

        ...


class CaptureConnector(Protocol):
    """One external source of financial transactions."""

    async def fetch(
        self, client: Client, start_date: date, end_date: date
    ) -> list[CapturedTransaction]:
        """Return transactions the source holds for the window."""

        ...


class CategoryScorer(Protocol):
    """Suggests a category for a transaction with a confidence score."""

    async def score(self, client: Client, transaction: Transaction) -> CategoryAssignment:
        ...


class DestinationConnector(Protocol):
    """Client ERP that receives approved transactions."""

    async def find_existing(
        self,
        client: Client,
        *,
        description: str,
        value: Decimal,
        due_date: date | None,
        window_days: int,
    ) -> str | None:
        """Return the id of a matching remote record, if any."""

        ...

    async def create(self, client: Client, transaction: Transaction) -> str:
        """Create a remote record and return its id."""

        ...

    async def update(self, client: Client, external_id: str, transaction: Transaction) -> None:
        """Overwrite an existing remote record."""

        ...


class FeedbackSink(Protocol):
    """Receives human corrections for model improvement."""

    async def record(self, feedback: FeedbackRecord) -> None:
        ...


class Notifier(Protocol):
    """Delivers the daily summary to a client's contact."""

    async def send(self, client: Client, summary: DailySummary) -> None:
        ...
