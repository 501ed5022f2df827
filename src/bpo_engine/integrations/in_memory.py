from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from loguru import logger

from bpo_engine.errors import CycleConflictError, PipelineValidationError
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
from bpo_engine.services.notifications import render_summary_text
from bpo_engine.services.ports import MessageHandler
from bpo_engine.services.state_machine import is_cycle_terminal


class InMemoryClientRepository:
    """In-memory client registry for local development."""

    def __init__(self, clients: list[Client] | None = None) -> None:
        self._items: dict[str, Client] = {c.client_id: c for c in clients or []}
        self._lock = asyncio.Lock()

    async def add(self, client: Client) -> None:
        async with self._lock:
            self._items[client.client_id] = client.model_copy(deep=True)

    async def get(self, client_id: str) -> Client | None:
        async with self._lock:
            client = self._items.get(client_id)
            return client.model_copy(deep=True) if client else None

    async def list_active(self) -> list[Client]:
        """Active clients ordered by id."""

        async with self._lock:
            return [
                self._items[key].model_copy(deep=True)
                for key in sorted(self._items)
                if self._items[key].is_active
            ]


class InMemoryTransactionRepository:
    """In-memory transaction store; hands out copies so unsaved edits never leak."""

    def __init__(self) -> None:
        self._items: dict[str, Transaction] = {}
        # Insertion order; created_at ties within one capture.
        self._seq: dict[str, int] = {}
        self._lock = asyncio.Lock()

    def _ordered(self, values: list[Transaction]) -> list[Transaction]:
        return [item.model_copy(deep=True) for item in sorted(values, key=lambda x: self._seq[x.transaction_id])]

    async def get(self, transaction_id: str) -> Transaction | None:
        async with self._lock:
            item = self._items.get(transaction_id)
            return item.model_copy(deep=True) if item else None

    async def save(self, transaction: Transaction) -> None:
        async with self._lock:
            self._seq.setdefault(transaction.transaction_id, len(self._seq))
            self._items[transaction.transaction_id] = transaction.model_copy(deep=True)

    async def find_by_source(
        self, client_id: str, source: CaptureSource, source_id: str
    ) -> Transaction | None:
        async with self._lock:
            for item in self._items.values():
                if (item.client_id, item.source, item.source_id) == (client_id, source, source_id):
                    return item.model_copy(deep=True)
            return None

    async def list_by_status(self, client_id: str, status: TransactionStatus) -> list[Transaction]:
        async with self._lock:
            values = [
                item
                for item in self._items.values()
                if item.client_id == client_id and item.status == status
            ]
            return self._ordered(values)

    async def find_duplicates(self, transaction: Transaction) -> list[Transaction]:
        """Earlier-captured live look-alikes; the first of a pair is never flagged."""

        async with self._lock:
            position = self._seq.get(transaction.transaction_id, len(self._seq))
            return [
                item.model_copy(deep=True)
                for item in self._items.values()
                if self._seq[item.transaction_id] < position
                and item.client_id == transaction.client_id
                and item.value == transaction.value
                and item.counterpart == transaction.counterpart
                and item.due_date == transaction.due_date
                and item.status not in (TransactionStatus.REJECTED, TransactionStatus.ERROR)
            ]

    async def list(self, *, client_id: str | None = None) -> list[Transaction]:
        async with self._lock:
            values = [
                item
                for item in self._items.values()
                if client_id is None or item.client_id == client_id
            ]
            return self._ordered(values)


class InMemoryCycleRepository:
    """In-memory cycle store; terminal records are write-once."""

    def __init__(self) -> None:
        self._items: dict[str, Cycle] = {}
        self._lock = asyncio.Lock()

    async def create(self, cycle: Cycle) -> None:
        async with self._lock:
            if cycle.cycle_id in self._items:
                raise CycleConflictError(f"cycle {cycle.cycle_id} already exists")
            self._items[cycle.cycle_id] = cycle.model_copy(deep=True)

    async def get(self, cycle_id: str) -> Cycle | None:
        async with self._lock:
            item = self._items.get(cycle_id)
            return item.model_copy(deep=True) if item else None

    async def save(self, cycle: Cycle) -> None:
        async with self._lock:
            stored = self._items.get(cycle.cycle_id)
            if stored is not None and is_cycle_terminal(stored.status):
                raise CycleConflictError(
                    f"cycle {cycle.cycle_id} is {stored.status.value} and can no longer change"
                )
            self._items[cycle.cycle_id] = cycle.model_copy(deep=True)

    async def list_by_date(self, cycle_date: date) -> list[Cycle]:
        async with self._lock:
            values = [item for item in self._items.values() if item.cycle_date == cycle_date]
            return [item.model_copy(deep=True) for item in sorted(values, key=lambda x: x.started_at)]


class InMemoryReviewRepository:
    """In-memory store for authorizations, doubts and the review audit trail."""

    def __init__(self) -> None:
        self._authorizations: dict[str, PendingAuthorization] = {}
        self._doubts: dict[str, EnrichmentDoubt] = {}
        self._history: list[HistoryAction] = []
        self._lock = asyncio.Lock()

    async def get_authorization(self, authorization_id: str) -> PendingAuthorization | None:
        async with self._lock:
            item = self._authorizations.get(authorization_id)
            return item.model_copy(deep=True) if item else None

    async def save_authorization(self, authorization: PendingAuthorization) -> None:
        async with self._lock:
            self._authorizations[authorization.authorization_id] = authorization.model_copy(deep=True)

    async def list_authorizations(
        self,
        *,
        status: AuthorizationStatus | None = None,
        client_id: str | None = None,
        kind: TransactionKind | None = None,
    ) -> list[PendingAuthorization]:
        async with self._lock:
            values = [
                item
                for item in self._authorizations.values()
                if (status is None or item.status == status)
                and (client_id is None or item.client_id == client_id)
                and (kind is None or item.kind == kind)
            ]
            return [item.model_copy(deep=True) for item in sorted(values, key=lambda x: x.created_at)]

    async def get_doubt(self, doubt_id: str) -> EnrichmentDoubt | None:
        async with self._lock:
            item = self._doubts.get(doubt_id)
            return item.model_copy(deep=True) if item else None

    async def save_doubt(self, doubt: EnrichmentDoubt) -> None:
        async with self._lock:
            self._doubts[doubt.doubt_id] = doubt.model_copy(deep=True)

    async def list_doubts(
        self,
        *,
        status: DoubtStatus | None = None,
        client_id: str | None = None,
        doubt_type: DoubtType | None = None,
    ) -> list[EnrichmentDoubt]:
        async with self._lock:
            values = [
                item
                for item in self._doubts.values()
                if (status is None or item.status == status)
                and (client_id is None or item.client_id == client_id)
                and (doubt_type is None or item.doubt_type == doubt_type)
            ]
            return [item.model_copy(deep=True) for item in sorted(values, key=lambda x: x.created_at)]

    async def add_history(self, action: HistoryAction) -> None:
        async with self._lock:
            self._history.append(action.model_copy(deep=True))

    async def list_history(
        self, *, client_id: str | None = None, limit: int = 100
    ) -> list[HistoryAction]:
        async with self._lock:
            values = [
                item
                for item in reversed(self._history)
                if client_id is None or item.client_id == client_id
            ]
            return [item.model_copy(deep=True) for item in values[:limit]]


@dataclass
class Delivery:
    """One queued message together with the queue it was published to."""

    queue_name: str
    message: BaseQueueMessage


@dataclass
class DeadLetter:
    queue_name: str
    message: BaseQueueMessage
    reason: str


class InMemoryMessageBroker:
    """At-least-once in-process broker: failed deliveries are retried, then dead-lettered."""

    def __init__(self, *, max_deliveries: int = 5) -> None:
        """Initialize queue, handler table and dead-letter list."""

        if max_deliveries < 1:
            raise ValueError("max_deliveries must be >= 1")
        self.max_deliveries = max_deliveries
        self._handlers: dict[str, MessageHandler] = {}
        self._queue: asyncio.Queue[Delivery] = asyncio.Queue()
        self.published: list[Delivery] = []
        self.dead_letters: list[DeadLetter] = []

    def register_handler(self, queue_name: str, handler: MessageHandler) -> None:
        self._handlers[queue_name] = handler

    async def publish(self, queue_name: str, message: BaseQueueMessage) -> None:
        """Push one message into the named queue."""

        delivery = Delivery(queue_name=queue_name, message=message)
        self.published.append(delivery)
        await self._queue.put(delivery)

    def published_to(self, queue_name: str) -> list[BaseQueueMessage]:
        return [d.message for d in self.published if d.queue_name == queue_name]

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def dequeue(self) -> Delivery:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def deliver(self, delivery: Delivery) -> bool:
        """Hand one delivery to its handler; return True when it was acknowledged."""

        handler = self._handlers.get(delivery.queue_name)
        if handler is None:
            self._dead_letter(delivery, f"no handler registered for {delivery.queue_name}")
            return False
        try:
            await handler(delivery.message)
        except PipelineValidationError as exc:
            self._dead_letter(delivery, f"{type(exc).__name__}: {exc}")
            return False
        except Exception as exc:
            attempts = delivery.message.retry_count + 1
            if attempts >= self.max_deliveries:
                self._dead_letter(delivery, f"{type(exc).__name__}: {exc}")
                return False
            logger.warning(
                f"{delivery.queue_name}: delivery {attempts}/{self.max_deliveries} of "
                f"{delivery.message.message_id} failed ({exc}); requeueing"
            )
            retry = delivery.message.model_copy(update={"retry_count": attempts})
            await self._queue.put(Delivery(queue_name=delivery.queue_name, message=retry))
            return False
        return True

    async def run_once(self) -> bool:
        """Take one message off the queue and deliver it."""

        delivery = await self.dequeue()
        try:
            return await self.deliver(delivery)
        finally:
            self.task_done()

    async def drain(self) -> int:
        """Deliver until the queue is empty, including follow-ups and redeliveries."""

        delivered = 0
        while not self._queue.empty():
            if await self.run_once():
                delivered += 1
        return delivered

    def _dead_letter(self, delivery: Delivery, reason: str) -> None:
        logger.error(f"{delivery.queue_name}: dead-lettering {delivery.message.message_id}: {reason}")
        self.dead_letters.append(
            DeadLetter(queue_name=delivery.queue_name, message=delivery.message, reason=reason)
        )


class StaticCaptureConnector:
    """Capture source serving fixed per-client records, filtered by due date window."""

    def __init__(self, records: dict[str, list[CapturedTransaction]] | None = None) -> None:
        self.records: dict[str, list[CapturedTransaction]] = records or {}
        self.calls = 0

    async def fetch(
        self, client: Client, start_date: date, end_date: date
    ) -> list[CapturedTransaction]:
        self.calls += 1
        return [
            item
            for item in self.records.get(client.client_id, [])
            if item.due_date is None or start_date <= item.due_date <= end_date
        ]


class InMemoryDestination:
    """Destination ERP double keeping remote records in a dict."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.records: dict[str, dict] = {}
        self.created: list[str] = []
        self.updated: list[str] = []
        self._counter = 0

    async def find_existing(
        self,
        client: Client,
        *,
        description: str,
        value: Decimal,
        due_date: date | None,
        window_days: int,
    ) -> str | None:
        for external_id, record in self.records.items():
            if record["client_id"] != client.client_id:
                continue
            if record["description"] != description or record["value"] != value:
                continue
            if due_date is None or record["due_date"] is None:
                if record["due_date"] == due_date:
                    return external_id
                continue
            if abs(record["due_date"] - due_date) <= timedelta(days=window_days):
                return external_id
        return None

    async def create(self, client: Client, transaction: Transaction) -> str:
        self._counter += 1
        external_id = f"{self.name}-{self._counter}"
        self.records[external_id] = self._payload(client, transaction)
        self.created.append(external_id)
        return external_id

    async def update(self, client: Client, external_id: str, transaction: Transaction) -> None:
        self.records[external_id] = self._payload(client, transaction)
        self.updated.append(external_id)

    @staticmethod
    def _payload(client: Client, transaction: Transaction) -> dict:
        return {
            "client_id": client.client_id,
            "transaction_id": transaction.transaction_id,
            "description": transaction.description,
            "value": transaction.value,
            "due_date": transaction.due_date,
            "category_id": transaction.category.category_id if transaction.category else None,
        }


_WORD = re.compile(r"[a-z0-9]{3,}")


class KeywordCategoryScorer:
    """Offline scorer matching category names against the transaction description."""

    def __init__(self, *, base_confidence: float = 0.6, per_hit: float = 0.15) -> None:
        self.base_confidence = base_confidence
        self.per_hit = per_hit

    async def score(self, client: Client, transaction: Transaction) -> CategoryAssignment:
        words = set(_WORD.findall(transaction.description.lower()))
        best = None
        best_hits = 0
        for category in client.config.categories:
            hits = len(words & set(_WORD.findall(category.name.lower())))
            if hits > best_hits:
                best, best_hits = category, hits
        if best is None:
            fallback = client.config.categories[0] if client.config.categories else None
            return CategoryAssignment(
                category_id=fallback.category_id if fallback else "uncategorized",
                category_name=fallback.name if fallback else "Sem categoria",
                confidence=0.0 if fallback is None else round(self.base_confidence / 2, 2),
            )
        confidence = min(0.95, self.base_confidence + self.per_hit * best_hits)
        return CategoryAssignment(
            category_id=best.category_id, category_name=best.name, confidence=round(confidence, 2)
        )


class InMemoryFeedbackSink:
    def __init__(self) -> None:
        self.records: list[FeedbackRecord] = []

    async def record(self, feedback: FeedbackRecord) -> None:
        self.records.append(feedback)


class RecordingNotifier:
    """Notifier that keeps rendered summaries instead of sending them."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []
        self.summaries: list[DailySummary] = []

    async def send(self, client: Client, summary: DailySummary) -> None:
        self.summaries.append(summary)
        self.sent.append((client.client_id, render_summary_text(summary)))
        logger.debug(f"notify {client.client_id}: recorded summary for {summary.cycle_id}")

