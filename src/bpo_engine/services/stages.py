"""Stage handlers for capture, classify and sync plus the router that dispatches them."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Protocol

from loguru import logger

from bpo_engine.errors import (
    ConnectorRejectedError,
    PipelineValidationError,
)
from bpo_engine.models.common import CycleError
from bpo_engine.models.enums import (
    CaptureSource,
    Destination,
    ReviewType,
    Stage,
    SyncAction,
    TransactionStatus,
)
from bpo_engine.models.internal import CategoryAssignment, Client, Transaction, utcnow
from bpo_engine.models.messages import (
    CLASSIFY_QUEUE,
    BaseQueueMessage,
    CaptureMessage,
    ClassifyData,
    ClassifyMessage,
    ReviewMessage,
    ReviewSuggestion,
    SyncData,
    SyncMessage,
    capture_queue,
    queue_for,
    review_queue,
    sync_queue,
)
from bpo_engine.services.ports import (
    CaptureConnector,
    CategoryScorer,
    ClientRepository,
    DestinationConnector,
    MessageBroker,
    TransactionRepository,
)
from bpo_engine.services.reconciler import SyncReconciler
from bpo_engine.services.retry import RetryExecutor
from bpo_engine.services.state_machine import advance, advance_path, fail


class TransactionClaims:
    """Per-transaction locks; one holder at a time may push a transaction to its ERP."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, transaction_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(transaction_id, asyncio.Lock())
        self._holders[transaction_id] = self._holders.get(transaction_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[transaction_id] -= 1
            if not self._holders[transaction_id]:
                del self._holders[transaction_id]
                del self._locks[transaction_id]

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class PipelineDependencies:
    """Connector clients and repositories shared by every stage of a process."""

    clients: ClientRepository
    transactions: TransactionRepository
    broker: MessageBroker
    capture_connectors: dict[CaptureSource, CaptureConnector]
    destinations: dict[Destination, DestinationConnector]
    scorer: CategoryScorer
    retry: RetryExecutor
    confidence_threshold: float = 0.8
    materiality_threshold: Decimal = Decimal("10000")
    capture_lookback_days: int = 7
    sync_claims: TransactionClaims = field(default_factory=TransactionClaims)


@dataclass
class StageResult:
    """What one handled message produced: follow-up messages, counters and recorded errors."""

    stage: Stage
    emitted: list[BaseQueueMessage] = field(default_factory=list)
    captured: int = 0
    classified: int = 0
    synced: int = 0
    review: int = 0
    errors: list[CycleError] = field(default_factory=list)


async def load_client(deps: PipelineDependencies, client_id: str) -> Client:
    client = await deps.clients.get(client_id)
    if client is None:
        raise PipelineValidationError(f"unknown client {client_id}")
    return client


async def load_transaction(deps: PipelineDependencies, transaction_id: str) -> Transaction:
    transaction = await deps.transactions.get(transaction_id)
    if transaction is None:
        raise PipelineValidationError(f"unknown transaction {transaction_id}")
    return transaction


def require_destination(client: Client) -> Destination:
    """Destination ERP of a client; missing configuration is a validation error."""

    if client.destination is None:
        raise PipelineValidationError(f"client {client.client_id} has no destination configured")
    return client.destination


def sync_message_for(client: Client, transaction: Transaction, cycle_id: str) -> SyncMessage:
    """Build the sync request for an approved transaction."""

    destination = require_destination(client)
    action = SyncAction.UPDATE if destination in transaction.external_ids else SyncAction.CREATE
    return SyncMessage(
        cycle_id=cycle_id,
        client_id=client.client_id,
        transaction_id=transaction.transaction_id,
        destination=destination,
        action=action,
        data=SyncData(
            description=transaction.description,
            value=transaction.value,
            due_date=transaction.due_date,
            category_id=transaction.category.category_id if transaction.category else None,
            counterpart=transaction.counterpart,
        ),
    )


class CaptureStage:
    """Pull a source's transactions into the record store and queue them for classification."""

    def __init__(self, deps: PipelineDependencies) -> None:
        self.deps = deps

    def _window(self, message: CaptureMessage) -> tuple[date, date]:
        config = message.config
        end = config.end_date if config and config.end_date else date.today()
        if config and config.start_date:
            start = config.start_date
        else:
            start = end - timedelta(days=self.deps.capture_lookback_days)
        if start > end:
            raise PipelineValidationError(f"capture window starts after it ends: {start} > {end}")
        return start, end

    async def handle(self, message: CaptureMessage) -> StageResult:
        deps = self.deps
        result = StageResult(stage=Stage.CAPTURE)
        client = await load_client(deps, message.client_id)
        connector = deps.capture_connectors.get(message.source)
        if connector is None:
            raise PipelineValidationError(f"no capture connector for source {message.source.value}")

        start, end = self._window(message)
        captured = await deps.retry.run(
            lambda: connector.fetch(client, start, end),
            label=f"capture {client.client_id}/{message.source.value}",
        )
        refresh = bool(message.config and message.config.force_refresh)

        for item in captured:
            existing = await deps.transactions.find_by_source(
                client.client_id, message.source, item.source_id
            )
            if existing is None:
                transaction = Transaction.from_capture(
                    client_id=client.client_id, source=message.source, captured=item
                )
                advance(transaction, TransactionStatus.CAPTURED)
                await deps.transactions.save(transaction)
                result.captured += 1
            elif refresh and existing.status == TransactionStatus.CAPTURED:
                existing.value = item.value
                existing.description = item.description
                existing.counterpart = item.counterpart
                existing.due_date = item.due_date
                existing.updated_at = utcnow()
                await deps.transactions.save(existing)

        # Includes captures left unclassified by earlier cycles.
        pending = await deps.transactions.list_by_status(
            client.client_id, TransactionStatus.CAPTURED
        )
        for transaction in pending:
            if transaction.source != message.source:
                continue
            result.emitted.append(
                ClassifyMessage(
                    cycle_id=message.cycle_id,
                    client_id=client.client_id,
                    transaction_id=transaction.transaction_id,
                    transaction_data=ClassifyData(
                        description=transaction.description,
                        value=transaction.value,
                        kind=transaction.kind,
                        counterpart=transaction.counterpart,
                    ),
                )
            )
        logger.info(
            f"capture {client.client_id}/{message.source.value}: {len(captured)} fetched, "
            f"{result.captured} new, {len(result.emitted)} queued for classification"
        )
        return result


class ClassifyStage:
    """Assign a category and route the transaction to review or straight to sync."""

    def __init__(self, deps: PipelineDependencies) -> None:
        self.deps = deps

    def _materiality(self, client: Client) -> Decimal:
        override = client.config.materiality_threshold
        return override if override is not None else self.deps.materiality_threshold

    async def handle(self, message: ClassifyMessage) -> StageResult:
        deps = self.deps
        result = StageResult(stage=Stage.CLASSIFY)
        transaction = await load_transaction(deps, message.transaction_id)
        if transaction.status != TransactionStatus.CAPTURED:
            logger.debug(
                f"classify {transaction.transaction_id}: already {transaction.status.value}, skipping"
            )
            return result
        client = await load_client(deps, transaction.client_id)

        problem = _data_problem(transaction)
        if problem is not None:
            fail(transaction, problem)
            await deps.transactions.save(transaction)
            result.errors.append(
                CycleError(
                    client_id=client.client_id,
                    stage=Stage.CLASSIFY,
                    message=problem,
                    transaction_id=transaction.transaction_id,
                )
            )
            logger.warning(f"classify {transaction.transaction_id}: {problem}")
            return result

        assignment = await deps.retry.run(
            lambda: deps.scorer.score(client, transaction),
            label=f"classify {transaction.transaction_id}",
        )
        transaction.category = assignment
        advance(transaction, TransactionStatus.CLASSIFIED)
        result.classified += 1

        review = await self._review_for(client, transaction, assignment, message.cycle_id)
        if review is not None:
            advance(transaction, TransactionStatus.IN_REVIEW)
            await deps.transactions.save(transaction)
            result.review += 1
            result.emitted.append(review)
            logger.info(
                f"classify {transaction.transaction_id}: routed to {review.review_type.value} review"
            )
            return result

        sync = sync_message_for(client, transaction, message.cycle_id)
        advance_path(transaction, TransactionStatus.APPROVED, TransactionStatus.SYNC_PENDING)
        await deps.transactions.save(transaction)
        result.emitted.append(sync)
        logger.info(
            f"classify {transaction.transaction_id}: {assignment.category_name} "
            f"({assignment.confidence:.2f}) auto-approved"
        )
        return result

    async def _review_for(
        self,
        client: Client,
        transaction: Transaction,
        assignment: CategoryAssignment,
        cycle_id: str,
    ) -> ReviewMessage | None:
        """Pick the review a classified transaction needs, or None when it can sync."""

        suggestion = ReviewSuggestion(
            category_id=assignment.category_id,
            category_name=assignment.category_name,
            confidence=assignment.confidence,
        )

        def review(review_type: ReviewType, reason: str, duplicate_of: str | None = None) -> ReviewMessage:
            return ReviewMessage(
                cycle_id=cycle_id,
                client_id=client.client_id,
                transaction_id=transaction.transaction_id,
                review_type=review_type,
                reason=reason,
                suggestion=suggestion,
                duplicate_of=duplicate_of,
            )

        if assignment.confidence < self.deps.confidence_threshold:
            return review(
                ReviewType.CLASSIFICATION,
                f"low confidence {assignment.confidence:.2f} for {assignment.category_name}",
            )

        duplicates = await self.deps.transactions.find_duplicates(transaction)
        if duplicates:
            other = duplicates[0].transaction_id
            return review(ReviewType.CLASSIFICATION, f"possible duplicate of {other}", other)

        threshold = self._materiality(client)
        if transaction.value > threshold:
            return review(
                ReviewType.AUTHORIZATION,
                f"value {transaction.value} above materiality threshold {threshold}",
            )
        return None


def _data_problem(transaction: Transaction) -> str | None:
    if not transaction.description.strip():
        return "transaction has an empty description"
    if transaction.value <= 0:
        return f"transaction value must be positive, got {transaction.value}"
    return None


class SyncStage:
    """Reconcile an approved transaction with the client's destination ERP."""

    def __init__(self, deps: PipelineDependencies, reconciler: SyncReconciler) -> None:
        self.deps = deps
        self.reconciler = reconciler

    async def handle(self, message: SyncMessage) -> StageResult:
        # The worker and a running cycle can both hold a sync for the same transaction.
        async with self.deps.sync_claims.hold(message.transaction_id):
            return await self._sync(message)

    async def _sync(self, message: SyncMessage) -> StageResult:
        deps = self.deps
        result = StageResult(stage=Stage.SYNC)
        transaction = await load_transaction(deps, message.transaction_id)
        if transaction.status == TransactionStatus.SYNCED:
            logger.debug(f"sync {transaction.transaction_id}: already synced, acknowledging")
            return result
        if transaction.status != TransactionStatus.SYNC_PENDING:
            raise PipelineValidationError(
                f"transaction {transaction.transaction_id} is {transaction.status.value}, "
                "expected sync_pending"
            )

        client = await load_client(deps, transaction.client_id)
        destination = require_destination(client)
        connector = deps.destinations.get(destination)
        if connector is None:
            raise PipelineValidationError(f"no connector for destination {destination.value}")

        try:
            outcome = await self.reconciler.reconcile(client, transaction, destination, connector)
        except ConnectorRejectedError as exc:
            fail(transaction, str(exc))
            await deps.transactions.save(transaction)
            result.errors.append(
                CycleError(
                    client_id=client.client_id,
                    stage=Stage.SYNC,
                    message=f"rejected by {destination.value}: {exc}",
                    transaction_id=transaction.transaction_id,
                )
            )
            logger.warning(f"sync {transaction.transaction_id}: rejected by {destination.value}: {exc}")
            return result

        advance(transaction, TransactionStatus.SYNCED)
        await deps.transactions.save(transaction)
        result.synced += 1
        logger.info(
            f"sync {transaction.transaction_id}: {outcome.action.value} "
            f"{destination.value}:{outcome.external_id}"
        )
        return result


class ReviewHandler(Protocol):
    """Consumer of review messages (the review gate)."""

    async def open_review(self, message: ReviewMessage) -> StageResult:
        ...


class StageRouter:
    """Dispatch queue messages to their stage handler and publish what they emit."""

    def __init__(
        self,
        capture: CaptureStage,
        classify: ClassifyStage,
        sync: SyncStage,
        review: ReviewHandler | None = None,
    ) -> None:
        self.capture = capture
        self.classify = classify
        self.sync = sync
        self.review = review

    async def dispatch(self, message: BaseQueueMessage) -> StageResult:
        match message:
            case CaptureMessage():
                return await self.capture.handle(message)
            case ClassifyMessage():
                return await self.classify.handle(message)
            case SyncMessage():
                return await self.sync.handle(message)
            case ReviewMessage():
                if self.review is None:
                    raise PipelineValidationError("no review handler registered")
                return await self.review.open_review(message)
            case _:
                raise PipelineValidationError(f"unsupported message {type(message).__name__}")

    async def handle_and_publish(self, message: BaseQueueMessage) -> StageResult:
        """Broker entry point: handle one delivery, then publish its follow-ups."""

        result = await self.dispatch(message)
        for emitted in result.emitted:
            await self.capture.deps.broker.publish(queue_for(emitted), emitted)
        return result

    def queue_names(self) -> list[str]:
        names = [capture_queue(source) for source in self.capture.deps.capture_connectors]
        names.append(CLASSIFY_QUEUE)
        names.extend(sync_queue(destination) for destination in self.sync.deps.destinations)
        if self.review is not None:
            names.extend(review_queue(review_type) for review_type in ReviewType)
        return names

    def register(self, broker: MessageBroker) -> None:
        """Bind every stage queue on `broker` to this router."""

        async def handler(message: BaseQueueMessage) -> None:
            await self.handle_and_publish(message)

        for name in self.queue_names():
            broker.register_handler(name, handler)
