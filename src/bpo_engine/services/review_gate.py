from __future__ import annotations

import asyncio
from typing import assert_never

from loguru import logger

from bpo_engine.errors import PipelineValidationError, RecordNotFoundError, ReviewStateError
from bpo_engine.models.enums import (
    AuthorizationStatus,
    DoubtStatus,
    DoubtType,
    HistoryActionType,
    ReviewType,
    Stage,
    TransactionKind,
    TransactionStatus,
)
from bpo_engine.models.internal import (
    CategoryAssignment,
    Client,
    EnrichmentDoubt,
    FeedbackRecord,
    HistoryAction,
    PendingAuthorization,
    Transaction,
    utcnow,
)
from bpo_engine.models.messages import ReviewMessage, queue_for
from bpo_engine.services.ports import (
    ClientRepository,
    FeedbackSink,
    MessageBroker,
    ReviewRepository,
    TransactionRepository,
)
from bpo_engine.services.stages import StageResult, sync_message_for
from bpo_engine.services.state_machine import advance, advance_path

MANUAL_CYCLE_ID = "manual-review"


class ReviewGate:
    """Pause transactions for human decisions and resume them once decided."""

    def __init__(
        self,
        *,
        clients: ClientRepository,
        transactions: TransactionRepository,
        reviews: ReviewRepository,
        broker: MessageBroker,
        feedback: FeedbackSink,
    ) -> None:
        """Bind repositories, broker and feedback sink."""

        self.clients = clients
        self.transactions = transactions
        self.reviews = reviews
        self.broker = broker
        self.feedback = feedback
        # One decision at a time: each record publishes at most one sync message.
        self._lock = asyncio.Lock()

    async def open_review(self, message: ReviewMessage) -> StageResult:
        """Create the doubt or authorization a review message asks for.

        Record ids derive from the transaction id, so a redelivered message
        finds the existing record instead of creating a second one.
        """

        result = StageResult(stage=Stage.REVIEW)
        async with self._lock:
            transaction = await self._transaction(message.transaction_id)
            if transaction.status == TransactionStatus.CLASSIFIED:
                advance(transaction, TransactionStatus.IN_REVIEW)
                await self.transactions.save(transaction)
            if transaction.status != TransactionStatus.IN_REVIEW:
                logger.debug(
                    f"review {transaction.transaction_id}: already {transaction.status.value}, ignoring"
                )
                return result
            client = await self._client(transaction.client_id)

            match message.review_type:
                case ReviewType.AUTHORIZATION:
                    await self._open_authorization(message, transaction)
                case ReviewType.CLASSIFICATION:
                    await self._open_doubt(message, client, transaction)
                case _:
                    assert_never(message.review_type)
        return result

    async def _open_authorization(self, message: ReviewMessage, transaction: Transaction) -> None:
        authorization_id = PendingAuthorization.id_for(transaction.transaction_id)
        if await self.reviews.get_authorization(authorization_id) is not None:
            return
        await self.reviews.save_authorization(
            PendingAuthorization(
                authorization_id=authorization_id,
                client_id=transaction.client_id,
                transaction_id=transaction.transaction_id,
                cycle_id=message.cycle_id,
                kind=transaction.kind,
                description=transaction.description,
                value=transaction.value,
                due_date=transaction.due_date,
                counterpart=transaction.counterpart,
                category_name=transaction.category.category_name if transaction.category else None,
                reason=message.reason,
            )
        )
        logger.info(f"review {transaction.transaction_id}: authorization {authorization_id} opened")

    async def _open_doubt(
        self, message: ReviewMessage, client: Client, transaction: Transaction
    ) -> None:
        doubt_type = DoubtType.DUPLICATE if message.duplicate_of else DoubtType.CLASSIFICATION
        doubt_id = EnrichmentDoubt.id_for(doubt_type, transaction.transaction_id)
        if await self.reviews.get_doubt(doubt_id) is not None:
            return
        suggestion = message.suggestion
        await self.reviews.save_doubt(
            EnrichmentDoubt(
                doubt_id=doubt_id,
                client_id=transaction.client_id,
                transaction_id=transaction.transaction_id,
                cycle_id=message.cycle_id,
                doubt_type=doubt_type,
                reason=message.reason,
                description=transaction.description,
                value=transaction.value,
                suggested_category_id=suggestion.category_id if suggestion else None,
                suggested_category_name=suggestion.category_name if suggestion else None,
                suggested_confidence=suggestion.confidence if suggestion else None,
                options=list(client.config.categories),
            )
        )
        logger.info(f"review {transaction.transaction_id}: doubt {doubt_id} opened")

    async def approve_authorization(
        self,
        authorization_id: str,
        *,
        notes: str | None = None,
        user_id: str | None = None,
    ) -> PendingAuthorization:
        """Clear a pending authorization and send its transaction to sync."""

        async with self._lock:
            authorization = await self._authorization(authorization_id)
            match authorization.status:
                case AuthorizationStatus.APPROVED:
                    return authorization
                case AuthorizationStatus.REJECTED:
                    raise ReviewStateError(f"authorization {authorization_id} was already rejected")
                case AuthorizationStatus.PENDING:
                    pass
                case _:
                    assert_never(authorization.status)

            transaction = await self._transaction(authorization.transaction_id)
            client = await self._client(transaction.client_id)
            sync = sync_message_for(client, transaction, authorization.cycle_id or MANUAL_CYCLE_ID)
            advance_path(transaction, TransactionStatus.APPROVED, TransactionStatus.SYNC_PENDING)
            await self.transactions.save(transaction)

            authorization.status = AuthorizationStatus.APPROVED
            authorization.resolved_at = utcnow()
            authorization.resolved_by = user_id
            authorization.notes = notes
            await self.reviews.save_authorization(authorization)
            await self.reviews.add_history(
                HistoryAction(
                    client_id=authorization.client_id,
                    action=HistoryActionType.APPROVAL,
                    description=f"approved {authorization.description} ({authorization.value})",
                    user_id=user_id,
                    details={
                        "authorization_id": authorization_id,
                        "transaction_id": transaction.transaction_id,
                        "notes": notes,
                    },
                )
            )
            await self.broker.publish(queue_for(sync), sync)
        logger.info(f"authorization {authorization_id} approved by {user_id or 'unknown'}")
        return authorization

    async def reject_authorization(
        self,
        authorization_id: str,
        *,
        reason: str,
        user_id: str | None = None,
    ) -> PendingAuthorization:
        """Refuse a pending authorization; the transaction ends `rejected`."""

        if not reason or not reason.strip():
            raise ValueError("a rejection reason is required")
        async with self._lock:
            authorization = await self._authorization(authorization_id)
            match authorization.status:
                case AuthorizationStatus.REJECTED:
                    return authorization
                case AuthorizationStatus.APPROVED:
                    raise ReviewStateError(f"authorization {authorization_id} was already approved")
                case AuthorizationStatus.PENDING:
                    pass
                case _:
                    assert_never(authorization.status)

            transaction = await self._transaction(authorization.transaction_id)
            advance(transaction, TransactionStatus.REJECTED)
            transaction.last_error = reason
            await self.transactions.save(transaction)

            authorization.status = AuthorizationStatus.REJECTED
            authorization.resolved_at = utcnow()
            authorization.resolved_by = user_id
            authorization.notes = reason
            await self.reviews.save_authorization(authorization)
            await self.reviews.add_history(
                HistoryAction(
                    client_id=authorization.client_id,
                    action=HistoryActionType.REJECTION,
                    description=f"rejected {authorization.description} ({authorization.value})",
                    user_id=user_id,
                    details={
                        "authorization_id": authorization_id,
                        "transaction_id": transaction.transaction_id,
                        "reason": reason,
                    },
                )
            )
        logger.info(f"authorization {authorization_id} rejected: {reason}")
        return authorization

    async def resolve_doubt(
        self,
        doubt_id: str,
        *,
        category_id: str,
        category_name: str,
        notes: str | None = None,
        user_id: str | None = None,
    ) -> EnrichmentDoubt:
        """Apply the reviewer's category, send the transaction to sync and record feedback."""

        async with self._lock:
            doubt = await self._doubt(doubt_id)
            if doubt.status == DoubtStatus.RESOLVED:
                return doubt

            transaction = await self._transaction(doubt.transaction_id)
            client = await self._client(transaction.client_id)
            known = {category.category_id for category in client.config.categories}
            if known and category_id not in known:
                raise ValueError(f"category {category_id} is not in client {client.client_id}'s chart")

            original = transaction.category
            transaction.category = CategoryAssignment(
                category_id=category_id, category_name=category_name, confidence=1.0
            )
            sync = sync_message_for(client, transaction, doubt.cycle_id or MANUAL_CYCLE_ID)
            advance_path(transaction, TransactionStatus.APPROVED, TransactionStatus.SYNC_PENDING)
            await self.transactions.save(transaction)

            doubt.status = DoubtStatus.RESOLVED
            doubt.resolved_at = utcnow()
            doubt.resolved_by = user_id
            doubt.notes = notes
            doubt.resolution = {"category_id": category_id, "category_name": category_name}
            await self.reviews.save_doubt(doubt)
            await self.reviews.add_history(
                HistoryAction(
                    client_id=doubt.client_id,
                    action=HistoryActionType.DOUBT_RESOLVED,
                    description=f"classified {doubt.description} as {category_name}",
                    user_id=user_id,
                    details={
                        "doubt_id": doubt_id,
                        "transaction_id": transaction.transaction_id,
                        "category_id": category_id,
                    },
                )
            )
            await self.feedback.record(
                FeedbackRecord(
                    transaction_id=transaction.transaction_id,
                    client_id=transaction.client_id,
                    original_category_id=original.category_id if original else None,
                    original_category_name=original.category_name if original else None,
                    original_confidence=original.confidence if original else None,
                    human_category_id=category_id,
                    human_category_name=category_name,
                    user_id=user_id,
                    comment=notes,
                )
            )
            await self.broker.publish(queue_for(sync), sync)
        logger.info(f"doubt {doubt_id} resolved as {category_name}")
        return doubt

    async def skip_doubt(
        self,
        doubt_id: str,
        *,
        reason: str | None = None,
        user_id: str | None = None,
    ) -> EnrichmentDoubt:
        """Postpone a doubt; it stays pending and the transaction stays in review."""

        async with self._lock:
            doubt = await self._doubt(doubt_id)
            if doubt.status != DoubtStatus.PENDING:
                raise ReviewStateError(f"doubt {doubt_id} is {doubt.status.value}, cannot skip")
            doubt.skip_count += 1
            await self.reviews.save_doubt(doubt)
            await self.reviews.add_history(
                HistoryAction(
                    client_id=doubt.client_id,
                    action=HistoryActionType.DOUBT_SKIPPED,
                    description=f"skipped {doubt.description}",
                    user_id=user_id,
                    details={"doubt_id": doubt_id, "reason": reason, "skip_count": doubt.skip_count},
                )
            )
        return doubt

    async def list_pending_authorizations(
        self,
        *,
        client_id: str | None = None,
        kind: TransactionKind | None = None,
    ) -> list[PendingAuthorization]:
        return await self.reviews.list_authorizations(
            status=AuthorizationStatus.PENDING, client_id=client_id, kind=kind
        )

    async def list_pending_doubts(
        self,
        *,
        client_id: str | None = None,
        doubt_type: DoubtType | None = None,
    ) -> list[EnrichmentDoubt]:
        return await self.reviews.list_doubts(
            status=DoubtStatus.PENDING, client_id=client_id, doubt_type=doubt_type
        )

    async def list_history(
        self, *, client_id: str | None = None, limit: int = 100
    ) -> list[HistoryAction]:
        return await self.reviews.list_history(client_id=client_id, limit=limit)

    async def _authorization(self, authorization_id: str) -> PendingAuthorization:
        authorization = await self.reviews.get_authorization(authorization_id)
        if authorization is None:
            raise RecordNotFoundError(f"authorization {authorization_id} not found")
        return authorization

    async def _doubt(self, doubt_id: str) -> EnrichmentDoubt:
        doubt = await self.reviews.get_doubt(doubt_id)
        if doubt is None:
            raise RecordNotFoundError(f"doubt {doubt_id} not found")
        return doubt

    async def _transaction(self, transaction_id: str) -> Transaction:
        transaction = await self.transactions.get(transaction_id)
        if transaction is None:
            raise RecordNotFoundError(f"transaction {transaction_id} not found")
        return transaction

    async def _client(self, client_id: str) -> Client:
        client = await self.clients.get(client_id)
        if client is None:
            raise PipelineValidationError(f"unknown client {client_id}")
        return client
