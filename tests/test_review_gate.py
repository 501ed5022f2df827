"""Human-in-the-loop decisions: authorizations, doubts and their sync side effects."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from conftest import CYCLE_DATE, FixedScorer, build_test_container, captured, make_client, seed

from bpo_engine.errors import RecordNotFoundError, ReviewStateError
from bpo_engine.models.enums import (
    AuthorizationStatus,
    CaptureSource,
    Destination,
    DoubtStatus,
    DoubtType,
    HistoryActionType,
    ReviewType,
    TransactionStatus,
)
from bpo_engine.models.internal import EnrichmentDoubt, PendingAuthorization
from bpo_engine.models.messages import ReviewMessage, sync_queue

SRC = CaptureSource.SANTANDER


async def _reviewed(*, value: str = "150.00", confidence: float = 0.95):
    """Run one cycle so a single transaction ends up waiting in review."""

    container = build_test_container(scorer=FixedScorer(default=confidence))
    client = make_client(materiality_threshold=Decimal("1000"))
    await seed(container, [client], {SRC: {"c1": [captured("a", value)]}})
    await container.orchestrator.run_cycle(cycle_date=CYCLE_DATE)
    [tx] = await container.transactions.list(client_id="c1")
    return container, tx


def _sync_messages(container):
    return container.broker.published_to(sync_queue(Destination.NIBO))


def test_large_value_opens_one_authorization() -> None:
    async def scenario():
        container, tx = await _reviewed(value="5000.00")
        return tx, await container.review_gate.list_pending_authorizations()

    tx, pending = asyncio.run(scenario())
    assert tx.status == TransactionStatus.IN_REVIEW
    [authorization] = pending
    assert authorization.authorization_id == PendingAuthorization.id_for(tx.transaction_id)
    assert authorization.value == Decimal("5000.00")


def test_approve_publishes_exactly_one_sync_message() -> None:
    async def scenario():
        container, tx = await _reviewed(value="5000.00")
        auth_id = PendingAuthorization.id_for(tx.transaction_id)
        first = await container.review_gate.approve_authorization(auth_id, user_id="ana")
        again = await container.review_gate.approve_authorization(auth_id, user_id="ana")
        stored = await container.transactions.get(tx.transaction_id)
        return container, stored, first, again

    container, stored, first, again = asyncio.run(scenario())
    assert first.status == AuthorizationStatus.APPROVED
    assert first.resolved_by == "ana"
    assert again.status == AuthorizationStatus.APPROVED
    assert [m.transaction_id for m in _sync_messages(container)] == [stored.transaction_id]
    assert stored.status == TransactionStatus.SYNC_PENDING


def test_reject_is_terminal_and_never_syncs() -> None:
    async def scenario():
        container, tx = await _reviewed(value="5000.00")
        auth_id = PendingAuthorization.id_for(tx.transaction_id)
        await container.review_gate.reject_authorization(auth_id, reason="not ours", user_id="ana")
        with pytest.raises(ReviewStateError):
            await container.review_gate.approve_authorization(auth_id)
        history = await container.review_gate.list_history(client_id="c1")
        return container, await container.transactions.get(tx.transaction_id), history

    container, tx, history = asyncio.run(scenario())
    assert tx.status == TransactionStatus.REJECTED
    assert tx.last_error == "not ours"
    assert _sync_messages(container) == []
    assert history[0].action == HistoryActionType.REJECTION


def test_reject_requires_reason() -> None:
    async def scenario():
        container, tx = await _reviewed(value="5000.00")
        await container.review_gate.reject_authorization(
            PendingAuthorization.id_for(tx.transaction_id), reason="  "
        )

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_resolve_doubt_sets_category_and_syncs_once() -> None:
    async def scenario():
        container, tx = await _reviewed(confidence=0.4)
        [doubt] = await container.review_gate.list_pending_doubts()
        for _ in range(2):
            await container.review_gate.resolve_doubt(
                doubt.doubt_id, category_id="cat-energia", category_name="Energia eletrica", user_id="bia"
            )
        stored = await container.transactions.get(tx.transaction_id)
        pending = await container.review_gate.list_pending_doubts()
        return container, doubt, stored, pending

    container, doubt, stored, pending = asyncio.run(scenario())
    assert doubt.doubt_type == DoubtType.CLASSIFICATION
    assert doubt.doubt_id == EnrichmentDoubt.id_for(DoubtType.CLASSIFICATION, stored.transaction_id)
    assert pending == []
    assert stored.category.category_id == "cat-energia"
    assert stored.category.confidence == 1.0
    assert stored.status == TransactionStatus.SYNC_PENDING
    assert len(_sync_messages(container)) == 1
    [feedback] = container.feedback.records
    assert feedback.original_category_id == "cat-aluguel"
    assert feedback.original_confidence == pytest.approx(0.4)
    assert feedback.human_category_id == "cat-energia"
    assert feedback.user_id == "bia"


def test_resolve_with_category_outside_chart_is_rejected() -> None:
    async def scenario():
        container, _ = await _reviewed(confidence=0.4)
        [doubt] = await container.review_gate.list_pending_doubts()
        await container.review_gate.resolve_doubt(doubt.doubt_id, category_id="nope", category_name="Nope")

    with pytest.raises(ValueError):
        asyncio.run(scenario())


def test_skip_changes_nothing_but_history() -> None:
    async def scenario():
        container, tx = await _reviewed(confidence=0.4)
        [doubt] = await container.review_gate.list_pending_doubts()
        skipped = await container.review_gate.skip_doubt(doubt.doubt_id, reason="later")
        pending = await container.review_gate.list_pending_doubts()
        history = await container.review_gate.list_history()
        stored = await container.transactions.get(tx.transaction_id)
        return container, skipped, pending, history, stored

    container, skipped, pending, history, tx = asyncio.run(scenario())
    assert skipped.status == DoubtStatus.PENDING
    assert skipped.skip_count == 1
    assert len(pending) == 1
    assert tx.status == TransactionStatus.IN_REVIEW
    assert tx.category.category_id == "cat-aluguel"
    assert _sync_messages(container) == []
    assert history[0].action == HistoryActionType.DOUBT_SKIPPED


def test_skip_after_resolve_is_refused() -> None:
    async def scenario():
        container, _ = await _reviewed(confidence=0.4)
        [doubt] = await container.review_gate.list_pending_doubts()
        await container.review_gate.resolve_doubt(
            doubt.doubt_id, category_id="cat-aluguel", category_name="Aluguel"
        )
        await container.review_gate.skip_doubt(doubt.doubt_id)

    with pytest.raises(ReviewStateError):
        asyncio.run(scenario())


def test_redelivered_review_message_does_not_duplicate_records() -> None:
    async def scenario():
        container, tx = await _reviewed(confidence=0.4)
        message = ReviewMessage(
            cycle_id="again",
            client_id="c1",
            transaction_id=tx.transaction_id,
            review_type=ReviewType.CLASSIFICATION,
            reason="low confidence",
        )
        await container.review_gate.open_review(message)
        return await container.review_gate.list_pending_doubts()

    pending = asyncio.run(scenario())
    assert len(pending) == 1
    assert pending[0].cycle_id != "again"


def test_unknown_ids_raise_not_found() -> None:
    async def scenario(action):
        container = build_test_container()
        await action(container.review_gate)

    with pytest.raises(RecordNotFoundError):
        asyncio.run(scenario(lambda gate: gate.approve_authorization("auth-missing")))
    with pytest.raises(RecordNotFoundError):
        asyncio.run(scenario(lambda gate: gate.skip_doubt("doubt-missing")))
