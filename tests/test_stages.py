"""Capture, classify and sync stage handlers."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from conftest import CYCLE_DATE, FixedScorer, build_test_container, captured, make_client, seed

from bpo_engine.errors import ConnectorRejectedError, PipelineValidationError, TransientConnectorError
from bpo_engine.integrations.in_memory import InMemoryDestination
from bpo_engine.models.enums import (
    CaptureSource,
    Destination,
    ReviewType,
    Stage,
    SyncAction,
    TransactionStatus,
)
from bpo_engine.models.messages import (
    CaptureConfig,
    CaptureMessage,
    ClassifyMessage,
    ReviewMessage,
    SyncMessage,
)

SRC = CaptureSource.SANTANDER
WINDOW = CaptureConfig(start_date=CYCLE_DATE.replace(day=1), end_date=CYCLE_DATE)


def _capture_message(client_id: str = "c1", **config) -> CaptureMessage:
    window = WINDOW.model_copy(update=config) if config else WINDOW
    return CaptureMessage(cycle_id="2026-03-10", client_id=client_id, source=SRC, config=window)


async def _captured_container(records, *, scorer=None, client=None):
    container = build_test_container(scorer=scorer)
    await seed(container, [client or make_client()], {SRC: {"c1": records}})
    result = await container.router.capture.handle(_capture_message())
    return container, result


def test_capture_persists_and_emits_classify_messages() -> None:
    async def scenario():
        container, result = await _captured_container([captured("a"), captured("b")])
        return result, await container.transactions.list(client_id="c1")

    result, stored = asyncio.run(scenario())
    assert result.captured == 2
    assert [type(m) for m in result.emitted] == [ClassifyMessage, ClassifyMessage]
    assert {tx.status for tx in stored} == {TransactionStatus.CAPTURED}
    assert {tx.source_id for tx in stored} == {"a", "b"}


def test_capture_redelivery_does_not_duplicate() -> None:
    async def scenario():
        container, _ = await _captured_container([captured("a")])
        again = await container.router.capture.handle(_capture_message())
        return again, await container.transactions.list(client_id="c1")

    again, stored = asyncio.run(scenario())
    assert again.captured == 0
    assert len(stored) == 1
    # Still at captured, so it is queued again for classification.
    assert len(again.emitted) == 1


def test_capture_unknown_source_is_a_validation_error() -> None:
    async def scenario():
        container = build_test_container(capture_connectors={})
        await seed(container, [make_client()])
        await container.router.capture.handle(_capture_message())

    with pytest.raises(PipelineValidationError):
        asyncio.run(scenario())


def test_capture_window_filters_by_due_date() -> None:
    async def scenario():
        late = captured("late", due_date=CYCLE_DATE.replace(month=4))
        container, result = await _captured_container([captured("a"), late])
        return result

    assert asyncio.run(scenario()).captured == 1


async def _classify_first(container) -> tuple:
    pending = await container.transactions.list_by_status("c1", TransactionStatus.CAPTURED)
    tx = pending[0]
    message = ClassifyMessage(
        cycle_id="2026-03-10",
        client_id="c1",
        transaction_id=tx.transaction_id,
        transaction_data={"descricao": tx.description, "valor": tx.value, "tipo": tx.kind},
    )
    result = await container.router.classify.handle(message)
    return result, await container.transactions.get(tx.transaction_id)


def test_confident_small_transaction_goes_straight_to_sync() -> None:
    async def scenario():
        container, _ = await _captured_container([captured("a", "120.00")])
        return await _classify_first(container)

    result, tx = asyncio.run(scenario())
    assert tx.status == TransactionStatus.SYNC_PENDING
    assert tx.category.category_id == "cat-aluguel"
    assert result.classified == 1
    [message] = result.emitted
    assert isinstance(message, SyncMessage)
    assert message.destination == Destination.NIBO
    assert message.action == SyncAction.CREATE


def test_low_confidence_opens_classification_review() -> None:
    async def scenario():
        scorer = FixedScorer(default=0.55)
        container, _ = await _captured_container([captured("a")], scorer=scorer)
        return await _classify_first(container)

    result, tx = asyncio.run(scenario())
    assert tx.status == TransactionStatus.IN_REVIEW
    [message] = result.emitted
    assert isinstance(message, ReviewMessage)
    assert message.review_type == ReviewType.CLASSIFICATION
    assert message.suggestion.confidence == pytest.approx(0.55)
    assert result.review == 1


def _classify_against_threshold(value: str):
    async def scenario():
        client = make_client(materiality_threshold=Decimal("500"))
        container, _ = await _captured_container([captured("a", value)], client=client)
        return await _classify_first(container)

    return asyncio.run(scenario())


def test_value_equal_to_materiality_threshold_syncs_without_authorization() -> None:
    result, tx = _classify_against_threshold("500.00")
    assert tx.status == TransactionStatus.SYNC_PENDING
    [message] = result.emitted
    assert isinstance(message, SyncMessage)


def test_value_above_materiality_threshold_needs_authorization() -> None:
    result, tx = _classify_against_threshold("500.01")
    assert tx.status == TransactionStatus.IN_REVIEW
    [message] = result.emitted
    assert message.review_type == ReviewType.AUTHORIZATION
    assert "500.01" in message.reason


def test_suspected_duplicate_opens_review() -> None:
    async def scenario():
        records = [captured("a", counterpart="Light SA"), captured("b", counterpart="Light SA")]
        container, _ = await _captured_container(records)
        pending = await container.transactions.list_by_status("c1", TransactionStatus.CAPTURED)
        results = []
        for tx in pending:
            message = ClassifyMessage(
                cycle_id="x",
                client_id="c1",
                transaction_id=tx.transaction_id,
                transaction_data={"descricao": tx.description, "valor": tx.value, "tipo": tx.kind},
            )
            results.append(await container.router.classify.handle(message))
        return results

    first, second = asyncio.run(scenario())
    assert isinstance(first.emitted[0], SyncMessage)
    review = second.emitted[0]
    assert isinstance(review, ReviewMessage)
    assert review.duplicate_of is not None


def test_invalid_data_moves_transaction_to_error() -> None:
    async def scenario():
        container, _ = await _captured_container([captured("a", "0")])
        return await _classify_first(container)

    result, tx = asyncio.run(scenario())
    assert tx.status == TransactionStatus.ERROR
    assert result.emitted == []
    assert result.errors[0].stage == Stage.CLASSIFY


def test_scorer_failure_leaves_transaction_captured() -> None:
    class BrokenScorer:
        async def score(self, client, transaction):
            raise TransientConnectorError("model offline")

    async def scenario():
        container, _ = await _captured_container([captured("a")], scorer=BrokenScorer())
        with pytest.raises(TransientConnectorError):
            await _classify_first(container)
        return await container.transactions.list_by_status("c1", TransactionStatus.CAPTURED)

    assert len(asyncio.run(scenario())) == 1


def test_classify_redelivery_is_ignored() -> None:
    async def scenario():
        container, _ = await _captured_container([captured("a")])
        pending = await container.transactions.list_by_status("c1", TransactionStatus.CAPTURED)
        first, _ = await _classify_first(container)
        message = ClassifyMessage(
            cycle_id="x",
            client_id="c1",
            transaction_id=pending[0].transaction_id,
            transaction_data={"descricao": "x", "valor": "1", "tipo": "pagar"},
        )
        return first, await container.router.classify.handle(message)

    first, second = asyncio.run(scenario())
    assert len(first.emitted) == 1
    assert second.emitted == [] and second.classified == 0


async def _sync_ready(destinations=None):
    container = build_test_container(destinations=destinations)
    await seed(container, [make_client()], {SRC: {"c1": [captured("a")]}})
    await container.router.capture.handle(_capture_message())
    result, tx = await _classify_first(container)
    return container, result.emitted[0], tx


def test_sync_marks_synced_and_second_delivery_is_noop() -> None:
    async def scenario():
        container, message, tx = await _sync_ready()
        first = await container.router.sync.handle(message)
        second = await container.router.sync.handle(message)
        return first, second, await container.transactions.get(tx.transaction_id), container

    first, second, tx, container = asyncio.run(scenario())
    assert first.synced == 1
    assert second.synced == 0
    assert tx.status == TransactionStatus.SYNCED
    assert Destination.NIBO in tx.external_ids
    assert len(container.deps.destinations[Destination.NIBO].created) == 1


def test_sync_of_unapproved_transaction_is_a_validation_error() -> None:
    async def scenario():
        container, _ = await _captured_container([captured("a")])
        [tx] = await container.transactions.list_by_status("c1", TransactionStatus.CAPTURED)
        message = SyncMessage(
            cycle_id="x",
            client_id="c1",
            transaction_id=tx.transaction_id,
            destination=Destination.NIBO,
            action=SyncAction.CREATE,
            data={"descricao": tx.description, "valor": tx.value},
        )
        await container.router.sync.handle(message)

    with pytest.raises(PipelineValidationError):
        asyncio.run(scenario())


def test_destination_rejection_moves_transaction_to_error() -> None:
    class RejectingDestination(InMemoryDestination):
        async def create(self, client, transaction):
            raise ConnectorRejectedError("invalid category")

    async def scenario():
        destinations = {Destination.NIBO: RejectingDestination("nibo")}
        container, message, tx = await _sync_ready(destinations)
        result = await container.router.sync.handle(message)
        return result, await container.transactions.get(tx.transaction_id)

    result, tx = asyncio.run(scenario())
    assert tx.status == TransactionStatus.ERROR
    assert result.errors[0].stage == Stage.SYNC


def test_transient_sync_failure_keeps_sync_pending() -> None:
    class DownDestination(InMemoryDestination):
        async def find_existing(self, client, **kwargs):
            raise TransientConnectorError("timeout")

    async def scenario():
        destinations = {Destination.NIBO: DownDestination("nibo")}
        container, message, tx = await _sync_ready(destinations)
        with pytest.raises(TransientConnectorError):
            await container.router.sync.handle(message)
        return await container.transactions.get(tx.transaction_id)

    assert asyncio.run(scenario()).status == TransactionStatus.SYNC_PENDING


class SlowDestination(InMemoryDestination):
    """Destination whose lookups and creates yield to the event loop."""

    async def find_existing(self, client, **kwargs):
        await asyncio.sleep(0.01)
        return await super().find_existing(client, **kwargs)

    async def create(self, client, transaction):
        await asyncio.sleep(0.01)
        return await super().create(client, transaction)


def test_concurrent_syncs_of_one_transaction_create_once() -> None:
    async def scenario():
        destinations = {Destination.NIBO: SlowDestination("nibo")}
        container, message, tx = await _sync_ready(destinations)
        # Worker path and cycle path hold separate stage instances over shared dependencies.
        results = await asyncio.gather(
            container.router.sync.handle(message),
            container.orchestrator.sync.handle(message),
        )
        return results, await container.transactions.get(tx.transaction_id), container

    results, tx, container = asyncio.run(scenario())
    destination = container.deps.destinations[Destination.NIBO]
    assert destination.created == ["nibo-1"]
    assert sorted(result.synced for result in results) == [0, 1]
    assert tx.status == TransactionStatus.SYNCED
    assert tx.external_ids[Destination.NIBO] == "nibo-1"
    assert len(container.deps.sync_claims) == 0
