from __future__ import annotations

import asyncio
from decimal import Decimal

from conftest import CYCLE_DATE, build_test_container, captured, make_client, seed

from bpo_engine.errors import PipelineValidationError, TransientConnectorError
from bpo_engine.integrations.in_memory import InMemoryMessageBroker
from bpo_engine.models.enums import CaptureSource, Destination, ReviewType, TransactionStatus
from bpo_engine.models.messages import (
    CaptureConfig,
    CaptureMessage,
    capture_queue,
    queue_for,
    review_queue,
)

SRC = CaptureSource.SANTANDER


def _capture_message(client_id: str = "c1") -> CaptureMessage:
    return CaptureMessage(
        cycle_id="worker",
        client_id=client_id,
        source=SRC,
        config=CaptureConfig(start_date=CYCLE_DATE, end_date=CYCLE_DATE),
    )


def test_failed_delivery_is_redelivered_with_incremented_retry_count() -> None:
    seen: list[int] = []

    async def flaky(message) -> None:
        seen.append(message.retry_count)
        if len(seen) < 3:
            raise TransientConnectorError("try again")

    async def scenario():
        broker = InMemoryMessageBroker(max_deliveries=5)
        broker.register_handler("q", flaky)
        await broker.publish("q", _capture_message())
        return broker, await broker.drain()

    broker, delivered = asyncio.run(scenario())
    assert seen == [0, 1, 2]
    assert delivered == 1
    assert broker.dead_letters == []


def test_exhausted_delivery_goes_to_dead_letter() -> None:
    async def always_fails(message) -> None:
        raise TransientConnectorError("down")

    async def scenario():
        broker = InMemoryMessageBroker(max_deliveries=2)
        broker.register_handler("q", always_fails)
        await broker.publish("q", _capture_message())
        await broker.drain()
        return broker

    broker = asyncio.run(scenario())
    [dead] = broker.dead_letters
    assert dead.queue_name == "q"
    assert dead.message.retry_count == 1
    assert "down" in dead.reason
    assert broker.pending == 0


def test_validation_error_is_dead_lettered_without_redelivery() -> None:
    calls: list[str] = []

    async def invalid(message) -> None:
        calls.append(message.message_id)
        raise PipelineValidationError("malformed")

    async def scenario():
        broker = InMemoryMessageBroker(max_deliveries=5)
        broker.register_handler("q", invalid)
        await broker.publish("q", _capture_message())
        await broker.publish("unbound", _capture_message())
        await broker.drain()
        return broker

    broker = asyncio.run(scenario())
    assert len(calls) == 1
    assert [dead.queue_name for dead in broker.dead_letters] == ["q", "unbound"]


def test_worker_runs_capture_through_sync() -> None:
    async def scenario():
        container = build_test_container()
        await seed(container, [make_client()], {SRC: {"c1": [captured("a"), captured("b", "90.00")]}})
        message = _capture_message()
        await container.broker.publish(queue_for(message), message)
        delivered = await container.worker.run_until_idle()
        txs = await container.transactions.list(client_id="c1")
        return container, delivered, txs

    container, delivered, txs = asyncio.run(scenario())
    # capture + two classify + two sync
    assert delivered == 5
    assert {tx.status for tx in txs} == {TransactionStatus.SYNCED}
    assert len(container.deps.destinations[Destination.NIBO].created) == 2
    assert container.broker.dead_letters == []


def test_worker_opens_reviews_from_review_queue() -> None:
    async def scenario():
        container = build_test_container()
        await seed(
            container,
            [make_client(materiality_threshold=Decimal("100"))],
            {SRC: {"c1": [captured("a", "500.00")]}},
        )
        message = _capture_message()
        await container.broker.publish(capture_queue(SRC), message)
        await container.worker.run_until_idle()
        return container, await container.review_gate.list_pending_authorizations()

    container, pending = asyncio.run(scenario())
    assert len(pending) == 1
    assert len(container.broker.published_to(review_queue(ReviewType.AUTHORIZATION))) == 1
    assert container.deps.destinations[Destination.NIBO].created == []


def test_unknown_client_message_is_dead_lettered() -> None:
    async def scenario():
        container = build_test_container()
        message = _capture_message("ghost")
        await container.broker.publish(queue_for(message), message)
        await container.worker.run_until_idle()
        return container.broker.dead_letters

    [dead] = asyncio.run(scenario())
    assert "unknown client ghost" in dead.reason
