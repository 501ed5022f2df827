from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

from bpo_engine.integrations.in_memory import (
    InMemoryClientRepository,
    InMemoryCycleRepository,
    InMemoryDestination,
    InMemoryFeedbackSink,
    InMemoryMessageBroker,
    InMemoryReviewRepository,
    InMemoryTransactionRepository,
    KeywordCategoryScorer,
    RecordingNotifier,
    StaticCaptureConnector,
)
from bpo_engine.integrations.openai_scorer import OpenAICategoryScorer
from bpo_engine.integrations.webhook_notifier import WebhookNotifier
from bpo_engine.models.enums import CaptureSource, Destination
from bpo_engine.models.internal import CapturedTransaction, Client
from bpo_engine.services.cycle_orchestrator import CycleOrchestrator
from bpo_engine.services.notifications import SummaryNotifier
from bpo_engine.services.ports import (
    CaptureConnector,
    CategoryScorer,
    DestinationConnector,
    Notifier,
)
from bpo_engine.services.reconciler import SyncReconciler
from bpo_engine.services.retry import RetryExecutor, RetryPolicy
from bpo_engine.services.review_gate import ReviewGate
from bpo_engine.services.stages import (
    CaptureStage,
    ClassifyStage,
    PipelineDependencies,
    StageRouter,
    SyncStage,
)
from bpo_engine.settings import EngineSettings, get_settings
from bpo_engine.workers.worker import PipelineWorker


@dataclass
class AppContainer:
    """Runtime dependency container for API/CLI/worker wiring."""

    settings: EngineSettings
    clients: InMemoryClientRepository
    transactions: InMemoryTransactionRepository
    cycles: InMemoryCycleRepository
    reviews: InMemoryReviewRepository
    broker: InMemoryMessageBroker
    feedback: InMemoryFeedbackSink
    notifier: Notifier
    deps: PipelineDependencies
    review_gate: ReviewGate
    orchestrator: CycleOrchestrator
    router: StageRouter
    worker: PipelineWorker


def _default_scorer(settings: EngineSettings) -> CategoryScorer:
    if os.getenv("AZURE_OPENAI_ENDPOINT") and os.getenv("AZURE_OPENAI_KEY"):
        return OpenAICategoryScorer(model=settings.openai_model)
    return KeywordCategoryScorer()


def _default_notifier(settings: EngineSettings) -> Notifier:
    if settings.notify_webhook_url:
        return WebhookNotifier(settings.notify_webhook_url)
    return RecordingNotifier()


def build_container(
    settings: EngineSettings | None = None,
    *,
    capture_connectors: dict[CaptureSource, CaptureConnector] | None = None,
    destinations: dict[Destination, DestinationConnector] | None = None,
    scorer: CategoryScorer | None = None,
    notifier: Notifier | None = None,
) -> AppContainer:
    """Create the default in-memory runtime container; any adapter can be swapped in."""

    settings = settings or get_settings()
    clients = InMemoryClientRepository()
    transactions = InMemoryTransactionRepository()
    cycles = InMemoryCycleRepository()
    reviews = InMemoryReviewRepository()
    broker = InMemoryMessageBroker(max_deliveries=settings.broker_max_deliveries)
    feedback = InMemoryFeedbackSink()
    notifier = notifier or _default_notifier(settings)

    deps = PipelineDependencies(
        clients=clients,
        transactions=transactions,
        broker=broker,
        capture_connectors=(
            capture_connectors
            if capture_connectors is not None
            else {source: StaticCaptureConnector() for source in CaptureSource}
        ),
        destinations=(
            destinations
            if destinations is not None
            else {destination: InMemoryDestination(destination.value) for destination in Destination}
        ),
        scorer=scorer or _default_scorer(settings),
        retry=RetryExecutor(
            RetryPolicy(
                max_attempts=settings.retry_max_attempts,
                delay_seconds=settings.retry_delay_seconds,
            )
        ),
        confidence_threshold=settings.confidence_threshold,
        materiality_threshold=settings.materiality_threshold,
        capture_lookback_days=settings.capture_lookback_days,
    )
    review_gate = ReviewGate(
        clients=clients,
        transactions=transactions,
        reviews=reviews,
        broker=broker,
        feedback=feedback,
    )
    orchestrator = CycleOrchestrator(
        deps=deps,
        cycles=cycles,
        review_gate=review_gate,
        settings=settings,
        summaries=SummaryNotifier(notifier, reviews),
    )
    router = StageRouter(
        capture=CaptureStage(deps),
        classify=ClassifyStage(deps),
        sync=SyncStage(
            deps,
            SyncReconciler(transactions, deps.retry, window_days=settings.duplicate_window_days),
        ),
        review=review_gate,
    )
    worker = PipelineWorker(broker=broker, router=router)
    return AppContainer(
        settings=settings,
        clients=clients,
        transactions=transactions,
        cycles=cycles,
        reviews=reviews,
        broker=broker,
        feedback=feedback,
        notifier=notifier,
        deps=deps,
        review_gate=review_gate,
        orchestrator=orchestrator,
        router=router,
        worker=worker,
    )


async def apply_seed(container: AppContainer, payload: dict[str, Any]) -> int:
    """Load clients and static capture records from a JSON-style fixture.

    Expected shape::

        {"clients": [<Client>...],
         "captures": {"<source>": {"<client_id>": [<CapturedTransaction>...]}}}

    Returns the number of clients registered.
    """

    clients = [Client.model_validate(item) for item in payload.get("clients", [])]
    for client in clients:
        await container.clients.add(client)
    for source_name, per_client in (payload.get("captures") or {}).items():
        source = CaptureSource(source_name)
        connector = container.deps.capture_connectors.get(source)
        if not isinstance(connector, StaticCaptureConnector):
            raise ValueError(f"source {source.value} is not backed by a static connector")
        for client_id, items in per_client.items():
            connector.records[client_id] = [CapturedTransaction.model_validate(item) for item in items]
    return len(clients)
