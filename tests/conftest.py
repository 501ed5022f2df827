"""Shared builders and fakes for engine tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

from bpo_engine.integrations.container import AppContainer, build_container
from bpo_engine.integrations.in_memory import RecordingNotifier, StaticCaptureConnector
from bpo_engine.models.enums import (
    CaptureSource,
    ClientStatus,
    Destination,
    TransactionKind,
)
from bpo_engine.models.internal import (
    CapturedTransaction,
    Category,
    CategoryAssignment,
    Client,
    ClientConfig,
    ClientLimits,
    Transaction,
)
from bpo_engine.settings import EngineSettings

CYCLE_DATE = date(2026, 3, 10)

CATEGORIES = [
    Category(category_id="cat-aluguel", name="Aluguel", group="despesa"),
    Category(category_id="cat-energia", name="Energia eletrica", group="despesa"),
    Category(category_id="cat-vendas", name="Vendas", group="receita"),
]


def make_settings(**overrides) -> EngineSettings:
    """Fast settings: no retry sleeps, small limits."""

    values = {
        "retry_max_attempts": 2,
        "retry_delay_seconds": 0.0,
        "client_concurrency": 2,
        "transaction_concurrency": 3,
        "broker_max_deliveries": 3,
        "notify_webhook_url": None,
    }
    values.update(overrides)
    return EngineSettings(**values)


def make_client(
    client_id: str = "c1",
    *,
    sources: tuple[CaptureSource, ...] = (CaptureSource.SANTANDER,),
    destination: Destination | None = Destination.NIBO,
    status: ClientStatus = ClientStatus.ACTIVE,
    materiality_threshold: Decimal | None = None,
    notifications_enabled: bool = True,
    max_transactions_per_day: int | None = None,
) -> Client:
    return Client(
        client_id=client_id,
        name=f"Cliente {client_id}",
        destination=destination,
        status=status,
        config=ClientConfig(
            sources=list(sources),
            categories=list(CATEGORIES),
            notify_email=f"{client_id}@example.com",
            notifications_enabled=notifications_enabled,
            materiality_threshold=materiality_threshold,
            limits=ClientLimits(max_transactions_per_day=max_transactions_per_day),
        ),
    )


def captured(
    source_id: str,
    value: str = "150.00",
    *,
    description: str = "Aluguel escritorio",
    counterpart: str | None = None,
    due_date: date | None = CYCLE_DATE,
    kind: TransactionKind = TransactionKind.PAYABLE,
) -> CapturedTransaction:
    return CapturedTransaction(
        source_id=source_id,
        kind=kind,
        value=Decimal(value),
        description=description,
        counterpart=counterpart if counterpart is not None else f"Fornecedor {source_id}",
        due_date=due_date,
    )


class FixedScorer:
    """Scorer answering from a description -> (category, confidence) table."""

    def __init__(self, table: dict[str, tuple[str, float]] | None = None, *, default: float = 0.95) -> None:
        self.table = table or {}
        self.default = default
        self.calls = 0

    async def score(self, client: Client, transaction: Transaction) -> CategoryAssignment:
        self.calls += 1
        category_id, confidence = self.table.get(transaction.description, ("cat-aluguel", self.default))
        name = next(c.name for c in CATEGORIES if c.category_id == category_id)
        return CategoryAssignment(category_id=category_id, category_name=name, confidence=confidence)


class FailingCaptureConnector:
    """Capture source that always fails with a transient error."""

    def __init__(self) -> None:
        self.calls = 0

    async def fetch(self, client, start_date, end_date):
        from bpo_engine.errors import TransientConnectorError

        self.calls += 1
        raise TransientConnectorError("source offline")


def build_test_container(
    *,
    settings: EngineSettings | None = None,
    scorer=None,
    capture_connectors=None,
    destinations=None,
) -> AppContainer:
    """Fresh in-memory container with deterministic scorer and recording notifier."""

    return build_container(
        settings or make_settings(),
        capture_connectors=capture_connectors,
        destinations=destinations,
        scorer=scorer or FixedScorer(),
        notifier=RecordingNotifier(),
    )


async def seed(
    container: AppContainer,
    clients: list[Client],
    records: dict[CaptureSource, dict[str, list[CapturedTransaction]]] | None = None,
) -> None:
    """Register clients and per-source static capture records."""

    for client in clients:
        await container.clients.add(client)
    for source, per_client in (records or {}).items():
        connector = container.deps.capture_connectors[source]
        assert isinstance(connector, StaticCaptureConnector)
        connector.records.update(per_client)
