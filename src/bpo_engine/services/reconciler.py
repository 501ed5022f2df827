from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from bpo_engine.models.enums import Destination, SyncAction
from bpo_engine.models.internal import Client, Transaction, utcnow
from bpo_engine.services.ports import DestinationConnector, TransactionRepository
from bpo_engine.services.retry import RetryExecutor


@dataclass(frozen=True)
class ReconcileResult:
    """Action taken against the destination and the remote id it settled on."""

    action: SyncAction
    external_id: str


class SyncReconciler:
    """Decide create/update/skip for one transaction so repeated syncs never duplicate."""

    def __init__(
        self,
        transactions: TransactionRepository,
        retry: RetryExecutor,
        *,
        window_days: int = 3,
    ) -> None:
        self.transactions = transactions
        self.retry = retry
        self.window_days = window_days

    async def reconcile(
        self,
        client: Client,
        transaction: Transaction,
        destination: Destination,
        connector: DestinationConnector,
    ) -> ReconcileResult:
        """Push `transaction` to `destination` and persist the resulting external id."""

        label = f"sync {transaction.transaction_id} -> {destination.value}"
        known_id = transaction.external_ids.get(destination)
        if known_id is not None:
            await self.retry.run(
                lambda: connector.update(client, known_id, transaction),
                label=f"{label} (update)",
            )
            logger.info(f"{label}: updated {known_id}")
            return ReconcileResult(action=SyncAction.UPDATE, external_id=known_id)

        found_id = await self.retry.run(
            lambda: connector.find_existing(
                client,
                description=transaction.description,
                value=transaction.value,
                due_date=transaction.due_date,
                window_days=self.window_days,
            ),
            label=f"{label} (lookup)",
        )
        if found_id is not None:
            await self._remember(transaction, destination, found_id)
            logger.info(f"{label}: adopted existing {found_id}")
            return ReconcileResult(action=SyncAction.SKIP, external_id=found_id)

        created_id = await self.retry.run(
            lambda: connector.create(client, transaction),
            label=f"{label} (create)",
        )
        await self._remember(transaction, destination, created_id)
        logger.info(f"{label}: created {created_id}")
        return ReconcileResult(action=SyncAction.CREATE, external_id=created_id)

    async def _remember(
        self, transaction: Transaction, destination: Destination, external_id: str
    ) -> None:
        # Written before returning so a redelivered message resolves to update.
        transaction.external_ids[destination] = external_id
        transaction.updated_at = utcnow()
        await self.transactions.save(transaction)
