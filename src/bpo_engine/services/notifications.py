from __future__ import annotations

from loguru import logger

from bpo_engine.models.enums import AuthorizationStatus, DoubtStatus
from bpo_engine.models.internal import Client, DailySummary
from bpo_engine.services.ports import Notifier, ReviewRepository


def render_summary_text(summary: DailySummary) -> str:
    """Plain-text body of the daily summary message."""

    lines = [
        f"Resumo diario {summary.cycle_date.isoformat()} - {summary.client_name}",
        f"Capturadas: {summary.captured}",
        f"Classificadas: {summary.classified}",
        f"Sincronizadas: {summary.synced}",
        f"Em revisao: {summary.in_review}",
        f"Autorizacoes pendentes: {summary.pending_authorizations}",
        f"Duvidas pendentes: {summary.pending_doubts}",
    ]
    if summary.errors:
        lines.append(f"Erros: {summary.errors}")
    return "\n".join(lines)


class SummaryNotifier:
    """Fill in open review counts and hand the daily summary to the transport."""

    def __init__(self, notifier: Notifier, reviews: ReviewRepository) -> None:
        self.notifier = notifier
        self.reviews = reviews

    async def send_daily_summary(self, client: Client, summary: DailySummary) -> bool:
        """Send `summary` unless the client opted out; return whether it was sent."""

        if not client.config.notifications_enabled:
            logger.debug(f"notify {client.client_id}: notifications disabled")
            return False
        authorizations = await self.reviews.list_authorizations(
            status=AuthorizationStatus.PENDING, client_id=client.client_id
        )
        doubts = await self.reviews.list_doubts(
            status=DoubtStatus.PENDING, client_id=client.client_id
        )
        summary.pending_authorizations = len(authorizations)
        summary.pending_doubts = len(doubts)
        await self.notifier.send(client, summary)
        logger.info(f"notify {client.client_id}: daily summary sent for {summary.cycle_id}")
        return True
