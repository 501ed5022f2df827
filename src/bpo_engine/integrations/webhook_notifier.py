from __future__ import annotations

import asyncio

import requests
from loguru import logger

from bpo_engine.errors import ConnectorRejectedError, TransientConnectorError
from bpo_engine.models.internal import Client, DailySummary
from bpo_engine.services.notifications import render_summary_text


class WebhookNotifier:
    """Post daily summaries as JSON to an HTTP webhook (mail relay, chat hook, ...)."""

    def __init__(self, url: str, *, timeout: float = 30.0, session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def _post(self, payload: dict) -> None:
        try:
            resp = self.session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransientConnectorError(f"webhook unreachable: {exc}") from exc
        if resp.status_code >= 500:
            raise TransientConnectorError(f"webhook returned {resp.status_code}")
        if resp.status_code >= 400:
            raise ConnectorRejectedError(f"webhook refused summary: {resp.status_code} {resp.text[:200]}")

    async def send(self, client: Client, summary: DailySummary) -> None:
        payload = {
            "to": client.config.notify_email,
            "client_id": client.client_id,
            "subject": f"Resumo diario {summary.cycle_date.isoformat()}",
            "text": render_summary_text(summary),
            "summary": summary.model_dump(mode="json"),
        }
        await asyncio.to_thread(self._post, payload)
        logger.debug(f"webhook: summary for {client.client_id} delivered")
