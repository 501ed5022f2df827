from __future__ import annotations

import asyncio
import json
import os
from typing import Any

from dotenv import load_dotenv
from loguru import logger
from openai import APIConnectionError, AzureOpenAI, InternalServerError, RateLimitError

from bpo_engine.errors import TransientConnectorError
from bpo_engine.models.internal import CategoryAssignment, Client, Transaction

load_dotenv()

_AOAI_CLIENT: AzureOpenAI | None = None

PROMPT = """
    ### Role
    You are a bookkeeping assistant for a Brazilian accounting back-office.

    ### Task
    Classify one financial transaction into exactly ONE category of the client's chart
    of categories and say how sure you are.

    ### Rules
    - Use only category ids from the provided chart.
    - "pagar" transactions are payables, "receber" transactions are receivables.
    - The counterpart name usually decides the category when the description is generic.
    - If nothing fits, pick the closest category and report a low confidence.
    - confidence is a number between 0 and 1.
    - Output MUST be a valid JSON object.

    ### Output Format
    {
    "category_id": "<ONE_OF_THE_CHART_IDS>",
    "confidence": <NUMBER_BETWEEN_0_AND_1>
    }
"""


def _get_aoai_client() -> AzureOpenAI:
    global _AOAI_CLIENT
    endpoint = os.getenv("AZURE_OPENAI_ENDPOINT")
    key = os.getenv("AZURE_OPENAI_KEY")
    if not endpoint or not key:
        raise ValueError("set AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_KEY to use the OpenAI scorer")
    if _AOAI_CLIENT is None:
        _AOAI_CLIENT = AzureOpenAI(
            azure_endpoint=endpoint,
            api_key=key,
            api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2025-01-01-preview"),
        )
        logger.info("AzureOpenAI client created")
    return _AOAI_CLIENT


def parse_json_response(text: str) -> dict[str, Any]:
    """Decode a JSON object, recovering one embedded in free-form text."""

    text = text.strip()
    if not text:
        return {}
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            return {}
        try:
            parsed = json.loads(text[start : end + 1])
        except json.JSONDecodeError:
            return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenAICategoryScorer:
    """Category scorer backed by an (Azure) OpenAI chat deployment."""

    def __init__(self, *, model: str = "gpt-4o-mini", client: Any | None = None) -> None:
        """`client` defaults to the shared AzureOpenAI client built from env vars."""

        self.model = model
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _get_aoai_client()
        return self._client

    def _payload(self, client: Client, transaction: Transaction) -> dict[str, Any]:
        return {
            "chart": [
                {"id": category.category_id, "name": category.name, "group": category.group}
                for category in client.config.categories
            ],
            "transaction": {
                "tipo": transaction.kind.value,
                "descricao": transaction.description,
                "valor": str(transaction.value),
                "contraparte": transaction.counterpart,
            },
        }

    def _complete(self, payload: dict[str, Any]) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": PROMPT},
                    {"role": "user", "content": f"Do classify: {json.dumps(payload, ensure_ascii=False)}"},
                ],
                response_format={"type": "json_object"},
                temperature=0.0,
            )
        except (APIConnectionError, RateLimitError, InternalServerError) as exc:
            raise TransientConnectorError(f"openai request failed: {exc}") from exc
        return response.choices[0].message.content or "{}"

    async def score(self, client: Client, transaction: Transaction) -> CategoryAssignment:
        content = await asyncio.to_thread(self._complete, self._payload(client, transaction))
        parsed = parse_json_response(content)
        chart = {category.category_id: category for category in client.config.categories}
        category = chart.get(str(parsed.get("category_id", "")))
        if category is None:
            # Unknown id: keep the answer but force a human look at it.
            logger.warning(
                f"scorer returned unknown category {parsed.get('category_id')!r} "
                f"for {transaction.transaction_id}"
            )
            return CategoryAssignment(
                category_id=str(parsed.get("category_id") or "uncategorized"),
                category_name=str(parsed.get("category_id") or "Sem categoria"),
                confidence=0.0,
            )
        try:
            confidence = float(parsed.get("confidence", 0.0))
        except (TypeError, ValueError):
            confidence = 0.0
        return CategoryAssignment(
            category_id=category.category_id,
            category_name=category.name,
            confidence=min(1.0, max(0.0, confidence)),
        )
