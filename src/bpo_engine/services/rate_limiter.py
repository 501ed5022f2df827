from __future__ import annotations

import asyncio
from datetime import date

from loguru import logger


class DailyTransactionLimiter:
    """Count transactions admitted per client and day against the client's daily cap."""

    def __init__(self) -> None:
        self._counts: dict[tuple[str, date], int] = {}
        self._lock = asyncio.Lock()

    async def used(self, client_id: str, day: date) -> int:
        async with self._lock:
            return self._counts.get((client_id, day), 0)

    async def try_admit(self, client_id: str, day: date, amount: int, limit: int | None) -> bool:
        """Record `amount` more transactions for the day unless that would pass `limit`."""

        async with self._lock:
            key = (client_id, day)
            current = self._counts.get(key, 0)
            if limit is not None and current + amount > limit:
                logger.warning(
                    f"daily limit exceeded for {client_id}: {current} + {amount} > {limit}"
                )
                return False
            self._counts[key] = current + amount
            return True
