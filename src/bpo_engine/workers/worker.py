from __future__ import annotations

from loguru import logger

from bpo_engine.integrations.in_memory import InMemoryMessageBroker
from bpo_engine.services.stages import StageRouter


class PipelineWorker:
    """Queue worker that feeds broker deliveries through the stage router."""

    def __init__(self, *, broker: InMemoryMessageBroker, router: StageRouter) -> None:
        """Bind the broker and register the router on every stage queue."""

        self.broker = broker
        self.router = router
        router.register(broker)

    async def run_forever(self) -> None:
        """Continuously consume queued messages."""

        logger.info("pipeline worker started")
        while True:
            await self.run_once()

    async def run_once(self) -> bool:
        """Deliver a single queued message; failures are redelivered by the broker."""

        return await self.broker.run_once()

    async def run_until_idle(self) -> int:
        """Deliver until no message is left, including follow-ups the stages emit."""

        return await self.broker.drain()
