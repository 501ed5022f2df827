"""Daily cycle control: client fan-out, per-client pipeline, aggregation and watchdog."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import date, timedelta

from loguru import logger

from bpo_engine.errors import (
    CycleConflictError,
    CycleDeadlineExceeded,
    NoEligibleClientsError,
    PipelineError,
    PipelineValidationError,
    RecordNotFoundError,
)
from bpo_engine.models.common import CycleError
from bpo_engine.models.enums import (
    CycleRuntimeStatus,
    CycleStatus,
    Stage,
    TransactionStatus,
)
from bpo_engine.models.internal import Client, Cycle, DailySummary, utcnow
from bpo_engine.models.messages import (
    CaptureConfig,
    CaptureMessage,
    ClassifyMessage,
    ReviewMessage,
    SyncMessage,
)
from bpo_engine.services.concurrency import Outcome, run_bounded
from bpo_engine.services.notifications import SummaryNotifier
from bpo_engine.services.ports import CycleRepository
from bpo_engine.services.rate_limiter import DailyTransactionLimiter
from bpo_engine.services.reconciler import SyncReconciler
from bpo_engine.services.review_gate import ReviewGate
from bpo_engine.services.stages import (
    CaptureStage,
    ClassifyStage,
    PipelineDependencies,
    StageResult,
    SyncStage,
    require_destination,
    sync_message_for,
)
from bpo_engine.services.state_machine import derive_cycle_status, is_cycle_terminal
from bpo_engine.settings import EngineSettings

Clock = Callable[[], float]


@dataclass(frozen=True)
class StartCycleResult:
    """Acknowledgement returned as soon as a cycle is scheduled."""

    cycle_id: str
    instance_id: str
    status: CycleStatus
    clients: list[str]
    accepted: bool = True


@dataclass(frozen=True)
class CycleStatusView:
    """Persisted cycle plus what the task registry knows about its execution."""

    cycle: Cycle
    runtime_status: CycleRuntimeStatus


@dataclass
class ClientTally:
    """Counters of one client's run, used for its daily summary."""

    captured: int = 0
    classified: int = 0
    synced: int = 0
    review: int = 0
    errors: int = 0

    def add(self, result: StageResult) -> None:
        self.captured += result.captured
        self.classified += result.classified
        self.synced += result.synced
        self.review += result.review
        self.errors += len(result.errors)


class CycleDeadline:
    """Watchdog: once expired, no new unit of stage work may start."""

    def __init__(self, seconds: float, *, clock: Clock = time.monotonic) -> None:
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    @property
    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, what: str) -> None:
        if self.expired:
            raise CycleDeadlineExceeded(
                f"cycle exceeded {self.seconds:g}s before starting {what}"
            )


class CycleAggregator:
    """Single writer for a running cycle's counters, errors and pending-client list."""

    def __init__(self, cycles: CycleRepository, cycle: Cycle, *, clock: Clock = time.monotonic) -> None:
        self.cycles = cycles
        self.cycle = cycle
        self._clock = clock
        self._started = clock()
        self._lock = asyncio.Lock()

    async def mark_running(self) -> None:
        async with self._lock:
            if self.cycle.status != CycleStatus.PENDING:
                raise PipelineValidationError(
                    f"cycle {self.cycle.cycle_id} is {self.cycle.status.value}, expected pending"
                )
            self._started = self._clock()
            self.cycle.status = CycleStatus.RUNNING
            self.cycle.started_at = utcnow()
            await self.cycles.save(self.cycle)

    async def record(self, result: StageResult) -> None:
        """Fold one stage result into the cycle counters."""

        async with self._lock:
            self.cycle.transactions_captured += result.captured
            self.cycle.transactions_classified += result.classified
            self.cycle.transactions_synced += result.synced
            self.cycle.transactions_review += result.review
            self.cycle.errors.extend(result.errors)
            await self.cycles.save(self.cycle)

    async def record_error(self, error: CycleError) -> None:
        async with self._lock:
            self.cycle.errors.append(error)
            await self.cycles.save(self.cycle)

    async def finish_client(self, client_id: str, *, error: CycleError | None = None) -> None:
        """Count a client as processed, or as failed when `error` is given."""

        async with self._lock:
            if client_id in self.cycle.pending_clients:
                self.cycle.pending_clients.remove(client_id)
            if error is None:
                self.cycle.clients_processed += 1
            else:
                self.cycle.clients_failed += 1
                self.cycle.errors.append(error)
            await self.cycles.save(self.cycle)

    async def finalize(self) -> Cycle:
        async with self._lock:
            self._close(derive_cycle_status(self.cycle.clients_total, self.cycle.clients_failed))
            await self.cycles.save(self.cycle)
            return self.cycle

    async def abort(self, error: CycleError) -> Cycle:
        """Close the cycle as failed after an orchestrator-level crash."""

        async with self._lock:
            self.cycle.errors.append(error)
            self.cycle.clients_failed = self.cycle.clients_total - self.cycle.clients_processed
            self._close(CycleStatus.FAILED)
            await self.cycles.save(self.cycle)
            return self.cycle

    def _close(self, status: CycleStatus) -> None:
        if is_cycle_terminal(self.cycle.status):
            raise PipelineValidationError(f"cycle {self.cycle.cycle_id} is already {self.cycle.status.value}")
        self.cycle.status = status
        self.cycle.completed_at = utcnow()
        self.cycle.duration_ms = int((self._clock() - self._started) * 1000)


@dataclass
class _ClientRun:
    client: Client
    aggregator: CycleAggregator
    deadline: CycleDeadline
    tally: ClientTally = field(default_factory=ClientTally)


class CycleOrchestrator:
    """Start, run and report daily cycles across every active client."""

    def __init__(
        self,
        *,
        deps: PipelineDependencies,
        cycles: CycleRepository,
        review_gate: ReviewGate,
        settings: EngineSettings,
        summaries: SummaryNotifier | None = None,
        limiter: DailyTransactionLimiter | None = None,
        clock: Clock = time.monotonic,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.deps = deps
        self.cycles = cycles
        self.review_gate = review_gate
        self.settings = settings
        self.summaries = summaries
        self.limiter = limiter or DailyTransactionLimiter()
        self.clock = clock
        self.today = today
        self.capture = CaptureStage(deps)
        self.classify = ClassifyStage(deps)
        self.sync = SyncStage(
            deps,
            SyncReconciler(deps.transactions, deps.retry, window_days=settings.duplicate_window_days),
        )
        self._tasks: dict[str, asyncio.Task[Cycle]] = {}
        self._start_lock = asyncio.Lock()

    async def start_cycle(
        self,
        *,
        client_id: str | None = None,
        force: bool = False,
        cycle_date: date | None = None,
    ) -> StartCycleResult:
        """Persist a pending cycle and schedule its run in the background."""

        cycle, clients = await self._create_cycle(client_id=client_id, force=force, cycle_date=cycle_date)
        task = asyncio.create_task(self._execute(cycle, clients), name=f"cycle-{cycle.cycle_id}")
        task.add_done_callback(_log_task_failure)
        self._tasks[cycle.cycle_id] = task
        logger.info(f"cycle {cycle.cycle_id} scheduled for {len(clients)} client(s)")
        return StartCycleResult(
            cycle_id=cycle.cycle_id,
            instance_id=cycle.instance_id,
            status=cycle.status,
            clients=[client.client_id for client in clients],
        )

    async def run_cycle(
        self,
        *,
        client_id: str | None = None,
        force: bool = False,
        cycle_date: date | None = None,
    ) -> Cycle:
        """Start a cycle and wait until it reaches a terminal status."""

        started = await self.start_cycle(client_id=client_id, force=force, cycle_date=cycle_date)
        return await self.wait(started.cycle_id)

    async def wait(self, cycle_id: str) -> Cycle:
        task = self._tasks.get(cycle_id)
        if task is None:
            raise RecordNotFoundError(f"cycle {cycle_id} is not running in this process")
        return await task

    async def get_cycle_status(self, cycle_id: str) -> CycleStatusView:
        cycle = await self.cycles.get(cycle_id)
        if cycle is None:
            raise RecordNotFoundError(f"cycle {cycle_id} not found")
        return CycleStatusView(cycle=cycle, runtime_status=self._runtime_status(cycle_id))

    def _runtime_status(self, cycle_id: str) -> CycleRuntimeStatus:
        task = self._tasks.get(cycle_id)
        if task is None:
            return CycleRuntimeStatus.UNKNOWN
        if not task.done():
            return CycleRuntimeStatus.RUNNING
        if task.cancelled() or task.exception() is not None:
            return CycleRuntimeStatus.FAILED
        return CycleRuntimeStatus.COMPLETED

    async def _create_cycle(
        self, *, client_id: str | None, force: bool, cycle_date: date | None
    ) -> tuple[Cycle, list[Client]]:
        cycle_date = cycle_date or self.today()
        async with self._start_lock:
            clients = await self.deps.clients.list_active()
            if client_id is not None:
                clients = [client for client in clients if client.client_id == client_id]
            if not clients:
                target = f"client {client_id}" if client_id else "clients"
                raise NoEligibleClientsError(f"no active {target} to process")

            existing = await self.cycles.list_by_date(cycle_date)
            if existing and not force:
                raise CycleConflictError(
                    f"cycle {existing[0].cycle_id} already exists for {cycle_date.isoformat()}; "
                    "use force to run again"
                )
            cycle = Cycle.new(
                cycle_date=cycle_date,
                client_ids=[client.client_id for client in clients],
                forced=force,
            )
            await self.cycles.create(cycle)
        return cycle, clients

    async def _execute(self, cycle: Cycle, clients: Sequence[Client]) -> Cycle:
        log = logger.bind(cycle_id=cycle.cycle_id)
        aggregator = CycleAggregator(self.cycles, cycle, clock=self.clock)
        deadline = CycleDeadline(self.settings.max_cycle_duration_seconds, clock=self.clock)
        try:
            await aggregator.mark_running()
            log.info(f"cycle {cycle.cycle_id} running for {len(clients)} client(s)")
            await run_bounded(
                list(clients),
                self.settings.client_concurrency,
                lambda client: self._client_unit(_ClientRun(client, aggregator, deadline), cycle),
                mode=self.settings.concurrency_mode,
            )
            final = await aggregator.finalize()
        except Exception as exc:
            log.exception(f"cycle {cycle.cycle_id} aborted: {exc}")
            await aggregator.abort(
                CycleError(client_id="*", stage=Stage.ORCHESTRATOR, message=str(exc))
            )
            raise
        log.info(
            f"cycle {final.cycle_id} {final.status.value}: "
            f"{final.clients_processed}/{final.clients_total} clients ok, "
            f"{final.clients_failed} failed, {len(final.errors)} error(s)"
        )
        return final

    async def _client_unit(self, run: _ClientRun, cycle: Cycle) -> None:
        """Run one client in isolation; its failure never reaches other clients."""

        client_id = run.client.client_id
        log = logger.bind(cycle_id=cycle.cycle_id, client_id=client_id)
        try:
            run.deadline.check(f"client {client_id}")
            await self._run_client(run, cycle)
        except CycleDeadlineExceeded as exc:
            log.warning(f"client {client_id} stopped by watchdog: {exc}")
            await run.aggregator.finish_client(
                client_id, error=CycleError(client_id=client_id, stage=Stage.WATCHDOG, message=str(exc))
            )
            return
        except Exception as exc:
            stage = exc.stage if isinstance(exc, _StageFailure) else Stage.ORCHESTRATOR
            log.error(f"client {client_id} failed at {stage.value}: {exc}")
            await run.aggregator.finish_client(
                client_id, error=CycleError(client_id=client_id, stage=stage, message=str(exc))
            )
            return

        await self._notify(run, cycle)
        await run.aggregator.finish_client(client_id)
        log.info(
            f"client {client_id} done: {run.tally.captured} captured, "
            f"{run.tally.synced} synced, {run.tally.review} in review"
        )

    async def _run_client(self, run: _ClientRun, cycle: Cycle) -> None:
        client = run.client
        try:
            require_destination(client)
        except PipelineValidationError as exc:
            raise _StageFailure(Stage.SYNC, str(exc)) from exc
        if not client.config.sources:
            raise _StageFailure(Stage.CAPTURE, f"client {client.client_id} has no capture sources")

        limit = client.config.limits.max_transactions_per_day
        if limit is not None and await self.limiter.used(client.client_id, cycle.cycle_date) >= limit:
            raise _StageFailure(
                Stage.CAPTURE, f"daily transaction limit {limit} already reached for client {client.client_id}"
            )

        classify_messages = await self._capture(run, cycle)
        if not await self.limiter.try_admit(
            client.client_id, cycle.cycle_date, len(classify_messages), limit
        ):
            raise _StageFailure(
                Stage.CAPTURE,
                f"rate limit exceeded for client {client.client_id}: "
                f"{len(classify_messages)} transaction(s) over daily limit {limit}",
            )

        results = await self._fan_out(run, Stage.CLASSIFY, classify_messages, self.classify.handle)
        review_messages: list[ReviewMessage] = []
        sync_messages: list[SyncMessage] = []
        for result in results:
            for message in result.emitted:
                if isinstance(message, ReviewMessage):
                    review_messages.append(message)
                elif isinstance(message, SyncMessage):
                    sync_messages.append(message)

        for message in review_messages:
            run.deadline.check(f"review {message.transaction_id}")
            try:
                await run.aggregator.record(await self.review_gate.open_review(message))
            except PipelineError as exc:
                await self._item_error(run, Stage.REVIEW, message.transaction_id, exc)

        sync_messages.extend(await self._resume_sync(run, cycle, sync_messages))
        await self._fan_out(run, Stage.SYNC, sync_messages, self.sync.handle)

    async def _capture(self, run: _ClientRun, cycle: Cycle) -> list[ClassifyMessage]:
        client = run.client
        window = CaptureConfig(
            start_date=cycle.cycle_date - timedelta(days=self.settings.capture_lookback_days),
            end_date=cycle.cycle_date,
        )
        emitted: list[ClassifyMessage] = []
        failures: list[str] = []
        for source in client.config.sources:
            run.deadline.check(f"capture {client.client_id}/{source.value}")
            message = CaptureMessage(
                cycle_id=cycle.cycle_id, client_id=client.client_id, source=source, config=window
            )
            try:
                result = await self.capture.handle(message)
            except PipelineValidationError as exc:
                raise _StageFailure(Stage.CAPTURE, str(exc)) from exc
            except Exception as exc:
                failures.append(source.value)
                await self._item_error(run, Stage.CAPTURE, None, exc, detail=source.value)
                continue
            run.tally.add(result)
            await run.aggregator.record(result)
            emitted.extend(m for m in result.emitted if isinstance(m, ClassifyMessage))

        if len(failures) == len(client.config.sources):
            raise _StageFailure(Stage.CAPTURE, f"every capture source failed: {', '.join(failures)}")
        return emitted

    async def _resume_sync(
        self, run: _ClientRun, cycle: Cycle, queued: list[SyncMessage]
    ) -> list[SyncMessage]:
        """Sync messages for transactions approved earlier but never synced."""

        queued_ids = {message.transaction_id for message in queued}
        leftovers = await self.deps.transactions.list_by_status(
            run.client.client_id, TransactionStatus.SYNC_PENDING
        )
        return [
            sync_message_for(run.client, transaction, cycle.cycle_id)
            for transaction in leftovers
            if transaction.transaction_id not in queued_ids
        ]

    async def _fan_out(
        self,
        run: _ClientRun,
        stage: Stage,
        messages: Sequence[ClassifyMessage] | Sequence[SyncMessage],
        handler: Callable[..., Awaitable[StageResult]],
    ) -> list[StageResult]:
        """Run per-transaction stage work under the transaction concurrency limit."""

        async def unit(message: ClassifyMessage | SyncMessage) -> StageResult:
            run.deadline.check(f"{stage.value} {message.transaction_id}")
            return await handler(message)

        outcomes: list[Outcome[StageResult]] = await run_bounded(
            list(messages),
            self.settings.transaction_concurrency,
            unit,
            mode=self.settings.concurrency_mode,
        )
        results: list[StageResult] = []
        expired: CycleDeadlineExceeded | None = None
        for message, outcome in zip(messages, outcomes):
            if outcome.ok:
                result = outcome.unwrap()
                run.tally.add(result)
                await run.aggregator.record(result)
                results.append(result)
            elif isinstance(outcome.error, CycleDeadlineExceeded):
                expired = expired or outcome.error
            else:
                await self._item_error(run, stage, message.transaction_id, outcome.error)
        if expired is not None:
            raise expired
        return results

    async def _item_error(
        self,
        run: _ClientRun,
        stage: Stage,
        transaction_id: str | None,
        exc: BaseException | None,
        *,
        detail: str | None = None,
    ) -> None:
        message = f"{type(exc).__name__}: {exc}"
        if detail:
            message = f"{detail}: {message}"
        logger.bind(client_id=run.client.client_id, stage=stage.value).warning(message)
        run.tally.errors += 1
        await run.aggregator.record_error(
            CycleError(
                client_id=run.client.client_id,
                stage=stage,
                message=message,
                transaction_id=transaction_id,
            )
        )

    async def _notify(self, run: _ClientRun, cycle: Cycle) -> None:
        if self.summaries is None:
            return
        summary = DailySummary(
            client_id=run.client.client_id,
            client_name=run.client.name,
            cycle_id=cycle.cycle_id,
            cycle_date=cycle.cycle_date,
            captured=run.tally.captured,
            classified=run.tally.classified,
            synced=run.tally.synced,
            in_review=run.tally.review,
            errors=run.tally.errors,
        )
        try:
            await self.summaries.send_daily_summary(run.client, summary)
        except Exception as exc:
            await self._item_error(run, Stage.NOTIFY, None, exc)


class _StageFailure(PipelineError):
    """Client-fatal failure tagged with the stage it happened in."""

    def __init__(self, stage: Stage, message: str) -> None:
        super().__init__(message)
        self.stage = stage


def _log_task_failure(task: asyncio.Task[Cycle]) -> None:
    if task.cancelled():
        logger.warning(f"{task.get_name()} cancelled")
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"{task.get_name()} crashed: {exc}")

