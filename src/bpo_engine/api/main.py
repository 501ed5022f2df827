from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
from decimal import Decimal

from fastapi import FastAPI, HTTPException

from bpo_engine.errors import (
    CycleConflictError,
    NoEligibleClientsError,
    PipelineValidationError,
    ReviewStateError,
)
from bpo_engine.integrations.container import AppContainer, build_container
from bpo_engine.logging_setup import configure_logging
from bpo_engine.models.api_requests import (
    ApproveAuthorizationRequest,
    RejectAuthorizationRequest,
    ResolveDoubtRequest,
    SkipDoubtRequest,
    StartCycleRequest,
)
from bpo_engine.models.api_responses import (
    ActionResponse,
    AuthorizationListResponse,
    CycleStatusResponse,
    DoubtListResponse,
    HistoryListResponse,
    StartCycleResponse,
)
from bpo_engine.models.enums import DoubtType, TransactionKind

container: AppContainer = build_container()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup/shutdown lifecycle and inline worker task."""

    configure_logging(container.settings)
    run_inline_worker = os.getenv("RUN_INLINE_WORKER", "true").lower() == "true"
    app.state.worker_task = None
    if run_inline_worker:
        app.state.worker_task = asyncio.create_task(container.worker.run_forever())
    try:
        yield
    finally:
        task = app.state.worker_task
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


app = FastAPI(title="bpo_engine cycle orchestration", version="0.1.0", lifespan=lifespan)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    """Lightweight health endpoint for liveness checks."""

    return {"status": "ok"}


@app.post("/v1/cycles", response_model=StartCycleResponse, status_code=202)
async def start_cycle(req: StartCycleRequest) -> StartCycleResponse:
    """Record a cycle and run it in the background."""

    try:
        started = await container.orchestrator.start_cycle(client_id=req.client_id, force=req.force)
    except NoEligibleClientsError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CycleConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return StartCycleResponse(
        cycle_id=started.cycle_id,
        instance_id=started.instance_id,
        status=started.status,
        clients=started.clients,
        accepted=started.accepted,
    )


@app.get("/v1/cycles/{cycle_id}", response_model=CycleStatusResponse)
async def get_cycle(cycle_id: str) -> CycleStatusResponse:
    """Return persisted cycle state plus runtime status."""

    try:
        view = await container.orchestrator.get_cycle_status(cycle_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="cycle not found") from exc
    return CycleStatusResponse.from_record(view.cycle, view.runtime_status)


@app.get("/v1/authorizations", response_model=AuthorizationListResponse)
async def list_authorizations(
    client_id: str | None = None,
    kind: TransactionKind | None = None,
) -> AuthorizationListResponse:
    """List pending authorizations, optionally filtered by client and direction."""

    items = await container.review_gate.list_pending_authorizations(client_id=client_id, kind=kind)
    return AuthorizationListResponse(
        total=len(items),
        total_value=sum((item.value for item in items), Decimal("0")),
        items=items,
    )


@app.post("/v1/authorizations/{authorization_id}/approve", response_model=ActionResponse)
async def approve_authorization(
    authorization_id: str, req: ApproveAuthorizationRequest
) -> ActionResponse:
    """Approve one authorization and queue its transaction for sync."""

    try:
        record = await container.review_gate.approve_authorization(
            authorization_id, notes=req.notes, user_id=req.user_id
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="authorization not found") from exc
    except ReviewStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (ValueError, PipelineValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ActionResponse(
        id=record.authorization_id,
        status=record.status.value,
        transaction_id=record.transaction_id,
    )


@app.post("/v1/authorizations/{authorization_id}/reject", response_model=ActionResponse)
async def reject_authorization(
    authorization_id: str, req: RejectAuthorizationRequest
) -> ActionResponse:
    """Reject one authorization; its transaction is never synced."""

    try:
        record = await container.review_gate.reject_authorization(
            authorization_id, reason=req.reason, user_id=req.user_id
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="authorization not found") from exc
    except ReviewStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (ValueError, PipelineValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ActionResponse(
        id=record.authorization_id,
        status=record.status.value,
        transaction_id=record.transaction_id,
        message=req.reason,
    )


@app.get("/v1/doubts", response_model=DoubtListResponse)
async def list_doubts(
    client_id: str | None = None,
    doubt_type: DoubtType | None = None,
) -> DoubtListResponse:
    """List pending enrichment doubts."""

    items = await container.review_gate.list_pending_doubts(client_id=client_id, doubt_type=doubt_type)
    return DoubtListResponse(total=len(items), items=items)


@app.post("/v1/doubts/{doubt_id}/resolve", response_model=ActionResponse)
async def resolve_doubt(doubt_id: str, req: ResolveDoubtRequest) -> ActionResponse:
    """Apply the reviewer's category and queue the transaction for sync."""

    try:
        record = await container.review_gate.resolve_doubt(
            doubt_id,
            category_id=req.category_id,
            category_name=req.category_name,
            notes=req.notes,
            user_id=req.user_id,
        )
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="doubt not found") from exc
    except ReviewStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (ValueError, PipelineValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ActionResponse(id=record.doubt_id, status=record.status.value, transaction_id=record.transaction_id)


@app.post("/v1/doubts/{doubt_id}/skip", response_model=ActionResponse)
async def skip_doubt(doubt_id: str, req: SkipDoubtRequest) -> ActionResponse:
    """Postpone a doubt; it stays pending."""

    try:
        record = await container.review_gate.skip_doubt(doubt_id, reason=req.reason, user_id=req.user_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail="doubt not found") from exc
    except ReviewStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return ActionResponse(
        id=record.doubt_id,
        status=record.status.value,
        transaction_id=record.transaction_id,
        message=f"skipped {record.skip_count} time(s)",
    )


@app.get("/v1/history", response_model=HistoryListResponse)
async def list_history(client_id: str | None = None, limit: int = 100) -> HistoryListResponse:
    """Latest reviewer actions."""

    items = await container.review_gate.list_history(client_id=client_id, limit=limit)
    return HistoryListResponse(total=len(items), items=items)


def run() -> None:
    """Local API entrypoint used by script/console command."""

    import uvicorn

    # Start local HTTP server with env-configurable host and port.
    uvicorn.run(
        "bpo_engine.api.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=False,
    )


if __name__ == "__main__":
    run()
