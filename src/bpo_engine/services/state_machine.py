"""Forward-only transaction status graph and cycle status derivation."""

from __future__ import annotations

from typing import assert_never

from bpo_engine.errors import InvalidTransitionError
from bpo_engine.models.enums import CycleStatus, TransactionStatus
from bpo_engine.models.internal import Transaction, utcnow

TS = TransactionStatus

_EDGES: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TS.NEW: frozenset({TS.CAPTURED}),
    TS.CAPTURED: frozenset({TS.CLASSIFIED}),
    TS.CLASSIFIED: frozenset({TS.IN_REVIEW, TS.APPROVED}),
    TS.IN_REVIEW: frozenset({TS.APPROVED, TS.REJECTED}),
    TS.APPROVED: frozenset({TS.SYNC_PENDING}),
    TS.SYNC_PENDING: frozenset({TS.SYNCED}),
    TS.SYNCED: frozenset(),
    TS.REJECTED: frozenset(),
    TS.ERROR: frozenset(),
}


def is_terminal(status: TransactionStatus) -> bool:
    match status:
        case TS.SYNCED | TS.REJECTED | TS.ERROR:
            return True
        case (
            TS.NEW
            | TS.CAPTURED
            | TS.CLASSIFIED
            | TS.IN_REVIEW
            | TS.APPROVED
            | TS.SYNC_PENDING
        ):
            return False
        case _:
            assert_never(status)


def allowed_targets(status: TransactionStatus) -> frozenset[TransactionStatus]:
    """Statuses reachable in one step; `error` is reachable from any live status."""

    if is_terminal(status):
        return frozenset()
    return _EDGES[status] | {TS.ERROR}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in allowed_targets(current)


def advance(tx: Transaction, target: TransactionStatus) -> Transaction:
    """Move `tx` to `target` in place, refusing anything that is not a graph edge."""

    if not can_transition(tx.status, target):
        raise InvalidTransitionError(tx.transaction_id, tx.status.value, target.value)
    tx.status = target
    tx.updated_at = utcnow()
    return tx


def advance_path(tx: Transaction, *targets: TransactionStatus) -> Transaction:
    """Apply several consecutive edges, e.g. approved then sync_pending."""

    for target in targets:
        advance(tx, target)
    return tx


def fail(tx: Transaction, reason: str) -> Transaction:
    """Move a live transaction to terminal `error`, keeping the reason."""

    advance(tx, TS.ERROR)
    tx.last_error = reason
    return tx


def is_cycle_terminal(status: CycleStatus) -> bool:
    match status:
        case CycleStatus.COMPLETED | CycleStatus.PARTIAL | CycleStatus.FAILED:
            return True
        case CycleStatus.PENDING | CycleStatus.RUNNING:
            return False
        case _:
            assert_never(status)


def derive_cycle_status(clients_total: int, clients_failed: int) -> CycleStatus:
    """Terminal cycle status from per-client outcomes."""

    if clients_total < 1:
        raise ValueError("a cycle needs at least one client")
    if not 0 <= clients_failed <= clients_total:
        raise ValueError("clients_failed must be between 0 and clients_total")
    if clients_failed == 0:
        return CycleStatus.COMPLETED
    if clients_failed == clients_total:
        return CycleStatus.FAILED
    return CycleStatus.PARTIAL
