"""Error taxonomy shared by stages, the review gate and the orchestrator."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for engine errors."""


class TransientConnectorError(PipelineError):
    """Network or 5xx failure from an external system; safe to retry."""


class ConnectorRejectedError(PipelineError):
    """Destination refused the payload permanently; retrying will not help."""


class PipelineValidationError(PipelineError):
    """Malformed message or missing configuration; fails fast without retry."""


class InvalidTransitionError(PipelineValidationError):
    """Requested status change is not an edge of the transaction graph."""

    def __init__(self, transaction_id: str, current: str, target: str) -> None:
        super().__init__(f"transaction {transaction_id}: cannot move {current} -> {target}")
        self.transaction_id = transaction_id
        self.current = current
        self.target = target


class RecordNotFoundError(PipelineError, KeyError):
    """Lookup of a persisted record by id found nothing."""

    def __str__(self) -> str:
        return Exception.__str__(self)


class ReviewStateError(PipelineError):
    """Review record is not in a state that allows the requested action."""


class NoEligibleClientsError(PipelineError):
    """Cycle start found no active client to process."""


class CycleConflictError(PipelineError):
    """A cycle for the date already exists and the start was not forced."""


class CycleDeadlineExceeded(PipelineError):
    """The cycle watchdog expired before this unit of work started."""
