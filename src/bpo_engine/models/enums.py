from __future__ import annotations

from enum import Enum


class TransactionKind(str, Enum):
    """Direction of a captured transaction."""

    PAYABLE = "pagar"  # Accounts payable.
    RECEIVABLE = "receber"  # Accounts receivable.


class TransactionStatus(str, Enum):
    """Lifecycle status of one transaction inside the pipeline."""

    NEW = "new"  # Seen by capture, not yet persisted as captured.
    CAPTURED = "captured"  # Persisted from a source system.
    CLASSIFIED = "classified"  # Category assigned by the scorer.
    IN_REVIEW = "in_review"  # Waiting on a human reviewer.
    APPROVED = "approved"  # Cleared for synchronization.
    REJECTED = "rejected"  # Terminal: a reviewer refused it.
    SYNC_PENDING = "sync_pending"  # Sync message emitted, remote not confirmed.
    SYNCED = "synced"  # Terminal: destination holds the record.
    ERROR = "error"  # Terminal: unrecoverable failure.


class CycleStatus(str, Enum):
    """Lifecycle status of a daily cycle."""

    PENDING = "pending"  # Recorded, run not started.
    RUNNING = "running"  # Client fan-out in progress.
    COMPLETED = "completed"  # Every client succeeded.
    PARTIAL = "partial"  # Some clients failed.
    FAILED = "failed"  # Every client failed.


class CycleRuntimeStatus(str, Enum):
    """Execution status reported by the orchestrator's task registry."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    UNKNOWN = "unknown"


class ClientStatus(str, Enum):
    """Administrative status of a client."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    ONBOARDING = "onboarding"
    SUSPENDED = "suspended"


class Destination(str, Enum):
    """ERP systems a transaction can be synchronized to."""

    NIBO = "nibo"
    OMIE = "omie"


class CaptureSource(str, Enum):
    """External systems transactions are captured from."""

    NIBO = "nibo"
    OMIE = "omie"
    SANTANDER = "santander"
    INTER = "inter"
    GETNET = "getnet"
    OFX = "ofx"


class SyncAction(str, Enum):
    """Reconciliation decision for one push to a destination."""

    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


class ReviewType(str, Enum):
    """Kind of human review a transaction is routed to."""

    CLASSIFICATION = "classificacao"  # Becomes an enrichment doubt.
    AUTHORIZATION = "autorizacao"  # Becomes a pending authorization.


class DoubtType(str, Enum):
    """Reason family for an enrichment doubt."""

    CLASSIFICATION = "classificacao"
    DUPLICATE = "duplicidade"


class AuthorizationStatus(str, Enum):
    """Resolution status of a pending authorization."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DoubtStatus(str, Enum):
    """Resolution status of an enrichment doubt."""

    PENDING = "pending"
    RESOLVED = "resolved"
    SKIPPED = "skipped"


class Stage(str, Enum):
    """Pipeline phase tag used on recorded errors."""

    CAPTURE = "capture"
    CLASSIFY = "classify"
    REVIEW = "review"
    SYNC = "sync"
    NOTIFY = "notify"
    WATCHDOG = "watchdog"
    ORCHESTRATOR = "orchestrator"


class ConcurrencyMode(str, Enum):
    """Fan-out strategy used by the bounded concurrency runner."""

    WINDOWED = "windowed"
    SLIDING = "sliding"


class HistoryActionType(str, Enum):
    """Operator-visible actions recorded by the review gate."""

    APPROVAL = "aprovacao"
    REJECTION = "rejeicao"
    DOUBT_RESOLVED = "classificacao"
    DOUBT_SKIPPED = "pulo"
