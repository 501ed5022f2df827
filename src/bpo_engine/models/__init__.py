"""Public model exports for API schema v1."""

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
from bpo_engine.models.common import CycleError
from bpo_engine.models.enums import CycleStatus, DoubtType, TransactionKind, TransactionStatus
from bpo_engine.models.messages import QueueMessage
from bpo_engine.models.version import SCHEMA_VERSION

__all__ = [
    "ActionResponse",
    "ApproveAuthorizationRequest",
    "AuthorizationListResponse",
    "CycleError",
    "CycleStatus",
    "CycleStatusResponse",
    "DoubtListResponse",
    "DoubtType",
    "HistoryListResponse",
    "QueueMessage",
    "RejectAuthorizationRequest",
    "ResolveDoubtRequest",
    "SCHEMA_VERSION",
    "SkipDoubtRequest",
    "StartCycleRequest",
    "StartCycleResponse",
    "TransactionKind",
    "TransactionStatus",
]
