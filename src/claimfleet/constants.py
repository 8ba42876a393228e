from typing import Final
from enum import StrEnum


class WalletStatus(StrEnum):
    PENDING            = "PENDING"
    SCHEDULED          = "SCHEDULED"
    AWAITING_EXECUTION = "AWAITING_EXECUTION"
    EXECUTING          = "EXECUTING"
    SUCCESS            = "SUCCESS"
    FAILED             = "FAILED"
    INVALID            = "INVALID"
    INACTIVE           = "INACTIVE"


class PipelinePhase(StrEnum):
    """Where a running pipeline is. In-memory only; the store just sees EXECUTING."""
    FUND     = "FUND"
    EXECUTE  = "EXECUTE"
    SWEEP    = "SWEEP"
    FINALIZE = "FINALIZE"


TERMINAL_STATUS: Final = frozenset(
    {WalletStatus.SUCCESS, WalletStatus.FAILED, WalletStatus.INVALID, WalletStatus.INACTIVE}
)
# Statuses the scheduler looks at
SCHEDULABLE_STATUS: Final = (WalletStatus.SCHEDULED, WalletStatus.PENDING)

LOOKAHEAD_MINUTES = 10
TICK_INTERVAL = 3.0  # seconds
MAINTENANCE_INTERVAL = 60.0  # seconds
STATUS_PUSH_INTERVAL = 2.0  # seconds

HORIZON = 15  # Transactions expire if not validated within 15 ledgers (~45-60 seconds)
RPC_TIMEOUT = 5.0
SUBMIT_TIMEOUT = 30
POLL_INTERVAL = 0.5

DEFAULT_CONCURRENCY = 5
DEFAULT_TASK_FUNDING_DROPS = 100_000  # 0.1 XRP, covers a batch of claims + the sweep
CLAIMABLE_PAGE_LIMIT = 200
MAX_FEE_DROPS = 1000  # per-signature cap, refuse to submit above this
MAX_BATCH_INNER = 8  # inner transactions per Batch
RECENT_LOG_LINES = 500

__all__ = [
    "CLAIMABLE_PAGE_LIMIT",
    "DEFAULT_CONCURRENCY",
    "DEFAULT_TASK_FUNDING_DROPS",
    "HORIZON",
    "LOOKAHEAD_MINUTES",
    "MAINTENANCE_INTERVAL",
    "MAX_BATCH_INNER",
    "MAX_FEE_DROPS",
    "POLL_INTERVAL",
    "RECENT_LOG_LINES",
    "RPC_TIMEOUT",
    "SCHEDULABLE_STATUS",
    "STATUS_PUSH_INTERVAL",
    "SUBMIT_TIMEOUT",
    "TERMINAL_STATUS",
    "TICK_INTERVAL",

    ######
    "PipelinePhase",
    "WalletStatus",
]
