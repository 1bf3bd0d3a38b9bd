"""Daily Chain Scheduler - run one action every day at a fixed local time.

The chain is self-perpetuating: each execution arms the next one, whether
it succeeded or not, and every arm replaces whatever trigger was pending.

Components:
    - timing: Next-occurrence computation in local wall-clock time
    - ledger: Last execution and next scheduled time, persisted as JSON
    - substrate: Durable one-shot triggers (local file or DBOS)
    - chain: Arming, re-arming and cancelling the daily trigger
    - executor: Runs the action and re-arms the chain
    - health: Freshness status and manual reset
    - daemon: Background process driving the substrate
"""

from daily_chain.scheduler.chain import ChainScheduler
from daily_chain.scheduler.errors import (
    ActionError,
    ChainBrokenError,
    RetryRequested,
    SchedulerError,
    SubmissionError,
    TransientActionError,
)
from daily_chain.scheduler.executor import TaskExecutor
from daily_chain.scheduler.health import HealthMonitor, HealthReport
from daily_chain.scheduler.ledger import ExecutionLedger
from daily_chain.scheduler.models import (
    ExecutionRecord,
    HealthStatus,
    Outcome,
    ScheduleState,
    TriggerConstraints,
)
from daily_chain.scheduler.substrate import JobSubstrate, LocalJobSubstrate
from daily_chain.scheduler.timing import delay_to_next_occurrence, next_occurrence

__all__ = [
    "ChainScheduler",
    "TaskExecutor",
    "HealthMonitor",
    "HealthReport",
    "ExecutionLedger",
    "JobSubstrate",
    "LocalJobSubstrate",
    "ExecutionRecord",
    "HealthStatus",
    "Outcome",
    "ScheduleState",
    "TriggerConstraints",
    "next_occurrence",
    "delay_to_next_occurrence",
    "SchedulerError",
    "SubmissionError",
    "ChainBrokenError",
    "RetryRequested",
    "ActionError",
    "TransientActionError",
]
