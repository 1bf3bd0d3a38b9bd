"""Health monitoring for the daily chain.

Freshness is judged from the ledger only: how long ago the last execution
fired (whatever its outcome) and whether a next run is on the books. A
single failed day does not change the status; only elapsed time does.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from daily_chain.scheduler.chain import ChainScheduler
from daily_chain.scheduler.ledger import ExecutionLedger
from daily_chain.scheduler.models import ExecutionRecord, HealthStatus, ScheduleState

logger = logging.getLogger(__name__)

DEFAULT_WARNING_AFTER = timedelta(hours=26)
DEFAULT_PROBLEM_AFTER = timedelta(hours=48)


@dataclass
class HealthReport:
    """Snapshot for diagnostics output."""

    status: HealthStatus
    last_execution: Optional[ExecutionRecord]
    next_scheduled: Optional[datetime]
    hours_since_last_execution: Optional[float]
    generation: Optional[int]

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "last_execution": self.last_execution.to_dict() if self.last_execution else None,
            "next_scheduled": self.next_scheduled.isoformat() if self.next_scheduled else None,
            "hours_since_last_execution": self.hours_since_last_execution,
            "generation": self.generation,
        }


class HealthMonitor:
    """Read-only view over the ledger, plus the manual reset."""

    def __init__(
        self,
        ledger: ExecutionLedger,
        scheduler: ChainScheduler,
        warning_after: timedelta = DEFAULT_WARNING_AFTER,
        problem_after: timedelta = DEFAULT_PROBLEM_AFTER,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if problem_after <= warning_after:
            raise ValueError("problem_after must be longer than warning_after")
        self.ledger = ledger
        self.scheduler = scheduler
        self.warning_after = warning_after
        self.problem_after = problem_after
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _classify(
        self,
        last: Optional[ExecutionRecord],
        next_scheduled: Optional[datetime],
        now: datetime,
    ) -> HealthStatus:
        if last is None or next_scheduled is None:
            return HealthStatus.PROBLEM
        elapsed = now - last.fired_at
        if elapsed >= self.problem_after:
            return HealthStatus.PROBLEM
        if elapsed >= self.warning_after:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY

    def get_status(self, now: Optional[datetime] = None) -> HealthStatus:
        now = now or self._clock()
        return self._classify(
            self.ledger.get_last_execution(), self.ledger.get_next_scheduled(), now
        )

    def describe(self, now: Optional[datetime] = None) -> HealthReport:
        now = now or self._clock()
        last = self.ledger.get_last_execution()
        next_scheduled = self.ledger.get_next_scheduled()
        hours = None
        if last is not None:
            hours = round((now - last.fired_at).total_seconds() / 3600, 1)
        return HealthReport(
            status=self._classify(last, next_scheduled, now),
            last_execution=last,
            next_scheduled=next_scheduled,
            hours_since_last_execution=hours,
            generation=self.scheduler.current_generation(),
        )

    def reset(self, now: Optional[datetime] = None) -> ScheduleState:
        """Cancel-and-reschedule: arm a fresh generation unconditionally.

        Any trigger from an older generation that is still in flight will
        be ignored by the executor when it is delivered.
        """
        now = now or self._clock()
        logger.info("Resetting daily chain for %s", self.scheduler.task_id)
        state = self.scheduler.schedule_next(now)
        logger.info("Reset complete: generation %d due %s", state.generation, state.target)
        return state
