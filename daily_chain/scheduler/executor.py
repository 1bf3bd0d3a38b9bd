"""Task executor: the callback the substrate invokes when a trigger fires.

Order of operations for a valid delivery:

1. drop it if its generation is no longer the live one
2. run the action
3. record the outcome in the ledger
4. re-arm the chain, whatever the outcome was

Only a failure in step 4 escapes, as ``ChainBrokenError``.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from daily_chain.scheduler.actions import Action, ActionResult
from daily_chain.scheduler.chain import ChainScheduler
from daily_chain.scheduler.errors import (
    ChainBrokenError,
    RetryRequested,
    SubmissionError,
    TransientActionError,
)
from daily_chain.scheduler.ledger import ExecutionLedger
from daily_chain.scheduler.models import ExecutionRecord, TriggerDelivery

logger = logging.getLogger(__name__)


class TaskExecutor:
    """Runs the daily action for one chain and keeps the chain going."""

    def __init__(
        self,
        scheduler: ChainScheduler,
        ledger: ExecutionLedger,
        action: Action,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.scheduler = scheduler
        self.ledger = ledger
        self.action = action
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def __call__(self, delivery: TriggerDelivery) -> Optional[ExecutionRecord]:
        return self.handle_trigger(delivery)

    def is_stale(self, delivery: TriggerDelivery) -> bool:
        if delivery.task_id != self.scheduler.task_id:
            return True
        return delivery.generation != self.scheduler.current_generation()

    def _run_action(self, delivery: TriggerDelivery) -> ActionResult:
        try:
            result = self.action()
        except TransientActionError as e:
            return ActionResult.failure(str(e) or type(e).__name__, transient=True)
        except Exception as e:
            logger.exception("Action for %s raised", delivery.task_id)
            return ActionResult.failure(f"{type(e).__name__}: {e}")
        if isinstance(result, bool):
            if result:
                return ActionResult.success()
            return ActionResult.failure("action returned False")
        return result

    def handle_trigger(self, delivery: TriggerDelivery) -> Optional[ExecutionRecord]:
        """Handle one delivery; returns the recorded execution, or None if stale.

        Raises:
            RetryRequested: transient failure on a non-final attempt; nothing
                was recorded and the substrate should re-deliver later.
            ChainBrokenError: the next trigger could not be armed.
        """
        if self.is_stale(delivery):
            logger.info(
                "Ignoring stale trigger %s generation %d (live: %s)",
                delivery.task_id,
                delivery.generation,
                self.scheduler.current_generation(),
            )
            return None

        fired_at = self._clock()
        logger.info(
            "Trigger %s generation %d fired (attempt %d)",
            delivery.task_id,
            delivery.generation,
            delivery.attempt,
        )
        start = time.monotonic()
        result = self._run_action(delivery)
        duration = round(time.monotonic() - start, 3)

        if result.transient and not result.succeeded and not delivery.final_attempt:
            raise RetryRequested(delivery.attempt, result.detail)

        record = self.ledger.record_execution(
            result.outcome,
            fired_at,
            result.detail,
            generation=delivery.generation,
            duration_sec=duration,
            attempts=delivery.attempt,
        )
        if record.succeeded:
            logger.info("Daily action for %s succeeded in %.1fs", delivery.task_id, duration)
        else:
            logger.warning("Daily action for %s failed: %s", delivery.task_id, result.detail)

        try:
            self.scheduler.schedule_next(self._clock(), expected_generation=delivery.generation)
        except SubmissionError as e:
            logger.critical(
                "Could not arm the next trigger for %s; the daily chain is broken: %s",
                delivery.task_id,
                e,
            )
            raise ChainBrokenError(f"Daily chain for {delivery.task_id} broken: {e}") from e
        return record
