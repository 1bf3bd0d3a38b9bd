"""DBOS-backed job substrate.

Each armed generation is one durable DBOS workflow with id
``<task_id>-g<generation>``. The workflow sleeps until the target with
``DBOS.sleep``, waits for its constraints, then hands the delivery to the
registered callback, sleeping out the retry backoff when asked to. DBOS
recovers pending workflows after a crash, so a trigger survives restarts;
recovered workflows from superseded generations are dropped by the
executor.

The callback runs inside the workflow body rather than in a step, because
it arms the next generation by starting another workflow.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from dbos import DBOS, DBOSConfig, SetWorkflowID

from daily_chain.scheduler.errors import RetryRequested, SubmissionError
from daily_chain.scheduler.models import (
    JobHandle,
    RetryPolicy,
    TriggerConstraints,
    TriggerDelivery,
)
from daily_chain.scheduler.substrate import ConstraintChecker, TriggerCallback

logger = logging.getLogger(__name__)

_ACTIVE_STATUSES = ("PENDING", "ENQUEUED")

# Process-wide wiring; DBOS workflows are module-level functions.
_callback: Optional[TriggerCallback] = None
_checker: ConstraintChecker = ConstraintChecker()
_retry_policy: RetryPolicy = RetryPolicy()
_constraint_poll_seconds: float = 60.0
_fatal: List[BaseException] = []


def workflow_id_for(task_id: str, generation: int) -> str:
    return f"{task_id}-g{generation}"


def launch_dbos(database_url: str, app_version: str, log_level: str = "ERROR") -> None:
    """Configure and launch DBOS for this process."""
    dbos_config: DBOSConfig = {
        "name": "daily-chain",
        "system_database_url": database_url,
        "run_admin_server": False,
        "log_level": log_level,
        "application_version": app_version,
    }
    DBOS(config=dbos_config)
    DBOS.launch()


def destroy_dbos() -> None:
    DBOS.destroy()


def _current_workflow_id() -> Optional[str]:
    return DBOS.workflow_id


@DBOS.step()
def _unmet_constraints(constraints: dict) -> List[str]:
    return _checker.unmet(TriggerConstraints.from_dict(constraints))


def _deliver_with_retries(
    task_id: str,
    generation: int,
    constraints: dict,
    sleep: Callable[[float], object],
    unmet: Callable[[dict], List[str]],
) -> int:
    """Wait for constraints, then deliver until the callback stops retrying.

    Returns the number of attempts made.
    """
    if _callback is None:
        raise RuntimeError("No trigger callback registered")

    attempt = 1
    while True:
        missing = unmet(constraints)
        if missing:
            logger.warning(
                "Deferring %s: constraints not met (%s)",
                workflow_id_for(task_id, generation),
                ", ".join(missing),
            )
            sleep(_constraint_poll_seconds)
            continue

        delivery = TriggerDelivery(
            task_id=task_id,
            generation=generation,
            attempt=attempt,
            final_attempt=_retry_policy.is_final(attempt),
        )
        try:
            _callback(delivery)
        except RetryRequested as e:
            backoff = _retry_policy.backoff(attempt)
            logger.warning(
                "Retrying %s in %s (attempt %d): %s",
                workflow_id_for(task_id, generation),
                backoff,
                attempt + 1,
                e.detail,
            )
            sleep(backoff.total_seconds())
            attempt += 1
            continue
        except Exception as e:
            _fatal.append(e)
            raise
        return attempt


@DBOS.workflow()
def daily_trigger_workflow(
    task_id: str, generation: int, delay_seconds: float, constraints: dict
) -> int:
    DBOS.sleep(delay_seconds)
    return _deliver_with_retries(task_id, generation, constraints, DBOS.sleep, _unmet_constraints)


class DBOSJobSubstrate:
    """``JobSubstrate`` on top of DBOS durable workflows.

    DBOS must be launched (``launch_dbos``) before triggers are submitted.
    """

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        checker: Optional[ConstraintChecker] = None,
        constraint_poll_seconds: float = 60.0,
    ):
        global _retry_policy, _checker, _constraint_poll_seconds
        _retry_policy = retry_policy or RetryPolicy()
        _checker = checker or ConstraintChecker()
        _constraint_poll_seconds = constraint_poll_seconds

    def set_callback(self, callback: TriggerCallback) -> None:
        global _callback
        _callback = callback

    def _pending_ids(self, task_id: str) -> List[str]:
        ids = set()
        for status in _ACTIVE_STATUSES:
            for wf in DBOS.list_workflows(workflow_id_prefix=f"{task_id}-g", status=status):
                ids.add(wf.workflow_id)
        return sorted(ids)

    def _cancel_others(self, task_id: str, keep: Optional[str]) -> None:
        running = _current_workflow_id()
        for wf_id in self._pending_ids(task_id):
            # The running workflow finishes on its own once its callback returns
            if wf_id in (keep, running):
                continue
            DBOS.cancel_workflow(wf_id)
            logger.info("Cancelled DBOS trigger %s", wf_id)

    def submit(
        self,
        task_id: str,
        delay: timedelta,
        generation: int,
        constraints: TriggerConstraints,
    ) -> JobHandle:
        delay_seconds = delay.total_seconds()
        if delay_seconds < 0:
            raise SubmissionError(f"Negative delay for {task_id}: {delay}")
        wf_id = workflow_id_for(task_id, generation)
        try:
            with SetWorkflowID(wf_id):
                DBOS.start_workflow(
                    daily_trigger_workflow,
                    task_id,
                    generation,
                    delay_seconds,
                    constraints.to_dict(),
                )
            self._cancel_others(task_id, keep=wf_id)
        except Exception as e:
            raise SubmissionError(f"DBOS rejected trigger {wf_id}: {e}") from e
        return JobHandle(handle_id=wf_id, task_id=task_id, generation=generation)

    def cancel(self, task_id: str) -> None:
        self._cancel_others(task_id, keep=None)

    def is_armed(self, task_id: str, generation: int) -> bool:
        status = DBOS.get_workflow_status(workflow_id_for(task_id, generation))
        return status is not None and status.status in _ACTIVE_STATUSES

    def poll(self, now: Optional[datetime] = None) -> None:
        """Surface an error raised by a trigger inside a DBOS workflow."""
        if _fatal:
            raise _fatal.pop(0)
