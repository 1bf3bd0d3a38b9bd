"""The chain scheduler: owner of the single pending daily trigger.

Each logical task has one slot in ``schedule_state.json`` holding a
monotonic ``generation`` counter and the live ``ScheduleState``. Every arm
bumps the counter, so deliveries from a superseded arm can be recognized
and dropped by the executor.

Arming is serialized by a thread lock plus an ``fcntl`` lock on a sibling
``.lock`` file, which covers a CLI ``reset`` racing the daemon.
"""

import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from daily_chain.scheduler.errors import SubmissionError
from daily_chain.scheduler.ledger import ExecutionLedger
from daily_chain.scheduler.models import ScheduleState, TriggerConstraints, to_iso
from daily_chain.scheduler.substrate import JobSubstrate
from daily_chain.scheduler.timing import next_occurrence

logger = logging.getLogger(__name__)


class ChainScheduler:
    """Arms, re-arms and cancels the daily trigger of one logical task."""

    def __init__(
        self,
        task_id: str,
        substrate: JobSubstrate,
        ledger: ExecutionLedger,
        state_path: Union[str, Path],
        target_hour: int = 23,
        target_minute: int = 59,
        tz: Optional[tzinfo] = None,
        constraints: Optional[TriggerConstraints] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.task_id = task_id
        self.substrate = substrate
        self.ledger = ledger
        self.state_path = Path(state_path)
        self.target_hour = target_hour
        self.target_minute = target_minute
        self.tz = tz
        self.constraints = constraints or TriggerConstraints()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._thread_lock = threading.RLock()
        self._depth = 0

    # ------------------------------------------------------------------
    # Locking and persistence
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._thread_lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            lock_path = self.state_path.with_suffix(".lock")
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            with open(lock_path, "a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                self._depth = 1
                try:
                    yield
                finally:
                    self._depth = 0
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load_all(self) -> dict:
        if not self.state_path.exists():
            return {}
        try:
            with open(self.state_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning("Schedule state %s corrupt, treating as empty: %s", self.state_path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _load_slot(self) -> dict:
        return self._load_all().get(self.task_id, {"generation": 0, "state": None})

    def _save_slot(self, generation: int, state: Optional[ScheduleState]) -> None:
        data = self._load_all()
        data[self.task_id] = {
            "generation": generation,
            "state": state.to_dict() if state else None,
        }
        self.state_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.state_path.with_suffix(self.state_path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.state_path)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def current_state(self) -> Optional[ScheduleState]:
        """The live schedule, or None when the task is unarmed."""
        raw = self._load_slot().get("state")
        return ScheduleState.from_dict(raw) if raw else None

    def current_generation(self) -> Optional[int]:
        state = self.current_state()
        return state.generation if state else None

    # ------------------------------------------------------------------
    # Arming
    # ------------------------------------------------------------------

    def _arm(self, now: datetime, target: datetime, keep_previous: bool = True) -> ScheduleState:
        """Replace the live schedule with one firing at ``target``.

        Must be called with the lock held. On a failed submit the new
        generation stays consumed, since the substrate may already hold a
        job under its id. The previous state comes back only when
        ``keep_previous`` is set and its trigger is still pending; otherwise
        the task is left unarmed.
        """
        slot = self._load_slot()
        previous_raw = slot.get("state")
        generation = int(slot.get("generation", 0)) + 1

        delay = target.astimezone(timezone.utc) - now.astimezone(timezone.utc)
        delay = max(delay, timedelta(0))
        state = ScheduleState(
            task_id=self.task_id,
            target=target,
            armed_at=now,
            generation=generation,
        )
        # Persist first so a trigger firing right after submit sees its own
        # generation as current.
        self._save_slot(generation, state)
        try:
            handle = self.substrate.submit(self.task_id, delay, generation, self.constraints)
        except Exception as e:
            previous = None
            if keep_previous and previous_raw:
                previous = ScheduleState.from_dict(previous_raw)
            self._save_slot(generation, previous)
            if previous is None:
                self.ledger.clear_next_scheduled()
            logger.error("Failed to arm %s (generation %d): %s", self.task_id, generation, e)
            if isinstance(e, SubmissionError):
                raise
            raise SubmissionError(f"Substrate rejected trigger for {self.task_id}: {e}") from e

        state.handle_id = handle.handle_id
        self._save_slot(generation, state)
        self.ledger.record_next_scheduled(target)
        logger.info(
            "Armed %s generation %d for %s (in %s)",
            self.task_id,
            generation,
            to_iso(target),
            delay,
        )
        return state

    def schedule_next(
        self,
        now: Optional[datetime] = None,
        expected_generation: Optional[int] = None,
    ) -> Optional[ScheduleState]:
        """Arm the next daily occurrence, replacing any pending trigger.

        With ``expected_generation`` set, the call only arms if that
        generation is still the live one. Otherwise someone else already
        re-armed (a manual reset) or cancelled the chain while the action
        was running, and the live state (possibly None) is returned as is.

        Raises:
            SubmissionError: the substrate rejected the trigger. A manual
                re-arm keeps the previous schedule and the ledger as they
                were. A re-arm after a delivery leaves the task unarmed,
                because the trigger that fired is gone.
        """
        now = now or self._clock()
        with self._locked():
            if expected_generation is not None:
                current = self.current_state()
                if current is None or current.generation != expected_generation:
                    logger.info(
                        "Generation %d superseded (live: %s); not re-arming %s",
                        expected_generation,
                        current.generation if current else None,
                        self.task_id,
                    )
                    return current
            target = next_occurrence(now, self.target_hour, self.target_minute, self.tz)
            return self._arm(now, target, keep_previous=expected_generation is None)

    def schedule_in(self, delay: timedelta, now: Optional[datetime] = None) -> ScheduleState:
        """Arm a one-off trigger after ``delay``; the chain resumes daily after it fires."""
        if delay < timedelta(0):
            raise ValueError(f"delay must not be negative, got {delay}")
        now = now or self._clock()
        with self._locked():
            return self._arm(now, now + delay)

    def ensure_armed(self, now: Optional[datetime] = None) -> ScheduleState:
        """Process-start initialization.

        Keeps a live schedule whose trigger the substrate still holds, even
        if it is overdue, so it fires immediately instead of skipping today.
        Otherwise arms the next occurrence.
        """
        now = now or self._clock()
        with self._locked():
            state = self.current_state()
            if state is not None:
                if self.substrate.is_armed(self.task_id, state.generation):
                    logger.info(
                        "Keeping %s generation %d due %s",
                        self.task_id,
                        state.generation,
                        to_iso(state.target),
                    )
                    self.ledger.record_next_scheduled(state.target)
                    return state
                logger.warning(
                    "Substrate lost trigger for %s generation %d; re-arming",
                    self.task_id,
                    state.generation,
                )
                target = next_occurrence(now, self.target_hour, self.target_minute, self.tz)
                return self._arm(now, target, keep_previous=False)
            return self.schedule_next(now)

    def cancel(self) -> None:
        """Cancel the pending trigger and leave the task unarmed."""
        with self._locked():
            slot = self._load_slot()
            self.substrate.cancel(self.task_id)
            self._save_slot(int(slot.get("generation", 0)), None)
            self.ledger.clear_next_scheduled()
        logger.warning("Daily chain for %s cancelled; task is unarmed", self.task_id)
