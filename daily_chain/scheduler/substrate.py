"""Job substrate: the durable layer that fires one-shot triggers.

The chain only needs four operations from a substrate (see
``JobSubstrate``). ``LocalJobSubstrate`` persists pending triggers in a
JSON file and is driven by the daemon's poll loop; the DBOS-backed
substrate lives in ``daily_chain.scheduler.dbos_substrate``.
"""

import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Union, runtime_checkable

import httpx

from daily_chain.scheduler.errors import RetryRequested, SubmissionError
from daily_chain.scheduler.models import (
    JobHandle,
    RetryPolicy,
    TriggerConstraints,
    TriggerDelivery,
    from_iso,
    to_iso,
)

logger = logging.getLogger(__name__)

TriggerCallback = Callable[[TriggerDelivery], object]


@runtime_checkable
class JobSubstrate(Protocol):
    """What the chain requires from the layer that fires triggers.

    ``submit`` replaces any pending trigger for the same task id, so at
    most one trigger per task is ever pending.
    """

    def submit(
        self,
        task_id: str,
        delay: timedelta,
        generation: int,
        constraints: TriggerConstraints,
    ) -> JobHandle:
        ...

    def cancel(self, task_id: str) -> None:
        ...

    def is_armed(self, task_id: str, generation: int) -> bool:
        ...

    def poll(self, now: Optional[datetime] = None) -> object:
        ...

    def set_callback(self, callback: TriggerCallback) -> None:
        ...


# =============================================================================
# Constraint checks
# =============================================================================


def probe_network(url: str, timeout: float = 5.0) -> bool:
    """Return True if ``url`` answers at all."""
    try:
        httpx.head(url, timeout=timeout, follow_redirects=False)
        return True
    except httpx.HTTPError:
        return False


def battery_ok() -> bool:
    """Battery state is not observable here; treat it as never low."""
    return True


class ConstraintChecker:
    """Evaluates ``TriggerConstraints`` against the current environment."""

    def __init__(
        self,
        network_probe: Optional[Callable[[], bool]] = None,
        battery_probe: Optional[Callable[[], bool]] = None,
        probe_url: str = "https://clients3.google.com/generate_204",
    ):
        self._network_probe = network_probe or (lambda: probe_network(probe_url))
        self._battery_probe = battery_probe or battery_ok

    def unmet(self, constraints: TriggerConstraints) -> List[str]:
        """Names of constraints that are currently not satisfied."""
        missing = []
        if constraints.network_required and not self._network_probe():
            missing.append("network")
        if constraints.battery_not_low and not self._battery_probe():
            missing.append("battery")
        return missing


# =============================================================================
# Local file-backed substrate
# =============================================================================


class LocalJobSubstrate:
    """Pending triggers persisted in ``triggers.json``, fired by polling.

    A trigger is removed only after its callback returns, so a process
    that dies mid-execution re-delivers the same generation on restart
    (at-least-once). The executor's generation check makes that safe.
    """

    def __init__(
        self,
        path: Union[str, Path],
        retry_policy: Optional[RetryPolicy] = None,
        checker: Optional[ConstraintChecker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.path = Path(path)
        self.retry_policy = retry_policy or RetryPolicy()
        self.checker = checker or ConstraintChecker()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._callback: Optional[TriggerCallback] = None
        self._lock = threading.RLock()

    def set_callback(self, callback: TriggerCallback) -> None:
        self._callback = callback

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self) -> Iterator[None]:
        # The CLI and the daemon both rewrite the trigger file
        with self._lock:
            lock_path = self.path.with_suffix(".lock")
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            with open(lock_path, "a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _load(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.warning("Trigger file %s corrupt, treating as empty: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_path, self.path)

    @staticmethod
    def _to_handle(task_id: str, entry: dict) -> JobHandle:
        return JobHandle(
            handle_id=entry["handle_id"],
            task_id=task_id,
            generation=int(entry["generation"]),
            due_at=from_iso(entry["due_at"]),
        )

    # ------------------------------------------------------------------
    # JobSubstrate
    # ------------------------------------------------------------------

    def submit(
        self,
        task_id: str,
        delay: timedelta,
        generation: int,
        constraints: TriggerConstraints,
    ) -> JobHandle:
        if delay < timedelta(0):
            raise SubmissionError(f"Negative delay for {task_id}: {delay}")
        due_at = self._clock() + delay
        entry = {
            "handle_id": f"{task_id}-g{generation}",
            "generation": generation,
            "due_at": to_iso(due_at),
            "attempt": 1,
            "constraints": constraints.to_dict(),
            "submitted_at": to_iso(self._clock()),
        }
        with self._locked():
            try:
                data = self._load()
                replaced = data.get(task_id)
                data[task_id] = entry
                self._save(data)
            except OSError as e:
                raise SubmissionError(f"Could not persist trigger for {task_id}: {e}") from e
        if replaced:
            logger.info(
                "Replaced pending trigger %s with generation %d", replaced["handle_id"], generation
            )
        return self._to_handle(task_id, entry)

    def cancel(self, task_id: str) -> None:
        with self._locked():
            data = self._load()
            if data.pop(task_id, None) is not None:
                self._save(data)
                logger.info("Cancelled pending trigger for %s", task_id)

    def pending(self, task_id: str) -> Optional[JobHandle]:
        entry = self._load().get(task_id)
        return self._to_handle(task_id, entry) if entry else None

    def is_armed(self, task_id: str, generation: int) -> bool:
        handle = self.pending(task_id)
        return handle is not None and handle.generation == generation

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    def _remove_if_current(self, task_id: str, generation: int) -> None:
        """Drop the fired entry unless the callback already replaced it."""
        with self._locked():
            data = self._load()
            entry = data.get(task_id)
            if entry and int(entry["generation"]) == generation:
                del data[task_id]
                self._save(data)

    def _defer(self, task_id: str, generation: int, due_at: datetime, attempt: int) -> None:
        with self._locked():
            data = self._load()
            entry = data.get(task_id)
            if entry and int(entry["generation"]) == generation:
                entry["due_at"] = to_iso(due_at)
                entry["attempt"] = attempt
                self._save(data)

    def run_due(self, now: Optional[datetime] = None) -> List[TriggerDelivery]:
        """Deliver every trigger whose due time has passed.

        Returns the deliveries that reached the callback. Exceptions other
        than ``RetryRequested`` propagate after the fired entry is removed.
        """
        if self._callback is None:
            raise RuntimeError("No trigger callback registered")
        now = now or self._clock()
        delivered = []
        for task_id, entry in list(self._load().items()):
            handle = self._to_handle(task_id, entry)
            if handle.due_at > now:
                continue

            constraints = TriggerConstraints.from_dict(entry.get("constraints", {}))
            missing = self.checker.unmet(constraints)
            if missing:
                logger.warning(
                    "Deferring %s: constraints not met (%s)", handle.handle_id, ", ".join(missing)
                )
                continue

            attempt = int(entry.get("attempt", 1))
            delivery = TriggerDelivery(
                task_id=task_id,
                generation=handle.generation,
                attempt=attempt,
                final_attempt=self.retry_policy.is_final(attempt),
            )
            delivered.append(delivery)
            try:
                self._callback(delivery)
            except RetryRequested as e:
                retry_at = now + self.retry_policy.backoff(attempt)
                logger.warning(
                    "Retrying %s at %s (attempt %d): %s",
                    handle.handle_id,
                    to_iso(retry_at),
                    attempt + 1,
                    e.detail,
                )
                self._defer(task_id, handle.generation, retry_at, attempt + 1)
                continue
            except Exception:
                self._remove_if_current(task_id, handle.generation)
                raise
            self._remove_if_current(task_id, handle.generation)
        return delivered

    def poll(self, now: Optional[datetime] = None) -> List[TriggerDelivery]:
        return self.run_due(now)
