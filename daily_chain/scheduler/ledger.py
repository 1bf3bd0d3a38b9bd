"""Durable record of the last execution and the next scheduled time.

Backed by a single JSON file. Every write replaces the file atomically so
a crash mid-write never leaves a half-written ledger behind.
"""

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from daily_chain.scheduler.models import ExecutionRecord, Outcome, from_iso, to_iso

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 30


class ExecutionLedger:
    """Key-value ledger persisted as JSON.

    Keys: ``last_execution_time``, ``last_execution_outcome``,
    ``last_execution_detail``, ``next_scheduled_time`` and a bounded
    ``history`` of past records.
    """

    def __init__(self, path: Union[str, Path], history_limit: int = DEFAULT_HISTORY_LIMIT):
        self.path = Path(path)
        self.history_limit = history_limit
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Ledger at %s unreadable, treating as empty: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def record_execution(
        self,
        outcome: Outcome,
        timestamp: datetime,
        detail: Optional[str] = None,
        *,
        generation: Optional[int] = None,
        duration_sec: Optional[float] = None,
        attempts: int = 1,
    ) -> ExecutionRecord:
        """Write the outcome of one execution as the new "last execution"."""
        record = ExecutionRecord(
            fired_at=timestamp,
            outcome=Outcome(outcome),
            detail=detail,
            generation=generation,
            duration_sec=duration_sec,
            attempts=attempts,
        )
        with self._lock:
            data = self._load()
            data["last_execution_time"] = to_iso(record.fired_at)
            data["last_execution_outcome"] = record.outcome.value
            data["last_execution_detail"] = record.detail
            data["last_execution"] = record.to_dict()
            history = data.get("history", [])
            history.append(record.to_dict())
            data["history"] = history[-self.history_limit :]
            self._save(data)
        logger.info(
            "Recorded %s execution at %s (generation %s)",
            record.outcome.value,
            to_iso(record.fired_at),
            generation,
        )
        return record

    def get_last_execution(self) -> Optional[ExecutionRecord]:
        data = self._load()
        full = data.get("last_execution")
        if full:
            return ExecutionRecord.from_dict(full)
        # Files written with only the flat keys are still readable
        if data.get("last_execution_time") and data.get("last_execution_outcome"):
            return ExecutionRecord(
                fired_at=from_iso(data["last_execution_time"]),
                outcome=Outcome(data["last_execution_outcome"]),
                detail=data.get("last_execution_detail"),
            )
        return None

    def get_history(self, limit: Optional[int] = None) -> List[ExecutionRecord]:
        """Past executions, newest first."""
        records = [ExecutionRecord.from_dict(r) for r in self._load().get("history", [])]
        records.reverse()
        return records[:limit] if limit is not None else records

    # ------------------------------------------------------------------
    # Next scheduled time
    # ------------------------------------------------------------------

    def record_next_scheduled(self, timestamp: Optional[datetime]) -> None:
        with self._lock:
            data = self._load()
            data["next_scheduled_time"] = to_iso(timestamp)
            self._save(data)

    def clear_next_scheduled(self) -> None:
        self.record_next_scheduled(None)

    def get_next_scheduled(self) -> Optional[datetime]:
        return from_iso(self._load().get("next_scheduled_time"))
