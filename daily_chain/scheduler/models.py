"""Data types shared by the scheduler components.

Timestamps are always timezone-aware ``datetime`` objects. They are
serialized as ISO-8601 strings with their UTC offset.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class Outcome(str, Enum):
    """Result of one execution of the daily action."""

    SUCCESS = "success"
    FAILURE = "failure"


class HealthStatus(str, Enum):
    """Freshness classification derived from the ledger."""

    HEALTHY = "healthy"
    WARNING = "warning"
    PROBLEM = "problem"


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        # Legacy naive values are local wall-clock time
        parsed = parsed.astimezone()
    return parsed


@dataclass
class ScheduleState:
    """The single pending daily trigger of a logical task."""

    task_id: str
    target: datetime
    armed_at: datetime
    generation: int
    handle_id: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        data["target"] = to_iso(self.target)
        data["armed_at"] = to_iso(self.armed_at)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduleState":
        return cls(
            task_id=data["task_id"],
            target=from_iso(data["target"]),
            armed_at=from_iso(data["armed_at"]),
            generation=int(data["generation"]),
            handle_id=data.get("handle_id", ""),
        )


@dataclass(frozen=True)
class ExecutionRecord:
    """Immutable record of one fired execution."""

    fired_at: datetime
    outcome: Outcome
    detail: Optional[str] = None
    generation: Optional[int] = None
    duration_sec: Optional[float] = None
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    def to_dict(self) -> dict:
        return {
            "fired_at": to_iso(self.fired_at),
            "outcome": self.outcome.value,
            "detail": self.detail,
            "generation": self.generation,
            "duration_sec": self.duration_sec,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionRecord":
        return cls(
            fired_at=from_iso(data["fired_at"]),
            outcome=Outcome(data["outcome"]),
            detail=data.get("detail"),
            generation=data.get("generation"),
            duration_sec=data.get("duration_sec"),
            attempts=data.get("attempts", 1),
        )


@dataclass(frozen=True)
class TriggerConstraints:
    """Conditions the substrate waits for before firing."""

    network_required: bool = True
    battery_not_low: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TriggerConstraints":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient action failures."""

    initial_backoff: timedelta = timedelta(minutes=15)
    max_backoff: timedelta = timedelta(minutes=30)
    multiplier: float = 2.0
    max_attempts: int = 3

    def backoff(self, attempt: int) -> timedelta:
        """Delay before re-delivering after ``attempt`` failed (1-based)."""
        seconds = self.initial_backoff.total_seconds() * self.multiplier ** max(attempt - 1, 0)
        return timedelta(seconds=min(seconds, self.max_backoff.total_seconds()))

    def is_final(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


@dataclass(frozen=True)
class TriggerDelivery:
    """What the substrate hands to the executor when a trigger fires."""

    task_id: str
    generation: int
    attempt: int = 1
    final_attempt: bool = True


@dataclass(frozen=True)
class JobHandle:
    """A trigger accepted by the substrate."""

    handle_id: str
    task_id: str
    generation: int
    due_at: Optional[datetime] = None
