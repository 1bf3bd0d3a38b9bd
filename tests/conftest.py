"""Pytest configuration and fixtures for daily-chain tests.

Every test gets its own DAILY_CHAIN_HOME, so nothing touches the user's
real ledger, schedule state or PID file.
"""

import io
from datetime import datetime, timedelta, timezone

import pytest
from rich.console import Console

from daily_chain import messaging
from daily_chain.scheduler.chain import ChainScheduler
from daily_chain.scheduler.ledger import ExecutionLedger
from daily_chain.scheduler.substrate import ConstraintChecker, LocalJobSubstrate
from daily_chain.settings import clear_settings_cache

_ENV_VARS = [
    "DAILY_CHAIN_TASK_ID",
    "DAILY_CHAIN_TARGET_HOUR",
    "DAILY_CHAIN_TARGET_MINUTE",
    "DAILY_CHAIN_TIMEZONE",
    "DAILY_CHAIN_SUBSTRATE",
    "DAILY_CHAIN_WARNING_AFTER_HOURS",
    "DAILY_CHAIN_PROBLEM_AFTER_HOURS",
    "DAILY_CHAIN_NETWORK_REQUIRED",
    "DAILY_CHAIN_ACTION_COMMAND",
    "DAILY_CHAIN_RETRY_MAX_ATTEMPTS",
    "XDG_DATA_HOME",
    "XDG_STATE_HOME",
]


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now = self.now + delta
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return self.now


@pytest.fixture(autouse=True)
def isolate_daily_chain_home(tmp_path_factory, monkeypatch):
    """Point all settings-derived paths at a throwaway directory."""
    home = tmp_path_factory.mktemp("daily_chain_home")
    for var in _ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("DAILY_CHAIN_HOME", str(home))
    clear_settings_cache()
    yield home
    clear_settings_cache()


@pytest.fixture
def console():
    """Capture Rich output produced by the CLI handlers."""
    buffer = io.StringIO()
    recorder = Console(file=buffer, width=120, force_terminal=False, color_system=None)
    messaging.set_console(recorder)
    yield buffer
    messaging.set_console(None)


@pytest.fixture
def clock():
    """Monday 2024-01-15 10:00 UTC."""
    return FakeClock(datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def checker():
    return ConstraintChecker(network_probe=lambda: True, battery_probe=lambda: True)


@pytest.fixture
def ledger(tmp_path):
    return ExecutionLedger(tmp_path / "ledger.json")


@pytest.fixture
def substrate(tmp_path, clock, checker):
    return LocalJobSubstrate(tmp_path / "triggers.json", checker=checker, clock=clock)


@pytest.fixture
def scheduler(tmp_path, substrate, ledger, clock):
    return ChainScheduler(
        task_id="daily_sync",
        substrate=substrate,
        ledger=ledger,
        state_path=tmp_path / "schedule_state.json",
        target_hour=23,
        target_minute=59,
        tz=timezone.utc,
        clock=clock,
    )
