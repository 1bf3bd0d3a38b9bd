"""Tests for the trigger executor and the self-perpetuating chain."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from daily_chain.scheduler.actions import ActionResult
from daily_chain.scheduler.chain import ChainScheduler
from daily_chain.scheduler.errors import (
    ChainBrokenError,
    RetryRequested,
    SubmissionError,
    TransientActionError,
)
from daily_chain.scheduler.executor import TaskExecutor
from daily_chain.scheduler.health import HealthMonitor
from daily_chain.scheduler.models import HealthStatus, JobHandle, Outcome, TriggerDelivery

TODAY_TARGET = datetime(2024, 1, 15, 23, 59, tzinfo=timezone.utc)


def _executor(scheduler, ledger, clock, action):
    executor = TaskExecutor(scheduler, ledger, action, clock=clock)
    scheduler.substrate.set_callback(executor)
    return executor


class TestDailyChain:
    """End-to-end runs through the local substrate."""

    def test_successful_run_rearms_for_tomorrow(self, scheduler, substrate, ledger, clock):
        """A success is recorded and the next day is armed."""
        action = MagicMock(return_value=ActionResult.success("synced"))
        _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        clock.set(TODAY_TARGET + timedelta(seconds=5))
        substrate.run_due()

        action.assert_called_once()
        record = ledger.get_last_execution()
        assert record.outcome is Outcome.SUCCESS
        assert record.fired_at == TODAY_TARGET + timedelta(seconds=5)
        assert ledger.get_next_scheduled() == TODAY_TARGET + timedelta(days=1)
        assert substrate.pending("daily_sync").generation == 2

    def test_failed_run_still_rearms(self, scheduler, substrate, ledger, clock):
        """A failure is recorded and the chain continues."""
        action = MagicMock(return_value=ActionResult.failure("exit code 1"))
        _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        clock.set(TODAY_TARGET)
        substrate.run_due()

        record = ledger.get_last_execution()
        assert record.outcome is Outcome.FAILURE
        assert record.detail == "exit code 1"
        assert ledger.get_next_scheduled() == TODAY_TARGET + timedelta(days=1)

    def test_raising_action_is_recorded_as_failure(self, scheduler, substrate, ledger, clock):
        """Exceptions from the action never break the chain."""
        action = MagicMock(side_effect=RuntimeError("boom"))
        _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        clock.set(TODAY_TARGET)
        substrate.run_due()

        record = ledger.get_last_execution()
        assert record.outcome is Outcome.FAILURE
        assert record.detail == "RuntimeError: boom"
        assert scheduler.current_generation() == 2

    def test_not_due_does_not_fire(self, scheduler, substrate, ledger, clock):
        """Nothing runs before the target."""
        action = MagicMock(return_value=ActionResult.success())
        _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        clock.set(TODAY_TARGET - timedelta(seconds=1))
        assert substrate.run_due() == []
        action.assert_not_called()

    def test_ten_days_of_mixed_outcomes(self, scheduler, substrate, ledger, clock):
        """Exactly one trigger is pending after every execution."""
        outcomes = [True, False, True, True, False, False, True, False, True, True]
        results = iter(outcomes)
        action = MagicMock(side_effect=lambda: next(results))
        _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        for day, succeeded in enumerate(outcomes):
            target = TODAY_TARGET + timedelta(days=day)
            clock.set(target + timedelta(seconds=2))
            delivered = substrate.run_due()

            assert len(delivered) == 1
            assert ledger.get_last_execution().succeeded is succeeded
            pending = substrate.pending("daily_sync")
            assert pending.due_at == target + timedelta(days=1)
            assert pending.generation == day + 2

        assert len(ledger.get_history()) == len(outcomes)


class TestStaleDeliveries:
    """Tests for generation checks."""

    def test_superseded_generation_is_ignored(self, scheduler, ledger, clock):
        """A delivery from before a reset does nothing."""
        action = MagicMock(return_value=ActionResult.success())
        executor = _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()
        scheduler.schedule_next()

        assert executor.handle_trigger(TriggerDelivery("daily_sync", generation=1)) is None
        action.assert_not_called()
        assert ledger.get_last_execution() is None
        assert scheduler.current_generation() == 2

    def test_duplicate_delivery_runs_once(self, scheduler, ledger, clock):
        """Re-delivering an already handled generation is a no-op."""
        action = MagicMock(return_value=ActionResult.success())
        executor = _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        executor.handle_trigger(TriggerDelivery("daily_sync", generation=1))
        executor.handle_trigger(TriggerDelivery("daily_sync", generation=1))

        action.assert_called_once()
        assert scheduler.current_generation() == 2

    def test_other_task_is_ignored(self, scheduler, ledger, clock):
        """Deliveries for another task id are dropped."""
        action = MagicMock(return_value=ActionResult.success())
        executor = _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        assert executor.handle_trigger(TriggerDelivery("other", generation=1)) is None
        action.assert_not_called()

    def test_unarmed_chain_ignores_delivery(self, scheduler, ledger, clock):
        """With nothing armed, every delivery is stale."""
        action = MagicMock(return_value=ActionResult.success())
        executor = _executor(scheduler, ledger, clock, action)

        assert executor(TriggerDelivery("daily_sync", generation=1)) is None
        action.assert_not_called()

    def test_cancel_during_action_is_respected(self, scheduler, ledger, clock):
        """Cancelling while the action runs leaves the task unarmed."""

        def action():
            scheduler.cancel()
            return ActionResult.success()

        executor = _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        record = executor.handle_trigger(TriggerDelivery("daily_sync", generation=1))

        assert record.succeeded
        assert scheduler.current_state() is None
        assert ledger.get_next_scheduled() is None


class TestRetries:
    """Tests for transient failures."""

    def test_transient_failure_requests_retry(self, scheduler, ledger, clock):
        """A non-final transient failure records nothing."""
        action = MagicMock(return_value=ActionResult.failure("offline", transient=True))
        executor = _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        with pytest.raises(RetryRequested) as exc_info:
            executor.handle_trigger(
                TriggerDelivery("daily_sync", generation=1, attempt=1, final_attempt=False)
            )

        assert exc_info.value.attempt == 1
        assert ledger.get_last_execution() is None
        assert scheduler.current_generation() == 1

    def test_transient_action_error_is_retryable(self, scheduler, ledger, clock):
        """TransientActionError from the action is treated as transient."""
        action = MagicMock(side_effect=TransientActionError("connection reset"))
        executor = _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        with pytest.raises(RetryRequested):
            executor.handle_trigger(
                TriggerDelivery("daily_sync", generation=1, attempt=1, final_attempt=False)
            )

    def test_final_attempt_is_recorded(self, scheduler, ledger, clock):
        """The last attempt records the failure and re-arms."""
        action = MagicMock(return_value=ActionResult.failure("offline", transient=True))
        executor = _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        record = executor.handle_trigger(
            TriggerDelivery("daily_sync", generation=1, attempt=3, final_attempt=True)
        )

        assert record.outcome is Outcome.FAILURE
        assert record.attempts == 3
        assert scheduler.current_generation() == 2

    def test_backoff_through_substrate(self, scheduler, substrate, ledger, clock):
        """Retries are re-delivered after 15 then 30 minutes."""
        action = MagicMock(return_value=ActionResult.failure("offline", transient=True))
        _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        clock.set(TODAY_TARGET)
        substrate.run_due()
        assert substrate.pending("daily_sync").due_at == TODAY_TARGET + timedelta(minutes=15)
        assert ledger.get_last_execution() is None

        clock.advance(timedelta(minutes=15))
        substrate.run_due()
        assert substrate.pending("daily_sync").due_at == clock.now + timedelta(minutes=30)

        clock.advance(timedelta(minutes=30))
        substrate.run_due()
        record = ledger.get_last_execution()
        assert record.attempts == 3
        assert record.outcome is Outcome.FAILURE
        assert action.call_count == 3
        assert ledger.get_next_scheduled() == TODAY_TARGET + timedelta(days=1)

    def test_retry_then_success(self, scheduler, substrate, ledger, clock):
        """A retry that succeeds is recorded as success."""
        action = MagicMock(
            side_effect=[ActionResult.failure("offline", transient=True), ActionResult.success()]
        )
        _executor(scheduler, ledger, clock, action)
        scheduler.schedule_next()

        clock.set(TODAY_TARGET)
        substrate.run_due()
        clock.advance(timedelta(minutes=15))
        substrate.run_due()

        record = ledger.get_last_execution()
        assert record.succeeded
        assert record.attempts == 2


class TestBrokenChain:
    """Tests for re-arm failures."""

    def test_rearm_failure_raises_chain_broken(self, tmp_path, ledger, clock):
        """The execution is recorded, then ChainBrokenError escapes."""
        substrate = MagicMock()
        substrate.submit.side_effect = [
            JobHandle("daily_sync-g1", "daily_sync", 1),
            SubmissionError("quota exceeded"),
        ]
        scheduler = ChainScheduler(
            "daily_sync",
            substrate,
            ledger,
            tmp_path / "schedule_state.json",
            tz=timezone.utc,
            clock=clock,
        )
        executor = TaskExecutor(
            scheduler, ledger, MagicMock(return_value=ActionResult.success()), clock=clock
        )
        scheduler.schedule_next()

        with pytest.raises(ChainBrokenError, match="quota exceeded"):
            executor.handle_trigger(TriggerDelivery("daily_sync", generation=1))

        assert ledger.get_last_execution().succeeded
        assert ledger.get_next_scheduled() is None
        assert scheduler.current_state() is None
        assert HealthMonitor(ledger, scheduler, clock=clock).get_status() == HealthStatus.PROBLEM

    def test_broken_chain_through_local_substrate(self, scheduler, substrate, ledger, clock):
        """A fired trigger that cannot re-arm leaves nothing pending and reports PROBLEM."""
        _executor(scheduler, ledger, clock, MagicMock(return_value=ActionResult.success()))
        scheduler.schedule_next()
        clock.set(TODAY_TARGET + timedelta(seconds=5))

        substrate.submit = MagicMock(side_effect=SubmissionError("disk full"))
        with pytest.raises(ChainBrokenError):
            substrate.run_due()

        assert substrate.pending("daily_sync") is None
        assert scheduler.current_state() is None
        assert HealthMonitor(ledger, scheduler, clock=clock).get_status() == HealthStatus.PROBLEM

    def test_chain_broken_propagates_from_substrate(self, scheduler, substrate, ledger, clock):
        """The local substrate lets ChainBrokenError through and drops the entry."""
        executor = MagicMock(side_effect=ChainBrokenError("broken"))
        substrate.set_callback(executor)
        scheduler.schedule_next()

        clock.set(TODAY_TARGET)
        with pytest.raises(ChainBrokenError):
            substrate.run_due()
        assert substrate.pending("daily_sync") is None
