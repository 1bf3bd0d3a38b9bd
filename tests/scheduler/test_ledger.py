"""Tests for the execution ledger."""

import json
from datetime import datetime, timedelta, timezone

from daily_chain.scheduler.ledger import ExecutionLedger
from daily_chain.scheduler.models import Outcome

T0 = datetime(2024, 1, 15, 23, 59, 5, tzinfo=timezone.utc)


class TestExecutions:
    """Tests for recording and reading executions."""

    def test_empty_ledger(self, ledger):
        """A fresh ledger has no execution and nothing scheduled."""
        assert ledger.get_last_execution() is None
        assert ledger.get_next_scheduled() is None
        assert ledger.get_history() == []

    def test_record_and_read_back(self, ledger):
        """The last execution is readable with all its fields."""
        ledger.record_execution(
            Outcome.SUCCESS, T0, "exit code 0", generation=3, duration_sec=1.5, attempts=2
        )

        record = ledger.get_last_execution()
        assert record.fired_at == T0
        assert record.outcome is Outcome.SUCCESS
        assert record.succeeded
        assert record.detail == "exit code 0"
        assert record.generation == 3
        assert record.duration_sec == 1.5
        assert record.attempts == 2

    def test_outcome_given_as_string(self, ledger):
        """String outcomes are coerced to the enum."""
        record = ledger.record_execution("failure", T0)
        assert record.outcome is Outcome.FAILURE

    def test_flat_keys_written(self, ledger):
        """The flat last_execution_* keys are kept for simple readers."""
        ledger.record_execution(Outcome.FAILURE, T0, "exit code 1")

        data = json.loads(ledger.path.read_text())
        assert data["last_execution_time"] == T0.isoformat()
        assert data["last_execution_outcome"] == "failure"
        assert data["last_execution_detail"] == "exit code 1"

    def test_flat_keys_only_file_is_readable(self, tmp_path):
        """A file holding only the flat keys still yields a record."""
        path = tmp_path / "ledger.json"
        path.write_text(
            json.dumps(
                {
                    "last_execution_time": T0.isoformat(),
                    "last_execution_outcome": "success",
                }
            )
        )

        record = ExecutionLedger(path).get_last_execution()
        assert record.fired_at == T0
        assert record.outcome is Outcome.SUCCESS

    def test_latest_write_wins(self, ledger):
        """Each record replaces the previous last execution."""
        ledger.record_execution(Outcome.SUCCESS, T0)
        ledger.record_execution(Outcome.FAILURE, T0 + timedelta(days=1), "boom")

        record = ledger.get_last_execution()
        assert record.outcome is Outcome.FAILURE
        assert record.fired_at == T0 + timedelta(days=1)

    def test_history_newest_first_and_bounded(self, tmp_path):
        """History keeps the most recent records only."""
        ledger = ExecutionLedger(tmp_path / "ledger.json", history_limit=3)
        for day in range(5):
            ledger.record_execution(Outcome.SUCCESS, T0 + timedelta(days=day))

        history = ledger.get_history()
        assert [r.fired_at for r in history] == [
            T0 + timedelta(days=4),
            T0 + timedelta(days=3),
            T0 + timedelta(days=2),
        ]
        assert len(ledger.get_history(limit=1)) == 1

    def test_survives_new_instance(self, ledger):
        """Data written by one instance is read by another."""
        ledger.record_execution(Outcome.SUCCESS, T0)
        ledger.record_next_scheduled(T0 + timedelta(days=1))

        reopened = ExecutionLedger(ledger.path)
        assert reopened.get_last_execution().fired_at == T0
        assert reopened.get_next_scheduled() == T0 + timedelta(days=1)

    def test_corrupt_file_reads_as_empty(self, ledger):
        """A corrupt ledger file is treated as empty, not fatal."""
        ledger.path.write_text("{not json")

        assert ledger.get_last_execution() is None
        ledger.record_execution(Outcome.SUCCESS, T0)
        assert ledger.get_last_execution().fired_at == T0

    def test_no_temp_file_left_behind(self, ledger):
        """Writes replace the ledger atomically via a temp file."""
        ledger.record_execution(Outcome.SUCCESS, T0)
        assert not ledger.path.with_suffix(".json.tmp").exists()


class TestNextScheduled:
    """Tests for the next scheduled time."""

    def test_record_and_clear(self, ledger):
        """Next scheduled time can be set and cleared."""
        target = T0 + timedelta(days=1)
        ledger.record_next_scheduled(target)
        assert ledger.get_next_scheduled() == target

        ledger.clear_next_scheduled()
        assert ledger.get_next_scheduled() is None

    def test_independent_of_execution(self, ledger):
        """Recording an execution leaves the next scheduled time alone."""
        target = T0 + timedelta(days=1)
        ledger.record_next_scheduled(target)
        ledger.record_execution(Outcome.SUCCESS, T0)

        assert ledger.get_next_scheduled() == target
