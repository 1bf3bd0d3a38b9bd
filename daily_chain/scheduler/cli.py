"""CLI subcommands for the scheduler.

Handles command-line operations like starting/stopping the daemon,
showing chain health, and re-arming or cancelling the daily trigger.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

from daily_chain.messaging import (
    emit_error,
    emit_info,
    emit_status_panel,
    emit_success,
    emit_table,
    emit_warning,
    styled_status,
)
from daily_chain.scheduler.errors import SubmissionError
from daily_chain.scheduler.models import HealthStatus, ScheduleState


@contextmanager
def _open_runtime(launch_substrate: bool = True) -> Iterator:
    """Build the runtime for one command.

    Read-only commands pass ``launch_substrate=False``: they only look at
    the ledger and schedule state, and launching DBOS would recover pending
    trigger workflows into this short-lived process.
    """
    from daily_chain.scheduler.runtime import build_runtime

    runtime = build_runtime()
    if not launch_substrate:
        yield runtime
        return
    runtime.start()
    try:
        yield runtime
    finally:
        runtime.shutdown()


def _fmt_time(value: Optional[datetime]) -> str:
    if value is None:
        return "never"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")


def _restart_daemon_for_dbos(runtime) -> None:
    """DBOS only recovers a workflow armed here when the daemon relaunches."""
    if not runtime.uses_dbos:
        return
    from daily_chain.scheduler.daemon import get_daemon_pid, start_daemon_background, stop_daemon

    if get_daemon_pid():
        emit_info("Restarting scheduler daemon to pick up the new trigger...")
        if not (stop_daemon() and start_daemon_background()):
            emit_warning("Could not restart the daemon; run 'daily-chain start' manually")


def _report_armed(state: ScheduleState) -> None:
    emit_success(f"Next run at {_fmt_time(state.target)} (generation {state.generation})")


def handle_scheduler_start() -> bool:
    """Launch the daemon that keeps the daily chain firing."""
    from daily_chain.scheduler.daemon import get_daemon_pid, start_daemon_background

    running = get_daemon_pid()
    if running:
        emit_warning(f"Daily chain daemon already running (PID {running})")
        return True

    emit_info("Launching daily chain daemon...")
    if not start_daemon_background():
        emit_error("Daemon did not come up; see daemon.log in the log directory")
        return False
    emit_success(f"Daily chain daemon running (PID {get_daemon_pid()})")
    return True


def handle_scheduler_stop() -> bool:
    """Stop the daemon. The pending trigger stays armed for the next start."""
    from daily_chain.scheduler.daemon import get_daemon_pid, stop_daemon

    running = get_daemon_pid()
    if not running:
        emit_info("Daily chain daemon is not running")
        return True

    emit_info(f"Stopping daily chain daemon (PID {running})...")
    if not stop_daemon():
        emit_error(f"Daemon {running} did not exit after SIGTERM")
        return False
    emit_success("Daily chain daemon stopped; the pending trigger is kept")
    return True


def handle_scheduler_status() -> bool:
    """Show daemon state and chain health. Returns False unless healthy."""
    from daily_chain.scheduler.daemon import get_daemon_pid

    pid = get_daemon_pid()
    if pid:
        emit_success(f"Scheduler daemon: RUNNING (PID {pid})")
    else:
        emit_warning("Scheduler daemon: STOPPED")

    with _open_runtime(launch_substrate=False) as runtime:
        report = runtime.monitor.describe()

    message = f"Chain status: {report.status.value.upper()}"
    if report.status == HealthStatus.HEALTHY:
        emit_success(message)
    elif report.status == HealthStatus.WARNING:
        emit_warning(message)
    else:
        emit_error(message)
    last = report.last_execution
    emit_info(f"Last execution: {_fmt_time(last.fired_at if last else None)}")
    emit_info(f"Next scheduled: {_fmt_time(report.next_scheduled)}")
    return report.status == HealthStatus.HEALTHY


def handle_scheduler_describe() -> bool:
    """Print a diagnostic summary of the chain."""
    with _open_runtime(launch_substrate=False) as runtime:
        report = runtime.monitor.describe()
        state = runtime.scheduler.current_state()
        settings = runtime.settings

    last = report.last_execution
    fields = {
        "Task": settings.schedule.task_id,
        "Status": styled_status(report.status.value),
        "Target time": f"{settings.schedule.target_hour:02d}:{settings.schedule.target_minute:02d}"
        f" ({settings.schedule.timezone or 'local'})",
        "Substrate": settings.schedule.substrate.value,
        "Last execution": _fmt_time(last.fired_at if last else None),
        "Last outcome": styled_status(last.outcome.value) if last else "-",
        "Last detail": (last.detail or "-") if last else "-",
        "Hours since last": (
            f"{report.hours_since_last_execution}"
            if report.hours_since_last_execution is not None
            else "-"
        ),
        "Next scheduled": _fmt_time(report.next_scheduled),
        "Generation": str(report.generation) if report.generation is not None else "unarmed",
        "Trigger": state.handle_id if state else "-",
    }
    emit_status_panel("Daily chain", fields)
    return True


def handle_scheduler_reset() -> bool:
    """Cancel the pending trigger and arm the next daily occurrence."""
    emit_info("Resetting daily chain...")
    with _open_runtime() as runtime:
        try:
            state = runtime.monitor.reset()
        except SubmissionError as e:
            emit_error(f"Reset failed: {e}")
            return False
        _restart_daemon_for_dbos(runtime)
    _report_armed(state)
    return True


def handle_scheduler_run_now() -> bool:
    """Fire the action as soon as possible; the chain continues daily after."""
    return _arm_in(timedelta(0), "now")


def handle_scheduler_test_in(interval: str) -> bool:
    """Arm a one-off test run after ``interval`` (e.g. '2m', '1h')."""
    from daily_chain.scheduler.timing import parse_interval

    delay = parse_interval(interval)
    if delay is None:
        emit_error(f"Invalid interval '{interval}'. Use e.g. 30s, 2m, 1h, 1d")
        return False
    return _arm_in(delay, f"in {interval}")


def _arm_in(delay: timedelta, label: str) -> bool:
    emit_info(f"Arming a run {label}...")
    with _open_runtime() as runtime:
        try:
            state = runtime.scheduler.schedule_in(delay)
        except SubmissionError as e:
            emit_error(f"Could not arm run: {e}")
            return False
        _restart_daemon_for_dbos(runtime)
    _report_armed(state)
    return True


def handle_scheduler_cancel() -> bool:
    """Cancel the pending trigger, leaving the task unarmed."""
    with _open_runtime() as runtime:
        if runtime.scheduler.current_state() is None:
            emit_info("Daily chain is not armed")
            return True
        runtime.scheduler.cancel()
    emit_warning("Daily chain cancelled. Run 'daily-chain reset' to re-arm it.")
    return True


def handle_scheduler_history(limit: int = 10) -> bool:
    """Show the most recent executions."""
    with _open_runtime(launch_substrate=False) as runtime:
        records = runtime.ledger.get_history(limit)

    if not records:
        emit_info("No executions recorded yet.")
        return True

    rows = []
    for record in records:
        rows.append(
            [
                _fmt_time(record.fired_at),
                styled_status(record.outcome.value),
                str(record.attempts),
                f"{record.duration_sec:.1f}s" if record.duration_sec is not None else "-",
                record.detail or "",
            ]
        )
    emit_table(["Fired at", "Outcome", "Attempts", "Duration", "Detail"], rows)
    return True
