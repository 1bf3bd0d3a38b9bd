"""Wiring of the scheduler components from settings.

Both the daemon and the CLI build their objects here so they agree on
file locations, target time and substrate.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from daily_chain.scheduler.actions import Action, CommandAction
from daily_chain.scheduler.chain import ChainScheduler
from daily_chain.scheduler.executor import TaskExecutor
from daily_chain.scheduler.health import HealthMonitor
from daily_chain.scheduler.ledger import ExecutionLedger
from daily_chain.scheduler.models import RetryPolicy, TriggerConstraints
from daily_chain.scheduler.substrate import ConstraintChecker, JobSubstrate, LocalJobSubstrate
from daily_chain.settings import Settings, SubstrateKind, get_settings

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    ledger: ExecutionLedger
    substrate: JobSubstrate
    scheduler: ChainScheduler
    executor: TaskExecutor
    monitor: HealthMonitor

    @property
    def uses_dbos(self) -> bool:
        return self.settings.schedule.substrate == SubstrateKind.DBOS

    def start(self) -> None:
        """Bring up the substrate's backing service, if it has one."""
        if not self.uses_dbos:
            return
        from daily_chain import __version__
        from daily_chain.scheduler.dbos_substrate import launch_dbos

        url = self.settings.schedule.dbos_database_url or (
            f"sqlite:///{self.settings.paths.dbos_sqlite_file}"
        )
        launch_dbos(url, __version__)
        logger.info("DBOS launched with %s", url)

    def shutdown(self) -> None:
        if not self.uses_dbos:
            return
        from daily_chain.scheduler.dbos_substrate import destroy_dbos

        destroy_dbos()


def retry_policy_from(settings: Settings) -> RetryPolicy:
    retry = settings.retry
    return RetryPolicy(
        initial_backoff=timedelta(minutes=retry.initial_backoff_minutes),
        max_backoff=timedelta(minutes=retry.max_backoff_minutes),
        multiplier=retry.backoff_multiplier,
        max_attempts=retry.max_attempts,
    )


def build_runtime(
    settings: Optional[Settings] = None,
    action: Optional[Action] = None,
    checker: Optional[ConstraintChecker] = None,
) -> Runtime:
    """Build every component for the configured task.

    Args:
        settings: Defaults to the cached process settings.
        action: Defaults to a ``CommandAction`` for the configured command.
        checker: Defaults to a checker probing the configured URL.
    """
    settings = settings or get_settings()
    paths = settings.paths
    schedule = settings.schedule
    paths.ensure_directories()

    policy = retry_policy_from(settings)
    checker = checker or ConstraintChecker(probe_url=schedule.network_probe_url)
    if schedule.substrate == SubstrateKind.DBOS:
        from daily_chain.scheduler.dbos_substrate import DBOSJobSubstrate

        substrate = DBOSJobSubstrate(
            retry_policy=policy,
            checker=checker,
            constraint_poll_seconds=schedule.check_interval,
        )
    else:
        substrate = LocalJobSubstrate(paths.triggers_file, retry_policy=policy, checker=checker)

    ledger = ExecutionLedger(paths.ledger_file)
    scheduler = ChainScheduler(
        task_id=schedule.task_id,
        substrate=substrate,
        ledger=ledger,
        state_path=paths.schedule_state_file,
        target_hour=schedule.target_hour,
        target_minute=schedule.target_minute,
        tz=ZoneInfo(schedule.timezone) if schedule.timezone else None,
        constraints=TriggerConstraints(
            network_required=schedule.network_required,
            battery_not_low=schedule.battery_not_low,
        ),
    )

    if action is None:
        action = CommandAction(
            settings.action.command,
            log_file=paths.log_dir / "action.log",
            working_directory=settings.action.working_directory,
            timeout=settings.action.timeout_seconds,
        )
    executor = TaskExecutor(scheduler, ledger, action)
    substrate.set_callback(executor)

    monitor = HealthMonitor(
        ledger,
        scheduler,
        warning_after=timedelta(hours=schedule.warning_after_hours),
        problem_after=timedelta(hours=schedule.problem_after_hours),
    )
    return Runtime(
        settings=settings,
        ledger=ledger,
        substrate=substrate,
        scheduler=scheduler,
        executor=executor,
        monitor=monitor,
    )
