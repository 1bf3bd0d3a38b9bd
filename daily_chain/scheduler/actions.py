"""The external action performed at trigger time.

The chain treats the action as a black box returning an ``ActionResult``.
``CommandAction`` runs a configured command line and appends its output
to a log file, one framed section per run.
"""

import os
import shlex
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from daily_chain.scheduler.models import Outcome

# sysexits.h EX_TEMPFAIL: "try again later"
EXIT_TEMPFAIL = 75


@dataclass(frozen=True)
class ActionResult:
    """Outcome of one action run."""

    outcome: Outcome
    detail: Optional[str] = None
    transient: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @classmethod
    def success(cls, detail: Optional[str] = None) -> "ActionResult":
        return cls(Outcome.SUCCESS, detail)

    @classmethod
    def failure(cls, detail: Optional[str] = None, transient: bool = False) -> "ActionResult":
        return cls(Outcome.FAILURE, detail, transient)


Action = Callable[[], ActionResult]


def _write_header(log_f, cmd: List[str], working_dir: str) -> None:
    log_f.write(f"\n{'=' * 60}\n")
    log_f.write(f"Started: {datetime.now().isoformat()}\n")
    log_f.write(f"Command: {' '.join(cmd)}\n")
    log_f.write(f"Working Dir: {working_dir}\n")
    log_f.write(f"{'=' * 60}\n\n")
    log_f.flush()


def _write_footer(log_f, exit_code: int) -> None:
    log_f.write(f"\n{'=' * 60}\n")
    log_f.write(f"Finished: {datetime.now().isoformat()}\n")
    log_f.write(f"Exit Code: {exit_code}\n")
    log_f.write(f"{'=' * 60}\n")


class CommandAction:
    """Run a command line as the daily action.

    Exit code 0 is success, ``EXIT_TEMPFAIL`` is a transient failure, and
    anything else (including a missing executable) is a permanent failure.
    """

    def __init__(
        self,
        command: Union[str, Sequence[str]],
        log_file: Union[str, Path],
        working_directory: str = ".",
        timeout: Optional[float] = None,
    ):
        self.cmd = shlex.split(command) if isinstance(command, str) else list(command)
        self.log_file = Path(log_file)
        self.working_directory = working_directory
        self.timeout = timeout

    def _resolve_working_dir(self) -> str:
        working_dir = self.working_directory
        if working_dir == "." or not working_dir:
            working_dir = os.getcwd()
        return os.path.expanduser(working_dir)

    def __call__(self) -> ActionResult:
        if not self.cmd:
            return ActionResult.failure("No action command configured")

        working_dir = self._resolve_working_dir()
        if not os.path.isdir(working_dir):
            return ActionResult.failure(f"Working directory not found: {working_dir}")

        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.log_file, "a") as log_f:
                _write_header(log_f, self.cmd, working_dir)
                process = subprocess.Popen(
                    self.cmd,
                    cwd=working_dir,
                    stdout=log_f,
                    stderr=subprocess.STDOUT,
                    shell=False,
                    env=os.environ.copy(),
                )
                try:
                    exit_code = process.wait(timeout=self.timeout)
                except subprocess.TimeoutExpired:
                    process.kill()
                    exit_code = process.wait()
                    _write_footer(log_f, exit_code)
                    return ActionResult.failure(
                        f"Timed out after {self.timeout}s", transient=True
                    )
                _write_footer(log_f, exit_code)
        except FileNotFoundError as e:
            return ActionResult.failure(f"Command not found: {e}")

        if exit_code == 0:
            return ActionResult.success("exit code 0")
        if exit_code == EXIT_TEMPFAIL:
            return ActionResult.failure(
                f"exit code {exit_code} (temporary failure)", transient=True
            )
        return ActionResult.failure(f"exit code {exit_code}")
