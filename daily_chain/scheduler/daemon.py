"""Scheduler daemon for the daily chain.

Runs as a background process: makes sure the chain is armed on start,
then polls the substrate so due triggers fire. With the DBOS substrate
the triggers fire inside DBOS and the loop only watches for a broken
chain.
"""

import atexit
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Optional

from daily_chain.scheduler.errors import ChainBrokenError, SubmissionError
from daily_chain.scheduler.runtime import Runtime, build_runtime
from daily_chain.settings import get_settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
ERROR_BACKOFF_SECONDS = 10
STARTUP_TIMEOUT_SECONDS = 3.0
SHUTDOWN_TIMEOUT_SECONDS = 5.0

# Global flag for graceful shutdown
_shutdown_requested = False


def _pid_file() -> Path:
    return get_settings().paths.pid_file


def configure_logging(log_dir: Path, level: int = logging.INFO) -> Path:
    """Send the daemon's log records to ``<log_dir>/daemon.log``."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "daemon.log"
    handler = logging.FileHandler(log_file, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger("daily_chain")
    root.addHandler(handler)
    root.setLevel(level)
    return log_file


def _sleep(seconds: int) -> None:
    # Sleep in small increments to allow graceful shutdown
    for _ in range(seconds):
        if _shutdown_requested:
            break
        time.sleep(1)


def run_scheduler_loop(runtime: Runtime, check_interval: int = 60) -> int:
    """Main scheduler loop. Returns the process exit code."""
    logger.info("Starting daemon (PID: %d)", os.getpid())
    logger.info("Check interval: %ds", check_interval)

    try:
        state = runtime.scheduler.ensure_armed()
    except SubmissionError as e:
        logger.critical("Could not arm the daily chain on startup: %s", e)
        return 1
    logger.info("Next run for %s at %s", state.task_id, state.target.isoformat())

    while not _shutdown_requested:
        try:
            runtime.substrate.poll()
        except ChainBrokenError as e:
            logger.critical("Stopping daemon: %s", e)
            return 1
        except Exception:
            logger.exception("Error in scheduler loop")
            _sleep(ERROR_BACKOFF_SECONDS)
            continue
        _sleep(check_interval)

    logger.info("Daemon stopped")
    return 0


def write_pid_file() -> None:
    """Write the current PID to the PID file."""
    pid_file = _pid_file()
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()))


def remove_pid_file() -> None:
    """Remove the PID file."""
    try:
        _pid_file().unlink(missing_ok=True)
    except OSError:
        logger.warning("Could not remove PID file %s", _pid_file())


def signal_handler(signum, frame):
    """Handle shutdown signals."""
    global _shutdown_requested
    logger.info("Received signal %d, shutting down...", signum)
    _shutdown_requested = True


def start_daemon(foreground: bool = False) -> int:
    """Run the scheduler daemon in this process until a shutdown signal.

    Args:
        foreground: Also echo log records to stderr.

    Returns:
        The process exit code.
    """
    global _shutdown_requested
    _shutdown_requested = False

    settings = get_settings()
    settings.paths.ensure_directories()
    configure_logging(settings.paths.log_dir)
    if foreground:
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger("daily_chain").addHandler(stream)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    write_pid_file()
    atexit.register(remove_pid_file)

    runtime = build_runtime(settings)
    runtime.start()
    try:
        return run_scheduler_loop(runtime, settings.schedule.check_interval)
    finally:
        runtime.shutdown()


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but belongs to another user
        return True
    return True


def get_daemon_pid() -> Optional[int]:
    """PID of the daemon keeping the chain alive, or None.

    A PID file that is unreadable or names a dead process is removed.
    """
    pid_file = _pid_file()
    try:
        pid = int(pid_file.read_text().strip())
    except FileNotFoundError:
        return None
    except (OSError, ValueError):
        remove_pid_file()
        return None
    if not _process_alive(pid):
        logger.info("Removing stale PID file for %d", pid)
        remove_pid_file()
        return None
    return pid


def _wait_for(predicate, timeout: float) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.25)
    return predicate()


def start_daemon_background() -> bool:
    """Spawn ``python -m daily_chain.scheduler`` detached from this terminal.

    Returns True once the new daemon has written its PID file.
    """
    import subprocess

    if get_daemon_pid():
        return True

    subprocess.Popen(
        [sys.executable, "-m", "daily_chain.scheduler"],
        start_new_session=True,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    return _wait_for(lambda: get_daemon_pid() is not None, STARTUP_TIMEOUT_SECONDS)


def stop_daemon() -> bool:
    """SIGTERM the daemon and wait for it to finish its current poll."""
    pid = get_daemon_pid()
    if not pid:
        return False

    try:
        os.kill(pid, signal.SIGTERM)
    except OSError as e:
        logger.error("Could not signal daemon %d: %s", pid, e)
        return False
    return _wait_for(lambda: get_daemon_pid() is None, SHUTDOWN_TIMEOUT_SECONDS)
