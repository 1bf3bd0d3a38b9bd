"""Entry point for running the scheduler daemon directly.

Usage: python -m daily_chain.scheduler
"""

import sys

from daily_chain.scheduler.daemon import start_daemon

if __name__ == "__main__":
    sys.exit(start_daemon(foreground=True))
