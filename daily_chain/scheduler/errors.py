"""Exception hierarchy for the daily chain.

Action failures are absorbed by the executor and recorded. Only
scheduling-infrastructure failures propagate to the operator.
"""

from typing import Optional


class SchedulerError(Exception):
    """Base class for scheduling infrastructure errors."""


class SubmissionError(SchedulerError):
    """The job substrate rejected a trigger submission."""


class ChainBrokenError(SubmissionError):
    """Re-arming after an execution failed; the daily cadence has stopped.

    Requires operator intervention (``daily-chain reset``).
    """


class RetryRequested(SchedulerError):
    """Raised by the executor to ask the substrate to re-deliver after backoff."""

    def __init__(self, attempt: int, detail: Optional[str] = None):
        self.attempt = attempt
        self.detail = detail
        super().__init__(f"Attempt {attempt} failed transiently: {detail}")


class ActionError(Exception):
    """The external action failed permanently (e.g. invalid credentials)."""


class TransientActionError(ActionError):
    """The external action failed in a way worth retrying (e.g. connectivity)."""
