"""Exception hierarchy for the overview pipeline.

Skipped cycles are not errors and never raise.  Every class below aborts a
cycle without touching the worker state and is surfaced to the job runner
for retry.
"""


class OverviewError(Exception):
    """Base class for overview pipeline failures."""


class DetectionError(OverviewError):
    """An entity store query failed."""


class AnalysisError(OverviewError):
    """The language model was unreachable, timed out, or returned an error."""


class ExecutionError(OverviewError):
    """Actions could not be applied at all (store unreachable)."""


class PersistenceError(OverviewError):
    """Reading or writing worker state or jobs failed."""


class WorkerStateNotFound(OverviewError):
    """No worker state exists for the user."""

    def __init__(self, user_id: str) -> None:
        super().__init__(f"no overview worker state for user {user_id}")
        self.user_id = user_id
