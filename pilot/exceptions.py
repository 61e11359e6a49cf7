class PilotError(Exception):
    """Base class of every error a planning cycle can report."""


class ForecastEmptyError(PilotError):
    """The trace produced zero segments. The cycle becomes a no-op."""


class StaleTraceReferenceError(PilotError):
    """
    A traced query no longer binds or optimizes against the current catalog (e.g. it references a
    table that has been dropped). This is a correctness bug upstream of the pilot, so the whole cycle
    fails instead of skipping the query.
    """

    def __init__(self, query_id: int, reason: str) -> None:
        super().__init__(f"query {query_id} in the trace is stale: {reason}")
        self.query_id = query_id
        self.reason = reason


class ReplayExecutionFailureError(PilotError):
    def __init__(self, query_id: int, reason: str) -> None:
        super().__init__(f"replay of query {query_id} failed during execution: {reason}")
        self.query_id = query_id
        self.reason = reason


class EmptyChildSetError(PilotError):
    """A node was asked to average the costs of zero children."""


class AmbiguousActionDefinitionError(PilotError):
    pass


class NotFoundError(PilotError, KeyError):
    def __str__(self) -> str:
        # KeyError.__str__ quotes its argument.
        return str(self.args[0]) if self.args else ""


class InvalidConfigError(PilotError):
    pass


class PlanningInProgressError(PilotError):
    pass


class InvalidTraceError(PilotError):
    """The trace files exist but can't be parsed (bad CSV, missing column, non-integer timestamp, ...)."""


class SettingsPersistError(PilotError):
    """The chosen action could not be written to the database. The in-memory settings are unchanged."""
