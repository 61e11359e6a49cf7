from dataclasses import dataclass
from typing import Any

from pilot.metrics import PipelineMetricsContext
from pilot.settings import KnobSettings


class QueryEngineError(Exception):
    pass


class BindError(QueryEngineError):
    """A name or type in the statement could not be resolved against the catalog."""


class OptimizeTimeout(QueryEngineError):
    pass


class ExecutionError(QueryEngineError):
    pass


@dataclass(frozen=True)
class BoundStatement:
    query_id: int
    query_text: str
    params: tuple[Any, ...]
    param_types: tuple[str, ...]
    # Whatever the engine needs to find the bound statement again (e.g. a prepared statement name).
    handle: Any = None


@dataclass(frozen=True)
class PhysicalPlan:
    bound: BoundStatement
    plan: Any


class QueryEngine:
    """
    What the pilot needs from the engine to replay a query. Every replay goes
    begin_transaction -> bind -> optimize -> compile_and_run, and the caller always ends it with abort.
    """

    # Subclasses should override these functions.
    def begin_transaction(self, db_oid: int, exec_settings: KnobSettings) -> Any:
        """
        Start a transaction in which queries run as if the configuration were exec_settings. Raises
        ExecutionError if the database can't be reached, and BindError if db_oid is unknown.
        """
        raise NotImplementedError

    def bind(
        self,
        txn: Any,
        query_id: int,
        query_text: str,
        params: tuple[Any, ...],
        param_types: tuple[str, ...],
    ) -> BoundStatement:
        raise NotImplementedError

    def optimize(self, txn: Any, bound: BoundStatement, timeout_us: int) -> PhysicalPlan:
        raise NotImplementedError

    def compile_and_run(
        self, txn: Any, plan: PhysicalPlan, metrics_context: PipelineMetricsContext
    ) -> None:
        """
        Execute the plan and record one PipelineData per pipeline through metrics_context.
        """
        raise NotImplementedError

    def abort(self, txn: Any) -> None:
        """
        Roll back txn. Raises ExecutionError if the rollback itself fails.
        """
        raise NotImplementedError
