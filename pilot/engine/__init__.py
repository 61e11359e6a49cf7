from pilot.engine.query_engine import (
    BindError,
    BoundStatement,
    ExecutionError,
    OptimizeTimeout,
    PhysicalPlan,
    QueryEngine,
    QueryEngineError,
)
