import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any

from pilot.engine.query_engine import (
    BindError,
    ExecutionError,
    OptimizeTimeout,
    QueryEngine,
)
from pilot.exceptions import ReplayExecutionFailureError, StaleTraceReferenceError
from pilot.forecast.query_trace import QueryInfo
from pilot.forecast.workload_forecast import PlanningWindow, WorkloadForecast
from pilot.metrics import (
    ExecutionOperatingUnitType,
    MetricsComponent,
    MetricsManager,
    PipelineData,
)
from pilot.settings import KnobSettings
from util.log import PILOT_LOGGER_NAME


@dataclass(frozen=True)
class OUPosition:
    """Where one operating unit of one pipeline landed inside its OU type's batch."""

    query_id: int
    pipeline_id: int
    ou_type: ExecutionOperatingUnitType
    position: int


def _replay_query(
    engine: QueryEngine,
    metrics_manager: MetricsManager,
    info: QueryInfo,
    params: tuple[Any, ...],
    exec_settings: KnobSettings,
    optimizer_timeout: int,
) -> None:
    try:
        txn = engine.begin_transaction(info.db_oid, exec_settings)
    except BindError as e:
        raise StaleTraceReferenceError(info.query_id, str(e)) from e
    except ExecutionError as e:
        raise ReplayExecutionFailureError(info.query_id, str(e)) from e

    # The transaction is aborted no matter what happens, so replay never changes the database.
    try:
        try:
            bound = engine.bind(
                txn, info.query_id, info.query_text, params, info.param_types
            )
            plan = engine.optimize(txn, bound, optimizer_timeout)
        except (BindError, OptimizeTimeout) as e:
            raise StaleTraceReferenceError(info.query_id, str(e)) from e

        try:
            engine.compile_and_run(
                txn, plan, metrics_manager.create_context(info.query_id)
            )
        except ExecutionError as e:
            raise ReplayExecutionFailureError(info.query_id, str(e)) from e
    except BaseException:
        # The replay error is the one reported. A failed abort on top of it is only logged.
        try:
            engine.abort(txn)
        except ExecutionError as e:
            logging.getLogger(PILOT_LOGGER_NAME).error(
                f"Could not abort the replay of query {info.query_id}: {e}"
            )
        raise

    try:
        engine.abort(txn)
    except ExecutionError as e:
        raise ReplayExecutionFailureError(
            info.query_id, f"could not abort the replay transaction: {e}"
        ) from e


def collect_pipeline_features(
    engine: QueryEngine,
    metrics_manager: MetricsManager,
    forecast: WorkloadForecast,
    window: PlanningWindow,
    exec_settings: KnobSettings,
) -> list[PipelineData]:
    """
    Replay every sampled (query, parameters) pair that arrives in the window under exec_settings and
    return the pipelines that were recorded. A failed replay fails the whole collection, and whatever
    was recorded before it is thrown away.
    """
    component = MetricsComponent.EXECUTION_PIPELINE
    window_queries = forecast.get_window_queries(window)
    try:
        for window_query in window_queries.values():
            for params in window_query.params:
                _replay_query(
                    engine,
                    metrics_manager,
                    window_query.info,
                    params,
                    exec_settings,
                    forecast.optimizer_timeout,
                )
    finally:
        metrics_manager.aggregate()
        pipeline_data = list(metrics_manager.aggregated_metrics(component).pipeline_data)
        metrics_manager.reset_aggregated(component)

    logger = logging.getLogger(PILOT_LOGGER_NAME)
    for data in pipeline_data:
        logger.debug(
            f"qid: {data.query_id}; ppl_id: {data.pipeline_id}; num_ous: {len(data.features)}"
        )
    return pipeline_data


def group_features_by_ou(
    pipeline_data: list[PipelineData],
) -> tuple[list[OUPosition], dict[ExecutionOperatingUnitType, list[list[float]]]]:
    """
    Re-index per-pipeline records into one batch of attribute vectors per OU type, since cost models
    are per OU type. The returned positions say where each pipeline's units went, so that the
    predictions for a batch can be added back up per pipeline.
    """
    pipeline_to_ou_position: list[OUPosition] = []
    ou_to_features: dict[ExecutionOperatingUnitType, list[list[float]]] = defaultdict(list)
    for data in pipeline_data:
        for feature in data.features:
            batch = ou_to_features[feature.ou_type]
            pipeline_to_ou_position.append(
                OUPosition(data.query_id, data.pipeline_id, feature.ou_type, len(batch))
            )
            batch.append(feature.get_all_attributes())
    return pipeline_to_ou_position, dict(ou_to_features)
