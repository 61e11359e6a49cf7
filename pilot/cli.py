import logging
import sys
from pathlib import Path
from typing import Optional

import click

from pilot.action.change_knob_action_generator import (
    ChangeKnobActionGenerator,
    load_knob_change_config,
)
from pilot.config import PilotConfig, load_pilot_config
from pilot.cost_model import (
    CostOracle,
    MeasuredElapsedTimeCostModel,
    OperatingUnitCostModel,
    PickledCostModel,
)
from pilot.engine.postgres_engine import PostgresQueryEngine
from pilot.forecast.query_trace import load_query_trace
from pilot.forecast.workload_forecast import WorkloadForecast
from pilot.metrics import MetricsManager
from pilot.pilot import Pilot, PlanningStatus
from pilot.settings import PostgresSettingsManager
from util.log import PILOT_OUTPUT_LOGGER_NAME
from util.pg import create_psycopg_conn, get_is_postgres_running
from util.workspace import PilotWorkspace, fully_resolve_path, get_config_path


def _load_config(pilot_workspace: PilotWorkspace) -> PilotConfig:
    config_path = fully_resolve_path(get_config_path())
    pilot_workspace.save_file(config_path)
    return load_pilot_config(config_path)


@click.group(name="pilot")
@click.pass_obj
def pilot_group(pilot_workspace: PilotWorkspace) -> None:
    pass


@pilot_group.command(
    name="plan",
    help="Run one planning cycle against Postgres and apply the chosen action.",
)
@click.pass_obj
@click.option(
    "--cost-model-path",
    type=Path,
    default=None,
    help="A pickle of {OU type name: regressor}. By default, the time each OU took during replay is its cost.",
)
def pilot_plan(pilot_workspace: PilotWorkspace, cost_model_path: Optional[Path]) -> None:
    result = _pilot_plan(pilot_workspace, cost_model_path)
    if result == PlanningStatus.FAILED:
        sys.exit(1)


def _pilot_plan(
    pilot_workspace: PilotWorkspace, cost_model_path: Optional[Path]
) -> PlanningStatus:
    assert get_is_postgres_running(), "Postgres must be running to replay queries"
    config = _load_config(pilot_workspace)
    knob_change_config = load_knob_change_config(
        config.knob_actions_path, pilot_workspace
    )

    cost_model: OperatingUnitCostModel = MeasuredElapsedTimeCostModel()
    if cost_model_path is not None:
        cost_model = PickledCostModel.load(fully_resolve_path(cost_model_path))

    # Settings are changed on the first database. ALTER SYSTEM applies to the whole instance anyway.
    settings_dbname = next(iter(config.postgres.databases.values()))
    settings_conn = create_psycopg_conn(
        config.postgres.get_connstr(settings_dbname), autocommit=True
    )
    engine = PostgresQueryEngine(config.postgres.get_connstrs())
    try:
        settings_manager = PostgresSettingsManager.from_pg_settings(
            settings_conn, knob_change_config.get_knob_names()
        )
        action_catalog = ChangeKnobActionGenerator().generate_actions(
            settings_manager, knob_change_config
        )
        pilot = Pilot(
            lambda: load_query_trace(config.trace_path, pilot_workspace),
            config.forecast,
            config.search,
            action_catalog,
            settings_manager,
            CostOracle(engine, MetricsManager(), cost_model),
        )
        result = pilot.perform_planning()
    finally:
        engine.close()
        settings_conn.close()

    output_logger = logging.getLogger(PILOT_OUTPUT_LOGGER_NAME)
    output_logger.info(f"Planning {result.status.value}: {result.reason}")
    if result.command is not None:
        output_logger.info(f"Applied: {result.command} (estimated cost {result.cost})")
    return result.status


@pilot_group.command(
    name="segments", help="Print how many segments the configured trace is split into."
)
@click.pass_obj
def pilot_segments(pilot_workspace: PilotWorkspace) -> None:
    config = _load_config(pilot_workspace)
    forecast = WorkloadForecast(
        load_query_trace(config.trace_path, pilot_workspace),
        config.forecast.interval,
        num_sample=config.forecast.num_samples,
        optimizer_timeout=config.forecast.optimizer_timeout,
    )
    output_logger = logging.getLogger(PILOT_OUTPUT_LOGGER_NAME)
    output_logger.info(f"Segments: {forecast.get_number_of_segments()}")
    for segment in forecast.forecast_segments:
        num_arrivals = sum(segment.query_counts.values())
        output_logger.info(
            f"  [{segment.start_ts}, {segment.end_ts}): {num_arrivals} arrivals of {len(segment.get_query_ids())} queries"
        )


@pilot_group.command(
    name="actions", help="List the candidate actions and the command each would run now."
)
@click.pass_obj
def pilot_actions(pilot_workspace: PilotWorkspace) -> None:
    config = _load_config(pilot_workspace)
    knob_change_config = load_knob_change_config(
        config.knob_actions_path, pilot_workspace
    )
    settings_dbname = next(iter(config.postgres.databases.values()))
    with create_psycopg_conn(
        config.postgres.get_connstr(settings_dbname), autocommit=True
    ) as conn:
        settings_manager = PostgresSettingsManager.from_pg_settings(
            conn, knob_change_config.get_knob_names()
        )
        action_catalog = ChangeKnobActionGenerator().generate_actions(
            settings_manager, knob_change_config
        )

    settings = settings_manager.get_settings_snapshot()
    output_logger = logging.getLogger(PILOT_OUTPUT_LOGGER_NAME)
    for action in action_catalog:
        validity = "" if action.is_valid(settings) else " (invalid now)"
        output_logger.info(
            f"{action.action_id}: {action.to_sql_command(settings)}{validity} reverse={action.get_reverse_action_ids()}"
        )
