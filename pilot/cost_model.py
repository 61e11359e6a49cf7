import logging
import pickle
from pathlib import Path
from typing import Any, Optional

import numpy as np
import pandas as pd

from pilot.engine.query_engine import QueryEngine
from pilot.forecast.workload_forecast import (
    PlanningWindow,
    WindowQuery,
    WorkloadForecast,
)
from pilot.metrics import ELAPSED_US_ATTRIBUTE_INDEX, ExecutionOperatingUnitType, MetricsManager
from pilot.pilot_util import OUPosition, collect_pipeline_features, group_features_by_ou
from pilot.settings import KnobSettings
from util.log import PILOT_LOGGER_NAME


class OperatingUnitCostModel:
    # Subclasses should override this function.
    def predict(self, ou_type: ExecutionOperatingUnitType, batch: np.ndarray) -> np.ndarray:
        """
        Return one predicted cost per row of batch. Each row is an attribute vector laid out as
        OU_ATTRIBUTE_NAMES.
        """
        raise NotImplementedError


class MeasuredElapsedTimeCostModel(OperatingUnitCostModel):
    """Uses the time each OU actually took during replay as its cost."""

    def predict(self, ou_type: ExecutionOperatingUnitType, batch: np.ndarray) -> np.ndarray:
        return batch[:, ELAPSED_US_ATTRIBUTE_INDEX].copy()


class PickledCostModel(OperatingUnitCostModel):
    """
    One trained regressor per OU type, each with a sklearn-style predict(). The regressors see every
    attribute except the measured elapsed time, which is what they were trained to predict.

    OU types without a regressor fall back to `fallback` (measured elapsed time by default).
    """

    def __init__(
        self,
        models: dict[ExecutionOperatingUnitType, Any],
        fallback: Optional[OperatingUnitCostModel] = None,
    ) -> None:
        self.models = models
        self.fallback = fallback if fallback is not None else MeasuredElapsedTimeCostModel()

    @staticmethod
    def load(model_path: Path) -> "PickledCostModel":
        with open(model_path, "rb") as f:
            raw_models = pickle.load(f)
        assert isinstance(raw_models, dict)
        # Keys may be the OU types themselves or their names.
        models = {
            ExecutionOperatingUnitType[key] if isinstance(key, str) else key: model
            for key, model in raw_models.items()
        }
        logging.getLogger(PILOT_LOGGER_NAME).info(
            f"Loaded cost models for {sorted(ou_type.name for ou_type in models)} from {model_path}"
        )
        return PickledCostModel(models)

    def predict(self, ou_type: ExecutionOperatingUnitType, batch: np.ndarray) -> np.ndarray:
        if ou_type not in self.models:
            return self.fallback.predict(ou_type, batch)
        inputs = np.delete(batch, ELAPSED_US_ATTRIBUTE_INDEX, axis=1)
        return np.asarray(self.models[ou_type].predict(inputs), dtype=np.float64).reshape(-1)


def compute_cost(
    cost_model: OperatingUnitCostModel,
    pipeline_to_ou_position: list[OUPosition],
    ou_to_features: dict[ExecutionOperatingUnitType, list[list[float]]],
    window_queries: dict[int, WindowQuery],
) -> float:
    """
    Predict every OU batch, add the predictions back up per (query, pipeline) and then per query,
    and sum the queries weighted by how often they arrive in the window. A query's cost is the mean
    over the parameter samples it was replayed with.
    """
    predictions = {
        ou_type: cost_model.predict(ou_type, np.array(batch, dtype=np.float64))
        for ou_type, batch in ou_to_features.items()
    }
    for ou_type, prediction in predictions.items():
        assert len(prediction) == len(
            ou_to_features[ou_type]
        ), f"{ou_type.name}: expected {len(ou_to_features[ou_type])} predictions, got {len(prediction)}"

    query_costs: dict[int, float] = {}
    if len(pipeline_to_ou_position) > 0:
        ou_costs = pd.DataFrame(
            [
                (pos.query_id, pos.pipeline_id, float(predictions[pos.ou_type][pos.position]))
                for pos in pipeline_to_ou_position
            ],
            columns=["query_id", "pipeline_id", "cost"],
        )
        pipeline_costs = ou_costs.groupby(["query_id", "pipeline_id"])["cost"].sum()
        query_costs = pipeline_costs.groupby(level="query_id").sum().to_dict()

    total_cost = 0.0
    for qid, window_query in window_queries.items():
        if len(window_query.params) == 0:
            continue
        query_cost = float(query_costs.get(qid, 0.0)) / len(window_query.params)
        total_cost += query_cost * window_query.count
    return total_cost


class CostOracle:
    """
    Estimates what a window of the forecast would cost under a hypothetical configuration by replaying
    the window's sampled queries.
    """

    def __init__(
        self,
        engine: QueryEngine,
        metrics_manager: MetricsManager,
        cost_model: OperatingUnitCostModel,
    ) -> None:
        self.engine = engine
        self.metrics_manager = metrics_manager
        self.cost_model = cost_model

    def evaluate(
        self, settings: KnobSettings, forecast: WorkloadForecast, window: PlanningWindow
    ) -> float:
        pipeline_data = collect_pipeline_features(
            self.engine, self.metrics_manager, forecast, window, settings
        )
        pipeline_to_ou_position, ou_to_features = group_features_by_ou(pipeline_data)
        cost = compute_cost(
            self.cost_model,
            pipeline_to_ou_position,
            ou_to_features,
            forecast.get_window_queries(window),
        )
        logging.getLogger(PILOT_LOGGER_NAME).debug(
            f"Window [{window.start}, {window.end}) costs {cost} ({len(pipeline_data)} pipelines)"
        )
        return cost
