import logging
import threading
from dataclasses import dataclass
from enum import Enum, unique
from typing import Callable, Optional

from pilot.action.abstract_action import ActionId
from pilot.action.action_catalog import ActionCatalog
from pilot.config import ForecastConfig, SearchConfig
from pilot.cost_model import CostOracle
from pilot.exceptions import (
    ForecastEmptyError,
    PilotError,
    PlanningInProgressError,
    SettingsPersistError,
)
from pilot.forecast.query_trace import QueryTrace
from pilot.forecast.workload_forecast import PlanningWindow, WorkloadForecast
from pilot.mcts.monte_carlo_tree_search import MonteCarloTreeSearch
from pilot.settings import SettingsManager
from util.log import PILOT_LOGGER_NAME


@unique
class PlanningStatus(Enum):
    SUCCESS = "success"
    # Nothing to plan for (empty forecast or no applicable action).
    NO_OP = "no-op"
    FAILED = "failed"


@dataclass(frozen=True)
class PlanningResult:
    status: PlanningStatus
    reason: str
    action_id: Optional[ActionId] = None
    command: Optional[str] = None
    cost: Optional[float] = None


class Pilot:
    """
    Runs planning cycles. Each cycle rebuilds the forecast from the trace, searches for the best
    sequence of actions over it and applies the first action of that sequence. How often cycles run
    is up to the caller.
    """

    def __init__(
        self,
        trace_loader: Callable[[], QueryTrace],
        forecast_config: ForecastConfig,
        search_config: SearchConfig,
        action_catalog: ActionCatalog,
        settings_manager: SettingsManager,
        cost_oracle: CostOracle,
    ) -> None:
        self.trace_loader = trace_loader
        self.forecast_config = forecast_config
        self.search_config = search_config
        self.action_catalog = action_catalog
        self.settings_manager = settings_manager
        self.cost_oracle = cost_oracle
        # The forecast of the latest cycle, kept for introspection only.
        self.forecast: Optional[WorkloadForecast] = None
        self._planning_lock = threading.Lock()

    def load_forecast(self) -> WorkloadForecast:
        forecast = WorkloadForecast(
            self.trace_loader(),
            self.forecast_config.interval,
            num_sample=self.forecast_config.num_samples,
            optimizer_timeout=self.forecast_config.optimizer_timeout,
        )
        self.forecast = forecast
        return forecast

    def get_number_of_segments(self) -> int:
        if self.forecast is None:
            self.load_forecast()
        assert self.forecast is not None
        return self.forecast.get_number_of_segments()

    def _get_planning_window(self, forecast: WorkloadForecast) -> PlanningWindow:
        num_segments = forecast.get_number_of_segments()
        end = num_segments
        if self.search_config.end_segment is not None:
            end = min(self.search_config.end_segment, num_segments)
        return PlanningWindow(0, end)

    def perform_planning(self) -> PlanningResult:
        """
        Run one planning cycle. Failures are reported in the result; a failed or no-op cycle leaves the
        configuration untouched. Raises PlanningInProgressError if another cycle is already running.
        """
        if not self._planning_lock.acquire(blocking=False):
            raise PlanningInProgressError("a planning cycle is already running")
        try:
            result = self._perform_planning()
        finally:
            self._planning_lock.release()

        logger = logging.getLogger(PILOT_LOGGER_NAME)
        if result.status == PlanningStatus.FAILED:
            logger.error(f"Planning failed: {result.reason}")
        else:
            logger.info(f"Planning finished with status {result.status.value}: {result.reason}")
        return result

    def _perform_planning(self) -> PlanningResult:
        logger = logging.getLogger(PILOT_LOGGER_NAME)
        try:
            forecast = self.load_forecast()
            if forecast.get_number_of_segments() == 0:
                raise ForecastEmptyError("the trace has no queries")
        except ForecastEmptyError as e:
            return PlanningResult(PlanningStatus.NO_OP, str(e))
        except (PilotError, OSError, ValueError) as e:
            # ValueError covers trace loaders that don't translate their parse errors.
            return PlanningResult(PlanningStatus.FAILED, f"could not load the forecast: {e}")

        if len(self.action_catalog) == 0:
            return PlanningResult(PlanningStatus.NO_OP, "there are no candidate actions")

        window = self._get_planning_window(forecast)
        logger.info(
            f"Planning over segments [{window.start}, {window.end}) of {forecast.get_number_of_segments()} "
            f"with {len(self.action_catalog)} candidate actions"
        )
        mcts = MonteCarloTreeSearch(
            forecast,
            window,
            self.action_catalog,
            self.settings_manager.get_settings_snapshot(),
            self.cost_oracle,
            self.search_config.exploration_weight,
            self.search_config.seed,
        )
        try:
            best = mcts.best_action(
                self.search_config.rollout_budget, self.search_config.time_limit_s
            )
        except PilotError as e:
            return PlanningResult(PlanningStatus.FAILED, str(e))

        if best is None:
            return PlanningResult(
                PlanningStatus.NO_OP,
                "no candidate action was applicable within the rollout budget",
            )
        action_id, cost = best
        action = self.action_catalog.get_action(action_id)
        try:
            command = self.settings_manager.apply(action)
        except SettingsPersistError as e:
            return PlanningResult(
                PlanningStatus.FAILED,
                f"could not apply action {action_id}: {e}",
                action_id=action_id,
                cost=cost,
            )
        return PlanningResult(
            PlanningStatus.SUCCESS,
            f"applied action {action_id} after {mcts.num_simulations} simulations",
            action_id=action_id,
            command=command,
            cost=cost,
        )
