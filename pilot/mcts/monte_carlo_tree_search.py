import logging
import time
from typing import Optional

import numpy as np

from pilot.action.abstract_action import ActionId
from pilot.action.action_catalog import ActionCatalog
from pilot.cost_model import CostOracle
from pilot.forecast.workload_forecast import PlanningWindow, WorkloadForecast
from pilot.mcts.tree_node import ROOT_INDEX, SearchTree
from pilot.settings import KnobSettings
from util.log import PILOT_LOGGER_NAME


class MonteCarloTreeSearch:
    """
    One search over the action sequences that could be applied across the planning window. Built and
    thrown away once per planning cycle.
    """

    def __init__(
        self,
        forecast: WorkloadForecast,
        window: PlanningWindow,
        action_catalog: ActionCatalog,
        root_settings: KnobSettings,
        cost_oracle: CostOracle,
        exploration_weight: float,
        seed: int,
    ) -> None:
        assert window.end <= forecast.get_number_of_segments()
        self.forecast = forecast
        self.cost_oracle = cost_oracle
        self.tree = SearchTree(root_settings, window, action_catalog, exploration_weight)
        self.rng = np.random.default_rng(seed)
        self.num_simulations = 0

    def _evaluate(self, settings: KnobSettings, window: PlanningWindow) -> float:
        return self.cost_oracle.evaluate(settings, self.forecast, window)

    def run_simulation(self) -> int:
        """
        Walk down from the root by sampling children until reaching a leaf, and expand that leaf.
        Returns the number of children created.
        """
        index = ROOT_INDEX
        while not self.tree.get_node(index).is_leaf:
            index = self.tree.sample_child(index, self.rng)

        num_children = self.tree.children_rollout(index, self._evaluate)
        self.num_simulations += 1
        node = self.tree.get_node(index)
        logging.getLogger(PILOT_LOGGER_NAME).debug(
            f"Simulation {self.num_simulations}: expanded node {index} "
            f"(depth={node.depth}, path={self.tree.get_path_action_ids(index)}) "
            f"into {num_children} children, cost is now {node.cost}"
        )
        return num_children

    def best_action(
        self, rollout_budget: int, time_limit_s: Optional[float] = None
    ) -> Optional[tuple[ActionId, float]]:
        """
        Run up to rollout_budget simulations (fewer if time_limit_s runs out or the tree can't grow)
        and return the action of the root's cheapest child with that child's cost. Returns None if
        the root was never expanded. The time limit is checked between simulations and only after the
        first one, so a non-zero budget always runs at least one simulation.
        """
        start_time = time.monotonic()
        for _ in range(rollout_budget):
            if self.tree.get_root().is_exhausted:
                break
            if (
                time_limit_s is not None
                and self.num_simulations > 0
                and time.monotonic() - start_time > time_limit_s
            ):
                logging.getLogger(PILOT_LOGGER_NAME).info(
                    f"Search stopped by its {time_limit_s}s time limit after {self.num_simulations} simulations"
                )
                break
            self.run_simulation()

        root = self.tree.get_root()
        if root.is_leaf:
            return None
        best = self.tree.best_child(ROOT_INDEX)
        assert best.action_id is not None
        return best.action_id, best.cost
