import unittest

import numpy as np

from pilot.action.abstract_action import ActionId
from pilot.exceptions import EmptyChildSetError
from pilot.forecast.workload_forecast import PlanningWindow
from pilot.mcts.tree_node import ROOT_INDEX, SearchTree
from pilot.settings import KnobSettings, SettingsManager
from pilot.tests.pilot_unittest_util import make_action_catalog, make_knob_settings


class SearchTreeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.settings = make_knob_settings()
        self.catalog = make_action_catalog(SettingsManager(self.settings))
        self.tree = SearchTree(self.settings, PlanningWindow(0, 3), self.catalog, 1.41)

    def _add_children(self, parent_index: int, costs: list[float]) -> list[int]:
        """Attach children the way children_rollout does, with the given costs."""
        children = [
            self.tree.add_child(
                parent_index, ActionId(i), self.tree.get_node(parent_index).settings.clone(), cost
            )
            for i, cost in enumerate(costs)
        ]
        self.tree.get_node(parent_index).is_leaf = False
        self.tree.update_cost_and_visits(parent_index, len(costs))
        return children

    def test_cost_is_mean_of_children(self) -> None:
        self._add_children(ROOT_INDEX, [1.0, 2.0, 4.0])
        self.assertEqual(self.tree.compute_cost_from_children(ROOT_INDEX), 7.0 / 3.0)
        self.assertEqual(self.tree.get_root().cost, 7.0 / 3.0)

    def test_mean_of_no_children_is_rejected(self) -> None:
        with self.assertRaises(EmptyChildSetError):
            self.tree.compute_cost_from_children(ROOT_INDEX)
        with self.assertRaises(EmptyChildSetError):
            self.tree.best_child(ROOT_INDEX)

    def test_three_level_propagation(self) -> None:
        a, b = self._add_children(ROOT_INDEX, [10.0, 20.0])
        root = self.tree.get_root()
        self.assertEqual(root.visits, 2)
        self.assertEqual(root.cost, 15.0)

        a1, a2, a3 = self._add_children(a, [1.0, 2.0, 3.0])
        self.assertEqual(self.tree.get_node(a).visits, 3)
        self.assertEqual(self.tree.get_node(a).cost, 2.0)
        self.assertEqual(root.visits, 4)
        self.assertEqual(root.cost, 11.0)
        # Untouched subtrees keep their values.
        self.assertEqual(self.tree.get_node(b).visits, 1)
        self.assertEqual(self.tree.get_node(b).cost, 20.0)

        self._add_children(a2, [8.0, 12.0])
        self.assertEqual(self.tree.get_node(a2).visits, 2)
        self.assertEqual(self.tree.get_node(a2).cost, 10.0)
        self.assertEqual(self.tree.get_node(a).visits, 4)
        self.assertEqual(self.tree.get_node(a).cost, (1.0 + 10.0 + 3.0) / 3)
        self.assertEqual(root.visits, 5)
        self.assertEqual(root.cost, ((1.0 + 10.0 + 3.0) / 3 + 20.0) / 2)
        self.assertEqual(self.tree.get_node(a1).depth, 2)
        self.assertEqual(self.tree.get_node(a3).parent, a)

    def test_best_child_breaks_ties_by_insertion(self) -> None:
        children = self._add_children(ROOT_INDEX, [3.0, 1.0, 1.0, 2.0])
        self.assertEqual(self.tree.best_child(ROOT_INDEX).index, children[1])

    def test_children_rollout(self) -> None:
        windows = []

        def cost_fn(settings: KnobSettings, window: PlanningWindow) -> float:
            windows.append(window)
            return float(settings.get("work_mem"))

        self.assertEqual(self.tree.children_rollout(ROOT_INDEX, cost_fn), 4)
        root = self.tree.get_root()
        self.assertFalse(root.is_leaf)
        self.assertEqual(root.visits, 4)
        self.assertEqual(windows, [PlanningWindow(0, 3)] * 4)
        self.assertEqual(
            [self.tree.get_node(c).action_id for c in root.children], [0, 1, 2, 3]
        )
        self.assertEqual(root.cost, (4096 + 4096 + 5120 + 3072) / 4)
        # The root's settings are never modified.
        self.assertEqual(root.settings, self.settings)

        # Below work_mem +1024 (action 2): not action 2 again and not its reverse, action 3.
        plus_index = root.children[2]
        self.assertEqual(self.tree.get_eligible_actions(plus_index), [0, 1])
        windows.clear()
        self.assertEqual(self.tree.children_rollout(plus_index, cost_fn), 2)
        self.assertEqual(windows, [PlanningWindow(1, 3)] * 2)
        self.assertEqual(self.tree.get_path_action_ids(self.tree.get_node(plus_index).children[0]), [2, 0])

    def test_depth_is_bounded_by_window(self) -> None:
        tree = SearchTree(self.settings, PlanningWindow(0, 1), self.catalog, 1.41)
        tree.children_rollout(ROOT_INDEX, lambda settings, window: 1.0)
        child = tree.get_root().children[0]
        self.assertEqual(tree.get_eligible_actions(child), [])
        self.assertEqual(tree.children_rollout(child, lambda settings, window: 1.0), 0)
        self.assertTrue(tree.get_node(child).is_exhausted)
        self.assertFalse(tree.get_root().is_exhausted)

        for c in tree.get_root().children[1:]:
            tree.children_rollout(c, lambda settings, window: 1.0)
        self.assertTrue(tree.get_root().is_exhausted)

    def test_invalid_actions_are_skipped(self) -> None:
        settings = make_knob_settings()
        settings.set("work_mem", 100)
        tree = SearchTree(settings, PlanningWindow(0, 3), self.catalog, 1.41)
        # work_mem - 1024 would go below the minimum of 64.
        self.assertEqual(tree.get_eligible_actions(ROOT_INDEX), [0, 1, 2])

    def test_sample_child_prefers_cheap_children(self) -> None:
        cheap, expensive = self._add_children(ROOT_INDEX, [1.0, 1000.0])
        rng = np.random.default_rng(15721)
        samples = [self.tree.sample_child(ROOT_INDEX, rng) for _ in range(200)]
        self.assertGreater(samples.count(cheap), samples.count(expensive))
        self.assertGreater(samples.count(expensive), 0)

    def test_sample_child_skips_exhausted_children(self) -> None:
        first, second = self._add_children(ROOT_INDEX, [1.0, 1000.0])
        self.tree.get_node(first).is_exhausted = True
        rng = np.random.default_rng(0)
        for _ in range(20):
            self.assertEqual(self.tree.sample_child(ROOT_INDEX, rng), second)


if __name__ == "__main__":
    unittest.main()
