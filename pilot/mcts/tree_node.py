import math
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np

from pilot.action.abstract_action import ActionId
from pilot.action.action_catalog import ActionCatalog
from pilot.exceptions import EmptyChildSetError
from pilot.forecast.workload_forecast import PlanningWindow
from pilot.settings import KnobSettings

ROOT_INDEX = 0

# (settings, window) -> cost of the window under the settings.
CostFn = Callable[[KnobSettings, PlanningWindow], float]


@dataclass
class TreeNode:
    index: int
    depth: int
    # Index of the parent in the tree, None at the root.
    parent: Optional[int]
    # The action that produced this node from its parent, None at the root.
    action_id: Optional[ActionId]
    # The configuration reached by applying every action on the path from the root.
    settings: KnobSettings
    cost: float
    visits: int = 1
    children: list[int] = field(default_factory=list)
    is_leaf: bool = True
    # Nothing below this node can be expanded any more.
    is_exhausted: bool = False


class SearchTree:
    """
    The tree of action sequences explored in one planning cycle. Nodes live in `nodes` and refer to
    each other by index, so a node's parent is only ever a way to walk back up.

    A leaf's cost is one cost evaluation. An internal node's cost is always the mean of its children's
    costs, as floats. A node at depth d stands for the first d actions having been applied, so its
    children are costed over the window [window.start + d, window.end); nodes at depth len(window) are
    never expanded.
    """

    def __init__(
        self,
        root_settings: KnobSettings,
        window: PlanningWindow,
        action_catalog: ActionCatalog,
        exploration_weight: float,
    ) -> None:
        self.window = window
        self.action_catalog = action_catalog
        self.exploration_weight = exploration_weight
        # The root is never costed directly; it takes its children's mean once expanded.
        self.nodes: list[TreeNode] = [
            TreeNode(ROOT_INDEX, 0, None, None, root_settings.clone(), 0.0)
        ]

    def get_root(self) -> TreeNode:
        return self.nodes[ROOT_INDEX]

    def get_node(self, index: int) -> TreeNode:
        return self.nodes[index]

    def add_child(
        self, parent_index: int, action_id: ActionId, settings: KnobSettings, cost: float
    ) -> int:
        parent = self.nodes[parent_index]
        child = TreeNode(
            index=len(self.nodes),
            depth=parent.depth + 1,
            parent=parent_index,
            action_id=action_id,
            settings=settings,
            cost=cost,
        )
        self.nodes.append(child)
        parent.children.append(child.index)
        return child.index

    def get_path_action_ids(self, index: int) -> list[ActionId]:
        """The actions on the path from the root to the node, root first."""
        action_ids: list[ActionId] = []
        node: Optional[TreeNode] = self.nodes[index]
        while node is not None and node.action_id is not None:
            action_ids.append(node.action_id)
            node = self.nodes[node.parent] if node.parent is not None else None
        action_ids.reverse()
        return action_ids

    def get_eligible_actions(self, index: int) -> list[ActionId]:
        """
        Actions that may extend the path to the node: each action at most once per path, never right
        after one of its reverse actions, and only if the result is a legal configuration.
        """
        node = self.nodes[index]
        if node.depth >= len(self.window):
            return []
        path_action_ids = self.get_path_action_ids(index)
        undone: list[ActionId] = []
        if len(path_action_ids) > 0:
            undone = self.action_catalog.get_action(
                path_action_ids[-1]
            ).get_reverse_action_ids()

        eligible = []
        for action in self.action_catalog:
            if action.action_id in path_action_ids or action.action_id in undone:
                continue
            if not action.is_valid(node.settings):
                continue
            eligible.append(action.action_id)
        return eligible

    def compute_cost_from_children(self, index: int) -> float:
        children = self.nodes[index].children
        if len(children) == 0:
            raise EmptyChildSetError(f"node {index} has no children to average")
        return float(sum(self.nodes[c].cost for c in children) / len(children))

    def update_cost_and_visits(self, index: int, num_children: int) -> None:
        """
        The leaf at index was just expanded into num_children leaves. It and every ancestor now stand
        for num_children - 1 more leaves, and their costs are recomputed from their children, bottom up.
        """
        assert num_children > 0
        current: Optional[int] = index
        while current is not None:
            node = self.nodes[current]
            node.visits += num_children - 1
            node.cost = self.compute_cost_from_children(current)
            current = node.parent

    def _mark_exhausted(self, index: int) -> None:
        current: Optional[int] = index
        while current is not None:
            node = self.nodes[current]
            if not node.is_leaf and not all(
                self.nodes[c].is_exhausted for c in node.children
            ):
                return
            node.is_exhausted = True
            current = node.parent

    def children_rollout(self, index: int, cost_fn: CostFn) -> int:
        """
        Expand the leaf at index: one child per eligible action, each costed over the rest of the
        window. Returns the number of children. A leaf with no eligible actions stays a leaf and is
        marked exhausted.
        """
        node = self.nodes[index]
        assert node.is_leaf, f"node {index} is already expanded"
        action_ids = self.get_eligible_actions(index)
        if len(action_ids) == 0:
            self._mark_exhausted(index)
            return 0

        child_window = PlanningWindow(self.window.start + node.depth, self.window.end)
        for action_id in action_ids:
            settings = node.settings.clone()
            self.action_catalog.get_action(action_id).apply(settings)
            cost = cost_fn(settings, child_window)
            self.add_child(index, action_id, settings, cost)

        node.is_leaf = False
        self.update_cost_and_visits(index, len(action_ids))
        return len(action_ids)

    def sample_child(self, index: int, rng: np.random.Generator) -> int:
        """
        Pick a child that still has something to expand. Children are drawn from a softmax over their
        normalized cost (lower is better) plus a UCB-style bonus for being rarely visited.
        """
        node = self.nodes[index]
        candidates = [c for c in node.children if not self.nodes[c].is_exhausted]
        assert len(candidates) > 0, f"node {index} has no child left to sample"

        costs = np.array([self.nodes[c].cost for c in candidates], dtype=np.float64)
        visits = np.array([self.nodes[c].visits for c in candidates], dtype=np.float64)
        spread = costs.max() - costs.min()
        if spread > 0:
            normalized_costs = (costs - costs.min()) / spread
        else:
            normalized_costs = np.zeros_like(costs)
        exploration = self.exploration_weight * np.sqrt(
            2 * math.log(node.visits) / visits
        )
        scores = exploration - normalized_costs
        weights = np.exp(scores - scores.max())
        probabilities = weights / weights.sum()
        return candidates[int(rng.choice(len(candidates), p=probabilities))]

    def best_child(self, index: int) -> TreeNode:
        """The cheapest child. Ties go to the child added first."""
        children = self.nodes[index].children
        if len(children) == 0:
            raise EmptyChildSetError(f"node {index} has no children")
        best = children[0]
        for c in children[1:]:
            if self.nodes[c].cost < self.nodes[best].cost:
                best = c
        return self.nodes[best]
