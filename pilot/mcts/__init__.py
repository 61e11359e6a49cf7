from pilot.mcts.monte_carlo_tree_search import MonteCarloTreeSearch
from pilot.mcts.tree_node import ROOT_INDEX, SearchTree, TreeNode
