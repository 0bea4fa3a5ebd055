import numpy as np
import math
from abc import ABC, abstractmethod
from typing import Optional

from .params import Tree
from .priors import TreePrior
from .util import fast_choice, sample_int


class Move(ABC):
    """
    Base class for tree moves in the TDLMM sampler.
    """
    def __init__(self, current: Tree, exposures: list, exp: int, tree_prior: TreePrior,
                 exp_prob: Optional[np.ndarray] = None):
        """
        Initialize the move.

        Parameters:
        - current: Tree
            Committed tree the move starts from.
        - exposures: list[ExposureData]
            Basis providers, indexed by exposure id.
        - exp: int
            Exposure currently assigned to the tree.
        - tree_prior: TreePrior
            Depth prior used in the structural correction.
        - exp_prob: np.ndarray, optional
            Exposure-selection probabilities (switch-exposure only).
        """
        self.current = current
        self.exposures = exposures
        self.exp = exp
        self.new_exp = exp
        self.tree_prior = tree_prior
        self.exp_prob = exp_prob
        self.proposed: Optional[Tree] = None
        self.log_tran_ratio = 0 # Structural log MH correction: transition ratio times tree prior ratio.

    @property
    def exposure(self):
        return self.exposures[self.exp]

    def propose(self, generator):
        """
        Stage a candidate tree on `current`. Returns True on success.
        """
        if self.is_feasible():
            proposed = self.current.copy()
            success = self.try_propose(proposed, generator)
            if success:
                self.proposed = proposed
                self.current.stage(proposed)
                return True
        return False

    @abstractmethod
    def is_feasible(self) -> bool:
        """
        Check whether move is feasible.
        """
        pass

    @abstractmethod
    def try_propose(self, proposed, generator) -> bool:
        """
        Try to propose a new state.
        """
        pass


class Grow(Move):
    """
    Move to split a terminal node.
    """
    def is_feasible(self):
        self.cur_leaves = self.current.leaves
        return True

    def try_propose(self, proposed, generator):
        node_id = int(fast_choice(generator, self.cur_leaves))
        rule = proposed.rules[node_id]
        if not rule.valid():
            return False
        axis, pos = rule.draw_split(generator)
        n_leaves = len(self.cur_leaves)

        success = proposed.split_leaf(node_id, axis, pos)
        if not success:
            return False
        proposed.update_node_vals(self.exposure)
        n_splits = len(proposed.terminal_split_nodes)
        self.log_tran_ratio = math.log(n_leaves) - math.log(n_splits) + \
            self.tree_prior.grow_log_ratio(Tree.depth(node_id))
        return True


class Prune(Move):
    """
    Move to prune a terminal split.
    """
    def is_feasible(self):
        self.cur_terminal_split_nodes = self.current.terminal_split_nodes
        return len(self.cur_terminal_split_nodes) > 0

    def try_propose(self, proposed, generator):
        node_id = int(fast_choice(generator, self.cur_terminal_split_nodes))
        n_splits = len(self.cur_terminal_split_nodes)

        proposed.prune_split(node_id)
        proposed.update_node_vals(self.exposure)
        n_leaves = proposed.n_leaves
        self.log_tran_ratio = math.log(n_splits) - math.log(n_leaves) - \
            self.tree_prior.grow_log_ratio(Tree.depth(node_id))
        return True


class Change(Move):
    """
    Move to redraw the split of an internal node within its rule, keeping the subtree shape.
    """
    def is_feasible(self):
        return len(self.current.split_nodes) > 0

    def try_propose(self, proposed, generator):
        node_id = int(fast_choice(generator, proposed.split_nodes))
        axis, pos = proposed.rules[node_id].draw_split(generator)
        # The node's own draw cancels with its prior; descendants see new ranges.
        before = proposed.subtree_split_log_prob(node_id)

        success = proposed.change_split(node_id, axis, pos)
        if not success:
            return False
        proposed.update_node_vals(self.exposure)
        self.log_tran_ratio = proposed.subtree_split_log_prob(node_id) - before
        return True


class SwitchExposure(Move):
    """
    Move to reassign the whole tree to another exposure.
    """
    def is_feasible(self):
        if self.exp_prob is None:
            raise ValueError("Exposure probabilities must be provided for switch move.")
        return True

    def try_propose(self, proposed, generator):
        new_exp = sample_int(generator, self.exp_prob)
        if new_exp == self.exp:
            return False
        self.new_exp = new_exp
        proposed.update_node_vals(self.exposures[new_exp])
        # Exposure proposal and selection prior cancel.
        self.log_tran_ratio = 0
        return True


all_moves = {"grow" : Grow,
            "prune" : Prune,
            "change" : Change,
            "switch" : SwitchExposure}

local_moves = ("grow", "prune", "change")
