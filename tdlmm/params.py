import math
from typing import Optional

import numpy as np

from .util import sample_int

X_AXIS = 0
T_AXIS = 1


class SplitRule:
    """
    Region of the (exposure-value cell, lag) domain covered by a node.

    Cells are [xmin, xmax) and lags [tmin, tmax] (inclusive). A value split at
    position s (xmin < s < xmax) gives children [xmin, s) and [s, xmax) and
    is weighted by split_probs[s - 1]. A lag split at s (tmin < s <= tmax)
    gives children [tmin, s - 1] and [s, tmax] and is weighted by
    time_probs[s - 1].
    """

    def __init__(self, xmin, xmax, tmin, tmax, split_probs, time_probs):
        self.xmin = int(xmin)
        self.xmax = int(xmax)
        self.tmin = int(tmin)
        self.tmax = int(tmax)
        self.split_probs = split_probs
        self.time_probs = time_probs

    @classmethod
    def root(cls, n_lags, split_probs, time_probs):
        split_probs = np.asarray(split_probs, dtype=np.float64)
        time_probs = np.asarray(time_probs, dtype=np.float64)
        if len(time_probs) != n_lags - 1:
            raise ValueError(f"time_probs needs {n_lags - 1} entries, got {len(time_probs)}.")
        return cls(0, len(split_probs) + 1, 0, n_lags - 1, split_probs, time_probs)

    def clone(self):
        # Probability vectors are read-only configuration and may be shared.
        return SplitRule(self.xmin, self.xmax, self.tmin, self.tmax, self.split_probs, self.time_probs)

    def _weights(self):
        x_w = self.split_probs[self.xmin:self.xmax - 1]
        t_w = self.time_probs[self.tmin:self.tmax]
        return x_w, t_w

    @property
    def total_weight(self):
        x_w, t_w = self._weights()
        return float(x_w.sum() + t_w.sum())

    def valid(self):
        return self.total_weight > 0

    def split_weight(self, axis, pos):
        if axis == X_AXIS:
            if self.xmin < pos < self.xmax:
                return float(self.split_probs[pos - 1])
            return 0.0
        if self.tmin < pos <= self.tmax:
            return float(self.time_probs[pos - 1])
        return 0.0

    def contains_split(self, axis, pos):
        return self.split_weight(axis, pos) > 0

    def log_split_prob(self, axis, pos):
        return math.log(self.split_weight(axis, pos)) - math.log(self.total_weight)

    def draw_split(self, generator):
        """Draw (axis, position) with probability proportional to the configured weights."""
        x_w, t_w = self._weights()
        idx = sample_int(generator, np.concatenate([x_w, t_w]))
        if idx < len(x_w):
            return X_AXIS, self.xmin + 1 + idx
        return T_AXIS, self.tmin + 1 + (idx - len(x_w))

    def children(self, axis, pos):
        left, right = self.clone(), self.clone()
        if axis == X_AXIS:
            left.xmax = pos
            right.xmin = pos
        else:
            left.tmax = pos - 1
            right.tmin = pos
        return left, right

    def cells(self):
        """All (cell, lag) pairs covered by this rule."""
        return {(x, t) for x in range(self.xmin, self.xmax) for t in range(self.tmin, self.tmax + 1)}

    def __eq__(self, other):
        if not isinstance(other, SplitRule):
            return NotImplemented
        return (self.xmin, self.xmax, self.tmin, self.tmax) == (other.xmin, other.xmax, other.tmin, other.tmax)

    def __repr__(self):
        return f"SplitRule(x=[{self.xmin}, {self.xmax}), t=[{self.tmin}, {self.tmax}])"


class Tree:
    """
    Binary partition of the exposure-lag domain, stored as heap-indexed arrays.

    Children of node i are 2i+1 and 2i+2. `vars` is -2 for an inexistent node,
    -1 for a terminal node, 0 for a split on the exposure-value axis and 1 for
    a split on the lag axis. Terminal nodes carry their basis `NodeVals`.
    A candidate structure can be staged in `proposed` and then accepted or
    rejected.
    """
    default_size: int = 8

    def __init__(self, vars: np.ndarray, splits: np.ndarray, rules: list, vals: dict):
        self.vars = vars
        self.splits = splits
        self.rules = rules
        self.vals = vals
        self.proposed: Optional["Tree"] = None

    @classmethod
    def new(cls, root_rule: SplitRule, exposure=None):
        vars = np.full(Tree.default_size, -2, dtype=int)  # -2 represents an inexistent node
        vars[0] = -1                      # -1 represents a leaf node
        splits = np.full(Tree.default_size, -1, dtype=int)
        rules = [None] * Tree.default_size
        rules[0] = root_rule.clone()
        tree = cls(vars, splits, rules, {})
        if exposure is not None:
            tree.update_node_vals(exposure)
        return tree

    def copy(self):
        return Tree(
            self.vars.copy(),
            self.splits.copy(),
            [r.clone() if r is not None else None for r in self.rules],
            dict(self.vals),
        )

    @staticmethod
    def depth(node_id):
        return int(math.floor(math.log2(node_id + 1)))

    def _resize_arrays(self):
        old_size = len(self.vars)
        new_size = old_size * 2

        a = np.empty(new_size, dtype=self.vars.dtype)
        a[:old_size] = self.vars
        a[old_size:] = -2
        self.vars = a

        b = np.empty(new_size, dtype=self.splits.dtype)
        b[:old_size] = self.splits
        b[old_size:] = -1
        self.splits = b

        self.rules = self.rules + [None] * (new_size - old_size)

    def _truncate_tree_arrays(self):
        last_active_node = np.where(self.vars == -1)[0].max()
        new_length = len(self.vars)
        while last_active_node < (new_length // 2) and new_length > Tree.default_size:
            new_length //= 2

        if new_length < len(self.vars):
            self.vars = self.vars[:new_length]
            self.splits = self.splits[:new_length]
            self.rules = self.rules[:new_length]

    def split_leaf(self, node_id: int, axis: int, pos: int):
        """
        Split a terminal node at (axis, pos).

        Returns:
            bool: False if the split is not valid for the node's rule.
        Raises:
            ValueError: If the node is not a leaf.
        """
        if self.vars[node_id] != -1:
            raise ValueError("Node is not a leaf and cannot be split.")
        rule = self.rules[node_id]
        if not rule.contains_split(axis, pos):
            return False

        left_child = node_id * 2 + 1
        right_child = node_id * 2 + 2
        if right_child >= len(self.vars):
            self._resize_arrays()

        self.vars[node_id] = axis
        self.splits[node_id] = pos
        self.vars[left_child] = -1
        self.vars[right_child] = -1
        self.rules[left_child], self.rules[right_child] = rule.children(axis, pos)
        self.vals.pop(node_id, None)
        return True

    def prune_split(self, node_id: int):
        """Collapse a split node whose children are both terminal."""
        if not self.is_terminal_split_node(node_id):
            raise ValueError("Only a split node with two terminal children can be pruned.")
        for child in (node_id * 2 + 1, node_id * 2 + 2):
            self.vars[child] = -2
            self.splits[child] = -1
            self.rules[child] = None
            self.vals.pop(child, None)
        self.vars[node_id] = -1
        self.splits[node_id] = -1
        self._truncate_tree_arrays()

    def change_split(self, node_id: int, axis: int, pos: int):
        """
        Replace the split of an internal node, keeping the subtree shape.

        Descendant rules are rebuilt; returns False if the node's new split or
        any descendant split falls outside its rebuilt range.
        """
        if not self.is_split_node(node_id):
            raise ValueError("Node is not a split node.")
        if not self.rules[node_id].contains_split(axis, pos):
            return False
        self.vars[node_id] = axis
        self.splits[node_id] = pos
        return self._rebuild_rules(node_id)

    def _rebuild_rules(self, node_id):
        if self.vars[node_id] == -1:
            self.vals.pop(node_id, None)
            return True
        rule = self.rules[node_id]
        axis, pos = int(self.vars[node_id]), int(self.splits[node_id])
        if not rule.contains_split(axis, pos):
            return False
        left, right = node_id * 2 + 1, node_id * 2 + 2
        self.rules[left], self.rules[right] = rule.children(axis, pos)
        return self._rebuild_rules(left) and self._rebuild_rules(right)

    def subtree_split_log_prob(self, node_id, include_self=False):
        """Sum of split log-probabilities of the split nodes below (and optionally at) node_id."""
        total = 0.0
        stack = [node_id] if include_self else [node_id * 2 + 1, node_id * 2 + 2]
        while stack:
            i = stack.pop()
            if i >= len(self.vars) or self.vars[i] < 0:
                continue
            total += self.rules[i].log_split_prob(int(self.vars[i]), int(self.splits[i]))
            stack.extend((i * 2 + 1, i * 2 + 2))
        return total

    def update_node_vals(self, exposure):
        """(Re)compute basis values of every terminal node from `exposure`."""
        self.vals = {int(leaf): exposure.basis_column(self.rules[leaf]) for leaf in self.leaves}

    # Staging
    def stage(self, proposed: "Tree"):
        self.proposed = proposed

    @property
    def is_proposed(self):
        return self.proposed is not None

    def accept(self):
        """Make the staged structure authoritative."""
        if self.proposed is None:
            raise ValueError("No proposed structure to accept.")
        p = self.proposed
        self.vars, self.splits, self.rules, self.vals = p.vars, p.splits, p.rules, p.vals
        self.proposed = None

    def reject(self):
        self.proposed = None

    def replace_node_vals(self, other: "Tree"):
        """Adopt the terminal values of a same-shaped tree (exposure switch)."""
        if not np.array_equal(self.leaves, other.leaves):
            raise ValueError("Trees must share the same structure to swap node values.")
        self.vals = dict(other.vals)
        self.proposed = None

    def is_leaf(self, node_id):
        return self.vars[node_id] == -1

    def is_split_node(self, node_id):
        return self.vars[node_id] not in [-1, -2]

    def is_terminal_split_node(self, node_id):
        return self.is_split_node(node_id) \
            and self.is_leaf(node_id * 2 + 1) \
            and self.is_leaf(node_id * 2 + 2)

    @property
    def leaves(self):
        return np.where(self.vars == -1)[0]

    @property
    def n_leaves(self):
        return np.count_nonzero(self.vars == -1)

    @property
    def split_nodes(self):
        return np.where((self.vars != -1) & (self.vars != -2))[0]

    @property
    def terminal_split_nodes(self):
        vs = self.vars
        tree_size = len(vs)
        result = []
        for i in range(tree_size):
            left, right = 2*i + 1, 2*i + 2
            # it suffices to check right child not overflowing
            if right < tree_size and vs[left] == -1 and vs[right] == -1:
                result.append(i)
        return result

    @property
    def terminal_vals(self):
        return [self.vals[int(leaf)] for leaf in self.leaves]

    @property
    def terminal_rules(self):
        return [self.rules[leaf] for leaf in self.leaves]

    def __str__(self):
        return self._print_tree()

    def __repr__(self):
        return f"Tree(vars={self.vars}, splits={self.splits})"

    def _print_tree(self, node_id=0, prefix=""):
        pprefix = prefix + "\t"
        if self.vars[node_id] == -1:
            return prefix + self._print_node(node_id)
        left_idx = node_id * 2 + 1
        right_idx = node_id * 2 + 2
        return (
            prefix
            + self._print_node(node_id)
            + "\n"
            + self._print_tree(left_idx, pprefix)
            + "\n"
            + self._print_tree(right_idx, pprefix)
        )

    def _print_node(self, node_id):
        rule = self.rules[node_id]
        if self.vars[node_id] == -1:
            return f"leaf {rule}"
        axis = "x" if self.vars[node_id] == X_AXIS else "t"
        return f"{axis} split at {self.splits[node_id]} {rule}"


class TreePair:
    """Two trees sharing one local design, with their exposures and current fit."""

    def __init__(self, tree1: Tree, tree2: Tree, exp1: int, exp2: int, n: int):
        self.trees = [tree1, tree2]
        self.exps = [int(exp1), int(exp2)]
        self.fit = np.zeros(n)
        # Unweighted posterior precision of the current pair, valid until either tree commits.
        self.precision_cache: Optional[np.ndarray] = None

    def commit(self, precision=None):
        self.precision_cache = precision


class ModelState:
    """
    Sampler state shared by the sweep and the tree-pair step.

    Hyperparameters (`tau`, `nu`, `mu_exp`, `mu_mix`, `exp_prob`, `kappa`,
    `sigma2`), the fixed-effect posterior (`zw`, `vg`, `vg_chol`, `gamma`),
    the pseudo-outcome and running residual, and the per-sweep accumulators.
    `mu_mix` and the mixture accumulators use the lower triangle
    [max(e1, e2), min(e1, e2)].
    """

    def __init__(self, pairs: list, n_exp: int, n: int, p_z: int, exp_prob: np.ndarray, kappa: float = 1.0):
        n_trees = len(pairs)
        self.pairs = pairs
        self.n_exp = n_exp
        self.tau = np.ones(n_trees)
        self.nu = 1.0
        self.sigma2 = 1.0
        self.xi_inv_sigma2 = 1.0
        self.mu_exp = np.ones(n_exp)
        self.mu_mix = np.ones((n_exp, n_exp))
        self.exp_prob = np.asarray(exp_prob, dtype=np.float64)
        self.kappa = float(kappa)

        self.gamma = np.zeros(p_z)
        self.zw: Optional[np.ndarray] = None
        self.vg: Optional[np.ndarray] = None
        self.vg_chol: Optional[np.ndarray] = None
        self.y_star = np.zeros(n)
        self.residual = np.zeros(n)
        self.fhat = np.zeros(n)

        self.n_term = np.ones(n_trees, dtype=int)
        self.n_term2 = np.ones(n_trees, dtype=int)
        self.iteration = 0
        self.record: Optional[int] = None
        self.tot_term = 0.0
        self.sum_term_t2 = 0.0
        self.reset_accumulators()

    def reset_accumulators(self):
        k = self.n_exp
        self.exp_count = np.zeros(k)
        self.exp_inf = np.zeros(k)
        self.tot_term_exp = np.zeros(k)
        self.sum_term_t2_exp = np.zeros(k)
        self.mix_count = np.zeros((k, k))
        self.mix_inf = np.zeros((k, k))
        self.tot_term_mix = np.zeros((k, k))
        self.sum_term_t2_mix = np.zeros((k, k))
        self.fhat = np.zeros_like(self.fhat)

    @property
    def n_trees(self):
        return len(self.pairs)

    @property
    def tree1_exp(self):
        return np.array([p.exps[0] for p in self.pairs])

    @property
    def tree2_exp(self):
        return np.array([p.exps[1] for p in self.pairs])
