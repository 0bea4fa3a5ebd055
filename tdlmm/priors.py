import logging

import numpy as np

from .exceptions import ShrinkageDegeneracyError
from .params import ModelState
from .util import log_p_split, r_half_cauchy_fc, r_dirichlet, log_dirichlet_density

LOGGER = logging.getLogger(__name__)


class TreePrior:
    """
    Depth prior on tree structure: a node at depth d splits with probability
    alpha * (1 + d) ** -beta.
    """
    def __init__(self, tree_alpha=0.95, tree_beta=2.0):
        self.alpha = tree_alpha
        self.beta = tree_beta

    def log_p_split(self, depth, terminal=False):
        return log_p_split(self.alpha, self.beta, depth, terminal)

    def grow_log_ratio(self, depth):
        """Log prior ratio of splitting a terminal node at `depth` into two terminal children."""
        return self.log_p_split(depth) + 2 * self.log_p_split(depth + 1, terminal=True) \
            - self.log_p_split(depth, terminal=True)


def checked_half_cauchy(generator, x2, a, b, name):
    """Half-Cauchy full conditional draw that fails loudly on a degenerate result."""
    try:
        x2_new, y_inv = r_half_cauchy_fc(generator, x2, a, b)
    except (ZeroDivisionError, ValueError) as err:
        raise ShrinkageDegeneracyError(name, a, b) from err
    if not (np.isfinite(x2_new) and x2_new > 0):
        raise ShrinkageDegeneracyError(name, a, b, x2_new)
    return x2_new, y_inv


class ShrinkagePrior:
    """
    Horseshoe-type shrinkage on the tree-pair scales (tau), the global scale
    (nu), the exposure scales (mu_exp) and the exposure-pair interaction
    scales (mu_mix), plus the Dirichlet prior on exposure selection.

    Args:
        shrinkage (str): "none", "exposures" (mu only), "trees" (tau only) or "all".
        interaction (str): "none", "distinct" (different exposures only) or "all".
        mix_prior (float): Dirichlet concentration on exposure selection;
            a negative value makes it adaptive, starting from 1.
        generator (np.random.Generator): random stream; `TDLMMSampler` binds its own when None.
    """
    def __init__(self, shrinkage="exposures", interaction="distinct", mix_prior=1.0,
                 generator=None):
        if shrinkage not in ("none", "exposures", "trees", "all"):
            raise ValueError(f"Unknown shrinkage mode '{shrinkage}'.")
        if interaction not in ("none", "distinct", "all"):
            raise ValueError(f"Unknown interaction mode '{interaction}'.")
        if mix_prior == 0:
            raise ValueError("mix_prior must be positive, or negative for an adaptive concentration.")
        self.shrinkage = shrinkage
        self.interaction = interaction
        self.adaptive_kappa = mix_prior < 0
        self.kappa_init = 1.0 if self.adaptive_kappa else float(mix_prior)
        self.generator = generator
        self.kappa_accepted = 0

    @property
    def updates_trees(self):
        return self.shrinkage in ("trees", "all")

    @property
    def updates_exposures(self):
        return self.shrinkage in ("exposures", "all")

    def has_interaction(self, e1, e2):
        if self.interaction == "none":
            return False
        return self.interaction == "all" or e1 != e2

    def mix_var(self, state: ModelState, e1, e2):
        """Interaction scale for an exposure pair, 0 when the pair has no interaction block."""
        if not self.has_interaction(e1, e2):
            return 0.0
        return float(state.mu_mix[max(e1, e2), min(e1, e2)])

    def mix_pairs(self, n_exp):
        """Lower-triangle exposure pairs (j, i), j >= i, that carry an interaction scale."""
        return [(j, i) for i in range(n_exp) for j in range(i, n_exp) if self.has_interaction(i, j)]

    def init_scales(self, state: ModelState):
        state.nu, _ = checked_half_cauchy(self.generator, state.nu, state.n_trees, 0.0, "nu")
        state.tau = np.ones(state.n_trees)
        if self.updates_trees:
            for t in range(state.n_trees):
                state.tau[t], _ = checked_half_cauchy(self.generator, 1.0, 0.0, 0.0, f"tau[{t}]")

    def update_tree_scale(self, state: ModelState, t, tot_term, tau_t2):
        if self.updates_trees:
            state.tau[t], _ = checked_half_cauchy(
                self.generator, state.tau[t], tot_term, tau_t2 / (state.sigma2 * state.nu), f"tau[{t}]")

    def update_global(self, state: ModelState):
        state.nu, _ = checked_half_cauchy(
            self.generator, state.nu, state.tot_term, state.sum_term_t2 / state.sigma2, "nu")

    def update_exposure_scales(self, state: ModelState):
        if not self.updates_exposures:
            return
        sigmanu = state.sigma2 * state.nu
        for i in range(state.n_exp):
            state.mu_exp[i], _ = checked_half_cauchy(
                self.generator, state.mu_exp[i], state.tot_term_exp[i],
                state.sum_term_t2_exp[i] / sigmanu, f"mu_exp[{i}]")
            if self.interaction == "none":
                continue
            for j in range(i, state.n_exp):
                if self.has_interaction(i, j):
                    state.mu_mix[j, i], _ = checked_half_cauchy(
                        self.generator, state.mu_mix[j, i], state.tot_term_mix[j, i],
                        state.sum_term_t2_mix[j, i] / sigmanu, f"mu_mix[{j}, {i}]")

    @staticmethod
    def past_warmup(iteration, n_burn):
        return iteration > min(1000, 0.5 * n_burn)

    def update_exposure_probs(self, state: ModelState, iteration, n_burn):
        if not self.past_warmup(iteration, n_burn):
            return
        if self.adaptive_kappa:
            self.update_kappa(state)
        state.exp_prob = r_dirichlet(self.generator, state.exp_count + state.kappa)

    def update_kappa(self, state: ModelState):
        """
        Independence Metropolis step for the Dirichlet concentration with a
        Gamma(1, 1) prior used as the proposal, so only the Dirichlet density
        of the current exposure probabilities enters the ratio.
        """
        proposal = self.generator.gamma(1.0, 1.0)
        ones = np.ones(state.n_exp)
        ratio = log_dirichlet_density(state.exp_prob, proposal * ones) \
            - log_dirichlet_density(state.exp_prob, state.kappa * ones)
        if np.log(self.generator.uniform(0, 1)) < ratio:
            state.kappa = float(proposal)
            self.kappa_accepted += 1
            LOGGER.debug("Dirichlet concentration moved to %.4f", state.kappa)
