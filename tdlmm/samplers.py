import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import numpy as np
from tqdm import tqdm

from .diagnostics import DiagnosticsLog
from .exceptions import SamplerError, SamplingInterrupted, TDLMMError
from .families import Family, PairScratch
from .likelihood import mix_mhr, MHRResult
from .moves import all_moves, local_moves, Move
from .params import ModelState, SplitRule, Tree, TreePair
from .priors import ShrinkagePrior, TreePrior
from .util import Dataset, sample_int

LOGGER = logging.getLogger(__name__)

default_proposal_probs = {"grow": 0.25, "prune": 0.25, "change": 0.4, "switch": 0.1}
STEP_INDEX = {"grow": 0, "prune": 1, "change": 2, "switch": 3}


class Sampler(ABC):
    """
    Base class for the backfitting samplers.
    """
    def __init__(self, proposal_probs: dict, generator: np.random.Generator):
        """
        Parameters:
            proposal_probs (dict): Proposal probabilities per move, in draw order.
            generator (np.random.Generator): The single random stream for every draw.
        """
        self._data: Optional[Dataset] = None
        self.proposals = proposal_probs
        self.generator = generator
        self.n_iter = None

        self.move_selected_counts = {k: 0 for k in self.proposals}
        self.move_success_counts = {k: 0 for k in self.proposals}
        self.move_accepted_counts = {k: 0 for k in self.proposals}

    @property
    def data(self) -> Dataset:
        assert self._data, "Data has not been added yet."
        return self._data

    def add_data(self, data: Dataset):
        self._data = data

    def run(self, n_iter: int, progress_bar: bool = True, quietly: bool = False,
            interrupt: Optional[Callable[[], bool]] = None):
        """
        Run the sampler for `n_iter` sweeps from a fresh initial state.

        `interrupt` is polled at the top of every sweep; when it returns True
        the run stops with `SamplingInterrupted` and its state is discarded.
        """
        if quietly:
            progress_bar = False
        self.n_iter = n_iter
        current = self.get_init_state()

        iterator = tqdm(range(1, n_iter + 1), desc="Iterations") if progress_bar else range(1, n_iter + 1)
        for it in iterator:
            if interrupt is not None and interrupt():
                LOGGER.info("Sampling interrupted before iteration %d", it)
                raise SamplingInterrupted(it)
            current = self.one_iter(current, it)
        LOGGER.info("Finished %d iterations", n_iter)
        return current

    @abstractmethod
    def get_init_state(self) -> Any:
        pass

    @abstractmethod
    def one_iter(self, current, iteration) -> Any:
        pass


class _Proposal:
    """Candidate for one tree of a pair."""

    def __init__(self, step, exp, exp_var, mix_var):
        self.step = step
        self.success = 0
        self.step_mhr = 0.0
        self.new_vals = None
        self.new_exp = exp
        self.new_exp_var = exp_var
        self.new_mix_var = mix_var
        self.move: Optional[Move] = None


class TDLMMSampler(Sampler):
    """
    Backfitting sampler over tree pairs.

    Each sweep visits every tree pair in turn against the residual that
    excludes that pair's current fit, refits the nuisance parameters of the
    outcome family, then updates the shrinkage scales and the
    exposure-selection probabilities.
    """
    def __init__(self, exposures: list, family: Family, tree_prior: TreePrior,
                 shrinkage_prior: ShrinkagePrior, generator: np.random.Generator,
                 proposal_probs: Optional[dict] = None, n_trees: int = 20, n_burn: int = 0,
                 n_thin: int = 1, exp_prob=None, split_probs=None, time_probs=None,
                 diagnostics: bool = False, log: Optional[DiagnosticsLog] = None):
        if proposal_probs is None:
            proposal_probs = dict(default_proposal_probs)
        if list(proposal_probs) != list(STEP_INDEX):
            raise ValueError(f"proposal_probs must be given in the order {list(STEP_INDEX)}.")
        super().__init__(proposal_probs, generator)
        if len(exposures) == 0:
            raise ValueError("At least one exposure is required.")
        if len({e.n_lags for e in exposures}) != 1 or len({e.n_splits for e in exposures}) != 1:
            raise ValueError("All exposures must share the same lags and value splits.")
        self.exposures = exposures
        self.family = family
        self.tree_prior = tree_prior
        self.shrinkage_prior = shrinkage_prior
        if shrinkage_prior.generator is None:
            shrinkage_prior.generator = generator
        elif shrinkage_prior.generator is not generator:
            raise ValueError("The shrinkage prior must draw from the sampler's generator.")
        self.n_trees = n_trees
        self.n_burn = n_burn
        self.n_thin = n_thin
        self.step_probs = np.array(list(proposal_probs.values()), dtype=np.float64)
        n_exp = len(exposures)
        self.exp_prob = np.full(n_exp, 1.0 / n_exp) if exp_prob is None else np.asarray(exp_prob, dtype=np.float64)
        n_lags = exposures[0].n_lags
        n_splits = exposures[0].n_splits
        self.split_probs = np.full(n_splits, 1.0 / max(n_splits, 1)) if split_probs is None else split_probs
        self.time_probs = np.full(n_lags - 1, 1.0 / max(n_lags - 1, 1)) if time_probs is None else time_probs
        self.root_rule = SplitRule.root(n_lags, self.split_probs, self.time_probs)
        self.diagnostics = diagnostics
        self.log = log if log is not None else DiagnosticsLog()

    @property
    def n_exp(self):
        return len(self.exposures)

    def get_init_state(self) -> ModelState:
        if self._data is None:
            raise AttributeError("Need data before running sampler.")
        data = self.data
        for e in self.exposures:
            if e.n != data.n:
                raise ValueError("Every exposure needs one row per observation.")
        pairs = []
        for _ in range(self.n_trees):
            e1 = sample_int(self.generator, self.exp_prob)
            e2 = sample_int(self.generator, self.exp_prob)
            pairs.append(TreePair(
                Tree.new(self.root_rule, self.exposures[e1]),
                Tree.new(self.root_rule, self.exposures[e2]),
                e1, e2, data.n))
        state = ModelState(pairs, self.n_exp, data.n, data.p_z, self.exp_prob.copy(),
                           kappa=self.shrinkage_prior.kappa_init)
        self.family.initialize(state, data, self.generator)
        self.family.refit(state, data, self.generator)
        self.shrinkage_prior.init_scales(state)
        LOGGER.info("Initialized %d tree pairs over %d exposures (%s family)",
                    self.n_trees, self.n_exp, self.family.name)
        return state

    def one_iter(self, current: ModelState, iteration):
        """
        Perform one sweep over all tree pairs, then the global updates.
        """
        state = current
        state.iteration = iteration
        if iteration > self.n_burn and (iteration - self.n_burn) % self.n_thin == 0:
            state.record = (iteration - self.n_burn) // self.n_thin
        else:
            state.record = None

        state.residual = state.residual + state.pairs[0].fit
        state.reset_accumulators()
        for t in range(state.n_trees):
            try:
                self.tree_pair_step(t, state)
            except TDLMMError as err:
                LOGGER.error("Tree pair %d failed at iteration %d: %s", t, iteration, err)
                raise SamplerError(iteration, t, err) from err
            state.fhat = state.fhat + state.pairs[t].fit
            if t < state.n_trees - 1:
                state.residual = state.residual + state.pairs[t + 1].fit - state.pairs[t].fit

        state.residual = state.y_star - state.fhat
        state.sum_term_t2 = float(state.sum_term_t2_exp.sum())
        state.tot_term = float(state.tot_term_exp.sum())
        if self.shrinkage_prior.interaction != "none":
            state.sum_term_t2 += float(state.sum_term_t2_mix.sum())
            state.tot_term += float(state.tot_term_mix.sum())

        try:
            self.family.refit(state, self.data, self.generator)
            self.shrinkage_prior.update_global(state)
            self.shrinkage_prior.update_exposure_scales(state)
            self.shrinkage_prior.update_exposure_probs(state, iteration, self.n_burn)
        except TDLMMError as err:
            LOGGER.error("Global update failed at iteration %d: %s", iteration, err)
            raise SamplerError(iteration, None, err) from err

        if state.record is not None:
            self.log.add_record(self.record_values(state), state.fhat)
        if LOGGER.isEnabledFor(logging.DEBUG):
            LOGGER.debug("Iteration %d: sigma2=%.4g nu=%.4g terminal nodes=%d",
                         iteration, state.sigma2, state.nu, int(state.tot_term))
        return state

    def record_values(self, state: ModelState) -> dict:
        values = {
            "gamma": state.gamma,
            "sigma2": state.sigma2,
            "nu": state.nu,
            "tau": state.tau,
            "term_nodes": state.n_term,
            "term_nodes2": state.n_term2,
            "tree1_exp": state.tree1_exp,
            "tree2_exp": state.tree2_exp,
            "exp_prob": state.exp_prob,
            "exp_count": state.exp_count,
            "exp_inf": state.exp_inf,
            "mu_exp": state.mu_exp,
            "kappa": state.kappa,
        }
        mix_pairs = self.shrinkage_prior.mix_pairs(state.n_exp)
        if mix_pairs:
            rows, cols = zip(*mix_pairs)
            values["mu_mix"] = state.mu_mix[rows, cols]
            values["mix_inf"] = state.mix_inf[rows, cols]
            values["mix_count"] = state.mix_count[rows, cols]
        values.update(self.family.record_extras(state))
        return values

    def _propose(self, tree: Tree, exp, other_exp, state: ModelState, mix_var) -> _Proposal:
        """Draw a step for `tree` and stage the candidate (or build the switched tree)."""
        step = sample_int(self.generator, self.step_probs, 1)
        if tree.n_leaves == 1 and step < 3:
            step = 0
        move_key = list(STEP_INDEX)[step]
        self.move_selected_counts[move_key] += 1
        prop = _Proposal(step, exp, state.mu_exp[exp], mix_var)
        move = all_moves[move_key](tree, self.exposures, exp, self.tree_prior, exp_prob=state.exp_prob)
        prop.move = move
        if move.propose(self.generator):
            self.move_success_counts[move_key] += 1
            prop.success = 1
            prop.new_vals = move.proposed.terminal_vals
            if move_key in local_moves:
                prop.step_mhr = move.log_tran_ratio
            else:
                prop.new_exp = move.new_exp
                prop.new_exp_var = state.mu_exp[move.new_exp]
                prop.new_mix_var = self.shrinkage_prior.mix_var(state, move.new_exp, other_exp)
        return prop

    def _log_ratio(self, k, prop: _Proposal, mhr: MHRResult, mhr0: MHRResult,
                   tree_var, cur_var, mix_var, scratch):
        ratio = prop.step_mhr + mhr.log_v_theta_chol - mhr0.log_v_theta_chol + \
            self.family.log_data_ratio(mhr, mhr0, scratch)
        ratio -= 0.5 * (np.log(tree_var * prop.new_exp_var) * mhr.n_terms[k]
                        - np.log(tree_var * cur_var) * mhr0.n_terms[k])
        if prop.new_mix_var != 0:
            ratio -= 0.5 * np.log(tree_var * prop.new_mix_var) * mhr.n_term1 * mhr.n_term2
        if mix_var != 0:
            ratio += 0.5 * np.log(tree_var * mix_var) * mhr0.n_term1 * mhr0.n_term2
        return float(ratio)

    def tree_pair_step(self, t, state: ModelState):
        """
        Update both trees of pair `t`, redraw its coefficients and tau, and
        fold the pair into the sweep accumulators.
        """
        pair = state.pairs[t]
        tree_var = state.nu * state.tau[t]
        exps = list(pair.exps)
        exp_vars = [state.mu_exp[exps[0]], state.mu_exp[exps[1]]]
        mix_var = self.shrinkage_prior.mix_var(state, exps[0], exps[1])
        ztr = state.zw.T @ state.residual
        scratch = PairScratch(state, ztr)
        use_cache = self.family.uses_precision_cache
        mhr0 = None

        for k in (0, 1):
            tree = pair.trees[k]
            prop = self._propose(tree, exps[k], exps[1 - k], state, mix_var)
            if mhr0 is None:
                cache = pair.precision_cache if use_cache else None
                mhr0 = mix_mhr(pair.trees[0].terminal_vals, pair.trees[1].terminal_vals, state,
                               self.family, ztr, tree_var, exp_vars[0], exp_vars[1], mix_var,
                               self.generator, cache)
                if use_cache and cache is None:
                    pair.commit(mhr0.temp_v)

            ratio = np.nan
            if prop.success:
                vals = [pair.trees[0].terminal_vals, pair.trees[1].terminal_vals]
                vals[k] = prop.new_vals
                block_vars = list(exp_vars)
                block_vars[k] = prop.new_exp_var
                mhr = mix_mhr(vals[0], vals[1], state, self.family, ztr, tree_var,
                              block_vars[0], block_vars[1], prop.new_mix_var, self.generator)
                ratio = self._log_ratio(k, prop, mhr, mhr0, tree_var, exp_vars[k], mix_var, scratch)

                if np.log(self.generator.uniform(0, 1)) < ratio:
                    mhr0 = mhr
                    prop.success = 2
                    self.move_accepted_counts[list(STEP_INDEX)[prop.step]] += 1
                    if prop.step == 3:
                        exps[k] = prop.new_exp
                        exp_vars[k] = prop.new_exp_var
                        mix_var = prop.new_mix_var
                        tree.replace_node_vals(prop.move.proposed)
                    else:
                        tree.accept()
                    pair.commit(mhr0.temp_v if use_cache else None)
                else:
                    tree.reject()
            else:
                tree.reject()

            if self.diagnostics:
                self.log.add_tree_accept(k + 1, prop.step, prop.success, exps[k],
                                         tree.n_leaves, prop.step_mhr, ratio)

        pair.exps = exps
        self._update_pair_scales(t, state, mhr0, exps, exp_vars, mix_var)
        pair.fit = mhr0.xd @ mhr0.draw_all
        if state.record is not None:
            self._record_pair(t, state, mhr0, exps, exp_vars, mix_var)

    def _update_pair_scales(self, t, state, mhr0, exps, exp_vars, mix_var):
        m1, m2 = exps
        tau_t2 = mhr0.term1_t2 / exp_vars[0] + mhr0.term2_t2 / exp_vars[1]
        tot_term = mhr0.n_term1 + mhr0.n_term2
        if mix_var != 0:
            tau_t2 += mhr0.mix_t2 / mix_var
            tot_term += mhr0.n_term1 * mhr0.n_term2
        self.shrinkage_prior.update_tree_scale(state, t, tot_term, tau_t2)
        tau = state.tau[t]

        state.n_term[t] = mhr0.n_term1
        state.n_term2[t] = mhr0.n_term2
        state.exp_count[m1] += 1
        state.exp_count[m2] += 1
        state.exp_inf[m1] += tau
        state.exp_inf[m2] += tau
        state.tot_term_exp[m1] += mhr0.n_term1
        state.tot_term_exp[m2] += mhr0.n_term2
        state.sum_term_t2_exp[m1] += mhr0.term1_t2 / tau
        state.sum_term_t2_exp[m2] += mhr0.term2_t2 / tau
        if mix_var != 0:
            j, i = max(m1, m2), min(m1, m2)
            state.mix_count[j, i] += 1
            state.tot_term_mix[j, i] += mhr0.n_term1 * mhr0.n_term2
            state.sum_term_t2_mix[j, i] += mhr0.mix_t2 / tau
            state.mix_inf[j, i] += tau

    def _record_pair(self, t, state, mhr0, exps, exp_vars, mix_var):
        tau = state.tau[t]
        rules = [state.pairs[t].trees[0].terminal_rules, state.pairs[t].trees[1].terminal_rules]
        draws = [mhr0.draw1, mhr0.draw2]
        for k in (0, 1):
            for rule, est in zip(rules[k], draws[k]):
                self.log.add_dlm(state.record, t, k, exps[k], rule.xmin, rule.xmax,
                                 rule.tmin, rule.tmax, float(est), tau * exp_vars[k])
        if mix_var == 0:
            return
        m1, m2 = exps
        idx = 0
        for r1 in rules[0]:
            for r2 in rules[1]:
                a, b = (r1, r2) if m1 <= m2 else (r2, r1)
                self.log.add_mix(state.record, t, min(m1, m2), a.tmin, a.tmax,
                                 max(m1, m2), b.tmin, b.tmax, float(mhr0.draw_mix[idx]), tau * mix_var)
                idx += 1


all_samplers = {"tdlmm": TDLMMSampler}
