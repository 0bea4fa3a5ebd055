import logging
from abc import ABC, abstractmethod
from functools import cached_property

import numpy as np
from polyagamma import random_polyagamma
from scipy.linalg import cholesky, cho_solve, LinAlgError
from scipy.special import expit, gammaln, log_expit

from .exceptions import NonPositiveDefiniteError
from .params import ModelState
from .priors import checked_half_cauchy
from .util import Dataset, intersect_and_diff

LOGGER = logging.getLogger(__name__)


def fixed_effect_posterior(Z, Zw, prior_precision):
    """Return (V_g, chol(V_g)) for V_g = (Z' Zw + prior_precision * I)^-1."""
    p = Z.shape[1]
    vg_inv = Z.T @ Zw
    vg_inv[np.diag_indices(p)] += prior_precision
    try:
        c = cholesky(vg_inv, lower=True)
        vg = cho_solve((c, True), np.eye(p))
        return vg, cholesky(vg, lower=True)
    except LinAlgError as err:
        raise NonPositiveDefiniteError("fixed-effect precision", p) from err


class PairScratch:
    """Quantities shared by both tree updates of one tree pair."""

    def __init__(self, state: ModelState, ztr: np.ndarray):
        self.state = state
        self.ztr = ztr

    @cached_property
    def rss_fixed(self):
        """R'R - R'Z V_g Z'R, computed on first use."""
        r = self.state.residual
        return float(r @ r - self.ztr @ self.state.vg @ self.ztr)


class Family(ABC):
    """
    Outcome family: how the local design is weighted, the data part of the
    Metropolis-Hastings ratio, and the once-per-sweep nuisance refit.
    """
    name = ""
    uses_precision_cache = False

    def __init__(self, prior_precision=0.01):
        self.prior_precision = prior_precision

    def initialize(self, state: ModelState, data: Dataset, generator):
        state.zw = data.Z
        state.vg, state.vg_chol = fixed_effect_posterior(data.Z, data.Z, self.prior_precision)
        state.y_star = data.y.astype(np.float64).copy()
        state.residual = state.y_star.copy()

    def fixed_cross(self, node_vals, state: ModelState):
        return state.zw.T @ node_vals.x

    def draw_gamma(self, state: ModelState, generator, sd=1.0):
        ztr = state.zw.T @ state.residual
        state.gamma = state.vg @ ztr + state.vg_chol @ generator.normal(0.0, sd, size=ztr.shape[0])

    @abstractmethod
    def weighted_stats(self, xd, ztx, vg_ztx, residual, state: ModelState, cache=None):
        """Return (unweighted-prior precision, Xd' W R)."""
        pass

    @abstractmethod
    def log_data_ratio(self, mhr, mhr0, scratch: PairScratch) -> float:
        pass

    @abstractmethod
    def refit(self, state: ModelState, data: Dataset, generator):
        pass

    def record_extras(self, state: ModelState) -> dict:
        return {}


class Continuous(Family):
    """Gaussian outcome with a half-Cauchy prior on the residual standard deviation."""
    name = "gaussian"
    uses_precision_cache = True

    def fixed_cross(self, node_vals, state):
        return node_vals.ztx

    def weighted_stats(self, xd, ztx, vg_ztx, residual, state, cache=None):
        if cache is None:
            temp_v = xd.T @ xd - ztx.T @ vg_ztx
        else:
            if cache.shape != (xd.shape[1], xd.shape[1]):
                raise ValueError(f"Cached precision has shape {cache.shape}, expected {(xd.shape[1],) * 2}.")
            temp_v = cache
        return temp_v, xd.T @ residual

    def log_data_ratio(self, mhr, mhr0, scratch):
        state = scratch.state
        n = state.residual.shape[0]
        s = scratch.rss_fixed
        return -0.5 * (n + 1.0) * (
            np.log(0.5 * (s - mhr.beta) + state.xi_inv_sigma2)
            - np.log(0.5 * (s - mhr0.beta) + state.xi_inv_sigma2))

    def refit(self, state, data, generator):
        r = state.residual
        ztr = state.zw.T @ r
        rss = float(r @ r - ztr @ state.vg @ ztr) + state.sum_term_t2 / state.nu
        state.sigma2, state.xi_inv_sigma2 = checked_half_cauchy(
            generator, state.sigma2, data.n + state.tot_term, rss, "sigma2")
        self.draw_gamma(state, generator, sd=np.sqrt(state.sigma2))


class Binary(Family):
    """
    Binomial outcome with logit link, through Polya-Gamma augmentation:
    omega ~ PG(size, eta) and pseudo-outcome (y - size / 2) / omega.
    """
    name = "binomial"
    latent_prior_precision = 1e-5

    def __init__(self, prior_precision=0.01, init_params=None):
        super().__init__(prior_precision)
        self.init_params = init_params

    def initialize(self, state, data, generator):
        super().initialize(state, data, generator)
        size = data.binomial_size if data.binomial_size is not None else np.ones(data.n)
        if np.any(size <= 0):
            raise ValueError("Binomial sizes must be positive.")
        if np.any(data.y < 0) or np.any(data.y > size):
            raise ValueError("Binomial outcomes must lie in [0, size].")
        self.size = size
        self.kappa = data.y - 0.5 * size
        if self.init_params is not None:
            if len(self.init_params) != data.p_z:
                raise ValueError(f"init_params has {len(self.init_params)} entries for {data.p_z} fixed effects.")
            state.gamma = np.asarray(self.init_params, dtype=np.float64)
        self._update_latents(state, data, generator)

    def _update_latents(self, state, data, generator):
        eta = state.fhat + data.Z @ state.gamma
        self.omega = random_polyagamma(self.size, eta, random_state=generator)
        state.zw = self.omega[:, None] * data.Z
        state.vg, state.vg_chol = fixed_effect_posterior(data.Z, state.zw, self.latent_prior_precision)
        state.y_star = self.kappa / self.omega
        state.residual = state.y_star - state.fhat

    def weighted_stats(self, xd, ztx, vg_ztx, residual, state, cache=None):
        xdw = self.omega[:, None] * xd
        return xdw.T @ xd - ztx.T @ vg_ztx, xdw.T @ residual

    def log_data_ratio(self, mhr, mhr0, scratch):
        return 0.5 * (mhr.beta - mhr0.beta)

    def refit(self, state, data, generator):
        self.draw_gamma(state, generator)
        self._update_latents(state, data, generator)


class ZeroInflatedCount(Family):
    """
    Zero-inflated negative binomial outcome.

    A logistic component (design `z_zi`, coefficients `b1`) marks structural
    zeros; the remaining observations follow NB(r, expit(eta)) with
    eta = fhat + Z gamma. Both components use Polya-Gamma augmentation and the
    count part only sees the at-risk observations `nb_idx`.
    """
    name = "zinb"

    def __init__(self, prior_precision=0.01, r_init=5.0, r_step=0.2):
        super().__init__(prior_precision)
        self.r = r_init
        self.r_step = r_step
        self.r_accepted = 0

    def initialize(self, state, data, generator):
        y = data.y
        if np.any(y < 0) or np.any(y != np.round(y)):
            raise ValueError("Counts must be non-negative integers.")
        super().initialize(state, data, generator)
        n = data.n
        self.y = y
        self.z_zi = data.z_zi if data.z_zi is not None else np.ones((n, 1))
        self.zero_idx = np.flatnonzero(y == 0)
        self.pos_idx = np.flatnonzero(y > 0)
        self.nb_idx = self.pos_idx.copy()
        self.w = np.where(y == 0, 0.5, 0.0)
        self.omega1 = np.ones(n)
        self.omega2 = np.ones(n)
        self.b1 = generator.normal(0.0, 10.0, size=self.z_zi.shape[1])
        state.gamma = generator.normal(0.0, 10.0, size=data.p_z)
        self._update_count_design(state, data)

    def _update_count_design(self, state, data):
        mask = np.zeros(data.n)
        mask[self.nb_idx] = 1.0
        state.zw = (self.omega2 * mask)[:, None] * data.Z
        state.vg, state.vg_chol = fixed_effect_posterior(data.Z, state.zw, self.prior_precision)
        state.y_star = 0.5 * (self.y - self.r) / self.omega2
        state.residual = state.y_star - state.fhat

    def weighted_stats(self, xd, ztx, vg_ztx, residual, state, cache=None):
        xs = xd[self.nb_idx]
        xdw = self.omega2[self.nb_idx, None] * xs
        return xdw.T @ xs - ztx.T @ vg_ztx, xdw.T @ residual[self.nb_idx]

    def log_data_ratio(self, mhr, mhr0, scratch):
        return 0.5 * (mhr.beta - mhr0.beta)

    def _nb_loglik(self, r, eta):
        y = self.y[self.nb_idx]
        e = eta[self.nb_idx]
        return float(np.sum(gammaln(y + r) - gammaln(r) + r * log_expit(-e) + y * log_expit(e)))

    def _update_zero_inflation(self, generator):
        psi1 = self.z_zi @ self.b1
        self.omega1 = random_polyagamma(1.0, psi1, random_state=generator)
        zw1 = self.omega1[:, None] * self.z_zi
        v1, v1_chol = fixed_effect_posterior(self.z_zi, zw1, self.prior_precision)
        kappa1 = self.w - 0.5
        self.b1 = v1 @ (self.z_zi.T @ kappa1) + v1_chol @ generator.normal(0.0, 1.0, size=self.z_zi.shape[1])

    def _update_at_risk(self, eta, generator):
        pi = expit(self.z_zi @ self.b1)
        p_nb_zero = np.exp(self.r * log_expit(-eta))
        prob = pi / (pi + (1.0 - pi) * p_nb_zero)
        structural = generator.uniform(size=len(self.zero_idx)) < prob[self.zero_idx]
        self.w = np.zeros(len(self.y))
        self.w[self.zero_idx[structural]] = 1.0
        _, at_risk_zeros = intersect_and_diff(self.zero_idx, self.zero_idx[structural])
        self.nb_idx = np.union1d(self.pos_idx, at_risk_zeros)

    def _update_dispersion(self, eta, generator):
        # Log-scale random walk, flat prior on r > 0.
        proposal = self.r * np.exp(self.r_step * generator.normal())
        ratio = self._nb_loglik(proposal, eta) - self._nb_loglik(self.r, eta) \
            + np.log(proposal) - np.log(self.r)
        if np.log(generator.uniform(0, 1)) < ratio:
            self.r = float(proposal)
            self.r_accepted += 1

    def refit(self, state, data, generator):
        eta = state.fhat + data.Z @ state.gamma
        self._update_zero_inflation(generator)
        self._update_at_risk(eta, generator)
        self._update_dispersion(eta, generator)
        self.omega2 = np.ones(data.n)
        if len(self.nb_idx) > 0:
            self.omega2[self.nb_idx] = random_polyagamma(
                self.y[self.nb_idx] + self.r, eta[self.nb_idx], random_state=generator)
        self._update_count_design(state, data)
        self.draw_gamma(state, generator)
        LOGGER.debug("ZINB refit: r=%.4f, %d of %d observations at risk", self.r, len(self.nb_idx), data.n)

    def record_extras(self, state):
        return {"b1": self.b1.copy(), "r": self.r, "w": self.w.copy()}


all_families = {"gaussian": Continuous,
                "binomial": Binary,
                "zinb": ZeroInflatedCount}
