import math

import numpy as np
from numba import njit
from scipy.special import gammaln


# For faster random sampling
def fast_choice(generator, array):
    """Fast random selection from an array."""
    len_arr = len(array)
    if len_arr == 1:
        return array[0]
    return array[generator.integers(0, len_arr)]


@njit(cache=True)
def _scan_cumulative(probs, u):
    i = 0
    cum = probs[0]
    last = len(probs) - 1
    while cum < u and i < last:
        i += 1
        cum += probs[i]
    return i


def sample_int(generator, probs, tot_p=None):
    """
    Draw an index from a (possibly unnormalized) probability vector.

    A single uniform on [0, tot_p) is drawn and the cumulative sums are scanned
    linearly. `tot_p` defaults to the sum of `probs`; passing 1 for a vector
    that already sums to one keeps the draw identical to the normalized case.
    """
    probs = np.asarray(probs, dtype=np.float64)
    if probs.size == 0:
        raise ValueError("Cannot sample from an empty probability vector.")
    if tot_p is None:
        tot_p = float(probs.sum())
    u = generator.uniform(0.0, tot_p)
    return int(_scan_cumulative(probs, float(u)))


@njit(cache=True)
def _intersect_and_diff(orig, new):
    inter = np.empty(len(orig), dtype=np.int64)
    diff = np.empty(len(orig), dtype=np.int64)
    i = 0
    j = 0
    n_inter = 0
    n_diff = 0
    while i < len(orig):
        if j >= len(new) or orig[i] < new[j]:
            diff[n_diff] = orig[i]
            n_diff += 1
            i += 1
        elif orig[i] > new[j]:
            j += 1
        else:
            inter[n_inter] = orig[i]
            n_inter += 1
            i += 1
            j += 1
    return inter[:n_inter], diff[:n_diff]


def intersect_and_diff(orig_vec, new_vec):
    """
    Split sorted `orig_vec` into the elements also found in sorted `new_vec`
    and the elements that are not.

    Returns:
        (intersection, difference), both sorted int64 arrays.
    """
    orig = np.asarray(orig_vec, dtype=np.int64)
    new = np.asarray(new_vec, dtype=np.int64)
    return _intersect_and_diff(orig, new)


def log_p_split(alpha, beta, depth, terminal=False):
    """Log prior probability that a node at `depth` splits (or stays terminal)."""
    p = alpha * (1.0 + depth) ** (-beta)
    if terminal:
        return math.log1p(-p)
    return math.log(p)


def log_dirichlet_density(x, alpha):
    x = np.asarray(x, dtype=np.float64)
    alpha = np.asarray(alpha, dtype=np.float64)
    if x.shape != alpha.shape:
        raise ValueError(
            f"Dirichlet density needs matching sizes, got {x.shape} and {alpha.shape}."
        )
    with np.errstate(divide="ignore"):
        log_x = np.log(x)
    return float(gammaln(alpha.sum()) - gammaln(alpha).sum() + np.sum((alpha - 1.0) * log_x))


def r_dirichlet(generator, alpha):
    """Dirichlet draw by normalizing independent Gamma(alpha_i, 1) variates."""
    g = generator.gamma(np.asarray(alpha, dtype=np.float64), 1.0)
    return g / g.sum()


def r_half_cauchy_fc(generator, x2, a, b):
    """
    One Gibbs update of a variance with a half-Cauchy(0, 1) prior on its square root.

    Uses the inverse-gamma mixture representation: the latent `y_inv` is drawn
    from Gamma(1, scale=x2 / (x2 + 1)) and then
    x2 ~ InvGamma((a + 1) / 2, rate=b / 2 + y_inv), where `a` is the number of
    terms and `b` the scaled sum of squares. Works elementwise on arrays.

    Returns:
        (x2, y_inv)
    """
    x2 = np.asarray(x2, dtype=np.float64)
    y_inv = generator.gamma(1.0, x2 / (x2 + 1.0))
    with np.errstate(divide="ignore"):
        scale = 2.0 / (np.float64(b) + 2.0 * np.asarray(y_inv))
        x2_new = 1.0 / generator.gamma(0.5 * (a + 1.0), scale)
    if np.ndim(x2_new) == 0:
        return float(x2_new), float(y_inv)
    return x2_new, y_inv


class Dataset:

    def __init__(self, y, Z=None, binomial_size=None, z_zi=None):
        self.y = np.asarray(y, dtype=np.float64)
        if Z is None:
            Z = np.ones((self.y.shape[0], 1))
        self.Z = np.asarray(Z, dtype=np.float64)
        if self.Z.ndim == 1:
            self.Z = self.Z.reshape(-1, 1)
        if self.Z.shape[0] != self.y.shape[0]:
            raise ValueError("Z must have one row per observation.")
        self.binomial_size = None if binomial_size is None else np.asarray(binomial_size, dtype=np.float64)
        self.z_zi = None if z_zi is None else np.asarray(z_zi, dtype=np.float64)

    @property
    def n(self):
        return self.y.shape[0]

    @property
    def p_z(self):
        return self.Z.shape[1]
