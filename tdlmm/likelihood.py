"""
Marginal likelihood and coefficient draw for one tree pair.

For the terminal nodes of two trees (and, when an interaction scale is set,
all products of their columns) the local design `Xd` is assembled and the
fixed effects are integrated out:

    V^-1  = Xd' W Xd - (Z_w' Xd)' V_g (Z_w' Xd) + diag(1 / (tree_var * block_var))
    theta = V (Xd' W R - (V_g Z_w' Xd)' Z_w' R)

A draw theta + chol(V) * N(0, sigma2) is returned together with the sufficient
statistics the Metropolis-Hastings ratio needs.
"""
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
from scipy.linalg import cholesky, cho_solve, LinAlgError

from .exceptions import NonPositiveDefiniteError


@dataclass
class MHRResult:
    xd: np.ndarray
    temp_v: np.ndarray
    draw_all: np.ndarray
    draw1: np.ndarray
    draw2: np.ndarray
    draw_mix: np.ndarray = field(default_factory=lambda: np.zeros(0))
    term1_t2: float = 0.0
    term2_t2: float = 0.0
    mix_t2: float = 0.0
    n_term1: int = 0
    n_term2: int = 0
    log_v_theta_chol: float = 0.0
    beta: float = 0.0

    @property
    def pxd(self):
        return self.xd.shape[1]

    @property
    def n_terms(self):
        return (self.n_term1, self.n_term2)


def _cholesky_lower(a, what):
    try:
        return cholesky(a, lower=True)
    except LinAlgError as err:
        raise NonPositiveDefiniteError(what, a.shape[0]) from err


def mix_mhr(vals1, vals2, state, family, ztr, tree_var, m1_var, m2_var, mix_var,
            generator, cache: Optional[np.ndarray] = None) -> MHRResult:
    """
    Evaluate the local design of a tree pair.

    Parameters:
        vals1, vals2: terminal `NodeVals` of tree 1 and tree 2 (in leaf order).
        state: ModelState with the fixed-effect posterior and residual.
        family: outcome family supplying the weighted cross-products.
        ztr: Z_w' R for the current residual.
        tree_var: nu * tau for this pair.
        m1_var, m2_var, mix_var: exposure and interaction scales; mix_var == 0
            means no interaction block.
        generator: np.random.Generator for the coefficient draw.
        cache: unweighted precision to reuse when neither tree changed.
    """
    p1 = len(vals1)
    p2 = len(vals2)
    if p1 == 0 or p2 == 0:
        raise ValueError("Both trees need at least one terminal node.")
    n = state.residual.shape[0]
    if state.vg.shape[0] != ztr.shape[0]:
        raise ValueError(f"Z'R has length {ztr.shape[0]}, expected {state.vg.shape[0]}.")
    interaction = mix_var != 0
    pxd = p1 + p2 + (p1 * p2 if interaction else 0)

    xd = np.empty((n, pxd))
    ztx = np.empty((state.vg.shape[0], pxd))
    diag_var = np.empty(pxd)
    for i, nv in enumerate(vals1):
        if nv.x.shape[0] != n:
            raise ValueError("Basis column length does not match the residual.")
        xd[:, i] = nv.x
        ztx[:, i] = family.fixed_cross(nv, state)
        diag_var[i] = 1.0 / (m1_var * tree_var)
    for j, nv in enumerate(vals2):
        if nv.x.shape[0] != n:
            raise ValueError("Basis column length does not match the residual.")
        k = p1 + j
        xd[:, k] = nv.x
        ztx[:, k] = family.fixed_cross(nv, state)
        diag_var[k] = 1.0 / (m2_var * tree_var)
    if interaction:
        k = p1 + p2
        mix = (xd[:, :p1, None] * xd[:, None, p1:p1 + p2]).reshape(n, p1 * p2)
        xd[:, k:] = mix
        ztx[:, k:] = state.zw.T @ mix
        diag_var[k:] = 1.0 / (mix_var * tree_var)

    vg_ztx = state.vg @ ztx
    temp_v, xtr = family.weighted_stats(xd, ztx, vg_ztx, state.residual, state, cache)
    xtr = xtr - vg_ztx.T @ ztr

    precision = temp_v + np.diag(diag_var)
    prec_chol = _cholesky_lower(precision, "posterior precision")
    v_theta = cho_solve((prec_chol, True), np.eye(pxd))
    v_theta_chol = _cholesky_lower(v_theta, "posterior covariance")

    theta_hat = v_theta @ xtr
    draw = theta_hat + v_theta_chol @ generator.normal(0.0, np.sqrt(state.sigma2), size=pxd)

    draw1 = draw[:p1]
    draw2 = draw[p1:p1 + p2]
    out = MHRResult(
        xd=xd,
        temp_v=temp_v,
        draw_all=draw,
        draw1=draw1,
        draw2=draw2,
        term1_t2=float(draw1 @ draw1),
        term2_t2=float(draw2 @ draw2),
        n_term1=p1,
        n_term2=p2,
        log_v_theta_chol=float(np.log(np.diag(v_theta_chol)).sum()),
        beta=float(theta_hat @ xtr),
    )
    if interaction:
        out.draw_mix = draw[p1 + p2:]
        out.mix_t2 = float(out.draw_mix @ out.draw_mix)
    return out
