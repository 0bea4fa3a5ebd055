from dataclasses import dataclass
from typing import Optional

import numpy as np
from numba import njit


@dataclass(frozen=True)
class NodeVals:
    """Basis column of a terminal node and its cross-product with the fixed effects."""
    x: np.ndarray
    ztx: np.ndarray


@njit(cache=True)
def _count_in_cells(exposure, tmin, tmax, lo, hi):
    n = exposure.shape[0]
    out = np.zeros(n, dtype=np.float64)
    for i in range(n):
        c = 0.0
        for t in range(tmin, tmax + 1):
            v = exposure[i, t]
            if v > lo and v <= hi:
                c += 1.0
        out[i] = c
    return out


class ExposureData:
    """
    Precomputed basis for one exposure history.

    `exposure` holds one row per observation and one column per lag. A node
    covering lags [tmin, tmax] gets the column of lag-window sums, read off the
    row-wise cumulative sum. When `split_values` are given the exposure-value
    axis is split too: value cell k is (split_values[k-1], split_values[k]]
    with open ends, and a node covering cells [xmin, xmax) gets the number of
    lagged exposures that fall in those cells.
    """

    def __init__(self, exposure, fixed_effects, split_values: Optional[np.ndarray] = None, name=None):
        exposure = np.asarray(exposure, dtype=np.float64)
        if exposure.ndim != 2:
            raise ValueError("Exposure history must be a 2D array (n, n_lags).")
        fixed_effects = np.asarray(fixed_effects, dtype=np.float64)
        if fixed_effects.shape[0] != exposure.shape[0]:
            raise ValueError("Exposure and fixed effects must have the same number of rows.")
        self.exposure = exposure
        self.Z = fixed_effects
        self.name = name
        self.cumsum = np.hstack([np.zeros((exposure.shape[0], 1)), np.cumsum(exposure, axis=1)])
        self.split_values = None if split_values is None else np.sort(np.asarray(split_values, dtype=np.float64))
        self._cache = {}

    @property
    def n(self):
        return self.exposure.shape[0]

    @property
    def n_lags(self):
        return self.exposure.shape[1]

    @property
    def n_splits(self):
        return 0 if self.split_values is None else len(self.split_values)

    def _cell_bounds(self, xmin, xmax):
        lo = -np.inf if xmin == 0 else self.split_values[xmin - 1]
        hi = np.inf if xmax == self.n_splits + 1 else self.split_values[xmax - 1]
        return lo, hi

    def basis_column(self, rule) -> NodeVals:
        key = (rule.xmin, rule.xmax, rule.tmin, rule.tmax)
        vals = self._cache.get(key)
        if vals is not None:
            return vals
        if not (0 <= rule.tmin <= rule.tmax < self.n_lags):
            raise ValueError(f"Lag window [{rule.tmin}, {rule.tmax}] is outside 0..{self.n_lags - 1}.")
        if self.split_values is None:
            x = self.cumsum[:, rule.tmax + 1] - self.cumsum[:, rule.tmin]
        else:
            lo, hi = self._cell_bounds(rule.xmin, rule.xmax)
            x = _count_in_cells(self.exposure, rule.tmin, rule.tmax, lo, hi)
        vals = NodeVals(x=x, ztx=self.Z.T @ x)
        self._cache[key] = vals
        return vals
