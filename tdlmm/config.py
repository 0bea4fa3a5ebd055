"""
Validated run configuration for the TDLMM sampler.
"""
from typing import Dict, List, Literal, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

default_step_probs = {"grow": 0.25, "prune": 0.25, "change": 0.4, "switch": 0.1}


class TDLMMConfig(BaseModel):
    """
    Attributes:
        n_iter: post burn-in sweeps.
        n_burn: burn-in sweeps.
        n_thin: keep every n_thin-th post burn-in sweep.
        n_trees: number of tree pairs.
        step_probs: proposal probabilities for grow, prune, change and switch.
        tree_alpha, tree_beta: depth prior, p_split(d) = alpha * (1 + d) ** -beta.
        family: outcome family.
        interaction: "none", "distinct" (only pairs of different exposures) or "all".
        shrinkage: "none", "exposures", "trees" or "all".
        mix_prior: Dirichlet concentration for exposure selection; negative for adaptive.
        exp_prob, time_probs, split_probs: initial exposure-selection and split weights;
            uniform when omitted.
        diagnostics: keep a row per tree update.
        binomial_init: starting fixed-effect coefficients for the binomial family.
    """
    model_config = ConfigDict(extra="forbid")

    n_iter: int = Field(2000, ge=1)
    n_burn: int = Field(1000, ge=0)
    n_thin: int = Field(1, ge=1)
    n_trees: int = Field(20, ge=1)
    step_probs: Dict[str, float] = Field(default_factory=lambda: dict(default_step_probs))
    tree_alpha: float = Field(0.95, gt=0, lt=1)
    tree_beta: float = Field(2.0, ge=0)
    family: Literal["gaussian", "binomial", "zinb"] = "gaussian"
    interaction: Literal["none", "distinct", "all"] = "distinct"
    shrinkage: Literal["none", "exposures", "trees", "all"] = "exposures"
    mix_prior: float = 1.0
    exp_prob: Optional[List[float]] = None
    time_probs: Optional[List[float]] = None
    split_probs: Optional[List[float]] = None
    diagnostics: bool = False
    fixed_prior_precision: float = Field(0.01, gt=0)
    zinb_r_init: float = Field(5.0, gt=0)
    zinb_r_step: float = Field(0.2, gt=0)
    binomial_init: Optional[List[float]] = None

    @field_validator("step_probs")
    @classmethod
    def _check_step_probs(cls, v):
        if set(v) != set(default_step_probs):
            raise ValueError(f"step_probs needs exactly the keys {sorted(default_step_probs)}.")
        if any(p < 0 for p in v.values()):
            raise ValueError("step_probs must be non-negative.")
        if not np.isclose(sum(v.values()), 1.0):
            raise ValueError("step_probs must sum to 1.")
        if v["grow"] <= 0:
            raise ValueError("The grow probability must be positive.")
        # Fixed order: grow, prune, change, switch.
        return {k: float(v[k]) for k in default_step_probs}

    @field_validator("mix_prior")
    @classmethod
    def _check_mix_prior(cls, v):
        if v == 0:
            raise ValueError("mix_prior must be positive, or negative for an adaptive concentration.")
        return v

    @field_validator("exp_prob", "time_probs", "split_probs")
    @classmethod
    def _check_weights(cls, v):
        if v is not None and any(p < 0 for p in v):
            raise ValueError("Probability weights must be non-negative.")
        return v

    @model_validator(mode="after")
    def _check_records(self):
        if self.n_iter < self.n_thin:
            raise ValueError("n_iter must be at least n_thin so that a sweep is recorded.")
        return self

    @property
    def n_records(self):
        return self.n_iter // self.n_thin

    def resolve_exp_prob(self, n_exp):
        if self.exp_prob is None:
            return np.full(n_exp, 1.0 / n_exp)
        if len(self.exp_prob) != n_exp:
            raise ValueError(f"exp_prob has {len(self.exp_prob)} entries for {n_exp} exposures.")
        p = np.asarray(self.exp_prob, dtype=np.float64)
        return p / p.sum()

    def resolve_time_probs(self, n_lags):
        if self.time_probs is None:
            return np.full(max(n_lags - 1, 0), 1.0 / max(n_lags - 1, 1))
        if len(self.time_probs) != n_lags - 1:
            raise ValueError(f"time_probs needs {n_lags - 1} entries, got {len(self.time_probs)}.")
        return np.asarray(self.time_probs, dtype=np.float64)

    def resolve_split_probs(self, n_splits):
        if self.split_probs is None:
            return np.full(n_splits, 1.0 / max(n_splits, 1))
        if len(self.split_probs) != n_splits:
            raise ValueError(f"split_probs needs {n_splits} entries, got {len(self.split_probs)}.")
        return np.asarray(self.split_probs, dtype=np.float64)
