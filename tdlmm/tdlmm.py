from warnings import warn
from typing import Callable, Optional, Sequence

import numpy as np
import pandas as pd

from .config import TDLMMConfig
from .diagnostics import DiagnosticsLog
from .exposure import ExposureData
from .families import all_families
from .priors import ShrinkagePrior, TreePrior
from .samplers import TDLMMSampler
from .util import Dataset


class TDLMM:
    """
    API for the treed distributed-lag mixture model.

    Keyword arguments that are not given through `config` are forwarded to
    `TDLMMConfig`, e.g. ``TDLMM(n_iter=500, n_burn=500, n_trees=10)``.
    """
    def __init__(self, config: Optional[TDLMMConfig] = None, random_state=42, **kwargs):
        if config is not None and kwargs:
            raise ValueError("Pass either a config or keyword settings, not both.")
        self.config = config if config is not None else TDLMMConfig(**kwargs)
        self.random_state = random_state
        self.generator = np.random.default_rng(random_state)
        self.sampler: Optional[TDLMMSampler] = None
        self.log: Optional[DiagnosticsLog] = None
        self.state = None
        self.exposure_names = None
        self.data = None
        self.is_fitted = False

    def _family(self):
        cfg = self.config
        family_cls = all_families[cfg.family]
        if cfg.family == "zinb":
            return family_cls(cfg.fixed_prior_precision, r_init=cfg.zinb_r_init, r_step=cfg.zinb_r_step)
        if cfg.family == "binomial":
            return family_cls(cfg.fixed_prior_precision, init_params=cfg.binomial_init)
        return family_cls(cfg.fixed_prior_precision)

    def _build_sampler(self, exposures):
        cfg = self.config
        n_lags = exposures[0].n_lags
        if n_lags < 2 and exposures[0].n_splits == 0:
            warn("Exposures have a single lag and no value splits; trees cannot grow.")
        shrinkage_prior = ShrinkagePrior(cfg.shrinkage, cfg.interaction, cfg.mix_prior, self.generator)
        return TDLMMSampler(
            exposures=exposures,
            family=self._family(),
            tree_prior=TreePrior(cfg.tree_alpha, cfg.tree_beta),
            shrinkage_prior=shrinkage_prior,
            generator=self.generator,
            proposal_probs=cfg.step_probs,
            n_trees=cfg.n_trees,
            n_burn=cfg.n_burn,
            n_thin=cfg.n_thin,
            exp_prob=cfg.resolve_exp_prob(len(exposures)),
            split_probs=cfg.resolve_split_probs(exposures[0].n_splits),
            time_probs=cfg.resolve_time_probs(n_lags),
            diagnostics=cfg.diagnostics,
        )

    def fit(self, y, exposures: Sequence, Z=None, binomial_size=None, z_zi=None,
            split_values=None, exposure_names=None, quietly=False,
            interrupt: Optional[Callable[[], bool]] = None):
        """
        Fit the model.

        Parameters:
            y: outcome vector.
            exposures: sequence (or dict name -> array) of (n, n_lags) exposure histories.
            Z: fixed-effect design; an intercept column when omitted.
            binomial_size: trials per observation for the binomial family.
            z_zi: zero-inflation design for the zinb family; an intercept when omitted.
            split_values: exposure values at which the value axis may be split.
            quietly: suppress the progress bar.
            interrupt: zero-argument callable polled before every sweep.
        """
        if isinstance(exposures, dict):
            exposure_names = list(exposures.keys())
            exposures = list(exposures.values())
        self.data = Dataset(y, Z, binomial_size=binomial_size, z_zi=z_zi)
        if self.config.family != "binomial" and binomial_size is not None:
            warn("binomial_size is ignored for a non-binomial family.")
        self.exposure_names = exposure_names
        exposure_data = [ExposureData(x, self.data.Z, split_values, name=name)
                         for x, name in zip(exposures, exposure_names or [None] * len(exposures))]

        self.sampler = self._build_sampler(exposure_data)
        self.sampler.add_data(self.data)
        self.log = self.sampler.log
        self.state = self.sampler.run(self.config.n_iter + self.config.n_burn, quietly=quietly,
                                      interrupt=interrupt)
        self.is_fitted = True
        return self

    def _check_fitted(self):
        if not self.is_fitted:
            raise ValueError("Model must be fitted first.")

    @property
    def fhat(self):
        """Posterior mean of the exposure effect on the (pseudo-)outcome scale."""
        self._check_fitted()
        return self.log.fhat

    @property
    def gamma(self):
        """Posterior mean of the fixed-effect coefficients."""
        self._check_fitted()
        return self.log.trace_array("gamma").mean(axis=0)

    def trace(self, key):
        self._check_fitted()
        return self.log.trace_array(key)

    def frames(self) -> dict:
        self._check_fitted()
        return self.log.frames()

    def exposure_inclusion(self) -> pd.Series:
        """Share of recorded sweeps in which each exposure is used by at least one tree."""
        self._check_fitted()
        counts = self.log.trace_array("exp_count")
        index = self.exposure_names if self.exposure_names else range(counts.shape[1])
        return pd.Series((counts > 0).mean(axis=0), index=index)
