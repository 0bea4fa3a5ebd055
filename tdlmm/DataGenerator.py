import logging

import numpy as np

LOGGER = logging.getLogger(__name__)


class DataGenerator:
    """
    Simulated exposure histories and outcomes with a known distributed-lag effect.

    Each scenario returns a dict with the outcome `y`, the list of exposure
    histories `exposures` (each of shape (n_samples, n_lags)), the fixed-effect
    design `Z` (intercept plus one covariate) and the noiseless exposure
    effect `f`.
    """

    def __init__(self, n_samples=200, n_exposures=2, n_lags=10, noise=0.5, random_seed=None):
        """
        Args:
            n_samples (int): Number of observations.
            n_exposures (int): Number of exposure histories.
            n_lags (int): Number of lags per history.
            noise (float): Standard deviation of the Gaussian noise.
            random_seed (int): Random seed for reproducibility.
        """
        if n_exposures < 1 or n_lags < 1:
            raise ValueError("At least one exposure and one lag are required.")
        self.n_samples = n_samples
        self.n_exposures = n_exposures
        self.n_lags = n_lags
        self.noise = noise
        self.random_seed = random_seed
        self.rng = np.random.default_rng(random_seed)

    def _exposures(self):
        # Autocorrelated histories, standardized per exposure.
        out = []
        for _ in range(self.n_exposures):
            x = np.empty((self.n_samples, self.n_lags))
            x[:, 0] = self.rng.normal(size=self.n_samples)
            for t in range(1, self.n_lags):
                x[:, t] = 0.7 * x[:, t - 1] + np.sqrt(1 - 0.7 ** 2) * self.rng.normal(size=self.n_samples)
            out.append((x - x.mean()) / x.std())
        return out

    def _fixed_effects(self):
        Z = np.column_stack([np.ones(self.n_samples), self.rng.normal(size=self.n_samples)])
        gamma = np.array([0.5, 1.0])
        return Z, gamma

    def _window(self, lags):
        lo, hi = lags
        if not (0 <= lo <= hi < self.n_lags):
            raise ValueError(f"Lag window {lags} is outside 0..{self.n_lags - 1}.")
        return lo, hi

    def generate(self, scenario: str = "single", family: str = "gaussian", **kwargs) -> dict:
        """
        Generate data for a specific scenario and outcome family.

        Args:
            scenario (str): "single" (one exposure acts over a lag window) or
                "interaction" (additionally, two exposures interact).
            family (str): "gaussian", "binomial" or "zinb".
        """
        func = getattr(self, scenario, None)
        if scenario.startswith("_") or not callable(func) or scenario == "generate":
            raise NotImplementedError(f"No such a scenario supported: {scenario}")
        exposures, f = func(**kwargs)
        Z, gamma = self._fixed_effects()
        eta = f + Z @ gamma
        out = {"exposures": exposures, "Z": Z, "f": f, "gamma": gamma}
        if family == "gaussian":
            out["y"] = eta + self.rng.normal(0, self.noise, size=self.n_samples)
        elif family == "binomial":
            size = np.full(self.n_samples, 5.0)
            out["y"] = self.rng.binomial(size.astype(int), 1.0 / (1.0 + np.exp(-eta))).astype(float)
            out["binomial_size"] = size
        elif family == "zinb":
            out["y"] = self._zinb_outcome(eta)
        else:
            raise ValueError(f"Unknown family '{family}'.")
        LOGGER.debug("Generated scenario %s (%s), n=%d", scenario, family, self.n_samples)
        return out

    def _zinb_outcome(self, eta, r=5.0, zero_prob=0.2):
        # NB(r, p) with success probability expit(eta) in the Polya-Gamma parameterization.
        p = 1.0 / (1.0 + np.exp(-np.clip(eta, -10, 10)))
        lam = self.rng.gamma(r, p / (1.0 - p))
        y = self.rng.poisson(lam).astype(float)
        y[self.rng.uniform(size=self.n_samples) < zero_prob] = 0.0
        return y

    def single(self, lags=(3, 6), effect=1.0):
        exposures = self._exposures()
        lo, hi = self._window(lags)
        f = effect * exposures[0][:, lo:hi + 1].sum(axis=1) / (hi - lo + 1)
        return exposures, f

    def interaction(self, lags=(3, 6), effect=1.0, mix_effect=0.5):
        if self.n_exposures < 2:
            raise ValueError("The interaction scenario needs at least two exposures.")
        exposures = self._exposures()
        lo, hi = self._window(lags)
        a = exposures[0][:, lo:hi + 1].mean(axis=1)
        b = exposures[1][:, lo:hi + 1].mean(axis=1)
        f = effect * a + mix_effect * a * b
        return exposures, f
