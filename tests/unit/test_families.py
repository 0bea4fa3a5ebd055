import unittest
from types import SimpleNamespace

import numpy as np

from tdlmm.families import (Binary, Continuous, PairScratch, ZeroInflatedCount, all_families,
                            fixed_effect_posterior)
from tdlmm.params import ModelState
from tdlmm.util import Dataset


def _state(n, p_z):
    return ModelState([], 1, n, p_z, [1.0])


class TestFixedEffectPosterior(unittest.TestCase):

    def test_inverse_and_cholesky(self):
        rng = np.random.default_rng(0)
        Z = np.column_stack([np.ones(30), rng.normal(size=30)])
        vg, vg_chol = fixed_effect_posterior(Z, Z, 0.01)
        np.testing.assert_allclose(vg, np.linalg.inv(Z.T @ Z + 0.01 * np.eye(2)))
        np.testing.assert_allclose(vg_chol @ vg_chol.T, vg)
        self.assertEqual(vg_chol[0, 1], 0.0)


class TestContinuous(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(1)
        self.Z = np.column_stack([np.ones(100), rng.normal(size=100)])
        self.y = self.Z @ np.array([2.0, -1.0]) + rng.normal(0, 0.5, size=100)
        self.data = Dataset(self.y, self.Z)
        self.state = _state(100, 2)
        self.family = Continuous()
        self.family.initialize(self.state, self.data, rng)

    def test_initialize(self):
        np.testing.assert_allclose(self.state.y_star, self.y)
        np.testing.assert_allclose(self.state.residual, self.y)
        self.assertIs(self.state.zw, self.Z)

    def test_refit_recovers_noise_and_coefficients(self):
        rng = np.random.default_rng(2)
        sigma2, gamma = [], []
        for _ in range(300):
            self.family.refit(self.state, self.data, rng)
            sigma2.append(self.state.sigma2)
            gamma.append(self.state.gamma)
        self.assertAlmostEqual(np.mean(sigma2[50:]), 0.25, delta=0.08)
        np.testing.assert_allclose(np.mean(gamma[50:], axis=0), [2.0, -1.0], atol=0.2)

    def test_data_ratio(self):
        scratch = PairScratch(self.state, self.Z.T @ self.state.residual)
        same = self.family.log_data_ratio(SimpleNamespace(beta=1.0), SimpleNamespace(beta=1.0), scratch)
        self.assertEqual(same, 0.0)
        better = self.family.log_data_ratio(SimpleNamespace(beta=5.0), SimpleNamespace(beta=1.0), scratch)
        self.assertGreater(better, 0.0)

    def test_rss_fixed(self):
        r = self.state.residual
        ztr = self.Z.T @ r
        scratch = PairScratch(self.state, ztr)
        self.assertAlmostEqual(scratch.rss_fixed, float(r @ r - ztr @ self.state.vg @ ztr))


class TestBinary(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(3)
        self.n = 80
        self.size = np.full(self.n, 3.0)
        self.y = rng.binomial(3, 0.4, size=self.n).astype(float)
        self.data = Dataset(self.y, np.ones((self.n, 1)), binomial_size=self.size)

    def test_latents(self):
        state = _state(self.n, 1)
        family = Binary()
        family.initialize(state, self.data, np.random.default_rng(4))
        self.assertTrue(np.all(family.omega > 0))
        np.testing.assert_allclose(state.y_star, (self.y - 1.5) / family.omega)
        np.testing.assert_allclose(state.residual, state.y_star - state.fhat)
        np.testing.assert_allclose(state.zw, family.omega[:, None] * self.data.Z)

    def test_refit_moves_intercept(self):
        state = _state(self.n, 1)
        family = Binary()
        rng = np.random.default_rng(5)
        family.initialize(state, self.data, rng)
        draws = []
        for _ in range(300):
            family.refit(state, self.data, rng)
            draws.append(state.gamma[0])
        p_hat = self.y.sum() / self.size.sum()
        self.assertAlmostEqual(np.mean(draws[50:]), np.log(p_hat / (1 - p_hat)), delta=0.25)

    def test_init_params(self):
        state = _state(self.n, 1)
        Binary(init_params=[-0.4]).initialize(state, self.data, np.random.default_rng(6))
        np.testing.assert_allclose(state.gamma, [-0.4])
        with self.assertRaises(ValueError):
            Binary(init_params=[0.0, 1.0]).initialize(_state(self.n, 1), self.data, np.random.default_rng(6))

    def test_invalid_outcomes(self):
        data = Dataset(self.size + 1, np.ones((self.n, 1)), binomial_size=self.size)
        with self.assertRaises(ValueError):
            Binary().initialize(_state(self.n, 1), data, np.random.default_rng(0))

    def test_data_ratio(self):
        ratio = Binary().log_data_ratio(SimpleNamespace(beta=3.0), SimpleNamespace(beta=1.0), None)
        self.assertEqual(ratio, 1.0)


class TestZeroInflatedCount(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(6)
        self.n = 120
        y = rng.negative_binomial(5, 0.5, size=self.n).astype(float)
        y[rng.uniform(size=self.n) < 0.3] = 0.0
        self.y = y
        self.data = Dataset(y, np.ones((self.n, 1)))

    def test_refit(self):
        state = _state(self.n, 1)
        family = ZeroInflatedCount(r_init=5.0)
        rng = np.random.default_rng(7)
        family.initialize(state, self.data, rng)
        for _ in range(20):
            family.refit(state, self.data, rng)
        positive = np.flatnonzero(self.y > 0)
        self.assertTrue(np.all(np.isin(positive, family.nb_idx)))
        self.assertTrue(np.all(family.w[positive] == 0))
        self.assertGreater(family.r, 0)
        self.assertTrue(np.all(np.isfinite(state.gamma)))
        at_risk = np.zeros(self.n, dtype=bool)
        at_risk[family.nb_idx] = True
        self.assertTrue(np.all(state.zw[~at_risk] == 0))
        self.assertEqual(set(family.record_extras(state)), {"b1", "r", "w"})

    def test_rejects_non_counts(self):
        data = Dataset(np.full(self.n, 0.5), np.ones((self.n, 1)))
        with self.assertRaises(ValueError):
            ZeroInflatedCount().initialize(_state(self.n, 1), data, np.random.default_rng(0))


class TestRegistry(unittest.TestCase):

    def test_all_families(self):
        self.assertEqual(set(all_families), {"gaussian", "binomial", "zinb"})
        for name, cls in all_families.items():
            self.assertEqual(cls.name, name)
        self.assertTrue(Continuous.uses_precision_cache)
        self.assertFalse(Binary.uses_precision_cache)


if __name__ == "__main__":
    unittest.main()
