import unittest
from unittest.mock import MagicMock

import numpy as np

from tdlmm.exceptions import NonPositiveDefiniteError
from tdlmm.exposure import ExposureData
from tdlmm.families import Binary, Continuous
from tdlmm.likelihood import mix_mhr
from tdlmm.params import ModelState, SplitRule, Tree, T_AXIS
from tdlmm.util import Dataset


def _zero_normal_generator():
    gen = MagicMock()
    gen.normal.side_effect = lambda loc, scale, size: np.zeros(size)
    return gen


def _dense_reference(X, W, Zw, vg, r, diag_var):
    P = X.T @ (W[:, None] * X) - X.T @ Zw @ vg @ Zw.T @ X + np.diag(diag_var)
    xtr = X.T @ (W * r) - X.T @ Zw @ vg @ (Zw.T @ r)
    theta = np.linalg.solve(P, xtr)
    return P, xtr, theta


class TestMixMHR(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(0)
        self.n = 40
        self.Z = np.column_stack([np.ones(self.n), rng.normal(size=self.n)])
        self.y = rng.normal(size=self.n)
        self.data = Dataset(self.y, self.Z)
        self.exposures = [ExposureData(rng.normal(size=(self.n, 5)), self.Z),
                          ExposureData(rng.normal(size=(self.n, 5)), self.Z)]
        root = SplitRule.root(5, np.zeros(0), np.full(4, 0.25))
        t1 = Tree.new(root)
        t1.split_leaf(0, T_AXIS, 2)
        t1.update_node_vals(self.exposures[0])
        t2 = Tree.new(root)
        t2.split_leaf(0, T_AXIS, 3)
        t2.update_node_vals(self.exposures[1])
        self.vals1, self.vals2 = t1.terminal_vals, t2.terminal_vals
        self.state = ModelState([], 2, self.n, 2, [0.5, 0.5])
        self.family = Continuous()
        self.family.initialize(self.state, self.data, rng)
        self.state.sigma2 = 1.3
        self.ztr = self.state.zw.T @ self.state.residual

    def _design(self, interaction):
        cols = [v.x for v in self.vals1] + [v.x for v in self.vals2]
        if interaction:
            cols += [a.x * b.x for a in self.vals1 for b in self.vals2]
        return np.column_stack(cols)

    def test_matches_dense_reference(self):
        tree_var, m1, m2 = 0.7, 1.5, 0.5
        out = mix_mhr(self.vals1, self.vals2, self.state, self.family, self.ztr, tree_var, m1, m2, 0.0,
                      _zero_normal_generator())
        X = self._design(False)
        diag_var = np.array([1 / (tree_var * m1)] * 2 + [1 / (tree_var * m2)] * 2)
        P, xtr, theta = _dense_reference(X, np.ones(self.n), self.Z, self.state.vg, self.state.residual, diag_var)

        self.assertEqual(out.pxd, 4)
        self.assertEqual(out.n_terms, (2, 2))
        np.testing.assert_allclose(out.draw_all, theta, rtol=1e-8, atol=1e-10)
        self.assertAlmostEqual(out.beta, float(theta @ xtr), places=8)
        self.assertAlmostEqual(out.log_v_theta_chol, -0.5 * np.linalg.slogdet(P)[1], places=8)
        self.assertAlmostEqual(out.term1_t2, float(theta[:2] @ theta[:2]), places=8)
        self.assertEqual(len(out.draw_mix), 0)

    def test_interaction_block(self):
        tree_var, m1, m2, mv = 0.7, 1.5, 0.5, 2.0
        out = mix_mhr(self.vals1, self.vals2, self.state, self.family, self.ztr, tree_var, m1, m2, mv,
                      _zero_normal_generator())
        X = self._design(True)
        diag_var = np.array([1 / (tree_var * m1)] * 2 + [1 / (tree_var * m2)] * 2 + [1 / (tree_var * mv)] * 4)
        _, _, theta = _dense_reference(X, np.ones(self.n), self.Z, self.state.vg, self.state.residual, diag_var)

        self.assertEqual(out.pxd, 8)
        np.testing.assert_allclose(out.xd, X)
        np.testing.assert_allclose(out.draw_mix, theta[4:], rtol=1e-8, atol=1e-10)
        self.assertAlmostEqual(out.mix_t2, float(theta[4:] @ theta[4:]), places=8)

    def test_cache_reuse(self):
        gen = _zero_normal_generator()
        fresh = mix_mhr(self.vals1, self.vals2, self.state, self.family, self.ztr, 1.0, 1.0, 1.0, 0.0, gen)
        cached = mix_mhr(self.vals1, self.vals2, self.state, self.family, self.ztr, 1.0, 1.0, 1.0, 0.0, gen,
                         cache=fresh.temp_v)
        np.testing.assert_allclose(cached.draw_all, fresh.draw_all)
        self.assertAlmostEqual(cached.log_v_theta_chol, fresh.log_v_theta_chol)
        with self.assertRaises(ValueError):
            mix_mhr(self.vals1, self.vals2, self.state, self.family, self.ztr, 1.0, 1.0, 1.0, 0.0, gen,
                    cache=np.eye(3))

    def test_draw_scale(self):
        gen = MagicMock()
        gen.normal.side_effect = lambda loc, scale, size: np.zeros(size)
        mix_mhr(self.vals1, self.vals2, self.state, self.family, self.ztr, 1.0, 1.0, 1.0, 0.0, gen)
        args, kwargs = gen.normal.call_args
        self.assertAlmostEqual(args[1], np.sqrt(1.3))
        self.assertEqual(kwargs["size"], 4)

    def test_not_positive_definite(self):
        with self.assertRaises(NonPositiveDefiniteError):
            mix_mhr(self.vals1, self.vals2, self.state, self.family, self.ztr, 1.0, -1e-6, 1.0, 0.0,
                    _zero_normal_generator())

    def test_empty_tree(self):
        with self.assertRaises(ValueError):
            mix_mhr([], self.vals2, self.state, self.family, self.ztr, 1.0, 1.0, 1.0, 0.0,
                    _zero_normal_generator())

    def test_weighted_family(self):
        rng = np.random.default_rng(3)
        y = rng.integers(0, 2, size=self.n).astype(float)
        data = Dataset(y, self.Z)
        state = ModelState([], 2, self.n, 2, [0.5, 0.5])
        family = Binary()
        family.initialize(state, data, rng)
        ztr = state.zw.T @ state.residual
        out = mix_mhr(self.vals1, self.vals2, state, family, ztr, 0.5, 1.0, 1.0, 0.0, _zero_normal_generator())
        X = self._design(False)
        _, xtr, theta = _dense_reference(X, family.omega, state.zw, state.vg, state.residual, np.full(4, 2.0))
        np.testing.assert_allclose(out.draw_all, theta, rtol=1e-7, atol=1e-9)
        self.assertAlmostEqual(out.beta, float(theta @ xtr), places=6)


if __name__ == "__main__":
    unittest.main()
