import math
import unittest
from unittest.mock import MagicMock

import numpy as np

from tdlmm.exceptions import ShrinkageDegeneracyError
from tdlmm.params import ModelState, SplitRule, Tree, TreePair
from tdlmm.priors import ShrinkagePrior, TreePrior, checked_half_cauchy


def _state(n_trees=3, n_exp=3):
    root = SplitRule.root(3, np.zeros(0), np.full(2, 0.5))
    pairs = [TreePair(Tree.new(root), Tree.new(root), 0, 0, 5) for _ in range(n_trees)]
    return ModelState(pairs, n_exp, 5, 1, np.full(n_exp, 1.0 / n_exp))


class TestTreePrior(unittest.TestCase):

    def test_grow_log_ratio(self):
        prior = TreePrior(0.95, 2.0)
        p0, p1 = 0.95, 0.95 / 4
        expected = math.log(p0) + 2 * math.log(1 - p1) - math.log(1 - p0)
        self.assertAlmostEqual(prior.grow_log_ratio(0), expected)

    def test_deeper_splits_are_less_likely(self):
        prior = TreePrior(0.95, 2.0)
        self.assertGreater(prior.grow_log_ratio(0), prior.grow_log_ratio(2))


class TestCheckedHalfCauchy(unittest.TestCase):

    def test_degenerate_draw_raises(self):
        gen = MagicMock()
        gen.gamma.side_effect = [np.float64(1.0), np.float64(0.0)]
        with self.assertRaises(ShrinkageDegeneracyError) as ctx:
            checked_half_cauchy(gen, 1.0, 3.0, 2.0, "nu")
        self.assertEqual(ctx.exception.name, "nu")

    def test_regular_draw(self):
        x2, y_inv = checked_half_cauchy(np.random.default_rng(0), 1.0, 10.0, 4.0, "nu")
        self.assertGreater(x2, 0)
        self.assertGreater(y_inv, 0)


class TestShrinkagePrior(unittest.TestCase):

    def test_invalid_modes(self):
        with self.assertRaises(ValueError):
            ShrinkagePrior(shrinkage="some")
        with self.assertRaises(ValueError):
            ShrinkagePrior(interaction="pairs")
        with self.assertRaises(ValueError):
            ShrinkagePrior(mix_prior=0)

    def test_mix_pairs(self):
        self.assertEqual(ShrinkagePrior(interaction="distinct").mix_pairs(3), [(1, 0), (2, 0), (2, 1)])
        self.assertEqual(ShrinkagePrior(interaction="all").mix_pairs(2), [(0, 0), (1, 0), (1, 1)])
        self.assertEqual(ShrinkagePrior(interaction="none").mix_pairs(3), [])

    def test_mix_var(self):
        state = _state()
        state.mu_mix[2, 0] = 4.0
        prior = ShrinkagePrior(interaction="distinct")
        self.assertEqual(prior.mix_var(state, 0, 2), 4.0)
        self.assertEqual(prior.mix_var(state, 2, 0), 4.0)
        self.assertEqual(prior.mix_var(state, 1, 1), 0.0)
        self.assertEqual(ShrinkagePrior(interaction="all").mix_var(state, 1, 1), 1.0)
        self.assertEqual(ShrinkagePrior(interaction="none").mix_var(state, 0, 2), 0.0)

    def test_init_scales(self):
        state = _state()
        ShrinkagePrior(shrinkage="exposures", generator=np.random.default_rng(0)).init_scales(state)
        np.testing.assert_array_equal(state.tau, np.ones(3))
        self.assertGreater(state.nu, 0)

        state = _state()
        ShrinkagePrior(shrinkage="all", generator=np.random.default_rng(0)).init_scales(state)
        self.assertTrue(np.all(state.tau > 0))
        self.assertFalse(np.all(state.tau == 1.0))

    def test_tree_scale_only_when_enabled(self):
        state = _state()
        ShrinkagePrior(shrinkage="exposures", generator=np.random.default_rng(0)).update_tree_scale(
            state, 0, 4, 2.0)
        self.assertEqual(state.tau[0], 1.0)
        ShrinkagePrior(shrinkage="trees", generator=np.random.default_rng(0)).update_tree_scale(
            state, 0, 4, 2.0)
        self.assertNotEqual(state.tau[0], 1.0)

    def test_exposure_scales(self):
        state = _state()
        state.tot_term_exp[:] = [4, 0, 2]
        state.sum_term_t2_exp[:] = [3.0, 0.0, 1.0]
        state.tot_term_mix[1, 0] = 4
        state.sum_term_t2_mix[1, 0] = 2.0
        prior = ShrinkagePrior(shrinkage="exposures", interaction="distinct", generator=np.random.default_rng(1))
        prior.update_exposure_scales(state)
        self.assertTrue(np.all(state.mu_exp > 0))
        self.assertFalse(np.all(state.mu_exp == 1.0))
        self.assertNotEqual(state.mu_mix[1, 0], 1.0)
        # Same-exposure and upper-triangle entries are not used with distinct interactions.
        self.assertEqual(state.mu_mix[1, 1], 1.0)
        self.assertEqual(state.mu_mix[0, 1], 1.0)

    def test_past_warmup(self):
        self.assertFalse(ShrinkagePrior.past_warmup(50, 100))
        self.assertTrue(ShrinkagePrior.past_warmup(51, 100))
        self.assertFalse(ShrinkagePrior.past_warmup(1000, 5000))
        self.assertTrue(ShrinkagePrior.past_warmup(1001, 5000))

    def test_exposure_probs(self):
        state = _state()
        state.exp_count[:] = [10, 0, 2]
        prior = ShrinkagePrior(mix_prior=1.0, generator=np.random.default_rng(2))
        prior.update_exposure_probs(state, 10, 100)
        np.testing.assert_array_equal(state.exp_prob, np.full(3, 1.0 / 3))
        prior.update_exposure_probs(state, 60, 100)
        self.assertAlmostEqual(state.exp_prob.sum(), 1.0)
        self.assertFalse(np.allclose(state.exp_prob, 1.0 / 3))

    def test_adaptive_kappa(self):
        prior = ShrinkagePrior(mix_prior=-1.0, generator=np.random.default_rng(3))
        self.assertTrue(prior.adaptive_kappa)
        self.assertEqual(prior.kappa_init, 1.0)
        state = _state()
        for _ in range(200):
            prior.update_kappa(state)
        self.assertGreater(state.kappa, 0)
        self.assertGreater(prior.kappa_accepted, 0)


if __name__ == "__main__":
    unittest.main()
