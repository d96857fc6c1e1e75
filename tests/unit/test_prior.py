import math
import unittest

import numpy as np
from scipy.stats import chi2

from bart_backfit import Tree
from bart_backfit.priors import (
    LogitDataImputer,
    NodeMeanPrior,
    ResidualVariancePrior,
    TreeDepthPrior,
    _leftmost_interval,
    _rightmost_interval,
)
from bart_backfit.util import Dataset


class TestTreeDepthPrior(unittest.TestCase):

    def setUp(self):
        self.prior = TreeDepthPrior(alpha=0.5, beta=0.5)

    def test_probability_of_split(self):
        self.assertEqual(self.prior.probability_of_split(0), 0.5)
        self.assertAlmostEqual(self.prior.probability_of_split(3), 0.5 / 2.0)

    def test_tree_log_prior(self):
        tree = Tree()
        self.assertAlmostEqual(self.prior.tree_log_prior(tree), math.log(1 - 0.5),
                               msg="A single leaf has prior 1 - alpha.")
        tree.root.set_variable_and_cutpoint(0, 0.5)
        tree.grow(tree.root)
        one_split = 0.5 * (1 - 0.5 * 2 ** -0.5) ** 2
        self.assertAlmostEqual(self.prior.tree_log_prior(tree), math.log(one_split))

    def test_log_grow_ratio_matches_tree_prior(self):
        tree = Tree()
        tree.root.set_variable_and_cutpoint(0, 0.5)
        left, _ = tree.grow(tree.root)
        before = self.prior.tree_log_prior(tree)
        left.set_variable_and_cutpoint(1, 0.5)
        tree.grow(left)
        after = self.prior.tree_log_prior(tree)
        self.assertAlmostEqual(after - before, self.prior.log_grow_ratio(1))

    def test_invalid_arguments(self):
        with self.assertRaises(ValueError):
            TreeDepthPrior(alpha=1.5)
        with self.assertRaises(ValueError):
            TreeDepthPrior(beta=-1.0)
        with self.assertRaises(ValueError):
            NodeMeanPrior(0.0, 0.0)


class TestResidualVariancePrior(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(42)
        X = rng.uniform(size=(200, 3))
        y = X @ np.array([1.0, -2.0, 0.5]) + rng.normal(0, 0.3, size=200)
        self.data = Dataset(X, y)

    def test_from_data_linear(self):
        prior = ResidualVariancePrior.from_data(self.data, eps_q=0.9, eps_nu=3.0)
        self.assertEqual(prior.weight, 3.0)
        # The linear fit recovers roughly the noise level, which the prior puts at its 90% quantile.
        c = chi2.ppf(0.1, df=3.0)
        self.assertAlmostEqual(prior.sigma_guess ** 2 / c * 3.0, 0.09, delta=0.03)

    def test_from_data_naive(self):
        prior = ResidualVariancePrior.from_data(self.data, specification="naive")
        expected = math.sqrt(np.std(self.data.y) ** 2 * chi2.ppf(0.1, df=3.0) / 3.0)
        self.assertAlmostEqual(prior.sigma_guess, expected)
        with self.assertRaises(ValueError):
            ResidualVariancePrior.from_data(self.data, specification="cubic")

    def test_from_data_with_few_rows_falls_back_to_naive(self):
        data = Dataset(self.data.X[:3], self.data.y[:3])
        linear = ResidualVariancePrior.from_data(data)
        naive = ResidualVariancePrior.from_data(data, specification="naive")
        self.assertAlmostEqual(linear.sigma_guess, naive.sigma_guess)

    def test_sample_sigsq(self):
        prior = ResidualVariancePrior(sigma_guess=1.0, weight=4.0)
        generator = np.random.default_rng(0)
        draws = np.array([prior.sample_sigsq(46.0, 50, generator) for _ in range(4000)])
        self.assertTrue(np.all(draws > 0))
        # Inverse gamma with shape 27 and scale 25 has mean 25 / 26.
        self.assertAlmostEqual(draws.mean(), 25.0 / 26.0, delta=0.02)
        self.assertEqual(prior.sample_sigsq(46.0, 50, np.random.default_rng(1)),
                         prior.sample_sigsq(46.0, 50, np.random.default_rng(1)))


class TestLogitDataImputer(unittest.TestCase):

    def setUp(self):
        self.imputer = LogitDataImputer(np.random.default_rng(7))

    def test_latent_utilities_are_truncated(self):
        z = self.imputer.draw_latent_utilities(3, 5, eta=0.4)
        self.assertEqual(z.shape, (5,))
        self.assertTrue(np.all(z[:3] > 0), "Successes have positive utility.")
        self.assertTrue(np.all(z[3:] <= 0), "Failures have non-positive utility.")

    def test_extreme_eta(self):
        z = self.imputer.draw_latent_utilities(1, 2, eta=-40.0)
        self.assertTrue(np.all(np.isfinite(z)))

    def test_series_acceptance_bounds(self):
        self.assertIn(_rightmost_interval(0.5, 3.0), (True, False))
        self.assertIn(_leftmost_interval(0.5, 0.8), (True, False))
        self.assertTrue(_rightmost_interval(1e-12, 5.0))
        self.assertFalse(_rightmost_interval(1.0 - 1e-12, 5.0))

    def test_mixing_variance_matches_logistic(self):
        # Averaged over logistic residuals, lambda has mean pi^2 / 3.
        generator = np.random.default_rng(11)
        imputer = LogitDataImputer(generator)
        residuals = generator.logistic(size=3000)
        lam = np.array([imputer.draw_mixing_variance(r) for r in residuals])
        self.assertTrue(np.all(lam > 0))
        self.assertAlmostEqual(lam.mean(), math.pi ** 2 / 3, delta=0.25)

    def test_impute(self):
        iws, soi = self.imputer.impute(2, 4, 0.0)
        self.assertGreater(soi, 0.0)
        self.assertTrue(math.isfinite(iws))
        iws, soi = self.imputer.impute(0, 1, 1.0)
        self.assertGreater(soi, 0.0)


if __name__ == "__main__":
    unittest.main()
