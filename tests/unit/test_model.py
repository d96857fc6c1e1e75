import unittest

import numpy as np

from bart_backfit import GaussianBartModel, LogitBartModel, Tree


class TestEnsemblePrediction(unittest.TestCase):
    """Three trees on two predictors with hand-picked leaf values."""

    def setUp(self):
        self.model = GaussianBartModel(3, mean=0.0, sigsq=1.0)
        grid = np.linspace(0, 1, 11)
        X = np.array([[a, b] for a in grid for b in grid])
        self.model.set_data(X, np.zeros(len(X)))
        self.model.finalize_data()

        t0, t1, t2 = self.model.trees
        t0.root.set_variable_and_cutpoint(0, 0.5)
        t0.grow(t0.root, 1.0, 2.0)

        t1.root.set_variable_and_cutpoint(1, 0.3)
        _, right = t1.grow(t1.root, -0.5, 0.0)
        right.set_variable_and_cutpoint(0, 0.8)
        right.grow(0.1, 0.4)

        t2.root.set_mean(0.75)

    def test_predict_is_sum_of_trees(self):
        cases = {
            (0.6, 0.9): 2.0 + 0.1 + 0.75,
            (0.2, 0.1): 1.0 - 0.5 + 0.75,
            (0.9, 0.5): 2.0 + 0.4 + 0.75,
        }
        for x, expected in cases.items():
            self.assertAlmostEqual(self.model.predict(x), expected)
            self.assertAlmostEqual(self.model.predict(x), sum(t.predict(np.array(x)) for t in self.model.trees))
        X = np.array(list(cases.keys()))
        np.testing.assert_allclose(self.model.evaluate(X), list(cases.values()))

    def test_dimension_mismatch(self):
        with self.assertRaises(ValueError):
            self.model.predict([0.1, 0.2, 0.3])
        with self.assertRaises(ValueError):
            self.model.evaluate(np.zeros((2, 3)))
        unfinalized = GaussianBartModel(1)
        unfinalized.add_data([0.1, 0.2], 1.0)
        with self.assertRaises(ValueError):
            unfinalized.add_data([0.1], 1.0)

    def test_snapshot_and_restore(self):
        state = self.model.snapshot()
        version = self.model.structure_version
        self.model.tree(0).prune_descendants(self.model.tree(0).root)
        self.model.set_sigsq(4.0)
        self.assertNotAlmostEqual(self.model.predict([0.6, 0.9]), 2.85)

        self.model.restore(state)
        self.assertAlmostEqual(self.model.predict([0.6, 0.9]), 2.85)
        self.assertEqual(self.model.sigsq, 1.0)
        self.assertGreater(self.model.structure_version, version)
        self.assertEqual(state.vars_histogram, {0: 2, 1: 1})
        np.testing.assert_allclose(state.evaluate([[0.6, 0.9]]), [2.85])

    def test_set_number_of_trees(self):
        before = self.model.evaluate(self.model.X)
        version = self.model.structure_version
        self.model.set_number_of_trees(5)
        self.assertEqual(self.model.number_of_trees, 5)
        np.testing.assert_allclose(self.model.evaluate(self.model.X), before)
        self.model.set_number_of_trees(1)
        self.assertEqual(self.model.number_of_trees, 1)
        self.assertEqual(self.model.structure_version, version + 2)
        with self.assertRaises(ValueError):
            self.model.set_number_of_trees(0)

    def test_rebuild_tree(self):
        matrix = self.model.tree(1).to_matrix()
        self.model.rebuild_tree(0, matrix)
        self.assertEqual(self.model.tree(0), self.model.tree(1))


class TestModelLifecycle(unittest.TestCase):

    def test_initial_trees_share_the_mean(self):
        model = GaussianBartModel(4, mean=2.0)
        for tree in model.trees:
            self.assertEqual(tree.root.mean, 0.5)

    def test_predict_before_finalize(self):
        model = GaussianBartModel(2)
        model.add_data([0.0, 1.0], 1.0)
        with self.assertRaises(RuntimeError):
            model.predict([0.0, 1.0])

    def test_finalize_rules(self):
        model = GaussianBartModel(2)
        with self.assertRaises(RuntimeError):
            model.finalize_data()
        model.add_data([0.0, 1.0], 1.0)
        model.add_data([1.0, 2.0], 2.0)
        model.finalize_data()
        self.assertTrue(model.finalized)
        with self.assertRaises(RuntimeError):
            model.finalize_data()
        with self.assertRaises(RuntimeError):
            model.add_data([0.5, 0.5], 0.0)

    def test_row_and_batch_data_agree(self):
        X = np.random.default_rng(0).normal(size=(5, 3))
        y = np.arange(5.0)
        by_row = GaussianBartModel(1)
        for x, yi in zip(X, y):
            by_row.add_data(x, yi)
        batch = GaussianBartModel(1)
        batch.set_data(X, y)
        np.testing.assert_array_equal(by_row.X, batch.X)
        np.testing.assert_array_equal(by_row.y, batch.y)
        self.assertEqual(by_row.sample_size, 5)
        self.assertEqual(by_row.number_of_variables, 3)

    def test_sigsq_validation(self):
        with self.assertRaises(ValueError):
            GaussianBartModel(1, sigsq=0.0)
        model = GaussianBartModel(1, sigsq=4.0)
        self.assertEqual(model.sigma, 2.0)
        self.assertEqual(model.global_params, {"sigsq": 4.0})

    def test_set_variable_summaries(self):
        source = GaussianBartModel(1)
        source.set_data(np.random.default_rng(1).uniform(size=(30, 2)), np.zeros(30))
        source.finalize_data()
        serialized = [s.serialize() for s in source.variable_summaries]

        target = GaussianBartModel(1)
        target.set_variable_summaries(serialized)
        self.assertTrue(target.finalized)
        self.assertEqual(target.number_of_variables, 2)
        self.assertEqual(target.predict([0.1, 0.2]), 0.0)
        with self.assertRaises(ValueError):
            target.set_variable_summaries(serialized[::-1])

    def test_finalize_after_partially_finalized_summaries(self):
        X = np.random.default_rng(2).uniform(size=(30, 2))
        finalized = GaussianBartModel(1)
        finalized.set_data(X, np.zeros(30))
        finalized.finalize_data()
        pending = GaussianBartModel(1)
        pending.set_data(X, np.zeros(30))
        mixed = [finalized.variable_summaries[0].serialize(), pending.variable_summaries[1].serialize()]

        target = GaussianBartModel(1)
        target.set_variable_summaries(mixed)
        self.assertFalse(target.finalized)
        target.finalize_data()
        self.assertTrue(target.finalized)
        self.assertTrue(all(s.finalized for s in target.variable_summaries))
        self.assertEqual(target.predict([0.1, 0.2]), 0.0)
        with self.assertRaises(RuntimeError):
            target.finalize_data()


class TestLogitModel(unittest.TestCase):

    def test_binomial_data(self):
        model = LogitBartModel(2)
        model.add_data([0.0], 1)
        model.add_data([1.0], 2, trials=3)
        np.testing.assert_array_equal(model.y, [1.0, 2.0])
        np.testing.assert_array_equal(model.n, [1.0, 3.0])
        with self.assertRaises(ValueError):
            model.add_data([0.5], 4, trials=3)
        model.finalize_data()
        self.assertAlmostEqual(model.success_probability([0.3]), 0.5)
        np.testing.assert_allclose(model.success_probabilities(np.array([[0.3], [0.9]])), [0.5, 0.5])

    def test_set_data_defaults_to_single_trials(self):
        model = LogitBartModel(1, mean=1.0)
        model.set_data(np.zeros((3, 1)), [0, 1, 1])
        np.testing.assert_array_equal(model.n, np.ones(3))
        self.assertEqual(model.trees[0].root.mean, 1.0)
        self.assertIsInstance(model.trees[0], Tree)


if __name__ == "__main__":
    unittest.main()
