import math
import unittest

import numpy as np

from bart_backfit import Tree, TreeNode
from bart_backfit.residuals import GaussianResidualRegressionData, GaussianBartSufficientStatistics
from bart_backfit.util import NodeIdSet


def traverse_special_nodes(tree):
    """Leaves and parents of leaves found by a full traversal."""
    leaves, parents_of_leaves = set(), set()
    stack = [tree.root]
    while stack:
        node = stack.pop()
        if node.is_leaf:
            leaves.add(node.id)
        else:
            if node.left_child.is_leaf and node.right_child.is_leaf:
                parents_of_leaves.add(node.id)
            stack.extend([node.left_child, node.right_child])
    return leaves, parents_of_leaves


class TestTreeStructure(unittest.TestCase):

    def setUp(self):
        self.rng = np.random.default_rng(42)
        self.tree = Tree(mean_value=0.3)

    def assert_special_nodes(self, tree):
        leaves, parents_of_leaves = traverse_special_nodes(tree)
        self.assertEqual({n.id for n in tree.leaves}, leaves, "Leaf set out of sync with the tree.")
        self.assertEqual(tree.number_of_leaves(), len(leaves))
        self.assertEqual({n.id for n in tree.parents_of_leaves}, parents_of_leaves,
                         "Parents-of-leaves set out of sync with the tree.")
        for node in tree.parents_of_leaves:
            self.assertTrue(node.left_child.is_leaf and node.right_child.is_leaf)

    def test_new_tree_is_single_leaf(self):
        self.assertEqual(self.tree.number_of_nodes(), 1)
        self.assertEqual(self.tree.number_of_leaves(), 1)
        self.assertIsNone(self.tree.random_parent_of_leaves(self.rng))
        self.assertEqual(self.tree.random_leaf(self.rng), self.tree.root)
        self.assertEqual(self.tree.predict([1.0, 2.0]), 0.3)

    def test_grow_updates_special_sets(self):
        root = self.tree.root
        root.set_variable_and_cutpoint(0, 0.5)
        left, right = self.tree.grow(root, -1.0, 1.0)
        self.assertFalse(root.is_leaf)
        self.assertEqual(self.tree.number_of_nodes(), 3)
        self.assertEqual({n.id for n in self.tree.parents_of_leaves}, {root.id})
        self.assertEqual(left.depth, 1)
        self.assertTrue(left.is_left_child)
        self.assertFalse(right.is_left_child)
        self.assertTrue(root.has_no_grandchildren())

        left.set_variable_and_cutpoint(1, 0.2)
        self.tree.grow(left, 0.0, 0.0)
        # The root no longer has two leaf children.
        self.assertEqual({n.id for n in self.tree.parents_of_leaves}, {left.id})
        self.assertFalse(root.has_no_grandchildren())
        self.assert_special_nodes(self.tree)

    def test_prune_restores_parent_of_leaves(self):
        root = self.tree.root
        root.set_variable_and_cutpoint(0, 0.5)
        left, right = root.grow()
        left.set_variable_and_cutpoint(1, 0.2)
        left.grow()
        removed = self.tree.prune_descendants(left)
        self.assertEqual(removed, 2)
        self.assertTrue(left.is_leaf)
        self.assertEqual({n.id for n in self.tree.parents_of_leaves}, {root.id})
        self.assert_special_nodes(self.tree)

    def test_node_lookup_by_id(self):
        root = self.tree.root
        self.assertEqual(self.tree.node(root.id), root)
        root.set_variable_and_cutpoint(0, 0.5)
        left, right = root.grow()
        self.assertEqual(self.tree.node(right.id), right)
        freed = left.id
        self.tree.prune_descendants(root)
        with self.assertRaises(KeyError):
            self.tree.node(freed)
        with self.assertRaises(KeyError):
            self.tree.node(-1)
        with self.assertRaises(KeyError):
            self.tree.node(10 ** 6)

    def test_prune_whole_subtree_counts_nodes(self):
        root = self.tree.root
        root.set_variable_and_cutpoint(0, 0.5)
        left, right = root.grow()
        left.set_variable_and_cutpoint(1, 0.2)
        left.grow()
        right.set_variable_and_cutpoint(1, 0.7)
        right.grow()
        self.assertEqual(self.tree.number_of_nodes(), 7)
        self.assertEqual(root.prune_descendants(), 6)
        self.assertEqual(self.tree.number_of_nodes(), 1)
        self.assert_special_nodes(self.tree)

    def test_grow_then_prune_round_trip(self):
        original = self.tree.copy()
        leaf = self.tree.root
        leaf.set_variable_and_cutpoint(1, 3.0)
        self.tree.grow(leaf, 5.0, -5.0)
        self.tree.prune_descendants(leaf)
        self.assertEqual(self.tree.number_of_nodes(), 1)
        self.assertEqual(leaf.mean, 0.3, "Prune should not reset the mean.")
        self.assertEqual(self.tree, original)
        self.assert_special_nodes(self.tree)

    def test_grow_errors(self):
        root = self.tree.root
        with self.assertRaises(ValueError):
            root.grow()
        root.set_variable_and_cutpoint(0, 0.5)
        root.grow()
        with self.assertRaises(ValueError):
            root.grow()

    def test_random_grow_prune_keeps_invariants(self):
        tree = Tree()
        for step in range(300):
            if tree.number_of_parents_of_leaves() > 0 and self.rng.random() < 0.45:
                tree.prune_descendants(tree.random_parent_of_leaves(self.rng))
            else:
                leaf = tree.random_leaf(self.rng)
                leaf.set_variable_and_cutpoint(int(self.rng.integers(0, 3)), float(self.rng.random()))
                tree.grow(leaf, self.rng.normal(), self.rng.normal())
            self.assert_special_nodes(tree)
            self.assertEqual(tree.number_of_nodes(), 2 * tree.number_of_leaves() - 1)

    def test_arena_grows_beyond_default_size(self):
        node = self.tree.root
        for depth in range(10):
            node.set_variable_and_cutpoint(0, 1.0 / (depth + 2))
            node, _ = node.grow()
        self.assertEqual(self.tree.number_of_nodes(), 21)
        self.assertEqual(node.depth, 10)
        self.assert_special_nodes(self.tree)

    def test_get_cutpoint_range(self):
        root = self.tree.root
        root.set_variable_and_cutpoint(2, 5.0)
        _, right = root.grow()
        right.set_variable_and_cutpoint(2, 8.0)
        node, _ = right.grow()
        self.assertEqual(node.get_cutpoint_range(2), (5.0, 8.0))
        self.assertEqual(node.get_cutpoint_range(0), (-math.inf, math.inf))
        self.assertEqual(root.get_cutpoint_range(2), (-math.inf, math.inf))

    def test_predict_and_evaluate_agree(self):
        root = self.tree.root
        root.set_variable_and_cutpoint(0, 0.5)
        left, right = root.grow(1.0, 2.0)
        right.set_variable_and_cutpoint(1, 0.25)
        right.grow(3.0, 4.0)
        X = np.array([[0.1, 0.9], [0.5, 0.0], [0.7, 0.2], [0.7, 0.3]])
        expected = np.array([1.0, 1.0, 3.0, 4.0])
        np.testing.assert_array_equal(self.tree.evaluate(X), expected)
        self.assertEqual([self.tree.predict(x) for x in X], expected.tolist())


class TestTreeMatrix(unittest.TestCase):

    def setUp(self):
        self.tree = Tree(0.0)
        root = self.tree.root
        root.set_variable_and_cutpoint(0, 0.5)
        left, right = root.grow(-1.0, 1.0)
        right.set_variable_and_cutpoint(1, 0.3)
        rl, rr = right.grow(0.25, 0.75)
        left.set_variable_and_cutpoint(2, -2.0)
        left.grow(-1.5, -0.5)

    def test_matrix_layout(self):
        m = self.tree.to_matrix()
        self.assertEqual(m.shape, (7, 4))
        self.assertEqual(m[0, 0], -1)
        for row in range(1, m.shape[0]):
            self.assertLess(m[row, 0], row, "Parents must precede children.")
        for row in range(m.shape[0]):
            if m[row, 2] >= 0:
                self.assertEqual(m[row + 1, 0], row, "Left child must follow its parent.")
            else:
                self.assertEqual(m[row, 3], np.inf)
        # preorder: root, left subtree, right subtree
        np.testing.assert_array_equal(m[:, 2], [0, 2, -1, -1, 1, -1, -1])
        np.testing.assert_array_equal(m[:, 0], [-1, 0, 1, 1, 0, 4, 4])

    def test_round_trip(self):
        rebuilt = Tree.new_from_matrix(self.tree.to_matrix())
        self.assertEqual(rebuilt, self.tree)
        self.assertEqual(rebuilt.number_of_leaves(), 4)
        self.assertEqual(rebuilt.number_of_parents_of_leaves(), 2)
        X = np.random.default_rng(0).normal(size=(50, 3))
        np.testing.assert_array_equal(rebuilt.evaluate(X), self.tree.evaluate(X))
        np.testing.assert_array_equal(rebuilt.to_matrix(), self.tree.to_matrix())

    def test_from_matrix_replaces_existing_tree(self):
        other = Tree(5.0)
        other.from_matrix(self.tree.to_matrix())
        self.assertEqual(other, self.tree)
        leaf = other.random_leaf(np.random.default_rng(1))
        leaf.set_variable_and_cutpoint(0, 0.1)
        other.grow(leaf)
        self.assertEqual(other.number_of_nodes(), 9)

    def test_inequality(self):
        other = self.tree.copy()
        self.assertEqual(other, self.tree)
        other.leaves[0].set_mean(99.0)
        self.assertNotEqual(other, self.tree)

    def test_malformed_matrices(self):
        with self.assertRaises(ValueError):
            Tree.new_from_matrix(np.zeros((3, 3)))
        with self.assertRaises(ValueError):
            # root with a parent
            Tree.new_from_matrix(np.array([[0, 0.0, -1, np.inf]]))
        with self.assertRaises(ValueError):
            # interior root with a single child
            Tree.new_from_matrix(np.array([[-1, 0.0, 0, 0.5], [0, 1.0, -1, np.inf]]))
        with self.assertRaises(ValueError):
            # child of a leaf
            Tree.new_from_matrix(np.array([[-1, 0.0, -1, np.inf], [0, 1.0, -1, np.inf]]))
        with self.assertRaises(ValueError):
            # left child not adjacent to its parent
            Tree.new_from_matrix(np.array([
                [-1, 0.0, 0, 0.5],
                [0, 0.0, 1, 0.5],
                [0, 1.0, -1, np.inf],
                [1, 1.0, -1, np.inf],
                [1, 1.0, -1, np.inf],
            ]))

    def test_str(self):
        text = str(self.tree)
        self.assertIn("X_0 <= 0.5", text)
        self.assertIn("leaf", text)


class TestTreeData(unittest.TestCase):

    def setUp(self):
        rng = np.random.default_rng(3)
        self.X = rng.uniform(size=(40, 2))
        self.y = rng.normal(size=40)
        self.data = GaussianResidualRegressionData(self.X, self.y, np.zeros(40))
        self.tree = Tree(0.0)
        self.tree.populate_sufficient_statistics(GaussianBartSufficientStatistics())
        self.tree.populate_data(self.data)

    def test_rows_are_partitioned(self):
        root = self.tree.root
        root.set_variable_and_cutpoint(0, 0.5)
        left, right = root.grow()
        np.testing.assert_array_equal(np.sort(left.data), np.flatnonzero(self.X[:, 0] <= 0.5))
        np.testing.assert_array_equal(np.sort(right.data), np.flatnonzero(self.X[:, 0] > 0.5))
        self.assertEqual(left.n + right.n, 40)
        self.assertIsInstance(left.suf, GaussianBartSufficientStatistics)
        suf = left.compute_suf()
        self.assertEqual(suf.n, left.n)
        self.assertAlmostEqual(suf.sum, self.y[self.X[:, 0] <= 0.5].sum())

    def test_reroute_children(self):
        root = self.tree.root
        root.set_variable_and_cutpoint(0, 0.5)
        left, right = root.grow()
        root.set_variable_and_cutpoint(1, 0.2)
        root.reroute_children()
        np.testing.assert_array_equal(np.sort(left.data), np.flatnonzero(self.X[:, 1] <= 0.2))
        self.assertEqual(left.n + right.n, 40)

    def test_mean_effect_round_trip(self):
        root = self.tree.root
        root.set_variable_and_cutpoint(0, 0.5)
        left, right = root.grow(2.0, -3.0)
        self.tree.replace_mean_effect()
        expected = self.y - self.tree.evaluate(self.X)
        np.testing.assert_allclose(self.data.residual, expected)
        self.tree.remove_mean_effect()
        np.testing.assert_allclose(self.data.residual, self.y)

    def test_copy_has_no_data(self):
        copied = self.tree.copy()
        self.assertFalse(copied.has_data)
        self.assertEqual(copied.root.n, 0)
        self.assertEqual(copied, self.tree)

    def test_clear_data(self):
        self.tree.clear_data_and_delete_suf()
        self.assertFalse(self.tree.has_data)
        self.assertIsNone(self.tree.root.suf)
        with self.assertRaises(ValueError):
            self.tree.root.populate_data(np.arange(3))

    def test_foreign_node_rejected(self):
        other = Tree()
        with self.assertRaises(ValueError):
            self.tree.grow(other.root)


class TestNodeIdSet(unittest.TestCase):

    def test_add_remove_choice(self):
        s = NodeIdSet([1, 2, 3])
        s.add(2)
        self.assertEqual(len(s), 3)
        s.remove(1)
        self.assertNotIn(1, s)
        self.assertEqual(s, {2, 3})
        rng = np.random.default_rng(0)
        draws = {s.choice(rng) for _ in range(50)}
        self.assertEqual(draws, {2, 3})
        s.discard(10)
        with self.assertRaises(KeyError):
            s.remove(10)
        s.clear()
        self.assertIsNone(s.choice(rng))

    def test_handles_are_value_objects(self):
        tree = Tree()
        self.assertEqual(TreeNode(tree, 0), tree.root)
        self.assertNotEqual(TreeNode(Tree(), 0), tree.root)
        self.assertEqual(len({tree.root, TreeNode(tree, 0)}), 1)


if __name__ == "__main__":
    unittest.main()
