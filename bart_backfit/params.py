import math
from typing import List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray
from numba import njit

from .util import NodeIdSet

ROOT = 0
_EMPTY_ROWS = np.empty(0, dtype=np.intp)


@njit(cache=True)
def _traverse_tree_numba(X, left, right, vars, cutpoints, means):
    """
    Numba-optimized function to evaluate the tree for every row of X.

    Parameters:
    - X: np.ndarray
        Input data (2D array).
    - left, right: np.ndarray
        Child ids of each node (-1 at leaves).
    - vars, cutpoints: np.ndarray
        Split variable and cutpoint of each node.
    - means: np.ndarray
        Leaf means.

    Returns:
    - np.ndarray
        Value of the leaf each row falls into.
    """
    n_samples = X.shape[0]
    out = np.empty(n_samples, dtype=np.float64)
    for i in range(n_samples):
        node = 0
        while left[node] >= 0:
            if X[i, vars[node]] <= cutpoints[node]:
                node = left[node]
            else:
                node = right[node]
        out[i] = means[node]
    return out


class TreeNode:
    """
    Handle to one node of a Tree.

    The node's state lives in the owning tree's arrays; a handle is just the
    pair (tree, node id) and is cheap to create and compare.
    """
    __slots__ = ("_tree", "_id")

    def __init__(self, tree: "Tree", node_id: int):
        self._tree = tree
        self._id = int(node_id)

    @property
    def id(self) -> int:
        return self._id

    @property
    def tree(self) -> "Tree":
        return self._tree

    def __eq__(self, other):
        return isinstance(other, TreeNode) and other._tree is self._tree and other._id == self._id

    def __hash__(self):
        return hash((id(self._tree), self._id))

    def __repr__(self):
        if self.is_leaf:
            return f"TreeNode(id={self._id}, leaf, mean={self.mean:.6g})"
        return f"TreeNode(id={self._id}, X_{self.variable_index} <= {self.cutpoint:.6g})"

    # ---- structure ----
    @property
    def is_leaf(self) -> bool:
        return self._tree._left[self._id] < 0

    @property
    def is_root(self) -> bool:
        return self._tree._parent[self._id] < 0

    @property
    def parent(self) -> Optional["TreeNode"]:
        parent_id = self._tree._parent[self._id]
        return None if parent_id < 0 else TreeNode(self._tree, parent_id)

    @property
    def left_child(self) -> Optional["TreeNode"]:
        child = self._tree._left[self._id]
        return None if child < 0 else TreeNode(self._tree, child)

    @property
    def right_child(self) -> Optional["TreeNode"]:
        child = self._tree._right[self._id]
        return None if child < 0 else TreeNode(self._tree, child)

    @property
    def is_left_child(self) -> bool:
        parent_id = self._tree._parent[self._id]
        return parent_id >= 0 and self._tree._left[parent_id] == self._id

    def has_no_grandchildren(self) -> bool:
        if self.is_leaf:
            return False
        tree = self._tree
        return tree._left[tree._left[self._id]] < 0 and tree._left[tree._right[self._id]] < 0

    @property
    def depth(self) -> int:
        return int(self._tree._depth[self._id])

    # ---- parameters ----
    @property
    def mean(self) -> float:
        return float(self._tree._mean[self._id])

    @mean.setter
    def mean(self, value: float):
        self._tree._mean[self._id] = value

    def set_mean(self, value: float):
        self._tree._mean[self._id] = value

    @property
    def variable_index(self) -> int:
        return int(self._tree._var[self._id])

    @property
    def cutpoint(self) -> float:
        return float(self._tree._cutpoint[self._id])

    def set_variable_and_cutpoint(self, variable_index: int, cutpoint: float):
        """Set the split rule. Allowed on a leaf, in preparation for grow()."""
        self._tree._var[self._id] = variable_index
        self._tree._cutpoint[self._id] = cutpoint

    # ---- prediction ----
    def predict(self, x) -> float:
        tree = self._tree
        node = self._id
        while tree._left[node] >= 0:
            if x[tree._var[node]] <= tree._cutpoint[node]:
                node = tree._left[node]
            else:
                node = tree._right[node]
        return float(tree._mean[node])

    # ---- mutation ----
    def grow(self, left_mean: float = 0.0, right_mean: float = 0.0) -> Tuple["TreeNode", "TreeNode"]:
        if not self.is_leaf:
            raise ValueError(f"Node {self._id} is not a leaf and cannot be grown.")
        if self._tree._var[self._id] < 0 or math.isnan(self._tree._cutpoint[self._id]):
            raise ValueError(f"Node {self._id} has no split rule; call set_variable_and_cutpoint first.")
        return self._tree._split(self._id, left_mean, right_mean)

    def prune_descendants(self) -> int:
        return self._tree._prune(self._id)

    def get_cutpoint_range(self, variable_index: int, lo: float = -math.inf,
                           hi: float = math.inf) -> Tuple[float, float]:
        """
        Range of values of ``variable_index`` still reachable at this node.

        Rows at this node satisfy ``lo < x[variable_index] <= hi``.
        """
        tree = self._tree
        child = self._id
        parent = tree._parent[child]
        while parent >= 0:
            if tree._var[parent] == variable_index:
                if tree._left[parent] == child:
                    hi = min(hi, tree._cutpoint[parent])
                else:
                    lo = max(lo, tree._cutpoint[parent])
            child = parent
            parent = tree._parent[parent]
        return float(lo), float(hi)

    # ---- data ----
    @property
    def data(self) -> NDArray[np.intp]:
        """Indices of the residual rows routed to this node."""
        return self._tree._rows.get(self._id, _EMPTY_ROWS)

    @property
    def n(self) -> int:
        return len(self.data)

    def populate_data(self, rows, recursive: bool = True):
        tree = self._tree
        if tree._residual_data is None:
            raise ValueError("The tree has no residual data; call Tree.populate_data first.")
        rows = np.asarray(rows, dtype=np.intp)
        existing = tree._rows.get(self._id)
        tree._rows[self._id] = rows if existing is None else np.concatenate([existing, rows])
        if tree._suf_prototype is not None and self._id not in tree._suf:
            tree._suf[self._id] = tree._suf_prototype.create()
        if recursive and not self.is_leaf:
            goes_left = tree._residual_data.x[rows, tree._var[self._id]] <= tree._cutpoint[self._id]
            TreeNode(tree, tree._left[self._id]).populate_data(rows[goes_left], True)
            TreeNode(tree, tree._right[self._id]).populate_data(rows[~goes_left], True)

    def clear_data_and_delete_suf(self, recursive: bool = True):
        tree = self._tree
        tree._rows.pop(self._id, None)
        tree._suf.pop(self._id, None)
        if recursive and not self.is_leaf:
            self.left_child.clear_data_and_delete_suf(True)
            self.right_child.clear_data_and_delete_suf(True)

    def reroute_children(self):
        """Re-partition this node's rows after its split rule changed."""
        if self.is_leaf:
            return
        rows = self.data
        self.left_child.clear_data_and_delete_suf(True)
        self.right_child.clear_data_and_delete_suf(True)
        tree = self._tree
        if self._id in tree._rows:
            goes_left = tree._residual_data.x[rows, tree._var[self._id]] <= tree._cutpoint[self._id]
            self.left_child.populate_data(rows[goes_left], True)
            self.right_child.populate_data(rows[~goes_left], True)

    def populate_sufficient_statistics(self, suf, recursive: bool = True):
        tree = self._tree
        tree._suf[self._id] = suf.create()
        if recursive and not self.is_leaf:
            self.left_child.populate_sufficient_statistics(suf, True)
            self.right_child.populate_sufficient_statistics(suf, True)

    @property
    def suf(self):
        return self._tree._suf.get(self._id)

    def compute_suf(self):
        """Recompute and return the sufficient statistics of the rows at this node."""
        tree = self._tree
        suf = tree._suf.get(self._id)
        if suf is None:
            if tree._suf_prototype is None:
                raise ValueError("No sufficient statistics have been attached to the tree.")
            suf = tree._suf_prototype.create()
            tree._suf[self._id] = suf
        suf.clear()
        suf.update(tree._residual_data, self.data)
        return suf

    def remove_mean_effect(self):
        rows = self._tree._rows.get(self._id)
        if rows is not None and len(rows):
            self._tree._residual_data.add_to_residual(rows, self.mean)

    def replace_mean_effect(self):
        rows = self._tree._rows.get(self._id)
        if rows is not None and len(rows):
            self._tree._residual_data.add_to_residual(rows, -self.mean)


class Tree:
    """
    A single regression tree stored as an arena of nodes.

    Nodes are integer ids into parallel arrays; the root is always id 0.
    Freed ids are recycled and the arrays double when they run out of room.
    The sets of leaves and of parents of leaves (interior nodes whose
    children are both leaves) are maintained on every grow and prune.
    """
    default_size: int = 8  # Default size for the tree arrays

    def __init__(self, mean_value: float = 0.0):
        self._allocate(Tree.default_size)
        self._in_use[ROOT] = True
        self._mean[ROOT] = mean_value
        self._free = list(range(Tree.default_size - 1, 0, -1))
        self._leaves = NodeIdSet([ROOT])
        self._parents_of_leaves = NodeIdSet()
        self._clear_data_state()

    def _allocate(self, size):
        self._parent = np.full(size, -1, dtype=np.int64)
        self._left = np.full(size, -1, dtype=np.int64)
        self._right = np.full(size, -1, dtype=np.int64)
        self._var = np.full(size, -1, dtype=np.int64)
        self._cutpoint = np.full(size, np.nan, dtype=np.float64)
        self._mean = np.zeros(size, dtype=np.float64)
        self._depth = np.zeros(size, dtype=np.int64)
        self._in_use = np.zeros(size, dtype=bool)

    def _clear_data_state(self):
        self._rows = {}
        self._suf = {}
        self._suf_prototype = None
        self._residual_data = None

    def _resize_arrays(self):
        old_size = len(self._parent)
        new_size = old_size * 2

        def grow_array(a, fill):
            b = np.empty(new_size, dtype=a.dtype)
            b[:old_size] = a
            b[old_size:] = fill
            return b

        self._parent = grow_array(self._parent, -1)
        self._left = grow_array(self._left, -1)
        self._right = grow_array(self._right, -1)
        self._var = grow_array(self._var, -1)
        self._cutpoint = grow_array(self._cutpoint, np.nan)
        self._mean = grow_array(self._mean, 0.0)
        self._depth = grow_array(self._depth, 0)
        self._in_use = grow_array(self._in_use, False)
        self._free.extend(range(new_size - 1, old_size - 1, -1))

    def _new_node(self, parent_id: int, mean_value: float) -> int:
        if not self._free:
            self._resize_arrays()
        node_id = self._free.pop()
        self._in_use[node_id] = True
        self._parent[node_id] = parent_id
        self._left[node_id] = -1
        self._right[node_id] = -1
        self._var[node_id] = -1
        self._cutpoint[node_id] = np.nan
        self._mean[node_id] = mean_value
        self._depth[node_id] = self._depth[parent_id] + 1
        return node_id

    def _release(self, node_id: int):
        self._in_use[node_id] = False
        self._parent[node_id] = -1
        self._left[node_id] = -1
        self._right[node_id] = -1
        self._var[node_id] = -1
        self._cutpoint[node_id] = np.nan
        self._rows.pop(node_id, None)
        self._suf.pop(node_id, None)
        self._free.append(node_id)

    def _split(self, node_id: int, left_mean: float, right_mean: float):
        left = self._new_node(node_id, left_mean)
        right = self._new_node(node_id, right_mean)
        self._left[node_id] = left
        self._right[node_id] = right

        self._leaves.discard(node_id)
        self._leaves.add(left)
        self._leaves.add(right)
        parent_id = self._parent[node_id]
        if parent_id >= 0:
            self._parents_of_leaves.discard(parent_id)
        self._parents_of_leaves.add(node_id)

        if node_id in self._rows:
            rows = self._rows[node_id]
            goes_left = self._residual_data.x[rows, self._var[node_id]] <= self._cutpoint[node_id]
            TreeNode(self, left).populate_data(rows[goes_left], False)
            TreeNode(self, right).populate_data(rows[~goes_left], False)
        return TreeNode(self, left), TreeNode(self, right)

    def _prune(self, node_id: int) -> int:
        if self._left[node_id] < 0:
            return 0
        removed = 0
        stack = [self._left[node_id], self._right[node_id]]
        while stack:
            child = stack.pop()
            if self._left[child] >= 0:
                stack.append(self._left[child])
                stack.append(self._right[child])
            self._leaves.discard(child)
            self._parents_of_leaves.discard(child)
            self._release(child)
            removed += 1
        self._left[node_id] = -1
        self._right[node_id] = -1
        self._var[node_id] = -1
        self._cutpoint[node_id] = np.nan
        self._parents_of_leaves.discard(node_id)
        self._leaves.add(node_id)

        parent_id = self._parent[node_id]
        if parent_id >= 0:
            sibling = self._right[parent_id] if self._left[parent_id] == node_id else self._left[parent_id]
            if self._left[sibling] < 0:
                self._parents_of_leaves.add(parent_id)
        return removed

    def _owns(self, node: TreeNode):
        if node.tree is not self or not self._in_use[node.id]:
            raise ValueError(f"Node {node.id} does not belong to this tree.")

    # ---- public structure API ----
    @property
    def root(self) -> TreeNode:
        return TreeNode(self, ROOT)

    def node(self, node_id: int) -> TreeNode:
        if not (0 <= node_id < len(self._in_use)) or not self._in_use[node_id]:
            raise KeyError(node_id)
        return TreeNode(self, node_id)

    def number_of_nodes(self) -> int:
        return int(self._in_use.sum())

    def number_of_leaves(self) -> int:
        return len(self._leaves)

    def number_of_parents_of_leaves(self) -> int:
        return len(self._parents_of_leaves)

    @property
    def leaves(self) -> List[TreeNode]:
        return [TreeNode(self, i) for i in self._leaves]

    @property
    def parents_of_leaves(self) -> List[TreeNode]:
        return [TreeNode(self, i) for i in self._parents_of_leaves]

    @property
    def interior_nodes(self) -> List[TreeNode]:
        ids = np.flatnonzero(self._in_use & (self._left >= 0))
        return [TreeNode(self, i) for i in ids]

    def random_leaf(self, generator) -> TreeNode:
        return TreeNode(self, self._leaves.choice(generator))

    def random_parent_of_leaves(self, generator) -> Optional[TreeNode]:
        node_id = self._parents_of_leaves.choice(generator)
        return None if node_id is None else TreeNode(self, node_id)

    def grow(self, leaf: TreeNode, left_mean: float = 0.0, right_mean: float = 0.0):
        self._owns(leaf)
        return leaf.grow(left_mean, right_mean)

    def prune_descendants(self, node: TreeNode) -> int:
        self._owns(node)
        return node.prune_descendants()

    def split_variables(self) -> NDArray[np.int64]:
        return self._var[self._in_use & (self._left >= 0)].copy()

    # ---- data ----
    def populate_data(self, residual_data, rows=None):
        """Route rows of ``residual_data`` (all of them by default) down the tree."""
        self._residual_data = residual_data
        if rows is None:
            rows = np.arange(len(residual_data), dtype=np.intp)
        self.root.populate_data(rows, True)

    def populate_sufficient_statistics(self, suf):
        self._suf_prototype = suf.create()
        self.root.populate_sufficient_statistics(suf, True)

    def clear_data_and_delete_suf(self):
        self._rows = {}
        self._suf = {}
        self._residual_data = None

    @property
    def has_data(self) -> bool:
        return self._residual_data is not None

    def remove_mean_effect(self):
        for leaf in self.leaves:
            leaf.remove_mean_effect()

    def replace_mean_effect(self):
        for leaf in self.leaves:
            leaf.replace_mean_effect()

    # ---- prediction ----
    def predict(self, x) -> float:
        return self.root.predict(x)

    def evaluate(self, X: np.ndarray) -> NDArray[np.float64]:
        """
        Evaluate the tree for a given input data matrix.

        Parameters:
        - X: np.ndarray
            Input data (2D array).

        Returns:
        - np.ndarray
            Output values of the tree.
        """
        X = np.ascontiguousarray(X, dtype=np.float64)
        return _traverse_tree_numba(X, self._left, self._right, self._var, self._cutpoint, self._mean)

    # ---- serialization ----
    def to_matrix(self) -> NDArray[np.float64]:
        """
        Serialize the tree as an (N, 4) matrix with rows
        ``(parent_row, mean, variable_index or -1, cutpoint or +inf)`` in
        preorder; a left child always directly follows its parent.
        """
        rows = []
        stack = [(ROOT, -1)]
        while stack:
            node_id, parent_row = stack.pop()
            row = len(rows)
            if self._left[node_id] >= 0:
                rows.append((parent_row, self._mean[node_id], self._var[node_id], self._cutpoint[node_id]))
                stack.append((self._right[node_id], row))
                stack.append((self._left[node_id], row))
            else:
                rows.append((parent_row, self._mean[node_id], -1, np.inf))
        return np.array(rows, dtype=np.float64)

    def from_matrix(self, matrix) -> "Tree":
        """Rebuild this tree in place from the output of ``to_matrix``."""
        matrix = np.asarray(matrix, dtype=np.float64)
        if matrix.ndim != 2 or matrix.shape[1] != 4 or matrix.shape[0] == 0:
            raise ValueError(f"Tree matrix must have shape (N, 4), got {matrix.shape}")
        n_nodes = matrix.shape[0]
        if matrix[0, 0] != -1:
            raise ValueError("The first row of a tree matrix must be the root (parent -1).")

        size = Tree.default_size
        while size < n_nodes:
            size *= 2
        self._allocate(size)
        self._in_use[:n_nodes] = True
        self._free = list(range(size - 1, n_nodes - 1, -1))
        self._clear_data_state()

        for row in range(n_nodes):
            parent, mean_value, var, cutpoint = matrix[row]
            self._mean[row] = mean_value
            if var >= 0:
                self._var[row] = int(var)
                self._cutpoint[row] = cutpoint
            if row == ROOT:
                continue
            parent = int(parent)
            if not 0 <= parent < row:
                raise ValueError(f"Row {row} has parent {parent}; parents must precede their children.")
            if self._var[parent] < 0:
                raise ValueError(f"Row {row} has leaf row {parent} as its parent.")
            self._parent[row] = parent
            self._depth[row] = self._depth[parent] + 1
            if self._left[parent] < 0:
                if row != parent + 1:
                    raise ValueError(f"Left child of row {parent} must be row {parent + 1}, got {row}.")
                self._left[parent] = row
            elif self._right[parent] < 0:
                self._right[parent] = row
            else:
                raise ValueError(f"Row {parent} has more than two children.")

        interior = self._var[:n_nodes] >= 0
        if np.any(interior & (self._right[:n_nodes] < 0)):
            bad = int(np.flatnonzero(interior & (self._right[:n_nodes] < 0))[0])
            raise ValueError(f"Interior row {bad} does not have two children.")
        self._register_special_nodes()
        return self

    @classmethod
    def new_from_matrix(cls, matrix) -> "Tree":
        return cls().from_matrix(matrix)

    def _register_special_nodes(self):
        self._leaves = NodeIdSet()
        self._parents_of_leaves = NodeIdSet()
        for node_id in np.flatnonzero(self._in_use):
            if self._left[node_id] < 0:
                self._leaves.add(node_id)
            elif self._left[self._left[node_id]] < 0 and self._left[self._right[node_id]] < 0:
                self._parents_of_leaves.add(node_id)

    def copy(self) -> "Tree":
        """Copy of the structure and leaf values, without data."""
        new = Tree.__new__(Tree)
        new._parent = self._parent.copy()
        new._left = self._left.copy()
        new._right = self._right.copy()
        new._var = self._var.copy()
        new._cutpoint = self._cutpoint.copy()
        new._mean = self._mean.copy()
        new._depth = self._depth.copy()
        new._in_use = self._in_use.copy()
        new._free = list(self._free)
        new._leaves = self._leaves.copy()
        new._parents_of_leaves = self._parents_of_leaves.copy()
        new._clear_data_state()
        return new

    def __eq__(self, other):
        if not isinstance(other, Tree):
            return NotImplemented
        stack = [(ROOT, ROOT)]
        while stack:
            a, b = stack.pop()
            a_leaf = self._left[a] < 0
            if a_leaf != (other._left[b] < 0):
                return False
            if a_leaf:
                if self._mean[a] != other._mean[b]:
                    return False
            else:
                if self._var[a] != other._var[b] or self._cutpoint[a] != other._cutpoint[b]:
                    return False
                stack.append((self._left[a], other._left[b]))
                stack.append((self._right[a], other._right[b]))
        return True

    __hash__ = None

    def __str__(self):
        return self._print_tree()

    def __repr__(self):
        return f"Tree(n_nodes={self.number_of_nodes()}, n_leaves={self.number_of_leaves()})"

    def _print_tree(self, node_id=ROOT, prefix=""):
        pprefix = prefix + "\t"
        if self._left[node_id] < 0:
            return prefix + self._print_node(node_id)
        return (
            prefix
            + self._print_node(node_id)
            + "\n"
            + self._print_tree(self._left[node_id], pprefix)
            + "\n"
            + self._print_tree(self._right[node_id], pprefix)
        )

    def _print_node(self, node_id):
        n_output = len(self._rows[node_id]) if node_id in self._rows else "NA"
        if self._left[node_id] < 0:
            return f"Val: {self._mean[node_id]:0.9f} (leaf, n = {n_output})"
        return f"X_{self._var[node_id]} <= {self._cutpoint[node_id]:0.9f}" + \
            f" (split, n = {n_output})"
