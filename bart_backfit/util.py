from abc import ABC, abstractmethod

import numpy as np


# For faster random sampling
def fast_choice(generator, array):
    """Fast random selection from an array."""
    len_arr = len(array)
    if len_arr == 1:
        return array[0]
    return array[generator.integers(0, len_arr)]


class NodeIdSet:
    """
    Set of integer node ids supporting O(1) insertion, removal and uniform
    random selection.

    Ids live in a dense list; a dict maps each id to its position so that a
    removal can swap the last element into the vacated slot.
    """
    def __init__(self, ids=()):
        self._items = []
        self._positions = {}
        for node_id in ids:
            self.add(node_id)

    def add(self, node_id: int):
        node_id = int(node_id)
        if node_id in self._positions:
            return
        self._positions[node_id] = len(self._items)
        self._items.append(node_id)

    def discard(self, node_id: int):
        pos = self._positions.pop(int(node_id), None)
        if pos is None:
            return
        last = self._items.pop()
        if pos < len(self._items):
            self._items[pos] = last
            self._positions[last] = pos

    def remove(self, node_id: int):
        if int(node_id) not in self._positions:
            raise KeyError(node_id)
        self.discard(node_id)

    def choice(self, generator):
        if not self._items:
            return None
        return fast_choice(generator, self._items)

    def copy(self):
        new = NodeIdSet.__new__(NodeIdSet)
        new._items = list(self._items)
        new._positions = dict(self._positions)
        return new

    def clear(self):
        self._items.clear()
        self._positions.clear()

    def __contains__(self, node_id):
        return int(node_id) in self._positions

    def __len__(self):
        return len(self._items)

    def __iter__(self):
        return iter(list(self._items))

    def __eq__(self, other):
        if isinstance(other, NodeIdSet):
            return set(self._items) == set(other._items)
        return set(self._items) == set(other)

    def __repr__(self):
        return f"NodeIdSet({sorted(self._items)})"


class Dataset:

    def __init__(self, X, y, n_trials=None):
        self.X = X
        self.y = y
        self.n_trials = n_trials

    @property
    def n(self):
        return self.X.shape[0]
    @property
    def p(self):
        return self.X.shape[1]


class Preprocessor(ABC):

    @abstractmethod
    def fit(self, X, y):
        pass

    def transform(self, X, y) -> Dataset:
        return Dataset(
            self.transform_X(X),
            self.transform_y(y)
        )

    def fit_transform(self, X, y):
        self.fit(X, y)
        return self.transform(X, y)

    def transform_X(self, X) -> np.ndarray:
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2:
            raise ValueError(f"X must be a 2d array, got shape {X.shape}")
        return X

    def transform_y(self, y) -> np.ndarray:
        return y

    def backtransform_y(self, y) -> np.ndarray:
        return y


class DefaultPreprocessor(Preprocessor):
    """
    Default implementation for preprocessing input data for continuous BART.
    The response is rescaled to [-0.5, 0.5].
    """

    def __init__(self):
        self.y_max = None
        self.y_min = None

    def fit(self, X, y):
        if X is None or y is None or len(X) == 0 or len(y) == 0:
            raise ValueError("X and y cannot be None")
        y = np.asarray(y, dtype=np.float64)
        self.y_max = y.max()
        self.y_min = y.min()

    def transform_y(self, y) -> np.ndarray:
        y = np.asarray(y, dtype=np.float64)
        if self.y_max == self.y_min:
            y_res = y # do not transform if all values are the same
        else:
            y_res = (y - self.y_min) / (self.y_max - self.y_min) - 0.5
        return y_res.reshape(-1, )

    def backtransform_y(self, y) -> np.ndarray:
        if self.y_max == self.y_min: # y not transformed
            return y
        else:
            return (self.y_max - self.y_min) * (y + 0.5) + self.y_min

    @property
    def y_scale(self):
        """Multiplier taking a spread on the transformed scale back to the original scale."""
        if self.y_max == self.y_min:
            return 1.0
        return self.y_max - self.y_min


class ClassificationPreprocessor(Preprocessor):
    """
    Preprocessor for binary classification. The two labels are encoded as 0/1.
    """
    def __init__(self):
        self.uniq_labels = None

    @property
    def labels(self):
        if self.uniq_labels is None:
            raise ValueError("Preprocessor must be fitted before accessing ClassificationPreprocessor.labels")
        return self.uniq_labels

    def fit(self, X, y):
        if X is None or y is None or len(X) == 0 or len(y) == 0:
            raise ValueError("X and y cannot be None")
        self.uniq_labels = np.unique(y)
        if len(self.uniq_labels) > 2:
            raise ValueError(f"Expected at most two classes, got {len(self.uniq_labels)}")

    def transform_y(self, y):
        if y is None or len(y) == 0:
            raise ValueError("y cannot be None or empty")
        if self.uniq_labels is None:
            raise ValueError("Preprocessor must be fitted before transforming data")
        label_to_index = {label: idx for idx, label in enumerate(self.uniq_labels)}
        y_encoded = np.array([label_to_index[val] for val in y], dtype=np.float64)
        return y_encoded

    def backtransform_y(self, y):
        if y is None or len(y) == 0:
            raise ValueError("y cannot be None or empty")
        if self.uniq_labels is None:
            raise ValueError("Preprocessor must be fitted before backtransforming data")
        return self.uniq_labels[np.asarray(y, dtype=int)]
