import logging
import math
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
from numpy.typing import NDArray
from scipy.special import expit

from .params import Tree
from .variable_summary import (
    ContinuousCutpointStrategy,
    DEFAULT_DISTINCT_VALUE_CUTOFF,
    SerializedVariableSummary,
    VariableSummary,
)

logger = logging.getLogger(__name__)


@dataclass
class ModelState:
    """Snapshot of the ensemble taken after one MCMC sweep."""
    trees: List[Tree]
    global_params: Dict[str, float] = field(default_factory=dict)

    def evaluate(self, X) -> NDArray[np.float64]:
        X = np.asarray(X, dtype=np.float64)
        out = np.zeros(X.shape[0], dtype=np.float64)
        for tree in self.trees:
            out += tree.evaluate(X)
        return out

    @property
    def vars_histogram(self) -> Counter:
        """Number of splits on each variable across the ensemble."""
        counts = Counter()
        for tree in self.trees:
            counts.update(tree.split_variables().tolist())
        return counts


class BartModelBase(ABC):
    """
    Sum-of-trees model.

    Holds the ensemble of trees and one VariableSummary per predictor. Data
    are added row by row (or as a batch); ``finalize_data`` must be called
    once all rows are in, before predicting or sampling.

    Parameters:
    - number_of_trees: int
        Size of the ensemble.
    - mean: float
        Initial value of the ensemble prediction, split evenly across trees.
    """

    def __init__(self, number_of_trees: int, mean: float = 0.0):
        if number_of_trees < 1:
            raise ValueError(f"number_of_trees must be positive, got {number_of_trees}")
        self.mean = mean
        self._trees = [Tree(mean / number_of_trees) for _ in range(number_of_trees)]
        self._variable_summaries: List[VariableSummary] = []
        self._finalized = False
        self.structure_version = 0

    # ---- ensemble ----
    @property
    def number_of_trees(self) -> int:
        return len(self._trees)

    @property
    def trees(self) -> List[Tree]:
        return self._trees

    def tree(self, i: int) -> Tree:
        return self._trees[i]

    def set_number_of_trees(self, number_of_trees: int):
        if number_of_trees < 1:
            raise ValueError(f"number_of_trees must be positive, got {number_of_trees}")
        current = self.number_of_trees
        if number_of_trees > current:
            self._trees.extend(Tree(0.0) for _ in range(number_of_trees - current))
        elif number_of_trees < current:
            del self._trees[number_of_trees:]
        self.structure_version += 1

    def rebuild_tree(self, i: int, matrix):
        self._trees[i].from_matrix(matrix)
        self.structure_version += 1

    def restore(self, state: ModelState):
        self._trees = [tree.copy() for tree in state.trees]
        self.set_global_params(state.global_params)
        self.structure_version += 1

    def snapshot(self) -> ModelState:
        return ModelState(trees=[tree.copy() for tree in self._trees],
                          global_params=dict(self.global_params))

    @property
    def global_params(self) -> Dict[str, float]:
        return {}

    def set_global_params(self, params: Dict[str, float]):
        pass

    # ---- variable summaries ----
    @property
    def number_of_variables(self) -> int:
        return len(self._variable_summaries)

    def variable_summary(self, i: int) -> VariableSummary:
        return self._variable_summaries[i]

    @property
    def variable_summaries(self) -> List[VariableSummary]:
        return self._variable_summaries

    def set_variable_summaries(self, serialized: List[SerializedVariableSummary]):
        summaries = [VariableSummary.deserialize(s) for s in serialized]
        if [s.variable_number for s in summaries] != list(range(len(summaries))):
            raise ValueError("Variable summaries must be numbered 0..p-1 in order.")
        if self.sample_size > 0 and len(summaries) != self.number_of_variables:
            raise ValueError(
                f"Got {len(summaries)} variable summaries for data with {self.number_of_variables} variables.")
        self._variable_summaries = summaries
        self._finalized = all(s.finalized for s in summaries)

    @property
    def finalized(self) -> bool:
        return self._finalized

    def finalize_data(self, distinct_value_cutoff: int = DEFAULT_DISTINCT_VALUE_CUTOFF,
                      strategy: ContinuousCutpointStrategy = ContinuousCutpointStrategy.UNIFORM_CONTINUOUS):
        if self._finalized:
            raise RuntimeError("finalize_data has already been called on this model.")
        if not self._variable_summaries:
            raise RuntimeError("No data have been observed; nothing to finalize.")
        for summary in self._variable_summaries:
            if not summary.finalized:
                summary.finalize(distinct_value_cutoff, strategy)
        self._finalized = True
        logger.debug("Finalized %d variable summaries", self.number_of_variables)

    def check_variable_dimension(self, p: int):
        if not self._variable_summaries:
            self._variable_summaries = [VariableSummary(i) for i in range(p)]
        elif p != self.number_of_variables:
            raise ValueError(f"Expected {self.number_of_variables} predictors, got {p}.")

    def _observe_predictors(self, X: NDArray[np.float64]):
        if self._finalized:
            raise RuntimeError("Cannot add data after finalize_data has been called.")
        self.check_variable_dimension(X.shape[1])
        for j, summary in enumerate(self._variable_summaries):
            summary.observe_many(X[:, j])

    # ---- prediction ----
    def _check_can_predict(self, p: int):
        if not self._finalized:
            raise RuntimeError("finalize_data must be called before predicting.")
        if p != self.number_of_variables:
            raise ValueError(f"Expected {self.number_of_variables} predictors, got {p}.")

    def predict(self, x) -> float:
        """Sum of the tree predictions at a single point ``x``."""
        x = np.asarray(x, dtype=np.float64).ravel()
        self._check_can_predict(len(x))
        return float(sum(tree.predict(x) for tree in self._trees))

    def evaluate(self, X) -> NDArray[np.float64]:
        """Vectorized ``predict`` over the rows of ``X``."""
        X = np.asarray(X, dtype=np.float64)
        if X.ndim != 2:
            raise ValueError(f"X must be a 2d array, got shape {X.shape}")
        self._check_can_predict(X.shape[1])
        out = np.zeros(X.shape[0], dtype=np.float64)
        for tree in self._trees:
            out += tree.evaluate(X)
        return out

    # ---- data ----
    @property
    @abstractmethod
    def sample_size(self) -> int:
        pass

    @property
    @abstractmethod
    def X(self) -> NDArray[np.float64]:
        pass


class GaussianBartModel(BartModelBase):
    """
    BART with Gaussian errors, ``y = sum of trees + N(0, sigsq)``.
    """

    def __init__(self, number_of_trees: int, mean: float = 0.0, sigsq: float = 1.0):
        super().__init__(number_of_trees, mean)
        self._x_rows: List[NDArray[np.float64]] = []
        self._y: List[float] = []
        self._X_cache: Optional[NDArray[np.float64]] = None
        self.set_sigsq(sigsq)

    def add_data(self, x, y: float):
        x = np.asarray(x, dtype=np.float64).ravel()
        self._observe_predictors(x[None, :])
        self._x_rows.append(x)
        self._y.append(float(y))
        self._X_cache = None

    def set_data(self, X, y):
        X = np.asarray(X, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64).ravel()
        if X.ndim != 2 or X.shape[0] != len(y):
            raise ValueError(f"X must be 2d with one row per response; got {X.shape} and {y.shape}")
        self._observe_predictors(X)
        self._x_rows.extend(X)
        self._y.extend(y.tolist())
        self._X_cache = None

    @property
    def sample_size(self) -> int:
        return len(self._y)

    @property
    def X(self):
        if self._X_cache is None:
            p = self.number_of_variables
            self._X_cache = np.array(self._x_rows, dtype=np.float64).reshape(-1, p)
        return self._X_cache

    @property
    def y(self):
        return np.asarray(self._y, dtype=np.float64)

    @property
    def sigsq(self) -> float:
        return self._sigsq

    @property
    def sigma(self) -> float:
        return math.sqrt(self._sigsq)

    def set_sigsq(self, sigsq: float):
        if sigsq <= 0:
            raise ValueError(f"sigsq must be positive, got {sigsq}")
        self._sigsq = float(sigsq)

    @property
    def global_params(self):
        return {"sigsq": self._sigsq}

    def set_global_params(self, params):
        if "sigsq" in params:
            self.set_sigsq(params["sigsq"])


class LogitBartModel(BartModelBase):
    """
    BART for binomial data on the logit scale:
    ``logit P(success) = sum of trees``.
    """

    def __init__(self, number_of_trees: int, mean: float = 0.0):
        super().__init__(number_of_trees, mean)
        self._x_rows: List[NDArray[np.float64]] = []
        self._successes: List[float] = []
        self._trials: List[float] = []
        self._X_cache: Optional[NDArray[np.float64]] = None

    def add_data(self, x, successes: float, trials: float = 1):
        if trials < 1 or not 0 <= successes <= trials:
            raise ValueError(f"Invalid binomial observation: {successes} successes in {trials} trials.")
        x = np.asarray(x, dtype=np.float64).ravel()
        self._observe_predictors(x[None, :])
        self._x_rows.append(x)
        self._successes.append(float(successes))
        self._trials.append(float(trials))
        self._X_cache = None

    def set_data(self, X, successes, trials=None):
        X = np.asarray(X, dtype=np.float64)
        successes = np.asarray(successes, dtype=np.float64).ravel()
        trials = np.ones_like(successes) if trials is None else np.asarray(trials, dtype=np.float64).ravel()
        if X.ndim != 2 or X.shape[0] != len(successes) or len(trials) != len(successes):
            raise ValueError("X, successes and trials must have the same number of rows.")
        if np.any(trials < 1) or np.any(successes < 0) or np.any(successes > trials):
            raise ValueError("successes must lie between 0 and a positive number of trials.")
        self._observe_predictors(X)
        self._x_rows.extend(X)
        self._successes.extend(successes.tolist())
        self._trials.extend(trials.tolist())
        self._X_cache = None

    @property
    def sample_size(self) -> int:
        return len(self._successes)

    @property
    def X(self):
        if self._X_cache is None:
            p = self.number_of_variables
            self._X_cache = np.array(self._x_rows, dtype=np.float64).reshape(-1, p)
        return self._X_cache

    @property
    def y(self):
        return np.asarray(self._successes, dtype=np.float64)

    @property
    def n(self):
        return np.asarray(self._trials, dtype=np.float64)

    def success_probability(self, x) -> float:
        return float(expit(self.predict(x)))

    def success_probabilities(self, X) -> NDArray[np.float64]:
        return expit(self.evaluate(X))
