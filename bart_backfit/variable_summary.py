import logging
import math
import warnings
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

DEFAULT_DISTINCT_VALUE_CUTOFF = 20


class NotFinalizedError(RuntimeError):
    """Raised when cutpoints are requested from a summary that has not been finalized."""


class ContinuousCutpointStrategy(str, Enum):
    UNIFORM_CONTINUOUS = "UNIFORM_CONTINUOUS"
    UNIFORM_DISCRETE = "UNIFORM_DISCRETE"
    DISCRETE_QUANTILES = "DISCRETE_QUANTILES"


class SerializedVariableSummary(BaseModel):
    model_config = ConfigDict(extra="forbid")

    finalized: bool
    variable_number: int
    is_continuous: bool
    strategy: ContinuousCutpointStrategy = ContinuousCutpointStrategy.UNIFORM_CONTINUOUS
    data: List[float]


class _CutpointGenerator:
    def random_cutpoint(self, generator, lo: float, hi: float) -> Tuple[bool, float]:
        raise NotImplementedError


class _IntervalCutpoints(_CutpointGenerator):
    """Cutpoints drawn uniformly over the observed interval."""
    def __init__(self, lo: float, hi: float):
        self.lo = float(lo)
        self.hi = float(hi)

    def random_cutpoint(self, generator, lo, hi):
        lo = max(lo, self.lo)
        hi = min(hi, self.hi)
        if not lo < hi:
            return False, math.nan
        cutpoint = generator.uniform(lo, hi)
        if cutpoint <= lo:
            # Generator.uniform samples [lo, hi); the lower end is not a legal split.
            return False, math.nan
        return True, float(cutpoint)

    def data(self):
        return [self.lo, self.hi]


class _ListedCutpoints(_CutpointGenerator):
    """A fixed, sorted collection of candidate cutpoints."""
    def __init__(self, cutpoints):
        self.cutpoints = np.unique(np.asarray(cutpoints, dtype=np.float64))

    def random_cutpoint(self, generator, lo, hi):
        start = np.searchsorted(self.cutpoints, lo, side="right")
        stop = np.searchsorted(self.cutpoints, hi, side="left")
        if stop <= start:
            return False, math.nan
        return True, float(self.cutpoints[generator.integers(start, stop)])

    def data(self):
        return self.cutpoints.tolist()


class VariableSummary:
    """
    Catalog of legal cutpoints for one predictor.

    Values are accumulated with ``observe`` while the training data are added.
    ``finalize`` then decides whether the variable is treated as continuous
    (more distinct values than the cutoff) or discrete, and builds the
    cutpoint generator used by ``random_cutpoint``.
    """

    def __init__(self, variable_number: int):
        self.variable_number = int(variable_number)
        self._observed = []
        self._impl: Optional[_CutpointGenerator] = None
        self.is_continuous = False
        self.strategy = ContinuousCutpointStrategy.UNIFORM_CONTINUOUS

    @property
    def finalized(self) -> bool:
        return self._impl is not None

    def observe(self, value):
        if self.finalized:
            raise RuntimeError(
                f"Variable {self.variable_number} is finalized; reset() before observing new values.")
        value = float(value)
        if math.isnan(value):
            raise ValueError(f"Variable {self.variable_number} cannot observe NaN.")
        self._observed.append(value)

    def observe_many(self, values):
        if self.finalized:
            raise RuntimeError(
                f"Variable {self.variable_number} is finalized; reset() before observing new values.")
        values = np.asarray(values, dtype=np.float64).ravel()
        if np.isnan(values).any():
            raise ValueError(f"Variable {self.variable_number} cannot observe NaN.")
        self._observed.extend(values.tolist())

    def reset(self):
        self._observed = []
        self._impl = None
        self.is_continuous = False
        self.strategy = ContinuousCutpointStrategy.UNIFORM_CONTINUOUS

    def finalize(self, distinct_value_cutoff: int = DEFAULT_DISTINCT_VALUE_CUTOFF,
                 strategy: ContinuousCutpointStrategy = ContinuousCutpointStrategy.UNIFORM_CONTINUOUS):
        if self.finalized:
            raise RuntimeError(f"Variable {self.variable_number} is already finalized.")
        strategy = ContinuousCutpointStrategy(strategy)
        values = np.asarray(self._observed, dtype=np.float64)
        distinct = np.unique(values)
        self.strategy = strategy
        self.is_continuous = len(distinct) > distinct_value_cutoff

        if len(distinct) < 2:
            warnings.warn(f"Variable {self.variable_number} has fewer than two distinct values "
                          "and will never be split on.")

        if not self.is_continuous:
            self._impl = _ListedCutpoints(distinct[:-1])
        elif strategy == ContinuousCutpointStrategy.UNIFORM_CONTINUOUS:
            self._impl = _IntervalCutpoints(distinct[0], distinct[-1])
        elif strategy == ContinuousCutpointStrategy.UNIFORM_DISCRETE:
            lo, hi = distinct[0], distinct[-1]
            self._impl = _ListedCutpoints(np.linspace(lo, hi, distinct_value_cutoff, endpoint=False))
        else:
            q_vals = np.linspace(0, 1, distinct_value_cutoff, endpoint=False)
            quantiles = np.unique(np.quantile(values, q_vals))
            self._impl = _ListedCutpoints(quantiles[quantiles < distinct[-1]])
        logger.debug("Finalized variable %d (continuous=%s, strategy=%s)",
                     self.variable_number, self.is_continuous, strategy.value)
        self._observed = []

    def random_cutpoint(self, generator, node) -> Tuple[bool, float]:
        """
        Draw a cutpoint that is still reachable at ``node``.

        Returns ``(False, nan)`` when the ancestors of ``node`` have already
        exhausted the legal cutpoints for this variable.
        """
        if not self.finalized:
            raise NotFinalizedError(
                f"random_cutpoint called on variable {self.variable_number} before finalize().")
        lo, hi = node.get_cutpoint_range(self.variable_number)
        return self._impl.random_cutpoint(generator, lo, hi)

    def serialize(self) -> SerializedVariableSummary:
        if not self.finalized:
            return SerializedVariableSummary(
                finalized=False, variable_number=self.variable_number,
                is_continuous=False, strategy=self.strategy, data=list(self._observed))
        return SerializedVariableSummary(
            finalized=True, variable_number=self.variable_number,
            is_continuous=self.is_continuous, strategy=self.strategy,
            data=self._impl.data())

    @classmethod
    def deserialize(cls, serialized: SerializedVariableSummary) -> "VariableSummary":
        if isinstance(serialized, dict):
            serialized = SerializedVariableSummary.model_validate(serialized)
        summary = cls(serialized.variable_number)
        summary.strategy = serialized.strategy
        if not serialized.finalized:
            summary._observed = list(serialized.data)
            return summary
        summary.is_continuous = serialized.is_continuous
        if serialized.is_continuous and serialized.strategy == ContinuousCutpointStrategy.UNIFORM_CONTINUOUS:
            if len(serialized.data) != 2:
                raise ValueError("A continuous variable summary needs exactly two interval bounds.")
            summary._impl = _IntervalCutpoints(*serialized.data)
        else:
            summary._impl = _ListedCutpoints(serialized.data)
        return summary

    def __repr__(self):
        state = "finalized" if self.finalized else f"{len(self._observed)} observed"
        return f"VariableSummary(variable_number={self.variable_number}, {state})"
