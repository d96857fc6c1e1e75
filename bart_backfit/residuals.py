import copy
from abc import ABC, abstractmethod
from typing import Type

import numpy as np


class IncompatibleResidualDataError(TypeError):
    """Raised when a sufficient statistic is fed residual data of the wrong kind."""


class ResidualRegressionData(ABC):
    """
    Residual records for every training row of one sampler.

    Rows are addressed by integer index; tree nodes keep arrays of the
    indices routed to them and never own the records.
    """

    def __init__(self, x):
        x = np.asarray(x, dtype=np.float64)
        if x.ndim != 2:
            raise ValueError(f"x must be a 2d array, got shape {x.shape}")
        self.x = x

    def __len__(self):
        return self.x.shape[0]

    @abstractmethod
    def add_to_residual(self, rows, value: float):
        """Add ``value`` to the residual of each row in ``rows``."""


class GaussianResidualRegressionData(ResidualRegressionData):

    def __init__(self, x, y, original_prediction):
        super().__init__(x)
        self.y = np.asarray(y, dtype=np.float64).copy()
        if self.y.shape != (self.x.shape[0],):
            raise ValueError("y must have one entry per row of x")
        self.residual = self.y - np.asarray(original_prediction, dtype=np.float64)

    def add_to_residual(self, rows, value):
        self.residual[rows] += value

    def sum_of_squared_residuals(self) -> float:
        return float(np.dot(self.residual, self.residual))


class LogitResidualData(ResidualRegressionData):
    """
    Binomial rows augmented with latent logistic data.

    ``information_weighted_sum`` and ``sum_of_information`` hold, per row, the
    sums of ``z / lambda`` and ``1 / lambda`` over the row's trials. The
    residual is implied by ``prediction``, the sum of every other tree.
    """

    def __init__(self, x, successes, trials, original_prediction):
        super().__init__(x)
        self.y = np.asarray(successes, dtype=np.float64).copy()
        self.n = np.asarray(trials, dtype=np.float64).copy()
        if self.y.shape != (self.x.shape[0],) or self.n.shape != self.y.shape:
            raise ValueError("successes and trials must have one entry per row of x")
        if np.any(self.y < 0) or np.any(self.y > self.n):
            raise ValueError("successes must lie between 0 and the number of trials")
        self.prediction = np.asarray(original_prediction, dtype=np.float64).copy()
        self.information_weighted_sum = np.zeros_like(self.y)
        self.sum_of_information = np.zeros_like(self.y)

    def add_to_residual(self, rows, value):
        # A larger residual is a smaller prediction from the remaining trees.
        self.prediction[rows] -= value

    def set_latent_data(self, rows, information_weighted_sum, sum_of_information):
        self.information_weighted_sum[rows] = information_weighted_sum
        self.sum_of_information[rows] = sum_of_information

    def information_weighted_residual_sum(self, rows=None):
        if rows is None:
            rows = slice(None)
        return self.information_weighted_sum[rows] - self.prediction[rows] * self.sum_of_information[rows]


class SufficientStatisticsBase(ABC):
    """Per-node aggregate of the residual rows reachable from a node."""

    data_type: Type[ResidualRegressionData] = ResidualRegressionData

    def update(self, data: ResidualRegressionData, rows):
        if not isinstance(data, self.data_type):
            raise IncompatibleResidualDataError(
                f"{type(self).__name__} requires {self.data_type.__name__}, got {type(data).__name__}")
        self._accumulate(data, np.atleast_1d(np.asarray(rows, dtype=np.intp)))

    @abstractmethod
    def _accumulate(self, data, rows):
        pass

    @abstractmethod
    def clear(self):
        pass

    def clone(self):
        return copy.copy(self)

    def create(self):
        return type(self)()


class GaussianBartSufficientStatistics(SufficientStatisticsBase):
    data_type = GaussianResidualRegressionData

    def __init__(self):
        self.clear()

    def clear(self):
        self.n = 0
        self.sum = 0.0
        self.sumsq = 0.0

    def _accumulate(self, data, rows):
        r = data.residual[rows]
        self.n += len(r)
        self.sum += float(r.sum())
        self.sumsq += float(np.dot(r, r))

    @property
    def ybar(self) -> float:
        return self.sum / self.n if self.n > 0 else 0.0

    @property
    def sample_var(self) -> float:
        if self.n < 2:
            return 0.0
        return max(self.sumsq - self.n * self.ybar ** 2, 0.0) / (self.n - 1)

    def __repr__(self):
        return f"GaussianBartSufficientStatistics(n={self.n}, sum={self.sum:.6g}, sumsq={self.sumsq:.6g})"


class LogitSufficientStatistics(SufficientStatisticsBase):
    data_type = LogitResidualData

    def __init__(self):
        self.clear()

    def clear(self):
        self.n = 0
        self.sum_of_information = 0.0
        self.information_weighted_sum = 0.0
        self.information_weighted_residual_sum = 0.0

    def _accumulate(self, data, rows):
        self.n += len(rows)
        self.sum_of_information += float(data.sum_of_information[rows].sum())
        self.information_weighted_sum += float(data.information_weighted_sum[rows].sum())
        self.information_weighted_residual_sum += float(data.information_weighted_residual_sum(rows).sum())

    def __repr__(self):
        return (f"LogitSufficientStatistics(n={self.n}, sum_of_information={self.sum_of_information:.6g}, "
                f"information_weighted_residual_sum={self.information_weighted_residual_sum:.6g})")
