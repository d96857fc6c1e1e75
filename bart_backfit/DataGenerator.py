import logging

import numpy as np
from scipy.special import expit

LOGGER = logging.getLogger(__name__)


class DataGenerator:
    """
    Synthetic data for exercising the regression and logit samplers.

    Scenarios are methods returning ``(X, y_noiseless)``, which ``generate``
    turns into noisy data, or ``(X, y, y_noiseless)`` when the scenario adds
    its own noise.
    """

    def __init__(self, n_samples=100, n_features=1, noise=0.1, random_seed=None):
        """
        Initialize the generator with default parameters.

        Args:
            n_samples (int): Number of data points.
            n_features (int): Number of features.
            noise (float): Standard deviation of noise.
            random_seed (int): Random seed for reproducibility.
        """
        self.n_samples = n_samples
        self.n_features = n_features
        self.noise = noise
        self.random_seed = random_seed
        self.rng = np.random.default_rng(random_seed)

    def _add_noise(self, y):
        """Add Gaussian noise to target values."""
        return y + self.rng.normal(0, self.noise, size=len(y))

    def generate(self, scenario: str = "linear", **kwargs) -> tuple:
        """
        Generate data for a specific scenario.

        Args:
            scenario (str): Name of the scenario.

        Returns:
            tuple: (X, y) where X is the feature matrix and y is the target array.
        """
        func = getattr(self, scenario, None)
        if scenario.startswith("_") or not callable(func) or scenario == "generate":
            raise ValueError(f"Unknown scenario: {scenario}")
        result = func(**kwargs)
        if not isinstance(result, tuple) or len(result) not in [2, 3]:
            raise TypeError(f"Expected tuple of length 2 or 3 from {scenario}, got {type(result)}")
        LOGGER.debug("Generated scenario %s with %d samples", scenario, self.n_samples)
        if len(result) == 2:
            X, y_noiseless = result
            return X, self._add_noise(y_noiseless)
        X, y, _ = result
        return X, y

    def linear(self):
        X = self.rng.uniform(0, 1, (self.n_samples, self.n_features))
        weights = self.rng.uniform(1, 5, size=self.n_features)
        y_noiseless = X @ weights
        return X, y_noiseless

    def piecewise(self):
        """Step function of the first feature; suits a single split."""
        X = self.rng.uniform(0, 1, (self.n_samples, self.n_features))
        y_noiseless = np.where(X[:, 0] <= 0.5, -1.0, 1.0)
        return X, y_noiseless

    def friedman1(self):
        """
        Friedman #1:
        y = 10*sin(pi*X[:,0]*X[:,1]) + 20*(X[:,2]-0.5)**2 + 10*X[:,3] + 5*X[:,4] + noise
        Requires at least 5 features.
        """
        if self.n_features < 5:
            raise ValueError("Friedman1 requires at least 5 features.")
        X = self.rng.uniform(0, 1, (self.n_samples, self.n_features))
        y_noiseless = (10 * np.sin(np.pi * X[:, 0] * X[:, 1]) +
                       20 * (X[:, 2] - 0.5) ** 2 +
                       10 * X[:, 3] +
                       5 * X[:, 4])
        return X, y_noiseless

    def binary_logit(self, scale=3.0):
        """Bernoulli labels with success probability expit(scale * (2 * X[:, 0] - 1))."""
        X = self.rng.uniform(0, 1, (self.n_samples, self.n_features))
        prob = expit(scale * (2 * X[:, 0] - 1))
        y = self.rng.binomial(1, prob).astype(float)
        return X, y, prob
