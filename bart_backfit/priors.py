import math

import numpy as np
from numba import njit
from scipy.special import expit, logit
from scipy.stats import invgamma, chi2
from sklearn.linear_model import LinearRegression

from .util import Dataset


class TreeDepthPrior:
    """
    Branching-process prior on tree structure.

    A node at depth ``d`` is split with probability ``alpha / (1 + d) ** beta``.
    """
    def __init__(self, alpha=0.95, beta=2.0):
        if not 0 < alpha < 1:
            raise ValueError(f"alpha must lie in (0, 1), got {alpha}")
        if beta < 0:
            raise ValueError(f"beta must be non-negative, got {beta}")
        self.alpha = alpha
        self.beta = beta

    def probability_of_split(self, depth: int) -> float:
        return self.alpha / (1.0 + depth) ** self.beta

    def log_grow_ratio(self, depth: int) -> float:
        """
        Log prior ratio of turning a leaf at ``depth`` into a split with two
        leaf children. Prune uses the negative.
        """
        p_split = self.probability_of_split(depth)
        p_child = self.probability_of_split(depth + 1)
        return math.log(p_split) + 2.0 * math.log1p(-p_child) - math.log1p(-p_split)

    def tree_log_prior(self, tree) -> float:
        """Log prior of the tree's shape, ignoring the split rules."""
        log_prior = 0.0
        for node in tree.interior_nodes:
            log_prior += math.log(self.probability_of_split(node.depth))
        for leaf in tree.leaves:
            log_prior += math.log1p(-self.probability_of_split(leaf.depth))
        return log_prior


class NodeMeanPrior:
    """Normal prior on leaf means."""
    def __init__(self, mu=0.0, sigsq=1.0):
        if sigsq <= 0:
            raise ValueError(f"Prior variance must be positive, got {sigsq}")
        self.mu = mu
        self.sigsq = sigsq


class ResidualVariancePrior:
    """
    Conjugate prior for the Gaussian residual variance,
    ``1 / sigsq ~ Gamma(weight / 2, weight * sigma_guess**2 / 2)``.

    Args:
        sigma_guess (float): Prior guess at the residual standard deviation.
        weight (float): Prior sample size (degrees of freedom) behind the guess.
    """
    def __init__(self, sigma_guess=1.0, weight=3.0):
        if sigma_guess <= 0 or weight <= 0:
            raise ValueError("sigma_guess and weight must both be positive.")
        self.sigma_guess = sigma_guess
        self.weight = weight

    @classmethod
    def from_data(cls, data: Dataset, eps_q=0.9, eps_nu=3.0, specification="linear"):
        """
        Calibrate the prior so that a residual standard deviation estimated
        from the data sits at the ``eps_q`` quantile of the prior on sigma.
        """
        sigma_hat: float
        if specification == "naive" or (specification == "linear" and data.n <= data.p + 1):
            sigma_hat = float(np.std(data.y))
        elif specification == "linear":
            # Fit a linear model to the data
            model = LinearRegression().fit(data.X, data.y)
            resids = data.y - model.predict(data.X)
            sigma_hat = float(np.std(resids))
        else:
            raise ValueError("Invalid specification for the noise variance prior.")
        if sigma_hat == 0:
            sigma_hat = 1.0

        # chi2.ppf suffices
        c = chi2.ppf(1 - eps_q, df=eps_nu).item()
        eps_lambda = (sigma_hat ** 2 * c) / eps_nu
        return cls(sigma_guess=math.sqrt(eps_lambda), weight=eps_nu)

    def sample_sigsq(self, sum_of_squares: float, n: int, generator) -> float:
        """Draw sigsq from its inverse-gamma full conditional."""
        post_alpha = (self.weight + n) / 2
        post_beta = (self.weight * self.sigma_guess ** 2 + sum_of_squares) / 2
        return float(invgamma.rvs(a=post_alpha, scale=post_beta, random_state=generator))


@njit(cache=True)
def _rightmost_interval(u, lam):
    z = 1.0
    x = math.exp(-0.5 * lam)
    j = 0
    while True:
        j += 1
        z -= (j + 1) ** 2 * x ** ((j + 1) ** 2 - 1)
        if z > u:
            return True
        j += 1
        z += (j + 1) ** 2 * x ** ((j + 1) ** 2 - 1)
        if z < u:
            return False


@njit(cache=True)
def _leftmost_interval(u, lam):
    h = (0.5 * math.log(2.0) + 2.5 * math.log(math.pi) - 2.5 * math.log(lam)
         - math.pi ** 2 / (2.0 * lam) + 0.5 * lam)
    log_u = math.log(u)
    z = 1.0
    x = math.exp(-math.pi ** 2 / (2.0 * lam))
    k = lam / math.pi ** 2
    j = 0
    while True:
        j += 1
        z -= k * x ** (j * j - 1)
        if h + math.log(z) > log_u:
            return True
        j += 1
        z += (j + 1) ** 2 * x ** ((j + 1) ** 2 - 1)
        if h + math.log(z) < log_u:
            return False


class LogitDataImputer:
    """
    Latent data for the logit model.

    Each binomial trial is written as ``z = eta + eps`` with ``eps`` logistic,
    and the logistic is a scale mixture of normals,
    ``eps | lam ~ N(0, lam)`` with ``lam = (2 psi)^2`` and ``psi``
    Kolmogorov-Smirnov. Holmes & Held (2006), Bayesian Analysis 1(1).
    """
    def __init__(self, generator):
        self.generator = generator

    def draw_latent_utilities(self, successes: int, trials: int, eta: float) -> np.ndarray:
        """Truncated logistic draws: positive for successes, non-positive for failures."""
        generator = self.generator
        successes = int(successes)
        failures = int(trials) - successes
        p0 = expit(-eta)
        u = np.concatenate([
            p0 + (1.0 - p0) * generator.random(successes),
            p0 * generator.random(failures),
        ])
        u = np.clip(u, np.finfo(np.float64).tiny, 1.0 - np.finfo(np.float64).eps)
        return eta + logit(u)

    def draw_mixing_variance(self, r: float) -> float:
        """Draw ``lam`` given the latent residual ``r`` by rejection sampling."""
        generator = self.generator
        r = abs(r)
        while True:
            y = generator.standard_normal() ** 2
            if r < 1e-8:
                lam = y
            else:
                y = 1.0 + (y - math.sqrt(y * (4.0 * r + y))) / (2.0 * r)
                if generator.random() <= 1.0 / (1.0 + y):
                    lam = r / y
                else:
                    lam = r * y
            if lam <= 0 or not math.isfinite(lam):
                continue
            u = 1.0 - generator.random()
            if lam > 4.0 / 3.0:
                accepted = _rightmost_interval(u, lam)
            else:
                accepted = _leftmost_interval(u, lam)
            if accepted:
                return lam

    def impute(self, successes, trials, eta):
        """
        Impute the latent data for one binomial row.

        Returns:
            tuple: (information weighted sum, sum of information) over the trials.
        """
        z = self.draw_latent_utilities(successes, trials, eta)
        information_weighted_sum = 0.0
        sum_of_information = 0.0
        for zi in z:
            weight = 1.0 / self.draw_mixing_variance(zi - eta)
            information_weighted_sum += weight * zi
            sum_of_information += weight
        return information_weighted_sum, sum_of_information
