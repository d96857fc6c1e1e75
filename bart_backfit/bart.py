import math
from abc import ABC, abstractmethod
from typing import Optional

import numpy as np
from scipy.special import expit

from .model import BartModelBase, GaussianBartModel, LogitBartModel
from .priors import ResidualVariancePrior
from .samplers import (
    BartPosteriorSamplerBase,
    GaussianBartPosteriorSampler,
    LogitBartPosteriorSampler,
    default_proposal_probs,
)
from .util import ClassificationPreprocessor, Dataset, DefaultPreprocessor, Preprocessor
from .variable_summary import ContinuousCutpointStrategy, DEFAULT_DISTINCT_VALUE_CUTOFF


class BART(ABC):
    """
    API for the BART model.
    """
    def __init__(self, preprocessor: Preprocessor, ndpost=1000, nskip=100, n_trees=200,
                 tree_alpha: float = 0.95, tree_beta: float = 2.0, f_k: float = 2.0,
                 proposal_probs=None, min_observations: int = 5,
                 distinct_value_cutoff: int = DEFAULT_DISTINCT_VALUE_CUTOFF,
                 cutpoint_strategy=ContinuousCutpointStrategy.UNIFORM_CONTINUOUS,
                 random_state=42):
        """
        Initialize the BART model.
        """
        self.preprocessor = preprocessor
        self.ndpost = int(ndpost)
        self.nskip = int(nskip)
        self.n_trees = int(n_trees)
        self.tree_alpha = tree_alpha
        self.tree_beta = tree_beta
        self.f_k = f_k
        self.proposal_probs = dict(default_proposal_probs if proposal_probs is None else proposal_probs)
        self.min_observations = min_observations
        self.distinct_value_cutoff = distinct_value_cutoff
        self.cutpoint_strategy = ContinuousCutpointStrategy(cutpoint_strategy)
        self.random_state = random_state
        self.generator = np.random.default_rng(random_state)

        self.model: Optional[BartModelBase] = None
        self.sampler: Optional[BartPosteriorSamplerBase] = None
        self.trace = []
        self.is_fitted = False
        self.data: Optional[Dataset] = None

    def get_params(self):
        return {
            "ndpost": self.ndpost, "nskip": self.nskip, "n_trees": self.n_trees,
            "tree_alpha": self.tree_alpha, "tree_beta": self.tree_beta, "f_k": self.f_k,
            "proposal_probs": dict(self.proposal_probs), "min_observations": self.min_observations,
            "distinct_value_cutoff": self.distinct_value_cutoff,
            "cutpoint_strategy": self.cutpoint_strategy.value, "random_state": self.random_state,
        }

    @abstractmethod
    def _build(self, data: Dataset):
        """Create the model and sampler for preprocessed data."""

    def _run(self, quietly):
        self.trace = self.sampler.run(self.ndpost + self.nskip, n_skip=self.nskip, quietly=quietly)
        self.is_fitted = True
        return self

    def fit(self, X, y, quietly=False):
        """
        Fit the BART model.
        """
        self.data = self.preprocessor.fit_transform(X, y)
        self.model, self.sampler = self._build(self.data)
        return self._run(quietly)

    @property
    def range_post(self):
        """
        Get the range of posterior samples.
        """
        total_iterations = len(self.trace)
        if total_iterations < self.ndpost:
            raise ValueError(f"Not enough posterior samples: {total_iterations} < {self.ndpost} (provided ndpost).")
        return range(total_iterations - self.ndpost, total_iterations)

    def _check_fitted(self):
        if not self.is_fitted:
            raise ValueError("Model must be fitted first.")

    def predict_trace(self, k: int, X, backtransform=True):
        """
        Predict using a single trace state.
        """
        X = self.preprocessor.transform_X(X)
        y_eval = self.trace[k].evaluate(X)
        if backtransform:
            return self.preprocessor.backtransform_y(y_eval)
        return y_eval

    def posterior_f(self, X, backtransform=True):
        """
        Get the posterior distribution of f(x) for each row in X.

        Returns:
            Array of shape (n_samples, ndpost).
        """
        self._check_fitted()
        X = self.preprocessor.transform_X(X)
        preds = np.zeros((X.shape[0], self.ndpost))
        for i, k in enumerate(self.range_post):
            preds[:, i] = self.predict_trace(k, X, backtransform=backtransform)
        return preds

    def predict(self, X):
        """
        Predict using the BART model.
        """
        return np.mean(self.posterior_f(X), axis=1)

    def feature_inclusion_frequency(self, normalize: str = 'split'):
        """
        Compute feature inclusion frequency across posterior draws.

        Parameters
        ----------
        normalize : str, default 'split'
            - 'split': aggregate counts across draws then divide by total split count.
            - 'per_draw': normalize each draw's histogram to sum 1, then average over draws.
        """
        self._check_fitted()
        if normalize not in ('split', 'per_draw'):
            raise ValueError("normalize must be one of {'split', 'per_draw'}.")

        p = self.data.p
        freq = np.zeros(p, dtype=float)
        draws_count = 0
        for k in self.range_post:
            hist = self.trace[k].vars_histogram
            draw_total = float(sum(hist.values()))
            if draw_total <= 0.0:
                continue
            for var_idx, count in hist.items():
                freq[var_idx] += count if normalize == 'split' else count / draw_total
            draws_count += 1

        total = freq.sum() if normalize == 'split' else float(draws_count)
        if total > 0:
            freq /= total
        return freq


class GaussianBART(BART):
    """
    BART regression with Gaussian errors. The response is rescaled to
    [-0.5, 0.5] before fitting and predictions are returned on the original scale.
    """

    def __init__(self, ndpost=1000, nskip=100, n_trees=200, tree_alpha: float = 0.95,
                 tree_beta: float = 2.0, f_k=2.0, eps_q: float = 0.9, eps_nu: float = 3,
                 specification="linear", proposal_probs=None, min_observations: int = 5,
                 distinct_value_cutoff: int = DEFAULT_DISTINCT_VALUE_CUTOFF,
                 cutpoint_strategy=ContinuousCutpointStrategy.UNIFORM_CONTINUOUS,
                 random_state=42):
        super().__init__(DefaultPreprocessor(), ndpost, nskip, n_trees, tree_alpha, tree_beta, f_k,
                         proposal_probs, min_observations, distinct_value_cutoff, cutpoint_strategy,
                         random_state)
        self.eps_q = eps_q
        self.eps_nu = eps_nu
        self.specification = specification

    def get_params(self):
        params = super().get_params()
        params.update(eps_q=self.eps_q, eps_nu=self.eps_nu, specification=self.specification)
        return params

    def _build(self, data):
        sigma_prior = ResidualVariancePrior.from_data(data, self.eps_q, self.eps_nu, self.specification)
        model = GaussianBartModel(self.n_trees, mean=0.0, sigsq=sigma_prior.sigma_guess ** 2)
        model.set_data(data.X, data.y)
        model.finalize_data(self.distinct_value_cutoff, self.cutpoint_strategy)
        sampler = GaussianBartPosteriorSampler(
            model,
            prior_sigma_guess=sigma_prior.sigma_guess,
            prior_sigma_weight=sigma_prior.weight,
            prior_mean_guess=0.0,
            prior_mean_sd=0.5 / (self.f_k * math.sqrt(self.n_trees)),
            prior_tree_depth_alpha=self.tree_alpha,
            prior_tree_depth_beta=self.tree_beta,
            proposal_probs=self.proposal_probs,
            min_observations=self.min_observations,
            generator=self.generator,
        )
        return model, sampler

    @property
    def posterior_sigma(self):
        """Posterior draws of the residual standard deviation on the original scale."""
        self._check_fitted()
        scale = self.preprocessor.y_scale
        return np.array([math.sqrt(self.trace[k].global_params["sigsq"]) * scale
                         for k in self.range_post])

    def posterior_predict(self, X):
        """
        Get the full posterior predictive distribution.

        Returns:
            Array of shape (n_samples, ndpost) with posterior predictive samples
        """
        preds = self.posterior_f(X, backtransform=False)
        for i, k in enumerate(self.range_post):
            sigsq = self.trace[k].global_params["sigsq"]
            preds[:, i] += self.generator.normal(0, np.sqrt(sigsq), size=preds.shape[0])
            preds[:, i] = self.preprocessor.backtransform_y(preds[:, i])
        return preds


class LogitBART(BART):
    """
    BART for binary or binomial responses with a logit link.

    ``fit(X, y)`` takes two-class labels. ``fit(X, y, n_trials=...)`` takes
    success counts out of ``n_trials``.
    """

    def __init__(self, ndpost=1000, nskip=100, n_trees=50, tree_alpha: float = 0.95,
                 tree_beta: float = 2.0, f_k=2.0, proposal_probs=None, min_observations: int = 5,
                 distinct_value_cutoff: int = DEFAULT_DISTINCT_VALUE_CUTOFF,
                 cutpoint_strategy=ContinuousCutpointStrategy.UNIFORM_CONTINUOUS,
                 random_state=42):
        super().__init__(ClassificationPreprocessor(), ndpost, nskip, n_trees, tree_alpha, tree_beta, f_k,
                         proposal_probs, min_observations, distinct_value_cutoff, cutpoint_strategy,
                         random_state)
        self.n_trials = None

    def fit(self, X, y, n_trials=None, quietly=False):
        if n_trials is None:
            self.data = self.preprocessor.fit_transform(X, y)
            self.n_trials = None
            self.data.n_trials = np.ones(self.data.n)
        else:
            X = self.preprocessor.transform_X(X)
            self.n_trials = np.asarray(n_trials, dtype=np.float64).ravel()
            self.data = Dataset(X, np.asarray(y, dtype=np.float64).ravel(), self.n_trials)
        self.model, self.sampler = self._build(self.data)
        return self._run(quietly)

    def _build(self, data):
        model = LogitBartModel(self.n_trees, mean=0.0)
        model.set_data(data.X, data.y, data.n_trials)
        model.finalize_data(self.distinct_value_cutoff, self.cutpoint_strategy)
        sampler = LogitBartPosteriorSampler(
            model,
            prior_mean_guess=0.0,
            prior_mean_sd=3.0 / (self.f_k * math.sqrt(self.n_trees)),
            prior_tree_depth_alpha=self.tree_alpha,
            prior_tree_depth_beta=self.tree_beta,
            proposal_probs=self.proposal_probs,
            min_observations=self.min_observations,
            generator=self.generator,
        )
        return model, sampler

    def posterior_f(self, X, backtransform=False):
        """Posterior draws of the logit of the success probability."""
        return super().posterior_f(X, backtransform=False)

    def posterior_proba(self, X):
        """Posterior draws of the success probability, shape (n_samples, ndpost)."""
        return expit(self.posterior_f(X))

    def predict_proba(self, X):
        """
        Predict class probabilities.

        Returns:
            Array of shape (n_samples, 2) with columns [P(class 0), P(class 1)].
        """
        prob_1 = self.posterior_proba(X).mean(axis=1)
        return np.column_stack([1 - prob_1, prob_1])

    def predict(self, X):
        labels = (self.predict_proba(X)[:, 1] > 0.5).astype(int)
        if self.n_trials is None:
            return self.preprocessor.backtransform_y(labels)
        return labels
