import logging
import math
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Type

import numpy as np
from tqdm import tqdm

from .model import BartModelBase, GaussianBartModel, LogitBartModel, ModelState
from .moves import all_moves
from .params import Tree, TreeNode
from .priors import LogitDataImputer, NodeMeanPrior, ResidualVariancePrior, TreeDepthPrior
from .residuals import (
    GaussianBartSufficientStatistics,
    GaussianResidualRegressionData,
    IncompatibleResidualDataError,
    LogitResidualData,
    LogitSufficientStatistics,
    ResidualRegressionData,
    SufficientStatisticsBase,
)

logger = logging.getLogger(__name__)

default_proposal_probs = {"grow": 0.4, "prune": 0.4, "change": 0.2}


class BartPosteriorSamplerBase(ABC):
    """
    Backfitting MCMC sampler for a sum-of-trees model.

    Each call to ``draw`` performs one sweep: every tree in turn has its
    contribution removed from the shared residuals, receives one structural
    Metropolis-Hastings move, has its leaf means redrawn, and has its
    contribution restored. The global parameters are drawn after the sweep.

    Parameters:
        model: The BartModelBase being sampled. Its data must be finalized.
        prior_mean_guess (float): Prior mean of each leaf.
        prior_mean_sd (float): Prior standard deviation of each leaf.
        prior_tree_depth_alpha (float): Split probability at the root.
        prior_tree_depth_beta (float): Decay of the split probability with depth.
        proposal_probs (dict): Relative frequencies of the grow, prune and change moves.
        min_observations (int): Nodes with fewer rows have zero integrated likelihood.
        generator (np.random.Generator): Source of all randomness in the sampler.
    """
    suf_type: Type[SufficientStatisticsBase] = SufficientStatisticsBase

    def __init__(self, model: BartModelBase, prior_mean_guess: float, prior_mean_sd: float,
                 prior_tree_depth_alpha: float = 0.95, prior_tree_depth_beta: float = 2.0,
                 proposal_probs: Optional[Dict[str, float]] = None, min_observations: int = 5,
                 generator: Optional[np.random.Generator] = None):
        self.model = model
        self.node_mean_prior = NodeMeanPrior(prior_mean_guess, prior_mean_sd ** 2)
        self.tree_prior = TreeDepthPrior(prior_tree_depth_alpha, prior_tree_depth_beta)
        self.proposal_probs = dict(default_proposal_probs if proposal_probs is None else proposal_probs)
        unknown = set(self.proposal_probs) - set(all_moves)
        if unknown:
            raise ValueError(f"Unknown moves in proposal_probs: {sorted(unknown)}")
        if self.proposal_probs.get("grow", 0) <= 0 or self.proposal_probs.get("prune", 0) <= 0:
            raise ValueError("Grow and prune moves must both have positive proposal probability.")
        if any(p < 0 for p in self.proposal_probs.values()):
            raise ValueError("Proposal probabilities must be non-negative.")
        self.total_proposal_mass = float(sum(self.proposal_probs.values()))
        self.min_observations = min_observations
        if generator is None or not isinstance(generator, np.random.Generator):
            generator = np.random.default_rng(generator)
        self.generator = generator

        self._residuals: Optional[ResidualRegressionData] = None
        self._residual_version = None
        self.trace: List[ModelState] = []

        # --- Add move statistics ---
        self.move_selected_counts = {k: 0 for k in self.proposal_probs}
        self.move_success_counts = {k: 0 for k in self.proposal_probs}
        self.move_accepted_counts = {k: 0 for k in self.proposal_probs}

    # ---- residual bookkeeping ----
    @property
    def residuals(self) -> ResidualRegressionData:
        self._check_residuals()
        return self._residuals

    def residual_size(self) -> int:
        return 0 if self._residuals is None else len(self._residuals)

    def clear_residuals(self):
        for tree in self.model.trees:
            tree.clear_data_and_delete_suf()
        self._residuals = None
        self._residual_version = None

    def _check_residuals(self):
        if not self.model.finalized:
            raise RuntimeError("finalize_data must be called on the model before sampling.")
        if self.model.sample_size == 0:
            raise RuntimeError("The model has no data to sample from.")
        if (self._residuals is not None
                and self._residual_version == self.model.structure_version
                and self.residual_size() == self.model.sample_size):
            return
        self.clear_residuals()
        self._residuals = self.create_residuals()
        suf = self.create_suf()
        for tree in self.model.trees:
            tree.populate_sufficient_statistics(suf)
            tree.populate_data(self._residuals)
        self._residual_version = self.model.structure_version
        self.after_residuals_created()

    @abstractmethod
    def create_residuals(self) -> ResidualRegressionData:
        pass

    def create_suf(self) -> SufficientStatisticsBase:
        return self.suf_type()

    def after_residuals_created(self):
        pass

    # ---- likelihood ----
    def log_integrated_likelihood(self, suf: SufficientStatisticsBase) -> float:
        if not isinstance(suf, self.suf_type):
            raise IncompatibleResidualDataError(
                f"{type(self).__name__} requires {self.suf_type.__name__}, got {type(suf).__name__}")
        if suf.n < self.min_observations:
            return -math.inf
        return self._log_integrated_likelihood(suf)

    @abstractmethod
    def _log_integrated_likelihood(self, suf) -> float:
        pass

    @abstractmethod
    def posterior_mean_and_variance(self, suf):
        """Mean and variance of the conditional posterior of a leaf mean."""

    def draw_mean(self, leaf: TreeNode) -> float:
        mean, variance = self.posterior_mean_and_variance(leaf.compute_suf())
        return self.generator.normal(mean, math.sqrt(variance))

    # ---- one sweep ----
    def move_probabilities(self, tree: Tree) -> Dict[str, float]:
        """Move probabilities restricted to the moves feasible for ``tree``."""
        if tree.number_of_parents_of_leaves() == 0:
            return {"grow": 1.0}
        return {k: v / self.total_proposal_mass for k, v in self.proposal_probs.items()}

    def sample_move(self, tree: Tree):
        probs = self.move_probabilities(tree)
        moves = list(probs.keys())
        if len(moves) == 1:
            move_str = moves[0]
        else:
            move_str = moves[self.generator.choice(len(moves), p=list(probs.values()))]
        return move_str, all_moves[move_str]

    def modify_tree(self, tree: Tree) -> bool:
        move_key, move_cls = self.sample_move(tree)
        self.move_selected_counts[move_key] += 1
        move = move_cls(self, tree)
        if not move.propose(self.generator):
            return False
        self.move_success_counts[move_key] += 1
        if math.log(1.0 - self.generator.random()) < move.log_mh_ratio:
            move.accept()
            self.move_accepted_counts[move_key] += 1
            return True
        move.reject()
        return False

    def draw_leaf_means(self, tree: Tree):
        for leaf in tree.leaves:
            leaf.set_mean(self.draw_mean(leaf))

    def draw(self):
        """One MCMC sweep over the ensemble."""
        self._check_residuals()
        for tree in self.model.trees:
            tree.remove_mean_effect()
            self.modify_tree(tree)
            self.draw_leaf_means(tree)
            tree.replace_mean_effect()
        self.draw_global_params()

    @abstractmethod
    def draw_global_params(self):
        pass

    def run(self, n_iter: int, n_skip: int = 0, progress_bar: bool = True, quietly: bool = False):
        """
        Run the sampler for a specified number of sweeps.

        Parameters:
            n_iter (int): The number of sweeps.
            n_skip (int): Sweeps discarded as burn-in before recording the trace.

        Returns:
            list: One ModelState per recorded sweep.
        """
        if quietly:
            progress_bar = False
        self.trace = []
        iterator = tqdm(range(n_iter), desc="Iterations") if progress_bar else range(n_iter)
        for iteration in iterator:
            self.draw()
            if iteration >= n_skip:
                self.trace.append(self.model.snapshot())
        if not quietly:
            for key in self.proposal_probs:
                logger.info("%s: selected %d, proposed %d, accepted %d", key,
                            self.move_selected_counts[key], self.move_success_counts[key],
                            self.move_accepted_counts[key])
        return self.trace


class GaussianBartPosteriorSampler(BartPosteriorSamplerBase):
    """
    Sampler for GaussianBartModel.

    Parameters:
        prior_sigma_guess (float): Prior guess at the residual standard deviation.
        prior_sigma_weight (float): Prior sample size behind ``prior_sigma_guess``.
    """
    suf_type = GaussianBartSufficientStatistics

    def __init__(self, model: GaussianBartModel, prior_sigma_guess: float, prior_sigma_weight: float,
                 prior_mean_guess: float, prior_mean_sd: float,
                 prior_tree_depth_alpha: float = 0.95, prior_tree_depth_beta: float = 2.0,
                 proposal_probs=None, min_observations: int = 5, generator=None):
        super().__init__(model, prior_mean_guess, prior_mean_sd, prior_tree_depth_alpha,
                         prior_tree_depth_beta, proposal_probs, min_observations, generator)
        self.residual_variance_prior = ResidualVariancePrior(prior_sigma_guess, prior_sigma_weight)

    def create_residuals(self):
        model = self.model
        return GaussianResidualRegressionData(model.X, model.y, model.evaluate(model.X))

    def posterior_mean_and_variance(self, suf):
        sigsq = self.model.sigsq
        prior = self.node_mean_prior
        ivar = suf.n / sigsq + 1.0 / prior.sigsq
        mean = (suf.sum / sigsq + prior.mu / prior.sigsq) / ivar
        return mean, 1.0 / ivar

    def _log_integrated_likelihood(self, suf):
        n = suf.n
        sigsq = self.model.sigsq
        prior_mean = self.node_mean_prior.mu
        prior_var = self.node_mean_prior.sigsq
        post_mean, post_var = self.posterior_mean_and_variance(suf)
        ans = -n * (math.log(2 * math.pi) + math.log(sigsq))
        ans += math.log(post_var / prior_var)
        ans -= suf.sumsq / sigsq
        ans -= prior_mean ** 2 / prior_var
        ans += post_mean ** 2 / post_var
        return 0.5 * ans

    def draw_global_params(self):
        self.draw_residual_variance()

    def draw_residual_variance(self):
        residuals = self._residuals
        sigsq = self.residual_variance_prior.sample_sigsq(
            residuals.sum_of_squared_residuals(), len(residuals), self.generator)
        self.model.set_sigsq(sigsq)


class LogitBartPosteriorSampler(BartPosteriorSamplerBase):
    """
    Sampler for LogitBartModel using latent data augmentation. Given the
    latent data the trees see a weighted Gaussian regression.
    """
    suf_type = LogitSufficientStatistics

    def __init__(self, model: LogitBartModel, prior_mean_guess: float, prior_mean_sd: float,
                 prior_tree_depth_alpha: float = 0.95, prior_tree_depth_beta: float = 2.0,
                 proposal_probs=None, min_observations: int = 5, generator=None):
        super().__init__(model, prior_mean_guess, prior_mean_sd, prior_tree_depth_alpha,
                         prior_tree_depth_beta, proposal_probs, min_observations, generator)
        self.imputer = LogitDataImputer(self.generator)

    def create_residuals(self):
        model = self.model
        return LogitResidualData(model.X, model.y, model.n, model.evaluate(model.X))

    def after_residuals_created(self):
        self.impute_latent_data()

    def posterior_mean_and_variance(self, suf):
        prior = self.node_mean_prior
        ivar = suf.sum_of_information + 1.0 / prior.sigsq
        mean = (suf.information_weighted_residual_sum + prior.mu / prior.sigsq) / ivar
        return mean, 1.0 / ivar

    def _log_integrated_likelihood(self, suf):
        # Terms that do not depend on the partition of the rows are dropped.
        prior_mean = self.node_mean_prior.mu
        prior_var = self.node_mean_prior.sigsq
        post_mean, post_var = self.posterior_mean_and_variance(suf)
        ans = 0.5 * math.log(post_var / prior_var)
        ans += 0.5 * (post_mean ** 2 / post_var - prior_mean ** 2 / prior_var)
        return ans

    def draw_global_params(self):
        self.impute_latent_data()

    def impute_latent_data(self):
        data = self._residuals
        for i in range(len(data)):
            iws, soi = self.imputer.impute(data.y[i], data.n[i], data.prediction[i])
            data.set_latent_data(i, iws, soi)
