from .bart import BART, GaussianBART, LogitBART
from .DataGenerator import DataGenerator
from .model import BartModelBase, GaussianBartModel, LogitBartModel, ModelState
from .moves import all_moves, Change, Grow, Prune
from .params import Tree, TreeNode
from .priors import TreeDepthPrior, NodeMeanPrior, ResidualVariancePrior, LogitDataImputer
from .residuals import (
    ResidualRegressionData,
    GaussianResidualRegressionData,
    LogitResidualData,
    SufficientStatisticsBase,
    GaussianBartSufficientStatistics,
    LogitSufficientStatistics,
    IncompatibleResidualDataError,
)
from .samplers import (
    BartPosteriorSamplerBase,
    GaussianBartPosteriorSampler,
    LogitBartPosteriorSampler,
    default_proposal_probs,
)
from .util import DefaultPreprocessor, ClassificationPreprocessor, Dataset
from .variable_summary import (
    VariableSummary,
    SerializedVariableSummary,
    ContinuousCutpointStrategy,
    NotFinalizedError,
    DEFAULT_DISTINCT_VALUE_CUTOFF,
)
from .visualization import visualize_tree

import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = ["BART", "GaussianBART", "LogitBART", "DataGenerator",
           "BartModelBase", "GaussianBartModel", "LogitBartModel", "ModelState",
           "all_moves", "Change", "Grow", "Prune", "Tree", "TreeNode",
           "TreeDepthPrior", "NodeMeanPrior", "ResidualVariancePrior", "LogitDataImputer",
           "ResidualRegressionData", "GaussianResidualRegressionData", "LogitResidualData",
           "SufficientStatisticsBase", "GaussianBartSufficientStatistics", "LogitSufficientStatistics",
           "IncompatibleResidualDataError",
           "BartPosteriorSamplerBase", "GaussianBartPosteriorSampler", "LogitBartPosteriorSampler",
           "default_proposal_probs", "DefaultPreprocessor", "ClassificationPreprocessor", "Dataset",
           "VariableSummary", "SerializedVariableSummary", "ContinuousCutpointStrategy",
           "NotFinalizedError", "DEFAULT_DISTINCT_VALUE_CUTOFF", "visualize_tree"]
