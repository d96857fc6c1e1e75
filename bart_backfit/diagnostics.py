from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional, Sequence, Union

import arviz as az
import numpy as np
import pandas as pd

from .bart import BART
from .mcbart import MultiChainBART
from .samplers import BartPosteriorSamplerBase

ChainsLike = Union[BART, Sequence[BART], MultiChainBART]


def _chain_values(model: BART, key: str, X: Optional[np.ndarray] = None) -> List[Any]:
    """
    Collect the post-burn-in series of a single chain.

    If X is provided, returns f(X) per draw instead of a global parameter.
    """
    if not getattr(model, "is_fitted", False):
        raise ValueError("Model must be fitted before diagnostics.")
    if X is None:
        return [float(model.trace[k].global_params[key]) for k in model.range_post]
    X_arr = np.asarray(X, dtype=np.float64)
    if X_arr.ndim == 1:
        X_arr = X_arr.reshape(1, -1)
    return [np.asarray(model.predict_trace(k, X_arr)).reshape(-1) for k in model.range_post]


def chain_series(models: ChainsLike, key: str = "sigsq", X: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Stack the draws of several chains.

    Returns
    -------
    np.ndarray
        Shape (n_chains, n_draws) for a global parameter, or
        (n_chains, n_draws, n_rows) when X is given.
    """
    if isinstance(models, MultiChainBART):
        if X is None:
            return models.global_param_traces(key)
        return np.transpose(models.chain_posterior_f(X), (0, 2, 1))
    if isinstance(models, BART):
        models = [models]
    per_chain = [_chain_values(m, key, X) for m in models]
    # Ensure equal length across chains
    min_len = min(len(v) for v in per_chain)
    if min_len == 0:
        raise ValueError("No post-burn-in draws available in at least one chain.")
    return np.asarray([v[:min_len] for v in per_chain], dtype=np.float64)


def chain_summary(models: ChainsLike, key: str = "sigsq", X: Optional[np.ndarray] = None) -> pd.DataFrame:
    """
    ArviZ summary (mean, sd, mcse, ess_bulk, r_hat, ...) of a global
    parameter, or of f(X) per row, across chains.
    """
    series = chain_series(models, key, X)
    var_name = key if X is None else "f_x"
    idata = az.from_dict(posterior={var_name: series})
    return az.summary(idata, var_names=[var_name])


@dataclass
class MoveAcceptance:
    selected: int
    proposed: int
    accepted: int

    @property
    def acc_rate(self) -> float:
        return self.accepted / self.proposed if self.proposed > 0 else np.nan

    @property
    def prop_rate(self) -> float:
        return self.proposed / self.selected if self.selected > 0 else np.nan

    def __post_init__(self):
        self.selected = int(self.selected)
        self.proposed = int(self.proposed)
        self.accepted = int(self.accepted)

    def combine(self, other: 'MoveAcceptance') -> 'MoveAcceptance':
        return MoveAcceptance(
            selected=self.selected + other.selected,
            proposed=self.proposed + other.proposed,
            accepted=self.accepted + other.accepted,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {**asdict(self), "acc_rate": float(self.acc_rate), "prop_rate": float(self.prop_rate)}


def _sampler_counts(sampler: BartPosteriorSamplerBase) -> Dict[str, Dict[str, int]]:
    return {
        "selected": dict(sampler.move_selected_counts),
        "success": dict(sampler.move_success_counts),
        "accepted": dict(sampler.move_accepted_counts),
    }


def move_acceptance(source: Union[BartPosteriorSamplerBase, ChainsLike]) -> Dict[str, MoveAcceptance]:
    """
    Per-move selection/proposal/acceptance counts, aggregated over chains,
    plus an 'overall' entry.
    """
    if isinstance(source, BartPosteriorSamplerBase):
        counts_list = [_sampler_counts(source)]
    elif isinstance(source, MultiChainBART):
        counts_list = source.move_counts()
    elif isinstance(source, BART):
        counts_list = [_sampler_counts(source.sampler)]
    else:
        counts_list = [_sampler_counts(m.sampler) for m in source]

    result: Dict[str, MoveAcceptance] = {}
    for counts in counts_list:
        for mv in counts["selected"]:
            stats = MoveAcceptance(counts["selected"].get(mv, 0), counts["success"].get(mv, 0),
                                   counts["accepted"].get(mv, 0))
            result[mv] = result[mv].combine(stats) if mv in result else stats

    overall = MoveAcceptance(0, 0, 0)
    for stats in result.values():
        overall = overall.combine(stats)
    result["overall"] = overall
    return result


def compute_diagnostics(models: ChainsLike, key: str = "sigsq", X: Optional[np.ndarray] = None) -> Dict[str, Any]:
    """
    Compute MCMC diagnostics for one or more fitted chains.

    Returns
    -------
    dict
        {
          'meta': { 'n_chains', 'n_draws' },
          'metrics': pandas.DataFrame from arviz.summary,
          'acceptance': { per-move MoveAcceptance and 'overall' }
        }
    """
    series = chain_series(models, key, X)
    var_name = key if X is None else "f_x"
    idata = az.from_dict(posterior={var_name: series})
    return {
        "meta": {"n_chains": int(series.shape[0]), "n_draws": int(series.shape[1])},
        "metrics": az.summary(idata, var_names=[var_name]),
        "acceptance": move_acceptance(models),
    }


__all__ = [
    "MoveAcceptance",
    "chain_series",
    "chain_summary",
    "move_acceptance",
    "compute_diagnostics",
]
