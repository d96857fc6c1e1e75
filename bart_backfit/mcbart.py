import logging
from typing import Any, Dict, List

import numpy as np
import ray

from .bart import GaussianBART
from .serializer import model_to_json

logger = logging.getLogger(__name__)


@ray.remote
class BARTActor:
    """A Ray Actor holding one independent BART chain."""
    def __init__(self, bart_class, random_state, **kwargs):
        seed_seq = random_state if isinstance(random_state, np.random.SeedSequence) else np.random.SeedSequence(int(random_state))
        self.model = bart_class(random_state=seed_seq, **kwargs)

    def fit(self, X, y, quietly=False, **fit_kwargs):
        self.model.fit(X, y, quietly=quietly, **fit_kwargs)
        return True

    def predict(self, X):
        return self.model.predict(X)

    def posterior_f(self, X, backtransform=True):
        return self.model.posterior_f(X, backtransform=backtransform)

    def global_param_trace(self, key: str):
        """Trace of a global parameter over the retained draws."""
        return np.array([self.model.trace[k].global_params[key] for k in self.model.range_post])

    def move_counts(self):
        sampler = self.model.sampler
        return {
            "selected": dict(sampler.move_selected_counts),
            "success": dict(sampler.move_success_counts),
            "accepted": dict(sampler.move_accepted_counts),
        }

    def get_attribute(self, name: str):
        return getattr(self.model, name)

    def get_model_json(self):
        """Return the serialized ensemble of the chain's final state."""
        return model_to_json(self.model.model)


class MultiChainBART:
    """
    Runs independent BART chains in parallel using Ray.

    Each chain lives in its own actor with its own model, sampler and random
    stream; the streams are spawned from one SeedSequence so that a run is
    reproducible from ``random_state``.
    """
    def __init__(self, n_chains=4, bart_class=GaussianBART, random_state=42, **kwargs):
        self.n_chains = int(n_chains)
        self.bart_class = bart_class
        self.kwargs = dict(kwargs)
        self.is_fitted = False

        # Initialize Ray. ignore_reinit_error is useful in interactive environments.
        if not ray.is_initialized():
            ray.init(ignore_reinit_error=True)

        parent_seed = random_state if isinstance(random_state, np.random.SeedSequence) else np.random.SeedSequence(int(random_state))
        # Generate children random states for reproducibility
        child_states = parent_seed.spawn(self.n_chains)

        self.bart_actors: List[Any] = [
            BARTActor.remote(bart_class, random_state=seed_sequence, **kwargs)  # type: ignore
            for seed_sequence in child_states
        ]
        logger.info("Created %d BARTActor(s) using %s", self.n_chains, bart_class.__name__)

    def fit(self, X, y, quietly=False, **fit_kwargs):
        """Fit all chains in parallel."""
        X_ref = ray.put(np.asarray(X))
        y_ref = ray.put(np.asarray(y))
        ray.get([actor.fit.remote(X_ref, y_ref, quietly, **fit_kwargs) for actor in self.bart_actors])
        self.is_fitted = True
        return self

    def posterior_f(self, X, backtransform=True):
        """Posterior draws of f(x) from every chain, concatenated along the draw axis."""
        X_ref = ray.put(np.asarray(X))
        draws = ray.get([actor.posterior_f.remote(X_ref, backtransform) for actor in self.bart_actors])
        return np.concatenate(draws, axis=1)

    def predict(self, X):
        return np.mean(self.posterior_f(X), axis=1)

    def chain_posterior_f(self, X, backtransform=True):
        """Posterior draws of f(x) per chain, shape (n_chains, n_samples, ndpost)."""
        X_ref = ray.put(np.asarray(X))
        return np.stack(ray.get([actor.posterior_f.remote(X_ref, backtransform) for actor in self.bart_actors]))

    def global_param_traces(self, key: str = "sigsq") -> np.ndarray:
        """Traces of a global parameter, shape (n_chains, ndpost)."""
        return np.stack(ray.get([actor.global_param_trace.remote(key) for actor in self.bart_actors]))

    def move_counts(self) -> List[Dict[str, Dict[str, int]]]:
        return ray.get([actor.move_counts.remote() for actor in self.bart_actors])

    def collect(self, name: str):
        """Fetch an attribute of the model held by every actor."""
        return ray.get([actor.get_attribute.remote(name) for actor in self.bart_actors])

    def model_json(self) -> List[str]:
        return ray.get([actor.get_model_json.remote() for actor in self.bart_actors])

    def clean_up(self):
        for actor in self.bart_actors:
            ray.kill(actor)
        self.bart_actors = []
