import numpy as np
import pandas as pd
from typing import List


def debug_print(print_obj, debug=False):
    if debug:
        if isinstance(print_obj, str):
            print(print_obj)


class RandomSource:
    """
    Seedable source of the random draws used by the estimators.

    Wraps a `numpy.random.Generator`. Independent child streams, e.g. one per
    MCMC chain, are derived from the seed sequence with `spawn`, so results do
    not depend on the order in which the children are consumed.
    """

    def __init__(self, seed=None):
        if isinstance(seed, np.random.SeedSequence):
            self.seed_sequence = seed
        else:
            self.seed_sequence = np.random.SeedSequence(seed)
        self.generator = np.random.default_rng(self.seed_sequence)

    def normal(self, size=None):
        return self.generator.standard_normal(size)

    def uniform(self, size=None):
        return self.generator.random(size)

    def multivariate_normal(self, cov, size=None):
        cov = np.atleast_2d(np.asarray(cov, dtype=np.float64))
        mean = np.zeros(cov.shape[0])
        return self.generator.multivariate_normal(mean, cov, size=size)

    def subset(self, n: int, k: int) -> np.ndarray:
        """k distinct integers drawn from 0..n-1."""
        return self.generator.choice(n, size=k, replace=False)

    def resample(self, n: int, size: int, p) -> np.ndarray:
        return self.generator.choice(n, size=size, replace=True, p=p)

    def spawn(self, n_children: int) -> List["RandomSource"]:
        return [RandomSource(s) for s in self.seed_sequence.spawn(n_children)]


def as_random_source(random_state=None) -> RandomSource:
    if isinstance(random_state, RandomSource):
        return random_state
    if isinstance(random_state, np.random.Generator):
        # draw a seed from the generator, keeps the caller's stream reproducible
        return RandomSource(int(random_state.integers(0, 2**63 - 1)))
    return RandomSource(random_state)


def scatter_eta(values, ind_eta, n_eta: int) -> np.ndarray:
    """Puts the estimated random effects back in full dimension, 0 elsewhere."""
    values = np.asarray(values, dtype=np.float64)
    out = np.zeros(values.shape[:-1] + (n_eta,), dtype=np.float64)
    out[..., np.asarray(ind_eta, dtype=int)] = values
    return out


def params_table(theta: pd.Series,
                 eta: pd.DataFrame,
                 covariates: pd.Series = None,
                 kappa_names: List[str] = None,
                 ) -> pd.DataFrame:
    """One row of THETA, ETA, covariate (and zero KAPPA) values per draw."""
    n = len(eta)
    theta_df = pd.DataFrame(np.repeat(theta.to_numpy(dtype=np.float64).reshape(1, -1), n, axis=0),
                            columns=theta.index)
    parts = [theta_df, eta.reset_index(drop=True)]
    if covariates is not None and len(covariates) > 0:
        parts.append(pd.DataFrame([covariates.to_dict()] * n))
    if kappa_names is not None and len(kappa_names) > 0:
        parts.append(pd.DataFrame(np.zeros((n, len(kappa_names))), columns=list(kappa_names)))
    return pd.concat(parts, axis=1)
