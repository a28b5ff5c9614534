import pandas as pd
from sklearn.base import BaseEstimator
from typing import Callable, Self

from .map_estimator import MapControl, estim_map
from .mcmc import McmcControl, estim_mcmc
from .prior_model import PriorModel
from .sir import estim_sir


class _IndividualEstimator(BaseEstimator):

    def _check_is_fitted(self):
        if getattr(self, "result_", None) is None:
            raise ValueError(f"This {type(self).__name__} instance is not fitted yet, call `fit` first")

    def predict(self, X=None) -> pd.DataFrame:
        """Predictions of the resolved model, one set per draw (`ID`)."""
        self._check_is_fitted()
        return self.result_.predict()

    def _set_fitted(self, result):
        self.result_ = result
        self.eta_ = result.eta
        self.model_ = result.model
        return self


class MAPEstimator(_IndividualEstimator):
    """
    scikit-learn style wrapper of `estim_map`. `fit(dat)` estimates the
    random effects of the individual described by the event record `dat`.

    Fitted attributes: `result_`, `eta_`, `ofv_`, `converged_`, `model_`.
    """

    def __init__(self,
                 prior_model: PriorModel = None,
                 nocb: bool = False,
                 control: MapControl = None,
                 random_state=None,
                 callback: Callable = None,
                 return_model: bool = True,
                 verbose: bool = False,
                 ):
        self.prior_model = prior_model
        self.nocb = nocb
        self.control = control
        self.random_state = random_state
        self.callback = callback
        self.return_model = return_model
        self.verbose = verbose

    def fit(self, dat: pd.DataFrame, y=None) -> Self:
        result = estim_map(dat, self.prior_model,
                           return_model=self.return_model,
                           return_ofv=True,
                           nocb=self.nocb,
                           control=self.control,
                           random_state=self.random_state,
                           callback=self.callback,
                           verbose=self.verbose)
        self.ofv_ = result.ofv
        self.converged_ = result.converged
        return self._set_fitted(result)


class MCMCEstimator(_IndividualEstimator):
    """scikit-learn style wrapper of `estim_mcmc`."""

    def __init__(self,
                 prior_model: PriorModel = None,
                 burn_in: int = 50,
                 n_iter: int = 1000,
                 n_chains: int = 4,
                 nocb: bool = False,
                 control: McmcControl = None,
                 random_state=None,
                 n_jobs: int = 1,
                 return_model: bool = True,
                 progress: bool = False,
                 verbose: bool = False,
                 ):
        self.prior_model = prior_model
        self.burn_in = burn_in
        self.n_iter = n_iter
        self.n_chains = n_chains
        self.nocb = nocb
        self.control = control
        self.random_state = random_state
        self.n_jobs = n_jobs
        self.return_model = return_model
        self.progress = progress
        self.verbose = verbose

    def fit(self, dat: pd.DataFrame, y=None) -> Self:
        result = estim_mcmc(dat, self.prior_model,
                            return_model=self.return_model,
                            burn_in=self.burn_in,
                            n_iter=self.n_iter,
                            n_chains=self.n_chains,
                            nocb=self.nocb,
                            control=self.control,
                            random_state=self.random_state,
                            n_jobs=self.n_jobs,
                            progress=self.progress,
                            verbose=self.verbose)
        self.chain_stats_ = result.diagnostics["chains"]
        return self._set_fitted(result)


class SIREstimator(_IndividualEstimator):
    """scikit-learn style wrapper of `estim_sir`."""

    def __init__(self,
                 prior_model: PriorModel = None,
                 n_sample: int = 10000,
                 n_resample: int = 1000,
                 nocb: bool = False,
                 random_state=None,
                 n_jobs: int = 1,
                 return_model: bool = True,
                 verbose: bool = False,
                 ):
        self.prior_model = prior_model
        self.n_sample = n_sample
        self.n_resample = n_resample
        self.nocb = nocb
        self.random_state = random_state
        self.n_jobs = n_jobs
        self.return_model = return_model
        self.verbose = verbose

    def fit(self, dat: pd.DataFrame, y=None) -> Self:
        result = estim_sir(dat, self.prior_model,
                           n_sample=self.n_sample,
                           n_resample=self.n_resample,
                           return_model=self.return_model,
                           nocb=self.nocb,
                           random_state=self.random_state,
                           n_jobs=self.n_jobs,
                           verbose=self.verbose)
        self.weights_ = result.diagnostics["weights"]
        self.ess_ = result.diagnostics["ess"]
        return self._set_fitted(result)
