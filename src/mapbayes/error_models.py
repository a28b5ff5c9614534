import abc
import numpy as np
import pandas as pd
from typing import Callable, Dict, List, Mapping

from .exceptions import DatasetError, ModelEvaluationError

DEFAULT_ENDPOINT = "Cc"


def constant(f, sigma):
    """Additive error, g = a."""
    return np.full(np.shape(f), sigma[0], dtype=np.float64)


def proportional(f, sigma):
    """Proportional error, g = b*f. The last element of sigma is used."""
    return sigma[-1] * np.asarray(f, dtype=np.float64)


def combined1(f, sigma):
    """Combined error, g = a + b*f."""
    return sigma[0] + sigma[1] * np.asarray(f, dtype=np.float64)


def combined2(f, sigma):
    """Combined error, g = sqrt(a^2 + b^2*f^2)."""
    f = np.asarray(f, dtype=np.float64)
    return np.sqrt(sigma[0] ** 2 + (sigma[1] ** 2) * (f ** 2))


def sigma_as_vector(sigma) -> np.ndarray:
    # a square matrix holds variances, the residual sd are on its diagonal
    if isinstance(sigma, pd.DataFrame):
        sigma = sigma.to_numpy(dtype=np.float64)
    elif isinstance(sigma, pd.Series):
        sigma = sigma.to_numpy(dtype=np.float64)
    sigma = np.atleast_1d(np.asarray(sigma, dtype=np.float64))
    if sigma.ndim == 2:
        if sigma.shape[0] != sigma.shape[1]:
            raise ValueError(f"A sigma matrix must be square, got shape {sigma.shape}")
        return np.sqrt(np.diag(sigma))
    if sigma.ndim != 1:
        raise ValueError("sigma must be a vector or a square matrix")
    return sigma


class ErrorModel(abc.ABC):
    """
    Residual error model of a prior population model.

    Maps the predictions `f` of one endpoint and the residual error parameters
    `sigma` to the standard deviation `g` of the observation noise. The two
    concrete variants are `SingleEndpointError` and `MultiEndpointError`.
    """

    @property
    @abc.abstractmethod
    def endpoints(self) -> List[str]:
        pass

    @abc.abstractmethod
    def error_function(self, endpoint: str) -> Callable:
        pass

    @abc.abstractmethod
    def endpoint_sigma(self, sigma, endpoint: str) -> np.ndarray:
        pass

    @property
    def default_endpoint(self):
        return self.endpoints[0] if len(self.endpoints) == 1 else None

    def residual_sd(self, f, endpoint: str, sigma) -> np.ndarray:
        g = self.error_function(endpoint)(np.asarray(f, dtype=np.float64),
                                          self.endpoint_sigma(sigma, endpoint))
        g = np.array(g, dtype=np.float64).reshape(-1)
        # avoid NaN downstream, a sd of exactly 0 is read as 1
        g[g == 0] = 1.0
        return g


class SingleEndpointError(ErrorModel):
    def __init__(self, fn: Callable, endpoint: str = DEFAULT_ENDPOINT):
        if not callable(fn):
            raise TypeError("The error model of a single endpoint must be callable")
        self.fn = fn
        self.endpoint = endpoint

    @property
    def endpoints(self):
        return [self.endpoint]

    def error_function(self, endpoint):
        if endpoint != self.endpoint:
            raise DatasetError(f"No error model for endpoint `{endpoint}`, only `{self.endpoint}` is defined")
        return self.fn

    def endpoint_sigma(self, sigma, endpoint):
        return sigma_as_vector(sigma)

    def __repr__(self):
        return f"SingleEndpointError({getattr(self.fn, '__name__', self.fn)}, endpoint={self.endpoint!r})"


class MultiEndpointError(ErrorModel):
    def __init__(self, functions: Mapping[str, Callable]):
        if len(functions) == 0:
            raise ValueError("At least one endpoint error function is required")
        not_callable = [k for k, fn in functions.items() if not callable(fn)]
        if len(not_callable) > 0:
            raise TypeError(f"Error functions of endpoint(s) {not_callable} are not callable")
        self.functions: Dict[str, Callable] = dict(functions)

    @property
    def endpoints(self):
        return list(self.functions)

    def error_function(self, endpoint):
        try:
            return self.functions[endpoint]
        except KeyError as e:
            raise DatasetError(
                f"No error model for endpoint `{endpoint}`, defined endpoints are {self.endpoints}"
            ) from e

    def endpoint_sigma(self, sigma, endpoint):
        if not isinstance(sigma, Mapping):
            raise ValueError("A multiple endpoint error model needs one sigma per endpoint (a mapping)")
        try:
            return sigma_as_vector(sigma[endpoint])
        except KeyError as e:
            raise ValueError(f"sigma has no entry for endpoint `{endpoint}`") from e

    def __repr__(self):
        return f"MultiEndpointError(endpoints={self.endpoints})"


def error_model_from(error_model, endpoint: str = DEFAULT_ENDPOINT) -> ErrorModel:
    if isinstance(error_model, ErrorModel):
        return error_model
    if isinstance(error_model, Mapping):
        return MultiEndpointError(error_model)
    return SingleEndpointError(error_model, endpoint=endpoint)


def residual_error_all_endpoints(predictions: pd.DataFrame,
                                 y_obs: pd.DataFrame,
                                 error_model: ErrorModel,
                                 sigma,
                                 ) -> pd.DataFrame:
    """Applies each endpoint's error function to its predictions.

    Args:
        predictions (pd.DataFrame): model predictions with `DVID` and `f`
            columns, aligned row for row with `y_obs`.
        y_obs (pd.DataFrame): observed values with `DV` and `DVID` columns.
        error_model (ErrorModel): residual error model of the prior.
        sigma: residual error parameters.

    Returns:
        pd.DataFrame: `DV`, `DVID`, `f` and `g` for every observation.
    """
    if len(predictions) != len(y_obs):
        raise ModelEvaluationError(
            f"The structural model returned {len(predictions)} predictions for {len(y_obs)} observations"
        )
    pred_dvid = predictions["DVID"].to_numpy()
    obs_dvid = y_obs["DVID"].to_numpy()
    if not np.array_equal(pred_dvid.astype(str), obs_dvid.astype(str)):
        raise ModelEvaluationError("The predictions are not aligned with the observed endpoints")

    f = predictions["f"].to_numpy(dtype=np.float64)
    g = np.ones_like(f)
    for endpoint in pd.unique(obs_dvid):
        mask = obs_dvid == endpoint
        g[mask] = error_model.residual_sd(f[mask], endpoint, sigma)
    return pd.DataFrame({
        "DV": y_obs["DV"].to_numpy(dtype=np.float64),
        "DVID": obs_dvid,
        "f": f,
        "g": g,
    })
