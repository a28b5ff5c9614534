import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Union

from .diffeqs import ModelEvaluator
from .error_models import ErrorModel, error_model_from, DEFAULT_ENDPOINT


def _as_labeled_matrix(mat, name: str) -> pd.DataFrame:
    if isinstance(mat, pd.DataFrame):
        out = mat.astype(np.float64)
    else:
        raise TypeError(f"`{name}` must be a pandas DataFrame labeled by random effect name")
    if out.shape[0] != out.shape[1]:
        raise ValueError(f"`{name}` must be square, got shape {out.shape}")
    if list(out.index) != list(out.columns):
        raise ValueError(f"The row and column labels of `{name}` must be identical")
    values = out.to_numpy()
    if not np.all(np.isfinite(values)):
        raise ValueError(f"`{name}` contains non-finite values")
    if not np.allclose(values, values.T):
        raise ValueError(f"`{name}` must be symmetric")
    if values.size > 0 and np.min(np.linalg.eigvalsh(values)) < -1e-10 * max(1.0, np.abs(values).max()):
        raise ValueError(f"`{name}` must be positive semi-definite")
    return out


@dataclass(frozen=True)
class PriorModel:
    """
    Population ("prior") model of an individual Bayesian estimation.

    Args:
        theta (pd.Series): population fixed effects, indexed by name.
        omega (pd.DataFrame): IIV covariance matrix labeled by ETA name. A
            diagonal of 0 removes the effect from the estimation.
        sigma: residual error parameters, a vector or a (variance) matrix, or
            a mapping of endpoint -> vector/matrix for multiple endpoints.
        structural_model (ModelEvaluator): evaluator of the predictions.
        error_model: `ErrorModel`, an error function (single endpoint) or a
            mapping endpoint -> error function.
        pi_matrix (pd.DataFrame): IOV covariance matrix labeled by KAPPA name.
        covariates (List[str]): covariate columns read by the model.
    """
    theta: pd.Series
    omega: pd.DataFrame
    sigma: Any
    structural_model: ModelEvaluator
    error_model: Union[ErrorModel, Mapping, Any]
    pi_matrix: pd.DataFrame = None
    covariates: List[str] = field(default_factory=list)

    def __post_init__(self, ):
        theta = self.theta
        if isinstance(theta, Mapping):
            theta = pd.Series(dict(theta))
        if not isinstance(theta, pd.Series):
            raise TypeError("`theta` must be a pandas Series (or a mapping) of named fixed effects")
        theta = theta.astype(np.float64)
        if not np.all(np.isfinite(theta.to_numpy())):
            raise ValueError("`theta` contains non-finite values")
        object.__setattr__(self, "theta", theta)

        omega = _as_labeled_matrix(self.omega, "omega")
        if omega.shape[0] == 0:
            raise ValueError("`omega` must define at least one random effect")
        object.__setattr__(self, "omega", omega)
        if self.pi_matrix is not None:
            object.__setattr__(self, "pi_matrix", _as_labeled_matrix(self.pi_matrix, "pi_matrix"))

        if not isinstance(self.structural_model, ModelEvaluator):
            raise TypeError("`structural_model` must be a ModelEvaluator")
        endpoint = self.structural_model.endpoints[0] if len(self.structural_model.endpoints) > 0 else DEFAULT_ENDPOINT
        object.__setattr__(self, "error_model", error_model_from(self.error_model, endpoint=endpoint))
        object.__setattr__(self, "covariates", [] if self.covariates is None else list(self.covariates))

        names = self.parameter_names
        if len(set(names)) != len(names):
            raise ValueError(f"Parameter names must be unique across theta, omega and pi_matrix: {names}")
        model_names = self.structural_model.parameter_names
        if model_names is not None and set(model_names) != set(names):
            raise ValueError(
                f"The prior model parameters {sorted(names)} do not match the structural model "
                f"parameters {sorted(model_names)}"
            )

    @property
    def eta_names(self) -> List[str]:
        return list(self.omega.columns)

    @property
    def kappa_names(self) -> List[str]:
        return [] if self.pi_matrix is None else list(self.pi_matrix.columns)

    @property
    def theta_names(self) -> List[str]:
        return list(self.theta.index)

    @property
    def parameter_names(self) -> List[str]:
        return self.theta_names + self.eta_names + self.kappa_names

    @property
    def has_iov(self) -> bool:
        return self.pi_matrix is not None and bool(np.any(np.diag(self.pi_matrix.to_numpy()) > 0))

    @property
    def endpoints(self) -> List[str]:
        return self.error_model.endpoints
