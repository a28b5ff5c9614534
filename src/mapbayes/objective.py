import numpy as np
import pandas as pd
from typing import Dict

from .covariance import (invert_covariance, link_kappa_to_occ, merge_covar_matrices,
                         occasion_levels, reduce_covariance, split_iov_vector)
from .error_models import residual_error_all_endpoints
from .exceptions import ModelEvaluationError
from .pd_templates import EventRecordCols, observation_mask, prepare_event_record
from .prior_model import PriorModel
from .utils import scatter_eta


def objective_function(y_obs, f, g, eta, solve_omega) -> float:
    """
    Twice the negative log posterior of an individual, up to a constant.

    OFV = sum(((y - f) / g)**2 + log(g**2)) + eta' Omega^-1 eta

    Args:
        y_obs: observed values.
        f: predictions aligned with `y_obs`.
        g: residual standard deviations aligned with `y_obs`.
        eta: random effects with a variance > 0 (IIV and IOV when merged).
        solve_omega: inverse of the (merged) covariance matrix of `eta`.
    """
    y_obs = np.asarray(y_obs, dtype=np.float64)
    f = np.asarray(f, dtype=np.float64)
    g = np.asarray(g, dtype=np.float64)
    eta = np.asarray(eta, dtype=np.float64)
    data_term = np.sum(((y_obs - f) / g) ** 2 + np.log(g ** 2))
    prior_term = eta @ np.asarray(solve_omega) @ eta
    return float(data_term + prior_term)


class PosteriorProblem:
    """
    Intermediate objects shared by the MAP, MCMC and SIR estimators of one
    individual: the prepared event record, the random effects with a variance
    > 0, the (IOV merged) covariance matrix and its inverse, the observations.

    The vectors handled here (`x`) hold the estimated random effects only:
    the reduced ETA, followed by the reduced KAPPA of every occasion beyond
    the first when the prior model has inter-occasion variability.
    """

    def __init__(self, dat: pd.DataFrame, prior_model: PriorModel, nocb: bool = False):
        self.prior_model = prior_model
        self.interpolation = "nocb" if nocb else "locf"
        self.cols = EventRecordCols()
        default_endpoint = prior_model.error_model.default_endpoint
        if default_endpoint is None and len(prior_model.structural_model.endpoints) == 1:
            default_endpoint = prior_model.structural_model.endpoints[0]
        self.data = prepare_event_record(dat,
                                         covariates=prior_model.covariates,
                                         endpoints=prior_model.endpoints,
                                         default_endpoint=default_endpoint)

        self.eta_names = prior_model.eta_names
        self.kappa_names = prior_model.kappa_names
        self.ind_eta, self.omega_eta = reduce_covariance(prior_model.omega)
        self.omega_dim = len(self.ind_eta)

        self.iov = prior_model.has_iov
        if self.iov:
            self.occ_levels = occasion_levels(self.data, self.cols.occasion)
            self.n_occ = len(self.occ_levels)
            self.ind_kappa, self.pimat_kappa = reduce_covariance(prior_model.pi_matrix)
            self.pimat_dim = len(self.ind_kappa)
            self.omega = merge_covar_matrices(self.omega_eta.to_numpy(), self.pimat_kappa.to_numpy(), self.n_occ)
        else:
            self.occ_levels = None
            self.n_occ = 1
            self.ind_kappa = np.array([], dtype=int)
            self.pimat_dim = 0
            self.omega = self.omega_eta.to_numpy()
        self.dim = self.omega.shape[0]
        self.solve_omega = invert_covariance(self.omega)

        if len(self.kappa_names) > 0:
            # the kappas of a non-IOV estimation are fixed at 0
            for k in self.kappa_names:
                if k not in self.data.columns:
                    self.data[k] = 0.0
        obs = observation_mask(self.data, self.cols)
        self.y_obs = self.data.loc[obs, [self.cols.time, self.cols.dep_var, self.cols.endpoint]].reset_index(drop=True)
        self.theta: Dict[str, float] = self.prior_model.theta.to_dict()
        covariates = prior_model.covariates
        self.covariates_first_row = (self.data.loc[0, covariates]
                                     if len(covariates) > 0 else pd.Series(dtype=np.float64))

    @property
    def estimated_names(self):
        """Labels of the elements of an estimated vector."""
        names = [self.eta_names[i] for i in self.ind_eta]
        if self.iov:
            for level in self.occ_levels[1:]:
                names += [f"{self.kappa_names[i]}_OCC{level}" for i in self.ind_kappa]
        return names

    def split(self, x):
        """(full ETA vector, kappa by occasion or None) of an estimated vector."""
        x = np.asarray(x, dtype=np.float64)
        if self.iov:
            eta, kappa = split_iov_vector(x, self.omega_dim, self.pimat_dim, self.n_occ)
        else:
            eta, kappa = x, None
        return scatter_eta(eta, self.ind_eta, len(self.eta_names)), kappa

    def schedule_for(self, kappa_by_occ=None, dat: pd.DataFrame = None) -> pd.DataFrame:
        dat = self.data if dat is None else dat
        if kappa_by_occ is None:
            return dat
        schedule = dat.copy()
        kappas = link_kappa_to_occ(schedule, kappa_by_occ, self.kappa_names, self.ind_kappa,
                                   levels=self.occ_levels, occ_col=self.cols.occasion)
        for k in self.kappa_names:
            schedule[k] = kappas[k]
        return schedule

    def eta_mapping(self, eta_full) -> Dict[str, float]:
        return dict(zip(self.eta_names, (float(v) for v in eta_full)))

    def run_model(self, x) -> pd.DataFrame:
        """Predictions of the observation rows for an estimated vector `x`."""
        eta_full, kappa = self.split(x)
        schedule = self.schedule_for(kappa)
        model = self.prior_model.structural_model
        try:
            pred = model.evaluate(self.theta, self.eta_mapping(eta_full), schedule, self.interpolation)
        except ModelEvaluationError:
            raise
        except Exception as e:
            raise ModelEvaluationError(f"The structural model failed at eta={eta_full}: {e}") from e
        if len(pred) != len(self.y_obs):
            raise ModelEvaluationError(
                f"The structural model returned {len(pred)} predictions for {len(self.y_obs)} observations"
            )
        if not np.all(np.isfinite(pred["f"].to_numpy(dtype=np.float64))):
            raise ModelEvaluationError(f"Non-finite predictions at eta={eta_full}")
        return pred

    def residuals(self, x) -> pd.DataFrame:
        pred = self.run_model(x)
        return residual_error_all_endpoints(pred, self.y_obs, self.prior_model.error_model, self.prior_model.sigma)

    def data_term(self, x) -> float:
        res = self.residuals(x)
        g = res["g"].to_numpy()
        value = float(np.sum(((res["DV"].to_numpy() - res["f"].to_numpy()) / g) ** 2 + np.log(g ** 2)))
        if not np.isfinite(value):
            raise ModelEvaluationError(f"Non-finite likelihood at x={np.asarray(x)}")
        return value

    def prior_term(self, x) -> float:
        x = np.asarray(x, dtype=np.float64)
        return float(x @ self.solve_omega @ x)

    def log_likelihood(self, x) -> float:
        return -0.5 * self.data_term(x)

    def __call__(self, x) -> float:
        res = self.residuals(x)
        ofv = objective_function(res["DV"], res["f"], res["g"], x, self.solve_omega)
        if not np.isfinite(ofv):
            raise ModelEvaluationError(f"Non-finite objective at x={np.asarray(x)}")
        return ofv
