import numpy as np
import pandas as pd

from .covariance import reduce_covariance
from .diffeqs import SolvedModel
from .pd_templates import EventRecordCols
from .prior_model import PriorModel
from .results import EstimationResult
from .utils import as_random_source, params_table, scatter_eta


def simu_pop(dat: pd.DataFrame,
             prior_model: PriorModel,
             n_simul: int = 1000,
             return_model: bool = True,
             nocb: bool = False,
             random_state=None,
             ) -> EstimationResult:
    """
    Draws individuals from the prior distribution of the random effects.

    Args:
        dat (pd.DataFrame): event record (dosing and sampling times) of one
            individual, the covariates are read from its first row.
        prior_model (PriorModel): population model.
        n_simul (int): number of draws. With 0, a single individual with
            all ETA at 0 (the typical individual) is returned.
        return_model (bool): also resolve the structural model for each draw.
        nocb (bool): next observation carried backward for covariates.
        random_state: seed, `numpy.random.Generator` or `RandomSource`.

    Returns:
        EstimationResult: `eta` holds one row per draw.
    """
    if n_simul < 0:
        raise ValueError("n_simul must be >= 0")
    cols = EventRecordCols()
    cols.validate_df_columns(dat, extra_cols=prior_model.covariates)
    eta_names = prior_model.eta_names
    ind_eta, omega_eta = reduce_covariance(prior_model.omega)

    if n_simul == 0 or len(ind_eta) == 0:
        eta = np.zeros((1 if n_simul == 0 else n_simul, len(eta_names)), dtype=np.float64)
    else:
        rs = as_random_source(random_state)
        draws = rs.multivariate_normal(omega_eta.to_numpy(), size=n_simul)
        eta = scatter_eta(draws, ind_eta, len(eta_names))
    eta_df = pd.DataFrame(eta, columns=eta_names)

    model = None
    event = None
    if return_model:
        event = dat.reset_index(drop=True).copy()
        if cols.duration not in event.columns:
            event[cols.duration] = 0.0
        if cols.endpoint not in event.columns:
            event[cols.endpoint] = prior_model.structural_model.endpoints[0]
        for k in prior_model.kappa_names:
            if k not in event.columns:
                event[k] = 0.0
        covariates = (event.loc[0, prior_model.covariates]
                      if len(prior_model.covariates) > 0 else None)
        params = params_table(prior_model.theta, eta_df, covariates, prior_model.kappa_names)
        model = SolvedModel(prior_model.structural_model, params, event,
                            theta_names=prior_model.theta_names,
                            interpolation="nocb" if nocb else "locf")
    return EstimationResult(eta=eta_df, model=model, event=event, method="prior")
