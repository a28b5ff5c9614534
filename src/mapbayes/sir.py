import warnings
import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs
from scipy.stats import multivariate_normal

from .diffeqs import SolvedModel
from .exceptions import ModelEvaluationError
from .objective import PosteriorProblem
from .prior_model import PriorModel
from .results import EstimationResult
from .utils import as_random_source, debug_print, params_table


def normalize_log_weights(log_w) -> np.ndarray:
    """
    Importance weights from log weights: the maximum is subtracted before
    exponentiating, then the weights are scaled to sum to 1. Non-finite log
    weights get a weight of 0.
    """
    log_w = np.asarray(log_w, dtype=np.float64)
    finite = np.isfinite(log_w)
    if not np.any(finite):
        raise ModelEvaluationError("None of the sampled candidates has a finite importance weight")
    w = np.zeros_like(log_w)
    w[finite] = np.exp(log_w[finite] - np.max(log_w[finite]))
    return w / np.sum(w)


def effective_sample_size(weights) -> float:
    weights = np.asarray(weights, dtype=np.float64)
    return float(1.0 / np.sum(weights ** 2))


def _log_likelihood_batch(problem: PosteriorProblem, candidates) -> np.ndarray:
    # -0.5 * OFV, the prior quadratic included
    return np.array([-0.5 * problem(x) for x in candidates], dtype=np.float64)


def estim_sir(dat: pd.DataFrame,
              prior_model: PriorModel,
              n_sample: int = 10000,
              n_resample: int = 1000,
              return_model: bool = True,
              nocb: bool = False,
              random_state=None,
              n_jobs: int = 1,
              verbose: bool = False,
              ) -> EstimationResult:
    """
    Posterior distribution of the random effects by Sequential Importance
    Resampling, the prior being the proposal distribution.

    S-step: `n_sample` vectors are drawn from N(0, Omega), Omega being merged
    with one PI matrix per occasion beyond the first for IOV models.
    I-step: log weight = log likelihood - log prior density of each draw.
    R-step: `n_resample` draws with replacement, proportionally to the weights.

    Args:
        dat (pd.DataFrame): event record of one individual.
        prior_model (PriorModel): population model.
        n_sample (int): draws from the prior.
        n_resample (int): draws of the posterior sample.
        return_model (bool): resolve the structural model for every draw.
        nocb (bool): next observation carried backward for covariates.
        random_state: seed, `numpy.random.Generator` or `RandomSource`.
        n_jobs (int): joblib workers of the I-step.
        verbose (bool): print the effective sample size.

    Returns:
        EstimationResult: `eta` holds the IIV part of the resampled draws,
            `diagnostics` the importance weights, the effective sample size,
            the resampled indices and the resampled (IIV and IOV) vectors.
    """
    if n_sample < 1 or n_resample < 1:
        raise ValueError("n_sample and n_resample must be >= 1")
    rs = as_random_source(random_state)
    problem = PosteriorProblem(dat, prior_model, nocb=nocb)

    # S-step
    eta_sim = np.atleast_2d(rs.multivariate_normal(problem.omega, size=n_sample))

    # I-step
    n_batches = max(1, min(n_sample, 10 * effective_n_jobs(n_jobs)))
    batches = np.array_split(eta_sim, n_batches)
    lf = np.concatenate(Parallel(n_jobs=n_jobs)(
        delayed(_log_likelihood_batch)(problem, batch) for batch in batches
    ))
    lp = np.atleast_1d(multivariate_normal.logpdf(eta_sim, mean=np.zeros(problem.dim), cov=problem.omega))
    probs = normalize_log_weights(lf - lp)
    ess = effective_sample_size(probs)
    debug_print(f"SIR effective sample size: {ess:.1f} / {n_sample}", verbose)
    if ess < 0.01 * n_sample:
        warnings.warn(f"The SIR effective sample size is low ({ess:.1f} for {n_sample} draws), "
                      f"consider increasing n_sample")

    # R-step
    indices = rs.resample(n_sample, n_resample, probs)
    resampled = eta_sim[indices, :]
    eta_full, kappa = problem.split(resampled)
    eta_df = pd.DataFrame(eta_full, columns=problem.eta_names)

    model, event = None, None
    if return_model:
        covariates = problem.covariates_first_row if len(prior_model.covariates) > 0 else None
        params = params_table(prior_model.theta, eta_df, covariates)
        if problem.iov:
            tables = []
            for k in range(n_resample):
                schedule = problem.schedule_for(kappa[k]).copy()
                schedule["ID"] = k + 1
                tables.append(schedule)
            event = pd.concat(tables, ignore_index=True)
        else:
            event = problem.data
        model = SolvedModel(prior_model.structural_model, params, event,
                            theta_names=prior_model.theta_names,
                            interpolation=problem.interpolation,
                            per_draw_event=problem.iov)
    diagnostics = {
        "weights": probs,
        "ess": ess,
        "indices": indices,
        "x": pd.DataFrame(resampled, columns=problem.estimated_names),
    }
    return EstimationResult(eta=eta_df, model=model, event=event,
                            diagnostics=diagnostics, method="sir")
