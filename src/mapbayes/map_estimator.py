import warnings
import numpy as np
import pandas as pd
from dataclasses import dataclass
from scipy.optimize import minimize
from scipy.stats import norm
from typing import Callable, Dict, List

from .diffeqs import SolvedModel, make_prediction_grid
from .exceptions import MapConvergenceWarning, ModelEvaluationError
from .objective import PosteriorProblem
from .prior_model import PriorModel
from .results import EstimationResult
from .utils import as_random_source, debug_print, params_table

ANOMALY_FLAGS = ["stuck_on_bound", "all_eta_are_zero", "identical_abs_eta",
                 "sky_high_ofv", "not_the_best", "far_from_2nd_best"]


@dataclass
class MapControl:
    """
    Settings of the MAP estimator.

    Args:
        max_attempt (int): attempt budget of the restart loop.
        bound_quantile (float): the box bounds of each effect are
            +/- the `bound_quantile` upper quantile of N(0, variance).
        bound_increment (float): added to every bound when a solution sits
            on one.
        ofv_ceiling (float): an OFV >= this value calls for a new start.
        not_the_best_tol (float): tolerance on the OFV above the best one.
        second_best_tol (float): tolerance between the best and second best
            OFV of the attempts.
        prediction_step (float): resolution of the prediction grid.
        prediction_extension (float): the prediction grid ends this long
            after the last record.
        minimize_options (dict): passed to `scipy.optimize.minimize`.
    """
    max_attempt: int = 40
    bound_quantile: float = 0.025
    bound_increment: float = 1.0
    ofv_ceiling: float = 1e10
    not_the_best_tol: float = 1e-7
    second_best_tol: float = 1e-5
    prediction_step: float = 0.1
    prediction_extension: float = 1.0
    minimize_options: dict = None

    def __post_init__(self, ):
        if int(self.max_attempt) != self.max_attempt or self.max_attempt < 1:
            raise ValueError("max_attempt must be a positive integer")
        if not 0 < self.bound_quantile < 0.5:
            raise ValueError("bound_quantile must be in (0, 0.5)")
        if self.bound_increment <= 0:
            raise ValueError("bound_increment must be > 0")
        if self.not_the_best_tol < 0 or self.second_best_tol < 0:
            raise ValueError("OFV tolerances must be >= 0")
        if self.prediction_step <= 0 or self.prediction_extension < 0:
            raise ValueError("prediction_step must be > 0 and prediction_extension >= 0")
        self.max_attempt = int(self.max_attempt)
        self.minimize_options = {} if self.minimize_options is None else dict(self.minimize_options)


class AttemptLog:
    """Fixed capacity table of the (OFV, estimate) of each MAP attempt."""

    def __init__(self, max_attempt: int, names: List[str]):
        self.names = list(names)
        self.values = np.full((max_attempt, 1 + len(names)), np.inf, dtype=np.float64)
        self.records: List[Dict] = []

    def store(self, attempt: int, ofv: float, x):
        self.values[attempt - 1, 0] = ofv
        self.values[attempt - 1, 1:] = x

    def log(self, attempt: int, ofv: float, x, flags: Dict[str, bool], action: str, bounds):
        record = {"attempt": attempt, "ofv": ofv, "action": action,
                  "max_bound": float(np.max(bounds))}
        record.update(dict(zip(self.names, np.asarray(x, dtype=np.float64))))
        record.update(flags)
        self.records.append(record)
        return record

    @property
    def best_ofv(self) -> float:
        return float(np.min(self.values[:, 0]))

    @property
    def second_best_ofv(self) -> float:
        return float(np.sort(self.values[:, 0])[1]) if len(self.values) > 1 else np.inf

    def best(self):
        i = int(np.argmin(self.values[:, 0]))
        return self.values[i, 0], self.values[i, 1:].copy()

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.records)


def detect_anomalies(x, ofv: float, bounds, attempt_log: AttemptLog, control: MapControl) -> Dict[str, bool]:
    """Anomalies of an optimum calling for widened bounds or a new start."""
    x = np.asarray(x, dtype=np.float64)
    best = attempt_log.best_ofv
    second = attempt_log.second_best_ofv
    with np.errstate(invalid="ignore"):
        far_from_2nd_best = bool(np.abs(second - best) > control.second_best_tol)
        not_the_best = bool(ofv - best > control.not_the_best_tol)
    return {
        "stuck_on_bound": bool(np.any(np.abs(x) >= bounds * (1 - 1e-12))),
        "all_eta_are_zero": bool(np.all(x == 0)),
        "identical_abs_eta": bool(len(np.unique(np.abs(x))) < len(x)),
        "sky_high_ofv": bool(ofv >= control.ofv_ceiling),
        "not_the_best": not_the_best,
        "far_from_2nd_best": far_from_2nd_best,
    }


def initial_bounds(omega, bound_quantile: float = 0.025) -> np.ndarray:
    sd = np.sqrt(np.diag(np.asarray(omega, dtype=np.float64)))
    return norm.ppf(1 - bound_quantile) * sd


def resolve_map_model(problem: PosteriorProblem, x, control: MapControl):
    """Structural model at the estimate, over the extended prediction grid."""
    prior = problem.prior_model
    eta_full, kappa = problem.split(x)
    dat = problem.schedule_for(kappa)
    extra_cols = list(prior.covariates) + list(prior.kappa_names) + [problem.cols.occasion]
    event = make_prediction_grid(dat,
                                 step=control.prediction_step,
                                 extension=control.prediction_extension,
                                 endpoints=prior.endpoints,
                                 extra_cols=extra_cols,
                                 interpolation=problem.interpolation)
    eta_df = pd.DataFrame([eta_full], columns=problem.eta_names)
    covariates = problem.covariates_first_row if len(prior.covariates) > 0 else None
    params = params_table(prior.theta, eta_df, covariates, prior.kappa_names)
    model = SolvedModel(prior.structural_model, params, event,
                        theta_names=prior.theta_names,
                        interpolation=problem.interpolation)
    return model, event


def estim_map(dat: pd.DataFrame,
              prior_model: PriorModel,
              return_model: bool = True,
              return_ofv: bool = False,
              nocb: bool = False,
              control: MapControl = None,
              random_state=None,
              callback: Callable = None,
              verbose: bool = False,
              ) -> EstimationResult:
    """
    Maximum A Posteriori estimate of the random effects of an individual.

    Bounded L-BFGS-B minimizations of the objective function are restarted
    until the optimum shows no anomaly: a solution on a bound widens the
    bounds, other anomalies (all ETA at 0, identical |ETA|, huge OFV, an OFV
    worse than a previous attempt, best and second best OFV far apart, or
    simply the first attempt) call for a new random start. When the attempt
    budget is exhausted the attempt with the lowest OFV is returned, with
    `converged=False` and a `MapConvergenceWarning`.

    Args:
        dat (pd.DataFrame): event record of one individual.
        prior_model (PriorModel): population model.
        return_model (bool): resolve the structural model at the estimate
            over the prediction grid.
        return_ofv (bool): return the objective function value.
        nocb (bool): next observation carried backward for covariates.
        control (MapControl): settings of the restart loop.
        random_state: seed, `numpy.random.Generator` or `RandomSource`.
        callback (Callable): called with the record of every attempt.
        verbose (bool): print the progress of the restart loop.

    Returns:
        EstimationResult: `eta` (pd.Series, 0 for the effects without
            variability), `ofv`, `model`, `event`, `converged`, `attempts`.
    """
    control = MapControl() if control is None else control
    rs = as_random_source(random_state)
    problem = PosteriorProblem(dat, prior_model, nocb=nocb)
    names = problem.estimated_names

    original_bounds = initial_bounds(problem.omega, control.bound_quantile)
    bounds = original_bounds.copy()
    start = np.zeros(problem.dim, dtype=np.float64)
    attempt_log = AttemptLog(control.max_attempt, names)

    x_hat, ofv_hat = None, None
    converged = False
    n_success = 0
    for attempt in range(1, control.max_attempt + 1):
        debug_print(f"MAP attempt {attempt}, start={start}, bounds={bounds}", verbose)
        try:
            res = minimize(problem, start, method="L-BFGS-B",
                           bounds=list(zip(-bounds, bounds)),
                           options=control.minimize_options)
            if not np.all(np.isfinite(res.x)):
                warnings.warn(f"The estimated eta of attempt {attempt} was infinite, starting over.")
                raise ModelEvaluationError("Infinite eta estimate")
        except (ModelEvaluationError, FloatingPointError, ValueError) as e:
            debug_print(f"MAP attempt {attempt} failed: {e}", verbose)
            record = attempt_log.log(attempt, np.nan, start, {f: False for f in ANOMALY_FLAGS},
                                     "failed", bounds)
            if callback is not None:
                callback(record)
            start = rs.multivariate_normal(problem.omega)
            bounds = original_bounds.copy()
            continue

        n_success += 1
        x, ofv = np.asarray(res.x, dtype=np.float64), float(res.fun)
        attempt_log.store(attempt, ofv, x)
        flags = detect_anomalies(x, ofv, bounds, attempt_log, control)
        need_a_new_start = attempt == 1 or any(flags[f] for f in ANOMALY_FLAGS[1:])

        if flags["stuck_on_bound"]:
            action = "widen_bounds"
        elif need_a_new_start:
            action = "new_start"
        else:
            action = "converged"
        record = attempt_log.log(attempt, ofv, x, flags, action, bounds)
        debug_print(f"MAP attempt {attempt}: ofv={ofv}, flags={flags}, action={action}", verbose)
        if callback is not None:
            callback(record)

        if action == "converged":
            x_hat, ofv_hat = x, ofv
            converged = True
            break
        if action == "widen_bounds":
            bounds = bounds + control.bound_increment
        else:
            start = rs.multivariate_normal(problem.omega)
            bounds = original_bounds.copy()

    if not converged:
        if n_success == 0:
            raise ModelEvaluationError(
                f"The objective function could not be minimized in {control.max_attempt} attempts"
            )
        # the "less bad" solution is the attempt with the lowest OFV
        ofv_hat, x_hat = attempt_log.best()
        warnings.warn(
            f"MAP estimation did not converge in {control.max_attempt} attempts, returning the attempt "
            f"with the lowest OFV ({ofv_hat:.6g})",
            MapConvergenceWarning,
        )

    eta_full, _ = problem.split(x_hat)
    eta = pd.Series(eta_full, index=problem.eta_names, dtype=np.float64)
    model, event = (None, None)
    if return_model:
        model, event = resolve_map_model(problem, x_hat, control)
    return EstimationResult(eta=eta,
                            ofv=float(ofv_hat) if return_ofv else None,
                            model=model,
                            event=event,
                            converged=converged,
                            attempts=attempt_log.to_frame(),
                            diagnostics={"x": pd.Series(x_hat, index=names, dtype=np.float64)},
                            method="map")
