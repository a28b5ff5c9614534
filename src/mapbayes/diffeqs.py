import abc
import numpy as np
import pandas as pd
from dataclasses import dataclass, field
from functools import cached_property
from scipy.integrate import solve_ivp
from typing import Callable, Dict, List, Literal, Mapping

from .exceptions import ModelEvaluationError
from .pd_templates import EventRecordCols, dosing_mask, observation_mask, DOSING_EVIDS

Interpolation = Literal["locf", "nocb"]


class ModelEvaluator(abc.ABC):
    """
    Abstract Base Class for structural model evaluators.

    An evaluator turns population fixed effects (THETA), individual random
    effects (ETA) and a NONMEM-style event record into predictions for the
    observation rows (EVID=0) of that record. Evaluators must not keep mutable
    state between calls, the estimators call them for many candidate
    parameter vectors, possibly from several worker processes.

    Attributes:
        parameter_names: names of the THETA/ETA/KAPPA parameters the model
            reads, or None when the evaluator cannot tell.
        endpoints: labels of the predicted endpoints, the first one is used
            for rows without a `DVID`.
    """
    parameter_names = None
    endpoints: List[str] = ["Cc"]

    @abc.abstractmethod
    def evaluate(self,
                 theta: Mapping[str, float],
                 eta: Mapping[str, float],
                 schedule: pd.DataFrame,
                 interpolation: Interpolation = "locf",
                 ) -> pd.DataFrame:
        """
        Predicts the observations of an event record.

        Args:
            theta (Mapping[str, float]): population fixed effects.
            eta (Mapping[str, float]): individual random effects.
            schedule (pd.DataFrame): event record, dosing and sampling rows,
                covariate and KAPPA columns.
            interpolation (str): "locf" or "nocb" for time-varying columns.

        Returns:
            pd.DataFrame: `TIME`, `DVID` and `f`, one row per EVID=0 row of
                `schedule`, in the same order.
        """
        pass

    def _default_dvid(self, schedule: pd.DataFrame):
        cols = EventRecordCols()
        obs = schedule.loc[observation_mask(schedule, cols), :]
        if cols.endpoint in obs.columns:
            return obs[cols.endpoint].fillna(self.endpoints[0]).to_numpy()
        return np.full(len(obs), self.endpoints[0], dtype=object)


class PKBaseODE(abc.ABC):
    """
    Abstract Base Class for Pharmacokinetic ODE models.

    This class defines the structure for PK models described by ordinary
    differential equations. Subclasses must implement the `ode` method,
    which defines the differential equations for the masses in each
    compartment, and the `mass_to_depvar` method, which converts the
    predicted mass in the observed compartment (usually central) to the
    measured dependent variable (usually concentration).

    Attributes:
        state_names (tuple): compartments, in the order of `y`.
        parameter_names (tuple): ODE parameters, in the order of `*params`.
        dose_compartment (int): index of the compartment receiving doses.
        endpoints (tuple): labels of the dependent variables.
    """
    state_names = ()
    parameter_names = ()
    dose_compartment = 0
    endpoints = ("Cc",)

    def __init__(self, ):
        pass

    @abc.abstractmethod
    def ode(self, t, y, rate, *params):
        """
        Defines the system of ordinary differential equations.

        Args:
            t (float): Current time point.
            y (np.ndarray): Current masses in the compartments.
            rate (np.ndarray): Zero-order input (infusion) rate of each
                compartment over the current integration segment.
            *params: ODE parameters, ordered as `parameter_names`.

        Returns:
            list: derivatives [dy/dt], ordered as `y`.
        """
        pass

    @abc.abstractmethod
    def mass_to_depvar(self, y, *params):
        """
        Converts the masses to the first endpoint (usually a concentration).
        """
        pass

    def depvars(self, y, *params) -> Dict[str, float]:
        return {self.endpoints[0]: self.mass_to_depvar(y, *params)}

    def initial_state(self, *params):
        return np.zeros(len(self.state_names), dtype=np.float64)


class OneCompartmentIV(PKBaseODE):
    """
    One-compartment IV model (bolus or infusion). Parameterized by Clearance
    (CL) and Volume (Vc).

    States (y):
        y[0]: Mass in Central Compartment (amount)

    Parameters (*params for ode/mass_to_depvar):
        cl (float): Clearance from the central compartment (volume/time).
        vc (float): Volume of distribution of the central compartment (volume).

    Units and Output:
        - Ensure consistency (e.g., hr, L, mg). Typical units: cl(L/hr), vc(L).
        - `mass_to_depvar` converts Central mass to concentration using Vc.

    Common Derived Parameters:
        - Elimination rate constant: ke = cl / vc.
        - Half-life: t1/2 = ln(2) * vc / cl.
        - Area Under Curve (AUC): AUC_inf = Dose / cl.
    """
    state_names = ("centr",)
    parameter_names = ("cl", "vc")

    def ode(self, t, y, rate, cl, vc):
        central_mass = y[0]
        dCMdt = rate[0] - (cl / vc) * central_mass
        return [dCMdt]

    def mass_to_depvar(self, y, cl, vc):
        return y[0] / vc


class OneCompartmentAbsorption(PKBaseODE):
    """
    One-compartment model with first-order absorption (Depot -> Central).
    Parameterized by Ka, Apparent Clearance (CL/F), Apparent Volume (Vc/F).

    States (y):
        y[0]: Mass in the depot (absorption) compartment
        y[1]: Mass in the central compartment
        Order: [Depot, Central]

    Doses go to the depot, infusions into the depot model a zero-order
    absorption.
    """
    state_names = ("depot", "centr")
    parameter_names = ("ka", "cl", "vc")

    def ode(self, t, y, rate, ka, cl, vc):
        depot, central_mass = y[0], y[1]
        dDdt = rate[0] - ka * depot
        dCMdt = rate[1] + ka * depot - (cl / vc) * central_mass
        return [dDdt, dCMdt]

    def mass_to_depvar(self, y, ka, cl, vc):
        return y[1] / vc


class TwoCompartmentIV(PKBaseODE):
    """Two-compartment IV model, parameterized by CL, Vc, Q and Vp."""
    state_names = ("centr", "periph")
    parameter_names = ("cl", "vc", "q", "vp")

    def ode(self, t, y, rate, cl, vc, q, vp):
        ke = cl / vc
        k12 = q / vc
        k21 = q / vp
        dCdt = rate[0] - ke * y[0] - k12 * y[0] + k21 * y[1]
        dPdt = rate[1] + k12 * y[0] - k21 * y[1]
        return [dCdt, dPdt]

    def mass_to_depvar(self, y, cl, vc, q, vp):
        return y[0] / vc


class ODEModel(ModelEvaluator):
    """
    Solves a `PKBaseODE` over a NONMEM event record.

    Bolus doses (DUR=0) are added to the dose compartment, infusions add
    AMT/DUR to its input rate over [TIME, TIME+DUR). Covariate and KAPPA
    columns are piecewise constant between records: the value of the
    previous record is used over a segment with "locf", the value of the
    next record with "nocb".

    Args:
        pk_model_class: a `PKBaseODE` subclass (or instance).
        individual_params (Callable): maps a dict of THETA, ETA, KAPPA and
            covariate values to the ODE parameters, e.g.
            `lambda p: {"cl": p["THETA_Cl"]*np.exp(p["ETA_Cl"]), ...}`.
        parameter_names (List[str]): THETA/ETA/KAPPA names read by
            `individual_params`, used to validate prior models.
    """

    def __init__(self,
                 pk_model_class,
                 individual_params: Callable[[Mapping], Mapping],
                 parameter_names: List[str] = None,
                 ode_solver_method: str = "LSODA",
                 rtol: float = 1e-6,
                 atol: float = 1e-9,
                 ):
        self.pk_model = pk_model_class() if isinstance(pk_model_class, type) else pk_model_class
        self.individual_params = individual_params
        self.parameter_names = None if parameter_names is None else list(parameter_names)
        self.ode_solver_method = ode_solver_method
        self.rtol = rtol
        self.atol = atol

    @property
    def endpoints(self):
        return list(self.pk_model.endpoints)

    def _ode_params(self, base: Mapping, row: Mapping) -> tuple:
        merged = dict(row)
        merged.update(base)
        coeffs = self.individual_params(merged)
        params = tuple(float(coeffs[p]) for p in self.pk_model.parameter_names)
        if not np.all(np.isfinite(params)):
            raise ModelEvaluationError(f"Non-finite ODE parameters {dict(zip(self.pk_model.parameter_names, params))}")
        return params

    def _integrate(self, y, t0, t1, infusions, params):
        n_states = len(y)
        breakpoints = sorted({t0, t1} | {end for end, _ in infusions if t0 < end < t1})
        for a, b in zip(breakpoints[:-1], breakpoints[1:]):
            rate = np.zeros(n_states, dtype=np.float64)
            rate[self.pk_model.dose_compartment] = sum(r for end, r in infusions if end >= b)
            sol = solve_ivp(self.pk_model.ode, (a, b), y,
                            method=self.ode_solver_method,
                            args=(rate, *params),
                            rtol=self.rtol, atol=self.atol)
            if not sol.success:
                raise ModelEvaluationError(f"ODE solver failed on [{a}, {b}]: {sol.message}")
            y = sol.y[:, -1]
        return y

    def solve(self, theta, eta, schedule: pd.DataFrame, interpolation: Interpolation = "locf"):
        cols = EventRecordCols()
        data = schedule.reset_index(drop=True)
        rows = data.to_dict("records")
        base = dict(theta)
        base.update(eta)
        times = data[cols.time].to_numpy(dtype=np.float64)
        evid = data[cols.event_id].to_numpy()
        amt = data[cols.amount].fillna(0.0).to_numpy(dtype=np.float64)
        dur = (data[cols.duration].fillna(0.0).to_numpy(dtype=np.float64)
               if cols.duration in data.columns else np.zeros(len(data)))
        has_dvid = cols.endpoint in data.columns

        y = np.asarray(self.pk_model.initial_state(*self._ode_params(base, rows[0])), dtype=np.float64)
        infusions = []
        t_cur = times[0]
        out_time, out_dvid, out_f = [], [], []
        for i, row in enumerate(rows):
            t = times[i]
            if t > t_cur:
                seg_row = rows[i - 1] if interpolation == "locf" else row
                y = self._integrate(y, t_cur, t, infusions, self._ode_params(base, seg_row))
                t_cur = t
                infusions = [(end, r) for end, r in infusions if end > t_cur]
            if evid[i] in DOSING_EVIDS:
                if dur[i] > 0:
                    infusions.append((t + dur[i], amt[i] / dur[i]))
                else:
                    y = y.copy()
                    y[self.pk_model.dose_compartment] += amt[i]
            elif evid[i] == 0:
                depvars = self.pk_model.depvars(y, *self._ode_params(base, row))
                endpoint = row[cols.endpoint] if has_dvid and not pd.isna(row[cols.endpoint]) else self.endpoints[0]
                out_time.append(t)
                out_dvid.append(endpoint)
                out_f.append(depvars[endpoint])
        return pd.DataFrame({"TIME": out_time, "DVID": out_dvid, "f": np.asarray(out_f, dtype=np.float64)})

    def evaluate(self, theta, eta, schedule, interpolation="locf"):
        try:
            return self.solve(theta, eta, schedule, interpolation)
        except ModelEvaluationError:
            raise
        except Exception as e:
            raise ModelEvaluationError(f"{type(self.pk_model).__name__} could not be solved: {e}") from e


class FunctionModel(ModelEvaluator):
    """Wraps an analytic model `fn(p, schedule) -> predictions of the EVID=0 rows`."""

    def __init__(self, fn: Callable, endpoints=("Cc",), parameter_names: List[str] = None):
        self.fn = fn
        self.endpoints = list(endpoints)
        self.parameter_names = None if parameter_names is None else list(parameter_names)

    def evaluate(self, theta, eta, schedule, interpolation="locf"):
        cols = EventRecordCols()
        p = dict(theta)
        p.update(eta)
        obs = schedule.loc[observation_mask(schedule, cols), :]
        try:
            f = np.asarray(self.fn(p, schedule), dtype=np.float64).reshape(-1)
        except Exception as e:
            raise ModelEvaluationError(f"{getattr(self.fn, '__name__', 'model')} failed: {e}") from e
        return pd.DataFrame({
            "TIME": obs[cols.time].to_numpy(dtype=np.float64),
            "DVID": self._default_dvid(schedule),
            "f": f,
        })


def extrapolate_columns(dat: pd.DataFrame, times, columns: List[str],
                        interpolation: Interpolation = "locf") -> pd.DataFrame:
    """Values of time-varying columns of `dat` at new `times` (piecewise constant)."""
    src_times = dat["TIME"].to_numpy(dtype=np.float64)
    times = np.asarray(times, dtype=np.float64)
    if interpolation == "nocb":
        idx = np.searchsorted(src_times, times, side="left")
    else:
        idx = np.searchsorted(src_times, times, side="right") - 1
    idx = np.clip(idx, 0, len(src_times) - 1)
    return pd.DataFrame({c: dat[c].to_numpy()[idx] for c in columns})


def make_prediction_grid(dat: pd.DataFrame,
                         step: float = 0.1,
                         extension: float = 1.0,
                         endpoints: List[str] = None,
                         extra_cols: List[str] = None,
                         interpolation: Interpolation = "locf",
                         ) -> pd.DataFrame:
    """
    Event table used to resolve a model: the dosing rows of `dat` and
    sampling rows from the first record time to the last one plus
    `extension`, every `step`, for every endpoint.

    Args:
        dat (pd.DataFrame): prepared event record of one individual.
        step (float): resolution of the sampling grid.
        extension (float): time added after the last record.
        endpoints (List[str]): endpoints to sample, defaults to the observed
            ones.
        extra_cols (List[str]): covariate, KAPPA or OCC columns carried to
            the sampling rows by locf/nocb extrapolation.
        interpolation (str): "locf" or "nocb".
    """
    cols = EventRecordCols()
    if step <= 0:
        raise ValueError("The prediction grid step must be > 0")
    if endpoints is None:
        endpoints = list(pd.unique(dat.loc[observation_mask(dat, cols), cols.endpoint]))
    extra_cols = [c for c in ([] if extra_cols is None else extra_cols) if c in dat.columns]
    t0 = dat[cols.time].iloc[0]
    t_end = dat[cols.time].iloc[-1] + extension
    n_steps = int(np.floor((t_end - t0) / step + 1e-9))
    times = np.round(t0 + step * np.arange(n_steps + 1), 10)

    dosing = dat.loc[dosing_mask(dat, cols), :].copy()
    sampling = []
    for endpoint in endpoints:
        s = pd.DataFrame({
            cols.subject_id: dat[cols.subject_id].iloc[0],
            cols.time: times,
            cols.dep_var: np.nan,
            cols.amount: 0.0,
            cols.event_id: 0,
            cols.duration: 0.0,
            cols.endpoint: endpoint,
        })
        if len(extra_cols) > 0:
            s = pd.concat([s, extrapolate_columns(dat, times, extra_cols, interpolation)], axis=1)
        sampling.append(s)
    dosing = dosing.reindex(columns=list(sampling[0].columns))
    dosing[cols.endpoint] = dosing[cols.endpoint].fillna(endpoints[0])
    event = pd.concat([dosing] + sampling, ignore_index=True)
    event = event.sort_values(cols.time, kind="mergesort").reset_index(drop=True)
    return event


@dataclass
class SolvedModel:
    """
    Structural model bound to estimated or sampled parameters.

    Attributes:
        evaluator (ModelEvaluator): the structural model.
        params (pd.DataFrame): one row per draw, THETA, ETA and covariate
            (or KAPPA) columns.
        event (pd.DataFrame): event table. When it has one `ID` per draw
            (1..n), draw k is solved on the rows with `ID == k`, otherwise
            every draw shares the table.
        theta_names (List[str]): the THETA columns of `params`.
        interpolation (str): "locf" or "nocb".
    """
    evaluator: ModelEvaluator
    params: pd.DataFrame
    event: pd.DataFrame
    theta_names: List[str] = field(default_factory=list)
    interpolation: Interpolation = "locf"
    per_draw_event: bool = False

    def _draw_inputs(self, k):
        row = self.params.iloc[k]
        theta = {c: float(row[c]) for c in self.theta_names}
        eta = {c: float(row[c]) for c in self.params.columns
               if c not in self.theta_names and c not in self.event.columns}
        if self.per_draw_event:
            schedule = self.event.loc[self.event["ID"] == k + 1, :]
        else:
            schedule = self.event
        return theta, eta, schedule

    @cached_property
    def predictions(self) -> pd.DataFrame:
        out = []
        for k in range(len(self.params)):
            theta, eta, schedule = self._draw_inputs(k)
            pred = self.evaluator.evaluate(theta, eta, schedule, self.interpolation)
            pred.insert(0, "ID", k + 1)
            out.append(pred)
        return pd.concat(out, ignore_index=True)

    def predict(self) -> pd.DataFrame:
        return self.predictions.copy()
