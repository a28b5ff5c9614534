import numpy as np
import pandas as pd
import pytest

from mapbayes.diffeqs import FunctionModel, ODEModel, OneCompartmentIV
from mapbayes.error_models import combined2, constant, proportional
from mapbayes.prior_model import PriorModel


def one_cmt_bolus(p, schedule):
    """Closed form one-compartment IV bolus, Cl/Vc parameterization."""
    cl = p["THETA_Cl"] * np.exp(p["ETA_Cl"])
    vc = p["THETA_Vc"] * np.exp(p["ETA_Vc"])
    doses = schedule.loc[schedule["EVID"] == 1, ["TIME", "AMT"]].to_numpy()
    t_obs = schedule.loc[schedule["EVID"] == 0, "TIME"].to_numpy()
    conc = np.zeros(len(t_obs))
    for t_dose, amt in doses:
        dt = t_obs - t_dose
        conc += np.where(dt >= 0, amt / vc * np.exp(-cl / vc * np.clip(dt, 0, None)), 0.0)
    return conc


def linear_model(p, schedule):
    obs = schedule.loc[schedule["EVID"] == 0, :]
    return p["THETA_a"] + p["ETA_a"] + p["ETA_b"] * obs["TIME"].to_numpy()


def diag_omega(names, variances):
    return pd.DataFrame(np.diag(variances), index=names, columns=names)


@pytest.fixture
def patient_dat():
    return pd.DataFrame({
        "ID": 1,
        "TIME": [0.0, 1.0, 14.0],
        "DV": [np.nan, 25.0, 5.5],
        "AMT": [2000.0, 0.0, 0.0],
        "EVID": [1, 0, 0],
        "DUR": [0.0, np.nan, np.nan],
    })


@pytest.fixture
def one_cmt_prior():
    return PriorModel(
        theta=pd.Series({"THETA_Cl": 4.0, "THETA_Vc": 70.0}),
        omega=diag_omega(["ETA_Cl", "ETA_Vc"], [0.2, 0.2]),
        sigma=[np.sqrt(0.05)],
        structural_model=FunctionModel(one_cmt_bolus,
                                       parameter_names=["THETA_Cl", "THETA_Vc", "ETA_Cl", "ETA_Vc"]),
        error_model=proportional,
    )


@pytest.fixture
def one_cmt_ode_prior():
    def individual_params(p):
        return {"cl": p["THETA_Cl"] * np.exp(p["ETA_Cl"]),
                "vc": p["THETA_Vc"] * np.exp(p["ETA_Vc"])}
    return PriorModel(
        theta=pd.Series({"THETA_Cl": 4.0, "THETA_Vc": 70.0}),
        omega=diag_omega(["ETA_Cl", "ETA_Vc"], [0.2, 0.2]),
        sigma=[2.0, 0.2],
        structural_model=ODEModel(OneCompartmentIV, individual_params,
                                  parameter_names=["THETA_Cl", "THETA_Vc", "ETA_Cl", "ETA_Vc"]),
        error_model=combined2,
    )


@pytest.fixture
def linear_prior():
    return PriorModel(
        theta=pd.Series({"THETA_a": 10.0}),
        omega=diag_omega(["ETA_a", "ETA_b"], [1.0, 0.25]),
        sigma=[0.5],
        structural_model=FunctionModel(linear_model),
        error_model=constant,
    )


@pytest.fixture
def linear_dat():
    return pd.DataFrame({
        "ID": 1,
        "TIME": [0.0, 1.0, 2.0, 4.0],
        "DV": [np.nan, 11.2, 11.9, 12.8],
        "AMT": [100.0, 0.0, 0.0, 0.0],
        "EVID": [1, 0, 0, 0],
    })


def iov_model(p, schedule):
    obs = schedule.loc[schedule["EVID"] == 0, :]
    return p["THETA_a"] + p["ETA_a"] + obs["KAPPA_a"].to_numpy()


@pytest.fixture
def iov_prior():
    return PriorModel(
        theta=pd.Series({"THETA_a": 10.0}),
        omega=diag_omega(["ETA_a"], [1.0]),
        pi_matrix=diag_omega(["KAPPA_a"], [0.3]),
        sigma=[0.5],
        structural_model=FunctionModel(iov_model, parameter_names=["THETA_a", "ETA_a", "KAPPA_a"]),
        error_model=constant,
    )


@pytest.fixture
def iov_dat():
    return pd.DataFrame({
        "ID": 1,
        "TIME": [0.0, 1.0, 2.0, 24.0, 25.0, 26.0],
        "DV": [np.nan, 11.0, 11.2, np.nan, 12.5, 12.3],
        "AMT": [100.0, 0.0, 0.0, 100.0, 0.0, 0.0],
        "EVID": [1, 0, 0, 1, 0, 0],
        "OCC": [1, 1, 1, 2, 2, 2],
    })


@pytest.fixture
def one_cmt_function():
    return one_cmt_bolus
