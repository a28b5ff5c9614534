import numpy as np
import pytest

import mapbayes.mlflow_utils as mlflow_utils
from mapbayes.map_estimator import estim_map
from mapbayes.mlflow_utils import (
    MLflowAttemptCallback,
    generate_model_contents_hash,
    log_estimation_result,
    structural_model_source,
)


@pytest.fixture
def captured(monkeypatch):
    calls = {"metric": [], "param": []}

    def log_metric(key, value, step=None):
        calls["metric"].append((key, value, step))

    def log_param(key, value):
        calls["param"].append((key, value))

    monkeypatch.setattr(mlflow_utils.mlflow, "log_metric", log_metric)
    monkeypatch.setattr(mlflow_utils.mlflow, "log_param", log_param)
    return calls


class TestHash:

    def test_deterministic(self, one_cmt_prior):
        source = structural_model_source(one_cmt_prior.structural_model)
        assert "def one_cmt_bolus" in source
        assert generate_model_contents_hash(source) == generate_model_contents_hash(source)
        assert len(generate_model_contents_hash(source)) == 64

    def test_ode_model(self, one_cmt_ode_prior):
        source = structural_model_source(one_cmt_ode_prior.structural_model)
        assert "class OneCompartmentIV" in source
        assert "def individual_params" in source

    def test_different_models(self, one_cmt_prior, one_cmt_ode_prior):
        a = structural_model_source(one_cmt_prior.structural_model)
        b = structural_model_source(one_cmt_ode_prior.structural_model)
        assert generate_model_contents_hash(a) != generate_model_contents_hash(b)


class TestCallback:

    def test_attempts_logged(self, captured, patient_dat, one_cmt_prior):
        callback = MLflowAttemptCallback()
        result = estim_map(patient_dat, one_cmt_prior, random_state=1, callback=callback)
        assert len(callback.history) == len(result.attempts)
        keys = {k for k, _, _ in captured["metric"]}
        assert {"ofv", "max_bound", "param_ETA_Cl_value", "param_ETA_Vc_value"} <= keys
        assert "flag_stuck_on_bound" in keys
        steps = [s for k, _, s in captured["metric"] if k == "ofv"]
        assert steps[0] == 1

    def test_no_flags(self, captured):
        callback = MLflowAttemptCallback(objective_name="loss", log_flags=False)
        callback({"attempt": 3, "ofv": np.inf, "action": "failed", "max_bound": 2.0,
                  "ETA_a": 0.1, "stuck_on_bound": False})
        keys = [k for k, _, _ in captured["metric"]]
        assert keys == ["param_ETA_a_value", "max_bound"]
        assert callback.iteration == 3


class TestLogResult:

    def test_map_result(self, captured, patient_dat, one_cmt_prior):
        result = estim_map(patient_dat, one_cmt_prior, return_ofv=True, return_model=False, random_state=1)
        log_estimation_result(result, prior_model=one_cmt_prior)
        params = dict(captured["param"])
        assert params["method"] == "map"
        assert len(params["structural_model_hash"]) == 64
        metrics = {k: v for k, v, _ in captured["metric"]}
        assert metrics["final_ofv"] == pytest.approx(result.ofv)
        assert metrics["eta_ETA_Cl"] == pytest.approx(result.eta["ETA_Cl"])

    def test_draws(self, captured, linear_dat, linear_prior):
        from mapbayes.simulation import simu_pop
        result = simu_pop(linear_dat, linear_prior, n_simul=50, random_state=0, return_model=False)
        log_estimation_result(result)
        keys = {k for k, _, _ in captured["metric"]}
        assert {"eta_ETA_a_mean", "eta_ETA_a_sd", "eta_ETA_b_mean", "eta_ETA_b_sd"} == keys
