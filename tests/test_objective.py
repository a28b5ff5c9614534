import numpy as np
import pandas as pd
import pytest

from mapbayes.diffeqs import FunctionModel
from mapbayes.error_models import proportional
from mapbayes.exceptions import ModelEvaluationError, SingularCovarianceError
from mapbayes.objective import PosteriorProblem, objective_function
from mapbayes.prior_model import PriorModel


class TestObjectiveFunction:

    def test_value(self):
        ofv = objective_function([2.0, 4.0], [1.0, 4.0], [1.0, 2.0], [0.5], np.array([[4.0]]))
        expected = 1.0 + 0.0 + np.log(1.0) + np.log(4.0) + 0.25 * 4.0
        assert ofv == pytest.approx(expected)

    def test_zero_prediction_with_proportional_error_is_finite(self, linear_dat):
        prior = PriorModel(
            theta=pd.Series({"THETA_a": 0.0}),
            omega=pd.DataFrame([[1.0]], index=["ETA_a"], columns=["ETA_a"]),
            sigma=[0.1],
            structural_model=FunctionModel(lambda p, s: np.zeros(int((s["EVID"] == 0).sum())) * p["ETA_a"]),
            error_model=proportional,
        )
        problem = PosteriorProblem(linear_dat, prior)
        res = problem.residuals(np.array([0.3]))
        np.testing.assert_array_equal(res["g"], 1.0)
        assert np.isfinite(problem(np.array([0.3])))


class TestPosteriorProblem:

    def test_intermediate_objects(self, one_cmt_prior, patient_dat):
        problem = PosteriorProblem(patient_dat, one_cmt_prior)
        assert problem.dim == 2
        np.testing.assert_allclose(problem.solve_omega, np.diag([5.0, 5.0]))
        assert list(problem.y_obs["DV"]) == [25.0, 5.5]
        assert problem.estimated_names == ["ETA_Cl", "ETA_Vc"]

    def test_call_is_data_plus_prior(self, one_cmt_prior, patient_dat):
        problem = PosteriorProblem(patient_dat, one_cmt_prior)
        x = np.array([0.2, -0.1])
        assert problem(x) == pytest.approx(problem.data_term(x) + problem.prior_term(x))

    def test_zero_variance_effect_excluded(self, patient_dat, one_cmt_function):
        omega = pd.DataFrame(np.diag([0.2, 0.0]), index=["ETA_Cl", "ETA_Vc"], columns=["ETA_Cl", "ETA_Vc"])
        prior = PriorModel(theta=pd.Series({"THETA_Cl": 4.0, "THETA_Vc": 70.0}), omega=omega,
                           sigma=[0.2], structural_model=FunctionModel(one_cmt_function),
                           error_model=proportional)
        problem = PosteriorProblem(patient_dat, prior)
        assert problem.dim == 1
        eta_full, _ = problem.split(np.array([0.3]))
        np.testing.assert_array_equal(eta_full, [0.3, 0.0])

    def test_all_zero_variance_is_singular(self, patient_dat, one_cmt_prior):
        omega = pd.DataFrame(np.zeros((2, 2)), index=["ETA_Cl", "ETA_Vc"], columns=["ETA_Cl", "ETA_Vc"])
        prior = PriorModel(theta=one_cmt_prior.theta, omega=omega, sigma=[0.2],
                           structural_model=one_cmt_prior.structural_model, error_model=proportional)
        with pytest.raises(SingularCovarianceError):
            PosteriorProblem(patient_dat, prior)

    def test_non_finite_predictions(self, patient_dat, one_cmt_prior):
        prior = PriorModel(theta=one_cmt_prior.theta, omega=one_cmt_prior.omega, sigma=[0.2],
                           structural_model=FunctionModel(lambda p, s: np.array([np.nan, 1.0])),
                           error_model=proportional)
        problem = PosteriorProblem(patient_dat, prior)
        with pytest.raises(ModelEvaluationError):
            problem(np.zeros(2))

    def test_iov_merge(self, iov_prior, iov_dat):
        problem = PosteriorProblem(iov_dat, iov_prior)
        assert problem.iov
        assert problem.dim == 2
        np.testing.assert_allclose(problem.omega, np.diag([1.0, 0.3]))
        assert problem.estimated_names == ["ETA_a", "KAPPA_a_OCC2"]
        pred = problem.run_model(np.array([0.5, 1.0]))
        np.testing.assert_allclose(pred["f"], [10.5, 10.5, 11.5, 11.5])
