"""
Tests for mapbayes.estimators

Covers:
- fitted attributes of the three scikit-learn style wrappers
- parameter handling through get_params / clone
- predict before fit
"""

import numpy as np
import pytest
from sklearn.base import clone

from mapbayes.estimators import MAPEstimator, MCMCEstimator, SIREstimator
from mapbayes.map_estimator import MapControl


class TestMAPEstimator:

    def test_fit(self, patient_dat, one_cmt_prior):
        est = MAPEstimator(prior_model=one_cmt_prior, random_state=1).fit(patient_dat)
        assert list(est.eta_.index) == ["ETA_Cl", "ETA_Vc"]
        assert np.isfinite(est.ofv_)
        assert est.converged_ in (True, False)
        pred = est.predict()
        assert {"ID", "TIME", "DVID", "f"} <= set(pred.columns)

    def test_matches_function(self, patient_dat, one_cmt_prior):
        from mapbayes.map_estimator import estim_map
        est = MAPEstimator(prior_model=one_cmt_prior, random_state=7, return_model=False).fit(patient_dat)
        result = estim_map(patient_dat, one_cmt_prior, return_model=False, return_ofv=True, random_state=7)
        np.testing.assert_array_equal(est.eta_.to_numpy(), result.eta.to_numpy())
        assert est.ofv_ == result.ofv

    def test_get_params_and_clone(self, one_cmt_prior):
        est = MAPEstimator(prior_model=one_cmt_prior, control=MapControl(max_attempt=5), random_state=3)
        params = est.get_params()
        assert params["random_state"] == 3
        assert params["control"].max_attempt == 5
        cloned = clone(est)
        assert cloned.random_state == 3
        assert not hasattr(cloned, "result_")

    def test_not_fitted(self, one_cmt_prior):
        with pytest.raises(ValueError):
            MAPEstimator(prior_model=one_cmt_prior).predict()


class TestSamplingEstimators:

    def test_mcmc(self, linear_dat, linear_prior):
        est = MCMCEstimator(prior_model=linear_prior, burn_in=5, n_iter=20, n_chains=2,
                            random_state=0).fit(linear_dat)
        assert est.eta_.shape == (40, 2)
        assert len(est.chain_stats_) == 2
        assert est.predict()["ID"].nunique() == 40

    def test_sir(self, linear_dat, linear_prior):
        est = SIREstimator(prior_model=linear_prior, n_sample=300, n_resample=30,
                           random_state=0, return_model=False).fit(linear_dat)
        assert est.eta_.shape == (30, 2)
        assert est.weights_.sum() == pytest.approx(1.0)
        assert 1.0 <= est.ess_ <= 300.0
        with pytest.raises(ValueError):
            est.predict()
