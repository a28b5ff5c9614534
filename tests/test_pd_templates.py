import numpy as np
import pandas as pd
import pytest

from mapbayes.exceptions import DatasetError
from mapbayes.pd_templates import EventRecordCols, dosing_mask, observation_mask, prepare_event_record


@pytest.fixture
def record():
    return pd.DataFrame({
        "ID": 1,
        "TIME": [0.0, 1.0, 14.0],
        "DV": [np.nan, 25.0, 5.5],
        "AMT": [2000.0, np.nan, np.nan],
        "EVID": [1, 0, 0],
    })


class TestPrepareEventRecord:

    def test_defaults_added(self, record):
        out = prepare_event_record(record, default_endpoint="Cc")
        assert list(out["DUR"]) == [0.0, 0.0, 0.0]
        assert list(out["AMT"]) == [2000.0, 0.0, 0.0]
        assert list(out["DVID"]) == ["Cc", "Cc", "Cc"]
        assert out["EVID"].dtype == np.int64

    def test_input_not_modified(self, record):
        prepare_event_record(record, default_endpoint="Cc")
        assert "DUR" not in record.columns

    def test_missing_column(self, record):
        with pytest.raises(DatasetError):
            prepare_event_record(record.drop(columns="EVID"), default_endpoint="Cc")

    def test_missing_covariate(self, record):
        with pytest.raises(DatasetError):
            prepare_event_record(record, covariates=["CLCR"], default_endpoint="Cc")

    def test_missing_observation(self, record):
        record.loc[1, "DV"] = np.nan
        with pytest.raises(DatasetError):
            prepare_event_record(record, default_endpoint="Cc")

    def test_several_individuals(self, record):
        record.loc[2, "ID"] = 2
        with pytest.raises(DatasetError):
            prepare_event_record(record, default_endpoint="Cc")

    def test_unsorted(self, record):
        record.loc[2, "TIME"] = 0.5
        with pytest.raises(DatasetError):
            prepare_event_record(record, default_endpoint="Cc")

    def test_no_observation(self, record):
        with pytest.raises(DatasetError):
            prepare_event_record(record.iloc[:1], default_endpoint="Cc")

    def test_endpoint_without_error_model(self, record):
        record["DVID"] = ["Cc", "Cc", "Effect"]
        with pytest.raises(DatasetError):
            prepare_event_record(record, endpoints=["Cc"], default_endpoint="Cc")

    def test_dvid_required_for_several_endpoints(self, record):
        with pytest.raises(DatasetError):
            prepare_event_record(record, endpoints=["Cc", "Effect"])

    def test_empty(self):
        with pytest.raises(DatasetError):
            prepare_event_record(pd.DataFrame(columns=EventRecordCols().required))


class TestMasks:

    def test_dosing_and_observation_rows(self, record):
        dat = pd.concat([record, pd.DataFrame({"ID": [1], "TIME": [20.0], "DV": [np.nan],
                                               "AMT": [500.0], "EVID": [101]})], ignore_index=True)
        np.testing.assert_array_equal(dosing_mask(dat), [True, False, False, True])
        np.testing.assert_array_equal(observation_mask(dat), [False, True, True, False])
