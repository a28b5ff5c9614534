import pandas as pd
from dataclasses import dataclass, field
import numpy as np
from typing import List

from .exceptions import DatasetError

OBSERVATION_EVID = 0
DOSING_EVIDS = (1, 101)


@dataclass
class EventRecordCols:

    subject_id: str = "ID"
    time: str = "TIME"
    dep_var: str = "DV"
    amount: str = "AMT"
    event_id: str = "EVID"
    duration: str = "DUR"
    occasion: str = "OCC"
    endpoint: str = "DVID"
    required: List[str] = field(default_factory=lambda: ["ID", "TIME", "DV", "AMT", "EVID"])

    def validate_df_columns(self, df: pd.DataFrame, extra_cols: List[str] = None):
        expected = list(self.required) + ([] if extra_cols is None else list(extra_cols))
        present = np.isin(expected, df.columns)
        if not np.all(present):
            missing = [c for c, ok in zip(expected, present) if not ok]
            raise DatasetError(f'`{missing}` is/are not provided. {expected} should be provided.')
        return df


def observation_mask(dat: pd.DataFrame, cols: EventRecordCols = None) -> np.ndarray:
    cols = EventRecordCols() if cols is None else cols
    return (dat[cols.event_id] == OBSERVATION_EVID).to_numpy()


def dosing_mask(dat: pd.DataFrame, cols: EventRecordCols = None) -> np.ndarray:
    cols = EventRecordCols() if cols is None else cols
    return dat[cols.event_id].isin(DOSING_EVIDS).to_numpy()


def prepare_event_record(dat: pd.DataFrame,
                         covariates: List[str] = None,
                         endpoints: List[str] = None,
                         default_endpoint: str = None,
                         ) -> pd.DataFrame:
    """Checks and normalizes a single subject NONMEM/rxode2 event record.

    Rows are kept in record order. `DUR` is added as 0 when absent, and `DVID`
    is filled with `default_endpoint` when the record carries a single endpoint.

    Args:
        dat (pd.DataFrame): event record of one individual.
        covariates (List[str]): covariate columns the structural model reads.
        endpoints (List[str]): endpoints that have an error function.
        default_endpoint (str): endpoint label used when `DVID` is absent.

    Returns:
        pd.DataFrame: a validated copy of `dat`.
    """
    cols = EventRecordCols()
    if dat is None or len(dat) == 0:
        raise DatasetError("An individual event record with at least one row is required")
    covariates = [] if covariates is None else list(covariates)
    data = cols.validate_df_columns(dat.copy(), extra_cols=covariates)
    data = data.reset_index(drop=True)

    if data[cols.subject_id].nunique() > 1:
        raise DatasetError(
            f"The event record must describe a single individual, found IDs {data[cols.subject_id].unique()}"
        )
    if cols.duration not in data.columns:
        data[cols.duration] = 0.0
    for c in [cols.time, cols.dep_var, cols.amount, cols.duration]:
        data[c] = pd.to_numeric(data[c], errors="coerce").astype(np.float64)
    data[cols.amount] = data[cols.amount].fillna(0.0)
    data[cols.duration] = data[cols.duration].fillna(0.0)
    data[cols.event_id] = pd.to_numeric(data[cols.event_id]).astype(np.int64)

    if data[cols.time].isna().any():
        raise DatasetError("TIME must be provided for every row of the event record")
    if np.any(np.diff(data[cols.time].to_numpy()) < 0):
        raise DatasetError("The event record must be sorted by TIME")

    obs = observation_mask(data, cols)
    if not np.any(obs):
        raise DatasetError("The event record has no observation (EVID=0) row")
    if data.loc[obs, cols.dep_var].isna().any():
        raise DatasetError("Every observation (EVID=0) row must have a non-missing DV")

    if cols.endpoint not in data.columns:
        if default_endpoint is None:
            raise DatasetError("DVID is required when the prior model defines several endpoints")
        data[cols.endpoint] = default_endpoint
    else:
        data[cols.endpoint] = data[cols.endpoint].astype(object)
        if default_endpoint is not None:
            data.loc[data[cols.endpoint].isna(), cols.endpoint] = default_endpoint
    if endpoints is not None:
        obs_endpoints = data.loc[obs, cols.endpoint].unique()
        unknown = [e for e in obs_endpoints if e not in endpoints]
        if len(unknown) > 0:
            raise DatasetError(
                f"Observed endpoint(s) {unknown} have no error model, available endpoints: {list(endpoints)}"
            )
    return data
