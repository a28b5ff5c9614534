import pandas as pd
from dataclasses import dataclass, field
from typing import Union

from .diffeqs import SolvedModel


@dataclass(frozen=True)
class EstimationResult:
    """
    Output of an estimator call.

    Attributes:
        eta: MAP estimate (pd.Series indexed by ETA name) or the posterior
            (or prior) draws, one row per draw (pd.DataFrame).
        ofv: objective function value of the MAP estimate.
        model: structural model resolved at the estimate or the draws.
        event: event table used to resolve `model`.
        converged: False when the MAP attempt budget was exhausted without an
            anomaly-free optimum.
        attempts: MAP attempt log.
        diagnostics: sampler statistics (acceptance, step sizes, weights...).
        method: "map", "mcmc", "sir" or "prior".
    """
    eta: Union[pd.Series, pd.DataFrame]
    ofv: float = None
    model: SolvedModel = None
    event: pd.DataFrame = None
    converged: bool = None
    attempts: pd.DataFrame = None
    diagnostics: dict = field(default_factory=dict)
    method: str = ""

    def predict(self) -> pd.DataFrame:
        if self.model is None:
            raise ValueError("No resolved model, estimate with `return_model=True`")
        return self.model.predict()
