import inspect
import hashlib
import mlflow
import numpy as np

from .diffeqs import FunctionModel, ModelEvaluator, ODEModel


def structural_model_source(evaluator: ModelEvaluator) -> str:
    """Source code identifying a structural model, for tracking purposes."""
    if isinstance(evaluator, ODEModel):
        objs = [type(evaluator.pk_model), evaluator.individual_params]
    elif isinstance(evaluator, FunctionModel):
        objs = [evaluator.fn]
    else:
        objs = [type(evaluator)]
    parts = []
    for obj in objs:
        try:
            parts.append(inspect.getsource(obj))
        except (TypeError, OSError):
            # lambdas defined in a REPL, builtins
            parts.append(repr(obj))
    return "\n".join(parts)


def generate_model_contents_hash(source: str) -> str:
    hasher = hashlib.sha256()
    hasher.update(source.encode("utf-8"))
    return hasher.hexdigest()


class MLflowAttemptCallback:
    """
    Logs every attempt of the MAP restart loop to the active MLflow run.

    Pass an instance as `callback=` to `estim_map`. The OFV is logged as
    `objective_name`, the estimate as `param_<name>_value` and the anomaly
    flags as 0/1 metrics, all with `step=attempt`.
    """

    def __init__(self, objective_name: str = "ofv", log_flags: bool = True):
        self.iteration = 0
        self.objective_name = objective_name
        self.log_flags = log_flags
        self.history = []

    def __call__(self, record: dict):
        self.iteration = int(record["attempt"])
        self.history.append(record)
        ofv = record["ofv"]
        if ofv is not None and np.isfinite(ofv):
            mlflow.log_metric(self.objective_name, ofv, step=self.iteration)
        flag_names = [k for k, v in record.items() if isinstance(v, (bool, np.bool_))]
        reserved = {"attempt", "ofv", "action", "max_bound"}
        for name, val in record.items():
            if name in reserved or name in flag_names:
                continue
            mlflow.log_metric(f"param_{name}_value", float(val), step=self.iteration)
        mlflow.log_metric("max_bound", record["max_bound"], step=self.iteration)
        if self.log_flags:
            for name in flag_names:
                mlflow.log_metric(f"flag_{name}", int(record[name]), step=self.iteration)


def log_estimation_result(result, prior_model=None):
    """Logs the outcome of an estimation to the active MLflow run."""
    mlflow.log_param("method", result.method)
    if prior_model is not None:
        source = structural_model_source(prior_model.structural_model)
        mlflow.log_param("structural_model_hash", generate_model_contents_hash(source))
    if result.ofv is not None:
        mlflow.log_metric("final_ofv", result.ofv)
    if result.converged is not None:
        mlflow.log_metric("converged", int(result.converged))
    eta = result.eta
    if eta.ndim == 1:
        for name, val in eta.items():
            mlflow.log_metric(f"eta_{name}", float(val))
    else:
        for name in eta.columns:
            mlflow.log_metric(f"eta_{name}_mean", float(eta[name].mean()))
            mlflow.log_metric(f"eta_{name}_sd", float(eta[name].std()))
