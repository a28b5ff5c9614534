"""Custom exceptions for the mapbayes package."""
import numpy as np


class MapBayesError(Exception):
    """Base class for exceptions in the mapbayes package."""


class SingularCovarianceError(MapBayesError, np.linalg.LinAlgError):
    """Raised when the random effects covariance matrix cannot be inverted."""


class ModelEvaluationError(MapBayesError, RuntimeError):
    """Raised when the structural model fails for a candidate parameter vector."""


class DimensionError(MapBayesError, ValueError):
    """Raised when the IIV and IOV covariance matrices cannot be merged."""


class UnsupportedConfigurationError(MapBayesError, NotImplementedError):
    """Raised when an estimator is asked for something it does not support."""


class DatasetError(MapBayesError, ValueError):
    """Raised when an individual event record breaks the NONMEM conventions."""


class MapConvergenceWarning(UserWarning):
    """The MAP attempt budget was exhausted, the best attempt was returned."""
