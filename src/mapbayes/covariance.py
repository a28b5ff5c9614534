import numpy as np
import pandas as pd
from scipy.linalg import block_diag, cho_factor, cho_solve
from typing import Tuple

from .exceptions import DimensionError, SingularCovarianceError


def nonzero_variance_index(mat) -> np.ndarray:
    """Positions of the random effects whose variance is > 0."""
    mat = np.asarray(mat, dtype=np.float64)
    return np.flatnonzero(np.diag(mat) > 0)


def reduce_covariance(mat: pd.DataFrame) -> Tuple[np.ndarray, pd.DataFrame]:
    ind = nonzero_variance_index(mat)
    reduced = mat.iloc[ind, ind].copy()
    return ind, reduced


def invert_covariance(mat) -> np.ndarray:
    """Inverse of a (positive-definite) covariance matrix.

    Raises:
        SingularCovarianceError: the matrix is empty, not finite, or cannot
            be factorized.
    """
    mat = np.asarray(mat, dtype=np.float64)
    if mat.size == 0:
        raise SingularCovarianceError("The covariance matrix has no random effect with a variance > 0")
    if not np.all(np.isfinite(mat)):
        raise SingularCovarianceError("The covariance matrix contains non-finite values")
    try:
        c_and_lower = cho_factor(mat, lower=True)
        inv = cho_solve(c_and_lower, np.eye(mat.shape[0]))
    except np.linalg.LinAlgError as e:
        raise SingularCovarianceError(f"The covariance matrix is not invertible: {e}") from e
    if not np.all(np.isfinite(inv)):
        raise SingularCovarianceError("The inverse of the covariance matrix is not finite")
    # symmetrize, cho_solve leaves round-off asymmetry
    return 0.5 * (inv + inv.T)


def occasion_levels(dat: pd.DataFrame, occ_col: str = "OCC") -> np.ndarray:
    if occ_col not in dat.columns:
        raise DimensionError("Inter-occasion variability needs an `OCC` column in the event record")
    occ = dat[occ_col]
    if occ.isna().any():
        raise DimensionError("Every row of the event record needs an occasion (OCC) label")
    levels = np.sort(pd.unique(occ))
    if len(levels) == 0:
        raise DimensionError("The number of occasions could not be determined")
    return levels


def merge_covar_matrices(omega_eta, pimat_kappa, n_occ: int) -> np.ndarray:
    """
    Block-merges the IIV covariance matrix with one copy of the IOV covariance
    matrix per occasion beyond the first.

    The deviation of the first occasion is absorbed in the IIV, hence the
    `n_occ - 1` copies.

    Args:
        omega_eta: reduced IIV covariance matrix, shape (d1, d1).
        pimat_kappa: reduced IOV covariance matrix, shape (d2, d2).
        n_occ (int): number of distinct occasions of the individual.

    Returns:
        np.ndarray: matrix of shape (d1 + (n_occ-1)*d2, d1 + (n_occ-1)*d2).
    """
    omega_eta = np.atleast_2d(np.asarray(omega_eta, dtype=np.float64))
    pimat_kappa = np.atleast_2d(np.asarray(pimat_kappa, dtype=np.float64))
    for name, m in (("IIV", omega_eta), ("IOV", pimat_kappa)):
        if m.ndim != 2 or m.shape[0] != m.shape[1]:
            raise DimensionError(f"The {name} covariance matrix must be square, got shape {m.shape}")
        if not np.allclose(m, m.T):
            raise DimensionError(f"The {name} covariance matrix must be symmetric")
    if n_occ is None or int(n_occ) != n_occ or n_occ < 1:
        raise DimensionError(f"Invalid number of occasions: {n_occ}")
    n_occ = int(n_occ)
    blocks = [omega_eta] + [pimat_kappa] * (n_occ - 1)
    return block_diag(*blocks)


def split_iov_vector(x, omega_dim: int, pimat_dim: int, n_occ: int):
    """Splits a merged (eta, kappa_2, ..., kappa_n) vector.

    Returns the IIV part and a (n_occ, pimat_dim) matrix of kappas, the
    first occasion's row being zeros.
    """
    x = np.asarray(x, dtype=np.float64)
    expected = omega_dim + (n_occ - 1) * pimat_dim
    if x.shape[-1] != expected:
        raise DimensionError(f"Expected a vector of length {expected}, got {x.shape[-1]}")
    eta = x[..., :omega_dim]
    kappa = np.zeros(x.shape[:-1] + (n_occ, pimat_dim), dtype=np.float64)
    kappa[..., 1:, :] = x[..., omega_dim:].reshape(x.shape[:-1] + (n_occ - 1, pimat_dim))
    return eta, kappa


def link_kappa_to_occ(dat: pd.DataFrame,
                      kappa_by_occ: np.ndarray,
                      kappa_names,
                      ind_kappa,
                      levels=None,
                      occ_col: str = "OCC",
                      ) -> pd.DataFrame:
    """Broadcasts per-occasion kappas onto the rows of an event record.

    Args:
        dat (pd.DataFrame): event record with an `OCC` column.
        kappa_by_occ (np.ndarray): (n_occ, len(ind_kappa)) kappa values, row
            `m` belonging to the m-th occasion in sorted order.
        kappa_names: names of every kappa of the PI matrix.
        ind_kappa: positions of the kappas with a variance > 0.
        levels: sorted occasion labels, defaults to the labels in `dat`.

    Returns:
        pd.DataFrame: one column per kappa name, zeros for the kappas
            without variability.
    """
    levels = occasion_levels(dat, occ_col) if levels is None else np.asarray(levels)
    kappa_by_occ = np.atleast_2d(np.asarray(kappa_by_occ, dtype=np.float64))
    if kappa_by_occ.shape != (len(levels), len(ind_kappa)):
        raise DimensionError(
            f"Expected kappas of shape {(len(levels), len(ind_kappa))}, got {kappa_by_occ.shape}"
        )
    row_occ = np.searchsorted(levels, dat[occ_col].to_numpy())
    row_occ = np.clip(row_occ, 0, len(levels) - 1)
    unknown = levels[row_occ] != dat[occ_col].to_numpy()
    if np.any(unknown):
        raise DimensionError(f"Occasion(s) {dat.loc[unknown, occ_col].unique()} are not known")
    out = np.zeros((len(dat), len(kappa_names)), dtype=np.float64)
    out[:, np.asarray(ind_kappa, dtype=int)] = kappa_by_occ[row_occ, :]
    return pd.DataFrame(out, columns=list(kappa_names), index=dat.index)
