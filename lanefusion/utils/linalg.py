"""
Linear-algebra helpers shared by the factor builders and the arc fitter.

Provides functions for:
- Mahalanobis whitening of residuals and Jacobians
- Covariance recovery from a sparse information matrix
"""

from typing import Tuple

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve


def sqrt_information(cov: np.ndarray) -> np.ndarray:
    """
    Square-root information matrix W with Wᵀ W = cov⁻¹.

    W is the upper Cholesky factor of the information matrix, so that
    ‖W r‖² equals the Mahalanobis distance rᵀ cov⁻¹ r.

    Args:
        cov: Covariance matrix (d x d) or scalar variance.

    Returns:
        Upper-triangular d x d matrix.

    Raises:
        numpy.linalg.LinAlgError: If cov is not positive definite.
    """
    cov = np.atleast_2d(np.asarray(cov, dtype=float))
    info = np.linalg.inv(cov)
    info = 0.5 * (info + info.T)
    return np.linalg.cholesky(info).T


def whiten(
    residual: np.ndarray, jacobian: np.ndarray, cov: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Apply inverse-covariance weighting to a residual and its Jacobian.

    Args:
        residual: Residual vector (d,).
        jacobian: Dense Jacobian (d, k) or None.
        cov: Residual covariance (d x d).

    Returns:
        (W r, W J).
    """
    W = sqrt_information(cov)
    res = W @ np.atleast_1d(np.asarray(residual, dtype=float))
    if jacobian is None:
        return res, None
    return res, W @ np.atleast_2d(np.asarray(jacobian, dtype=float))


def sparse_covariance(info) -> np.ndarray:
    """
    Invert a (sparse) information matrix.

    Solves info · X = I column-block-wise with a sparse LU factorization.

    Args:
        info: Square information matrix, dense or scipy.sparse.

    Returns:
        Dense covariance matrix.
    """
    info = sparse.csc_matrix(info)
    n = info.shape[0]
    if info.shape != (n, n):
        raise ValueError(f"Information matrix must be square, got {info.shape}")
    cov = spsolve(info, sparse.identity(n, format="csc"))
    if sparse.issparse(cov):
        cov = cov.toarray()
    return np.asarray(cov).reshape(n, n)
