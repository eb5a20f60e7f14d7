"""Manifold operations on the special orthogonal group SO(3).

This module provides the exponential/logarithm maps and the right Jacobians
used whenever a rotation is perturbed or a rotation residual is linearized:
- skew: 3-vector to skew-symmetric matrix, [v×] w = v × w
- exp_map / log_map: so(3) <-> SO(3) via the Rodrigues formula
- right_jacobian / inv_right_jacobian: Jr(φ) and Jr⁻¹(φ)

Conventions:
- Rotations are 3x3 body-to-world matrices, v_world = R @ v_body.
- Perturbations are applied on the right, R ← R Exp(δφ).
- Yaw follows the ZYX (3-2-1) Euler convention.

Reference: Forster et al., "On-Manifold Preintegration for Real-Time
Visual-Inertial Odometry", Appendix A.
"""

import numpy as np
from numpy.typing import NDArray

_SMALL_ANGLE = 1e-10
_NEAR_PI = 1e-6


def _check_vec3(v: NDArray[np.float64], name: str) -> NDArray[np.float64]:
    v = np.asarray(v, dtype=np.float64).reshape(-1)
    if v.shape != (3,):
        raise ValueError(f"{name} must have shape (3,), got {v.shape}")
    return v


def _check_mat3(R: NDArray[np.float64]) -> NDArray[np.float64]:
    R = np.asarray(R, dtype=np.float64)
    if R.shape != (3, 3):
        raise ValueError(f"Expected 3x3 matrix, got shape {R.shape}")
    return R


def skew(v: NDArray[np.float64]) -> NDArray[np.float64]:
    """Skew-symmetric matrix [v×] such that skew(v) @ w == np.cross(v, w).

    Args:
        v: 3D vector [vx, vy, vz].

    Returns:
        3x3 skew-symmetric matrix.

    Example:
        >>> S = skew(np.array([1.0, 2.0, 3.0]))
        >>> np.allclose(S, -S.T)
        True
    """
    vx, vy, vz = _check_vec3(v, "v")
    return np.array(
        [[0.0, -vz, vy], [vz, 0.0, -vx], [-vy, vx, 0.0]], dtype=np.float64
    )


def vee(S: NDArray[np.float64]) -> NDArray[np.float64]:
    """Inverse of skew: extract the 3-vector from a skew-symmetric matrix."""
    S = _check_mat3(S)
    return np.array([S[2, 1], S[0, 2], S[1, 0]], dtype=np.float64)


def exp_map(phi: NDArray[np.float64]) -> NDArray[np.float64]:
    """Exponential map so(3) → SO(3).

    Implements the Rodrigues formula:
        Exp(φ) = I + sin‖φ‖/‖φ‖ [φ×] + (1 - cos‖φ‖)/‖φ‖² [φ×]²

    Args:
        phi: Rotation vector (axis × angle) in radians, shape (3,).

    Returns:
        3x3 rotation matrix.

    Example:
        >>> R = exp_map(np.array([0.0, 0.0, np.pi / 2]))
        >>> np.allclose(R @ np.array([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0])
        True
    """
    phi = _check_vec3(phi, "phi")
    theta = np.linalg.norm(phi)
    K = skew(phi)
    if theta < _SMALL_ANGLE:
        # First-order expansion keeps the map smooth at the origin
        return np.eye(3) + K
    return (
        np.eye(3)
        + np.sin(theta) / theta * K
        + (1.0 - np.cos(theta)) / theta**2 * (K @ K)
    )


def log_map(R: NDArray[np.float64]) -> NDArray[np.float64]:
    """Logarithm map SO(3) → so(3), returned as a rotation vector.

    Handles the small-angle case and the θ → π case, where the usual
    θ / (2 sin θ) factor is ill-conditioned.

    Args:
        R: 3x3 rotation matrix.

    Returns:
        Rotation vector φ with ‖φ‖ ∈ [0, π] such that exp_map(φ) ≈ R.

    Raises:
        ValueError: If R is not 3x3.
    """
    R = _check_mat3(R)
    cos_theta = np.clip((np.trace(R) - 1.0) / 2.0, -1.0, 1.0)
    theta = np.arccos(cos_theta)

    if theta < _SMALL_ANGLE:
        return 0.5 * vee(R - R.T)

    if np.pi - theta < _NEAR_PI:
        # R + I = 2 a aᵀ at θ = π; use the best-conditioned column
        k = int(np.argmax(np.diag(R)))
        col = R[:, k] + np.eye(3)[:, k]
        axis = col / np.sqrt(2.0 * (1.0 + R[k, k]))
        return theta * axis

    return theta / (2.0 * np.sin(theta)) * vee(R - R.T)


def right_jacobian(phi: NDArray[np.float64]) -> NDArray[np.float64]:
    """Right Jacobian of SO(3).

    Exp(φ + δφ) ≈ Exp(φ) Exp(Jr(φ) δφ), with
        Jr(φ) = I - (1 - cos θ)/θ² [φ×] + (θ - sin θ)/θ³ [φ×]²

    Args:
        phi: Rotation vector, shape (3,).

    Returns:
        3x3 right Jacobian.
    """
    phi = _check_vec3(phi, "phi")
    theta = np.linalg.norm(phi)
    K = skew(phi)
    if theta < _SMALL_ANGLE:
        return np.eye(3) - 0.5 * K
    return (
        np.eye(3)
        - (1.0 - np.cos(theta)) / theta**2 * K
        + (theta - np.sin(theta)) / theta**3 * (K @ K)
    )


def inv_right_jacobian(phi: NDArray[np.float64]) -> NDArray[np.float64]:
    """Inverse right Jacobian of SO(3).

        Jr⁻¹(φ) = I + ½[φ×] + (1/θ² - (1 + cos θ)/(2θ sin θ)) [φ×]²

    Args:
        phi: Rotation vector, shape (3,).

    Returns:
        3x3 inverse right Jacobian.
    """
    phi = _check_vec3(phi, "phi")
    theta = np.linalg.norm(phi)
    K = skew(phi)
    if theta < _SMALL_ANGLE:
        return np.eye(3) + 0.5 * K
    coeff = 1.0 / theta**2 - (1.0 + np.cos(theta)) / (2.0 * theta * np.sin(theta))
    return np.eye(3) + 0.5 * K + coeff * (K @ K)


def rotation_yaw(R: NDArray[np.float64]) -> float:
    """Yaw angle ψ (ZYX convention) of a body-to-world rotation matrix."""
    R = _check_mat3(R)
    return float(np.arctan2(R[1, 0], R[0, 0]))


def yaw_rotation(yaw: float) -> NDArray[np.float64]:
    """3x3 rotation about the world z-axis by ``yaw`` radians."""
    c, s = np.cos(yaw), np.sin(yaw)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]], dtype=np.float64)


def rot2d(angle: float) -> NDArray[np.float64]:
    """2x2 planar rotation matrix."""
    c, s = np.cos(angle), np.sin(angle)
    return np.array([[c, -s], [s, c]], dtype=np.float64)
