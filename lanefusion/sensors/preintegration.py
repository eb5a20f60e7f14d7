"""IMU pre-integration between consecutive states.

A cluster of raw IMU samples between state i and state j is summarized into
relative increments (ΔR, Δv, Δp) expressed in the body frame of state i,
their first-order sensitivities with respect to the gyro/accel bias and a
propagated 9x9 noise covariance ordered [δR, δV, δP].

Recursions per sample k (bias-corrected rates w, a; sub-step dt):
    Δp ← Δp + Δv dt + ½ ΔR a dt²
    Δv ← Δv + ΔR a dt
    ΔR ← ΔR Exp(w dt)
    Σ  ← A Σ Aᵀ + B (N / dt) Bᵀ

Reference: Forster et al., "On-Manifold Preintegration for Real-Time
Visual-Inertial Odometry", IEEE T-RO 2017, Section VI and Appendix B.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np

from lanefusion.config import ImuNoise
from lanefusion.coords.so3 import exp_map, right_jacobian, skew
from lanefusion.errors import PreintegrationError
from lanefusion.sensors.types import Bias, ImuCluster


@dataclass(frozen=True)
class PreintegratedImu:
    """Pre-integrated increments of one IMU cluster.

    Attributes:
        delR: Relative rotation ΔR (3x3).
        delV: Relative velocity increment Δv (3,).
        delP: Relative position increment Δp (3,).
        JR_bg: ∂ΔR/∂bg (3x3), right-perturbation form.
        JV_bg, JV_ba: ∂Δv/∂bg, ∂Δv/∂ba (3x3).
        JP_bg, JP_ba: ∂Δp/∂bg, ∂Δp/∂ba (3x3).
        cov: Noise covariance of [δR, δV, δP] (9x9).
        dt: Total integration time in seconds.
        bg, ba: Bias used for the integration.
    """

    delR: np.ndarray
    delV: np.ndarray
    delP: np.ndarray
    JR_bg: np.ndarray
    JV_bg: np.ndarray
    JV_ba: np.ndarray
    JP_bg: np.ndarray
    JP_ba: np.ndarray
    cov: np.ndarray
    dt: float
    bg: np.ndarray
    ba: np.ndarray


def preintegrate(
    cluster: ImuCluster,
    bg: np.ndarray,
    ba: np.ndarray,
    noise: ImuNoise,
    index: int = 0,
) -> PreintegratedImu:
    """Pre-integrate one IMU cluster with a fixed bias.

    Args:
        cluster: IMU samples between two states.
        bg: Gyro bias (3,) removed from every sample.
        ba: Accel bias (3,) removed from every sample.
        noise: IMU noise model; ``noise.white`` is the continuous-time
            [gyro, accel] noise density, ``noise.integration`` is added to
            the position block at every step.
        index: Cluster index, reported on failure.

    Returns:
        PreintegratedImu for the cluster.

    Raises:
        PreintegrationError: If the propagated covariance is not positive
            definite.
    """
    bg = np.asarray(bg, dtype=float)
    ba = np.asarray(ba, dtype=float)
    n_cov = noise.white

    delR = np.eye(3)
    delV = np.zeros(3)
    delP = np.zeros(3)
    JR_bg = np.zeros((3, 3))
    JV_bg = np.zeros((3, 3))
    JV_ba = np.zeros((3, 3))
    JP_bg = np.zeros((3, 3))
    JP_ba = np.zeros((3, 3))
    cov = np.zeros((9, 9))

    I3 = np.eye(3)
    for k in range(cluster.n_samples):
        dt_k = cluster.t[k + 1] - cluster.t[k]
        w = cluster.gyro[k] - bg
        a = cluster.accel[k] - ba

        dR = exp_map(w * dt_k)
        Jr = right_jacobian(w * dt_k)
        a_skew = skew(a)

        A = np.eye(9)
        A[0:3, 0:3] = dR.T
        A[3:6, 0:3] = -delR @ a_skew * dt_k
        A[6:9, 0:3] = -0.5 * delR @ a_skew * dt_k**2
        A[6:9, 3:6] = I3 * dt_k

        B = np.zeros((9, 6))
        B[0:3, 0:3] = Jr * dt_k
        B[3:6, 3:6] = delR * dt_k
        B[6:9, 3:6] = 0.5 * delR * dt_k**2

        cov = A @ cov @ A.T + B @ (n_cov / dt_k) @ B.T
        cov[6:9, 6:9] += noise.integration * dt_k

        # Bias Jacobians use the rotation before this step
        JP_ba = JP_ba + JV_ba * dt_k - 0.5 * delR * dt_k**2
        JP_bg = JP_bg + JV_bg * dt_k - 0.5 * delR @ a_skew @ JR_bg * dt_k**2
        JV_ba = JV_ba - delR * dt_k
        JV_bg = JV_bg - delR @ a_skew @ JR_bg * dt_k
        JR_bg = dR.T @ JR_bg - Jr * dt_k

        delP = delP + delV * dt_k + 0.5 * delR @ a * dt_k**2
        delV = delV + delR @ a * dt_k
        delR = delR @ dR

    cov = 0.5 * (cov + cov.T)
    eigenvalues = np.linalg.eigvalsh(cov)
    if np.any(eigenvalues <= 0):
        raise PreintegrationError(index, eigenvalues)

    return PreintegratedImu(
        delR=delR,
        delV=delV,
        delP=delP,
        JR_bg=JR_bg,
        JV_bg=JV_bg,
        JV_ba=JV_ba,
        JP_bg=JP_bg,
        JP_ba=JP_ba,
        cov=cov,
        dt=cluster.duration,
        bg=bg.copy(),
        ba=ba.copy(),
    )


def preintegrate_all(
    clusters: Sequence[ImuCluster],
    biases: Sequence[Bias],
    noise: ImuNoise,
    idxs: Optional[Iterable[int]] = None,
    previous: Optional[Sequence[PreintegratedImu]] = None,
) -> Tuple[PreintegratedImu, ...]:
    """Pre-integrate clusters with the nominal bias at each interval start.

    Args:
        clusters: IMU clusters, cluster k spans state k to state k+1.
        biases: Per-state biases; only the nominal part (bg, ba) is used.
        noise: IMU noise model.
        idxs: Cluster indices to (re-)integrate. None integrates all of them.
        previous: Existing results reused for indices not in ``idxs``.
            Required when ``idxs`` is given.

    Returns:
        Tuple with one PreintegratedImu per cluster.
    """
    if idxs is None:
        return tuple(
            preintegrate(c, biases[k].bg, biases[k].ba, noise, index=k)
            for k, c in enumerate(clusters)
        )
    if previous is None or len(previous) != len(clusters):
        raise ValueError("previous results for every cluster are required with idxs")

    out = list(previous)
    for k in sorted(set(idxs)):
        out[k] = preintegrate(clusters[k], biases[k].bg, biases[k].ba, noise, index=k)
    return tuple(out)
