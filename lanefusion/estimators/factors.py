"""Residual and sparse Jacobian blocks for the inertial, GNSS and wheel-speed factors.

Every builder returns a FactorBlock whose residual and Jacobian are already
whitened with the square-root information of the measurement covariance, so
the stacked cost is simply ‖r‖². Jacobian columns index the optimization
vector described by VariableLayout.

Factors:
    - prior: state 0 and its bias against the initial estimate, WSF against 1
    - inertial: pre-integrated motion between consecutive states, bias and
      WSF random walks
    - gnss: state position against the fix converted to local ENU
    - wheel_speed: nonholonomic body-frame velocity at the rear axle

Reference: Forster et al., "On-Manifold Preintegration for Real-Time
Visual-Inertial Odometry", Section VII.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
from scipy import sparse

from lanefusion.coords.so3 import exp_map, inv_right_jacobian, log_map, right_jacobian, skew
from lanefusion.errors import DataError
from lanefusion.estimators.state import FusionProblem, Trial, VariableLayout
from lanefusion.utils.linalg import sqrt_information


@dataclass(frozen=True)
class FactorBlock:
    """Whitened residuals and Jacobian of one factor family.

    Attributes:
        name: Factor family name.
        residual: Whitened residual vector (m,).
        jacobian: Whitened sparse Jacobian (m, layout.size).
        domain_violations: Residuals evaluated outside their valid domain
            (clamped); only lane measurement blocks report any.
    """

    name: str
    residual: np.ndarray
    jacobian: sparse.csr_matrix
    domain_violations: int = 0

    @property
    def cost(self) -> float:
        return float(self.residual @ self.residual)


class BlockAssembler:
    """Collects whitened residual rows and COO Jacobian triplets."""

    def __init__(self, n_cols: int):
        self.n_cols = n_cols
        self._res: List[np.ndarray] = []
        self._rows: List[np.ndarray] = []
        self._cols: List[np.ndarray] = []
        self._vals: List[np.ndarray] = []
        self.n_rows = 0

    def add(
        self,
        residual: np.ndarray,
        cov: np.ndarray,
        blocks: List[Tuple[int, np.ndarray]],
    ) -> None:
        """Whiten one residual and its Jacobian column blocks.

        Args:
            residual: Raw residual (d,).
            cov: Residual covariance (d x d) or variance.
            blocks: (column offset, dense d x w Jacobian) pairs.
        """
        residual = np.atleast_1d(np.asarray(residual, dtype=float))
        d = len(residual)
        W = sqrt_information(cov)
        self._res.append(W @ residual)
        for col, jac in blocks:
            jac = W @ np.asarray(jac, dtype=float).reshape(d, -1)
            rr, cc = np.indices(jac.shape)
            self._rows.append((rr + self.n_rows).ravel())
            self._cols.append((cc + col).ravel())
            self._vals.append(jac.ravel())
        self.n_rows += d

    def build(self, name: str, domain_violations: int = 0) -> FactorBlock:
        if self._res:
            residual = np.concatenate(self._res)
            jacobian = sparse.coo_matrix(
                (np.concatenate(self._vals), (np.concatenate(self._rows), np.concatenate(self._cols))),
                shape=(self.n_rows, self.n_cols),
            ).tocsr()
        else:
            residual = np.zeros(0)
            jacobian = sparse.csr_matrix((0, self.n_cols))
        return FactorBlock(name, residual, jacobian, domain_violations)


def prior_block(trial: Trial, layout: VariableLayout, problem: FusionProblem) -> FactorBlock:
    """Anchor state 0 and its bias to the initial estimate, and every WSF to 1."""
    asm = BlockAssembler(layout.size)
    prior = problem.covs.prior
    init_s, init_b = problem.prior_state, problem.prior_bias
    s0, b0 = trial.states[0], trial.biases[0]
    col = layout.state(0)

    res_R = log_map(init_s.R.T @ s0.R)
    asm.add(res_R, prior.R, [(col, inv_right_jacobian(res_R))])
    asm.add(init_s.R.T @ (s0.V - init_s.V), prior.V, [(col + 3, init_s.R.T)])
    asm.add(init_s.R.T @ (s0.P - init_s.P), prior.P, [(col + 6, init_s.R.T @ s0.R)])

    bcol = layout.bias(0)
    asm.add(b0.gyro - init_b.gyro, prior.bg, [(bcol, np.eye(3))])
    asm.add(b0.accel - init_b.accel, prior.ba, [(bcol + 3, np.eye(3))])

    if layout.wsf_active:
        for k, s in enumerate(trial.states):
            asm.add([s.wsf - 1.0], prior.wsf, [(layout.wsf(k), np.ones((1, 1)))])
    return asm.build("prior")


def inertial_block(trial: Trial, layout: VariableLayout, problem: FusionProblem) -> FactorBlock:
    """Pre-integrated motion, bias random walk and WSF random walk factors."""
    asm = BlockAssembler(layout.size)
    g = problem.gravity
    imu_noise = problem.covs.imu
    I3 = np.eye(3)

    for i, pre in enumerate(trial.preintegrated):
        j = i + 1
        si, sj = trial.states[i], trial.states[j]
        bi, bj = trial.biases[i], trial.biases[j]
        Ri, Rj = si.R, sj.R
        dt = pre.dt

        # Bias change since the cluster was integrated
        dbg = bi.gyro - pre.bg
        dba = bi.accel - pre.ba
        phi_bg = pre.JR_bg @ dbg

        res_R = log_map((pre.delR @ exp_map(phi_bg)).T @ Ri.T @ Rj)
        v_rel = Ri.T @ (sj.V - si.V - g * dt)
        p_rel = Ri.T @ (sj.P - si.P - si.V * dt - 0.5 * g * dt**2)
        res_V = v_rel - (pre.delV + pre.JV_bg @ dbg + pre.JV_ba @ dba)
        res_P = p_rel - (pre.delP + pre.JP_bg @ dbg + pre.JP_ba @ dba)

        Jr_inv = inv_right_jacobian(res_R)
        Ji = np.zeros((9, 9))
        Ji[0:3, 0:3] = -Jr_inv @ Rj.T @ Ri
        Ji[3:6, 0:3] = skew(v_rel)
        Ji[3:6, 3:6] = -Ri.T
        Ji[6:9, 0:3] = skew(p_rel)
        Ji[6:9, 3:6] = -Ri.T * dt
        Ji[6:9, 6:9] = -I3

        Jj = np.zeros((9, 9))
        Jj[0:3, 0:3] = Jr_inv
        Jj[3:6, 3:6] = Ri.T
        Jj[6:9, 6:9] = Ri.T @ Rj

        Jb = np.zeros((9, 6))
        Jb[0:3, 0:3] = -Jr_inv @ exp_map(res_R).T @ right_jacobian(phi_bg) @ pre.JR_bg
        Jb[3:6, 0:3] = -pre.JV_bg
        Jb[3:6, 3:6] = -pre.JV_ba
        Jb[6:9, 0:3] = -pre.JP_bg
        Jb[6:9, 3:6] = -pre.JP_ba

        asm.add(
            np.concatenate([res_R, res_V, res_P]),
            pre.cov,
            [(layout.state(i), Ji), (layout.state(j), Jj), (layout.bias(i), Jb)],
        )

        bias_cov = np.zeros((6, 6))
        bias_cov[:3, :3] = imu_noise.gyro_bias * dt
        bias_cov[3:, 3:] = imu_noise.accel_bias * dt
        asm.add(
            np.concatenate([bj.gyro - bi.gyro, bj.accel - bi.accel]),
            bias_cov,
            [(layout.bias(i), -np.eye(6)), (layout.bias(j), np.eye(6))],
        )

        if layout.wsf_active:
            asm.add(
                [sj.wsf - si.wsf],
                imu_noise.scale_factor * dt,
                [(layout.wsf(i), -np.ones((1, 1))), (layout.wsf(j), np.ones((1, 1)))],
            )
    return asm.build("inertial")


def gnss_block(trial: Trial, layout: VariableLayout, problem: FusionProblem) -> FactorBlock:
    """Position of the state at each fix against the fix in local ENU."""
    asm = BlockAssembler(layout.size)
    gnss = problem.gnss
    enu = gnss.enu()
    n = len(trial.states)
    for f in range(len(gnss)):
        k = int(gnss.state_idxs[f])
        if not 0 <= k < n:
            raise DataError(f"GNSS fix {f} refers to unknown state {k}")
        s = trial.states[k]
        asm.add(s.P - enu[f], gnss.covariance(f), [(layout.state(k) + 6, s.R)])
    return asm.build("gnss")


def wheel_speed_block(
    trial: Trial, layout: VariableLayout, problem: FusionProblem
) -> FactorBlock:
    """Nonholonomic constraint on the rear-axle velocity in the body frame.

    Residual at state k (first and last states excluded):
        (Rᵀ V - [ω - bg]× L) / S - [v, 0, 0]
    with ω the first gyro sample of cluster k, L the rear-axle-to-IMU lever
    arm and S the wheel scale factor.
    """
    asm = BlockAssembler(layout.size)
    wheel = problem.wheel
    lever = problem.params.lever_arm_vec
    cov = problem.covs.wss
    n = len(trial.states)

    for k in range(1, n - 1):
        s, b = trial.states[k], trial.biases[k]
        S = s.wsf
        omega = problem.imu[k].gyro[0] - b.gyro
        v_body = s.R.T @ s.V
        axle = v_body - skew(omega) @ lever
        res = axle / S - np.array([wheel.at_state(k), 0.0, 0.0])

        col = layout.state(k)
        asm.add(
            res,
            cov,
            [
                (col, skew(v_body) / S),
                (col + 3, s.R.T / S),
                (layout.bias(k), -skew(lever) / S),
                (layout.wsf(k), (-axle / S**2).reshape(3, 1)),
            ],
        )
    return asm.build("wheel_speed")


def stack_blocks(blocks: List[FactorBlock], n_cols: Optional[int] = None):
    """Concatenate factor blocks into one residual vector and sparse Jacobian."""
    if not blocks:
        return np.zeros(0), sparse.csr_matrix((0, n_cols or 0))
    residual = np.concatenate([b.residual for b in blocks])
    jacobian = sparse.vstack([b.jacobian for b in blocks], format="csr")
    return residual, jacobian
