"""Arc-spline lane measurement and anchor factors.

Lane measurement (one per associated 0 m preview point):
    The center c of the associated sub-segment is propagated from the
    segment anchor and expressed in the vehicle frame by the yaw ψ of the
    state, c_b = R2(ψ)ᵀ (c - P_xy). The lane boundary crosses the vehicle's
    lateral axis at y = c_b,y ∓ sqrt(1/κ² - c_b,x²), so the residual is

        r = c_b,y - sqrt(1/κ² - c_b,x²) - d     (κ > 0)
        r = c_b,y + sqrt(1/κ² - c_b,x²) - d     (κ < 0)

    with d the measured lateral offset. A negative radicand means the lateral
    axis misses the circle; the radicand is clamped at zero, a RuntimeWarning
    is emitted and the occurrence is counted on the block.

Lane anchor (segment end points, optionally internal boundaries):
    The arc node is expressed in the vehicle frame, r = [x_b, y_b - d].

Both factors use numerical Jacobians supplied by a JacobianStrategy.
"""

import warnings
from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple

import numpy as np

from lanefusion.coords.so3 import exp_map, rot2d, rotation_yaw
from lanefusion.errors import DataError
from lanefusion.estimators.factors import BlockAssembler, FactorBlock
from lanefusion.estimators.state import FusionProblem, Trial, VariableLayout
from lanefusion.mapping.arc_spline import propagate_centers, propagate_nodes
from lanefusion.sensors.types import LaneSide

# Anchor longitudinal standard deviation (m)
ANCHOR_LONG_STD = 0.01

# residual(R, P, anchor, kappa, L) -> (d,)
LaneResidual = Callable[[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray], np.ndarray]


class JacobianStrategy(ABC):
    """Computes lane-factor Jacobians with respect to pose and arc parameters."""

    @abstractmethod
    def jacobian(
        self,
        residual: LaneResidual,
        R: np.ndarray,
        P: np.ndarray,
        anchor: np.ndarray,
        kappa: np.ndarray,
        L: np.ndarray,
        n_active: int,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """Jacobian blocks of ``residual`` at the given point.

        Args:
            residual: Residual function of (R, P, anchor, kappa, L).
            R, P: Vehicle rotation and position.
            anchor: Segment anchor [x0, y0, tau0].
            kappa, L: Sub-segment curvatures and arc lengths.
            n_active: Number of leading sub-segments whose κ and √L columns
                are returned.

        Returns:
            (J_R, J_P, J_anchor, J_kappa, J_sqrtL) with widths 3, 3, 3,
            n_active, n_active. J_R and J_P are with respect to the right
            perturbations δR and δP of the state.
        """


class ForwardDifference(JacobianStrategy):
    """Forward-difference Jacobians with a fixed perturbation step."""

    def __init__(self, eps: float = 1e-8):
        if eps <= 0:
            raise ValueError("eps must be positive")
        self.eps = eps

    def jacobian(self, residual, R, P, anchor, kappa, L, n_active):
        eps = self.eps
        r0 = np.atleast_1d(residual(R, P, anchor, kappa, L))
        d = len(r0)
        J_R = np.zeros((d, 3))
        J_P = np.zeros((d, 3))
        J_anchor = np.zeros((d, 3))
        J_kappa = np.zeros((d, n_active))
        J_L = np.zeros((d, n_active))

        for i in range(3):
            e = np.zeros(3)
            e[i] = eps
            J_R[:, i] = (residual(R @ exp_map(e), P, anchor, kappa, L) - r0) / eps
            J_P[:, i] = (residual(R, P + R @ e, anchor, kappa, L) - r0) / eps
            J_anchor[:, i] = (residual(R, P, anchor + e, kappa, L) - r0) / eps

        for i in range(n_active):
            kappa_ptb = kappa.copy()
            kappa_ptb[i] += eps
            J_kappa[:, i] = (residual(R, P, anchor, kappa_ptb, L) - r0) / eps

            L_ptb = L.copy()
            L_ptb[i] = (np.sqrt(L[i]) + eps) ** 2
            J_L[:, i] = (residual(R, P, anchor, kappa, L_ptb) - r0) / eps
        return J_R, J_P, J_anchor, J_kappa, J_L


def measurement_residual(
    R: np.ndarray,
    P: np.ndarray,
    anchor: np.ndarray,
    kappa: np.ndarray,
    L: np.ndarray,
    subseg: int,
    offset: float,
) -> Tuple[float, bool]:
    """Signed lateral residual of one lane point against sub-segment ``subseg``.

    Returns:
        (residual, clamped) where ``clamped`` flags a negative radicand.
    """
    centers = propagate_centers(anchor[0], anchor[1], anchor[2], kappa, L, upto=subseg + 1)
    c_b = rot2d(rotation_yaw(R)).T @ (centers[subseg] - P[:2])
    k = kappa[subseg]
    radicand = 1.0 / k**2 - c_b[0] ** 2
    clamped = radicand < 0
    root = np.sqrt(max(radicand, 0.0))
    if k > 0:
        return c_b[1] - root - offset, clamped
    return c_b[1] + root - offset, clamped


def anchor_residual(
    R: np.ndarray,
    P: np.ndarray,
    anchor: np.ndarray,
    kappa: np.ndarray,
    L: np.ndarray,
    node: int,
    offset: float,
) -> np.ndarray:
    """Vehicle-frame offset of arc node ``node`` from the measured lane point."""
    nodes, _ = propagate_nodes(anchor[0], anchor[1], anchor[2], kappa, L, upto=node)
    b = rot2d(rotation_yaw(R)).T @ (nodes[node] - P[:2])
    return np.array([b[0], b[1] - offset])


def _segment_columns(layout, s, seg, k):
    base = layout.segment(s)
    m = seg.subseg_cnt
    state = layout.state(k)
    return state, state + 6, base, base + 3, base + 3 + m


def lane_measurement_block(
    trial: Trial,
    layout: VariableLayout,
    problem: FusionProblem,
    strategy: Optional[JacobianStrategy] = None,
) -> FactorBlock:
    """Lateral offset factors of every associated lane point."""
    strategy = strategy or ForwardDifference(1e-8)
    asm = BlockAssembler(layout.size)
    lane = problem.lane
    violations = 0

    for s, seg in enumerate(trial.segments):
        assoc = seg.association()
        anchor = np.array([seg.x0, seg.y0, seg.tau0])
        for j in range(seg.n_points):
            k = int(seg.state_idxs[j])
            side = LaneSide(int(seg.sides[j]))
            sub = int(assoc[j])
            if not lane.is_reliable(k, side):
                raise DataError(
                    f"Lane point {j} of segment {s} uses an unreliable detection (state {k})"
                )
            offset = lane.offset(k, side)
            state = trial.states[k]

            res, clamped = measurement_residual(
                state.R, state.P, anchor, seg.kappa, seg.L, sub, offset
            )
            if clamped:
                violations += 1
                warnings.warn(
                    f"Lane point {j} of segment {s} (state {k}, sub-segment {sub}) lies "
                    "outside the arc's angular span; residual clamped",
                    RuntimeWarning,
                )

            def fn(R, P, a, kap, L, sub=sub, offset=offset):
                return np.array([measurement_residual(R, P, a, kap, L, sub, offset)[0]])

            J_R, J_P, J_a, J_k, J_L = strategy.jacobian(
                fn, state.R, state.P, anchor, seg.kappa, seg.L, sub + 1
            )
            c_R, c_P, c_a, c_k, c_L = _segment_columns(layout, s, seg, k)
            asm.add(
                [res],
                lane.lateral_std(k, side) ** 2,
                [(c_R, J_R), (c_P, J_P), (c_a, J_a), (c_k, J_k), (c_L, J_L)],
            )
    return asm.build("lane_measurement", domain_violations=violations)


def lane_anchor_block(
    trial: Trial,
    layout: VariableLayout,
    problem: FusionProblem,
    include_internal: bool = False,
    strategy: Optional[JacobianStrategy] = None,
) -> FactorBlock:
    """Pin segment end points (and optionally internal boundaries) to arc nodes."""
    strategy = strategy or ForwardDifference(1e-6)
    asm = BlockAssembler(layout.size)
    lane = problem.lane

    for s, seg in enumerate(trial.segments):
        anchor = np.array([seg.x0, seg.y0, seg.tau0])
        m = seg.subseg_cnt
        for node, j in seg.anchor_points(include_internal):
            k = int(seg.state_idxs[j])
            side = LaneSide(int(seg.sides[j]))
            offset = lane.offset(k, side)
            state = trial.states[k]

            def fn(R, P, a, kap, L, node=node, offset=offset):
                return anchor_residual(R, P, a, kap, L, node, offset)

            res = fn(state.R, state.P, anchor, seg.kappa, seg.L)
            J_R, J_P, J_a, J_k, J_L = strategy.jacobian(
                fn, state.R, state.P, anchor, seg.kappa, seg.L, m
            )
            c_R, c_P, c_a, c_k, c_L = _segment_columns(layout, s, seg, k)
            cov = np.diag([ANCHOR_LONG_STD**2, lane.lateral_std(k, side) ** 2])
            asm.add(res, cov, [(c_R, J_R), (c_P, J_P), (c_a, J_a), (c_k, J_k), (c_L, J_L)])
    return asm.build("lane_anchor")
