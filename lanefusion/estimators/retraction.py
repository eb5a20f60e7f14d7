"""Retraction of an optimization step onto the current estimates.

    R ← R Exp(δR)          V ← V + δV         P ← P + R δP
    bgd ← bgd + δbg        bad ← bad + δba    (folded into bg/ba past a threshold)
    wsf ← wsf + δwsf
    x0, y0, tau0, κ ← additive               L ← (√L + δ√L)²

Folding a bias delta changes the nominal bias the interval starting at that
state was integrated with, so that interval is re-integrated. Only flagged
intervals are recomputed. The final retraction folds every accumulator
without re-integration; the inertial factor linearizes around the bias the
cluster was integrated with, so the folded result stays consistent.
"""

import logging
from dataclasses import replace

import numpy as np

from lanefusion.coords.so3 import exp_map
from lanefusion.estimators.state import FusionProblem, Trial, VariableLayout
from lanefusion.mapping.arc_spline import ArcSegment
from lanefusion.sensors.preintegration import preintegrate_all
from lanefusion.sensors.types import Bias, NavState

logger = logging.getLogger(__name__)


def _retract_states(trial: Trial, delta: np.ndarray, layout: VariableLayout):
    states = []
    for k, s in enumerate(trial.states):
        d = delta[layout.state(k) : layout.state(k) + 9]
        wsf = s.wsf
        if layout.wsf_active:
            wsf = s.wsf + delta[layout.wsf(k)]
        states.append(
            NavState(
                R=s.R @ exp_map(d[0:3]),
                V=s.V + d[3:6],
                P=s.P + s.R @ d[6:9],
                wsf=wsf,
            )
        )
    return states


def _retract_biases(trial, delta, layout, thresholds, final):
    biases = []
    flagged = []
    for k, b in enumerate(trial.biases):
        d = delta[layout.bias(k) : layout.bias(k) + 6]
        bg, ba = b.bg, b.ba
        bgd = b.bgd + d[0:3]
        bad = b.bad + d[3:6]

        if final or np.linalg.norm(bgd) > thresholds.bgd:
            bg = bg + bgd
            if not final:
                flagged.append(k)
            bgd = np.zeros(3)
        if final or np.linalg.norm(bad) > thresholds.bad:
            ba = ba + bad
            if not final:
                flagged.append(k)
            bad = np.zeros(3)
        biases.append(Bias(bg=bg, ba=ba, bgd=bgd, bad=bad))

    # The last state starts no interval
    n_intervals = len(trial.preintegrated)
    reintegrate = sorted({k for k in flagged if k < n_intervals})
    return biases, reintegrate


def _retract_segment(seg: ArcSegment, d: np.ndarray) -> ArcSegment:
    m = seg.subseg_cnt
    dkappa = d[3 : 3 + m]
    dsqrtL = d[3 + m : 3 + 2 * m]
    L = np.where(dsqrtL == 0.0, seg.L, (np.sqrt(seg.L) + dsqrtL) ** 2)
    return seg.with_params(
        x0=seg.x0 + d[0],
        y0=seg.y0 + d[1],
        tau0=seg.tau0 + d[2],
        kappa=seg.kappa + dkappa,
        L=L,
    )


def retract(
    trial: Trial,
    delta: np.ndarray,
    layout: VariableLayout,
    problem: FusionProblem,
    final: bool = False,
) -> Trial:
    """Apply an optimization step and return the resulting trial.

    Args:
        trial: Current estimates (not modified).
        delta: Step in the optimization vector, length ``layout.size``.
        layout: Variable layout the step refers to.
        problem: Fixed inputs (IMU clusters, noise, bias thresholds).
        final: Fold every bias delta into the nominal bias.

    Returns:
        New Trial; ``reintegrated`` lists the re-integrated interval indices.
    """
    delta = np.asarray(delta, dtype=float).reshape(-1)
    if delta.shape != (layout.size,):
        raise ValueError(f"delta must have length {layout.size}, got {delta.shape[0]}")

    states = _retract_states(trial, delta, layout)
    biases, reintegrate = _retract_biases(trial, delta, layout, problem.thresholds, final)

    preintegrated = trial.preintegrated
    if reintegrate:
        logger.debug("Re-integrating IMU intervals %s", reintegrate)
        preintegrated = preintegrate_all(
            problem.imu, biases, problem.covs.imu, idxs=reintegrate, previous=preintegrated
        )

    segments = trial.segments
    if layout.lane_active:
        segments = tuple(
            _retract_segment(seg, delta[layout.segment(s) : layout.segment(s) + seg.param_count])
            for s, seg in enumerate(trial.segments)
        )

    return replace(
        trial,
        states=tuple(states),
        biases=tuple(biases),
        preintegrated=preintegrated,
        segments=segments,
        reintegrated=tuple(reintegrate),
    )
