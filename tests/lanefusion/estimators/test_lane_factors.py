"""
Unit tests for the arc-spline lane measurement and anchor factors.

Tests cover:
    - Closed-form residuals on hand-built arcs (both turning directions)
    - Consistency with a fitted map on a noise-free curved drive
    - Numerical Jacobians against central differences through the retraction
    - The domain guard for points outside an arc's angular span
"""

import warnings
from dataclasses import replace

import numpy as np
import pytest

from lanefusion.coords.so3 import yaw_rotation
from lanefusion.errors import DataError
from lanefusion.estimators.lane_factors import (
    ForwardDifference,
    anchor_residual,
    lane_anchor_block,
    lane_measurement_block,
    measurement_residual,
)
from lanefusion.estimators.retraction import retract
from lanefusion.estimators.state import VariableLayout
from lanefusion.mapping.arc_map import ArcMap


class TestClosedForm:
    def test_left_turn_arc(self):
        res, clamped = measurement_residual(
            np.eye(3), np.zeros(3), np.array([0.0, 2.0, 0.0]),
            np.array([0.1]), np.array([5.0]), 0, 2.0,
        )
        assert not clamped
        assert res == pytest.approx(0.0, abs=1e-12)

    def test_right_turn_arc(self):
        res, clamped = measurement_residual(
            np.eye(3), np.zeros(3), np.array([0.0, -2.0, 0.0]),
            np.array([-0.1]), np.array([5.0]), 0, -2.0,
        )
        assert not clamped
        assert res == pytest.approx(0.0, abs=1e-12)

    def test_lateral_error_sign(self):
        res, _ = measurement_residual(
            np.eye(3), np.zeros(3), np.array([0.0, 2.0, 0.0]),
            np.array([0.1]), np.array([5.0]), 0, 1.5,
        )
        assert res == pytest.approx(0.5)

    def test_domain_guard_clamps(self):
        # Circle of radius 10 centered 100 m ahead of the vehicle
        res, clamped = measurement_residual(
            np.eye(3), np.zeros(3), np.array([100.0, -10.0, 0.0]),
            np.array([0.1]), np.array([5.0]), 0, 0.0,
        )
        assert clamped
        assert np.isfinite(res)
        assert res == pytest.approx(0.0)

    def test_anchor_residual(self):
        res = anchor_residual(
            yaw_rotation(np.pi / 2), np.array([1.0, 0.0, 0.0]), np.array([0.0, 1.0, 0.0]),
            np.array([0.1]), np.array([5.0]), 0, 1.0,
        )
        np.testing.assert_allclose(res, [1.0, 0.0], atol=1e-12)

    def test_forward_difference_step(self):
        with pytest.raises(ValueError):
            ForwardDifference(0.0)


@pytest.fixture
def lane_setup(curved_drive, optimizer_for):
    opt = optimizer_for(curved_drive, "full")
    problem = opt.build_problem()
    arc_map = ArcMap(opt.initial.states, curved_drive.lane, curved_drive.seeds)
    trial = replace(opt.initial, segments=arc_map.segments)
    layout = VariableLayout.for_trial(trial, problem.capabilities)
    return trial, layout, problem


class TestLaneBlocks:
    def test_fitted_map_is_consistent(self, lane_setup):
        trial, layout, problem = lane_setup
        meas = lane_measurement_block(trial, layout, problem)
        anchors = lane_anchor_block(trial, layout, problem)
        n = len(trial.states)
        assert meas.residual.shape == (2 * n,)
        assert anchors.residual.shape == (2 * 2 * 2,)
        assert meas.domain_violations == 0
        # Whitened by the 0.1 m lateral standard deviation
        assert np.abs(meas.residual).max() < 0.5

    def test_internal_anchors_need_split_segments(self, lane_setup):
        trial, layout, problem = lane_setup
        plain = lane_anchor_block(trial, layout, problem, include_internal=False)
        internal = lane_anchor_block(trial, layout, problem, include_internal=True)
        # Single sub-segment: no internal boundary to anchor
        assert plain.residual.shape == internal.residual.shape

    @pytest.mark.parametrize("block_name", ["measurement", "anchor"])
    def test_jacobian(self, lane_setup, block_name):
        trial, layout, problem = lane_setup
        block_fn = lane_measurement_block if block_name == "measurement" else lane_anchor_block

        J = block_fn(trial, layout, problem).jacobian.toarray()
        eps = 1e-6
        J_num = np.zeros_like(J)
        for i in range(layout.size):
            step = np.zeros(layout.size)
            step[i] = eps
            plus = block_fn(retract(trial, step, layout, problem), layout, problem).residual
            minus = block_fn(retract(trial, -step, layout, problem), layout, problem).residual
            J_num[:, i] = (plus - minus) / (2 * eps)
        np.testing.assert_allclose(J, J_num, rtol=1e-3, atol=1e-3)

    def test_jacobian_columns_are_local(self, lane_setup):
        trial, layout, problem = lane_setup
        J = lane_measurement_block(trial, layout, problem).jacobian.toarray()
        # Bias and wheel-scale columns never enter lane factors
        assert not np.any(J[:, layout.bias_base : layout.lane_base])

    def test_domain_guard_warns_and_counts(self, lane_setup):
        trial, layout, problem = lane_setup
        states = list(trial.states)
        s = states[4]
        states[4] = replace(s, R=s.R @ yaw_rotation(np.pi / 2))
        bad = replace(trial, states=tuple(states))

        with pytest.warns(RuntimeWarning, match="outside the arc"):
            block = lane_measurement_block(bad, layout, problem)
        assert block.domain_violations == 1
        assert np.all(np.isfinite(block.residual))
        assert np.all(np.isfinite(block.jacobian.toarray()))

    def test_consistent_map_emits_no_warning(self, lane_setup):
        trial, layout, problem = lane_setup
        with warnings.catch_warnings():
            warnings.simplefilter("error", RuntimeWarning)
            lane_measurement_block(trial, layout, problem)

    def test_unreliable_detection_rejected(self, lane_setup):
        trial, layout, problem = lane_setup
        lprob = problem.lane.lprob.copy()
        lprob[problem.lane.state_idxs[3]] = 0.2
        weak = replace(problem, lane=replace(problem.lane, lprob=lprob))
        with pytest.raises(DataError, match="unreliable"):
            lane_measurement_block(trial, layout, weak)
