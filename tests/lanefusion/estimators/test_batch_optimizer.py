"""
End-to-end tests of the batch optimizer on noise-free synthetic drives.
"""

import logging

import numpy as np
import pytest

from lanefusion.config import SolverOptions
from lanefusion.estimators.optimizer import BatchOptimizer, build_cost
from lanefusion.mapping.arc_map import ArcMap

GN = SolverOptions(algorithm="GN")


def positions(states):
    return np.array([s.P for s in states])


class TestVehicleModes:
    @pytest.mark.parametrize("mode", ["basic", "partial"])
    def test_recovers_straight_drive(self, straight_drive, optimizer_for, mode):
        opt = optimizer_for(straight_drive, mode, options=GN)
        result = opt.optimize()

        assert result.converged
        np.testing.assert_allclose(positions(opt.states), straight_drive.P, atol=1e-3)
        for bias in opt.biases:
            np.testing.assert_array_equal(bias.bgd, np.zeros(3))
            np.testing.assert_array_equal(bias.bad, np.zeros(3))
        assert opt.segments == ()
        assert opt.arc_map is None
        n = opt.jacobian.shape[1]
        assert opt.information.shape == (n, n)
        assert opt.covariance.shape == (n, n)

    def test_wheel_scale_only_in_partial(self, straight_drive, optimizer_for):
        basic = optimizer_for(straight_drive, "basic", options=GN)
        basic.optimize()
        assert basic.wsf is None

        partial = optimizer_for(straight_drive, "partial", options=GN)
        partial.optimize()
        np.testing.assert_allclose(partial.wsf, 1.0, atol=1e-4)

    def test_default_trust_region(self, straight_drive, optimizer_for):
        opt = optimizer_for(straight_drive, "partial")
        result = opt.optimize()
        assert result.converged
        np.testing.assert_allclose(positions(opt.states), straight_drive.P, atol=1e-3)

    def test_mode_switch_resets_wheel_scale(self, straight_drive, optimizer_for):
        opt = optimizer_for(straight_drive, "basic", options=GN)
        opt.update_mode("partial")
        opt.optimize()
        assert opt.wsf is not None
        assert len(opt.wsf) == len(opt.states)


class TestLaneModes:
    @pytest.mark.parametrize("mode", ["full", "2-phase"])
    def test_curved_drive(self, curved_drive, optimizer_for, mode):
        opt = optimizer_for(curved_drive, mode, options=GN)
        opt.optimize()

        assert isinstance(opt.arc_map, ArcMap)
        assert opt.arc_map.valid
        assert len(opt.segments) == 2
        left, right = opt.segments
        assert left.kappa[0] == pytest.approx(1.0 / 98.2, rel=1e-2)
        assert right.kappa[0] == pytest.approx(1.0 / 101.8, rel=1e-2)
        np.testing.assert_allclose(positions(opt.states), curved_drive.P, atol=0.05)

        size = 15 * len(opt.states) + len(opt.states) + sum(s.param_count for s in opt.segments)
        assert opt.jacobian.shape[1] == size

    def test_logs_progress(self, curved_drive, optimizer_for, caplog):
        logger = logging.getLogger("lanefusion.test")
        opt = optimizer_for(curved_drive, "2-phase", options=GN, logger=logger)
        with caplog.at_level(logging.INFO, logger="lanefusion.test"):
            opt.optimize()
        messages = [r.getMessage() for r in caplog.records]
        assert any(m.startswith("Phase 1") for m in messages)
        assert any("GN iteration" in m for m in messages)


class TestConfiguration:
    def test_lane_mode_requires_seeds(self, straight_drive):
        drive = straight_drive
        with pytest.raises(ValueError, match="seeds"):
            BatchOptimizer(
                drive.imu, drive.gnss, drive.lane, drive.wheel, drive.bias, drive.covs,
                mode="full", params=drive.params,
            )

    def test_unknown_mode(self, straight_drive):
        drive = straight_drive
        opt = BatchOptimizer(
            drive.imu, drive.gnss, drive.lane, drive.wheel, drive.bias, drive.covs,
            mode="basic", params=drive.params,
        )
        with pytest.raises(ValueError, match="Unknown fusion mode"):
            opt.update_mode("bogus")
        with pytest.raises(ValueError):
            opt.update_mode("2-phase")


def test_build_cost_blocks(curved_drive, optimizer_for):
    opt = optimizer_for(curved_drive, "full")
    problem = opt.build_problem()
    residual, jacobian, blocks = build_cost(opt.initial, problem)
    assert set(blocks) == {"prior", "inertial", "gnss", "wheel_speed"}
    assert jacobian.shape == (len(residual), 15 * 9 + 9)
    assert residual @ residual == pytest.approx(sum(b.cost for b in blocks.values()))
