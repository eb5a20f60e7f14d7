"""
Adaptive arc fitting: convergence on exact circles and sub-segment splitting
when a single arc cannot explain the lane points.
"""

import logging

import numpy as np
import pytest

from lanefusion.mapping.arc_fit import ArcFit
from lanefusion.mapping.arc_spline import ArcSegment, arc_lengths

POINT_STD = 0.1


def circle_points(start, heading, kappa, lengths):
    """Points at the given arc lengths along a circle through ``start``."""
    start = np.asarray(start, dtype=float)
    radius = 1.0 / kappa
    center = start + radius * np.array([-np.sin(heading), np.cos(heading)])
    angles = heading - np.pi / 2 + kappa * np.asarray(lengths)
    return center + radius * np.column_stack([np.cos(angles), np.sin(angles)])


def make_segment(points, kappa0, tau0=0.0, bnds=None):
    m = len(points)
    bnds = np.array([[0, m - 1]]) if bnds is None else np.asarray(bnds)
    return ArcSegment(
        x0=points[0, 0],
        y0=points[0, 1],
        tau0=tau0,
        kappa=np.full(len(bnds), kappa0),
        L=arc_lengths(points, bnds),
        bnds=bnds,
        state_idxs=np.arange(m),
        sides=np.zeros(m, dtype=int),
        points=points,
        covs=np.tile(POINT_STD**2 * np.eye(2), (m, 1, 1)),
    )


def two_arc_points():
    """10 points on a radius-50 arc continued by 11 points on a radius-20 arc."""
    first = circle_points([0.0, 0.0], 0.0, 0.02, 2.0 * np.arange(10))
    heading = 0.02 * 18.0
    second = circle_points(first[-1], heading, 0.05, 2.0 * np.arange(11))
    return np.vstack([first, second[1:]])


class TestSingleArc:
    @pytest.mark.parametrize("kappa", [0.02, -0.02])
    def test_recovers_circle(self, kappa):
        points = circle_points([0.0, 0.0], 0.0, kappa, 2.0 * np.arange(20))
        fitter = ArcFit(make_segment(points, 0.9 * kappa, tau0=0.02))
        seg = fitter.optimize()

        assert fitter.valid
        assert seg.subseg_cnt == 1
        assert seg.kappa[0] == pytest.approx(kappa, rel=1e-3)
        assert seg.L[0] == pytest.approx(38.0, rel=1e-3)
        np.testing.assert_allclose([seg.x0, seg.y0], [0.0, 0.0], atol=1e-2)
        assert fitter.covariance.shape == (4, 4)
        assert np.all(fitter.ndist < fitter.chisq_thres)

    def test_nothing_to_split(self):
        points = circle_points([0.0, 0.0], 0.0, 0.02, 2.0 * np.arange(20))
        fitter = ArcFit(make_segment(points, 0.02))
        fitter.optimize()
        assert not fitter.replicate()
        assert fitter.segment.subseg_cnt == 1

    def test_requires_points(self):
        seg = make_segment(circle_points([0.0, 0.0], 0.0, 0.02, 2.0 * np.arange(5)), 0.02)
        bare = ArcSegment(
            x0=seg.x0, y0=seg.y0, tau0=seg.tau0, kappa=seg.kappa, L=seg.L,
            bnds=seg.bnds, state_idxs=seg.state_idxs, sides=seg.sides,
        )
        with pytest.raises(ValueError):
            ArcFit(bare)


class TestReplication:
    def test_single_arc_is_invalid(self):
        points = two_arc_points()
        fitter = ArcFit(make_segment(points, 0.035))
        fitter.associate()
        fitter.fit()
        assert not fitter.validate()
        assert fitter.validity[0] >= fitter.invalid_limit

    def test_replicate_splits_at_midpoint(self):
        points = two_arc_points()
        fitter = ArcFit(make_segment(points, 0.035))
        fitter.associate()
        fitter.fit()
        fitter.validate()
        assert fitter.replicate()

        seg = fitter.segment
        np.testing.assert_array_equal(seg.bnds, [[0, 9], [9, 19]])
        np.testing.assert_allclose(seg.kappa, [seg.kappa[0]] * 2)
        assert np.all(seg.L > 0)

    def test_optimize_splits_and_recovers(self):
        points = two_arc_points()
        fitter = ArcFit(make_segment(points, 0.035))
        seg = fitter.optimize()

        assert fitter.valid
        assert seg.subseg_cnt == 2
        np.testing.assert_allclose(seg.kappa, [0.02, 0.05], rtol=1e-2)
        np.testing.assert_allclose(seg.L, [18.0, 20.0], rtol=1e-2)
        nodes, _ = seg.nodes()
        np.testing.assert_allclose(nodes[1], points[9], atol=1e-2)
        np.testing.assert_allclose(nodes[2], points[-1], atol=1e-2)


class DriftingFit(ArcFit):
    """Refits of a split segment land 1 m off the data points."""

    def fit(self):
        super().fit()
        if self.segment.subseg_cnt > 1:
            self.segment = self.segment.with_params(y0=self.segment.y0 + 1.0)
        return self.segment


def outlier_points():
    """20 points on a radius-50 arc with three adjacent points pushed 1 m outward."""
    lengths = 2.0 * np.arange(20)
    points = circle_points([0.0, 0.0], 0.0, 0.02, lengths)
    center = np.array([0.0, 50.0])
    for j in (8, 9, 10):
        radial = (points[j] - center) / np.linalg.norm(points[j] - center)
        points[j] = points[j] + radial
    return points


class TestSplit:
    def test_kept_when_invalid_points_drop(self):
        fitter = ArcFit(make_segment(two_arc_points(), 0.035))
        fitter.associate()
        fitter.fit()
        fitter.validate()
        before = fitter.validity.sum()

        assert fitter.split()
        assert fitter.segment.subseg_cnt == 2
        assert fitter.validity.sum() <= before

    def test_reverted_when_invalid_points_grow(self, caplog):
        fitter = DriftingFit(make_segment(outlier_points(), 0.02))
        fitter.associate()
        fitter.fit()
        assert not fitter.validate()
        before = fitter.validity.sum()
        original, jacobian = fitter.segment, fitter.jacobian

        with caplog.at_level(logging.WARNING, logger="lanefusion.mapping.arc_fit"):
            assert not fitter.split()
        assert any("reverted" in r.getMessage() for r in caplog.records)
        assert fitter.segment is original
        assert fitter.jacobian is jacobian
        assert fitter.segment.subseg_cnt == 1
        assert fitter.validity.sum() == before

    def test_noisy_circle_never_gains_invalid_points(self):
        lengths = 2.0 * np.arange(20)
        flagged = 0
        for seed in range(10):
            rng = np.random.default_rng(seed)
            points = circle_points([0.0, 0.0], 0.0, 0.02, lengths)
            points = points + 3.0 * POINT_STD * rng.standard_normal(points.shape)
            fitter = ArcFit(make_segment(points, 0.02))
            fitter.associate()
            fitter.fit()
            if fitter.validate():
                continue
            flagged += 1
            before = fitter.validity.sum()
            fitter.split()
            assert fitter.validity.sum() <= before
        assert flagged > 0

    def test_nothing_to_split(self):
        points = circle_points([0.0, 0.0], 0.0, 0.02, 2.0 * np.arange(20))
        fitter = ArcFit(make_segment(points, 0.02))
        fitter.associate()
        fitter.fit()
        fitter.validate()
        assert not fitter.split()
        assert fitter.segment.subseg_cnt == 1


class TestEvaluationBudget:
    def test_default_budget_converges(self, caplog):
        with caplog.at_level(logging.WARNING, logger="lanefusion.mapping.arc_fit"):
            ArcFit(make_segment(two_arc_points(), 0.035)).optimize()
        assert not any("evaluation limit" in r.getMessage() for r in caplog.records)

    def test_exhausted_budget_warns(self, caplog):
        points = circle_points([0.0, 0.0], 0.0, 0.02, 2.0 * np.arange(20))
        fitter = ArcFit(make_segment(points, 0.018, tau0=0.02), max_nfev=1)
        fitter.associate()
        with caplog.at_level(logging.WARNING, logger="lanefusion.mapping.arc_fit"):
            fitter.fit()
        assert any("evaluation limit" in r.getMessage() for r in caplog.records)
