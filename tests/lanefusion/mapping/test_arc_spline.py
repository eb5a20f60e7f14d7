"""
Unit tests for the arc-spline segment model.

Tests cover:
    - Closed-form node and center propagation
    - Point matching on circles of either turning direction
    - Index bounds, point association and anchor selection
    - ArcSegment construction checks
"""

import unittest

import numpy as np

from lanefusion.errors import DataError
from lanefusion.mapping.arc_spline import (
    ArcSegment,
    arc_lengths,
    associate,
    bounds_partition_ok,
    match_point,
    propagate_centers,
    propagate_nodes,
)


def simple_segment(**overrides):
    kwargs = dict(
        x0=0.0,
        y0=0.0,
        tau0=0.0,
        kappa=[0.02, -0.01],
        L=[10.0, 15.0],
        bnds=[[0, 3], [3, 6]],
        state_idxs=np.arange(7),
        sides=np.zeros(7, dtype=int),
    )
    kwargs.update(overrides)
    return ArcSegment(**kwargs)


class TestPropagation(unittest.TestCase):
    """Test cases for node and center propagation."""

    def test_quarter_turn(self) -> None:
        nodes, headings = propagate_nodes(0.0, 0.0, 0.0, [0.02], [25.0 * np.pi])
        np.testing.assert_allclose(nodes, [[0.0, 0.0], [50.0, 50.0]], atol=1e-10)
        np.testing.assert_allclose(headings, [0.0, np.pi / 2])

    def test_right_turn(self) -> None:
        nodes, headings = propagate_nodes(0.0, 0.0, 0.0, [-0.02], [25.0 * np.pi])
        np.testing.assert_allclose(nodes[1], [50.0, -50.0], atol=1e-10)
        self.assertAlmostEqual(headings[1], -np.pi / 2)

    def test_nodes_lie_on_their_circles(self) -> None:
        kappa = np.array([0.02, -0.01, 0.05])
        L = np.array([10.0, 15.0, 8.0])
        nodes, _ = propagate_nodes(3.0, -2.0, 0.4, kappa, L)
        centers = propagate_centers(3.0, -2.0, 0.4, kappa, L)
        for i in range(len(kappa)):
            radius = 1.0 / abs(kappa[i])
            self.assertAlmostEqual(np.linalg.norm(nodes[i] - centers[i]), radius)
            self.assertAlmostEqual(np.linalg.norm(nodes[i + 1] - centers[i]), radius)

    def test_partial_propagation(self) -> None:
        kappa, L = [0.02, -0.01, 0.05], [10.0, 15.0, 8.0]
        nodes, headings = propagate_nodes(0.0, 0.0, 0.0, kappa, L, upto=1)
        full, _ = propagate_nodes(0.0, 0.0, 0.0, kappa, L)
        self.assertEqual(nodes.shape, (2, 2))
        np.testing.assert_allclose(nodes, full[:2])
        self.assertEqual(propagate_centers(0.0, 0.0, 0.0, kappa, L, upto=2).shape, (2, 2))


class TestPointHelpers(unittest.TestCase):
    """Test cases for matching, lengths and bounds."""

    def test_match_point(self) -> None:
        center = np.array([1.0, 1.0])
        np.testing.assert_allclose(match_point(center, 0.5, [4.0, 1.0]), [3.0, 1.0])
        np.testing.assert_allclose(match_point(center, -0.5, [1.0, 0.5]), [1.0, -1.0])

    def test_arc_lengths(self) -> None:
        points = np.array([[0.0, 0.0], [3.0, 4.0], [6.0, 8.0], [6.0, 10.0]])
        np.testing.assert_allclose(arc_lengths(points, [[0, 2], [2, 3]]), [10.0, 2.0])

    def test_bounds_partition(self) -> None:
        self.assertTrue(bounds_partition_ok([[0, 3], [3, 6]], 7))
        self.assertFalse(bounds_partition_ok([[0, 3], [4, 6]], 7))
        self.assertFalse(bounds_partition_ok([[0, 3], [3, 5]], 7))
        self.assertFalse(bounds_partition_ok([[1, 3], [3, 6]], 7))
        self.assertFalse(bounds_partition_ok([[0, 3], [3, 3], [3, 6]], 7))
        self.assertFalse(bounds_partition_ok(np.zeros((0, 2)), 7))

    def test_associate(self) -> None:
        np.testing.assert_array_equal(
            associate([[0, 3], [3, 6]], 7), [0, 0, 0, 0, 1, 1, 1]
        )


class TestArcSegment(unittest.TestCase):
    """Test cases for ArcSegment."""

    def test_sizes(self) -> None:
        seg = simple_segment()
        self.assertEqual(seg.subseg_cnt, 2)
        self.assertEqual(seg.param_count, 7)
        self.assertEqual(seg.n_points, 7)
        np.testing.assert_array_equal(seg.association(), [0, 0, 0, 0, 1, 1, 1])

    def test_anchor_points(self) -> None:
        seg = simple_segment()
        self.assertEqual(seg.anchor_points(), ((0, 0), (1, 3), (2, 6)))
        self.assertEqual(seg.anchor_points(include_internal=False), ((0, 0), (2, 6)))

    def test_with_params_shares_association(self) -> None:
        seg = simple_segment()
        moved = seg.with_params(x0=5.0, kappa=np.array([0.03, -0.02]))
        self.assertEqual(moved.x0, 5.0)
        self.assertEqual(moved.y0, seg.y0)
        np.testing.assert_array_equal(moved.L, seg.L)
        self.assertTrue(np.shares_memory(moved.state_idxs, seg.state_idxs))
        np.testing.assert_array_equal(moved.bnds, seg.bnds)

    def test_length_mismatch(self) -> None:
        with self.assertRaises(DataError):
            simple_segment(L=[10.0])

    def test_zero_curvature(self) -> None:
        with self.assertRaises(ValueError):
            simple_segment(kappa=[0.02, 0.0])

    def test_non_positive_length(self) -> None:
        for L in ([10.0, 0.0], [-5.0, 15.0]):
            with self.assertRaises(ValueError):
                simple_segment(L=L)

    def test_bad_bounds(self) -> None:
        with self.assertRaises(DataError):
            simple_segment(bnds=[[0, 3], [4, 6]])

    def test_sides_mismatch(self) -> None:
        with self.assertRaises(DataError):
            simple_segment(sides=np.zeros(6, dtype=int))


if __name__ == "__main__":
    unittest.main()
