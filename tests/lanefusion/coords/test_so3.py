"""Unit tests for SO(3) manifold operations.

Test cases include:
- Exp/Log consistency including the small-angle and near-π branches
- Right Jacobian against a numerical derivative of Exp
- Yaw extraction and planar rotations
- Shape validation
"""

import unittest

import numpy as np

from lanefusion.coords.so3 import (
    exp_map,
    inv_right_jacobian,
    log_map,
    right_jacobian,
    rot2d,
    rotation_yaw,
    skew,
    vee,
    yaw_rotation,
)


class TestSkew(unittest.TestCase):
    """Test cases for the skew-symmetric operator."""

    def test_cross_product(self) -> None:
        v = np.array([0.3, -1.2, 2.0])
        w = np.array([1.0, 0.5, -0.7])
        np.testing.assert_allclose(skew(v) @ w, np.cross(v, w), atol=1e-12)

    def test_vee_inverts_skew(self) -> None:
        v = np.array([0.1, 0.2, 0.3])
        np.testing.assert_allclose(vee(skew(v)), v)

    def test_rejects_wrong_shape(self) -> None:
        with self.assertRaises(ValueError):
            skew(np.zeros(2))


class TestExpLog(unittest.TestCase):
    """Test cases for the exponential and logarithm maps."""

    def test_exp_is_rotation(self) -> None:
        R = exp_map(np.array([0.4, -0.2, 1.1]))
        np.testing.assert_allclose(R.T @ R, np.eye(3), atol=1e-12)
        self.assertAlmostEqual(np.linalg.det(R), 1.0, places=12)

    def test_log_of_exp(self) -> None:
        for phi in (
            np.array([0.4, -0.2, 1.1]),
            np.array([1e-12, 0.0, 0.0]),
            np.array([0.0, 0.0, np.pi - 1e-8]),
        ):
            np.testing.assert_allclose(log_map(exp_map(phi)), phi, atol=1e-7)

    def test_identity(self) -> None:
        np.testing.assert_allclose(log_map(np.eye(3)), np.zeros(3), atol=1e-15)
        np.testing.assert_allclose(exp_map(np.zeros(3)), np.eye(3))

    def test_log_at_pi_has_norm_pi(self) -> None:
        R = np.diag([1.0, -1.0, -1.0])
        phi = log_map(R)
        self.assertAlmostEqual(np.linalg.norm(phi), np.pi, places=9)
        np.testing.assert_allclose(exp_map(phi), R, atol=1e-9)


class TestRightJacobian(unittest.TestCase):
    """Test cases for Jr and its inverse."""

    def test_first_order_property(self) -> None:
        phi = np.array([0.3, -0.5, 0.8])
        dphi = np.array([1e-6, -2e-6, 1.5e-6])
        lhs = exp_map(phi + dphi)
        rhs = exp_map(phi) @ exp_map(right_jacobian(phi) @ dphi)
        np.testing.assert_allclose(lhs, rhs, atol=1e-11)

    def test_inverse(self) -> None:
        for phi in (np.array([0.3, -0.5, 0.8]), np.zeros(3)):
            np.testing.assert_allclose(
                right_jacobian(phi) @ inv_right_jacobian(phi), np.eye(3), atol=1e-12
            )


class TestPlanarHelpers(unittest.TestCase):
    """Test cases for yaw extraction and 2D rotations."""

    def test_yaw_roundtrip(self) -> None:
        for yaw in (-3.0, -0.4, 0.0, 1.2, 3.1):
            self.assertAlmostEqual(rotation_yaw(yaw_rotation(yaw)), yaw, places=12)

    def test_yaw_ignores_roll(self) -> None:
        R = yaw_rotation(0.7) @ exp_map(np.array([0.05, 0.0, 0.0]))
        self.assertAlmostEqual(rotation_yaw(R), 0.7, places=12)

    def test_rot2d_matches_yaw_rotation(self) -> None:
        np.testing.assert_allclose(rot2d(0.3), yaw_rotation(0.3)[:2, :2])


if __name__ == "__main__":
    unittest.main()
