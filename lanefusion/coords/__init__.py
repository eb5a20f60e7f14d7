"""Rotation-group operations and geodetic frame conversions.

- SO(3) manifold maps (Exp/Log, right Jacobians, skew)
- LLA / ECEF / local ENU conversions for GNSS fixes
"""

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
from lanefusion.coords.transforms import (
    ecef_to_enu,
    ecef_to_llh,
    enu_to_ecef,
    enu_to_lla,
    lla_to_enu,
    llh_to_ecef,
)

__all__ = [
    # SO(3)
    "skew",
    "vee",
    "exp_map",
    "log_map",
    "right_jacobian",
    "inv_right_jacobian",
    "rotation_yaw",
    "yaw_rotation",
    "rot2d",
    # Transforms
    "llh_to_ecef",
    "ecef_to_llh",
    "ecef_to_enu",
    "enu_to_ecef",
    "lla_to_enu",
    "enu_to_lla",
]
