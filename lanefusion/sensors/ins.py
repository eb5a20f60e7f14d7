"""INS initialization and dead-reckoning from pre-integrated increments.

The batch problem is initialized by chaining pre-integrated IMU increments
from a GNSS-derived initial pose:

    P_{k+1} = P_k + V_k dt + ½ g dt² + R_k Δp
    V_{k+1} = V_k + g dt + R_k Δv
    R_{k+1} = R_k ΔR

World frame is local ENU with gravity g = [0, 0, -9.81].
"""

from typing import Optional, Sequence, Tuple

import numpy as np

from lanefusion.config import GRAVITY
from lanefusion.coords.so3 import yaw_rotation
from lanefusion.sensors.preintegration import PreintegratedImu
from lanefusion.sensors.types import GnssFixes, NavState


def ned_to_enu_velocity(vel_ned: np.ndarray) -> np.ndarray:
    """[vN, vE, vD] → [vE, vN, vU]."""
    vel_ned = np.asarray(vel_ned, dtype=float)
    return np.array([vel_ned[1], vel_ned[0], -vel_ned[2]])


def initial_state_from_gnss(
    gnss: GnssFixes, fix: int = 0
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Initial rotation, velocity and position from one GNSS fix.

    The heading is derived from the course over ground: yaw = π/2 - bearing,
    since bearing is measured clockwise from north and yaw counter-clockwise
    from east. Roll and pitch are assumed zero.

    Returns:
        (R0, V0, P0) in the local ENU frame.
    """
    yaw = np.pi / 2 - np.deg2rad(gnss.bearing[fix])
    R0 = yaw_rotation(yaw)
    V0 = ned_to_enu_velocity(gnss.vel_ned[fix])
    P0 = gnss.enu()[fix]
    return R0, V0, P0


def propagate_states(
    preintegrated: Sequence[PreintegratedImu],
    R0: np.ndarray,
    V0: np.ndarray,
    P0: np.ndarray,
    gravity: np.ndarray = GRAVITY,
    wsf: Optional[float] = None,
) -> Tuple[NavState, ...]:
    """Chain pre-integrated increments into len(preintegrated) + 1 states.

    Args:
        preintegrated: Pre-integrated clusters in time order.
        R0, V0, P0: Initial rotation, velocity and position.
        gravity: World-frame gravity vector.
        wsf: Initial wheel scale factor assigned to every state, or None.

    Returns:
        Tuple of NavState.
    """
    R = np.asarray(R0, dtype=float)
    V = np.asarray(V0, dtype=float)
    P = np.asarray(P0, dtype=float)
    g = np.asarray(gravity, dtype=float)

    states = [NavState(R, V, P, wsf)]
    for pre in preintegrated:
        dt = pre.dt
        P = P + V * dt + 0.5 * g * dt**2 + R @ pre.delP
        V = V + g * dt + R @ pre.delV
        R = R @ pre.delR
        states.append(NavState(R, V, P, wsf))
    return tuple(states)
