"""
Synthetic drives shared by the estimator and mapping tests.

The vehicle moves at constant speed on a circle of radius v / omega (or a
straight line for omega = 0), starting at the ENU origin heading east.
IMU samples, GNSS fixes, wheel speeds and lane offsets are generated
noise-free from that trajectory.
"""

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
import pytest

from lanefusion.config import NoiseCovariances, VehicleParams
from lanefusion.coords.so3 import yaw_rotation
from lanefusion.coords.transforms import enu_to_lla
from lanefusion.estimators.optimizer import BatchOptimizer
from lanefusion.mapping.arc_map import SegmentSeed
from lanefusion.sensors.types import (
    Bias,
    GnssFixes,
    ImuCluster,
    LaneMeasurements,
    LaneSide,
    WheelSpeed,
)

ORIGIN_LLA = np.array([22.3, 114.2, 10.0])
LANE_HALF_WIDTH = 1.8


@dataclass
class Drive:
    imu: Tuple[ImuCluster, ...]
    gnss: GnssFixes
    wheel: WheelSpeed
    lane: LaneMeasurements
    seeds: List[SegmentSeed]
    R: np.ndarray
    V: np.ndarray
    P: np.ndarray
    bias: Bias
    covs: NoiseCovariances
    params: VehicleParams


def _pose(t, speed, omega):
    yaw = omega * t
    if omega == 0.0:
        P = np.array([speed * t, 0.0, 0.0])
    else:
        r = speed / omega
        P = np.array([r * np.sin(yaw), r * (1.0 - np.cos(yaw)), 0.0])
    V = speed * np.array([np.cos(yaw), np.sin(yaw), 0.0])
    return yaw_rotation(yaw), V, P


def make_drive(
    n_states: int = 11,
    state_dt: float = 1.0,
    imu_dt: float = 0.05,
    speed: float = 10.0,
    omega: float = 0.0,
) -> Drive:
    """Noise-free sensor data for a constant-speed drive."""
    n_samples = int(round(state_dt / imu_dt))
    times = state_dt * np.arange(n_states)

    imu = []
    for k in range(n_states - 1):
        t = times[k] + imu_dt * np.arange(n_samples + 1)
        accel = np.tile([0.0, speed * omega, 9.81], (n_samples, 1))
        gyro = np.tile([0.0, 0.0, omega], (n_samples, 1))
        imu.append(ImuCluster(t=t, accel=accel, gyro=gyro))

    poses = [_pose(t, speed, omega) for t in times]
    R = np.array([p[0] for p in poses])
    V = np.array([p[1] for p in poses])
    P = np.array([p[2] for p in poses])

    vel_ned = np.column_stack([V[:, 1], V[:, 0], -V[:, 2]])
    bearing = np.rad2deg(np.pi / 2 - omega * times)
    gnss = GnssFixes(
        pos_lla=enu_to_lla(P, ORIGIN_LLA),
        vel_ned=vel_ned,
        bearing=bearing,
        h_acc=np.full(n_states, 0.1),
        v_acc=np.full(n_states, 0.2),
        state_idxs=np.arange(n_states),
        origin_lla=ORIGIN_LLA,
    )
    wheel = WheelSpeed(speed=np.full(n_states, speed), state_idxs=np.arange(n_states))

    ones = np.ones((n_states, 2))
    lane = LaneMeasurements(
        state_idxs=np.arange(n_states),
        ly=LANE_HALF_WIDTH * ones,
        ry=-LANE_HALF_WIDTH * ones,
        lz=0.0 * ones,
        rz=0.0 * ones,
        lystd=0.1 * ones,
        rystd=0.1 * ones,
        lprob=np.ones(n_states),
        rprob=np.ones(n_states),
    )

    seed_kappa = omega / speed if omega != 0.0 else 1e-4
    seeds = [
        SegmentSeed(
            state_idxs=np.arange(n_states),
            sides=np.full(n_states, int(side)),
            bnds=np.array([[0, n_states - 1]]),
            kappa=np.array([0.9 * seed_kappa]),
        )
        for side in (LaneSide.LEFT, LaneSide.RIGHT)
    ]

    return Drive(
        imu=tuple(imu),
        gnss=gnss,
        wheel=wheel,
        lane=lane,
        seeds=seeds,
        R=R,
        V=V,
        P=P,
        bias=Bias(bg=np.zeros(3), ba=np.zeros(3)),
        covs=NoiseCovariances(),
        params=VehicleParams(lever_arm=(0.0, 0.0, 0.0)),
    )


@pytest.fixture
def straight_drive() -> Drive:
    return make_drive()


@pytest.fixture
def curved_drive() -> Drive:
    return make_drive(n_states=9, state_dt=0.5, imu_dt=0.01, speed=10.0, omega=0.1)


@pytest.fixture
def optimizer_for():
    """Factory building a BatchOptimizer over a Drive."""

    def build(drive: Drive, mode: str = "partial", options=None, **kwargs):
        return BatchOptimizer(
            imu=drive.imu,
            gnss=drive.gnss,
            lane=drive.lane,
            wheel=drive.wheel,
            imu_bias=drive.bias,
            covs=drive.covs,
            mode=mode,
            options=options,
            seeds=drive.seeds,
            params=drive.params,
            **kwargs,
        )

    return build
