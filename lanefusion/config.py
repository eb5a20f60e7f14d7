"""Run configuration: fusion modes, noise covariances and solver options.

Fusion modes are described by capability sets rather than checked ad hoc in
every factor builder. A mode declares which factor families are active and
whether wheel-scale-factor and lane variables enter the optimization vector;
the layout of that vector is derived once per solve from these flags.

    basic    : INS + GNSS
    partial  : INS + GNSS + wheel speed (with wheel scale factor)
    full     : partial + arc-spline lane model, lane blocks from the start
    2-phase  : partial solved first, then the arc-spline lane model
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Tuple

import numpy as np

# World frame is ENU; gravity points down the z-axis
GRAVITY = np.array([0.0, 0.0, -9.81])


class FusionMode(str, Enum):
    """Sensor combination used by the batch optimizer."""

    BASIC = "basic"
    PARTIAL = "partial"
    FULL = "full"
    TWO_PHASE = "2-phase"

    @classmethod
    def parse(cls, value) -> "FusionMode":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ValueError(f"Unknown fusion mode '{value}'. Use one of: {valid}")


@dataclass(frozen=True)
class ModeCapabilities:
    """Factor families and variable groups enabled by a fusion mode.

    Attributes:
        wheel_speed: Wheel-speed (nonholonomic) factor is active.
        wheel_scale: One wheel-scale-factor variable per state is estimated.
        lane: Arc-spline lane measurement and anchor factors are available.
        staged: Lane factors are only added after a lane-free first phase.
    """

    wheel_speed: bool = False
    wheel_scale: bool = False
    lane: bool = False
    staged: bool = False

    def __post_init__(self) -> None:
        if self.wheel_speed and not self.wheel_scale:
            raise ValueError("wheel_speed factors require wheel_scale variables")
        if self.lane and not self.wheel_speed:
            raise ValueError("lane factors are only defined on top of wheel-speed fusion")
        if self.staged and not self.lane:
            raise ValueError("staged optimization only applies when lane factors exist")

    def factor_names(self, lane_phase: bool = True) -> Tuple[str, ...]:
        """Names of the factor builders active for this capability set."""
        names = ["prior", "inertial", "gnss"]
        if self.wheel_speed:
            names.append("wheel_speed")
        if self.lane and lane_phase:
            names.extend(["lane_measurement", "lane_anchor"])
        return tuple(names)


MODE_CAPABILITIES: Dict[FusionMode, ModeCapabilities] = {
    FusionMode.BASIC: ModeCapabilities(),
    FusionMode.PARTIAL: ModeCapabilities(wheel_speed=True, wheel_scale=True),
    FusionMode.FULL: ModeCapabilities(wheel_speed=True, wheel_scale=True, lane=True),
    FusionMode.TWO_PHASE: ModeCapabilities(
        wheel_speed=True, wheel_scale=True, lane=True, staged=True
    ),
}


def capabilities_for(mode) -> ModeCapabilities:
    """Capability set of a mode given as FusionMode or its string value."""
    return MODE_CAPABILITIES[FusionMode.parse(mode)]


def _as_cov(value, dim: int, name: str) -> np.ndarray:
    cov = np.atleast_2d(np.asarray(value, dtype=float))
    if cov.shape != (dim, dim):
        raise ValueError(f"{name} must be {dim}x{dim}, got shape {cov.shape}")
    if np.any(np.linalg.eigvalsh(0.5 * (cov + cov.T)) <= 0):
        raise ValueError(f"{name} must be positive definite")
    return cov


@dataclass(frozen=True)
class ImuNoise:
    """Continuous-time IMU noise densities and random walks.

    Attributes:
        gyro: Gyroscope white noise covariance (3x3).
        accel: Accelerometer white noise covariance (3x3).
        gyro_bias: Gyroscope bias random walk covariance per second (3x3).
        accel_bias: Accelerometer bias random walk covariance per second (3x3).
        scale_factor: Wheel scale factor random walk variance per second.
        integration: Position integration noise added per step (3x3).
    """

    gyro: np.ndarray = field(default_factory=lambda: 1e-5 * np.eye(3))
    accel: np.ndarray = field(default_factory=lambda: 1e-3 * np.eye(3))
    gyro_bias: np.ndarray = field(default_factory=lambda: 1e-8 * np.eye(3))
    accel_bias: np.ndarray = field(default_factory=lambda: 1e-6 * np.eye(3))
    scale_factor: float = 1e-4
    integration: np.ndarray = field(default_factory=lambda: 1e-8 * np.eye(3))

    def __post_init__(self) -> None:
        for name in ("gyro", "accel", "gyro_bias", "accel_bias", "integration"):
            object.__setattr__(self, name, _as_cov(getattr(self, name), 3, name))
        if self.scale_factor <= 0:
            raise ValueError("scale_factor must be positive")

    @property
    def white(self) -> np.ndarray:
        """Block-diagonal 6x6 [gyro, accel] white noise covariance."""
        n_cov = np.zeros((6, 6))
        n_cov[:3, :3] = self.gyro
        n_cov[3:, 3:] = self.accel
        return n_cov


@dataclass(frozen=True)
class PriorNoise:
    """Covariances anchoring the first state, its bias and the scale factors."""

    R: np.ndarray = field(default_factory=lambda: 1e-4 * np.eye(3))
    V: np.ndarray = field(default_factory=lambda: 1e-2 * np.eye(3))
    P: np.ndarray = field(default_factory=lambda: 1e-2 * np.eye(3))
    bg: np.ndarray = field(default_factory=lambda: 1e-6 * np.eye(3))
    ba: np.ndarray = field(default_factory=lambda: 1e-4 * np.eye(3))
    wsf: float = 1e-4

    def __post_init__(self) -> None:
        for name in ("R", "V", "P", "bg", "ba"):
            object.__setattr__(self, name, _as_cov(getattr(self, name), 3, name))
        if self.wsf <= 0:
            raise ValueError("wsf prior variance must be positive")


@dataclass(frozen=True)
class NoiseCovariances:
    """All sensor noise models consumed by the factor builders."""

    imu: ImuNoise = field(default_factory=ImuNoise)
    prior: PriorNoise = field(default_factory=PriorNoise)
    wss: np.ndarray = field(default_factory=lambda: 1e-2 * np.eye(3))

    def __post_init__(self) -> None:
        object.__setattr__(self, "wss", _as_cov(self.wss, 3, "wss"))


@dataclass(frozen=True)
class BiasThresholds:
    """Norm thresholds on accumulated bias deltas that trigger re-integration."""

    bgd: float = 1e-2
    bad: float = 1e-1


@dataclass(frozen=True)
class VehicleParams:
    """Vehicle geometry.

    Attributes:
        lever_arm: Vector from the rear axle to the IMU in the body frame
            (x forward, y left, z up), meters.
    """

    lever_arm: Tuple[float, float, float] = (1.5, 0.0, 1.0)

    @property
    def lever_arm_vec(self) -> np.ndarray:
        return np.asarray(self.lever_arm, dtype=float)


@dataclass(frozen=True)
class LMOptions:
    """Levenberg-Marquardt gain threshold and damping schedule."""

    eta: float = 0.1
    Lu: float = 11.0
    Ld: float = 9.0
    lambda0: float = 10.0
    lambda_min: float = 1e-7
    lambda_max: float = 1e7

    def __post_init__(self) -> None:
        if self.Lu <= 1.0 or self.Ld <= 1.0:
            raise ValueError("Lu and Ld must be greater than 1")


@dataclass(frozen=True)
class TROptions:
    """Trust-region (dogleg) gain thresholds and radius schedule."""

    eta1: float = 0.5
    eta2: float = 0.9
    gamma1: float = 0.1
    gamma2: float = 2.0
    thres: float = 1e-6
    radius0: float = 10.0

    def __post_init__(self) -> None:
        if not 0.0 <= self.eta1 <= self.eta2:
            raise ValueError("Require 0 <= eta1 <= eta2")
        if not (0.0 < self.gamma1 < 1.0 < self.gamma2):
            raise ValueError("Require 0 < gamma1 < 1 < gamma2")


@dataclass(frozen=True)
class SolverOptions:
    """Batch solver selection and stopping thresholds.

    Attributes:
        algorithm: 'GN', 'LM' or 'TR'.
        cost_thres: Stop when |Δcost| falls to or below this value.
        step_thres: Stop when the step norm falls to or below this value.
        iter_thres: Stop when the iteration count reaches this value.
        oscillation_window: Number of recent GN costs inspected.
        oscillation_rel_tol: Oscillation band relative to the mean cost.
    """

    algorithm: str = "TR"
    cost_thres: float = 1e-6
    step_thres: float = 1e-6
    iter_thres: int = 50
    lm: LMOptions = field(default_factory=LMOptions)
    tr: TROptions = field(default_factory=TROptions)
    oscillation_window: int = 5
    oscillation_rel_tol: float = 1e-3

    def __post_init__(self) -> None:
        if self.algorithm not in ("GN", "LM", "TR"):
            raise ValueError(f"Unknown algorithm '{self.algorithm}'. Use 'GN', 'LM' or 'TR'.")
        if self.iter_thres < 1:
            raise ValueError("iter_thres must be at least 1")
        if self.oscillation_window < 2:
            raise ValueError("oscillation_window must be at least 2")
