"""Estimation values shared by the factor builders, retraction and solvers.

Optimization vector layout (n states, s arc segments):

    [ δR δV δP ]_0 ... [ δR δV δP ]_{n-1}        9 per state
    [ δbg δba ]_0 ... [ δbg δba ]_{n-1}          6 per state
    [ δwsf ]_0 ... [ δwsf ]_{n-1}                1 per state (wheel-scale modes)
    [ δx0 δy0 δtau0 δκ_1..δκ_m δ√L_1..δ√L_m ]_s  3 + 2m per segment (lane modes)

The solvers never mutate estimates in place. A Trial bundles everything a
step can change; accepting a step replaces the Trial and rejecting it keeps
the previous one.
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence, Tuple

import numpy as np

from lanefusion.config import (
    GRAVITY,
    BiasThresholds,
    ModeCapabilities,
    NoiseCovariances,
    VehicleParams,
)
from lanefusion.mapping.arc_spline import ArcSegment
from lanefusion.sensors.preintegration import PreintegratedImu
from lanefusion.sensors.types import (
    Bias,
    GnssFixes,
    ImuCluster,
    LaneMeasurements,
    NavState,
    WheelSpeed,
)

STATE_DIM = 9
BIAS_DIM = 6


class VariableLayout:
    """Offsets of every variable group inside the optimization vector.

    Computed once per solve from the capability set and the segment
    sub-segment counts; a structural map change requires a new layout.
    """

    def __init__(
        self,
        n_states: int,
        capabilities: ModeCapabilities,
        subseg_cnt: Sequence[int] = (),
        lane_active: bool = True,
    ):
        self.n_states = n_states
        self.capabilities = capabilities
        self.wsf_active = capabilities.wheel_scale
        self.lane_active = capabilities.lane and lane_active
        self.subseg_cnt = tuple(int(c) for c in subseg_cnt) if self.lane_active else ()

        self.bias_base = STATE_DIM * n_states
        self.wsf_base = self.bias_base + BIAS_DIM * n_states
        self.lane_base = self.wsf_base + (n_states if self.wsf_active else 0)
        widths = [3 + 2 * c for c in self.subseg_cnt]
        self.seg_tracker = np.concatenate([[0], np.cumsum(widths)]).astype(int)
        self.size = self.lane_base + int(self.seg_tracker[-1])

    @classmethod
    def for_trial(
        cls, trial: "Trial", capabilities: ModeCapabilities, lane_active: bool = True
    ) -> "VariableLayout":
        return cls(
            len(trial.states),
            capabilities,
            [seg.subseg_cnt for seg in trial.segments],
            lane_active,
        )

    def state(self, k: int) -> int:
        """Offset of [δR, δV, δP] of state k."""
        return STATE_DIM * k

    def bias(self, k: int) -> int:
        """Offset of [δbg, δba] of state k."""
        return self.bias_base + BIAS_DIM * k

    def wsf(self, k: int) -> int:
        if not self.wsf_active:
            raise ValueError("Wheel scale factors are not part of this layout")
        return self.wsf_base + k

    def segment(self, s: int) -> int:
        """Offset of the parameter block of arc segment s."""
        if not self.lane_active:
            raise ValueError("Lane parameters are not part of this layout")
        return self.lane_base + int(self.seg_tracker[s])

    def __repr__(self) -> str:
        return (
            f"VariableLayout(n_states={self.n_states}, wsf={self.wsf_active}, "
            f"subseg_cnt={self.subseg_cnt}, size={self.size})"
        )


@dataclass(frozen=True)
class Trial:
    """Immutable bundle of every quantity an optimization step updates.

    Attributes:
        states: Navigation state per time index.
        biases: IMU bias per time index.
        preintegrated: Pre-integrated cluster per interval (len(states) - 1).
        segments: Arc segments of the lane model (empty without lanes).
        reintegrated: Interval indices re-integrated by the retraction that
            produced this trial.
    """

    states: Tuple[NavState, ...]
    biases: Tuple[Bias, ...]
    preintegrated: Tuple[PreintegratedImu, ...]
    segments: Tuple[ArcSegment, ...] = ()
    reintegrated: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "states", tuple(self.states))
        object.__setattr__(self, "biases", tuple(self.biases))
        object.__setattr__(self, "preintegrated", tuple(self.preintegrated))
        object.__setattr__(self, "segments", tuple(self.segments))
        object.__setattr__(self, "reintegrated", tuple(self.reintegrated))
        if len(self.biases) != len(self.states):
            raise ValueError(
                f"Need one bias per state, got {len(self.biases)} for {len(self.states)}"
            )
        if len(self.preintegrated) != len(self.states) - 1:
            raise ValueError("Need one pre-integrated cluster per state interval")


@dataclass(frozen=True)
class FusionProblem:
    """Fixed inputs of one batch run.

    Attributes:
        imu: IMU clusters, cluster k spans state k to state k+1.
        gnss: GNSS fixes.
        covs: Noise covariances.
        capabilities: Active factor families and variables.
        prior_state: Initial-estimate snapshot of state 0.
        prior_bias: Initial-estimate snapshot of the bias of state 0.
        wheel: Wheel-speed measurements, required with wheel-speed fusion.
        lane: Lane measurements, required with lane fusion.
        thresholds: Bias delta norms that trigger re-integration.
        params: Vehicle geometry.
        gravity: World-frame gravity vector.
    """

    imu: Tuple[ImuCluster, ...]
    gnss: GnssFixes
    covs: NoiseCovariances
    capabilities: ModeCapabilities
    prior_state: NavState
    prior_bias: Bias
    wheel: Optional[WheelSpeed] = None
    lane: Optional[LaneMeasurements] = None
    thresholds: BiasThresholds = field(default_factory=BiasThresholds)
    params: VehicleParams = field(default_factory=VehicleParams)
    gravity: np.ndarray = field(default_factory=lambda: GRAVITY.copy())

    def __post_init__(self) -> None:
        object.__setattr__(self, "imu", tuple(self.imu))
        if self.capabilities.wheel_speed and self.wheel is None:
            raise ValueError("Wheel-speed measurements are required for this mode")
        if self.capabilities.lane and self.lane is None:
            raise ValueError("Lane measurements are required for this mode")
