"""Sensor inputs, navigation state values and IMU pre-integration.

- Frozen containers for IMU, GNSS, wheel-speed and lane measurements
- NavState / Bias value types
- Forster-style IMU pre-integration and INS chaining
"""

from lanefusion.sensors.ins import (
    initial_state_from_gnss,
    ned_to_enu_velocity,
    propagate_states,
)
from lanefusion.sensors.preintegration import (
    PreintegratedImu,
    preintegrate,
    preintegrate_all,
)
from lanefusion.sensors.types import (
    Bias,
    GnssFixes,
    ImuCluster,
    LaneMeasurements,
    LaneSide,
    NavState,
    WheelSpeed,
)

__all__ = [
    # Inputs
    "ImuCluster",
    "GnssFixes",
    "WheelSpeed",
    "LaneMeasurements",
    "LaneSide",
    # State values
    "NavState",
    "Bias",
    # Pre-integration
    "PreintegratedImu",
    "preintegrate",
    "preintegrate_all",
    # INS
    "initial_state_from_gnss",
    "ned_to_enu_velocity",
    "propagate_states",
]
