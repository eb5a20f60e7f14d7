"""Input containers for the sensors consumed by the batch optimizer.

All containers are frozen dataclasses holding NumPy arrays; they are produced
by external log parsers and never mutated here.

Frame Conventions:
    - Body frame: x forward, y left, z up (vehicle/IMU frame).
    - World frame: local ENU anchored at the GNSS reference origin.

Indexing:
    State k lies between IMU clusters k-1 and k; cluster k spans the interval
    from state k to state k+1. Sensors that are not sampled at every state
    carry a ``state_idxs`` array that maps their rows to state indices.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

import numpy as np

from lanefusion.coords.transforms import lla_to_enu


class LaneSide(IntEnum):
    """Lane boundary side relative to the vehicle."""

    LEFT = 0
    RIGHT = 1


@dataclass(frozen=True)
class ImuCluster:
    """IMU samples between two consecutive states.

    Attributes:
        t: Sample timestamps in seconds, shape (K+1,). Sample k is applied over
            [t[k], t[k+1]].
        accel: Specific force samples (K, 3) in m/s².
        gyro: Angular rate samples (K, 3) in rad/s.
    """

    t: np.ndarray
    accel: np.ndarray
    gyro: np.ndarray

    def __post_init__(self) -> None:
        t = np.asarray(self.t, dtype=float).reshape(-1)
        accel = np.atleast_2d(np.asarray(self.accel, dtype=float))
        gyro = np.atleast_2d(np.asarray(self.gyro, dtype=float))
        if accel.shape[1] != 3 or gyro.shape != accel.shape:
            raise ValueError(
                f"accel and gyro must both be (K, 3), got {accel.shape} and {gyro.shape}"
            )
        if len(t) != accel.shape[0] + 1:
            raise ValueError(
                f"t must have {accel.shape[0] + 1} entries for {accel.shape[0]} samples, "
                f"got {len(t)}"
            )
        if np.any(np.diff(t) <= 0):
            raise ValueError("IMU timestamps must be strictly increasing")
        object.__setattr__(self, "t", t)
        object.__setattr__(self, "accel", accel)
        object.__setattr__(self, "gyro", gyro)

    @property
    def n_samples(self) -> int:
        return self.accel.shape[0]

    @property
    def duration(self) -> float:
        return float(self.t[-1] - self.t[0])


@dataclass(frozen=True)
class GnssFixes:
    """GNSS position fixes.

    Attributes:
        pos_lla: Geodetic positions [lat(deg), lon(deg), alt(m)], shape (M, 3).
        vel_ned: NED velocities (M, 3) in m/s.
        bearing: Course over ground in degrees clockwise from north, shape (M,).
        h_acc: Horizontal accuracy (1σ, m), shape (M,).
        v_acc: Vertical accuracy (1σ, m), shape (M,).
        state_idxs: State index of each fix, shape (M,).
        origin_lla: ENU origin [lat(deg), lon(deg), alt(m)].
    """

    pos_lla: np.ndarray
    vel_ned: np.ndarray
    bearing: np.ndarray
    h_acc: np.ndarray
    v_acc: np.ndarray
    state_idxs: np.ndarray
    origin_lla: np.ndarray

    def __post_init__(self) -> None:
        pos = np.atleast_2d(np.asarray(self.pos_lla, dtype=float))
        m = pos.shape[0]
        object.__setattr__(self, "pos_lla", pos)
        object.__setattr__(self, "vel_ned", np.atleast_2d(np.asarray(self.vel_ned, dtype=float)))
        for name in ("bearing", "h_acc", "v_acc"):
            arr = np.asarray(getattr(self, name), dtype=float).reshape(-1)
            if len(arr) != m:
                raise ValueError(f"{name} must have {m} entries, got {len(arr)}")
            object.__setattr__(self, name, arr)
        idxs = np.asarray(self.state_idxs, dtype=int).reshape(-1)
        if len(idxs) != m:
            raise ValueError(f"state_idxs must have {m} entries, got {len(idxs)}")
        object.__setattr__(self, "state_idxs", idxs)
        object.__setattr__(self, "origin_lla", np.asarray(self.origin_lla, dtype=float))
        if np.any(self.h_acc <= 0) or np.any(self.v_acc <= 0):
            raise ValueError("GNSS accuracies must be positive")

    def __len__(self) -> int:
        return self.pos_lla.shape[0]

    def enu(self) -> np.ndarray:
        """Fix positions in the local ENU frame, shape (M, 3)."""
        return lla_to_enu(self.pos_lla, self.origin_lla)

    def covariance(self, i: int) -> np.ndarray:
        """Position covariance diag(hAcc², hAcc², vAcc²) of fix i."""
        return np.diag([self.h_acc[i] ** 2, self.h_acc[i] ** 2, self.v_acc[i] ** 2])


@dataclass(frozen=True)
class WheelSpeed:
    """Vehicle forward speed from wheel-speed sensors.

    Attributes:
        speed: Forward speed samples in m/s.
        state_idxs: Row of ``speed`` to use for each state, shape (N,).
    """

    speed: np.ndarray
    state_idxs: np.ndarray

    def __post_init__(self) -> None:
        object.__setattr__(self, "speed", np.asarray(self.speed, dtype=float).reshape(-1))
        idxs = np.asarray(self.state_idxs, dtype=int).reshape(-1)
        if idxs.size and (idxs.min() < 0 or idxs.max() >= len(self.speed)):
            raise ValueError("state_idxs refer to missing wheel-speed samples")
        object.__setattr__(self, "state_idxs", idxs)

    def at_state(self, k: int) -> float:
        return float(self.speed[self.state_idxs[k]])


@dataclass(frozen=True)
class LaneMeasurements:
    """Lane boundary preview measurements from a lane-detection camera.

    Each row holds the lateral (y) and vertical (z) offsets of the left and
    right lane boundary at fixed longitudinal previews 0, step, 2·step, ...
    in the vehicle body frame, together with per-point standard deviations
    and detection probabilities.

    Attributes:
        state_idxs: Measurement row used for each state, shape (N,).
        ly, ry: Lateral offsets (rows, previews) in meters.
        lz, rz: Vertical offsets (rows, previews) in meters.
        lystd, rystd: Lateral standard deviations (rows, previews).
        lprob, rprob: Detection probabilities (rows,).
        prob_thres: Minimum detection probability for a usable row.
        preview_step: Longitudinal spacing of preview points in meters.
    """

    state_idxs: np.ndarray
    ly: np.ndarray
    ry: np.ndarray
    lz: np.ndarray
    rz: np.ndarray
    lystd: np.ndarray
    rystd: np.ndarray
    lprob: np.ndarray
    rprob: np.ndarray
    prob_thres: float = 0.5
    preview_step: float = 10.0

    def __post_init__(self) -> None:
        ly = np.atleast_2d(np.asarray(self.ly, dtype=float))
        shape = ly.shape
        object.__setattr__(self, "ly", ly)
        for name in ("ry", "lz", "rz", "lystd", "rystd"):
            arr = np.atleast_2d(np.asarray(getattr(self, name), dtype=float))
            if arr.shape != shape:
                raise ValueError(f"{name} must have shape {shape}, got {arr.shape}")
            object.__setattr__(self, name, arr)
        if np.any(self.lystd <= 0) or np.any(self.rystd <= 0):
            raise ValueError("Lane standard deviations must be positive")
        for name in ("lprob", "rprob"):
            arr = np.asarray(getattr(self, name), dtype=float).reshape(-1)
            if len(arr) != shape[0]:
                raise ValueError(f"{name} must have {shape[0]} entries, got {len(arr)}")
            object.__setattr__(self, name, arr)
        object.__setattr__(self, "state_idxs", np.asarray(self.state_idxs, dtype=int).reshape(-1))

    @property
    def preview_count(self) -> int:
        return self.ly.shape[1]

    def _row(self, state: int) -> int:
        return int(self.state_idxs[state])

    def offset(self, state: int, side: LaneSide, preview: int = 0) -> float:
        """Measured lateral offset of a lane boundary at a state."""
        arr = self.ly if side == LaneSide.LEFT else self.ry
        return float(arr[self._row(state), preview])

    def lateral_std(self, state: int, side: LaneSide, preview: int = 0) -> float:
        arr = self.lystd if side == LaneSide.LEFT else self.rystd
        return float(arr[self._row(state), preview])

    def probability(self, state: int, side: LaneSide) -> float:
        arr = self.lprob if side == LaneSide.LEFT else self.rprob
        return float(arr[self._row(state)])

    def is_reliable(self, state: int, side: LaneSide) -> bool:
        return self.probability(state, side) >= self.prob_thres

    def preview_points(self, state: int, side: LaneSide) -> np.ndarray:
        """Body-frame preview points (3, previews): [longitudinal; lateral; vertical]."""
        row = self._row(state)
        y = self.ly[row] if side == LaneSide.LEFT else self.ry[row]
        z = self.lz[row] if side == LaneSide.LEFT else self.rz[row]
        x = self.preview_step * np.arange(self.preview_count)
        return np.vstack([x, y, z])


@dataclass(frozen=True)
class NavState:
    """Vehicle navigation state at one time index.

    Attributes:
        R: Body-to-world rotation matrix (3x3).
        V: World-frame velocity (3,) in m/s.
        P: World-frame position (3,) in m.
        wsf: Wheel scale factor (effective wheel radius ratio); None when the
            fusion mode does not estimate it.
    """

    R: np.ndarray
    V: np.ndarray
    P: np.ndarray
    wsf: Optional[float] = None

    def __post_init__(self) -> None:
        R = np.asarray(self.R, dtype=float)
        if R.shape != (3, 3):
            raise ValueError(f"R must be 3x3, got shape {R.shape}")
        object.__setattr__(self, "R", R)
        for name in ("V", "P"):
            vec = np.asarray(getattr(self, name), dtype=float).reshape(-1)
            if vec.shape != (3,):
                raise ValueError(f"{name} must have shape (3,), got {vec.shape}")
            object.__setattr__(self, name, vec)

    def lane_point(self, offset_body: np.ndarray) -> np.ndarray:
        """World-frame position of a body-frame offset, P + R @ offset."""
        return self.P + self.R @ np.asarray(offset_body, dtype=float)


@dataclass(frozen=True)
class Bias:
    """IMU bias estimate with not-yet-absorbed deltas.

    The effective bias is ``bg + bgd`` / ``ba + bad``. The nominal part (bg,
    ba) is what the pre-integration of the interval starting at this index
    was computed with; the deltas are corrected to first order through the
    pre-integration bias Jacobians until they grow past a threshold.
    """

    bg: np.ndarray
    ba: np.ndarray
    bgd: np.ndarray = field(default_factory=lambda: np.zeros(3))
    bad: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        for name in ("bg", "ba", "bgd", "bad"):
            vec = np.asarray(getattr(self, name), dtype=float).reshape(-1)
            if vec.shape != (3,):
                raise ValueError(f"{name} must have shape (3,), got {vec.shape}")
            object.__setattr__(self, name, vec)

    @property
    def gyro(self) -> np.ndarray:
        return self.bg + self.bgd

    @property
    def accel(self) -> np.ndarray:
        return self.ba + self.bad
