"""Arc-spline lane segment model.

A segment is a chain of circular sub-segments sharing one anchor pose
(x0, y0, tau0). Sub-segment i has curvature kappa[i] and arc length L[i];
the heading at the start of sub-segment i is

    h_i = tau0 + Σ_{j<i} kappa[j] L[j]

Node points (sub-segment boundaries) and arc centers follow in closed form:

    node_{i+1} = node_i + (1/κ_i) [sin(h_i + κ_i L_i) - sin h_i,
                                   -cos(h_i + κ_i L_i) + cos h_i]
    c_0        = [x0 - sin(tau0)/κ_0, y0 + cos(tau0)/κ_0]
    c_i        = c_{i-1} + (1/κ_{i-1} - 1/κ_i) [sin h_i, -cos h_i]

Every segment carries the data points it was fitted to and the index bounds
that assign them to sub-segments. Bounds are inclusive and consecutive
sub-segments share their boundary index: sub-segment 0 owns points
bnds[0,0]..bnds[0,1], sub-segment i > 0 owns bnds[i,0]+1..bnds[i,1].
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import numpy as np

from lanefusion.errors import DataError


def propagate_nodes(
    x0: float,
    y0: float,
    tau0: float,
    kappa: np.ndarray,
    L: np.ndarray,
    upto: Optional[int] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Node points and headings of an arc chain.

    Args:
        x0, y0, tau0: Anchor position and heading.
        kappa: Curvatures (n,).
        L: Arc lengths (n,).
        upto: Propagate only the first ``upto`` sub-segments.

    Returns:
        (nodes, headings) with shapes (k+1, 2) and (k+1,), k = upto or n.
    """
    kappa = np.asarray(kappa, dtype=float)
    L = np.asarray(L, dtype=float)
    n = len(kappa) if upto is None else upto
    nodes = np.empty((n + 1, 2))
    headings = np.empty(n + 1)
    nodes[0] = (x0, y0)
    headings[0] = tau0
    h = tau0
    for i in range(n):
        h_next = h + kappa[i] * L[i]
        nodes[i + 1, 0] = nodes[i, 0] + (np.sin(h_next) - np.sin(h)) / kappa[i]
        nodes[i + 1, 1] = nodes[i, 1] - (np.cos(h_next) - np.cos(h)) / kappa[i]
        headings[i + 1] = h_next
        h = h_next
    return nodes, headings


def propagate_centers(
    x0: float,
    y0: float,
    tau0: float,
    kappa: np.ndarray,
    L: np.ndarray,
    upto: Optional[int] = None,
) -> np.ndarray:
    """Arc centers of the first ``upto`` (default all) sub-segments, shape (k, 2)."""
    kappa = np.asarray(kappa, dtype=float)
    L = np.asarray(L, dtype=float)
    n = len(kappa) if upto is None else upto
    centers = np.empty((n, 2))
    h = tau0
    for i in range(n):
        if i == 0:
            centers[0] = (x0 - np.sin(h) / kappa[0], y0 + np.cos(h) / kappa[0])
        else:
            h += kappa[i - 1] * L[i - 1]
            centers[i] = centers[i - 1] + (1.0 / kappa[i - 1] - 1.0 / kappa[i]) * np.array(
                [np.sin(h), -np.cos(h)]
            )
    return centers


def match_point(center: np.ndarray, kappa: float, point: np.ndarray) -> np.ndarray:
    """Closest point to ``point`` on the circle of radius 1/|kappa| around ``center``."""
    d = np.asarray(point, dtype=float) - center
    ang = np.arctan2(d[1], d[0])
    return center + np.array([np.cos(ang), np.sin(ang)]) / abs(kappa)


def arc_lengths(points: np.ndarray, bnds: np.ndarray) -> np.ndarray:
    """Initial arc lengths from cumulative point-to-point distances per bound."""
    points = np.asarray(points, dtype=float)
    steps = np.linalg.norm(np.diff(points, axis=0), axis=1)
    return np.array([steps[lb:ub].sum() for lb, ub in np.asarray(bnds, dtype=int)])


def bounds_partition_ok(bnds: np.ndarray, n_points: int) -> bool:
    """True if ``bnds`` partitions points 0..n_points-1 without gaps or overlap."""
    bnds = np.asarray(bnds, dtype=int)
    if bnds.ndim != 2 or bnds.shape[1] != 2 or len(bnds) == 0:
        return False
    if bnds[0, 0] != 0 or bnds[-1, 1] != n_points - 1:
        return False
    if np.any(bnds[:, 1] <= bnds[:, 0]):
        return False
    return bool(np.all(bnds[1:, 0] == bnds[:-1, 1]))


def associate(bnds: np.ndarray, n_points: int) -> np.ndarray:
    """Sub-segment index owning each point."""
    assoc = np.full(n_points, -1, dtype=int)
    for i, (lb, ub) in enumerate(np.asarray(bnds, dtype=int)):
        start = lb if i == 0 else lb + 1
        assoc[start : ub + 1] = i
    return assoc


@dataclass(frozen=True)
class ArcSegment:
    """One lane boundary modelled as a chain of circular sub-segments.

    Attributes:
        x0, y0, tau0: Anchor position (m) and heading (rad).
        kappa: Sub-segment curvatures (n,), never zero.
        L: Sub-segment arc lengths (n,), strictly positive.
        bnds: Inclusive point index bounds per sub-segment (n, 2).
        state_idxs: State index that produced each data point (m,).
        sides: LaneSide of each data point (m,).
        points: World-frame 2D data points (m, 2).
        covs: Per-point 2x2 covariances (m, 2, 2).
    """

    x0: float
    y0: float
    tau0: float
    kappa: np.ndarray
    L: np.ndarray
    bnds: np.ndarray
    state_idxs: np.ndarray
    sides: np.ndarray
    points: np.ndarray = field(default_factory=lambda: np.zeros((0, 2)))
    covs: np.ndarray = field(default_factory=lambda: np.zeros((0, 2, 2)))

    def __post_init__(self) -> None:
        kappa = np.asarray(self.kappa, dtype=float).reshape(-1)
        L = np.asarray(self.L, dtype=float).reshape(-1)
        bnds = np.atleast_2d(np.asarray(self.bnds, dtype=int))
        state_idxs = np.asarray(self.state_idxs, dtype=int).reshape(-1)
        sides = np.asarray(self.sides, dtype=int).reshape(-1)
        if len(L) != len(kappa) or len(bnds) != len(kappa):
            raise DataError(
                f"Segment size mismatch: {len(kappa)} curvatures, {len(L)} lengths, "
                f"{len(bnds)} bounds"
            )
        if np.any(kappa == 0):
            raise ValueError("Arc curvature must be non-zero")
        if np.any(L <= 0):
            raise ValueError("Arc lengths must be positive")
        if len(sides) != len(state_idxs):
            raise DataError("sides and state_idxs must have the same length")
        if not bounds_partition_ok(bnds, len(state_idxs)):
            raise DataError(f"Bounds {bnds.tolist()} do not partition {len(state_idxs)} points")
        object.__setattr__(self, "x0", float(self.x0))
        object.__setattr__(self, "y0", float(self.y0))
        object.__setattr__(self, "tau0", float(self.tau0))
        object.__setattr__(self, "kappa", kappa)
        object.__setattr__(self, "L", L)
        object.__setattr__(self, "bnds", bnds)
        object.__setattr__(self, "state_idxs", state_idxs)
        object.__setattr__(self, "sides", sides)
        object.__setattr__(self, "points", np.asarray(self.points, dtype=float).reshape(-1, 2))
        object.__setattr__(self, "covs", np.asarray(self.covs, dtype=float).reshape(-1, 2, 2))

    @property
    def subseg_cnt(self) -> int:
        return len(self.kappa)

    @property
    def param_count(self) -> int:
        """Width of this segment's block in the optimization vector."""
        return 3 + 2 * self.subseg_cnt

    @property
    def n_points(self) -> int:
        return len(self.state_idxs)

    def association(self) -> np.ndarray:
        return associate(self.bnds, self.n_points)

    def nodes(self, upto: Optional[int] = None) -> Tuple[np.ndarray, np.ndarray]:
        return propagate_nodes(self.x0, self.y0, self.tau0, self.kappa, self.L, upto)

    def centers(self, upto: Optional[int] = None) -> np.ndarray:
        return propagate_centers(self.x0, self.y0, self.tau0, self.kappa, self.L, upto)

    def anchor_points(self, include_internal: bool = True) -> Tuple[Tuple[int, int], ...]:
        """(node index, point index) pairs pinned by anchor factors."""
        n = self.subseg_cnt
        pairs = [(0, 0)]
        if include_internal:
            pairs.extend((i, int(self.bnds[i - 1, 1])) for i in range(1, n))
        pairs.append((n, self.n_points - 1))
        return tuple(pairs)

    def with_params(
        self,
        x0: Optional[float] = None,
        y0: Optional[float] = None,
        tau0: Optional[float] = None,
        kappa: Optional[np.ndarray] = None,
        L: Optional[np.ndarray] = None,
    ) -> "ArcSegment":
        """Copy with replaced arc parameters; association data is shared."""
        return replace(
            self,
            x0=self.x0 if x0 is None else x0,
            y0=self.y0 if y0 is None else y0,
            tau0=self.tau0 if tau0 is None else tau0,
            kappa=self.kappa if kappa is None else kappa,
            L=self.L if L is None else L,
        )
