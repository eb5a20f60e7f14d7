"""Arc-spline lane map built from vehicle states and lane measurements.

The initial left/right classification of lane points into segments is done
upstream and arrives as a list of SegmentSeed. ArcMap turns every seed into
world-frame lane points using the current vehicle poses and the 0 m preview
offsets, fits an ArcSegment to them, and later re-validates the segments
against re-optimized poses.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from lanefusion.coords.so3 import rotation_yaw
from lanefusion.errors import DataError
from lanefusion.mapping.arc_fit import ArcFit
from lanefusion.mapping.arc_spline import ArcSegment, arc_lengths
from lanefusion.sensors.types import LaneMeasurements, LaneSide, NavState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SegmentSeed:
    """Initial partition of one lane boundary.

    Attributes:
        state_idxs: State index of each lane point, in travel order (m,).
        sides: LaneSide of each lane point (m,).
        bnds: Inclusive sub-segment point bounds (n, 2).
        kappa: Seed curvature per sub-segment (n,).
    """

    state_idxs: np.ndarray
    sides: np.ndarray
    bnds: np.ndarray
    kappa: np.ndarray


def lane_points(
    states: Sequence[NavState],
    lane: LaneMeasurements,
    state_idxs: np.ndarray,
    sides: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """World-frame 0 m preview lane points and their 2x2 covariances.

    Returns:
        (points, covs) with shapes (m, 2) and (m, 2, 2).

    Raises:
        DataError: If a point refers to an unknown state or to a detection
            below the lane probability threshold.
    """
    m = len(state_idxs)
    points = np.empty((m, 2))
    covs = np.empty((m, 2, 2))
    for j, (k, side) in enumerate(zip(state_idxs, sides)):
        if not 0 <= k < len(states):
            raise DataError(f"Lane point {j} refers to unknown state {k}")
        side = LaneSide(int(side))
        if not lane.is_reliable(k, side):
            raise DataError(
                f"Lane point {j} uses a {side.name.lower()} detection of state {k} with "
                f"probability {lane.probability(k, side):.2f} < {lane.prob_thres}"
            )
        offset = lane.preview_points(k, side)[:, 0]
        points[j] = states[k].lane_point(offset)[:2]
        covs[j] = lane.lateral_std(k, side) ** 2 * np.eye(2)
    return points, covs


class ArcMap:
    """Collection of fitted arc-spline lane segments.

    Attributes:
        segments: Current ArcSegment per lane boundary.
        fitters: ArcFit of each segment from the last fit or validation.
        valid: Result of the last validation.
    """

    def __init__(
        self,
        states: Sequence[NavState],
        lane: LaneMeasurements,
        seeds: Sequence[SegmentSeed],
        max_rounds: int = 20,
    ):
        if not seeds:
            raise ValueError("At least one segment seed is required")
        self.lane = lane
        self.max_rounds = max_rounds
        self.valid = False
        self.fitters: List[ArcFit] = []

        segments = []
        for seg_id, seed in enumerate(seeds):
            segment = self._initial_segment(states, seed)
            fitter = ArcFit(segment, seg_id=seg_id)
            segments.append(fitter.optimize(max_rounds))
            self.fitters.append(fitter)
        self.segments: Tuple[ArcSegment, ...] = tuple(segments)
        self.valid = all(f.valid for f in self.fitters)

    @property
    def subseg_cnt(self) -> Tuple[int, ...]:
        return tuple(seg.subseg_cnt for seg in self.segments)

    def _initial_segment(self, states: Sequence[NavState], seed: SegmentSeed) -> ArcSegment:
        state_idxs = np.asarray(seed.state_idxs, dtype=int)
        sides = np.asarray(seed.sides, dtype=int)
        bnds = np.atleast_2d(np.asarray(seed.bnds, dtype=int))
        points, covs = lane_points(states, self.lane, state_idxs, sides)
        return ArcSegment(
            x0=points[0, 0],
            y0=points[0, 1],
            tau0=rotation_yaw(states[state_idxs[0]].R),
            kappa=seed.kappa,
            L=arc_lengths(points, bnds),
            bnds=bnds,
            state_idxs=state_idxs,
            sides=sides,
            points=points,
            covs=covs,
        )

    def refresh_points(
        self,
        states: Sequence[NavState],
        segments: Optional[Sequence[ArcSegment]] = None,
    ) -> Tuple[ArcSegment, ...]:
        """Recompute segment data points from (re-optimized) vehicle states."""
        out = []
        for seg in self.segments if segments is None else segments:
            points, covs = lane_points(states, self.lane, seg.state_idxs, seg.sides)
            out.append(
                ArcSegment(
                    x0=seg.x0, y0=seg.y0, tau0=seg.tau0, kappa=seg.kappa, L=seg.L,
                    bnds=seg.bnds, state_idxs=seg.state_idxs, sides=seg.sides,
                    points=points, covs=covs,
                )
            )
        return tuple(out)

    def validate(
        self,
        states: Sequence[NavState],
        segments: Optional[Sequence[ArcSegment]] = None,
    ) -> Tuple[bool, Tuple[ArcSegment, ...]]:
        """Validate the optimized segments and split invalid sub-segments.

        Every segment is checked against lane points recomputed from
        ``states``. An invalid segment gets its worst sub-segment replicated
        and is refitted, unless the refit adds invalid points; valid segments
        are returned unchanged.

        Returns:
            (valid, segments): whether every segment passed, and the segments
            to use for the next solve.
        """
        refreshed = self.refresh_points(states, segments)
        out = []
        fitters = []
        valid = True
        for seg_id, seg in enumerate(refreshed):
            fitter = ArcFit(seg, seg_id=seg_id)
            if not fitter.validate():
                valid = False
                fitter.split()
            fitters.append(fitter)
            out.append(fitter.segment)

        self.fitters = fitters
        self.segments = tuple(out)
        self.valid = valid
        logger.info(
            "Map validation: %s, sub-segments per segment %s",
            "valid" if valid else "invalid", list(self.subseg_cnt),
        )
        return valid, self.segments
