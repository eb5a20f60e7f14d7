"""Arc-spline lane model.

- ArcSegment value type and closed-form node/center propagation
- ArcFit adaptive per-segment fitter (fit, validate, replicate)
- ArcMap collection built from vehicle states and lane measurements
"""

from lanefusion.mapping.arc_fit import ArcFit
from lanefusion.mapping.arc_map import ArcMap, SegmentSeed, lane_points
from lanefusion.mapping.arc_spline import (
    ArcSegment,
    arc_lengths,
    associate,
    bounds_partition_ok,
    match_point,
    propagate_centers,
    propagate_nodes,
)

__all__ = [
    # Model
    "ArcSegment",
    "propagate_nodes",
    "propagate_centers",
    "match_point",
    "arc_lengths",
    "associate",
    "bounds_partition_ok",
    # Fitting
    "ArcFit",
    # Map
    "ArcMap",
    "SegmentSeed",
    "lane_points",
]
