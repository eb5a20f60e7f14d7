"""Adaptive arc-spline fitting of one lane segment.

Given the data points of one lane boundary and an initial sub-segment
partition, ArcFit estimates the arc parameters and refines the partition:

    Associate → BaseFit → Optimize → Validate → {Done, Split → Validate}

Optimization variables are the anchor pose and the sub-segment radii,
x = [x0, y0, tau0, 1/κ_1, ..., 1/κ_n]. Arc lengths are not free: each one is
recovered from the angle swept around the sub-segment center between the
matched start point and the matched end point of its bounds.

Cost terms:
    - Point measurement: closest point on the assigned circle minus the data
      point, whitened by the point covariance.
    - Anchor: arc node i minus the data point at the corresponding boundary
      index (tight at both segment ends, looser at internal boundaries).

A point is invalid when its normalized squared error exceeds the χ²(2)
quantile at 99.9 %; a sub-segment with three or more invalid points is
invalid and the worst one is split at its midpoint. A split whose refit leaves
more invalid points than before is undone.
"""

import logging
from typing import Sequence, Tuple

import numpy as np
from scipy import sparse
from scipy.optimize import least_squares
from scipy.stats import chi2

from lanefusion.mapping.arc_spline import (
    ArcSegment,
    arc_lengths,
    match_point,
    propagate_nodes,
)
from lanefusion.utils.angles import directed_angle
from lanefusion.utils.linalg import sparse_covariance, sqrt_information

logger = logging.getLogger(__name__)

# Anchor variances for the segment end points and internal boundaries (m²)
END_ANCHOR_VAR = 1e-5
INTERNAL_ANCHOR_VAR = 1e-4


class ArcFit:
    """Nonlinear least-squares fit of an arc spline to fixed data points.

    Attributes:
        segment: Current ArcSegment (parameters, bounds and points).
        valid: Whether the last validation passed.
        validity: Number of invalid points per sub-segment.
        assoc: Sub-segment index of each data point.
        matched_points: Closest arc point of each data point after validation.
        ndist: Normalized squared error of each data point.
        jacobian: Jacobian of the last full fit (sparse).
        information: JᵀJ of the last full fit.
        covariance: Inverse of ``information``.
    """

    def __init__(
        self,
        segment: ArcSegment,
        seg_id: int = 0,
        confidence: float = 0.999,
        invalid_limit: int = 3,
        base_samples: int = 8,
        max_nfev: int = 30000,
    ):
        if len(segment.points) != segment.n_points or len(segment.covs) != segment.n_points:
            raise ValueError("ArcFit requires one point and one 2x2 covariance per data point")
        self.segment = segment
        self.seg_id = seg_id
        self.chisq_thres = float(chi2.ppf(confidence, 2))
        self.invalid_limit = invalid_limit
        self.base_samples = base_samples
        self.max_nfev = max_nfev

        self.valid = False
        self.validity = np.zeros(segment.subseg_cnt, dtype=int)
        self.assoc = np.zeros(segment.n_points, dtype=int)
        self.matched_points = np.zeros((segment.n_points, 2))
        self.ndist = np.zeros(segment.n_points)
        self.jacobian = None
        self.information = None
        self.covariance = None

        self._weights = np.array([sqrt_information(c) for c in segment.covs])

    # ------------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------------

    def optimize(self, max_rounds: int = 20) -> ArcSegment:
        """Fit, validate and split sub-segments until the fit is valid.

        Args:
            max_rounds: Maximum number of split rounds.

        Returns:
            The final ArcSegment.
        """
        self.associate()
        self.base_fit()
        logger.info(
            "Fitting segment %d with %d sub-segments", self.seg_id, self.segment.subseg_cnt
        )
        self.fit()
        self.validate()
        for round_idx in range(max_rounds):
            if self.valid:
                break
            logger.info("Segment %d: split round %d", self.seg_id, round_idx + 1)
            if not self.split():
                break
        if not self.valid:
            logger.warning("Segment %d still invalid after splitting", self.seg_id)

        self.information = (self.jacobian.T @ self.jacobian).tocsc()
        self.covariance = sparse_covariance(self.information)
        return self.segment

    def associate(self) -> np.ndarray:
        """Assign every data point to a sub-segment from the index bounds."""
        self.assoc = self.segment.association()
        return self.assoc

    def base_fit(self) -> ArcSegment:
        """Stabilize the initial parameters on a coarse point subsample.

        The subsample keeps the first point, every sub-segment end point and
        ``base_samples - 2`` evenly spaced interior points per sub-segment.
        """
        bnds = self.segment.bnds
        idxs = [0] + [int(ub) for ub in bnds[:, 1]]
        for lb, ub in bnds:
            interior = np.floor(np.linspace(lb, ub, self.base_samples)).astype(int)
            idxs.extend(int(k) for k in interior[1:-1])
        subsample = np.unique(idxs)
        self._solve(subsample)
        return self.segment

    def fit(self) -> ArcSegment:
        """Full fit over every data point."""
        result = self._solve(np.arange(self.segment.n_points))
        self.jacobian = sparse.csr_matrix(result.jac)
        return self.segment

    def validate(self) -> bool:
        """Count points whose normalized error exceeds the χ² threshold.

        Returns:
            True if every sub-segment has fewer than ``invalid_limit`` invalid
            points.
        """
        self.associate()
        seg = self.segment
        centers = seg.centers()
        self.validity = np.zeros(seg.subseg_cnt, dtype=int)
        for j, point in enumerate(seg.points):
            i = self.assoc[j]
            matched = match_point(centers[i], seg.kappa[i], point)
            self.matched_points[j] = matched
            d = point - matched
            self.ndist[j] = float(d @ np.linalg.solve(seg.covs[j], d))
            if self.ndist[j] > self.chisq_thres:
                self.validity[i] += 1

        self.valid = bool(np.all(self.validity < self.invalid_limit))
        for i, count in enumerate(self.validity):
            logger.info("Segment %d sub-segment %d: %d invalid points", self.seg_id, i, count)
        if self.valid:
            logger.info("Segment %d: all sub-segments are valid", self.seg_id)
        return self.valid

    def replicate(self) -> bool:
        """Split the sub-segment with the most invalid points at its midpoint.

        Both halves inherit the curvature of the split sub-segment; arc lengths
        of every sub-segment are reset from cumulative point distances.

        Returns:
            False if no invalid sub-segment has enough points to be split.
        """
        seg = self.segment
        order = np.argsort(-self.validity, kind="stable")
        candidates = [
            int(i) for i in order
            if self.validity[i] >= self.invalid_limit
            and seg.bnds[i, 1] - seg.bnds[i, 0] >= 2
        ]
        if not candidates:
            return False
        idx = candidates[0]
        lb, ub = seg.bnds[idx]
        mid = (lb + ub) // 2
        logger.info("Segment %d: replicating sub-segment %d at point %d", self.seg_id, idx, mid)

        bnds = np.vstack([seg.bnds[:idx], [[lb, mid], [mid, ub]], seg.bnds[idx + 1 :]])
        kappa = np.concatenate([seg.kappa[:idx], [seg.kappa[idx]] * 2, seg.kappa[idx + 1 :]])
        self.segment = ArcSegment(
            x0=seg.x0,
            y0=seg.y0,
            tau0=seg.tau0,
            kappa=kappa,
            L=arc_lengths(seg.points, bnds),
            bnds=bnds,
            state_idxs=seg.state_idxs,
            sides=seg.sides,
            points=seg.points,
            covs=seg.covs,
        )
        self.validity = np.insert(self.validity, idx, self.validity[idx])
        return True

    def split(self) -> bool:
        """Replicate the worst sub-segment, refit and keep the result if it helps.

        The split is undone when the refitted segment has more invalid points
        in total than before, so the invalid count never grows.

        Returns:
            True if a split was kept.
        """
        seg, jacobian = self.segment, self.jacobian
        before = int(self.validity.sum())
        if not self.replicate():
            logger.warning("Segment %d: no invalid sub-segment can be split further", self.seg_id)
            return False
        self.fit()
        self.validate()
        after = int(self.validity.sum())
        if after > before:
            logger.warning(
                "Segment %d: split raised invalid points from %d to %d, reverted",
                self.seg_id, before, after,
            )
            self.segment, self.jacobian = seg, jacobian
            self.validate()
            return False
        return True

    # ------------------------------------------------------------------
    # Least-squares model
    # ------------------------------------------------------------------

    def _solve(self, point_idxs: np.ndarray):
        self.associate()
        seg = self.segment
        n = seg.subseg_cnt
        x_init = np.concatenate([[seg.x0, seg.y0, seg.tau0], 1.0 / seg.kappa])
        result = least_squares(
            self._cost_func,
            x_init,
            args=(point_idxs,),
            jac_sparsity=self._jac_pattern(point_idxs),
            method="trf",
            x_scale="jac",
            max_nfev=self.max_nfev,
        )
        if result.status == 0:
            logger.warning(
                "Segment %d fit stopped at the evaluation limit (%d evaluations)",
                self.seg_id, result.nfev,
            )
        x = result.x
        kappa = 1.0 / x[3 : 3 + n]
        L, _ = self._arc_lengths(x[:3], kappa)
        self.segment = seg.with_params(x0=x[0], y0=x[1], tau0=x[2], kappa=kappa, L=L)
        logger.debug(
            "Segment %d fit: cost %.6g after %d evaluations", self.seg_id, result.cost, result.nfev
        )
        return result

    def _cost_func(self, x: np.ndarray, point_idxs: np.ndarray) -> np.ndarray:
        seg = self.segment
        n = seg.subseg_cnt
        kappa = 1.0 / x[3 : 3 + n]
        L, centers = self._arc_lengths(x[:3], kappa)

        res = np.empty(2 * len(point_idxs) + 2 * (n + 1))
        for row, j in enumerate(point_idxs):
            i = self.assoc[j]
            matched = match_point(centers[i], kappa[i], seg.points[j])
            res[2 * row : 2 * row + 2] = self._weights[j] @ (matched - seg.points[j])

        offset = 2 * len(point_idxs)
        nodes, _ = propagate_nodes(x[0], x[1], x[2], kappa, L)
        for i in range(n + 1):
            point = seg.points[0] if i == 0 else seg.points[seg.bnds[i - 1, 1]]
            var = END_ANCHOR_VAR if i in (0, n) else INTERNAL_ANCHOR_VAR
            res[offset + 2 * i : offset + 2 * i + 2] = (nodes[i] - point) / np.sqrt(var)
        return res

    def _arc_lengths(
        self, anchor: Sequence[float], kappa: np.ndarray
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Arc lengths and centers implied by the anchor pose and curvatures.

        Each sub-segment ends where its circle is closest to the data point at
        its upper bound; the swept angle is measured in the turning direction.
        """
        seg = self.segment
        x0, y0, tau0 = anchor
        n = len(kappa)
        L = np.zeros(n)
        centers = np.zeros((n, 2))
        centers[0] = (x0 - np.sin(tau0) / kappa[0], y0 + np.cos(tau0) / kappa[0])
        lb_matched = np.array([x0, y0])
        heading = tau0
        for i in range(n):
            ub_matched = match_point(centers[i], kappa[i], seg.points[seg.bnds[i, 1]])
            d_lb = lb_matched - centers[i]
            d_ub = ub_matched - centers[i]
            sweep = directed_angle(
                np.arctan2(d_lb[1], d_lb[0]), np.arctan2(d_ub[1], d_ub[0]), kappa[i]
            )
            L[i] = sweep / abs(kappa[i])
            if i < n - 1:
                heading += kappa[i] * L[i]
                centers[i + 1] = centers[i] + (1.0 / kappa[i] - 1.0 / kappa[i + 1]) * np.array(
                    [np.sin(heading), -np.cos(heading)]
                )
                lb_matched = ub_matched
        return L, centers

    def _jac_pattern(self, point_idxs: np.ndarray) -> sparse.lil_matrix:
        n = self.segment.subseg_cnt
        m = len(point_idxs)
        pattern = sparse.lil_matrix((2 * m + 2 * (n + 1), 3 + n), dtype=int)
        for row, j in enumerate(point_idxs):
            pattern[2 * row : 2 * row + 2, : 4 + self.assoc[j]] = 1
        pattern[2 * m : 2 * m + 2, :2] = 1
        for i in range(1, n + 1):
            pattern[2 * m + 2 * i : 2 * m + 2 * i + 2, : 3 + i] = 1
        return pattern
