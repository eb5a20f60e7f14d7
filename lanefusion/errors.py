"""Exception types raised by the fusion pipeline.

Two families of failures abort a run:
    - NumericalError: the estimation problem became numerically invalid
      (non positive-definite pre-integrated covariance, singular normal
      equations).
    - DataError: inputs or associations are inconsistent with each other.

Arc sub-segment validation failures and rejected trial steps are part of
normal operation and never raise.
"""

from dataclasses import dataclass, field
from typing import List, Tuple


class LaneFusionError(Exception):
    """Base class for all errors raised by lanefusion."""


class NumericalError(LaneFusionError):
    """Fatal numerical failure."""


class PreintegrationError(NumericalError):
    """Pre-integrated noise covariance is not positive definite.

    Attributes:
        index: Index of the IMU cluster that failed.
        eigenvalues: Eigenvalues of the offending covariance.
    """

    def __init__(self, index: int, eigenvalues):
        self.index = index
        self.eigenvalues = eigenvalues
        super().__init__(
            f"Pre-integrated IMU covariance of cluster {index} is not positive "
            f"definite (min eigenvalue {min(eigenvalues):.3e})"
        )


@dataclass
class SingularityReport:
    """Diagnostics gathered before aborting on a singular information matrix.

    Attributes:
        zero_diagonals: Indices of zero diagonal entries (full matrix indices).
        duplicate_rows: Pairs of identical rows inside the lane-parameter block,
            expressed as full matrix indices.
    """

    zero_diagonals: List[int] = field(default_factory=list)
    duplicate_rows: List[Tuple[int, int]] = field(default_factory=list)


class SingularInformationError(NumericalError):
    """Normal equations are singular; carries a SingularityReport."""

    def __init__(self, report: SingularityReport):
        self.report = report
        super().__init__(
            "Information matrix is singular: "
            f"{len(report.zero_diagonals)} zero diagonal entries, "
            f"{len(report.duplicate_rows)} duplicate rows"
        )


class DataError(LaneFusionError):
    """Inputs or associations violate a structural precondition."""
