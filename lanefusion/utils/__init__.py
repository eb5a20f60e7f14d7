"""
Utility functions shared across the fusion pipeline.

This module provides angle handling and the linear-algebra helpers used for
Mahalanobis weighting and covariance recovery.
"""

from .angles import directed_angle, wrap_angle
from .linalg import sparse_covariance, sqrt_information, whiten

__all__ = [
    'wrap_angle',
    'directed_angle',
    'sqrt_information',
    'whiten',
    'sparse_covariance',
]
