"""
Angle wrapping utilities.

Used for heading residuals and for measuring the angular span of arc
sub-segments around their centers.
"""

from typing import Union

import numpy as np


def wrap_angle(angle: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
    """
    Wrap angle(s) to the [-π, π] range.

    Example:
        >>> wrap_angle(3.5 * np.pi)  # 630° -> -90°
        -1.5707963267948966
    """
    return np.arctan2(np.sin(angle), np.cos(angle))


def directed_angle(start: float, end: float, direction: float) -> float:
    """
    Angle swept from ``start`` to ``end`` when rotating in ``direction``.

    Args:
        start: Start angle in radians.
        end: End angle in radians.
        direction: Positive for counter-clockwise, negative for clockwise.

    Returns:
        Swept angle in [0, 2π).

    Example:
        >>> directed_angle(0.0, np.pi / 2, 1.0)   # quarter turn CCW
        1.5707963267948966
        >>> directed_angle(0.0, np.pi / 2, -1.0)  # the long way round
        4.71238898038469
    """
    sweep = (end - start) if direction >= 0 else (start - end)
    return float(np.mod(sweep, 2.0 * np.pi))
