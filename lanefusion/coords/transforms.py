"""Geodetic conversions between LLA, ECEF and the local ENU frame.

GNSS fixes arrive as WGS84 latitude/longitude/altitude; the estimator works in
a local East-North-Up frame anchored at a reference origin. The radian-based
primitives mirror the usual LLH/ECEF/ENU chain, and ``lla_to_enu`` /
``enu_to_lla`` wrap them for degree inputs as delivered by receivers.

WGS84 ellipsoid parameters:
- Semi-major axis (a): 6378137.0 m
- Flattening (f): 1/298.257223563
"""

import numpy as np
from numpy.typing import NDArray

WGS84_A = 6378137.0  # Semi-major axis (m)
WGS84_F = 1.0 / 298.257223563  # Flattening
WGS84_B = WGS84_A * (1.0 - WGS84_F)  # Semi-minor axis (m)
WGS84_E2 = WGS84_F * (2.0 - WGS84_F)  # First eccentricity squared


def _prime_vertical_radius(lat: float) -> float:
    return WGS84_A / np.sqrt(1.0 - WGS84_E2 * np.sin(lat) ** 2)


def _ecef_to_enu_rotation(lat: float, lon: float) -> NDArray[np.float64]:
    """Rotation R such that enu = R @ (xyz - xyz_ref)."""
    sl, cl = np.sin(lat), np.cos(lat)
    so, co = np.sin(lon), np.cos(lon)
    return np.array(
        [
            [-so, co, 0.0],
            [-sl * co, -sl * so, cl],
            [cl * co, cl * so, sl],
        ],
        dtype=np.float64,
    )


def llh_to_ecef(lat: float, lon: float, height: float) -> NDArray[np.float64]:
    """Convert geodetic coordinates (radians, meters) to ECEF [x, y, z] in meters."""
    N = _prime_vertical_radius(lat)
    cl = np.cos(lat)
    return np.array(
        [
            (N + height) * cl * np.cos(lon),
            (N + height) * cl * np.sin(lon),
            (N * (1.0 - WGS84_E2) + height) * np.sin(lat),
        ],
        dtype=np.float64,
    )


def ecef_to_llh(
    x: float,
    y: float,
    z: float,
    tol: float = 1e-12,
    max_iter: int = 10,
) -> NDArray[np.float64]:
    """Convert ECEF coordinates to geodetic [lat, lon, height].

    Latitude is refined iteratively (fixed-point on the geodetic latitude),
    which converges to sub-millimetre height accuracy in a few iterations
    for terrestrial points.

    Args:
        x, y, z: ECEF coordinates in meters.
        tol: Convergence tolerance on latitude (radians).
        max_iter: Maximum number of iterations.

    Returns:
        [lat, lon, height] with angles in radians and height in meters.
    """
    lon = np.arctan2(y, x)
    p = np.hypot(x, y)

    if p < 1e-10:
        lat = np.copysign(np.pi / 2.0, z)
        return np.array([lat, lon, abs(z) - WGS84_B], dtype=np.float64)

    lat = np.arctan2(z, p * (1.0 - WGS84_E2))
    for _ in range(max_iter):
        N = _prime_vertical_radius(lat)
        height = p / np.cos(lat) - N
        lat_new = np.arctan2(z, p * (1.0 - WGS84_E2 * N / (N + height)))
        converged = abs(lat_new - lat) < tol
        lat = lat_new
        if converged:
            break

    height = p / np.cos(lat) - _prime_vertical_radius(lat)
    return np.array([lat, lon, height], dtype=np.float64)


def ecef_to_enu(
    x: float,
    y: float,
    z: float,
    lat_ref: float,
    lon_ref: float,
    height_ref: float,
) -> NDArray[np.float64]:
    """Express an ECEF point in the ENU frame anchored at (lat_ref, lon_ref, height_ref)."""
    d = np.array([x, y, z], dtype=np.float64) - llh_to_ecef(lat_ref, lon_ref, height_ref)
    return _ecef_to_enu_rotation(lat_ref, lon_ref) @ d


def enu_to_ecef(
    east: float,
    north: float,
    up: float,
    lat_ref: float,
    lon_ref: float,
    height_ref: float,
) -> NDArray[np.float64]:
    """Inverse of ecef_to_enu."""
    R = _ecef_to_enu_rotation(lat_ref, lon_ref)
    enu = np.array([east, north, up], dtype=np.float64)
    return llh_to_ecef(lat_ref, lon_ref, height_ref) + R.T @ enu


def lla_to_enu(
    lla_deg: NDArray[np.float64],
    origin_deg: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Convert [lat(deg), lon(deg), alt(m)] to local ENU relative to an origin.

    Args:
        lla_deg: Geodetic position, shape (3,) or (N, 3).
        origin_deg: ENU origin [lat(deg), lon(deg), alt(m)].

    Returns:
        ENU coordinates, shape (3,) or (N, 3), in meters.
    """
    lla_deg = np.asarray(lla_deg, dtype=np.float64)
    origin = np.asarray(origin_deg, dtype=np.float64)
    if origin.shape != (3,):
        raise ValueError(f"origin_deg must have shape (3,), got {origin.shape}")
    single = lla_deg.ndim == 1
    rows = np.atleast_2d(lla_deg)
    if rows.shape[1] != 3:
        raise ValueError(f"lla_deg must have 3 columns, got shape {lla_deg.shape}")

    lat0, lon0 = np.deg2rad(origin[:2])
    out = np.empty_like(rows)
    for k, (lat, lon, alt) in enumerate(rows):
        xyz = llh_to_ecef(np.deg2rad(lat), np.deg2rad(lon), alt)
        out[k] = ecef_to_enu(*xyz, lat0, lon0, origin[2])
    return out[0] if single else out


def enu_to_lla(
    enu: NDArray[np.float64],
    origin_deg: NDArray[np.float64],
) -> NDArray[np.float64]:
    """Inverse of lla_to_enu; returns [lat(deg), lon(deg), alt(m)]."""
    enu = np.asarray(enu, dtype=np.float64)
    origin = np.asarray(origin_deg, dtype=np.float64)
    single = enu.ndim == 1
    rows = np.atleast_2d(enu)

    lat0, lon0 = np.deg2rad(origin[:2])
    out = np.empty_like(rows)
    for k, point in enumerate(rows):
        llh = ecef_to_llh(*enu_to_ecef(*point, lat0, lon0, origin[2]))
        out[k] = [np.rad2deg(llh[0]), np.rad2deg(llh[1]), llh[2]]
    return out[0] if single else out
