"""
Ray intersection for tie points.

Two-view triangulation takes the midpoint of the shortest segment between
the rays and reports the segment length as the triangulation error. A
failed intersection returns a non-finite point instead of raising, so
callers can test the result with np.isfinite.
"""

import numpy as np
from typing import Sequence, Tuple
import logging

from .camera import CameraModel
from .transforms import ray_angle

logger = logging.getLogger(__name__)

NAN_POINT = np.full(3, np.nan)


def intersect_rays(
    center1: np.ndarray,
    dir1: np.ndarray,
    center2: np.ndarray,
    dir2: np.ndarray,
) -> Tuple[np.ndarray, float]:
    """
    Find the closest point between two rays.

    Returns:
        (midpoint, miss distance). The midpoint is NaN if the rays are
        parallel or the closest point lies behind either camera.
    """
    w0 = center1 - center2
    a = np.dot(dir1, dir1)
    b = np.dot(dir1, dir2)
    c = np.dot(dir2, dir2)
    d = np.dot(dir1, w0)
    e = np.dot(dir2, w0)

    denom = a * c - b * b
    if not np.isfinite(denom) or abs(denom) < 1e-14 * a * c:
        return NAN_POINT.copy(), np.inf  # Rays are parallel

    s = (b * e - c * d) / denom
    t = (a * e - b * d) / denom
    if s < 0 or t < 0:
        return NAN_POINT.copy(), np.inf

    p1 = center1 + s * dir1
    p2 = center2 + t * dir2
    return (p1 + p2) / 2.0, float(np.linalg.norm(p1 - p2))


def triangulate_n_views(centers: Sequence[np.ndarray], rays: Sequence[np.ndarray]) -> np.ndarray:
    """Least squares intersection of N lines in 3D, NaN if degenerate."""
    # Work relative to the first center to keep the normal equations well scaled
    origin = np.asarray(centers[0], dtype=np.float64)
    mat_sum = np.zeros((3, 3))
    vec_sum = np.zeros(3)

    for C, v in zip(centers, rays):
        v = v / np.linalg.norm(v)
        P_orth = np.eye(3) - np.outer(v, v)
        mat_sum += P_orth
        vec_sum += P_orth @ (C - origin)

    try:
        return origin + np.linalg.solve(mat_sum, vec_sum)
    except np.linalg.LinAlgError:
        return NAN_POINT.copy()


def triangulate(
    cam1: CameraModel,
    pix1: np.ndarray,
    cam2: CameraModel,
    pix2: np.ndarray,
) -> Tuple[np.ndarray, float]:
    """Triangulate one pixel pair through two cameras."""
    ctr1, dir1 = cam1.pixel_to_ray(pix1)
    ctr2, dir2 = cam2.pixel_to_ray(pix2)
    return intersect_rays(ctr1, dir1, ctr2, dir2)


def triangulate_track(
    cameras: Sequence[CameraModel],
    observations: Sequence[Tuple[int, np.ndarray]],
    min_angle_deg: float,
) -> np.ndarray:
    """
    Triangulate a multi-view track of (camera index, pixel) observations.

    The track is rejected (NaN returned) if no two rays converge by at
    least ``min_angle_deg`` or if any camera fails to produce a ray.
    """
    if len(observations) < 2:
        return NAN_POINT.copy()

    centers, rays = [], []
    for cam_index, pixel in observations:
        ctr, direction = cameras[cam_index].pixel_to_ray(pixel)
        if not (np.all(np.isfinite(ctr)) and np.all(np.isfinite(direction))):
            return NAN_POINT.copy()
        centers.append(ctr)
        rays.append(direction)

    max_angle = 0.0
    for i in range(len(rays)):
        for j in range(i + 1, len(rays)):
            max_angle = max(max_angle, ray_angle(rays[i], rays[j]))
    if np.rad2deg(max_angle) < min_angle_deg:
        return NAN_POINT.copy()

    if len(observations) == 2:
        point, _ = intersect_rays(centers[0], rays[0], centers[1], rays[1])
        return point

    return triangulate_n_views(centers, rays)
