"""
Propagation of satellite position and orientation covariances to
triangulated points.

The sensitivity of a triangulated point to the 7 satellite parameters of
each of two cameras (3 position, 4 quaternion) is found by centered
differences over the 15 perturbed copies of each camera. The differences
are not divided by the perturbation sizes. Instead the input covariances
are divided by the squared perturbation sizes, which gives the same
product J * C * J^T without forming a Jacobian from very small steps.

Output covariances are expressed in the North-East-Down frame at the
nominal triangulated point.
"""

import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple
from concurrent.futures import ThreadPoolExecutor
import logging

from .camera import (
    CameraHandle,
    CameraMismatchError,
    CameraModel,
    LinescanCamera,
    NUM_CAMS_FOR_COVARIANCE,
    SAT_POS_COV_SIZE,
    SAT_QUAT_COV_SIZE,
    any_single_threaded,
)
from .config import CovarianceSettings
from .transforms import Datum
from .trajectory import NUM_QUAT_PARAMS, NUM_XYZ_PARAMS
from .triangulation import intersect_rays

logger = logging.getLogger(__name__)

NUM_SAT_PARAMS = NUM_XYZ_PARAMS + NUM_QUAT_PARAMS  # 7 per camera
TRI_JAC_COLS = 2 * NUM_SAT_PARAMS  # 14


class CovarianceError(ValueError):
    """No valid uncertainty could be computed for this pixel pair."""


@dataclass
class PropagatedCovariance:
    """
    Attributes:
        covariance: 3x3 covariance of the triangulated point, NED frame
        horizontal: Square root of the determinant of the horizontal block
        vertical: Variance along the down axis
    """
    covariance: np.ndarray
    horizontal: float
    vertical: float

    def as_vector(self) -> np.ndarray:
        return np.array([self.horizontal, self.vertical])


def _rays(
    handle: CameraHandle,
    cameras: Sequence[LinescanCamera],
    pixel: np.ndarray,
) -> List[Tuple[np.ndarray, np.ndarray]]:
    """Ray through the pixel for each camera, with the handle's adjustment applied."""
    rays = []
    for cam in cameras:
        ctr, direction = cam.pixel_to_ray(pixel)
        if handle.is_adjusted:
            direction = handle.rotation @ direction
            ctr = handle.rotation @ ctr + handle.translation
        rays.append((ctr, direction))
    return rays


def _triangulate(ray1: Tuple[np.ndarray, np.ndarray], ray2: Tuple[np.ndarray, np.ndarray]) -> np.ndarray:
    point, _ = intersect_rays(ray1[0], ray1[1], ray2[0], ray2[1])
    return point


def _resolve_pair(cam1: CameraModel, cam2: CameraModel) -> Tuple[CameraHandle, CameraHandle]:
    h1 = CameraHandle.resolve(cam1)
    h2 = CameraHandle.resolve(cam2)
    if h1.is_adjusted != h2.is_adjusted:
        raise CameraMismatchError("Either both cameras must be adjusted or both unadjusted.")
    h1.require_linescan()
    h2.require_linescan()
    return h1, h2


def triangulation_jacobian(
    cam1: CameraModel,
    cam2: CameraModel,
    pix1: np.ndarray,
    pix2: np.ndarray,
    settings: Optional[CovarianceSettings] = None,
    datum: Optional[Datum] = None,
) -> np.ndarray:
    """
    Scaled 3x14 Jacobian of the triangulated point in NED coordinates.

    Columns 0-6 are the position then quaternion perturbations of the first
    camera, with the second camera held nominal. Columns 7-13 are the same
    for the second camera. Column k is (plus - minus) / 2, not divided by
    the perturbation size.

    Raises:
        CameraMismatchError: If only one camera is adjusted, a camera is not
            a linescan camera, or a perturbed set has the wrong size
        CovarianceError: If a triangulation is not finite
    """
    settings = settings or CovarianceSettings()
    h1, h2 = _resolve_pair(cam1, cam2)
    ls1, ls2 = h1.linescan, h2.linescan
    datum = datum or ls1.datum

    cams1 = ls1.perturbed_cameras(settings.delta_position, settings.delta_quat)
    cams2 = ls2.perturbed_cameras(settings.delta_position, settings.delta_quat)
    if len(cams1) != NUM_CAMS_FOR_COVARIANCE or len(cams2) != NUM_CAMS_FOR_COVARIANCE:
        raise CameraMismatchError(
            f"Expecting {NUM_CAMS_FOR_COVARIANCE} perturbed cameras, "
            f"got {len(cams1)} and {len(cams2)}."
        )

    rays1 = _rays(h1, cams1, np.asarray(pix1, dtype=np.float64))
    rays2 = _rays(h2, cams2, np.asarray(pix2, dtype=np.float64))

    nominal = _triangulate(rays1[0], rays2[0])
    if not np.all(np.isfinite(nominal)):
        raise CovarianceError("Could not triangulate in the nominal cameras.")

    # The local frame is the same for all perturbations
    ecef_to_ned = datum.ecef_to_ned_at(nominal)

    J = np.zeros((NUM_XYZ_PARAMS, TRI_JAC_COLS))
    for coord in range(TRI_JAC_COLS):
        if coord < NUM_SAT_PARAMS:
            plus = _triangulate(rays1[2 * coord + 1], rays2[0])
            minus = _triangulate(rays1[2 * coord + 2], rays2[0])
        else:
            c = coord - NUM_SAT_PARAMS
            plus = _triangulate(rays1[0], rays2[2 * c + 1])
            minus = _triangulate(rays1[0], rays2[2 * c + 2])

        if not (np.all(np.isfinite(plus)) and np.all(np.isfinite(minus))):
            raise CovarianceError(f"Could not triangulate with perturbation {coord}.")

        J[:, coord] = ecef_to_ned @ (plus - minus) / 2.0

    return J


def insert_block(matrix: np.ndarray, offset: int, size: int, upper: np.ndarray) -> None:
    """
    Fill a symmetric diagonal block from its upper-triangular entries.

    Entries are given row by row: for size 3, c11, c12, c13, c22, c23, c33.
    """
    upper = np.asarray(upper, dtype=np.float64).ravel()
    if len(upper) != size * (size + 1) // 2:
        raise ValueError(f"Expecting {size * (size + 1) // 2} entries for a {size}x{size} block")

    k = 0
    for row in range(size):
        for col in range(row, size):
            matrix[offset + row, offset + col] = upper[k]
            matrix[offset + col, offset + row] = upper[k]
            k += 1


def satellite_covariance(
    cam1: CameraModel,
    cam2: CameraModel,
    pix1: np.ndarray,
    pix2: np.ndarray,
    settings: Optional[CovarianceSettings] = None,
) -> np.ndarray:
    """
    14x14 input covariance, scaled to match triangulation_jacobian.

    Each block is multiplied by its weighting factor and divided by the
    square of the matching perturbation size.
    """
    settings = settings or CovarianceSettings()
    h1, h2 = _resolve_pair(cam1, cam2)
    ls1, ls2 = h1.linescan, h2.linescan

    pos_scale = settings.position_covariance_factor / settings.delta_position ** 2
    quat_scale = settings.orientation_covariance_factor / settings.delta_quat ** 2

    p_cov1 = pos_scale * ls1.position_covariance(pix1)
    q_cov1 = quat_scale * ls1.orientation_covariance(pix1)
    p_cov2 = pos_scale * ls2.position_covariance(pix2)
    q_cov2 = quat_scale * ls2.orientation_covariance(pix2)
    if len(p_cov1) != SAT_POS_COV_SIZE or len(q_cov1) != SAT_QUAT_COV_SIZE:
        raise CameraMismatchError("Unexpected satellite covariance sizes")

    C = np.zeros((TRI_JAC_COLS, TRI_JAC_COLS))
    insert_block(C, 0, NUM_XYZ_PARAMS, p_cov1)
    insert_block(C, NUM_XYZ_PARAMS, NUM_QUAT_PARAMS, q_cov1)
    insert_block(C, NUM_SAT_PARAMS, NUM_XYZ_PARAMS, p_cov2)
    insert_block(C, NUM_SAT_PARAMS + NUM_XYZ_PARAMS, NUM_QUAT_PARAMS, q_cov2)
    return C


def propagate_covariance(
    cam1: CameraModel,
    cam2: CameraModel,
    pix1: np.ndarray,
    pix2: np.ndarray,
    settings: Optional[CovarianceSettings] = None,
    datum: Optional[Datum] = None,
) -> PropagatedCovariance:
    """
    Covariance of the point triangulated from two pixels.

    Per https://en.wikipedia.org/wiki/Propagation_of_uncertainty#Non-linear_combinations,
    P = J * C * J^T. The horizontal component is the square root of the
    determinant of the upper-left 2x2 block of P, the radius of the circle
    with the same area as the horizontal error ellipse. The vertical
    component is the down-axis variance.

    Raises:
        CovarianceError: If the result is not finite
    """
    J = triangulation_jacobian(cam1, cam2, pix1, pix2, settings, datum)
    C = satellite_covariance(cam1, cam2, pix1, pix2, settings)
    P = J @ C @ J.T

    with np.errstate(invalid='ignore'):
        horizontal = float(np.sqrt(np.linalg.det(P[:2, :2])))
    vertical = float(P[2, 2])

    if not (np.isfinite(horizontal) and np.isfinite(vertical)):
        raise CovarianceError("Could not compute the covariance.")

    return PropagatedCovariance(covariance=P, horizontal=horizontal, vertical=vertical)


def propagate_covariances(
    cam1: CameraModel,
    cam2: CameraModel,
    pixel_pairs: Sequence[Tuple[np.ndarray, np.ndarray]],
    settings: Optional[CovarianceSettings] = None,
    num_threads: Optional[int] = None,
) -> np.ndarray:
    """
    Horizontal and vertical uncertainty for many pixel pairs.

    Pairs without valid uncertainty get the zero vector. Runs on a single
    thread if either camera is not thread-safe.

    Returns:
        (N, 2) array of (horizontal, vertical)
    """
    if any_single_threaded([cam1, cam2]):
        num_threads = 1

    def worker(pair):
        try:
            return propagate_covariance(cam1, cam2, pair[0], pair[1], settings).as_vector(), True
        except CovarianceError as e:
            logger.debug(f"No uncertainty for pixels {pair[0]}, {pair[1]}: {e}")
            return np.zeros(2), False

    with ThreadPoolExecutor(max_workers=num_threads) as executor:
        results = list(executor.map(worker, pixel_pairs))

    num_failed = sum(1 for _, ok in results if not ok)
    if num_failed:
        logger.warning(f"No valid uncertainty for {num_failed} of {len(results)} pixel pairs")
    return np.array([vec for vec, _ in results]).reshape(-1, 2)
