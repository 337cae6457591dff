"""
Control network and initial outlier filter.

Pairwise image matches are merged into multi-image tracks, each track is
triangulated with the nominal cameras into a tie point, and tie points
whose observations do not reproject within the allowed error are flagged
before the solve.
"""

import numpy as np
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple
import logging

from .camera import CameraModel, ProjectionError
from .config import NetworkSettings
from .triangulation import triangulate_track

logger = logging.getLogger(__name__)


@dataclass
class Observation:
    """One measurement of a tie point: camera index and (sample, line) pixel."""
    camera_index: int
    pixel: np.ndarray

    def __post_init__(self):
        self.pixel = np.asarray(self.pixel, dtype=np.float64)


@dataclass
class TiePoint:
    """3D point in ECEF with its pixel observations."""
    position: np.ndarray
    observations: List[Observation] = field(default_factory=list)

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=np.float64)


@dataclass
class PairwiseMatches:
    """
    Matched pixels between two images.

    Attributes:
        image1: Index of the first image
        image2: Index of the second image
        pixels1: (N, 2) pixels in the first image
        pixels2: (N, 2) matching pixels in the second image
    """
    image1: int
    image2: int
    pixels1: np.ndarray
    pixels2: np.ndarray

    def __post_init__(self):
        self.pixels1 = np.asarray(self.pixels1, dtype=np.float64).reshape(-1, 2)
        self.pixels2 = np.asarray(self.pixels2, dtype=np.float64).reshape(-1, 2)
        if len(self.pixels1) != len(self.pixels2):
            raise ValueError(
                f"Mismatched match counts for images {self.image1} and {self.image2}: "
                f"{len(self.pixels1)} vs {len(self.pixels2)}"
            )

    def __len__(self) -> int:
        return len(self.pixels1)


class OutlierSet:
    """
    Tie points, and individual observations, excluded from the solve.

    Only ever grows. Observations are keyed by (point id, observation index).
    """

    def __init__(self):
        self.points: Set[int] = set()
        self.observations: Set[Tuple[int, int]] = set()

    def __len__(self) -> int:
        return len(self.points)

    def __contains__(self, point_id: int) -> bool:
        return point_id in self.points

    def mark_point(self, point_id: int) -> None:
        self.points.add(point_id)

    def mark_observation(self, point_id: int, obs_index: int) -> None:
        self.observations.add((point_id, obs_index))

    def is_active(self, point_id: int, obs_index: int) -> bool:
        return point_id not in self.points and (point_id, obs_index) not in self.observations

    def copy(self) -> "OutlierSet":
        other = OutlierSet()
        other.points = set(self.points)
        other.observations = set(self.observations)
        return other


class ControlNetwork:
    """Tie points and their observations across a set of cameras."""

    def __init__(self, num_cameras: int, points: Optional[List[TiePoint]] = None):
        if num_cameras < 2:
            raise ValueError("Expecting at least two cameras.")
        self.num_cameras = num_cameras
        self.points: List[TiePoint] = list(points) if points else []

    @property
    def num_points(self) -> int:
        return len(self.points)

    def add_point(self, position: np.ndarray, observations: Sequence[Observation]) -> int:
        for obs in observations:
            if not 0 <= obs.camera_index < self.num_cameras:
                raise ValueError(f"Observation references unknown camera {obs.camera_index}")
        self.points.append(TiePoint(position, list(observations)))
        return len(self.points) - 1

    def active_observations(self, outliers: OutlierSet) -> Iterator[Tuple[int, int, Observation]]:
        """Yield (point id, observation index, observation) for non-outlier observations."""
        for point_id, pt in enumerate(self.points):
            if point_id in outliers:
                continue
            for obs_index, obs in enumerate(pt.observations):
                if outliers.is_active(point_id, obs_index):
                    yield point_id, obs_index, obs

    def observations_by_camera(self) -> Dict[int, List[Tuple[int, int]]]:
        """Map camera index to the (point id, observation index) pairs it sees."""
        by_camera: Dict[int, List[Tuple[int, int]]] = {i: [] for i in range(self.num_cameras)}
        for point_id, pt in enumerate(self.points):
            for obs_index, obs in enumerate(pt.observations):
                by_camera[obs.camera_index].append((point_id, obs_index))
        return by_camera


def build_tracks(
    matches: Sequence[PairwiseMatches],
    settings: NetworkSettings,
) -> List[Dict[int, np.ndarray]]:
    """
    Merge pairwise matches into tracks of {image index: pixel}.

    Pixels that are identical in the same image link matches from different
    pairs. Pairs with fewer than ``min_matches`` are skipped and pairs with
    more than ``max_pairwise_matches`` are randomly subsampled. Tracks that
    see one image at two different pixels are dropped.
    """
    rng = np.random.default_rng(settings.random_seed)
    parent: Dict[Tuple[int, float, float], Tuple[int, float, float]] = {}

    def find(key):
        root = key
        while parent[root] != root:
            root = parent[root]
        while parent[key] != root:
            parent[key], key = root, parent[key]
        return root

    def union(a, b):
        for key in (a, b):
            parent.setdefault(key, key)
        ra, rb = find(a), find(b)
        if ra != rb:
            parent[rb] = ra

    for pair in matches:
        if pair.image1 == pair.image2:
            raise ValueError(f"Cannot match image {pair.image1} with itself")

        if len(pair) < settings.min_matches:
            logger.warning(
                f"Skipping image pair ({pair.image1}, {pair.image2}) with only "
                f"{len(pair)} matches, need {settings.min_matches}"
            )
            continue

        indices = np.arange(len(pair))
        if len(pair) > settings.max_pairwise_matches:
            indices = np.sort(rng.choice(len(pair), settings.max_pairwise_matches, replace=False))
            logger.info(
                f"Subsampled image pair ({pair.image1}, {pair.image2}) from "
                f"{len(pair)} to {len(indices)} matches"
            )

        for k in indices:
            key1 = (pair.image1, float(pair.pixels1[k, 0]), float(pair.pixels1[k, 1]))
            key2 = (pair.image2, float(pair.pixels2[k, 0]), float(pair.pixels2[k, 1]))
            union(key1, key2)

    groups: Dict[Tuple[int, float, float], List[Tuple[int, float, float]]] = {}
    for key in parent:
        groups.setdefault(find(key), []).append(key)

    tracks = []
    num_conflicting = 0
    for keys in groups.values():
        images = [key[0] for key in keys]
        if len(set(images)) != len(images):
            num_conflicting += 1
            continue
        tracks.append({img: np.array([s, l]) for img, s, l in sorted(keys)})

    if num_conflicting:
        logger.info(f"Dropped {num_conflicting} tracks seeing the same image more than once")
    logger.info(f"Built {len(tracks)} tracks from {len(matches)} image pairs")
    return tracks


def triangulate_network(
    cameras: Sequence[CameraModel],
    tracks: Sequence[Dict[int, np.ndarray]],
    settings: NetworkSettings,
) -> ControlNetwork:
    """
    Triangulate each track with the nominal cameras.

    Tracks with a non-finite triangulation, including those whose rays
    converge by less than the minimum angle, are left out of the network.
    """
    network = ControlNetwork(len(cameras))
    num_failed = 0
    for track in tracks:
        observations = [Observation(cam_index, pixel) for cam_index, pixel in sorted(track.items())]
        point = triangulate_track(
            cameras,
            [(obs.camera_index, obs.pixel) for obs in observations],
            settings.min_triangulation_angle,
        )
        if not np.all(np.isfinite(point)):
            num_failed += 1
            continue
        network.add_point(point, observations)

    logger.info(f"Triangulated {network.num_points} tie points, rejected {num_failed}")
    return network


def flag_outliers(
    network: ControlNetwork,
    cameras: Sequence[CameraModel],
    settings: NetworkSettings,
    outliers: Optional[OutlierSet] = None,
) -> OutlierSet:
    """
    Flag tie points that do not reproject within ``max_init_reproj_error``.

    Observations are visited camera by camera. If projecting the tie point
    fails or misses its observed pixel by more than the maximum error, the
    whole tie point is flagged when ``reject_whole_point`` is set, otherwise
    only the observation. A tie point left with fewer than two observations
    is then flagged too. Points already flagged are skipped, so running the
    filter again does not change the result.

    Returns:
        The outlier set, updated in place if one was passed
    """
    if outliers is None:
        outliers = OutlierSet()
    num_before = len(outliers)
    max_err = settings.max_init_reproj_error

    for cam_index, entries in network.observations_by_camera().items():
        cam = cameras[cam_index]
        for point_id, obs_index in entries:
            if not outliers.is_active(point_id, obs_index):
                continue

            pt = network.points[point_id]
            obs = pt.observations[obs_index]
            try:
                pixel = cam.project(pt.position)
                err = float(np.linalg.norm(pixel - obs.pixel))
            except ProjectionError:
                err = np.nan

            # Written so a NaN error is also flagged
            if not err <= max_err:
                logger.debug(
                    f"Tie point {point_id} reprojects with error {err} in camera {cam_index}"
                )
                if settings.reject_whole_point:
                    outliers.mark_point(point_id)
                else:
                    outliers.mark_observation(point_id, obs_index)

    if not settings.reject_whole_point:
        for point_id, pt in enumerate(network.points):
            if point_id in outliers:
                continue
            num_active = sum(outliers.is_active(point_id, i) for i in range(len(pt.observations)))
            if num_active < 2:
                outliers.mark_point(point_id)

    logger.info(
        f"Flagged {len(outliers) - num_before} new outlier tie points, "
        f"{len(outliers)} of {network.num_points} in total"
    )
    return outliers
