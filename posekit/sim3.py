"""RANSAC estimation of a similarity transform between two camera frames.

Each correspondence holds the same 3D point expressed in the frame of camera
1 and of camera 2. Minimal sets of three points are aligned in closed form
with Horn's unit-quaternion method. A hypothesis is scored by projecting
each point into both images and comparing against the points' own
projections.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass

import numpy as np

_CHI2_TWO_DOF = 9.210
_MIN_SET = 3


@dataclass(frozen=True)
class Sim3:
    """Similarity mapping frame 2 to frame 1: x1 = scale * rotation @ x2 + translation."""

    rotation: np.ndarray
    translation: np.ndarray
    scale: float

    def matrix(self) -> np.ndarray:
        """Return the 4x4 transform from frame 2 to frame 1."""
        t = np.eye(4)
        t[:3, :3] = self.scale * np.asarray(self.rotation, dtype=float)
        t[:3, 3] = np.asarray(self.translation, dtype=float).reshape(3)
        return t

    def inverse_matrix(self) -> np.ndarray:
        """Return the 4x4 transform from frame 1 to frame 2."""
        sr_inv = (1.0 / self.scale) * np.asarray(self.rotation, dtype=float).T
        t = np.eye(4)
        t[:3, :3] = sr_inv
        t[:3, 3] = -sr_inv @ np.asarray(self.translation, dtype=float).reshape(3)
        return t


@dataclass(frozen=True)
class Sim3Correspondence:
    """One point seen by both cameras, in each camera's own frame.

    ``sigma2_1`` and ``sigma2_2`` are the variances of the image measurements
    in each camera, and ``index`` is the match's position in the caller's list.
    """

    point1: tuple[float, float, float]
    point2: tuple[float, float, float]
    index: int = 0
    sigma2_1: float = 1.0
    sigma2_2: float = 1.0


@dataclass(frozen=True)
class Sim3Result:
    """Outcome of a RANSAC run.

    ``sim3`` is None when nothing was found; ``inliers`` is indexed like the
    caller's match list; ``no_more`` tells that the iteration budget is spent.
    """

    sim3: Sim3 | None
    inliers: list[bool]
    n_inliers: int
    no_more: bool

    @property
    def found(self) -> bool:
        return self.sim3 is not None

    @property
    def transform(self) -> np.ndarray | None:
        return None if self.sim3 is None else self.sim3.matrix()


def _as_points(points, name):
    arr = np.asarray(points, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"{name} must have shape (n, 3), got {arr.shape}")
    return arr


def _intrinsics(camera_matrix):
    k = np.asarray(camera_matrix, dtype=float)
    if k.shape != (3, 3):
        raise ValueError(f"camera matrix must be 3x3, got {k.shape}")
    return k[0, 0], k[1, 1], k[0, 2], k[1, 2]


def compute_centroid(points):
    """Return (points relative to their centroid, centroid) for an n x 3 array."""
    pts = _as_points(points, "points")
    if len(pts) == 0:
        raise ValueError("points must hold at least one point")
    centroid = pts.mean(axis=0)
    return pts - centroid, centroid


def _quaternion_to_rotation(q):
    w, x, y, z = q / np.linalg.norm(q)
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
        [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
        [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
    ])


def compute_sim3(points1, points2, fix_scale=False) -> Sim3:
    """Align points2 onto points1 (both n x 3) with Horn's closed-form method."""
    p1 = _as_points(points1, "points1")
    p2 = _as_points(points2, "points2")
    if p1.shape != p2.shape:
        raise ValueError(f"point sets differ in shape: {p1.shape} and {p2.shape}")
    pr1, o1 = compute_centroid(p1)
    pr2, o2 = compute_centroid(p2)

    m = pr2.T @ pr1
    n11 = m[0, 0] + m[1, 1] + m[2, 2]
    n12 = m[1, 2] - m[2, 1]
    n13 = m[2, 0] - m[0, 2]
    n14 = m[0, 1] - m[1, 0]
    n22 = m[0, 0] - m[1, 1] - m[2, 2]
    n23 = m[0, 1] + m[1, 0]
    n24 = m[2, 0] + m[0, 2]
    n33 = -m[0, 0] + m[1, 1] - m[2, 2]
    n34 = m[1, 2] + m[2, 1]
    n44 = -m[0, 0] - m[1, 1] + m[2, 2]
    n = np.array([
        [n11, n12, n13, n14],
        [n12, n22, n23, n24],
        [n13, n23, n33, n34],
        [n14, n24, n34, n44],
    ])

    # The eigenvector of the largest eigenvalue is the rotation quaternion.
    _, vectors = np.linalg.eigh(n)
    rotation = _quaternion_to_rotation(vectors[:, -1])

    p3 = pr2 @ rotation.T
    if fix_scale:
        scale = 1.0
    else:
        with np.errstate(divide="ignore", invalid="ignore"):
            scale = float(np.sum(pr1 * p3) / np.sum(p3 * p3))

    translation = o1 - scale * rotation @ o2
    return Sim3(rotation, translation, scale)


def project(points, transform, camera_matrix):
    """Transform n x 3 points with a 4x4 matrix and project them to pixels."""
    pts = _as_points(points, "points")
    t = np.asarray(transform, dtype=float)
    if t.shape != (4, 4):
        raise ValueError(f"transform must be 4x4, got {t.shape}")
    return from_camera_to_image(pts @ t[:3, :3].T + t[:3, 3], camera_matrix)


def from_camera_to_image(points, camera_matrix):
    """Project n x 3 camera-frame points to n x 2 pixel coordinates."""
    pts = _as_points(points, "points")
    fx, fy, cx, cy = _intrinsics(camera_matrix)
    with np.errstate(divide="ignore", invalid="ignore"):
        inv_z = 1.0 / pts[:, 2]
        return np.column_stack((
            fx * pts[:, 0] * inv_z + cx,
            fy * pts[:, 1] * inv_z + cy,
        ))


class Sim3Solver:
    """RANSAC solver for the similarity between two cameras seeing the same points."""

    def __init__(
        self,
        correspondences,
        num_matches,
        camera_matrix1,
        camera_matrix2,
        fix_scale=False,
        rng=None,
    ):
        self._correspondences = list(correspondences)
        for c in self._correspondences:
            if not 0 <= c.index < num_matches:
                raise ValueError(
                    f"correspondence index {c.index} outside 0..{num_matches - 1}"
                )
        self.num_matches = num_matches
        self.camera_matrix1 = np.asarray(camera_matrix1, dtype=float)
        self.camera_matrix2 = np.asarray(camera_matrix2, dtype=float)
        _intrinsics(self.camera_matrix1)
        _intrinsics(self.camera_matrix2)
        self.fix_scale = fix_scale
        self._rng = rng if rng is not None else random.Random()

        n = len(self._correspondences)
        self._n = n
        self._points1 = np.array(
            [c.point1 for c in self._correspondences], dtype=float
        ).reshape(n, 3)
        self._points2 = np.array(
            [c.point2 for c in self._correspondences], dtype=float
        ).reshape(n, 3)
        self._max_error1 = _CHI2_TWO_DOF * np.array(
            [c.sigma2_1 for c in self._correspondences], dtype=float
        )
        self._max_error2 = _CHI2_TWO_DOF * np.array(
            [c.sigma2_2 for c in self._correspondences], dtype=float
        )
        self._indices = [c.index for c in self._correspondences]

        self._image1 = from_camera_to_image(self._points1, self.camera_matrix1)
        self._image2 = from_camera_to_image(self._points2, self.camera_matrix2)

        self._best: Sim3 | None = None
        self._best_inliers = np.zeros(n, dtype=bool)
        self._best_count = 0

        self.set_ransac_parameters()

    def __len__(self) -> int:
        return self._n

    @property
    def iterations_done(self) -> int:
        return self._iterations

    @property
    def best_estimate(self) -> Sim3 | None:
        """The hypothesis with the most inliers seen so far."""
        return self._best

    def set_ransac_parameters(self, probability=0.99, min_inliers=6, max_iterations=300):
        """Set the RANSAC parameters and restart the iteration count."""
        n = self._n
        self.probability = probability
        self.min_inliers = min_inliers

        if n == 0 or min_inliers == n:
            n_iterations = 1
        else:
            epsilon = min_inliers / n
            denom = 1.0 - epsilon**3
            if denom <= 0.0:
                n_iterations = 1
            elif denom >= 1.0 or probability >= 1.0:
                n_iterations = max_iterations
            else:
                n_iterations = math.ceil(math.log(1.0 - probability) / math.log(denom))
        self.max_iterations = max(1, min(n_iterations, max_iterations))
        self._iterations = 0

    def find(self) -> Sim3Result:
        """Run RANSAC up to the full iteration budget."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations) -> Sim3Result:
        """Run up to ``n_iterations`` more iterations within the budget."""
        if self._n < self.min_inliers or self._n < _MIN_SET:
            return Sim3Result(None, [False] * self.num_matches, 0, True)

        current = 0
        while self._iterations < self.max_iterations and current < n_iterations:
            current += 1
            self._iterations += 1

            chosen = self._sample()
            sim3 = compute_sim3(
                self._points1[chosen], self._points2[chosen], self.fix_scale
            )
            mask = self.check_inliers(sim3)
            count = int(mask.sum())

            if count >= self._best_count:
                self._best = sim3
                self._best_inliers = mask
                self._best_count = count
                if count > self.min_inliers:
                    return Sim3Result(sim3, self._to_match_mask(mask), count, False)

        no_more = self._iterations >= self.max_iterations
        return Sim3Result(None, [False] * self.num_matches, 0, no_more)

    def check_inliers(self, sim3) -> np.ndarray:
        """Return a mask of the correspondences consistent with ``sim3`` in both images."""
        if self._n == 0:
            return np.zeros(0, dtype=bool)
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            p2_in_1 = project(self._points2, sim3.matrix(), self.camera_matrix1)
            p1_in_2 = project(self._points1, sim3.inverse_matrix(), self.camera_matrix2)
            err1 = np.sum((self._image1 - p2_in_1) ** 2, axis=1)
            err2 = np.sum((p1_in_2 - self._image2) ** 2, axis=1)
            return (err1 < self._max_error1) & (err2 < self._max_error2)

    def _sample(self):
        available = list(range(self._n))
        chosen = []
        for _ in range(_MIN_SET):
            k = self._rng.randint(0, len(available) - 1)
            chosen.append(available[k])
            available[k] = available[-1]
            available.pop()
        return chosen

    def _to_match_mask(self, mask):
        result = [False] * self.num_matches
        for index, is_inlier in zip(self._indices, mask):
            if is_inlier:
                result[index] = True
        return result