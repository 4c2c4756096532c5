"""RANSAC camera pose estimation from 3D-2D matches, with EPnP hypotheses.

Minimal sets are drawn at random and solved in closed form. A hypothesis
supported by enough inliers is refined with all of the best inliers so far.
The solver keeps its iteration count between calls, so RANSAC can be run a
few iterations at a time.
"""

from __future__ import annotations

import math
import random
from dataclasses import dataclass

import numpy as np

from posekit.epnp import Intrinsics, PoseEstimate, solve_pose


@dataclass(frozen=True)
class Correspondence:
    """A world point matched to an undistorted image point.

    ``sigma2`` is the variance of the image measurement (its pyramid level),
    and ``index`` is the position of the match in the caller's match list.
    """

    point_3d: tuple[float, float, float]
    point_2d: tuple[float, float]
    sigma2: float = 1.0
    index: int = 0


@dataclass(frozen=True)
class RansacResult:
    """Outcome of a RANSAC run.

    ``pose`` is the 4x4 world-to-camera transform, or None when nothing was
    found. ``inliers`` is indexed like the caller's match list (empty when no
    pose was found). ``no_more`` tells that the iteration budget is spent.
    """

    pose: np.ndarray | None
    inliers: list[bool]
    n_inliers: int
    no_more: bool

    @property
    def found(self) -> bool:
        return self.pose is not None


def _pose_matrix(rotation, translation):
    pose = np.eye(4, dtype=np.float32)
    pose[:3, :3] = np.asarray(rotation, dtype=np.float32)
    pose[:3, 3] = np.asarray(translation, dtype=np.float32).reshape(3)
    return pose


class PnPSolver:
    """RANSAC solver for the pose of a camera that observes known world points."""

    def __init__(self, correspondences, num_matches, intrinsics: Intrinsics, rng=None):
        self._correspondences = list(correspondences)
        for c in self._correspondences:
            if not 0 <= c.index < num_matches:
                raise ValueError(
                    f"correspondence index {c.index} outside 0..{num_matches - 1}"
                )
        self.num_matches = num_matches
        self.intrinsics = intrinsics
        self._rng = rng if rng is not None else random.Random()

        n = len(self._correspondences)
        self._n = n
        self._points_3d = np.array(
            [c.point_3d for c in self._correspondences], dtype=float
        ).reshape(n, 3)
        self._points_2d = np.array(
            [c.point_2d for c in self._correspondences], dtype=float
        ).reshape(n, 2)
        self._sigma2 = np.array([c.sigma2 for c in self._correspondences], dtype=float)
        self._keypoint_indices = [c.index for c in self._correspondences]

        self._iterations = 0
        self._best_inliers = np.zeros(n, dtype=bool)
        self._best_count = 0
        self._best_pose: np.ndarray | None = None

        self.set_ransac_parameters()

    def __len__(self) -> int:
        return self._n

    @property
    def iterations_done(self) -> int:
        return self._iterations

    def set_ransac_parameters(
        self,
        probability=0.99,
        min_inliers=8,
        max_iterations=300,
        min_set=4,
        epsilon=0.4,
        th2=5.991,
    ):
        """Set the RANSAC parameters, adjusted to the number of correspondences."""
        n = self._n
        self.probability = probability
        self.min_set = min_set

        adjusted = max(int(n * epsilon), min_inliers, min_set)
        self.min_inliers = adjusted

        if n > 0 and epsilon < adjusted / n:
            epsilon = adjusted / n
        self.epsilon = epsilon

        if n == 0 or adjusted == n:
            n_iterations = 1
        else:
            n_iterations = self._iterations_for(probability, epsilon, max_iterations)
        self.max_iterations = max(1, min(n_iterations, max_iterations))

        self.max_errors = self._sigma2 * th2

    @staticmethod
    def _iterations_for(probability, epsilon, max_iterations):
        denom = 1.0 - epsilon**3
        if denom <= 0.0:
            return 0
        if denom >= 1.0 or probability >= 1.0:
            return max_iterations
        return math.ceil(math.log(1.0 - probability) / math.log(denom))

    def find(self) -> RansacResult:
        """Run RANSAC up to the full iteration budget."""
        return self.iterate(self.max_iterations)

    def iterate(self, n_iterations) -> RansacResult:
        """Run at least ``n_iterations`` more iterations, or until the budget is spent."""
        if self._n < self.min_inliers:
            return RansacResult(None, [], 0, True)

        current = 0
        while self._iterations < self.max_iterations or current < n_iterations:
            current += 1
            self._iterations += 1

            estimate = self._estimate(self._sample())
            if estimate is None:
                continue
            mask = self.check_inliers(estimate.rotation, estimate.translation)
            count = int(mask.sum())

            if count >= self.min_inliers:
                if count > self._best_count:
                    self._best_inliers = mask
                    self._best_count = count
                    self._best_pose = _pose_matrix(estimate.rotation, estimate.translation)

                refined = self.refine()
                if refined is not None:
                    return refined

        if self._iterations >= self.max_iterations:
            if self._best_pose is not None and self._best_count >= self.min_inliers:
                return RansacResult(
                    self._best_pose.copy(),
                    self._to_match_mask(self._best_inliers),
                    self._best_count,
                    True,
                )
            return RansacResult(None, [], 0, True)
        return RansacResult(None, [], 0, False)

    def refine(self) -> RansacResult | None:
        """Re-estimate the pose from all the best inliers.

        Returns the refined result when it keeps more than the minimum number
        of inliers, and None otherwise.
        """
        indices = np.flatnonzero(self._best_inliers)
        if len(indices) == 0:
            raise ValueError("no hypothesis with inliers to refine")
        estimate = self._estimate(indices)
        if estimate is None:
            return None
        mask = self.check_inliers(estimate.rotation, estimate.translation)
        count = int(mask.sum())
        if count > self.min_inliers:
            return RansacResult(
                _pose_matrix(estimate.rotation, estimate.translation),
                self._to_match_mask(mask),
                count,
                False,
            )
        return None

    def check_inliers(self, rotation, translation) -> np.ndarray:
        """Return a mask of the correspondences whose reprojection error is small enough."""
        if self._n == 0:
            return np.zeros(0, dtype=bool)
        projected = self.intrinsics.project(rotation, translation, self._points_3d)
        with np.errstate(invalid="ignore", over="ignore"):
            error2 = np.sum((self._points_2d - projected) ** 2, axis=1)
            return error2 < self.max_errors

    def _sample(self):
        available = list(range(self._n))
        chosen = []
        for _ in range(self.min_set):
            k = self._rng.randint(0, len(available) - 1)
            chosen.append(available[k])
            available[k] = available[-1]
            available.pop()
        return chosen

    def _estimate(self, indices) -> PoseEstimate | None:
        try:
            return solve_pose(
                self._points_3d[indices], self._points_2d[indices], self.intrinsics
            )
        except np.linalg.LinAlgError:
            return None

    def _to_match_mask(self, mask):
        result = [False] * self.num_matches
        for index, is_inlier in zip(self._keypoint_indices, mask):
            if is_inlier:
                result[index] = True
        return result