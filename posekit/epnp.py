"""Closed-form camera pose from 3D-2D correspondences (EPnP).

The pose is expressed with four virtual control points. Each world point is
written as a weighted sum of them, and the camera-frame control points are
recovered from the null space of a linear system. Three approximations of
the null-space weights are refined with Gauss-Newton, and the pose with the
lowest mean reprojection error wins.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

_PAIRS = ((0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3))
_GAUSS_NEWTON_ITERATIONS = 5


class SingularMatrixError(ArithmeticError):
    """Raised when a least-squares system has a column that is entirely zero."""


@dataclass(frozen=True)
class Intrinsics:
    """Pinhole camera parameters: focal lengths and principal point."""

    fu: float
    fv: float
    uc: float
    vc: float

    def project(self, rotation, translation, points):
        """Project world points with the pose (rotation, translation) to pixels."""
        r = np.asarray(rotation, dtype=float)
        t = np.asarray(translation, dtype=float).reshape(3)
        pts = _as_points(points, 3, "points")
        cam = pts @ r.T + t
        with np.errstate(divide="ignore", invalid="ignore"):
            inv_z = 1.0 / cam[:, 2]
        u = self.uc + self.fu * cam[:, 0] * inv_z
        v = self.vc + self.fv * cam[:, 1] * inv_z
        return np.column_stack((u, v))


@dataclass(frozen=True)
class PoseEstimate:
    """Rotation and translation mapping world to camera, and their mean reprojection error."""

    rotation: np.ndarray
    translation: np.ndarray
    error: float


def _as_points(points, dim, name):
    arr = np.asarray(points, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != dim:
        raise ValueError(f"{name} must have shape (n, {dim}), got {arr.shape}")
    if len(arr) == 0:
        raise ValueError(f"{name} must hold at least one point")
    return arr


def _correspondences(points_3d, points_2d):
    pws = _as_points(points_3d, 3, "points_3d")
    us = _as_points(points_2d, 2, "points_2d")
    if len(pws) != len(us):
        raise ValueError(
            f"got {len(pws)} world points but {len(us)} image points"
        )
    return pws, us


def choose_control_points(points_3d):
    """Return the 4x3 control points: the centroid and its three principal axes."""
    pws = _as_points(points_3d, 3, "points_3d")
    centroid = pws.mean(axis=0)
    centred = pws - centroid
    u, d, _ = np.linalg.svd(centred.T @ centred)
    scales = np.sqrt(d / len(pws))
    return np.vstack((centroid, centroid + scales[:, None] * u.T))


def barycentric_coordinates(points_3d, control_points):
    """Return the n x 4 weights expressing each point in the control points."""
    pws = _as_points(points_3d, 3, "points_3d")
    cws = np.asarray(control_points, dtype=float)
    if cws.shape != (4, 3):
        raise ValueError(f"control_points must have shape (4, 3), got {cws.shape}")
    cc_inv = np.linalg.pinv((cws[1:] - cws[0]).T)
    rest = (pws - cws[0]) @ cc_inv.T
    first = 1.0 - rest.sum(axis=1)
    return np.column_stack((first, rest))


def _build_m(alphas, us, intrinsics):
    m = np.zeros((2 * len(alphas), 12))
    m[0::2, 0::3] = alphas * intrinsics.fu
    m[0::2, 2::3] = alphas * (intrinsics.uc - us[:, 0])[:, None]
    m[1::2, 1::3] = alphas * intrinsics.fv
    m[1::2, 2::3] = alphas * (intrinsics.vc - us[:, 1])[:, None]
    return m


def _compute_l_6x10(ut):
    dv = [
        np.array([v[a] - v[b] for a, b in _PAIRS])
        for v in (ut[11 - i].reshape(4, 3) for i in range(4))
    ]

    def dot(x, y):
        return np.einsum("ij,ij->i", dv[x], dv[y])

    return np.column_stack((
        dot(0, 0),
        2.0 * dot(0, 1),
        dot(1, 1),
        2.0 * dot(0, 2),
        2.0 * dot(1, 2),
        dot(2, 2),
        2.0 * dot(0, 3),
        2.0 * dot(1, 3),
        2.0 * dot(2, 3),
        dot(3, 3),
    ))


def _compute_rho(cws):
    return np.array([np.sum((cws[a] - cws[b]) ** 2) for a, b in _PAIRS])


def _solve_least_squares(a, b):
    return np.linalg.lstsq(a, b, rcond=None)[0]


# betas10        = [B11 B12 B22 B13 B23 B33 B14 B24 B34 B44]
# betas_approx_1 = [B11 B12     B13         B14]
def _betas_approx_1(l_6x10, rho):
    b4 = _solve_least_squares(l_6x10[:, [0, 1, 3, 6]], rho)
    if b4[0] < 0:
        b0 = np.sqrt(-b4[0])
        return np.array([b0, -b4[1] / b0, -b4[2] / b0, -b4[3] / b0])
    b0 = np.sqrt(b4[0])
    return np.array([b0, b4[1] / b0, b4[2] / b0, b4[3] / b0])


def _first_two_betas(b):
    if b[0] < 0:
        b0 = np.sqrt(-b[0])
        b1 = np.sqrt(-b[2]) if b[2] < 0 else 0.0
    else:
        b0 = np.sqrt(b[0])
        b1 = np.sqrt(b[2]) if b[2] > 0 else 0.0
    if b[1] < 0:
        b0 = -b0
    return b0, b1


# betas_approx_2 = [B11 B12 B22                            ]
def _betas_approx_2(l_6x10, rho):
    b3 = _solve_least_squares(l_6x10[:, :3], rho)
    b0, b1 = _first_two_betas(b3)
    return np.array([b0, b1, 0.0, 0.0])


# betas_approx_3 = [B11 B12 B22 B13 B23                    ]
def _betas_approx_3(l_6x10, rho):
    b5 = _solve_least_squares(l_6x10[:, :5], rho)
    b0, b1 = _first_two_betas(b5)
    return np.array([b0, b1, b5[3] / b0, 0.0])


def qr_solve(a, b):
    """Solve a x = b in the least-squares sense by Householder QR.

    Raises SingularMatrixError when a column has no non-zero pivot candidate.
    """
    a = np.array(a, dtype=float)
    b = np.array(b, dtype=float).reshape(-1)
    if a.ndim != 2:
        raise ValueError("a must be a matrix")
    nr, nc = a.shape
    if len(b) != nr:
        raise ValueError(f"b has {len(b)} rows, a has {nr}")
    if nc == 0 or nr < nc:
        raise ValueError("a must have at least as many rows as columns")

    a1 = np.zeros(nc)
    a2 = np.zeros(nc)
    for k in range(nc):
        # The scale is taken over rows k .. nr-2 (the last row is left out).
        eta = np.max(np.abs(a[k:max(k + 1, nr - 1), k]))
        if eta == 0:
            raise SingularMatrixError("matrix is singular")
        a[k:, k] /= eta
        sigma = math.sqrt(float(a[k:, k] @ a[k:, k]))
        if a[k, k] < 0:
            sigma = -sigma
        a[k, k] += sigma
        a1[k] = sigma * a[k, k]
        a2[k] = -eta * sigma
        tau = (a[k:, k] @ a[k:, k + 1:]) / a1[k]
        a[k:, k + 1:] -= np.outer(a[k:, k], tau)

    for j in range(nc):
        tau = (a[j:, j] @ b[j:]) / a1[j]
        b[j:] -= tau * a[j:, j]

    x = np.zeros(nc)
    x[nc - 1] = b[nc - 1] / a2[nc - 1]
    for i in range(nc - 2, -1, -1):
        x[i] = (b[i] - a[i, i + 1:] @ x[i + 1:]) / a2[i]
    return x


def _gauss_newton_system(l_6x10, rho, betas):
    b0, b1, b2, b3 = betas
    l = l_6x10
    a = np.column_stack((
        2 * l[:, 0] * b0 + l[:, 1] * b1 + l[:, 3] * b2 + l[:, 6] * b3,
        l[:, 1] * b0 + 2 * l[:, 2] * b1 + l[:, 4] * b2 + l[:, 7] * b3,
        l[:, 3] * b0 + l[:, 4] * b1 + 2 * l[:, 5] * b2 + l[:, 8] * b3,
        l[:, 6] * b0 + l[:, 7] * b1 + l[:, 8] * b2 + 2 * l[:, 9] * b3,
    ))
    products = np.array([
        b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2,
        b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3,
    ])
    return a, rho - l @ products


def gauss_newton(l_6x10, rho, betas):
    """Refine the four null-space weights; returns the refined weights."""
    l_6x10 = np.asarray(l_6x10, dtype=float)
    rho = np.asarray(rho, dtype=float).reshape(-1)
    betas = np.array(betas, dtype=float).reshape(4)
    for _ in range(_GAUSS_NEWTON_ITERATIONS):
        a, b = _gauss_newton_system(l_6x10, rho, betas)
        try:
            betas = betas + qr_solve(a, b)
        except SingularMatrixError:
            break
    return betas


def _estimate_r_and_t(pcs, pws):
    pc0 = pcs.mean(axis=0)
    pw0 = pws.mean(axis=0)
    abt = (pcs - pc0).T @ (pws - pw0)
    u, _, vt = np.linalg.svd(abt)
    rotation = u @ vt
    if np.linalg.det(rotation) < 0:
        rotation[2] = -rotation[2]
    translation = pc0 - rotation @ pw0
    return rotation, translation


def reprojection_error(rotation, translation, points_3d, points_2d, intrinsics):
    """Mean pixel distance between the observed and the reprojected points."""
    pws, us = _correspondences(points_3d, points_2d)
    projected = intrinsics.project(rotation, translation, pws)
    return float(np.mean(np.hypot(us[:, 0] - projected[:, 0], us[:, 1] - projected[:, 1])))


def _pose_from_betas(ut, betas, alphas, pws, us, intrinsics):
    ccs = sum(beta * ut[11 - i].reshape(4, 3) for i, beta in enumerate(betas))
    pcs = alphas @ ccs
    if pcs[0, 2] < 0.0:
        pcs = -pcs
    rotation, translation = _estimate_r_and_t(pcs, pws)
    error = reprojection_error(rotation, translation, pws, us, intrinsics)
    return PoseEstimate(rotation, translation, error)


def solve_pose(points_3d, points_2d, intrinsics):
    """Estimate the camera pose from world points and their image projections."""
    pws, us = _correspondences(points_3d, points_2d)
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        cws = choose_control_points(pws)
        alphas = barycentric_coordinates(pws, cws)
        m = _build_m(alphas, us, intrinsics)
        u, _, _ = np.linalg.svd(m.T @ m)
        ut = u.T

        l_6x10 = _compute_l_6x10(ut)
        rho = _compute_rho(cws)

        candidates = [
            _pose_from_betas(
                ut, gauss_newton(l_6x10, rho, approx(l_6x10, rho)), alphas, pws, us, intrinsics
            )
            for approx in (_betas_approx_1, _betas_approx_2, _betas_approx_3)
        ]

    best = candidates[0]
    for candidate in candidates[1:]:
        if candidate.error < best.error:
            best = candidate
    return best


def mat_to_quat(rotation):
    """Return the quaternion of a rotation matrix, vector part first."""
    r = np.asarray(rotation, dtype=float)
    tr = r[0, 0] + r[1, 1] + r[2, 2]
    if tr > 0.0:
        q = np.array([r[1, 2] - r[2, 1], r[2, 0] - r[0, 2], r[0, 1] - r[1, 0], tr + 1.0])
        n4 = q[3]
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        q = np.array([
            1.0 + r[0, 0] - r[1, 1] - r[2, 2],
            r[1, 0] + r[0, 1],
            r[2, 0] + r[0, 2],
            r[1, 2] - r[2, 1],
        ])
        n4 = q[0]
    elif r[1, 1] > r[2, 2]:
        q = np.array([
            r[1, 0] + r[0, 1],
            1.0 + r[1, 1] - r[0, 0] - r[2, 2],
            r[2, 1] + r[1, 2],
            r[2, 0] - r[0, 2],
        ])
        n4 = q[1]
    else:
        q = np.array([
            r[2, 0] + r[0, 2],
            r[2, 1] + r[1, 2],
            1.0 + r[2, 2] - r[0, 0] - r[1, 1],
            r[0, 1] - r[1, 0],
        ])
        n4 = q[2]
    return q * (0.5 / math.sqrt(n4))


def relative_error(rotation_true, translation_true, rotation_est, translation_est):
    """Return (rotation error, translation error) of an estimate, both relative."""
    q_true = mat_to_quat(rotation_true)
    q_est = mat_to_quat(rotation_est)
    t_true = np.asarray(translation_true, dtype=float).reshape(3)
    t_est = np.asarray(translation_est, dtype=float).reshape(3)
    with np.errstate(divide="ignore", invalid="ignore"):
        q_norm = np.linalg.norm(q_true)
        rot_err = min(
            np.linalg.norm(q_true - q_est) / q_norm,
            np.linalg.norm(q_true + q_est) / q_norm,
        )
        transl_err = np.linalg.norm(t_true - t_est) / np.linalg.norm(t_true)
    return float(rot_err), float(transl_err)


def format_pose(rotation, translation):
    """Render a pose as three lines of 'r0 r1 r2 t'."""
    r = np.asarray(rotation, dtype=float)
    t = np.asarray(translation, dtype=float).reshape(3)
    lines = (
        " ".join(f"{float(value):g}" for value in (*row, ti))
        for row, ti in zip(r, t)
    )
    return "".join(f"{line}\n" for line in lines)