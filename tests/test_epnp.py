import math

import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from posekit.epnp import (
    Intrinsics,
    PoseEstimate,
    SingularMatrixError,
    barycentric_coordinates,
    choose_control_points,
    format_pose,
    gauss_newton,
    mat_to_quat,
    qr_solve,
    relative_error,
    reprojection_error,
    solve_pose,
)

INTRINSICS = Intrinsics(fu=500.0, fv=520.0, uc=320.0, vc=240.0)


def _axis_angle(axis, angle):
    axis = np.asarray(axis, dtype=float)
    axis = axis / np.linalg.norm(axis)
    k = np.array([
        [0.0, -axis[2], axis[1]],
        [axis[2], 0.0, -axis[0]],
        [-axis[1], axis[0], 0.0],
    ])
    return np.eye(3) + math.sin(angle) * k + (1 - math.cos(angle)) * (k @ k)


def _from_quaternion(w, x, y, z):
    n = math.sqrt(w * w + x * x + y * y + z * z)
    w, x, y, z = w / n, x / n, y / n, z / n
    return np.array([
        [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
        [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
        [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
    ])


def _scene(n=20, seed=0):
    rng = np.random.default_rng(seed)
    points = rng.uniform(-1.0, 1.0, size=(n, 3))
    rotation = _axis_angle([0.2, 1.0, -0.3], 0.4)
    translation = np.array([0.1, -0.2, 5.0])
    pixels = INTRINSICS.project(rotation, translation, points)
    return points, pixels, rotation, translation


def test_project_point_on_optical_axis_hits_principal_point():
    uv = INTRINSICS.project(np.eye(3), np.zeros(3), [[0.0, 0.0, 2.0]])
    np.testing.assert_allclose(uv, [[INTRINSICS.uc, INTRINSICS.vc]])


def test_project_is_invariant_along_a_ray():
    point = np.array([[0.3, -0.7, 2.0]])
    near = INTRINSICS.project(np.eye(3), np.zeros(3), point)
    far = INTRINSICS.project(np.eye(3), np.zeros(3), point * 3.5)
    np.testing.assert_allclose(near, far)


@pytest.mark.parametrize("n", [6, 20, 60])
def test_solve_pose_recovers_exact_pose(n):
    points, pixels, rotation, translation = _scene(n=n, seed=n)
    estimate = solve_pose(points, pixels, INTRINSICS)
    assert isinstance(estimate, PoseEstimate)
    np.testing.assert_allclose(estimate.rotation, rotation, atol=1e-6)
    np.testing.assert_allclose(estimate.translation, translation, atol=1e-6)
    assert estimate.error < 1e-6


def test_solve_pose_rotation_is_proper():
    points, pixels, _, _ = _scene(seed=3)
    estimate = solve_pose(points, pixels, INTRINSICS)
    np.testing.assert_allclose(estimate.rotation @ estimate.rotation.T, np.eye(3), atol=1e-9)
    assert np.linalg.det(estimate.rotation) == pytest.approx(1.0)


def test_solve_pose_with_noise_is_close():
    points, pixels, rotation, translation = _scene(n=80, seed=7)
    noisy = pixels + np.random.default_rng(1).normal(0.0, 0.5, size=pixels.shape)
    estimate = solve_pose(points, noisy, INTRINSICS)
    rot_err, transl_err = relative_error(rotation, translation, estimate.rotation, estimate.translation)
    assert rot_err < 0.01
    assert transl_err < 0.02
    assert estimate.error == pytest.approx(
        reprojection_error(estimate.rotation, estimate.translation, points, noisy, INTRINSICS)
    )


def test_solve_pose_rejects_mismatched_counts():
    points, pixels, _, _ = _scene()
    with pytest.raises(ValueError):
        solve_pose(points, pixels[:-1], INTRINSICS)


def test_solve_pose_rejects_bad_shapes_and_empty_input():
    with pytest.raises(ValueError):
        solve_pose(np.zeros((5, 2)), np.zeros((5, 2)), INTRINSICS)
    with pytest.raises(ValueError):
        solve_pose(np.zeros((0, 3)), np.zeros((0, 2)), INTRINSICS)


def test_control_points_centroid_and_orthogonal_axes():
    points, _, _, _ = _scene(seed=11)
    cws = choose_control_points(points)
    assert cws.shape == (4, 3)
    np.testing.assert_allclose(cws[0], points.mean(axis=0))
    axes = cws[1:] - cws[0]
    gram = axes @ axes.T
    np.testing.assert_allclose(gram - np.diag(np.diag(gram)), np.zeros((3, 3)), atol=1e-12)


def test_barycentric_coordinates_reconstruct_points():
    points, _, _, _ = _scene(seed=5)
    cws = choose_control_points(points)
    alphas = barycentric_coordinates(points, cws)
    np.testing.assert_allclose(alphas.sum(axis=1), np.ones(len(points)))
    np.testing.assert_allclose(alphas @ cws, points, atol=1e-12)


def test_qr_solve_matches_least_squares():
    rng = np.random.default_rng(2)
    a = rng.normal(size=(6, 4))
    b = rng.normal(size=6)
    a_before, b_before = a.copy(), b.copy()
    x = qr_solve(a, b)
    np.testing.assert_allclose(x, np.linalg.lstsq(a, b, rcond=None)[0], atol=1e-10)
    np.testing.assert_array_equal(a, a_before)
    np.testing.assert_array_equal(b, b_before)


def test_qr_solve_square_system():
    rng = np.random.default_rng(4)
    a = rng.normal(size=(4, 4))
    x_true = rng.normal(size=4)
    np.testing.assert_allclose(qr_solve(a, a @ x_true), x_true, atol=1e-10)


def test_qr_solve_zero_column_is_singular():
    a = np.ones((6, 4))
    a[:, 2] = 0.0
    with pytest.raises(SingularMatrixError):
        qr_solve(a, np.ones(6))


def _l_and_rho(betas, seed=9):
    l_6x10 = np.random.default_rng(seed).normal(size=(6, 10))
    b0, b1, b2, b3 = betas
    products = np.array([
        b0 * b0, b0 * b1, b1 * b1, b0 * b2, b1 * b2,
        b2 * b2, b0 * b3, b1 * b3, b2 * b3, b3 * b3,
    ])
    return l_6x10, l_6x10 @ products


def test_gauss_newton_converges_from_nearby_start():
    betas_true = np.array([0.8, -0.3, 0.5, 0.2])
    l_6x10, rho = _l_and_rho(betas_true)
    start = betas_true + 0.01
    refined = gauss_newton(l_6x10, rho, start)
    np.testing.assert_allclose(refined, betas_true, atol=1e-8)
    np.testing.assert_allclose(start, betas_true + 0.01)


def test_gauss_newton_keeps_exact_solution():
    betas_true = np.array([1.2, 0.4, -0.6, 0.1])
    l_6x10, rho = _l_and_rho(betas_true, seed=12)
    np.testing.assert_allclose(gauss_newton(l_6x10, rho, betas_true), betas_true, atol=1e-12)


def test_reprojection_error_of_exact_pose_vanishes():
    points, pixels, rotation, translation = _scene(seed=8)
    assert reprojection_error(rotation, translation, points, pixels, INTRINSICS) < 1e-9


def test_reprojection_error_is_mean_pixel_distance():
    points, pixels, rotation, translation = _scene(seed=8)
    shifted = pixels + np.array([3.0, 4.0])
    assert reprojection_error(rotation, translation, points, shifted, INTRINSICS) == pytest.approx(5.0)


def test_mat_to_quat_identity():
    np.testing.assert_allclose(mat_to_quat(np.eye(3)), [0.0, 0.0, 0.0, 1.0])


@pytest.mark.parametrize("angle", [0.1, 0.7, 1.5, 2.5])
def test_mat_to_quat_scalar_part_is_half_angle_cosine(angle):
    q = mat_to_quat(_axis_angle([0.0, 0.0, 1.0], angle))
    assert abs(q[3]) == pytest.approx(math.cos(angle / 2))


@settings(max_examples=60)
@given(
    st.floats(-1, 1), st.floats(-1, 1), st.floats(-1, 1), st.floats(-1, 1),
)
def test_mat_to_quat_is_unit_and_self_error_is_zero(w, x, y, z):
    if w * w + x * x + y * y + z * z < 0.01:
        w = 1.0
    rotation = _from_quaternion(w, x, y, z)
    q = mat_to_quat(rotation)
    assert np.linalg.norm(q) == pytest.approx(1.0, abs=1e-9)
    translation = np.array([1.0, 2.0, 3.0])
    rot_err, transl_err = relative_error(rotation, translation, rotation, translation)
    assert rot_err == pytest.approx(0.0, abs=1e-9)
    assert transl_err == pytest.approx(0.0, abs=1e-12)


def test_relative_error_translation_is_scale_free():
    rotation = _axis_angle([1.0, 1.0, 0.0], 0.3)
    t = np.array([0.5, -1.0, 2.0])
    _, err_double = relative_error(rotation, t, rotation, 2 * t)
    _, err_zero = relative_error(rotation, t, rotation, np.zeros(3))
    assert err_double == pytest.approx(err_zero)


def test_relative_error_grows_with_rotation_difference():
    rotation = _axis_angle([0.0, 1.0, 0.0], 0.2)
    small, _ = relative_error(rotation, [0, 0, 1], _axis_angle([0.0, 1.0, 0.0], 0.25), [0, 0, 1])
    large, _ = relative_error(rotation, [0, 0, 1], _axis_angle([0.0, 1.0, 0.0], 0.6), [0, 0, 1])
    assert 0.0 < small < large


def test_format_pose_identity():
    assert format_pose(np.eye(3), np.zeros(3)) == "1 0 0 0\n0 1 0 0\n0 0 1 0\n"


def test_format_pose_has_three_rows_of_four_values():
    _, _, rotation, translation = _scene()
    lines = format_pose(rotation, translation).splitlines()
    assert len(lines) == 3
    parsed = np.array([[float(v) for v in line.split()] for line in lines])
    np.testing.assert_allclose(parsed[:, :3], rotation, rtol=1e-5, atol=1e-6)
    np.testing.assert_allclose(parsed[:, 3], translation, rtol=1e-5)