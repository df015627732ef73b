import math

import numpy as np
import pytest

from slamkit.lie import (
    SE3,
    SO3,
    angle_axis_to_matrix,
    euler_angles_zyx,
    hat,
    matrix_to_quaternion,
    quaternion_to_matrix,
    transform_between_frames,
    vee,
)


def test_hat_vee_round_trip():
    w = np.array([0.3, -1.2, 2.5])
    assert np.allclose(vee(hat(w)), w)
    assert np.allclose(hat(w), -hat(w).T)


def test_hat_is_cross_product():
    w = np.array([0.1, 0.2, 0.3])
    v = np.array([-1.0, 4.0, 2.0])
    assert np.allclose(hat(w) @ v, np.cross(w, v))


def test_hat_rejects_wrong_shape():
    with pytest.raises(ValueError):
        hat([1.0, 2.0])


def test_quarter_turn_about_z():
    r = angle_axis_to_matrix(math.pi / 2, [0, 0, 1])
    assert np.allclose(r @ np.array([1.0, 0.0, 0.0]), [0.0, 1.0, 0.0])


def test_quaternion_matrix_round_trip():
    r = quaternion_to_matrix(0.35, 0.2, 0.3, 0.1)
    q = matrix_to_quaternion(r)
    assert np.isclose(np.linalg.norm(q), 1.0)
    assert np.allclose(quaternion_to_matrix(*q), r)


def test_identity_quaternion():
    assert np.allclose(matrix_to_quaternion(np.eye(3)), [1.0, 0.0, 0.0, 0.0])


def test_zero_quaternion_rejected():
    with pytest.raises(ValueError):
        SO3.from_quaternion(0, 0, 0, 0)


def test_so3_from_matrix_and_quaternion_agree():
    r = angle_axis_to_matrix(math.pi / 2, [0, 0, 1])
    q = matrix_to_quaternion(r)
    assert np.allclose(SO3(r).matrix(), SO3.from_quaternion(*q).matrix())


def test_so3_rejects_non_rotation():
    with pytest.raises(ValueError):
        SO3(np.diag([1.0, 1.0, -1.0]))


def test_so3_exp_matches_angle_axis():
    axis = np.array([1.0, 2.0, -0.5])
    axis /= np.linalg.norm(axis)
    angle = 1.1
    assert np.allclose(SO3.exp(angle * axis).matrix(), angle_axis_to_matrix(angle, axis))


@pytest.mark.parametrize(
    "omega", [[0.1, -0.2, 0.3], [1e-12, 0.0, 0.0], [0.0, 0.0, math.pi - 1e-6], [2.0, 0.5, -1.0]]
)
def test_so3_exp_log_round_trip(omega):
    rot = SO3.exp(omega)
    assert np.allclose(SO3.exp(rot.log()).matrix(), rot.matrix(), atol=1e-9)


def test_so3_log_of_half_turn():
    rot = SO3.exp([0.0, 0.0, math.pi])
    assert np.isclose(np.linalg.norm(rot.log()), math.pi)


def test_so3_inverse_composes_to_identity():
    rot = SO3.exp([0.4, -0.2, 0.9])
    assert np.allclose((rot * rot.inverse()).matrix(), np.eye(3))


def test_so3_rotates_point_arrays():
    rot = SO3.exp([0.4, -0.2, 0.9])
    pts = np.array([[1.0, 2.0, 3.0], [-1.0, 0.5, 0.0]])
    out = rot * pts
    assert np.allclose(out[1], rot * pts[1])
    assert np.allclose(np.linalg.norm(out, axis=1), np.linalg.norm(pts, axis=1))


def test_se3_log_puts_translation_first():
    t = SE3(None, [1.0, 0.0, 0.0])
    assert np.allclose(t.log(), [1.0, 0.0, 0.0, 0.0, 0.0, 0.0])


@pytest.mark.parametrize("xi", [[0.1, 0.2, -0.3, 0.4, -0.5, 0.6], [1.0, -2.0, 3.0, 0.0, 0.0, 0.0]])
def test_se3_exp_log_round_trip(xi):
    assert np.allclose(SE3.exp(xi).log(), xi)


def test_se3_hat_vee_round_trip():
    xi = np.array([0.5, -0.1, 0.2, 0.3, 0.7, -0.9])
    assert np.allclose(SE3.vee(SE3.hat(xi)), xi)


def test_se3_inverse_and_matrix():
    t = SE3.from_quaternion(0.35, 0.2, 0.3, 0.1, [0.3, 0.1, 0.1])
    assert np.allclose((t * t.inverse()).matrix(), np.eye(4))
    assert np.allclose(np.linalg.inv(t.matrix()), t.inverse().matrix())
    assert np.allclose(t.matrix3x4(), t.matrix()[:3, :])


def test_se3_adjoint_property():
    t = SE3.exp([0.3, -0.4, 0.5, 0.2, 0.1, -0.3])
    xi = np.array([0.01, 0.02, -0.03, 0.04, 0.05, -0.06])
    lhs = t * SE3.exp(xi) * t.inverse()
    rhs = SE3.exp(t.adjoint() @ xi)
    assert np.allclose(lhs.matrix(), rhs.matrix())


def test_se3_point_transform_matches_matrix():
    t = SE3.exp([1.0, 2.0, 3.0, 0.1, 0.2, 0.3])
    p = np.array([0.5, 0.0, 0.2])
    assert np.allclose(t * p, (t.matrix() @ np.append(p, 1.0))[:3])


def test_euler_angles_reconstruct_matrix():
    r = SO3.exp([0.3, -0.7, 1.2]).matrix()
    yaw, pitch, roll = euler_angles_zyx(r)
    rebuilt = (
        angle_axis_to_matrix(yaw, [0, 0, 1])
        @ angle_axis_to_matrix(pitch, [0, 1, 0])
        @ angle_axis_to_matrix(roll, [1, 0, 0])
    )
    assert np.allclose(rebuilt, r)
    assert 0.0 <= yaw <= math.pi


def test_transform_between_frames_round_trip():
    t1w = SE3.from_quaternion(0.35, 0.2, 0.3, 0.1, [0.3, 0.1, 0.1])
    t2w = SE3.from_quaternion(-0.5, 0.4, -0.1, 0.2, [-0.1, 0.5, 0.3])
    p1 = np.array([0.5, 0.0, 0.2])
    p2 = transform_between_frames(t1w, t2w, p1)
    assert np.allclose(transform_between_frames(t2w, t1w, p2), p1)
    assert np.isclose(np.linalg.norm(t2w.inverse() * p2), np.linalg.norm(t1w.inverse() * p1))