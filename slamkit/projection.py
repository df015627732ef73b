"""Reprojection errors and their Jacobians for pose and landmark optimisation."""

from __future__ import annotations

import numpy as np

from slamkit.lie import SE3


def _intrinsics(value) -> np.ndarray:
    k = np.asarray(value, dtype=float)
    if k.shape != (3, 3):
        raise ValueError(f"intrinsics must be a 3x3 matrix, got shape {k.shape}")
    return k.copy()


def _vec(value, size: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (size,):
        raise ValueError(f"{name} must have shape ({size},), got {arr.shape}")
    return arr


def oplus_pose(pose: SE3, update) -> SE3:
    """Left-multiplicative update exp(update) * pose; update is (translation, rotation)."""
    return SE3.exp(update) * pose


def _project(k: np.ndarray, pos_cam: np.ndarray) -> np.ndarray:
    pixel = k @ pos_cam
    return pixel[:2] / pixel[2]


def _pose_jacobian(k: np.ndarray, pos_cam: np.ndarray) -> np.ndarray:
    fx, fy = k[0, 0], k[1, 1]
    x, y, z = pos_cam
    zinv = 1.0 / (z + 1e-18)
    zinv2 = zinv * zinv
    return np.array(
        [
            [-fx * zinv, 0.0, fx * x * zinv2, fx * x * y * zinv2, -fx - fx * x * x * zinv2, fx * y * zinv],
            [0.0, -fy * zinv, fy * y * zinv2, fy + fy * y * y * zinv2, -fy * x * y * zinv2, -fy * x * zinv],
        ]
    )


class PoseOnlyProjection:
    """Reprojection of a fixed world point; only the camera pose is estimated."""

    def __init__(self, position, intrinsics):
        self.position = _vec(position, 3, "position").copy()
        self.intrinsics = _intrinsics(intrinsics)

    def error(self, pose: SE3, measurement) -> np.ndarray:
        """Measured pixel minus the projection of the point under ``pose``."""
        return _vec(measurement, 2, "measurement") - _project(self.intrinsics, pose * self.position)

    def jacobian(self, pose: SE3) -> np.ndarray:
        """2x6 derivative of the error with respect to a left update of ``pose``."""
        return _pose_jacobian(self.intrinsics, pose * self.position)


class StereoProjection:
    """Reprojection into one camera of a stereo rig; pose and point are both estimated."""

    def __init__(self, intrinsics, cam_ext: SE3):
        self.intrinsics = _intrinsics(intrinsics)
        self.cam_ext = cam_ext

    def error(self, pose: SE3, point, measurement) -> np.ndarray:
        pw = _vec(point, 3, "point")
        pos_cam = self.cam_ext * (pose * pw)
        return _vec(measurement, 2, "measurement") - _project(self.intrinsics, pos_cam)

    def jacobians(self, pose: SE3, point) -> tuple[np.ndarray, np.ndarray]:
        """The 2x6 Jacobian for the pose and the 2x3 Jacobian for the point."""
        pw = _vec(point, 3, "point")
        pos_cam = self.cam_ext * (pose * pw)
        j_pose = _pose_jacobian(self.intrinsics, pos_cam)
        j_point = j_pose[:, :3] @ self.cam_ext.rotation.matrix() @ pose.rotation.matrix()
        return j_pose, j_point