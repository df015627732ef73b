"""Rotations and rigid-body transforms: SO(3), SE(3) and their Lie algebras."""

from __future__ import annotations

import math

import numpy as np

_EPS = 1e-10


def _vector(value, size: int, name: str = "vector") -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (size,):
        raise ValueError(f"{name} must have shape ({size},), got {arr.shape}")
    return arr


def _square(value, size: int, name: str = "matrix") -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (size, size):
        raise ValueError(f"{name} must have shape ({size}, {size}), got {arr.shape}")
    return arr


def hat(omega) -> np.ndarray:
    """Skew-symmetric matrix of a 3-vector, so that hat(w) @ v == cross(w, v)."""
    w = _vector(omega, 3, "omega")
    return np.array(
        [
            [0.0, -w[2], w[1]],
            [w[2], 0.0, -w[0]],
            [-w[1], w[0], 0.0],
        ]
    )


def vee(matrix) -> np.ndarray:
    """3-vector of a skew-symmetric matrix; the inverse of hat."""
    m = _square(matrix, 3)
    return np.array([m[2, 1], m[0, 2], m[1, 0]])


def quaternion_to_matrix(w, x, y, z) -> np.ndarray:
    """Rotation matrix of a quaternion given as (w, x, y, z); the quaternion is normalised."""
    q = np.array([w, x, y, z], dtype=float)
    norm = np.linalg.norm(q)
    if norm < _EPS:
        raise ValueError("quaternion must not be zero")
    w, x, y, z = q / norm
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
            [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
            [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
        ]
    )


def matrix_to_quaternion(matrix) -> np.ndarray:
    """Unit quaternion (w, x, y, z) of a rotation matrix, with w >= 0."""
    m = _square(matrix, 3)
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0:
        s = math.sqrt(trace + 1.0) * 2
        q = [0.25 * s, (m[2, 1] - m[1, 2]) / s, (m[0, 2] - m[2, 0]) / s, (m[1, 0] - m[0, 1]) / s]
    elif m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
        s = math.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2]) * 2
        q = [(m[2, 1] - m[1, 2]) / s, 0.25 * s, (m[0, 1] + m[1, 0]) / s, (m[0, 2] + m[2, 0]) / s]
    elif m[1, 1] > m[2, 2]:
        s = math.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2]) * 2
        q = [(m[0, 2] - m[2, 0]) / s, (m[0, 1] + m[1, 0]) / s, 0.25 * s, (m[1, 2] + m[2, 1]) / s]
    else:
        s = math.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1]) * 2
        q = [(m[1, 0] - m[0, 1]) / s, (m[0, 2] + m[2, 0]) / s, (m[1, 2] + m[2, 1]) / s, 0.25 * s]
    quat = np.array(q)
    quat /= np.linalg.norm(quat)
    if quat[0] < 0:
        quat = -quat
    return quat


def angle_axis_to_matrix(angle, axis) -> np.ndarray:
    """Rotation matrix of a rotation by ``angle`` radians about ``axis``."""
    n = _vector(axis, 3, "axis")
    norm = np.linalg.norm(n)
    if norm < _EPS:
        raise ValueError("rotation axis must not be zero")
    n = n / norm
    c, s = math.cos(angle), math.sin(angle)
    return c * np.eye(3) + (1 - c) * np.outer(n, n) + s * hat(n)


def euler_angles_zyx(matrix) -> np.ndarray:
    """Yaw, pitch, roll (Z-Y-X order) of a rotation matrix; yaw lies in [0, pi]."""
    m = _square(matrix, 3)
    yaw = math.atan2(m[1, 0], m[0, 0])
    c2 = math.hypot(m[2, 2], m[2, 1])
    if yaw < 0:
        yaw += math.pi
        pitch = math.atan2(-m[2, 0], -c2)
    else:
        pitch = math.atan2(-m[2, 0], c2)
    s1, c1 = math.sin(yaw), math.cos(yaw)
    roll = math.atan2(s1 * m[0, 2] - c1 * m[1, 2], c1 * m[1, 1] - s1 * m[0, 1])
    return np.array([yaw, pitch, roll])


def _apply(rotation: np.ndarray, translation: np.ndarray, points) -> np.ndarray:
    p = np.asarray(points, dtype=float)
    if p.shape == (3,):
        return rotation @ p + translation
    if p.ndim == 2 and p.shape[1] == 3:
        return p @ rotation.T + translation
    raise ValueError(f"points must have shape (3,) or (N, 3), got {p.shape}")


class SO3:
    """A 3D rotation."""

    __slots__ = ("_matrix",)

    def __init__(self, matrix=None):
        if matrix is None:
            self._matrix = np.eye(3)
            return
        m = _square(matrix, 3)
        if not np.allclose(m @ m.T, np.eye(3), atol=1e-6) or np.linalg.det(m) <= 0:
            raise ValueError("matrix is not a rotation matrix")
        u, _, vt = np.linalg.svd(m)
        self._matrix = u @ vt

    @classmethod
    def _trusted(cls, matrix: np.ndarray) -> "SO3":
        obj = cls.__new__(cls)
        obj._matrix = matrix
        return obj

    @classmethod
    def from_quaternion(cls, w, x, y, z) -> "SO3":
        return cls._trusted(quaternion_to_matrix(w, x, y, z))

    @classmethod
    def exp(cls, omega) -> "SO3":
        """Rotation of a rotation vector (exponential map)."""
        w = _vector(omega, 3, "omega")
        theta = np.linalg.norm(w)
        if theta < _EPS:
            k = hat(w)
            return cls._trusted(np.eye(3) + k + 0.5 * k @ k)
        return cls._trusted(angle_axis_to_matrix(theta, w / theta))

    def log(self) -> np.ndarray:
        """Rotation vector of this rotation (logarithmic map)."""
        w, x, y, z = matrix_to_quaternion(self._matrix)
        n = math.sqrt(x * x + y * y + z * z)
        if n < _EPS:
            factor = 2.0 / w - (2.0 / 3.0) * n * n / (w ** 3)
        elif abs(w) < _EPS:
            factor = (math.pi if w > 0 else -math.pi) / n
        else:
            factor = 2.0 * math.atan(n / w) / n
        return factor * np.array([x, y, z])

    def inverse(self) -> "SO3":
        return SO3._trusted(self._matrix.T.copy())

    def matrix(self) -> np.ndarray:
        return self._matrix.copy()

    def quaternion(self) -> np.ndarray:
        """Unit quaternion (w, x, y, z) with w >= 0."""
        return matrix_to_quaternion(self._matrix)

    def __mul__(self, other):
        if isinstance(other, SO3):
            return SO3._trusted(self._matrix @ other._matrix)
        if isinstance(other, SE3):
            return NotImplemented
        try:
            return _apply(self._matrix, np.zeros(3), other)
        except (TypeError, ValueError):
            return NotImplemented

    def __repr__(self) -> str:
        return f"SO3({self._matrix.tolist()!r})"


def _left_jacobian(phi: np.ndarray) -> np.ndarray:
    theta = np.linalg.norm(phi)
    k = hat(phi)
    if theta < 1e-8:
        return np.eye(3) + 0.5 * k + k @ k / 6.0
    return (
        np.eye(3)
        + (1 - math.cos(theta)) / theta ** 2 * k
        + (theta - math.sin(theta)) / theta ** 3 * (k @ k)
    )


class SE3:
    """A rigid-body transform; tangent vectors are ordered (translation, rotation)."""

    __slots__ = ("rotation", "translation")

    def __init__(self, rotation=None, translation=None):
        if rotation is None:
            self.rotation = SO3()
        elif isinstance(rotation, SO3):
            self.rotation = rotation
        else:
            self.rotation = SO3(rotation)
        self.translation = (
            np.zeros(3) if translation is None else _vector(translation, 3, "translation").copy()
        )

    @classmethod
    def from_quaternion(cls, w, x, y, z, translation=None) -> "SE3":
        return cls(SO3.from_quaternion(w, x, y, z), translation)

    @classmethod
    def exp(cls, xi) -> "SE3":
        v = _vector(xi, 6, "xi")
        rho, phi = v[:3], v[3:]
        return cls(SO3.exp(phi), _left_jacobian(phi) @ rho)

    def log(self) -> np.ndarray:
        phi = self.rotation.log()
        rho = np.linalg.solve(_left_jacobian(phi), self.translation)
        return np.concatenate([rho, phi])

    @staticmethod
    def hat(xi) -> np.ndarray:
        v = _vector(xi, 6, "xi")
        m = np.zeros((4, 4))
        m[:3, :3] = hat(v[3:])
        m[:3, 3] = v[:3]
        return m

    @staticmethod
    def vee(matrix) -> np.ndarray:
        m = _square(matrix, 4)
        return np.concatenate([m[:3, 3], vee(m[:3, :3])])

    def inverse(self) -> "SE3":
        r_inv = self.rotation.inverse()
        return SE3(r_inv, -(r_inv.matrix() @ self.translation))

    def matrix(self) -> np.ndarray:
        m = np.eye(4)
        m[:3, :3] = self.rotation.matrix()
        m[:3, 3] = self.translation
        return m

    def matrix3x4(self) -> np.ndarray:
        return self.matrix()[:3, :]

    def adjoint(self) -> np.ndarray:
        r = self.rotation.matrix()
        adj = np.zeros((6, 6))
        adj[:3, :3] = r
        adj[:3, 3:] = hat(self.translation) @ r
        adj[3:, 3:] = r
        return adj

    def __mul__(self, other):
        if isinstance(other, SE3):
            return SE3(
                self.rotation * other.rotation,
                self.rotation.matrix() @ other.translation + self.translation,
            )
        if isinstance(other, SO3):
            return NotImplemented
        try:
            return _apply(self.rotation.matrix(), self.translation, other)
        except (TypeError, ValueError):
            return NotImplemented

    def __repr__(self) -> str:
        return f"SE3(rotation={self.rotation!r}, translation={self.translation.tolist()!r})"


def transform_between_frames(pose_1w: SE3, pose_2w: SE3, point) -> np.ndarray:
    """Coordinates in frame 2 of a point given in frame 1; poses map world to frame."""
    return pose_2w * (pose_1w.inverse() * point)