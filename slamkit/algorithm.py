"""Geometric algorithms shared by the odometry pipeline."""

from __future__ import annotations

from typing import Sequence

import numpy as np

from slamkit.lie import SE3


def triangulate(poses: Sequence[SE3], points) -> np.ndarray | None:
    """Linear SVD triangulation of one point seen from several poses.

    ``points`` are the observations on each camera's normalised image plane.
    Returns the point in the world frame, or None when the solution is poor.
    """
    poses = list(poses)
    observations = [np.asarray(p, dtype=float) for p in points]
    if len(poses) != len(observations):
        raise ValueError("need exactly one observation per pose")
    if len(poses) < 2:
        raise ValueError("triangulation needs at least two poses")

    rows = []
    for pose, obs in zip(poses, observations):
        m = pose.matrix3x4()
        rows.append(obs[0] * m[2] - m[0])
        rows.append(obs[1] * m[2] - m[1])
    a = np.vstack(rows)

    _, singular, vt = np.linalg.svd(a, full_matrices=False)
    v = vt[3]
    if v[3] == 0 or singular[2] == 0:
        return None
    pt_world = v[:3] / v[3]
    if singular[3] / singular[2] < 1e-2:
        return pt_world
    return None


def to_vec2(point) -> np.ndarray:
    """A 2-vector from an (x, y) pair or an object with ``x`` and ``y``."""
    if hasattr(point, "x") and hasattr(point, "y"):
        return np.array([float(point.x), float(point.y)])
    x, y = point
    return np.array([float(x), float(y)])