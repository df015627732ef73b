"""Back end: bundle adjustment of the active key frames and landmarks in a thread."""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve

from slamkit.camera import Camera
from slamkit.lie import SE3
from slamkit.map import Feature, Frame, Map, MapPoint
from slamkit.projection import StereoProjection, oplus_pose

log = logging.getLogger(__name__)

CHI2_THRESHOLD = 5.991
OPTIMIZE_ITERATIONS = 10
OUTLIER_ROUNDS = 5


def huber_weight(chi2: float, delta: float) -> float:
    """Weight a Huber kernel gives to a squared error ``chi2``."""
    if delta <= 0:
        raise ValueError("delta must be positive")
    if chi2 <= delta * delta:
        return 1.0
    return delta / math.sqrt(chi2)


def _huber_cost(chi2: float, delta: float) -> float:
    if chi2 <= delta * delta:
        return chi2
    return 2.0 * delta * math.sqrt(chi2) - delta * delta


@dataclass(eq=False)
class _Edge:
    pose_key: int
    point_key: int
    projection: StereoProjection
    measurement: np.ndarray
    feature: Feature

    def error(self, poses, points) -> np.ndarray:
        return self.projection.error(poses[self.pose_key], points[self.point_key], self.measurement)

    def chi2(self, poses, points) -> float:
        e = self.error(poses, points)
        return float(e @ e)


def _linearize(edges, poses, points, pose_index, point_index, size, delta):
    rows, cols, vals = [], [], []
    gradient = np.zeros(size)
    for edge in edges:
        pose = poses[edge.pose_key]
        point = points[edge.point_key]
        e = edge.projection.error(pose, point, edge.measurement)
        j_pose, j_point = edge.projection.jacobians(pose, point)
        w = huber_weight(float(e @ e), delta)
        blocks = [
            (pose_index[edge.pose_key] + np.arange(6), j_pose),
            (point_index[edge.point_key] + np.arange(3), j_point),
        ]
        for ra, ja in blocks:
            gradient[ra] += w * (ja.T @ e)
            for rb, jb in blocks:
                block = w * (ja.T @ jb)
                rows.append(np.repeat(ra, len(rb)))
                cols.append(np.tile(rb, len(ra)))
                vals.append(block.ravel())
    hessian = sparse.coo_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))), shape=(size, size)
    ).tocsc()
    return hessian, gradient


def _bundle_adjust(poses: dict, points: dict, edges: list[_Edge], delta: float, iterations: int) -> None:
    """Levenberg-Marquardt with a Huber kernel; updates ``poses`` and ``points`` in place."""
    pose_index = {k: 6 * i for i, k in enumerate(poses)}
    offset = 6 * len(poses)
    point_index = {k: offset + 3 * j for j, k in enumerate(points)}
    size = offset + 3 * len(points)
    if size == 0 or not edges:
        return

    def cost() -> float:
        return sum(_huber_cost(edge.chi2(poses, points), delta) for edge in edges)

    chi2 = cost()
    lam = None
    nu = 2.0
    for _ in range(iterations):
        hessian, gradient = _linearize(edges, poses, points, pose_index, point_index, size, delta)
        if lam is None:
            diag_max = float(hessian.diagonal().max())
            lam = 1e-5 * (diag_max if diag_max > 0 else 1.0)
        accepted = False
        for _attempt in range(10):
            damped = (hessian + lam * sparse.identity(size, format="csc")).tocsc()
            dx = np.atleast_1d(spsolve(damped, -gradient))
            if not np.all(np.isfinite(dx)):
                lam *= nu
                nu *= 2
                continue
            saved_poses, saved_points = dict(poses), dict(points)
            for k, start in pose_index.items():
                poses[k] = oplus_pose(poses[k], dx[start:start + 6])
            for k, start in point_index.items():
                points[k] = points[k] + dx[start:start + 3]
            new_chi2 = cost()
            if math.isfinite(new_chi2) and new_chi2 < chi2:
                predicted = float(dx @ (lam * dx - gradient))
                rho = (chi2 - new_chi2) / predicted if predicted > 0 else 1.0
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                chi2 = new_chi2
                accepted = True
                break
            poses.update(saved_poses)
            points.update(saved_points)
            lam *= nu
            nu *= 2
        if not accepted:
            break


class Backend:
    """Optimises the map's active window in its own thread whenever the map changes."""

    def __init__(self):
        self.map: Map | None = None
        self.camera_left: Camera | None = None
        self.camera_right: Camera | None = None
        self._condition = threading.Condition()
        self._pending = False
        self._running = True
        self._thread = threading.Thread(target=self._loop, name="backend", daemon=True)
        self._thread.start()

    def set_cameras(self, left: Camera, right: Camera) -> None:
        self.camera_left = left
        self.camera_right = right

    def set_map(self, map_: Map) -> None:
        self.map = map_

    def update_map(self) -> None:
        """Ask the back-end thread to optimise the active window."""
        with self._condition:
            self._pending = True
            self._condition.notify()

    def stop(self) -> None:
        """Finish any requested optimisation and end the thread."""
        with self._condition:
            self._running = False
            self._condition.notify()
        self._thread.join()

    def _loop(self) -> None:
        with self._condition:
            while True:
                self._condition.wait_for(lambda: self._pending or not self._running)
                if self._pending:
                    self._pending = False
                    if self.map is not None:
                        try:
                            self.optimize(self.map.active_keyframes(), self.map.active_map_points())
                        except Exception:
                            log.exception("back-end optimisation failed")
                if not self._running:
                    break

    def optimize(self, keyframes: dict[int, Frame], landmarks: dict[int, MapPoint]) -> tuple[int, int]:
        """Bundle-adjust the given key frames and landmarks and mark outlier observations.

        Returns the numbers of outlier and inlier observations.
        """
        if self.camera_left is None or self.camera_right is None:
            raise RuntimeError("cameras must be set before optimising")
        k = self.camera_left.intrinsic_matrix()
        left_projection = StereoProjection(k, self.camera_left.pose)
        right_projection = StereoProjection(k, self.camera_right.pose)

        poses: dict[int, SE3] = {kf.keyframe_id: kf.pose for kf in keyframes.values()}
        points: dict[int, np.ndarray] = {}
        edges: list[_Edge] = []
        for landmark_id, landmark in landmarks.items():
            if landmark.is_outlier:
                continue
            for feat in landmark.observations():
                frame = feat.frame
                if feat.is_outlier or frame is None or frame.keyframe_id not in poses:
                    continue
                if landmark_id not in points:
                    points[landmark_id] = landmark.pos
                projection = left_projection if feat.is_on_left_image else right_projection
                edges.append(_Edge(frame.keyframe_id, landmark_id, projection,
                                   np.asarray(feat.position, dtype=float), feat))

        chi2_th = CHI2_THRESHOLD
        _bundle_adjust(poses, points, edges, chi2_th, OPTIMIZE_ITERATIONS)

        chi2s = [edge.chi2(poses, points) for edge in edges]
        cnt_outlier = cnt_inlier = 0
        for _ in range(OUTLIER_ROUNDS):
            cnt_outlier = sum(1 for c in chi2s if c > chi2_th)
            cnt_inlier = len(chi2s) - cnt_outlier
            total = cnt_inlier + cnt_outlier
            if total and cnt_inlier / total > 0.5:
                break
            chi2_th *= 2

        for edge, c in zip(edges, chi2s):
            feat = edge.feature
            if c > chi2_th:
                feat.is_outlier = True
                map_point = feat.map_point
                if map_point is not None:
                    map_point.remove_observation(feat)
            else:
                feat.is_outlier = False

        log.info("Outlier/Inlier in optimization: %d/%d", cnt_outlier, cnt_inlier)

        for kf in keyframes.values():
            if kf.keyframe_id in poses:
                kf.pose = poses[kf.keyframe_id]
        for landmark_id, pos in points.items():
            landmarks[landmark_id].pos = pos
        return cnt_outlier, cnt_inlier