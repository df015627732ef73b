"""Features, frames, map points and the sliding-window map that holds them."""

from __future__ import annotations

import itertools
import logging
import threading
import weakref

import numpy as np

from slamkit.algorithm import to_vec2
from slamkit.lie import SE3

log = logging.getLogger(__name__)


def _ref(obj):
    return None if obj is None else weakref.ref(obj)


def _deref(ref):
    return None if ref is None else ref()


class Feature:
    """A 2D keypoint in a frame; after triangulation it is tied to a map point.

    The frame and the map point are held weakly, as the frame owns its features
    and map points outlive the features that observe them only while observed.
    """

    def __init__(self, frame: "Frame | None" = None, position=(0.0, 0.0), is_on_left_image: bool = True):
        self.frame = frame
        self.position = to_vec2(position)
        self.map_point = None
        self.is_outlier = False
        self.is_on_left_image = is_on_left_image

    @property
    def frame(self) -> "Frame | None":
        return _deref(self._frame)

    @frame.setter
    def frame(self, value: "Frame | None") -> None:
        self._frame = _ref(value)

    @property
    def map_point(self) -> "MapPoint | None":
        return _deref(self._map_point)

    @map_point.setter
    def map_point(self, value: "MapPoint | None") -> None:
        self._map_point = _ref(value)

    def __repr__(self) -> str:
        return f"Feature(position={self.position.tolist()!r}, left={self.is_on_left_image})"


class Frame:
    """A stereo frame; every frame gets its own id, key frames a key-frame id too."""

    _ids = itertools.count()
    _keyframe_ids = itertools.count()
    _id_lock = threading.Lock()

    def __init__(self, id: int = 0, time_stamp: float = 0.0, pose: SE3 | None = None,
                 left_img=None, right_img=None):
        self.id = id
        self.keyframe_id = 0
        self.is_keyframe = False
        self.time_stamp = time_stamp
        self._pose_lock = threading.Lock()
        self._pose = SE3() if pose is None else pose
        self.left_img = left_img
        self.right_img = right_img
        self.features_left: list[Feature] = []
        self.features_right: list[Feature | None] = []

    @property
    def pose(self) -> SE3:
        """World-to-camera transform T_cw."""
        with self._pose_lock:
            return self._pose

    @pose.setter
    def pose(self, value: SE3) -> None:
        with self._pose_lock:
            self._pose = value

    @classmethod
    def create(cls) -> "Frame":
        """A new frame with the next free frame id."""
        with Frame._id_lock:
            frame_id = next(Frame._ids)
        return cls(frame_id)

    def set_keyframe(self) -> None:
        """Mark this frame as a key frame and give it the next key-frame id."""
        with Frame._id_lock:
            self.keyframe_id = next(Frame._keyframe_ids)
        self.is_keyframe = True

    def __repr__(self) -> str:
        return f"Frame(id={self.id}, keyframe_id={self.keyframe_id}, is_keyframe={self.is_keyframe})"


class MapPoint:
    """A landmark triangulated from features; it keeps weak links to its observations."""

    _ids = itertools.count()
    _id_lock = threading.Lock()

    def __init__(self, id: int = 0, position=None):
        self.id = id
        self.is_outlier = False
        self._lock = threading.Lock()
        self._pos = np.zeros(3) if position is None else np.asarray(position, dtype=float).copy()
        if self._pos.shape != (3,):
            raise ValueError(f"position must have shape (3,), got {self._pos.shape}")
        self.observed_times = 0
        self._observations: list[weakref.ref] = []

    @property
    def pos(self) -> np.ndarray:
        """Position in the world frame."""
        with self._lock:
            return self._pos.copy()

    @pos.setter
    def pos(self, value) -> None:
        arr = np.asarray(value, dtype=float)
        if arr.shape != (3,):
            raise ValueError(f"position must have shape (3,), got {arr.shape}")
        with self._lock:
            self._pos = arr.copy()

    @classmethod
    def create(cls) -> "MapPoint":
        """A new map point with the next free id."""
        with MapPoint._id_lock:
            point_id = next(MapPoint._ids)
        return cls(point_id)

    def add_observation(self, feature: Feature) -> None:
        with self._lock:
            self._observations.append(weakref.ref(feature))
            self.observed_times += 1

    def remove_observation(self, feature: Feature) -> bool:
        """Drop the observation by ``feature`` and unlink it; returns whether it was found."""
        with self._lock:
            for i, ref in enumerate(self._observations):
                if ref() is feature:
                    del self._observations[i]
                    feature.map_point = None
                    self.observed_times -= 1
                    return True
        return False

    def observations(self) -> list[Feature]:
        """The observing features that are still alive."""
        with self._lock:
            refs = list(self._observations)
        return [f for f in (r() for r in refs) if f is not None]

    def __repr__(self) -> str:
        return f"MapPoint(id={self.id}, observed_times={self.observed_times})"


class Map:
    """All key frames and landmarks, plus the active window used by the back end."""

    def __init__(self, num_active_keyframes: int = 7):
        self.num_active_keyframes = num_active_keyframes
        self._lock = threading.RLock()
        self._landmarks: dict[int, MapPoint] = {}
        self._active_landmarks: dict[int, MapPoint] = {}
        self._keyframes: dict[int, Frame] = {}
        self._active_keyframes: dict[int, Frame] = {}
        self.current_frame: Frame | None = None

    def insert_keyframe(self, frame: Frame) -> None:
        """Add or replace a key frame; the active window is trimmed when too large."""
        with self._lock:
            self.current_frame = frame
            self._keyframes[frame.keyframe_id] = frame
            self._active_keyframes[frame.keyframe_id] = frame
            if len(self._active_keyframes) > self.num_active_keyframes:
                self._remove_old_keyframe()

    def insert_map_point(self, map_point: MapPoint) -> None:
        with self._lock:
            self._landmarks[map_point.id] = map_point
            self._active_landmarks[map_point.id] = map_point

    def all_map_points(self) -> dict[int, MapPoint]:
        with self._lock:
            return dict(self._landmarks)

    def all_keyframes(self) -> dict[int, Frame]:
        with self._lock:
            return dict(self._keyframes)

    def active_map_points(self) -> dict[int, MapPoint]:
        with self._lock:
            return dict(self._active_landmarks)

    def active_keyframes(self) -> dict[int, Frame]:
        with self._lock:
            return dict(self._active_keyframes)

    def _remove_old_keyframe(self) -> None:
        if self.current_frame is None:
            return
        # Find the key frames nearest to and farthest from the current frame.
        max_dis, min_dis = 0.0, 9999.0
        max_kf_id, min_kf_id = 0, 0
        t_wc = self.current_frame.pose.inverse()
        for kf_id, kf in self._active_keyframes.items():
            if kf is self.current_frame:
                continue
            dis = float(np.linalg.norm((kf.pose * t_wc).log()))
            if dis > max_dis:
                max_dis, max_kf_id = dis, kf_id
            if dis < min_dis:
                min_dis, min_kf_id = dis, kf_id

        min_dis_th = 0.2
        # A very close key frame goes first; otherwise the farthest one.
        victim_id = min_kf_id if min_dis < min_dis_th else max_kf_id
        frame_to_remove = self._keyframes[victim_id]

        log.info("remove keyframe %d", frame_to_remove.keyframe_id)
        self._active_keyframes.pop(frame_to_remove.keyframe_id, None)
        for feat in [*frame_to_remove.features_left, *frame_to_remove.features_right]:
            if feat is None:
                continue
            mp = feat.map_point
            if mp is not None:
                mp.remove_observation(feat)

        self.clean_map()

    def clean_map(self) -> int:
        """Deactivate landmarks that nothing observes; returns how many were removed."""
        with self._lock:
            unobserved = [pid for pid, mp in self._active_landmarks.items() if mp.observed_times == 0]
            for pid in unobserved:
                del self._active_landmarks[pid]
        log.info("Removed %d active landmarks", len(unobserved))
        return len(unobserved)