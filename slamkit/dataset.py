"""Parameter files and the stereo image sequence reader."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import IO, Any

import numpy as np
import yaml
from PIL import Image

from slamkit.camera import Camera
from slamkit.lie import SE3
from slamkit.map import Frame

log = logging.getLogger(__name__)

NUM_CAMERAS = 4
_FIELDS_PER_CAMERA = 13  # a name followed by a 3x4 projection matrix


class Config:
    """Key-value parameters read from a YAML file."""

    def __init__(self, values: dict[str, Any] | None = None, path: Path | None = None):
        self._values = dict(values or {})
        self.path = path

    @classmethod
    def load(cls, filename) -> "Config":
        """Read a parameter file; an OpenCV ``%YAML:1.0`` header line is accepted."""
        path = Path(filename)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            log.error("parameter file %s does not exist.", path)
            raise
        lines = text.splitlines()
        if lines and lines[0].startswith("%YAML:"):
            lines = lines[1:]
        try:
            data = yaml.safe_load("\n".join(lines))
        except yaml.YAMLError as exc:
            raise ValueError(f"malformed parameter file {path}") from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"parameter file {path} does not hold a mapping")
        return cls(data, path)

    def get(self, key: str):
        """The value stored under ``key``; KeyError when it is absent."""
        try:
            return self._values[key]
        except KeyError:
            raise KeyError(key) from None

    def __contains__(self, key: str) -> bool:
        return key in self._values


def parse_calibration(stream: IO[str]) -> list[Camera]:
    """Cameras from four projection matrices, each a name and 12 numbers.

    The intrinsics are halved to match images read at half resolution.
    """
    tokens = stream.read().split()
    if len(tokens) < NUM_CAMERAS * _FIELDS_PER_CAMERA:
        raise ValueError(f"calibration needs {NUM_CAMERAS} cameras of 12 numbers each")
    cameras = []
    for i in range(NUM_CAMERAS):
        chunk = tokens[i * _FIELDS_PER_CAMERA:(i + 1) * _FIELDS_PER_CAMERA]
        try:
            projection = np.array([float(v) for v in chunk[1:]]).reshape(3, 4)
        except ValueError as exc:
            raise ValueError(f"malformed number for camera {chunk[0]}") from exc
        k = projection[:, :3]
        try:
            t = np.linalg.solve(k, projection[:, 3])
        except np.linalg.LinAlgError as exc:
            raise ValueError(f"camera {chunk[0]} has a singular intrinsic matrix") from exc
        k = k * 0.5
        camera = Camera(k[0, 0], k[1, 1], k[0, 2], k[1, 2], float(np.linalg.norm(t)), SE3(translation=t))
        log.info("Camera %d extrinsics: %s", i, t)
        cameras.append(camera)
    return cameras


def _load_half(path: Path) -> np.ndarray:
    with Image.open(path) as img:
        grey = np.asarray(img.convert("L"))
    return grey[::2, ::2].copy()


class Dataset:
    """A stereo sequence with ``calib.txt`` and ``image_0``/``image_1`` folders."""

    def __init__(self, path):
        self.path = Path(path)
        self.current_image_index = 0
        self.cameras: list[Camera] = []

    def init(self) -> None:
        """Read the camera calibration and rewind to the first image."""
        calib = self.path / "calib.txt"
        try:
            with open(calib, encoding="utf-8") as fin:
                self.cameras = parse_calibration(fin)
        except FileNotFoundError:
            log.error("cannot find %s!", calib)
            raise
        self.current_image_index = 0

    def next_frame(self) -> Frame | None:
        """The next stereo pair at half resolution, or None when the sequence ends."""
        name = f"{self.current_image_index:06d}.png"
        try:
            left = _load_half(self.path / "image_0" / name)
            right = _load_half(self.path / "image_1" / name)
        except OSError:
            log.warning("cannot find images at index %d", self.current_image_index)
            return None
        frame = Frame.create()
        frame.left_img = left
        frame.right_img = right
        self.current_image_index += 1
        return frame

    def camera(self, camera_id: int) -> Camera:
        if camera_id < 0 or camera_id >= len(self.cameras):
            raise IndexError(f"no camera {camera_id}")
        return self.cameras[camera_id]