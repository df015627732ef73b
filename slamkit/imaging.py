"""Basic image inspection and radial-tangential undistortion of grey images."""

from __future__ import annotations

import argparse
import sys
import time
from dataclasses import dataclass

import numpy as np
from PIL import Image

# Distortion coefficients and intrinsics of the sample camera.
K1, K2, P1, P2 = -0.28340811, 0.07395907, 0.00019359, 1.76187114e-05
FX, FY, CX, CY = 458.654, 457.296, 367.215, 248.375


@dataclass(frozen=True)
class ImageInfo:
    """Size, channel count and element type of an image."""

    width: int
    height: int
    channels: int
    dtype: str

    @property
    def supported(self) -> bool:
        """Whether the image is an 8-bit grey or 8-bit three-channel image."""
        return self.dtype == "uint8" and self.channels in (1, 3)


def load_image(path, grayscale: bool = False) -> np.ndarray:
    """Read an image file as an array: (H, W) when grey, (H, W, 3) RGB otherwise."""
    with Image.open(path) as img:
        return np.asarray(img.convert("L" if grayscale else "RGB")).copy()


def describe_image(image) -> ImageInfo:
    """Width, height and channel count of an image array."""
    arr = np.asarray(image)
    if arr.ndim == 2:
        channels = 1
    elif arr.ndim == 3:
        channels = arr.shape[2]
    else:
        raise ValueError(f"an image must have 2 or 3 dimensions, got {arr.ndim}")
    return ImageInfo(width=arr.shape[1], height=arr.shape[0], channels=channels, dtype=str(arr.dtype))


def undistort_image(
    image,
    k1: float = K1,
    k2: float = K2,
    p1: float = P1,
    p2: float = P2,
    fx: float = FX,
    fy: float = FY,
    cx: float = CX,
    cy: float = CY,
) -> np.ndarray:
    """Undistort a grey image by nearest-neighbour lookup; unmapped pixels become 0."""
    img = np.asarray(image)
    if img.ndim != 2:
        raise ValueError("undistortion needs a single-channel image")
    rows, cols = img.shape
    v, u = np.mgrid[0:rows, 0:cols].astype(float)
    x = (u - cx) / fx
    y = (v - cy) / fy
    r2 = x * x + y * y
    radial = 1 + k1 * r2 + k2 * r2 * r2
    x_distorted = x * radial + 2 * p1 * x * y + p2 * (r2 + 2 * x * x)
    y_distorted = y * radial + p1 * (r2 + 2 * y * y) + 2 * p2 * x * y
    u_distorted = fx * x_distorted + cx
    v_distorted = fy * y_distorted + cy

    valid = (u_distorted >= 0) & (v_distorted >= 0) & (u_distorted < cols) & (v_distorted < rows)
    out = np.zeros_like(img)
    out[valid] = img[v_distorted[valid].astype(int), u_distorted[valid].astype(int)]
    return out


def _info(path) -> int:
    try:
        image = load_image(path)
    except (FileNotFoundError, OSError):
        print(f"file {path} does not exist.", file=sys.stderr)
        return 1
    info = describe_image(image)
    print(f"image width {info.width}, height {info.height}, channels {info.channels}")
    if not info.supported:
        print("please provide a colour or grey image.")
        return 1
    start = time.perf_counter()
    for row in image:
        for _pixel in row:
            pass
    print(f"traversing the image took {time.perf_counter() - start} seconds.")
    return 0


def _undistort(path, output) -> int:
    try:
        image = load_image(path, grayscale=True)
    except (FileNotFoundError, OSError):
        print(f"file {path} does not exist.", file=sys.stderr)
        return 1
    Image.fromarray(undistort_image(image)).save(output)
    print(f"undistorted image saved to {output}")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="imaging", description="Image basics and undistortion.")
    sub = parser.add_subparsers(dest="command", required=True)
    info = sub.add_parser("info", help="print the size and channels of an image")
    info.add_argument("image")
    und = sub.add_parser("undistort", help="undistort a grey image")
    und.add_argument("image", nargs="?", default="../distorted.png")
    und.add_argument("--output", default="undistorted.png")
    args = parser.parse_args(argv)

    if args.command == "info":
        return _info(args.image)
    return _undistort(args.image, args.output)