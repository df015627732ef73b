"""Point clouds from RGB-D frames and stereo disparity, with filtering and PCD output."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import IO

import numpy as np
from PIL import Image
from scipy.spatial import cKDTree

from slamkit.lie import SE3

MAX_DISPARITY = 96.0
SGBM_DISPARITY_SCALE = 16.0

_PCD_DTYPE = np.dtype([("x", "<f4"), ("y", "<f4"), ("z", "<f4"), ("rgb", "<u4")])


def read_poses(stream: IO[str], count: int = 5) -> list[SE3]:
    """``count`` poses of 7 numbers each: tx ty tz qx qy qz qw."""
    tokens = stream.read().split()
    if len(tokens) < 7 * count:
        raise ValueError(f"pose data holds {len(tokens)} numbers, need {7 * count}")
    try:
        values = [float(t) for t in tokens[: 7 * count]]
    except ValueError as exc:
        raise ValueError("malformed number in pose data") from exc
    poses = []
    for k in range(count):
        tx, ty, tz, qx, qy, qz, qw = values[7 * k: 7 * k + 7]
        poses.append(SE3.from_quaternion(qw, qx, qy, qz, (tx, ty, tz)))
    return poses


def depth_to_points(color, depth, pose: SE3, fx, fy, cx, cy, depth_scale) -> np.ndarray:
    """World points (x, y, z, r, g, b) of every pixel with non-zero depth, row by row."""
    depth = np.asarray(depth)
    color = np.asarray(color)
    if depth.ndim != 2:
        raise ValueError("depth must be a single-channel image")
    if color.ndim == 2:
        color = np.stack([color] * 3, axis=-1)
    if color.shape[:2] != depth.shape or color.shape[2] < 3:
        raise ValueError("colour and depth images must have the same size")
    v, u = np.nonzero(depth)
    z = depth[v, u].astype(float) / depth_scale
    x = (u - cx) * z / fx
    y = (v - cy) * z / fy
    world = pose * np.column_stack([x, y, z])
    rgb = color[v, u, :3].astype(float)
    return np.hstack([world, rgb])


def disparity_to_points(left, disparity, fx, fy, cx, cy, baseline) -> np.ndarray:
    """Camera points (x, y, z, intensity) from a disparity map; intensity lies in [0, 1]."""
    left = np.asarray(left)
    disparity = np.asarray(disparity, dtype=float)
    if left.ndim != 2 or left.shape != disparity.shape:
        raise ValueError("left image and disparity must be single-channel and the same size")
    v, u = np.nonzero((disparity > 0.0) & (disparity < MAX_DISPARITY))
    d = disparity[v, u]
    depth = fx * baseline / d
    x = (u - cx) / fx * depth
    y = (v - cy) / fy * depth
    intensity = left[v, u].astype(float) / 255.0
    return np.column_stack([x, y, depth, intensity])


def voxel_filter(points, resolution: float) -> np.ndarray:
    """Replace the points in each cubic voxel by their centroid (all columns averaged)."""
    if resolution <= 0:
        raise ValueError("resolution must be positive")
    pts = np.asarray(points, dtype=float)
    if pts.ndim != 2 or pts.shape[1] < 3:
        raise ValueError("points must have shape (N, 3+)")
    if len(pts) == 0:
        return pts.copy()
    keys = np.floor(pts[:, :3] / resolution).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.ravel()
    sums = np.zeros((len(counts), pts.shape[1]))
    np.add.at(sums, inverse, pts)
    return sums / counts[:, None]


def statistical_outlier_removal(points, mean_k: int = 50, std_mul: float = 1.0) -> np.ndarray:
    """Drop points whose mean distance to their k nearest neighbours is unusually large."""
    if mean_k < 1:
        raise ValueError("mean_k must be at least 1")
    pts = np.asarray(points, dtype=float)
    if pts.ndim != 2 or pts.shape[1] < 3:
        raise ValueError("points must have shape (N, 3+)")
    n = len(pts)
    k = min(mean_k, n - 1)
    if k < 1:
        return pts.copy()
    tree = cKDTree(pts[:, :3])
    distances, _ = tree.query(pts[:, :3], k=k + 1)
    mean_distances = distances[:, 1:].mean(axis=1)
    mean = mean_distances.mean()
    std = mean_distances.std(ddof=1)
    threshold = mean + std_mul * std
    return pts[mean_distances <= threshold]


def save_pcd(path, points) -> None:
    """Write (x, y, z, r, g, b) points as a binary PCD file with fields x y z rgb."""
    pts = np.asarray(points, dtype=float)
    if pts.ndim != 2 or pts.shape[1] != 6:
        raise ValueError("points must have shape (N, 6)")
    n = len(pts)
    rgb = np.clip(np.rint(pts[:, 3:6]), 0, 255).astype(np.uint32)
    data = np.empty(n, dtype=_PCD_DTYPE)
    data["x"], data["y"], data["z"] = pts[:, 0], pts[:, 1], pts[:, 2]
    data["rgb"] = (np.uint32(255) << 24) | (rgb[:, 0] << 16) | (rgb[:, 1] << 8) | rgb[:, 2]
    header = (
        "# .PCD v0.7 - Point Cloud Data file format\n"
        "VERSION 0.7\n"
        "FIELDS x y z rgb\n"
        "SIZE 4 4 4 4\n"
        "TYPE F F F F\n"
        "COUNT 1 1 1 1\n"
        f"WIDTH {n}\n"
        "HEIGHT 1\n"
        "VIEWPOINT 0 0 0 1 0 0 0\n"
        f"POINTS {n}\n"
        "DATA binary\n"
    )
    with open(path, "wb") as fout:
        fout.write(header.encode("ascii"))
        fout.write(data.tobytes())


def _load_frames(data_dir: Path, pose_file: Path, depth_ext: str, count: int = 5):
    with open(pose_file, encoding="utf-8") as fin:
        poses = read_poses(fin, count)
    frames = []
    for i in range(1, count + 1):
        with Image.open(data_dir / "color" / f"{i}.png") as img:
            color = np.asarray(img.convert("RGB")).copy()
        with Image.open(data_dir / "depth" / f"{i}.{depth_ext}") as img:
            depth = np.asarray(img).copy()
        frames.append((color, depth))
    return frames, poses


def _join(args) -> int:
    data_dir = Path(args.data_dir)
    try:
        frames, poses = _load_frames(data_dir, data_dir / "pose.txt", args.depth_ext)
    except (OSError, ValueError):
        print("please run this program in a directory with pose.txt", file=sys.stderr)
        return 1
    clouds = []
    for i, ((color, depth), pose) in enumerate(zip(frames, poses), 1):
        print(f"converting image: {i}")
        clouds.append(depth_to_points(color, depth, pose, 518.0, 519.0, 325.5, 253.5, 1000.0))
    cloud = np.vstack(clouds)
    print(f"point cloud has {len(cloud)} points.")
    if args.output:
        save_pcd(args.output, cloud)
    return 0


def _map(args) -> int:
    data_dir = Path(args.data_dir)
    try:
        frames, poses = _load_frames(data_dir, data_dir / "pose.txt", args.depth_ext)
    except (OSError, ValueError):
        print("cannot find pose file", file=sys.stderr)
        return 1
    print("converting images to a point cloud ...")
    clouds = []
    for i, ((color, depth), pose) in enumerate(zip(frames, poses), 1):
        print(f"converting image: {i}")
        current = depth_to_points(color, depth, pose, 481.2, -480.0, 319.5, 239.5, 5000.0)
        clouds.append(statistical_outlier_removal(current, 50, 1.0))
    cloud = np.vstack(clouds)
    print(f"point cloud has {len(cloud)} points.")
    cloud = voxel_filter(cloud, args.resolution)
    print(f"after filtering, point cloud has {len(cloud)} points.")
    save_pcd(args.output, cloud)
    return 0


def _stereo(args) -> int:
    try:
        with Image.open(args.left) as img:
            left = np.asarray(img.convert("L")).copy()
        with Image.open(args.disparity) as img:
            disparity = np.asarray(img, dtype=float) / SGBM_DISPARITY_SCALE
    except OSError:
        print("cannot read the input images", file=sys.stderr)
        return 1
    try:
        cloud = disparity_to_points(left, disparity, 718.856, 718.856, 607.1928, 185.2157, 0.573)
    except ValueError as exc:
        print(exc, file=sys.stderr)
        return 1
    print(f"point cloud has {len(cloud)} points.")
    if args.output:
        grey = cloud[:, 3:4] * 255.0
        save_pcd(args.output, np.hstack([cloud[:, :3], grey, grey, grey]))
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="pointcloud", description="Build point clouds from images.")
    sub = parser.add_subparsers(dest="command", required=True)
    join = sub.add_parser("join", help="join five RGB-D frames into one cloud")
    join.add_argument("--data-dir", default="..")
    join.add_argument("--depth-ext", default="pgm")
    join.add_argument("--output", default=None)
    mapping = sub.add_parser("map", help="filtered map of five RGB-D frames saved as PCD")
    mapping.add_argument("--data-dir", default="./data")
    mapping.add_argument("--depth-ext", default="png")
    mapping.add_argument("--resolution", type=float, default=0.03)
    mapping.add_argument("--output", default="map.pcd")
    stereo = sub.add_parser("stereo", help="cloud from a left image and an SGBM disparity image")
    stereo.add_argument("left")
    stereo.add_argument("disparity")
    stereo.add_argument("--output", default=None)
    args = parser.parse_args(argv)

    if args.command == "join":
        return _join(args)
    if args.command == "map":
        return _map(args)
    return _stereo(args)