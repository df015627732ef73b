"""Dense monocular depth estimation by epipolar search, NCC matching and Gaussian fusion."""

from __future__ import annotations

import argparse
import math
from pathlib import Path

import numpy as np
from PIL import Image

from slamkit.lie import SE3

BORDER = 20
WIDTH = 640
HEIGHT = 480
# The intrinsics are single-precision literals widened to double.
FX = float(np.float32(481.2))
FY = -480.0
CX = 319.5
CY = 239.5
NCC_WINDOW = 3
NCC_AREA = (2 * NCC_WINDOW + 1) ** 2
MIN_COV = 0.1
MAX_COV = 10.0
NCC_THRESHOLD = float(np.float32(0.85))
SEARCH_STEP = 0.7
MAX_HALF_LENGTH = 100.0
MIN_DEPTH = 0.1
INIT_DEPTH = 3.0
INIT_COV2 = 3.0

TRAJECTORY_FILE = "first_200_frames_traj_over_table_input_sequence.txt"
DEPTH_FILE = Path("depthmaps") / "scene_000.depth"

_OFFSETS = np.arange(-NCC_WINDOW, NCC_WINDOW + 1)
_DX, _DY = (grid.ravel() for grid in np.meshgrid(_OFFSETS, _OFFSETS, indexing="ij"))


def px2cam(px) -> np.ndarray:
    """Point on the normalised image plane (z = 1) of a pixel."""
    u, v = np.asarray(px, dtype=float)
    return np.array([(u - CX) / FX, (v - CY) / FY, 1.0])


def cam2px(p_cam) -> np.ndarray:
    """Pixel of a point in camera coordinates."""
    x, y, z = np.asarray(p_cam, dtype=float)
    return np.array([x * FX / z + CX, y * FY / z + CY])


def inside(pt) -> bool:
    """Whether a pixel lies inside the image with a margin of BORDER pixels."""
    x, y = np.asarray(pt, dtype=float)
    return bool(x >= BORDER and y >= BORDER and x + BORDER < WIDTH and y + BORDER <= HEIGHT)


def _bilinear(image: np.ndarray, xs, ys) -> np.ndarray:
    xs = np.asarray(xs, dtype=float)
    ys = np.asarray(ys, dtype=float)
    ix = np.trunc(xs).astype(int)
    iy = np.trunc(ys).astype(int)
    rows, cols = image.shape[:2]
    if np.any(ix < 0) or np.any(iy < 0) or np.any(ix >= cols) or np.any(iy >= rows):
        raise IndexError("point lies outside the image")
    ix1 = np.minimum(ix + 1, cols - 1)
    iy1 = np.minimum(iy + 1, rows - 1)
    xx = xs - np.floor(xs)
    yy = ys - np.floor(ys)
    return (
        (1 - xx) * (1 - yy) * image[iy, ix].astype(float)
        + xx * (1 - yy) * image[iy, ix1].astype(float)
        + (1 - xx) * yy * image[iy1, ix].astype(float)
        + xx * yy * image[iy1, ix1].astype(float)
    ) / 255.0


def bilinear_interpolate(image, pt) -> float:
    """Grey value in [0, 1] at a sub-pixel position of an 8-bit image."""
    x, y = np.asarray(pt, dtype=float)
    return float(_bilinear(np.asarray(image), x, y))


def ncc(ref, curr, pt_ref, pt_curr) -> float:
    """Zero-mean normalised cross-correlation of the windows around two points."""
    ref = np.asarray(ref)
    curr = np.asarray(curr)
    rx, ry = np.asarray(pt_ref, dtype=float)
    cx, cy = np.asarray(pt_curr, dtype=float)
    ref_x = np.trunc(_DX + rx).astype(int)
    ref_y = np.trunc(_DY + ry).astype(int)
    values_ref = ref[ref_y, ref_x].astype(float) / 255.0
    values_curr = _bilinear(curr, cx + _DX, cy + _DY)

    d_ref = values_ref - values_ref.sum() / NCC_AREA
    d_curr = values_curr - values_curr.sum() / NCC_AREA
    numerator = float(d_ref @ d_curr)
    denominator = float(d_ref @ d_ref) * float(d_curr @ d_curr)
    return numerator / math.sqrt(denominator + 1e-10)


def _normalized(v: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(v)
    return v / norm if norm > 0 else v


def epipolar_search(ref, curr, t_c_r: SE3, pt_ref, depth_mu, depth_cov):
    """Best NCC match of ``pt_ref`` along its epipolar segment in ``curr``.

    ``depth_cov`` is the standard deviation of the depth. Returns
    ``(pt_curr, epipolar_direction)``, or None when no match scores high enough.
    """
    f_ref = _normalized(px2cam(pt_ref))
    px_mean_curr = cam2px(t_c_r * (f_ref * depth_mu))
    d_min = max(depth_mu - 3 * depth_cov, MIN_DEPTH)
    d_max = depth_mu + 3 * depth_cov
    px_min_curr = cam2px(t_c_r * (f_ref * d_min))
    px_max_curr = cam2px(t_c_r * (f_ref * d_max))

    epipolar_line = px_max_curr - px_min_curr
    direction = _normalized(epipolar_line)
    half_length = min(0.5 * float(np.linalg.norm(epipolar_line)), MAX_HALF_LENGTH)

    best_ncc = -1.0
    best_px = None
    step = -half_length
    while step <= half_length:
        px_curr = px_mean_curr + step * direction
        step += SEARCH_STEP
        if not inside(px_curr):
            continue
        score = ncc(ref, curr, pt_ref, px_curr)
        if score > best_ncc:
            best_ncc = score
            best_px = px_curr
    if best_px is None or best_ncc < NCC_THRESHOLD:
        return None
    return best_px, direction


def update_depth_filter(pt_ref, pt_curr, t_c_r: SE3, epipolar_direction, depth, depth_cov2):
    """Triangulate a match and fuse it into the depth maps in place.

    Returns the fused ``(depth, variance)`` of the reference pixel. Raises
    ValueError when the match cannot be triangulated.
    """
    pt_ref = np.asarray(pt_ref, dtype=float)
    pt_curr = np.asarray(pt_curr, dtype=float)
    t_r_c = t_c_r.inverse()
    f_ref = _normalized(px2cam(pt_ref))
    f_curr = _normalized(px2cam(pt_curr))

    t = t_r_c.translation
    t_norm = float(np.linalg.norm(t))
    if t_norm == 0:
        raise ValueError("no baseline between the two frames")
    f2 = t_r_c.rotation * f_curr
    b = np.array([t @ f_ref, t @ f2])
    a01 = -(f_ref @ f2)
    a = np.array([[f_ref @ f_ref, a01], [-a01, -(f2 @ f2)]])
    try:
        ans = np.linalg.solve(a, b)
    except np.linalg.LinAlgError as exc:
        raise ValueError("rays are parallel; cannot triangulate") from exc
    xm = ans[0] * f_ref
    xn = t + ans[1] * f2
    depth_estimation = float(np.linalg.norm((xm + xn) / 2.0))

    # Uncertainty from one pixel of error along the epipolar line.
    p = f_ref * depth_estimation
    a_vec = p - t
    a_norm = float(np.linalg.norm(a_vec))
    if a_norm == 0:
        raise ValueError("degenerate triangulation")
    alpha = math.acos(float(np.clip(f_ref @ t / t_norm, -1.0, 1.0)))
    f_curr_prime = _normalized(px2cam(pt_curr + np.asarray(epipolar_direction, dtype=float)))
    beta_prime = math.acos(float(np.clip(f_curr_prime @ -t / t_norm, -1.0, 1.0)))
    gamma = math.pi - alpha - beta_prime
    sin_gamma = math.sin(gamma)
    if sin_gamma == 0:
        raise ValueError("degenerate triangulation")
    p_prime = t_norm * math.sin(beta_prime) / sin_gamma
    d_cov2 = (p_prime - depth_estimation) ** 2

    ix, iy = int(pt_ref[0]), int(pt_ref[1])
    mu = float(depth[iy, ix])
    sigma2 = float(depth_cov2[iy, ix])
    total = sigma2 + d_cov2
    if total == 0:
        raise ValueError("zero total variance")
    mu_fuse = (d_cov2 * mu + sigma2 * depth_estimation) / total
    sigma_fuse2 = (sigma2 * d_cov2) / total
    depth[iy, ix] = mu_fuse
    depth_cov2[iy, ix] = sigma_fuse2
    return mu_fuse, sigma_fuse2


def _check_shape(name: str, array) -> np.ndarray:
    arr = np.asarray(array)
    if arr.shape[:2] != (HEIGHT, WIDTH):
        raise ValueError(f"{name} must be {HEIGHT}x{WIDTH}, got {arr.shape}")
    return arr


def update(ref, curr, t_c_r: SE3, depth, depth_cov2) -> int:
    """Update every unconverged pixel of the depth maps in place; returns how many were fused."""
    ref = _check_shape("ref", ref)
    curr = _check_shape("curr", curr)
    _check_shape("depth", depth)
    _check_shape("depth_cov2", depth_cov2)

    region = depth_cov2[BORDER:HEIGHT - BORDER, BORDER:WIDTH - BORDER]
    active = ~((region < MIN_COV) | (region > MAX_COV))
    ys, xs = np.nonzero(active)
    order = np.lexsort((ys, xs))
    fused = 0
    for y, x in zip(ys[order] + BORDER, xs[order] + BORDER):
        pt_ref = np.array([float(x), float(y)])
        match = epipolar_search(
            ref, curr, t_c_r, pt_ref, float(depth[y, x]), math.sqrt(float(depth_cov2[y, x]))
        )
        if match is None:
            continue
        pt_curr, direction = match
        try:
            update_depth_filter(pt_ref, pt_curr, t_c_r, direction, depth, depth_cov2)
        except ValueError:
            continue
        fused += 1
    return fused


def evaluate_depth(depth_truth, depth_estimate) -> tuple[float, float]:
    """Mean squared error and mean error over the image without its border."""
    truth = np.asarray(depth_truth, dtype=float)
    estimate = np.asarray(depth_estimate, dtype=float)
    if truth.shape != estimate.shape:
        raise ValueError("depth maps must have the same shape")
    rows, cols = truth.shape
    error = (truth - estimate)[BORDER:rows - BORDER, BORDER:cols - BORDER]
    if error.size == 0:
        raise ValueError("depth maps are smaller than the border")
    return float(np.mean(error * error)), float(np.mean(error))


def read_dataset(path):
    """Image paths, camera-to-world poses and reference depth of a REMODE dataset."""
    root = Path(path)
    image_files: list[str] = []
    poses: list[SE3] = []
    with open(root / TRAJECTORY_FILE, encoding="utf-8") as fin:
        for lineno, line in enumerate(fin, 1):
            fields = line.split()
            if not fields:
                continue
            if len(fields) != 8:
                raise ValueError(f"line {lineno}: expected 8 fields, got {len(fields)}")
            image, *numbers = fields
            try:
                tx, ty, tz, qx, qy, qz, qw = (float(v) for v in numbers)
            except ValueError as exc:
                raise ValueError(f"line {lineno}: malformed number") from exc
            image_files.append(str(root / "images" / image))
            poses.append(SE3.from_quaternion(qw, qx, qy, qz, (tx, ty, tz)))

    with open(root / DEPTH_FILE, encoding="utf-8") as fin:
        try:
            values = np.array(fin.read().split(), dtype=float)
        except ValueError as exc:
            raise ValueError("malformed number in depth file") from exc
    if values.size < WIDTH * HEIGHT:
        raise ValueError(f"depth file holds {values.size} values, need {WIDTH * HEIGHT}")
    ref_depth = values[: WIDTH * HEIGHT].reshape(HEIGHT, WIDTH) / 100.0
    return image_files, poses, ref_depth


def _load_gray(path) -> np.ndarray:
    with Image.open(path) as img:
        return np.asarray(img.convert("L"))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="dense_mapping", description="Dense monocular depth estimation.")
    parser.add_argument("dataset", help="path to the test dataset")
    parser.add_argument("--output", default="depth.png")
    args = parser.parse_args(argv)

    try:
        image_files, poses, ref_depth = read_dataset(args.dataset)
        if not image_files:
            raise ValueError("dataset lists no images")
        ref = _load_gray(image_files[0])
    except (OSError, ValueError):
        print("Reading image files failed!")
        return 1
    print(f"read total {len(image_files)} files.")

    pose_ref = poses[0]
    depth = np.full((HEIGHT, WIDTH), INIT_DEPTH)
    depth_cov2 = np.full((HEIGHT, WIDTH), INIT_COV2)
    for index in range(1, len(image_files)):
        print(f"*** loop {index} ***")
        try:
            curr = _load_gray(image_files[index])
        except OSError:
            continue
        t_c_r = poses[index].inverse() * pose_ref
        update(ref, curr, t_c_r, depth, depth_cov2)
        mse, mean = evaluate_depth(ref_depth, depth)
        print(f"Average squared error = {mse}, average error: {mean}")

    print("estimation returns, saving depth map ...")
    Image.fromarray(np.clip(np.rint(depth), 0, 255).astype(np.uint8)).save(args.output)
    print("done.")
    return 0