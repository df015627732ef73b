# slamkit

Building blocks for visual SLAM on top of NumPy and SciPy.

## Modules

- `slamkit.lie` — `SO3` and `SE3` with `exp`, `log`, `inverse`, `matrix`,
  composition by `*` (also applied to a point or an `(N, 3)` array of points),
  `SE3.hat` / `SE3.vee`, `SE3.adjoint` and `SE3.matrix3x4`; plus the functions
  `hat`, `vee`, `quaternion_to_matrix`, `matrix_to_quaternion`,
  `angle_axis_to_matrix`, `euler_angles_zyx` and `transform_between_frames`.
- `slamkit.camera` — `Camera`, a pinhole camera of a stereo rig, with
  `intrinsic_matrix` and conversions `world2camera`, `camera2world`,
  `camera2pixel`, `pixel2camera`, `pixel2world`, `world2pixel`.
- `slamkit.algorithm` — `triangulate(poses, points)`, linear SVD
  triangulation; it returns the world point, or `None` when the solution is
  poor. `to_vec2` turns an `(x, y)` pair or an object with `x` and `y` into a
  2-vector.
- `slamkit.curve_fitting` — fitting `y = exp(a x² + b x + c)`:
  `generate_data`, `curve`, `gauss_newton` and `levenberg_marquardt`, both
  returning a `FitResult` (`params`, `cost`, `iterations`, `history`).
- `slamkit.pose_graph` — `PoseGraph`, `Vertex` and `Edge`: reading and writing
  `VERTEX_SE3:QUAT` / `EDGE_SE3:QUAT` records, `total_error`, and
  Levenberg–Marquardt `optimize` with updates in the Lie algebra. Vertex 0 is
  held fixed when a graph is read.
- `slamkit.trajectory` — `parse_trajectory` / `read_trajectory` for lines of
  `time tx ty tz qx qy qz qw`, and `rmse` between two trajectories.
- `slamkit.depth_filter` — monocular dense depth estimation for 640×480
  images: `epipolar_search`, `ncc`, `update_depth_filter`, `update`,
  `evaluate_depth` and `read_dataset`.
- `slamkit.imaging` — `load_image`, `describe_image` (an `ImageInfo`) and
  `undistort_image` for radial–tangential distortion of grey images.
- `slamkit.pointcloud` — `read_poses`, `depth_to_points`,
  `disparity_to_points`, `voxel_filter`, `statistical_outlier_removal` and
  `save_pcd` (binary PCD with fields `x y z rgb`).
- `slamkit.map` — `Feature`, `Frame`, `MapPoint` and `Map`, the sliding window
  of active key frames (seven by default) and landmarks.
- `slamkit.projection` — `PoseOnlyProjection` and `StereoProjection`
  reprojection errors with their Jacobians, and `oplus_pose`.
- `slamkit.dataset` — `Config` (YAML parameter files, an OpenCV
  `%YAML:1.0` header is accepted), `parse_calibration` and `Dataset`, which
  reads `calib.txt` and half-resolution stereo pairs from `image_0` /
  `image_1`.
- `slamkit.backend` — `Backend`, which bundle-adjusts the map's active key
  frames and landmarks in its own thread with a Huber kernel
  (`huber_weight`) and marks outlier observations.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Using the library

```python
import numpy as np
from slamkit.lie import SE3, SO3
from slamkit.camera import Camera

rotation = SO3.exp(np.array([0.0, 0.0, np.pi / 2]))
pose = SE3(rotation, np.array([1.0, 0.0, 0.0]))

xi = pose.log()                  # translation first, rotation last
same = SE3.exp(xi)
print(np.allclose(same.matrix(), pose.matrix()))

updated = SE3.exp(np.array([1e-4, 0, 0, 0, 0, 0])) * pose

camera = Camera(718.856, 718.856, 607.19, 185.22, 0.573, SE3())
pixel = camera.world2pixel(np.array([1.0, 2.0, 10.0]), pose)
```

Triangulating a point seen from several poses:

```python
from slamkit.algorithm import triangulate

point = triangulate(poses, normalised_points)   # None if the solution is poor
```

## Command-line tools

Each tool prints its usage with `--help`.

Fit the exponential curve to generated noisy data (`--method gauss-newton`
or `levenberg-marquardt`, `--iterations`, `--sigma`, `--count`, `--seed`):

```
slamkit-curve-fit
```

Optimise a pose graph and save it (default output `result.g2o`, 30
iterations):

```
slamkit-pose-graph sphere.g2o
```

Print the RMSE between a ground-truth and an estimated trajectory:

```
slamkit-trajectory-error groundtruth.txt estimated.txt
```

Run dense depth estimation on a dataset directory and save the depth map
(default `depth.png`):

```
slamkit-dense-mapping path/to/dataset
```

Print the size of an image, or undistort a grey image:

```
slamkit-image info picture.png
slamkit-image undistort distorted.png --output undistorted.png
```

Build point clouds: `join` merges five RGB-D frames, `map` filters them and
writes `map.pcd`, `stereo` uses a left image and a disparity image stored
with 16 steps per pixel:

```
slamkit-pointcloud join --data-dir data --output cloud.pcd
slamkit-pointcloud map --data-dir data
slamkit-pointcloud stereo left.png disparity.png --output stereo.pcd
```

## What it does not do

- There is no front end that detects and tracks features, and no command
  that runs a whole stereo visual odometry over a dataset; `Dataset`, `Map`,
  `projection` and `Backend` are the pieces, not a running pipeline.
- Nothing is displayed: there is no 3D viewer or image window. Results are
  printed or written to files (g2o, PNG, PCD).
- Stereo disparity is not computed; `stereo` expects a disparity image.
- There is no loop-closure detection, occupancy mapping or surface meshing.

## Conventions

- Quaternions are passed as `(w, x, y, z)`.
- Poses read from files are given as `tx ty tz qx qy qz qw`.
- The Lie algebra vector of `SE3` puts translation first and rotation last.
- Poses named `t_c_w` map world coordinates into the camera frame.