"""Visual SLAM building blocks: Lie groups, cameras, optimisation and mapping."""

__version__ = "0.1.0"

__all__ = [
    "algorithm",
    "backend",
    "camera",
    "curve_fitting",
    "dataset",
    "depth_filter",
    "imaging",
    "lie",
    "map",
    "pointcloud",
    "pose_graph",
    "projection",
    "trajectory",
]