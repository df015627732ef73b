"""Reading TUM-style trajectories and measuring their error."""

from __future__ import annotations

import argparse
import math
import sys
from typing import IO, Sequence

import numpy as np

from slamkit.lie import SE3


def parse_trajectory(stream: IO[str]) -> list[SE3]:
    """Poses from lines of ``time tx ty tz qx qy qz qw``; blank lines are skipped."""
    poses: list[SE3] = []
    for lineno, line in enumerate(stream, 1):
        fields = line.split()
        if not fields:
            continue
        if len(fields) != 8:
            raise ValueError(f"line {lineno}: expected 8 fields, got {len(fields)}")
        try:
            _, tx, ty, tz, qx, qy, qz, qw = (float(v) for v in fields)
        except ValueError as exc:
            raise ValueError(f"line {lineno}: malformed number") from exc
        poses.append(SE3.from_quaternion(qw, qx, qy, qz, (tx, ty, tz)))
    return poses


def read_trajectory(path) -> list[SE3]:
    """Poses read from the trajectory file at ``path``."""
    with open(path, encoding="utf-8") as fin:
        return parse_trajectory(fin)


def rmse(groundtruth: Sequence[SE3], estimated: Sequence[SE3]) -> float:
    """Root mean square of ||log(T_gt^-1 T_est)|| over paired poses."""
    if not groundtruth or not estimated:
        raise ValueError("trajectories must not be empty")
    if len(groundtruth) != len(estimated):
        raise ValueError("trajectories must have the same number of poses")
    total = 0.0
    for gt, est in zip(groundtruth, estimated):
        error = float(np.linalg.norm((gt.inverse() * est).log()))
        total += error * error
    return math.sqrt(total / len(estimated))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="trajectory", description="RMSE between two trajectories.")
    parser.add_argument("groundtruth", nargs="?", default="../groundtruth.txt")
    parser.add_argument("estimated", nargs="?", default="../estimated.txt")
    args = parser.parse_args(argv)

    trajectories = []
    for path in (args.groundtruth, args.estimated):
        try:
            trajectories.append(read_trajectory(path))
        except FileNotFoundError:
            print(f"trajectory {path} not found.", file=sys.stderr)
            return 1
    try:
        value = rmse(*trajectories)
    except ValueError as exc:
        print(exc, file=sys.stderr)
        return 1
    print(f"RMSE = {value}")
    return 0