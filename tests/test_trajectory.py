import io
import math

import numpy as np
import pytest

from slamkit.lie import SE3, angle_axis_to_matrix
from slamkit.trajectory import main, parse_trajectory, read_trajectory, rmse


def test_parse_identity_rotation_and_translation():
    poses = parse_trajectory(io.StringIO("1.5 1 2 3 0 0 0 1\n"))
    assert len(poses) == 1
    assert np.allclose(poses[0].translation, [1, 2, 3])
    assert np.allclose(poses[0].rotation.matrix(), np.eye(3))


def test_parse_quaternion_order_is_xyzw():
    s = math.sqrt(0.5)
    poses = parse_trajectory(io.StringIO(f"0 0 0 0 0 0 {s} {s}\n"))
    expected = angle_axis_to_matrix(math.pi / 2, [0, 0, 1])
    assert np.allclose(poses[0].rotation.matrix(), expected)


def test_parse_skips_blank_lines():
    text = "0 0 0 0 0 0 0 1\n\n1 1 0 0 0 0 0 1\n\n"
    poses = parse_trajectory(io.StringIO(text))
    assert [p.translation[0] for p in poses] == [0.0, 1.0]


def test_parse_wrong_field_count_raises():
    with pytest.raises(ValueError):
        parse_trajectory(io.StringIO("0 1 2 3\n"))


def test_parse_bad_number_raises():
    with pytest.raises(ValueError):
        parse_trajectory(io.StringIO("0 a 0 0 0 0 0 1\n"))


def test_read_trajectory_from_file(tmp_path):
    path = tmp_path / "traj.txt"
    path.write_text("0 1 0 0 0 0 0 1\n1 2 0 0 0 0 0 1\n")
    poses = read_trajectory(path)
    assert len(poses) == 2
    assert np.allclose(poses[1].translation, [2, 0, 0])


def test_read_trajectory_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_trajectory(tmp_path / "missing.txt")


def test_rmse_of_identical_trajectories_is_zero():
    poses = [SE3.exp([0.1, 0.2, 0.3, 0.1, -0.2, 0.3]), SE3.exp([1, 0, 0, 0, 0, 0.5])]
    assert rmse(poses, list(poses)) == pytest.approx(0.0, abs=1e-12)


def test_rmse_of_translation_offset():
    gt = [SE3(), SE3()]
    est = [SE3(None, [0.3, 0.4, 0.0]), SE3(None, [0.3, 0.4, 0.0])]
    assert rmse(gt, est) == pytest.approx(0.5)


def test_rmse_is_symmetric_for_pure_offsets():
    gt = [SE3.exp([0.1, 0, 0, 0, 0, 0.2]), SE3.exp([0, 0.3, 0, 0.1, 0, 0])]
    est = [SE3.exp([0.2, 0, 0, 0, 0, 0.1]), SE3.exp([0, 0.1, 0.1, 0, 0.1, 0])]
    assert rmse(gt, est) == pytest.approx(rmse(est, gt))


def test_rmse_length_mismatch_raises():
    with pytest.raises(ValueError):
        rmse([SE3()], [SE3(), SE3()])


def test_rmse_empty_raises():
    with pytest.raises(ValueError):
        rmse([], [])


def test_main_prints_rmse(tmp_path, capsys):
    gt = tmp_path / "groundtruth.txt"
    est = tmp_path / "estimated.txt"
    gt.write_text("0 0 0 0 0 0 0 1\n")
    est.write_text("0 0.3 0.4 0 0 0 0 1\n")
    assert main([str(gt), str(est)]) == 0
    out = capsys.readouterr().out
    assert out.startswith("RMSE = ")
    assert float(out.split("=")[1]) == pytest.approx(0.5)


def test_main_missing_file_returns_one(tmp_path, capsys):
    gt = tmp_path / "groundtruth.txt"
    gt.write_text("0 0 0 0 0 0 0 1\n")
    assert main([str(gt), str(tmp_path / "missing.txt")]) == 1
    assert "not found." in capsys.readouterr().err


def test_main_size_mismatch_returns_one(tmp_path):
    gt = tmp_path / "groundtruth.txt"
    est = tmp_path / "estimated.txt"
    gt.write_text("0 0 0 0 0 0 0 1\n1 0 0 0 0 0 0 1\n")
    est.write_text("0 0 0 0 0 0 0 1\n")
    assert main([str(gt), str(est)]) == 1