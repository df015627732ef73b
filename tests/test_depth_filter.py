import numpy as np
import pytest

from slamkit import depth_filter as df
from slamkit.lie import SE3

Z0 = 3.0
SHIFT = 5


def _texture():
    ys, xs = np.mgrid[0:df.HEIGHT, 0:df.WIDTH].astype(float)
    img = 128 + 50 * np.sin(xs / 6.0 + ys / 9.0) + 40 * np.cos(ys / 7.0 - xs / 13.0)
    return np.clip(np.rint(img), 0, 255).astype(np.uint8)


def _scene():
    ref = _texture()
    curr = np.roll(ref, SHIFT, axis=1)
    t_c_r = SE3(None, (SHIFT * Z0 / df.FX, 0.0, 0.0))
    return ref, curr, t_c_r


def _true_depth(x, y):
    return Z0 * float(np.linalg.norm(df.px2cam((x, y))))


def test_px2cam_principal_point():
    np.testing.assert_allclose(df.px2cam((df.CX, df.CY)), [0.0, 0.0, 1.0])


def test_cam2px_inverts_px2cam():
    for px in [(10.0, 20.0), (320.3, 100.7), (600.0, 470.0)]:
        np.testing.assert_allclose(df.cam2px(df.px2cam(px)), px)
        np.testing.assert_allclose(df.cam2px(df.px2cam(px) * 4.2), px)


def test_inside_boundaries():
    assert df.inside((20, 20))
    assert not df.inside((19, 20))
    assert not df.inside((20, 19.9))
    assert df.inside((619, 460))
    assert not df.inside((620, 100))
    assert not df.inside((100, 461))


def test_bilinear_interpolate_linear_ramp():
    ys, xs = np.mgrid[0:10, 0:10]
    image = (2 * xs + 3 * ys).astype(np.uint8)
    assert df.bilinear_interpolate(image, (4, 5)) == pytest.approx(image[5, 4] / 255.0)
    expected = (2 * 2.5 + 3 * 3.25) / 255.0
    assert df.bilinear_interpolate(image, (2.5, 3.25)) == pytest.approx(expected)


def test_bilinear_interpolate_outside_raises():
    image = np.zeros((5, 5), dtype=np.uint8)
    with pytest.raises(IndexError):
        df.bilinear_interpolate(image, (7.0, 1.0))


def test_ncc_identical_and_inverted():
    ref = _texture()
    assert df.ncc(ref, ref, (100, 100), (100, 100)) == pytest.approx(1.0, abs=1e-6)
    assert df.ncc(ref, 255 - ref, (100, 100), (100, 100)) == pytest.approx(-1.0, abs=1e-6)


def test_ncc_flat_window_is_zero():
    ref = _texture()
    flat = np.full_like(ref, 90)
    assert df.ncc(ref, flat, (200, 200), (200, 200)) == pytest.approx(0.0, abs=1e-9)


def test_epipolar_search_finds_shifted_pixel():
    ref, curr, t_c_r = _scene()
    x, y = 325, 240
    match = df.epipolar_search(ref, curr, t_c_r, (x, y), _true_depth(x, y), 0.5)
    assert match is not None
    pt_curr, direction = match
    assert abs(pt_curr[0] - (x + SHIFT)) < 0.7
    assert abs(pt_curr[1] - y) < 1e-6
    assert np.linalg.norm(direction) == pytest.approx(1.0)
    assert abs(direction[1]) < 1e-9


def test_epipolar_search_rejects_poor_match():
    ref, _, t_c_r = _scene()
    flat = np.full_like(ref, 77)
    assert df.epipolar_search(ref, flat, t_c_r, (325, 240), Z0, 0.5) is None


def test_update_depth_filter_moves_towards_truth():
    ref, curr, t_c_r = _scene()
    x, y = 325, 240
    pt_curr, direction = df.epipolar_search(ref, curr, t_c_r, (x, y), _true_depth(x, y), 0.5)
    depth = np.full((df.HEIGHT, df.WIDTH), 2.0)
    cov2 = np.full((df.HEIGHT, df.WIDTH), 3.0)
    mu, sigma2 = df.update_depth_filter((x, y), pt_curr, t_c_r, direction, depth, cov2)
    truth = _true_depth(x, y)
    assert depth[y, x] == mu
    assert cov2[y, x] == sigma2
    assert abs(mu - truth) < abs(2.0 - truth)
    assert 2.0 < mu
    assert 0 < sigma2 < 3.0
    assert depth[y, x + 1] == 2.0


def test_update_depth_filter_without_baseline_raises():
    depth = np.full((df.HEIGHT, df.WIDTH), 2.0)
    cov2 = np.full((df.HEIGHT, df.WIDTH), 3.0)
    with pytest.raises(ValueError):
        df.update_depth_filter((100, 100), (100, 100), SE3(), (1.0, 0.0), depth, cov2)


def test_update_only_touches_unconverged_pixels():
    ref, curr, t_c_r = _scene()
    depth = np.full((df.HEIGHT, df.WIDTH), 1.0)
    cov2 = np.full((df.HEIGHT, df.WIDTH), 0.05)
    block = (slice(238, 242), slice(323, 327))
    for y in range(238, 242):
        for x in range(323, 327):
            depth[y, x] = _true_depth(x, y)
    cov2[block] = 0.25
    truth_block = depth[block].copy()
    before = depth.copy()

    fused = df.update(ref, curr, t_c_r, depth, cov2)

    assert 1 <= fused <= 16
    outside = np.ones_like(depth, dtype=bool)
    outside[block] = False
    np.testing.assert_array_equal(depth[outside], before[outside])
    assert np.all(np.abs(depth[block] - truth_block) < 0.3)
    assert np.all(cov2[block] <= 0.25)
    assert np.count_nonzero(cov2[block] < 0.25) == fused


def test_update_rejects_wrong_shape():
    ref, curr, t_c_r = _scene()
    with pytest.raises(ValueError):
        df.update(ref, curr, t_c_r, np.ones((10, 10)), np.ones((10, 10)))


def test_evaluate_depth_identical_is_zero():
    d = np.random.default_rng(1).random((df.HEIGHT, df.WIDTH))
    assert df.evaluate_depth(d, d) == (0.0, 0.0)


def test_evaluate_depth_constant_offset_and_border_ignored():
    est = np.ones((100, 120))
    truth = est + 1.0
    truth[0, 0] = 500.0
    mse, mean = df.evaluate_depth(truth, est)
    assert mse == pytest.approx(1.0)
    assert mean == pytest.approx(1.0)


def test_evaluate_depth_shape_mismatch():
    with pytest.raises(ValueError):
        df.evaluate_depth(np.ones((50, 50)), np.ones((50, 60)))


def _write_dataset(root, depth_values):
    (root / "depthmaps").mkdir()
    (root / df.TRAJECTORY_FILE).write_text(
        "a.png 1 2 3 0 0 0 1\n\nb.png 4 5 6 0 0 0 1\n", encoding="utf-8"
    )
    (root / "depthmaps" / "scene_000.depth").write_text(" ".join(["100"] * depth_values), encoding="utf-8")


def test_read_dataset(tmp_path):
    _write_dataset(tmp_path, df.WIDTH * df.HEIGHT)
    files, poses, ref_depth = df.read_dataset(tmp_path)
    assert files == [str(tmp_path / "images" / "a.png"), str(tmp_path / "images" / "b.png")]
    np.testing.assert_allclose(poses[1].translation, [4, 5, 6])
    np.testing.assert_allclose(poses[0].rotation.matrix(), np.eye(3))
    assert ref_depth.shape == (df.HEIGHT, df.WIDTH)
    assert np.all(ref_depth == 1.0)


def test_read_dataset_short_depth(tmp_path):
    _write_dataset(tmp_path, 10)
    with pytest.raises(ValueError):
        df.read_dataset(tmp_path)


def test_read_dataset_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        df.read_dataset(tmp_path)


def test_main_reports_missing_dataset(tmp_path, capsys):
    assert df.main([str(tmp_path)]) == 1
    assert "Reading image files failed!" in capsys.readouterr().out


def test_main_requires_argument():
    with pytest.raises(SystemExit):
        df.main([])