import numpy as np
import pytest
from PIL import Image

from slamkit.imaging import ImageInfo, describe_image, load_image, main, undistort_image


def test_describe_grey_image():
    info = describe_image(np.zeros((4, 7), dtype=np.uint8))
    assert info == ImageInfo(width=7, height=4, channels=1, dtype="uint8")
    assert info.supported


def test_describe_colour_image_and_unsupported_type():
    assert describe_image(np.zeros((2, 3, 3), dtype=np.uint8)).channels == 3
    assert not describe_image(np.zeros((2, 3), dtype=np.float32)).supported


def test_describe_rejects_bad_dimensions():
    with pytest.raises(ValueError):
        describe_image(np.zeros(5))


def test_undistort_without_distortion_is_identity():
    rng = np.random.default_rng(0)
    image = rng.integers(0, 256, size=(6, 9), dtype=np.uint8)
    out = undistort_image(image, 0, 0, 0, 0, 1.0, 1.0, 0.0, 0.0)
    assert np.array_equal(out, image)


def test_undistort_keeps_shape_and_dtype():
    image = np.full((30, 40), 200, dtype=np.uint8)
    out = undistort_image(image)
    assert out.shape == image.shape
    assert out.dtype == image.dtype


def test_undistort_zeroes_pixels_mapped_outside():
    image = np.full((10, 10), 200, dtype=np.uint8)
    out = undistort_image(image, 10.0, 0, 0, 0, 5.0, 5.0, 5.0, 5.0)
    assert out[0, 0] == 0
    assert out[5, 5] == 200


def test_undistort_rejects_colour():
    with pytest.raises(ValueError):
        undistort_image(np.zeros((3, 3, 3), dtype=np.uint8))


def test_load_image_round_trip(tmp_path):
    rgb = np.zeros((3, 4, 3), dtype=np.uint8)
    rgb[..., 0] = 255
    path = tmp_path / "img.png"
    Image.fromarray(rgb).save(path)
    assert np.array_equal(load_image(path), rgb)
    grey = load_image(path, grayscale=True)
    assert grey.shape == (3, 4)


def test_load_image_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_image(tmp_path / "absent.png")


def test_main_info_and_undistort(tmp_path, capsys):
    path = tmp_path / "img.png"
    Image.fromarray(np.full((5, 8), 10, dtype=np.uint8)).save(path)
    assert main(["info", str(path)]) == 0
    assert "width 8" in capsys.readouterr().out
    output = tmp_path / "out.png"
    assert main(["undistort", str(path), "--output", str(output)]) == 0
    assert load_image(output, grayscale=True).shape == (5, 8)


def test_main_missing_file(tmp_path):
    assert main(["info", str(tmp_path / "nothing.png")]) == 1