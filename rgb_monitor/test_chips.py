import io

import numpy as np
import pytest
from PIL import Image

from rgb_monitor.chips import Chip, compose_rgb, encode_png, stretch_to_bytes
from rgb_monitor.rgb_timeseries import VisParams


def test_stretch_clamps_and_masks():
    band = np.array([[0.0, 50.0], [100.0, np.nan]])
    stretched = stretch_to_bytes(band, 0, 100)
    assert stretched[0, 0] == 0
    assert stretched[0, 1] == 128
    assert stretched[1, 0] == 255
    assert np.ma.is_masked(stretched[1, 1])


def test_stretch_rejects_empty_range():
    with pytest.raises(ValueError):
        stretch_to_bytes(np.zeros((2, 2)), 1, 1)


def test_gamma_brightens_midtones():
    band = np.array([[25.0]])
    assert stretch_to_bytes(band, 0, 100, gamma=2.0)[0, 0] > stretch_to_bytes(band, 0, 100)[0, 0]


def test_compose_rgb_fills_masked_pixels_black():
    vis = VisParams(bands=("R", "G", "B"), min=(0, 0, 0), max=(10, 10, 10))
    red = np.ma.array([[10.0, 10.0]], mask=[[False, True]])
    rgb = compose_rgb([red, np.zeros((1, 2)), np.full((1, 2), 10.0)], vis)
    assert rgb.shape == (1, 2, 3)
    assert rgb.dtype == np.uint8
    assert rgb[0, 0].tolist() == [255, 0, 255]
    assert rgb[0, 1].tolist() == [0, 0, 255]


def test_encode_png_draws_outline():
    rgb = np.zeros((20, 20, 3), dtype="uint8")
    png = encode_png(rgb, outline=[(2, 2), (17, 2), (17, 17), (2, 17)])
    image = Image.open(io.BytesIO(png))
    assert image.format == "PNG"
    assert image.size == (20, 20)
    assert image.getpixel((10, 2)) == (255, 255, 255)
    assert image.getpixel((10, 10)) == (0, 0, 0)


def test_chip_data_uri():
    chip = Chip(date="2024-05-01", image=b"\x89PNG")
    assert chip.data_uri() == "data:image/png;base64,iVBORw=="
