import logging
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from quant_config import (
    BUILTIN_PALETTES,
    ERROR_KERNELS,
    FALLBACK_OFFSETS,
    FALLBACK_PALETTE,
    builtin_palette,
    load_offsets,
    load_palette,
    read_image,
    save_image,
)
from quant_core import Palette, error_diffusion, ordered_dither

DEF_DIR = Path(__file__).resolve().parents[1] / "def"


def test_load_palette_toml(tmp_path: Path) -> None:
    path = tmp_path / "colors.toml"
    path.write_text("palette = [[0, 0, 0], [255, 128, 7]]\n", encoding="utf-8")

    result = load_palette(path)

    assert result.ok
    assert result.error is None
    assert result.value == Palette("colors", [(0, 0, 0), (255, 128, 7)])


def test_load_palette_missing_file_falls_back(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="quant_config"):
        result = load_palette(tmp_path / "nope.toml")

    assert not result.ok
    assert result.value.colors == FALLBACK_PALETTE
    assert "error reading palette file" in caplog.text


@pytest.mark.parametrize(
    "body",
    [
        "palette = []\n",
        "palette = [[0, 0, 256]]\n",
        "palette = [[0, 0]]\n",
        "palette = [[0, 0, 1.5]]\n",
        "colors = [[0, 0, 0]]\n",
        "palette = [[0, 0, 0]\n",
    ],
)
def test_load_palette_invalid_content_falls_back(tmp_path: Path, body: str) -> None:
    path = tmp_path / "bad.toml"
    path.write_text(body, encoding="utf-8")

    result = load_palette(path)

    assert not result.ok
    assert result.value.colors == [(0, 0, 0)]


def test_load_palette_gpl(tmp_path: Path) -> None:
    path = tmp_path / "tiny.gpl"
    path.write_text(
        "GIMP Palette\nName: tiny\nColumns: 2\n#\n  0   0   0\tBlack\n255 255 255\tWhite\n",
        encoding="utf-8",
    )

    result = load_palette(path)

    assert result.ok
    assert result.value.colors == [(0, 0, 0), (255, 255, 255)]


def test_load_palette_hex(tmp_path: Path) -> None:
    path = tmp_path / "lospec.hex"
    path.write_text("000000\n#ff004d\n0x29adff\n", encoding="utf-8")

    result = load_palette(path)

    assert result.value.colors == [(0, 0, 0), (255, 0, 77), (41, 173, 255)]


def test_load_palette_unknown_format(tmp_path: Path) -> None:
    path = tmp_path / "colors.ase"
    path.write_bytes(b"ASEF")

    result = load_palette(path)

    assert not result.ok
    assert "unsupported palette format" in result.error


def test_load_offsets(tmp_path: Path) -> None:
    path = tmp_path / "offset.toml"
    path.write_text("offsets = [[1, 0, 0.5], [-1, 1, 1]]\n", encoding="utf-8")

    result = load_offsets(path)

    assert result.ok
    assert result.value == [(1, 0, 0.5), (-1, 1, 1.0)]
    assert isinstance(result.value[1][2], float)


def test_load_offsets_empty_list_is_valid(tmp_path: Path) -> None:
    path = tmp_path / "offset.toml"
    path.write_text("offsets = []\n", encoding="utf-8")

    assert load_offsets(path).value == []


@pytest.mark.parametrize(
    "body",
    [
        "offsets = [[1, 0]]\n",
        "offsets = [[true, 0, 0.5]]\n",
        "offsets = [[1.0, 0, 0.5]]\n",
        "offsets = [[1, 0, \"half\"]]\n",
        "offsets = [[1, 0, inf]]\n",
        "offsets = [[1, 0, -inf]]\n",
        "offsets = [[1, 0, nan]]\n",
        "weights = []\n",
    ],
)
def test_load_offsets_invalid_content_falls_back(tmp_path: Path, body: str) -> None:
    path = tmp_path / "offset.toml"
    path.write_text(body, encoding="utf-8")

    result = load_offsets(path)

    assert not result.ok
    assert result.value == FALLBACK_OFFSETS


def test_fallbacks_still_dither() -> None:
    palette = load_palette("/nonexistent/palette.toml").value
    offsets = load_offsets("/nonexistent/offset.toml").value
    image = np.arange(4 * 4 * 3, dtype=np.uint8).reshape(4, 4, 3)

    diffused = error_diffusion(image, palette, offsets)
    ordered = ordered_dither(image, palette)

    assert not diffused.converted.any()
    assert not ordered.converted.any()


def test_shipped_defaults_load() -> None:
    palette = load_palette(DEF_DIR / "palette.toml")
    offsets = load_offsets(DEF_DIR / "offset.toml")

    assert palette.ok and offsets.ok
    assert palette.value.colors == BUILTIN_PALETTES["PICO-8"]
    assert offsets.value == ERROR_KERNELS["Floyd-Steinberg"]


def test_builtin_palette_is_a_copy() -> None:
    palette = builtin_palette("Mono")
    palette.colors.append((1, 2, 3))

    assert BUILTIN_PALETTES["Mono"] == [(0, 0, 0), (255, 255, 255)]


def test_read_and_save_image(tmp_path: Path) -> None:
    source = np.zeros((3, 4, 3), dtype=np.uint8)
    source[1, 2] = (200, 100, 50)
    src_path = tmp_path / "in.png"

    Image.fromarray(source).save(src_path)

    image = read_image(src_path)
    assert image.shape == (3, 4, 3)
    assert image.dtype == np.uint8

    result = ordered_dither(image, BUILTIN_PALETTES["Mono"])
    out_path = tmp_path / "out.png"
    save_image(result, out_path)

    np.testing.assert_array_equal(read_image(out_path), result.converted)
