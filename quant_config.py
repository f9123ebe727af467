from __future__ import annotations

import logging
import math
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, TypeVar

import numpy as np
from PIL import Image, ImageOps

from quant_core import Color, Offset, Palette, QuantizedImage

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_PALETTE_PATH = Path("def/palette.toml")
DEFAULT_OFFSETS_PATH = Path("def/offset.toml")

FALLBACK_PALETTE: list[Color] = [(0, 0, 0)]
FALLBACK_OFFSETS: list[Offset] = [(0, 0, 0.0)]

BUILTIN_PALETTES: dict[str, list[Color]] = {
    "Mono": [(0, 0, 0), (255, 255, 255)],
    "CRT Green": [(0, 0, 0), (64, 255, 144), (12, 72, 40)],
    "CRT Amber": [(0, 0, 0), (255, 176, 64), (96, 48, 8)],
    "CGA": [(0, 0, 0), (85, 255, 255), (255, 85, 255), (255, 255, 255)],
    "Ice": [(10, 14, 26), (52, 86, 128), (170, 210, 255), (240, 248, 255)],
    "PICO-8": [
        (0, 0, 0),
        (29, 43, 83),
        (126, 37, 83),
        (0, 135, 81),
        (171, 82, 54),
        (95, 87, 79),
        (194, 195, 199),
        (255, 241, 232),
        (255, 0, 77),
        (255, 163, 0),
        (255, 236, 39),
        (0, 228, 54),
        (41, 173, 255),
        (131, 118, 156),
        (255, 119, 168),
        (255, 204, 170),
    ],
}

ERROR_KERNELS: dict[str, list[Offset]] = {
    "Floyd-Steinberg": [
        (1, 0, 7 / 16),
        (-1, 1, 3 / 16),
        (0, 1, 5 / 16),
        (1, 1, 1 / 16),
    ],
    "Jarvis-Judice-Ninke": [
        (1, 0, 7 / 48),
        (2, 0, 5 / 48),
        (-2, 1, 3 / 48),
        (-1, 1, 5 / 48),
        (0, 1, 7 / 48),
        (1, 1, 5 / 48),
        (2, 1, 3 / 48),
        (-2, 2, 1 / 48),
        (-1, 2, 3 / 48),
        (0, 2, 5 / 48),
        (1, 2, 3 / 48),
        (2, 2, 1 / 48),
    ],
    "Stucki": [
        (1, 0, 8 / 42),
        (2, 0, 4 / 42),
        (-2, 1, 2 / 42),
        (-1, 1, 4 / 42),
        (0, 1, 8 / 42),
        (1, 1, 4 / 42),
        (2, 1, 2 / 42),
        (-2, 2, 1 / 42),
        (-1, 2, 2 / 42),
        (0, 2, 4 / 42),
        (1, 2, 2 / 42),
        (2, 2, 1 / 42),
    ],
    "Burkes": [
        (1, 0, 8 / 32),
        (2, 0, 4 / 32),
        (-2, 1, 2 / 32),
        (-1, 1, 4 / 32),
        (0, 1, 8 / 32),
        (1, 1, 4 / 32),
        (2, 1, 2 / 32),
    ],
    "Sierra": [
        (1, 0, 5 / 32),
        (2, 0, 3 / 32),
        (-2, 1, 2 / 32),
        (-1, 1, 4 / 32),
        (0, 1, 5 / 32),
        (1, 1, 4 / 32),
        (2, 1, 2 / 32),
        (-1, 2, 2 / 32),
        (0, 2, 3 / 32),
        (1, 2, 2 / 32),
    ],
    "Sierra-2Row": [
        (1, 0, 4 / 16),
        (2, 0, 3 / 16),
        (-2, 1, 1 / 16),
        (-1, 1, 2 / 16),
        (0, 1, 3 / 16),
        (1, 1, 2 / 16),
        (2, 1, 1 / 16),
    ],
    "Sierra Lite": [
        (1, 0, 2 / 4),
        (-1, 1, 1 / 4),
        (0, 1, 1 / 4),
    ],
    "Atkinson": [
        (1, 0, 1 / 8),
        (2, 0, 1 / 8),
        (-1, 1, 1 / 8),
        (0, 1, 1 / 8),
        (1, 1, 1 / 8),
        (0, 2, 1 / 8),
    ],
}


class ConfigError(ValueError):
    """A palette or offset file could not be turned into usable data."""


@dataclass(frozen=True)
class LoadResult(Generic[T]):
    """Loaded value, or the fallback plus the reason the load failed."""

    value: T
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _is_int(value: object) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: object) -> bool:
    return _is_int(value) or isinstance(value, float)


def _as_color(entry: object) -> Color:
    if not isinstance(entry, (list, tuple)) or len(entry) != 3 or not all(_is_int(c) for c in entry):
        raise ConfigError(f"palette entry must be three integers: {entry!r}")
    if any(not (0 <= c <= 255) for c in entry):
        raise ConfigError(f"palette channels must be between 0 and 255: {entry!r}")
    r, g, b = entry
    return (r, g, b)


def _as_offset(entry: object) -> Offset:
    if not isinstance(entry, (list, tuple)) or len(entry) != 3:
        raise ConfigError(f"offset entry must be [dx, dy, weight]: {entry!r}")
    dx, dy, weight = entry
    if not (_is_int(dx) and _is_int(dy) and _is_number(weight)):
        raise ConfigError(f"offset entry must be [int, int, number]: {entry!r}")
    if not math.isfinite(weight):
        raise ConfigError(f"offset weight must be finite: {entry!r}")
    return (dx, dy, float(weight))


def _parse_palette_toml(path: Path) -> list[Color]:
    with path.open("rb") as handle:
        data = tomllib.load(handle)
    entries = data.get("palette")
    if not isinstance(entries, list):
        raise ConfigError(f"{path}: missing 'palette' array")
    return [_as_color(entry) for entry in entries]


def _parse_gpl(path: Path) -> list[Color]:
    colors: list[Color] = []
    for line in path.read_text(encoding="utf-8", errors="ignore").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or line.startswith("Name:") or line.startswith("Columns:"):
            continue
        if line == "GIMP Palette":
            continue
        parts = line.split()
        if len(parts) < 3 or not all(part.isdigit() for part in parts[:3]):
            raise ConfigError(f"{path}: malformed GPL line {line!r}")
        colors.append(_as_color([int(part) for part in parts[:3]]))
    return colors


def _parse_hex_text(text: str) -> list[Color]:
    colors: list[Color] = []
    for line in text.splitlines():
        raw = line.strip()
        if not raw or raw.startswith(";"):
            continue
        if raw.startswith("0x"):
            raw = raw[2:]
        if raw.startswith("#"):
            raw = raw[1:]
        if len(raw) < 6:
            raise ConfigError(f"hex color too short: {line.strip()!r}")
        raw = raw[:6]
        try:
            r = int(raw[0:2], 16)
            g = int(raw[2:4], 16)
            b = int(raw[4:6], 16)
        except ValueError as exc:
            raise ConfigError(f"invalid hex color: {line.strip()!r}") from exc
        colors.append((r, g, b))
    return colors


def _parse_palette_file(path: Path) -> list[Color]:
    suffix = path.suffix.lower()
    if suffix == ".toml":
        return _parse_palette_toml(path)
    if suffix == ".gpl":
        return _parse_gpl(path)
    if suffix in {".hex", ".txt"}:
        return _parse_hex_text(path.read_text(encoding="utf-8", errors="ignore"))
    raise ConfigError(f"unsupported palette format: {path.suffix or path.name}")


def load_palette(path: str | Path = DEFAULT_PALETTE_PATH) -> LoadResult[Palette]:
    """Read a palette file, falling back to a single black entry on any failure."""
    path = Path(path)
    try:
        colors = _parse_palette_file(path)
        if not colors:
            raise ConfigError(f"{path}: palette is empty")
    except (OSError, ValueError) as exc:
        logger.warning("error reading palette file %s: %s", path, exc)
        return LoadResult(Palette("fallback", list(FALLBACK_PALETTE)), str(exc))
    logger.debug("loaded %d colors from %s", len(colors), path)
    return LoadResult(Palette(path.stem, colors))


def load_offsets(path: str | Path = DEFAULT_OFFSETS_PATH) -> LoadResult[list[Offset]]:
    """Read an offset file, falling back to a single zero-weight offset on any failure."""
    path = Path(path)
    try:
        with path.open("rb") as handle:
            data = tomllib.load(handle)
        entries = data.get("offsets")
        if not isinstance(entries, list):
            raise ConfigError(f"{path}: missing 'offsets' array")
        offsets = [_as_offset(entry) for entry in entries]
    except (OSError, ValueError) as exc:
        logger.warning("error reading offset file %s: %s", path, exc)
        return LoadResult(list(FALLBACK_OFFSETS), str(exc))
    logger.debug("loaded %d offsets from %s", len(offsets), path)
    return LoadResult(offsets)


def builtin_palette(name: str) -> Palette:
    return Palette(name, list(BUILTIN_PALETTES[name]))


def read_image(path: str | Path) -> np.ndarray:
    with Image.open(path) as image:
        image = ImageOps.exif_transpose(image)
        return np.array(image.convert("RGB"), dtype=np.uint8)


def save_image(result: QuantizedImage, path: str | Path) -> None:
    result.to_image().save(path)
    logger.info("wrote %s", path)
