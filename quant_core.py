from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

Color = tuple[int, int, int]
Offset = tuple[int, int, float]


@dataclass(frozen=True)
class Palette:
    name: str
    colors: list[Color]


PaletteLike = Union[Palette, Sequence[Color], np.ndarray]

BAYER_8X8 = np.array(
    [
        [0, 32, 8, 40, 2, 34, 10, 42],
        [48, 16, 56, 24, 50, 18, 58, 26],
        [12, 44, 4, 36, 14, 46, 6, 38],
        [60, 28, 52, 20, 62, 30, 54, 22],
        [3, 35, 11, 43, 1, 33, 9, 41],
        [51, 19, 59, 27, 49, 17, 57, 25],
        [15, 47, 7, 39, 13, 45, 5, 37],
        [63, 31, 55, 23, 61, 29, 53, 21],
    ],
    dtype=np.int64,
)


def bayer_matrix(size: int) -> np.ndarray:
    matrix = np.array([[0]], dtype=np.int64)
    n = 1
    base = np.array([[0, 2], [3, 1]], dtype=np.int64)
    while n < size:
        matrix = np.block(
            [
                [4 * matrix + base[0, 0], 4 * matrix + base[0, 1]],
                [4 * matrix + base[1, 0], 4 * matrix + base[1, 1]],
            ]
        )
        n *= 2
    return matrix


ORDERED_MATRICES: dict[str, np.ndarray] = {
    "Bayer 2x2": bayer_matrix(2),
    "Bayer 4x4": bayer_matrix(4),
    "Bayer 8x8": BAYER_8X8,
    "Clustered Dot": np.array(
        [
            [12, 5, 6, 13],
            [4, 0, 1, 7],
            [11, 3, 2, 8],
            [15, 10, 9, 14],
        ],
        dtype=np.int64,
    ),
}

ROUNDING_MODES = ("round", "truncate")
NARROWING_MODES = ("wrap", "clamp")

# Pixels per block when matching a whole buffer at once; bounds the (pixels, palette) distance matrix.
_MATCH_CHUNK = 1 << 16


class QuantizeError(Exception):
    """Base class for errors raised by the quantization engine."""


class InvalidPalette(QuantizeError, ValueError):
    """The palette is empty or holds something other than 8-bit RGB triples."""


class DimensionMismatch(QuantizeError, ValueError):
    """A pixel buffer does not have the shape the operation expects."""


def pixel_index(x: int, y: int, width: int) -> int:
    return y * width + x


def as_pixel_buffer(pixels: Sequence[Color], width: int, height: int) -> np.ndarray:
    """Build a ``(height, width, 3)`` buffer from a flat row-major pixel list."""
    array = np.asarray(pixels, dtype=np.int64)
    if array.shape != (width * height, 3):
        raise DimensionMismatch(
            f"expected {width * height} RGB pixels for {width}x{height}, got array of shape {array.shape}"
        )
    if array.size and (array.min() < 0 or array.max() > 255):
        raise ValueError("pixel channels must be within 0-255")
    return array.astype(np.uint8).reshape(height, width, 3)


def _check_buffer(buffer: np.ndarray) -> np.ndarray:
    array = np.asarray(buffer)
    if array.ndim != 3 or array.shape[2] != 3:
        raise DimensionMismatch(f"pixel buffer must have shape (height, width, 3), got {array.shape}")
    return array


def _palette_array(palette: PaletteLike) -> np.ndarray:
    colors = palette.colors if isinstance(palette, Palette) else palette
    try:
        array = np.asarray(colors, dtype=np.int64)
    except (TypeError, ValueError) as exc:
        raise InvalidPalette(f"palette entries must be RGB triples: {exc}") from exc
    if array.size == 0:
        raise InvalidPalette("palette has no colors")
    if array.ndim != 2 or array.shape[1] != 3:
        raise InvalidPalette(f"palette entries must be RGB triples, got array of shape {array.shape}")
    if array.min() < 0 or array.max() > 255:
        raise InvalidPalette("palette channels must be within 0-255")
    return array


def rgb_to_hsv(pixel: Sequence[int]) -> tuple[float, float, float]:
    """Convert an RGB triple to ``(hue, saturation, value)``.

    Hue is in degrees. The red sector uses a truncated remainder, so colors
    whose blue channel exceeds green while red is the maximum produce a
    negative hue; that value is returned as is.
    """
    r, g, b = (float(channel) / 255.0 for channel in pixel)
    c_max = max(r, g, b)
    c_min = min(r, g, b)
    delta = c_max - c_min

    if delta == 0.0:
        h = 0.0
    elif c_max == r:
        h = 60.0 * math.fmod((g - b) / delta, 6.0)
    elif c_max == g:
        h = 60.0 * ((b - r) / delta + 2.0)
    else:
        h = 60.0 * ((r - g) / delta + 4.0)

    s = 0.0 if c_max == 0.0 else delta / c_max
    return h, s, c_max


class PaletteMatcher:
    """Nearest-color lookups against one palette.

    ``index_of`` returns the first entry at the minimum squared RGB distance.
    ``closest`` collects every entry at that distance and, when there is more
    than one, picks the one nearest in HSV space, falling back to palette
    order. Results of ``closest`` are memoised per pixel value.
    """

    def __init__(self, palette: PaletteLike) -> None:
        self.colors = _palette_array(palette)
        self._color_tuples: list[Color] = [tuple(int(c) for c in row) for row in self.colors]
        self._hsv = [rgb_to_hsv(color) for color in self._color_tuples]
        self._cache: dict[Color, int] = {}

    def __len__(self) -> int:
        return len(self._color_tuples)

    def color_at(self, index: int) -> Color:
        return self._color_tuples[index]

    def _distances(self, pixel: Sequence[int]) -> list[int]:
        r, g, b = (int(c) for c in pixel)
        return [(r - pr) ** 2 + (g - pg) ** 2 + (b - pb) ** 2 for pr, pg, pb in self._color_tuples]

    def index_of(self, pixel: Sequence[int]) -> int:
        distances = self._distances(pixel)
        return distances.index(min(distances))

    def closest(self, pixel: Sequence[int]) -> int:
        key = tuple(int(c) for c in pixel)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        distances = self._distances(key)
        minimum = min(distances)
        candidates = [i for i, d in enumerate(distances) if d == minimum]
        if len(candidates) == 1:
            best = candidates[0]
        else:
            best = self._hsv_tie_break(key, candidates)
        self._cache[key] = best
        return best

    def _hsv_tie_break(self, pixel: Color, candidates: list[int]) -> int:
        h, s, v = rgb_to_hsv(pixel)

        def hsv_distance(index: int) -> float:
            ph, ps, pv = self._hsv[index]
            return (h - ph) ** 2 + (s - ps) ** 2 + (v - pv) ** 2

        return min(candidates, key=hsv_distance)

    def _distance_matrix(self, flat: np.ndarray) -> np.ndarray:
        dist = np.zeros((flat.shape[0], self.colors.shape[0]), dtype=np.int64)
        for channel in range(3):
            diff = flat[:, channel, None] - self.colors[None, :, channel]
            dist += diff * diff
        return dist

    def indices(self, buffer: np.ndarray) -> np.ndarray:
        """First-minimum palette index for every pixel of ``buffer``."""
        flat = np.asarray(buffer, dtype=np.int64).reshape(-1, 3)
        out = np.empty(flat.shape[0], dtype=np.int64)
        for start in range(0, flat.shape[0], _MATCH_CHUNK):
            block = flat[start : start + _MATCH_CHUNK]
            out[start : start + block.shape[0]] = self._distance_matrix(block).argmin(axis=1)
        return out.reshape(np.shape(buffer)[:-1])

    def closest_many(self, buffer: np.ndarray) -> np.ndarray:
        """Tie-broken palette index for every pixel of ``buffer``."""
        flat = np.asarray(buffer, dtype=np.int64).reshape(-1, 3)
        out = np.empty(flat.shape[0], dtype=np.int64)
        for start in range(0, flat.shape[0], _MATCH_CHUNK):
            block = flat[start : start + _MATCH_CHUNK]
            dist = self._distance_matrix(block)
            best = dist.argmin(axis=1)
            minimum = dist[np.arange(block.shape[0]), best]
            tied = np.flatnonzero((dist == minimum[:, None]).sum(axis=1) > 1)
            for row in tied:
                best[row] = self.closest(block[row])
            out[start : start + block.shape[0]] = best
        return out.reshape(np.shape(buffer)[:-1])


def nearest_index(pixel: Sequence[int], palette: PaletteLike) -> int:
    return PaletteMatcher(palette).index_of(pixel)


def nearest_color(pixel: Sequence[int], palette: PaletteLike) -> Color:
    matcher = PaletteMatcher(palette)
    return matcher.color_at(matcher.closest(pixel))


@dataclass(frozen=True)
class QuantizedImage:
    """Result of a dither pass: the untouched source and the palette-mapped copy."""

    original: np.ndarray
    converted: np.ndarray

    def __post_init__(self) -> None:
        if np.shape(self.original) != np.shape(self.converted):
            raise DimensionMismatch(
                f"converted buffer {np.shape(self.converted)} does not match original {np.shape(self.original)}"
            )

    @property
    def width(self) -> int:
        return int(self.converted.shape[1])

    @property
    def height(self) -> int:
        return int(self.converted.shape[0])

    def idx(self, x: int, y: int) -> int:
        return pixel_index(x, y, self.width)

    def to_image(self) -> Image.Image:
        return Image.fromarray(np.ascontiguousarray(self.converted, dtype=np.uint8))


def _narrow(work: np.ndarray, narrowing: str) -> np.ndarray:
    if narrowing == "wrap":
        return (work & 0xFF).astype(np.uint8)
    return np.clip(work, 0, 255).astype(np.uint8)


def _round_half_away(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def _check_modes(rounding: str, narrowing: str) -> None:
    if rounding not in ROUNDING_MODES:
        raise ValueError(f"rounding must be one of {ROUNDING_MODES}, got {rounding!r}")
    if narrowing not in NARROWING_MODES:
        raise ValueError(f"narrowing must be one of {NARROWING_MODES}, got {narrowing!r}")


def error_diffusion(
    original: np.ndarray,
    palette: PaletteLike,
    offsets: Sequence[Offset],
    rounding: str = "round",
    narrowing: str = "wrap",
) -> QuantizedImage:
    """Quantize ``original`` to ``palette`` spreading each pixel's error over ``offsets``.

    Pixels are visited row by row, left to right, and the working values are
    updated in place, so later pixels see the error pushed onto them by earlier
    ones. Error only lands on targets at least one pixel away from every edge.
    Working values are unbounded integers; they are narrowed to 8 bits at the
    end, by wraparound (``narrowing="wrap"``) or saturation (``"clamp"``).
    """
    source = _check_buffer(original)
    _check_modes(rounding, narrowing)
    matcher = PaletteMatcher(palette)
    to_int = _round_half_away if rounding == "round" else int
    kernel = [(int(dx), int(dy), float(weight)) for dx, dy, weight in offsets]
    if not all(math.isfinite(weight) for _, _, weight in kernel):
        raise ValueError("offset weights must be finite")

    h, w = source.shape[:2]
    flat = source.reshape(-1, 3).astype(np.int64)
    r_buf, g_buf, b_buf = (flat[:, channel].tolist() for channel in range(3))

    for y in range(h):
        for x in range(w):
            idx = pixel_index(x, y, w)
            old = (r_buf[idx], g_buf[idx], b_buf[idx])
            new = matcher.color_at(matcher.closest(old))
            err_r = old[0] - new[0]
            err_g = old[1] - new[1]
            err_b = old[2] - new[2]
            r_buf[idx], g_buf[idx], b_buf[idx] = new

            for dx, dy, weight in kernel:
                nx = x + dx
                ny = y + dy
                if 0 < nx < w - 1 and 0 < ny < h - 1:
                    target = pixel_index(nx, ny, w)
                    r_buf[target] += to_int(err_r * weight)
                    g_buf[target] += to_int(err_g * weight)
                    b_buf[target] += to_int(err_b * weight)

    work = np.array([r_buf, g_buf, b_buf], dtype=np.int64).T.reshape(h, w, 3)
    out_of_range = int(np.count_nonzero((work < 0) | (work > 255)))
    if out_of_range:
        logger.debug("error diffusion left %d channel values outside 0-255 (%s)", out_of_range, narrowing)
    logger.debug("error diffusion: %dx%d, %d colors, %d offsets", w, h, len(matcher), len(kernel))
    return QuantizedImage(source, _narrow(work, narrowing))


def ordered_dither(
    original: np.ndarray,
    palette: PaletteLike,
    matrix: np.ndarray = BAYER_8X8,
) -> QuantizedImage:
    """Quantize ``original`` to ``palette`` after a tiled threshold offset.

    Thresholds are rescaled to the 0-63 range of the 8x8 Bayer table, so every
    matrix perturbs by ``-32..+31``. Each channel gets
    ``matrix[y % rows][x % cols] * 64 // matrix.size - 32`` added, is clamped
    to 0-255 and the result is matched to the palette. Pixels do not influence each other.
    """
    source = _check_buffer(original)
    matcher = PaletteMatcher(palette)
    threshold = np.asarray(matrix, dtype=np.int64)
    if threshold.ndim != 2 or threshold.size == 0:
        raise DimensionMismatch(f"threshold matrix must be two-dimensional, got shape {threshold.shape}")

    h, w = source.shape[:2]
    m_h, m_w = threshold.shape
    tiled = np.tile(threshold, (h // m_h + 1, w // m_w + 1))[:h, :w]
    offset = tiled * 64 // threshold.size - 32
    adjusted = np.clip(source.astype(np.int64) + offset[:, :, None], 0, 255)

    indices = matcher.closest_many(adjusted)
    converted = matcher.colors[indices].astype(np.uint8).reshape(h, w, 3)
    logger.debug("ordered dither: %dx%d, %d colors, %dx%d matrix", w, h, len(matcher), m_w, m_h)
    return QuantizedImage(source, converted)


def palette_indices(converted: QuantizedImage | np.ndarray, palette: PaletteLike) -> np.ndarray:
    buffer = converted.converted if isinstance(converted, QuantizedImage) else _check_buffer(converted)
    return PaletteMatcher(palette).indices(buffer)


def userdata(converted: QuantizedImage | np.ndarray, palette: PaletteLike) -> str:
    """Encode a quantized buffer as ``userdata("u8", w, h, "<hex indices>")``."""
    buffer = converted.converted if isinstance(converted, QuantizedImage) else _check_buffer(converted)
    h, w = buffer.shape[:2]
    matcher = PaletteMatcher(palette)
    if len(matcher) > 256:
        raise InvalidPalette(f"userdata indices are one byte; palette has {len(matcher)} colors")
    indices = matcher.indices(buffer)
    body = "".join(f"{index:02x}" for index in indices.ravel().tolist())
    return f'userdata("u8", {w}, {h}, "{body}")'
