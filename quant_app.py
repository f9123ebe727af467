from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from quant_config import (
    BUILTIN_PALETTES,
    DEFAULT_OFFSETS_PATH,
    DEFAULT_PALETTE_PATH,
    ERROR_KERNELS,
    builtin_palette,
    load_offsets,
    load_palette,
    read_image,
    save_image,
)
from quant_core import ORDERED_MATRICES, QuantizeError, error_diffusion, ordered_dither, userdata

logger = logging.getLogger(__name__)

APP_NAME = "quant-dither"
APP_VERSION = "1.0.0"


def set_clipboard(text: str) -> None:
    from PySide6.QtGui import QGuiApplication

    app = QGuiApplication.instance() or QGuiApplication(sys.argv[:1])
    app.clipboard().setText(text)
    app.processEvents()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=APP_NAME,
        description=(
            "Reduce an image to a fixed palette with error diffusion or ordered (Bayer) dithering.\n"
            "Without -o/--userdata/--clipboard the userdata text is printed to stdout."
        ),
        formatter_class=argparse.RawTextHelpFormatter,
    )
    parser.add_argument("image", help="Source image (any format Pillow can open)")
    parser.add_argument(
        "-m",
        "--method",
        choices=["diffusion", "bayer"],
        default="diffusion",
        help="Dithering strategy",
    )
    palette_group = parser.add_mutually_exclusive_group()
    palette_group.add_argument(
        "--palette",
        default=str(DEFAULT_PALETTE_PATH),
        help="Palette file (.toml, .gpl, .hex, .txt)",
    )
    palette_group.add_argument(
        "--builtin-palette",
        choices=sorted(BUILTIN_PALETTES),
        help="Use a built-in palette instead of a file",
    )
    kernel_group = parser.add_mutually_exclusive_group()
    kernel_group.add_argument(
        "--offsets",
        default=str(DEFAULT_OFFSETS_PATH),
        help="Offset file with [dx, dy, weight] rows (diffusion only)",
    )
    kernel_group.add_argument(
        "--kernel",
        choices=sorted(ERROR_KERNELS),
        help="Use a built-in error diffusion kernel instead of an offset file",
    )
    parser.add_argument(
        "--matrix",
        choices=sorted(ORDERED_MATRICES),
        default="Bayer 8x8",
        help="Threshold matrix (bayer only)",
    )
    parser.add_argument(
        "--rounding",
        choices=["round", "truncate"],
        default="round",
        help="How diffused error is converted to whole channel steps",
    )
    parser.add_argument(
        "--narrowing",
        choices=["wrap", "clamp"],
        default="wrap",
        help="How out-of-range channels are stored in the 8-bit output",
    )
    parser.add_argument("-o", "--output", help="Write the quantized image to this path")
    parser.add_argument("--userdata", action="store_true", help="Print userdata text to stdout")
    parser.add_argument("--clipboard", action="store_true", help="Copy userdata text to the clipboard")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")
    return parser


def run(args: argparse.Namespace) -> int:
    if args.builtin_palette:
        palette = builtin_palette(args.builtin_palette)
    else:
        palette = load_palette(args.palette).value

    image = read_image(args.image)
    logger.debug("read %s (%dx%d)", args.image, image.shape[1], image.shape[0])

    if args.method == "diffusion":
        if args.kernel:
            offsets = ERROR_KERNELS[args.kernel]
        else:
            offsets = load_offsets(args.offsets).value
        result = error_diffusion(image, palette, offsets, rounding=args.rounding, narrowing=args.narrowing)
    else:
        result = ordered_dither(image, palette, ORDERED_MATRICES[args.matrix])

    if args.output:
        save_image(result, Path(args.output))

    wants_text = args.userdata or args.clipboard or not args.output
    if wants_text:
        text = userdata(result, palette)
        if args.clipboard:
            set_clipboard(text)
            logger.info("copied userdata (%dx%d) to clipboard", result.width, result.height)
        if args.userdata or not (args.clipboard or args.output):
            print(text)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return run(args)
    except (QuantizeError, OSError) as exc:
        logger.error("%s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
