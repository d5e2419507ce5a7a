from __future__ import annotations

import io
import logging
import zipfile
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from .config import ALLOWED_IMAGE_FORMATS, JPEG_QUALITY, MIN_TILE_SIZE
from .errors import TileTooSmallError, UnsupportedFormatError


logger = logging.getLogger(__name__)

# Modes the JPEG encoder accepts as-is; everything else is converted to RGB.
_JPEG_MODES = {"RGB", "L", "CMYK"}


def _is_decode_error(exc: BaseException) -> bool:
    # Pillow reports bad or truncated data as OSError without an errno;
    # read failures from the file itself carry one.
    if isinstance(exc, (UnidentifiedImageError, Image.DecompressionBombError, SyntaxError)):
        return True
    return isinstance(exc, OSError) and exc.errno is None


def open_image(path: str | Path) -> tuple[Image.Image, str]:
    """Decode the image at path.

    Returns the decoded image and Pillow's format name ("JPEG" or "PNG").
    Data Pillow cannot decode, including images over its pixel limit, raises
    UnsupportedFormatError. OSError from reading the file propagates.
    """
    with open(path, "rb") as fp:
        try:
            with Image.open(fp) as img:
                img.load()
                image_format = img.format or ""
                decoded = img.copy()
        except (OSError, SyntaxError, Image.DecompressionBombError) as exc:
            if not _is_decode_error(exc):
                raise
            logger.error("error on decode file %s: %s", path, exc)
            raise UnsupportedFormatError("cannot decode image file") from exc
    if image_format not in ALLOWED_IMAGE_FORMATS:
        raise UnsupportedFormatError(f"unsupported image format: {image_format or 'unknown'}")
    return decoded, image_format


def _jpeg_ready(img: Image.Image) -> Image.Image:
    if img.mode in _JPEG_MODES:
        return img
    try:
        return img.convert("RGB")
    except ValueError as exc:
        logger.error("cannot convert mode %s to RGB: %s", img.mode, exc)
        raise UnsupportedFormatError(f"unsupported pixel mode: {img.mode}") from exc


def cut_image(img: Image.Image, dx: int, dy: int) -> list[list[Image.Image]]:
    """Partition img into a row-major grid of dx x dy tiles.

    The grid has ceil(height/dy) rows and ceil(width/dx) columns. Tiles on the
    right and bottom edges hold only the remaining pixels; they are not padded.
    """
    if dx < MIN_TILE_SIZE or dy < MIN_TILE_SIZE:
        raise TileTooSmallError(f"cut too small: {dx}x{dy}, minimum is {MIN_TILE_SIZE}x{MIN_TILE_SIZE}")

    source = _jpeg_ready(img)
    width, height = source.size
    logger.debug("dimension banks x: %d, y: %d", width, height)

    grid: list[list[Image.Image]] = []
    for top in range(0, height, dy):
        row: list[Image.Image] = []
        bottom = min(top + dy, height)
        for left in range(0, width, dx):
            right = min(left + dx, width)
            row.append(source.crop((left, top, right, bottom)))
        grid.append(row)
    return grid


def tile_name(prefix: str, row: int, col: int, rows: int, cols: int) -> str:
    """Archive entry name for the 1-based tile (row, col).

    Indexes are zero-padded to the digit count of rows/cols so names sort in
    grid order.
    """
    head = f"{prefix}_" if prefix else ""
    return f"{head}{row:0{len(str(rows))}d}x{col:0{len(str(cols))}d}.jpeg"


def pack_images(dest: zipfile.ZipFile, grid: list[list[Image.Image]], name_prefix: str) -> int:
    """Encode every tile as JPEG into dest. Returns the number of entries written."""
    if not grid or not grid[0]:
        return 0
    rows = len(grid)
    cols = len(grid[0])
    written = 0
    for r, row in enumerate(grid, start=1):
        for c, tile in enumerate(row, start=1):
            buf = io.BytesIO()
            tile.save(buf, format="JPEG", quality=JPEG_QUALITY)
            dest.writestr(tile_name(name_prefix, r, c, rows, cols), buf.getvalue())
            written += 1
    return written
