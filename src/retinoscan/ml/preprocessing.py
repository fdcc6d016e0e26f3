"""Image preprocessing pipeline.

Decodes an image source into an RGB pixel grid, stretches it to the model's
square input resolution and flattens it into a normalized float tensor:

    ImageSource -> decode_image -> normalize_geometry -> encode_tensor

Oversized sources are decoded at a reduced power-of-two scale so that a
multi-megapixel fundus photo never has to be held in memory at full size.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, ImageOps

from retinoscan.errors import DecodeError, ErrorKind, ImageValidationError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from retinoscan.ml.sources import ImageSource

logger = logging.getLogger(__name__)

PIXEL_CENTER: float = 127.5
PIXEL_SCALE: float = 127.5

# Exceptions Pillow raises for undecodable or truncated image data.
_PIL_DECODE_ERRORS = (OSError, EOFError, SyntaxError, ValueError, Image.DecompressionBombError)


@dataclass(frozen=True, eq=False)
class PixelGrid:
    """Decoded RGB image, stored row-major as a (height, width, 3) uint8 array."""

    width: int
    height: int
    pixels: NDArray[np.uint8]

    def __post_init__(self) -> None:
        if self.pixels.shape != (self.height, self.width, 3):
            raise ValueError(
                f"Pixel array shape {self.pixels.shape} does not match {self.height}x{self.width}x3"
            )

    @classmethod
    def from_array(cls, pixels: NDArray[np.uint8]) -> PixelGrid:
        """Wrap an HxWx3 (or HxWx4, alpha dropped) uint8 array."""
        if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
            raise ValueError(f"Expected an HxWx3 or HxWx4 array, got shape {pixels.shape}")
        if pixels.shape[2] == 4:
            pixels = np.ascontiguousarray(pixels[:, :, :3])
        height, width = pixels.shape[:2]
        return cls(width=width, height=height, pixels=pixels.astype(np.uint8, copy=False))

    @property
    def pixel_count(self) -> int:
        return self.width * self.height


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def calculate_sample_size(width: int, height: int, target_width: int, target_height: int) -> int:
    """Return the power-of-two downsample factor for decoding a large image.

    The factor keeps doubling while both half-dimensions, divided by the
    factor, still cover the target size.
    """
    sample_size = 1
    if height > target_height or width > target_width:
        half_height = height // 2
        half_width = width // 2
        while half_height // sample_size >= target_height and half_width // sample_size >= target_width:
            sample_size *= 2
    return sample_size


def probe_dimensions(source: ImageSource) -> tuple[int, int]:
    """Read (width, height) from the image header without decoding pixels."""
    with source.open() as stream:
        try:
            with Image.open(stream) as img:
                return img.size
        except _PIL_DECODE_ERRORS as exc:
            raise DecodeError(
                ErrorKind.CORRUPT_FORMAT, f"Unrecognized image format: {source.describe()}"
            ) from exc


def decode_image(
    source: ImageSource,
    target_width: int,
    target_height: int,
    *,
    max_image_pixels: int | None = None,
) -> PixelGrid:
    """Decode an image source into an RGB pixel grid.

    EXIF orientation is applied and any alpha channel is dropped. Images much
    larger than the target are decoded at ``1/sample_size`` scale.

    Raises:
        DecodeError: ``EMPTY_OR_UNREADABLE`` if the source is missing, empty
            or unreadable; ``CORRUPT_FORMAT`` if the data is not a decodable
            image or exceeds ``max_image_pixels``.
    """
    with source.open() as stream:
        try:
            with Image.open(stream) as img:
                width, height = img.size
                if max_image_pixels is not None and width * height > max_image_pixels:
                    raise DecodeError(
                        ErrorKind.CORRUPT_FORMAT,
                        f"Image is too large ({width}x{height} exceeds {max_image_pixels} pixels)",
                    )

                sample_size = calculate_sample_size(width, height, target_width, target_height)
                if sample_size > 1:
                    # Only JPEG honours draft mode; other formats decode at full size.
                    img.draft("RGB", (width // sample_size, height // sample_size))
                img.load()

                remaining = max(1, sample_size * img.width // width)
                oriented = ImageOps.exif_transpose(img)
                rgb = oriented.convert("RGB")
                if remaining > 1:
                    reduced = rgb.reduce(remaining)
                    rgb.close()
                    rgb = reduced
                pixels = np.array(rgb, dtype=np.uint8)
                rgb.close()
                oriented.close()
        except DecodeError:
            raise
        except _PIL_DECODE_ERRORS as exc:
            raise DecodeError(
                ErrorKind.CORRUPT_FORMAT, f"Could not decode image: {source.describe()}"
            ) from exc

    if sample_size > 1:
        logger.debug(
            "Decoded %s at 1/%d scale: %dx%d -> %dx%d",
            source.describe(),
            sample_size,
            width,
            height,
            pixels.shape[1],
            pixels.shape[0],
        )
    return PixelGrid.from_array(pixels)


# ---------------------------------------------------------------------------
# Geometry and tensor encoding
# ---------------------------------------------------------------------------


def normalize_geometry(grid: PixelGrid, target_width: int, target_height: int) -> PixelGrid:
    """Stretch a grid to exactly ``target_width x target_height``.

    A grid that already has the target size is returned as-is, without a copy.
    The full source is scaled with bilinear filtering; nothing is cropped.
    """
    if grid.width == target_width and grid.height == target_height:
        return grid

    source = Image.fromarray(grid.pixels)
    try:
        resized = source.resize((target_width, target_height), Image.Resampling.BILINEAR)
        try:
            pixels = np.array(resized, dtype=np.uint8)
        finally:
            resized.close()
    finally:
        source.close()
    return PixelGrid(width=target_width, height=target_height, pixels=pixels)


def encode_tensor(grid: PixelGrid) -> NDArray[np.float32]:
    """Flatten a grid into a float32 buffer of length ``width * height * 3``.

    Values are laid out row-major with R, G, B interleaved per pixel and
    mapped from [0, 255] to [-1.0, 1.0] via ``(c - 127.5) / 127.5``.
    """
    tensor = grid.pixels.reshape(-1).astype(np.float32)
    tensor -= PIXEL_CENTER
    tensor /= PIXEL_SCALE
    return tensor


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_fundus_geometry(
    width: int,
    height: int,
    *,
    min_side: int,
    min_aspect_ratio: float,
    max_aspect_ratio: float,
) -> None:
    """Reject images too small or too oddly shaped to be a fundus photograph.

    Raises:
        ImageValidationError: If either side is below ``min_side`` or the
            width/height ratio falls outside the allowed range.
    """
    if width < min_side or height < min_side:
        raise ImageValidationError(
            ErrorKind.INVALID_GEOMETRY,
            "Image resolution is too low. Please provide a higher quality image.",
        )
    aspect_ratio = width / height
    if not min_aspect_ratio <= aspect_ratio <= max_aspect_ratio:
        raise ImageValidationError(
            ErrorKind.INVALID_GEOMETRY,
            "Image does not appear to be an eye photo. Please provide a properly cropped eye image.",
        )
