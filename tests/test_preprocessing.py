"""Tests for decoding, geometry normalization, and tensor encoding."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from retinoscan.errors import DecodeError, ErrorKind, ImageValidationError
from retinoscan.ml.preprocessing import (
    PixelGrid,
    calculate_sample_size,
    decode_image,
    encode_tensor,
    normalize_geometry,
    probe_dimensions,
    validate_fundus_geometry,
)
from retinoscan.ml.sources import ImageBytes, LocalFile

from conftest import BLUE, RED, image_bytes, write_image

if TYPE_CHECKING:
    from pathlib import Path


def _grid(width: int, height: int, value: int = 0) -> PixelGrid:
    return PixelGrid.from_array(np.full((height, width, 3), value, dtype=np.uint8))


# ---------------------------------------------------------------------------
# Sample size
# ---------------------------------------------------------------------------


class TestCalculateSampleSize:
    def test_exact_target_is_not_downsampled(self) -> None:
        assert calculate_sample_size(224, 224, 224, 224) == 1

    def test_smaller_than_twice_target_is_not_downsampled(self) -> None:
        assert calculate_sample_size(300, 300, 224, 224) == 1

    def test_twice_target(self) -> None:
        assert calculate_sample_size(448, 448, 224, 224) == 2

    def test_large_photo(self) -> None:
        # Half sizes 2000x1500 stay >= 224 at factors 1, 2, 4; at 8 height drops to 187.
        assert calculate_sample_size(4000, 3000, 224, 224) == 8

    def test_one_short_side_limits_the_factor(self) -> None:
        assert calculate_sample_size(4000, 200, 224, 224) == 1

    def test_result_is_power_of_two(self) -> None:
        for size in (500, 1000, 2049, 5000, 12000):
            factor = calculate_sample_size(size, size, 224, 224)
            assert factor & (factor - 1) == 0
            assert factor == 1 or (size // 2) // (factor // 2) >= 224


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


class TestDecodeImage:
    def test_decodes_png_bytes(self) -> None:
        grid = decode_image(ImageBytes(image_bytes(RED, (300, 200))), 224, 224)
        assert (grid.width, grid.height) == (300, 200)
        assert grid.pixels.shape == (200, 300, 3)
        assert grid.pixels.dtype == np.uint8
        assert tuple(grid.pixels[0, 0]) == RED

    def test_decodes_local_file(self, tmp_path: Path) -> None:
        path = write_image(tmp_path / "eye.png", BLUE)
        grid = decode_image(LocalFile(path), 224, 224)
        assert grid.pixel_count == 320 * 320
        assert tuple(grid.pixels[10, 10]) == BLUE

    def test_file_uri_prefix_is_stripped(self, tmp_path: Path) -> None:
        path = write_image(tmp_path / "eye.png", BLUE)
        source = LocalFile.from_str(f"file://{path}")
        assert source.path == path

    def test_alpha_channel_is_dropped(self) -> None:
        buffer = io.BytesIO()
        Image.new("RGBA", (240, 240), (10, 20, 30, 128)).save(buffer, format="PNG")
        grid = decode_image(ImageBytes(buffer.getvalue()), 224, 224)
        assert grid.pixels.shape == (240, 240, 3)
        assert tuple(grid.pixels[0, 0]) == (10, 20, 30)

    def test_grayscale_is_expanded_to_rgb(self) -> None:
        buffer = io.BytesIO()
        Image.new("L", (240, 240), 200).save(buffer, format="PNG")
        grid = decode_image(ImageBytes(buffer.getvalue()), 224, 224)
        assert tuple(grid.pixels[5, 5]) == (200, 200, 200)

    @pytest.mark.parametrize("fmt", ["PNG", "JPEG"])
    def test_large_image_is_downsampled(self, fmt: str) -> None:
        data = image_bytes(RED, (1000, 1000), fmt)
        grid = decode_image(ImageBytes(data), 224, 224)
        assert (grid.width, grid.height) == (250, 250)

    def test_exif_orientation_is_applied(self) -> None:
        exif = Image.Exif()
        exif[0x0112] = 6  # rotate 90 degrees clockwise
        buffer = io.BytesIO()
        Image.new("RGB", (400, 300), RED).save(buffer, format="JPEG", exif=exif)
        grid = decode_image(ImageBytes(buffer.getvalue()), 224, 224)
        assert (grid.width, grid.height) == (300, 400)

    def test_empty_bytes_rejected(self) -> None:
        with pytest.raises(DecodeError) as exc_info:
            decode_image(ImageBytes(b""), 224, 224)
        assert exc_info.value.kind == ErrorKind.EMPTY_OR_UNREADABLE

    def test_zero_byte_file_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.jpg"
        path.touch()
        with pytest.raises(DecodeError) as exc_info:
            decode_image(LocalFile(path), 224, 224)
        assert exc_info.value.kind == ErrorKind.EMPTY_OR_UNREADABLE

    def test_missing_file_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(DecodeError) as exc_info:
            decode_image(LocalFile(tmp_path / "nope.jpg"), 224, 224)
        assert exc_info.value.kind == ErrorKind.EMPTY_OR_UNREADABLE

    def test_garbage_bytes_rejected(self) -> None:
        with pytest.raises(DecodeError) as exc_info:
            decode_image(ImageBytes(b"definitely not an image"), 224, 224)
        assert exc_info.value.kind == ErrorKind.CORRUPT_FORMAT

    def test_truncated_image_rejected(self) -> None:
        rng = np.random.default_rng(0)
        buffer = io.BytesIO()
        Image.fromarray(rng.integers(0, 256, (300, 300, 3), dtype=np.uint8)).save(buffer, format="PNG")
        data = buffer.getvalue()
        with pytest.raises(DecodeError) as exc_info:
            decode_image(ImageBytes(data[: len(data) // 2]), 224, 224)
        assert exc_info.value.kind == ErrorKind.CORRUPT_FORMAT

    def test_pixel_limit_enforced(self) -> None:
        with pytest.raises(DecodeError) as exc_info:
            decode_image(ImageBytes(image_bytes(RED, (300, 300))), 224, 224, max_image_pixels=1000)
        assert exc_info.value.kind == ErrorKind.CORRUPT_FORMAT

    def test_probe_dimensions(self) -> None:
        assert probe_dimensions(ImageBytes(image_bytes(RED, (640, 480)))) == (640, 480)


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


class TestNormalizeGeometry:
    def test_correct_size_is_passed_through_without_copy(self) -> None:
        grid = _grid(224, 224, 7)
        result = normalize_geometry(grid, 224, 224)
        assert result is grid
        assert result.pixels is grid.pixels

    @pytest.mark.parametrize(("width", "height"), [(300, 200), (100, 100), (1000, 224), (225, 224)])
    def test_any_size_is_stretched_to_target(self, width: int, height: int) -> None:
        result = normalize_geometry(_grid(width, height, 90), 224, 224)
        assert (result.width, result.height) == (224, 224)
        assert result.pixels.shape == (224, 224, 3)
        assert result.pixel_count == 224 * 224

    def test_uniform_color_is_preserved(self) -> None:
        grid = PixelGrid.from_array(np.tile(np.array(BLUE, dtype=np.uint8), (150, 400, 1)))
        result = normalize_geometry(grid, 224, 224)
        assert np.all(result.pixels == np.array(BLUE, dtype=np.uint8))

    def test_source_grid_is_untouched(self) -> None:
        grid = _grid(300, 300, 33)
        normalize_geometry(grid, 224, 224)
        assert grid.pixels.shape == (300, 300, 3)
        assert np.all(grid.pixels == 33)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


class TestEncodeTensor:
    def test_length_is_width_times_height_times_three(self) -> None:
        tensor = encode_tensor(_grid(224, 224, 100))
        assert tensor.shape == (224 * 224 * 3,)
        assert tensor.dtype == np.float32

    def test_extremes_map_to_unit_range(self) -> None:
        assert np.all(encode_tensor(_grid(4, 4, 0)) == -1.0)
        assert np.all(encode_tensor(_grid(4, 4, 255)) == 1.0)

    @pytest.mark.parametrize("value", [127, 128])
    def test_midpoint_maps_near_zero(self, value: int) -> None:
        tensor = encode_tensor(_grid(2, 2, value))
        assert tensor == pytest.approx(np.zeros(12), abs=0.004)

    def test_all_values_within_range(self) -> None:
        rng = np.random.default_rng(42)
        grid = PixelGrid.from_array(rng.integers(0, 256, (64, 48, 3), dtype=np.uint8))
        tensor = encode_tensor(grid)
        assert tensor.size == 64 * 48 * 3
        assert tensor.min() >= -1.0
        assert tensor.max() <= 1.0

    def test_row_major_rgb_interleaved(self) -> None:
        pixels = np.array([[RED, BLUE]], dtype=np.uint8)  # one row, two pixels
        tensor = encode_tensor(PixelGrid.from_array(pixels))
        assert tensor.tolist() == [1.0, -1.0, -1.0, -1.0, -1.0, 1.0]

    def test_grid_is_not_mutated(self) -> None:
        grid = _grid(8, 8, 200)
        encode_tensor(grid)
        assert np.all(grid.pixels == 200)


class TestPixelGrid:
    def test_shape_mismatch_rejected(self) -> None:
        with pytest.raises(ValueError, match="does not match"):
            PixelGrid(width=10, height=10, pixels=np.zeros((5, 10, 3), dtype=np.uint8))

    def test_from_array_drops_alpha(self) -> None:
        grid = PixelGrid.from_array(np.zeros((3, 4, 4), dtype=np.uint8))
        assert grid.pixels.shape == (3, 4, 3)
        assert (grid.width, grid.height) == (4, 3)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidateFundusGeometry:
    _limits: dict[str, float] = {"min_side": 300, "min_aspect_ratio": 0.8, "max_aspect_ratio": 1.5}

    def test_reasonable_photo_passes(self) -> None:
        validate_fundus_geometry(2048, 1536, **self._limits)  # type: ignore[arg-type]

    def test_low_resolution_rejected(self) -> None:
        with pytest.raises(ImageValidationError, match="resolution is too low") as exc_info:
            validate_fundus_geometry(299, 400, **self._limits)  # type: ignore[arg-type]
        assert exc_info.value.kind == ErrorKind.INVALID_GEOMETRY

    def test_panoramic_aspect_rejected(self) -> None:
        with pytest.raises(ImageValidationError, match="does not appear to be an eye photo"):
            validate_fundus_geometry(1600, 600, **self._limits)  # type: ignore[arg-type]

    def test_tall_aspect_rejected(self) -> None:
        with pytest.raises(ImageValidationError):
            validate_fundus_geometry(400, 600, **self._limits)  # type: ignore[arg-type]
