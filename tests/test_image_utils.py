"""Tests for image_utils.py pixel helpers."""

import io

import pytest
from PIL import Image

from watermark_pipeline.core.exceptions import ImageProcessingError
from watermark_pipeline.core.image_utils import (
    apply_opacity,
    crop_to_content,
    encode_image,
    has_alpha,
    normalize_format,
    paste_clipped,
    rotate_layer,
)


class TestApplyOpacity:
    """Tests for apply_opacity function."""

    def test_alpha_multiplied(self):
        """Test alpha values are scaled by the opacity factor."""
        layer = Image.new("RGBA", (4, 4), (10, 20, 30, 200))

        result = apply_opacity(layer, 0.5)

        assert result.getpixel((0, 0)) == (10, 20, 30, 100)

    def test_full_opacity_is_unchanged(self):
        """Test opacity 1 keeps alpha as it was."""
        layer = Image.new("RGBA", (2, 2), (1, 2, 3, 77))
        assert apply_opacity(layer, 1.0).getpixel((1, 1)) == (1, 2, 3, 77)

    def test_rgb_input_converted(self):
        """Test layers without alpha are treated as opaque."""
        result = apply_opacity(Image.new("RGB", (2, 2), (5, 5, 5)), 0.25)
        assert result.mode == "RGBA"
        assert result.getpixel((0, 0))[3] == 63


class TestRotateLayer:
    """Tests for rotate_layer function."""

    def test_zero_rotation_returns_same_image(self):
        """Test no rotation is a no-op."""
        layer = Image.new("RGBA", (10, 4))
        assert rotate_layer(layer, 0) is layer
        assert rotate_layer(layer, 360) is layer

    def test_quarter_turn_expands_canvas(self):
        """Test rotation expands the bounds to fit the rotated layer."""
        layer = Image.new("RGBA", (40, 10), (255, 0, 0, 255))

        rotated = rotate_layer(layer, 90)

        assert rotated.size[0] < rotated.size[1]

    def test_rotation_is_clockwise(self):
        """Test positive degrees rotate clockwise."""
        layer = Image.new("RGBA", (20, 20), (0, 0, 0, 0))
        layer.putpixel((19, 0), (255, 0, 0, 255))  # top-right corner

        rotated = rotate_layer(layer, 90)

        # Clockwise moves the top-right corner to bottom-right
        assert rotated.getpixel((rotated.width - 1, rotated.height - 1))[3] > 0


class TestCropAndPaste:
    """Tests for crop_to_content and paste_clipped."""

    def test_crop_to_content_trims_transparent_border(self):
        """Test fully transparent margins are removed."""
        layer = Image.new("RGBA", (50, 30), (0, 0, 0, 0))
        layer.paste((255, 255, 255, 255), (10, 5, 20, 15))

        assert crop_to_content(layer).size == (10, 10)

    def test_crop_of_empty_layer_is_unchanged(self):
        """Test an all-transparent layer is returned as is."""
        layer = Image.new("RGBA", (5, 5), (0, 0, 0, 0))
        assert crop_to_content(layer).size == (5, 5)

    def test_paste_clipped_negative_offset(self):
        """Test overlays hanging off the top-left edge are clipped."""
        canvas = Image.new("RGBA", (10, 10), (0, 0, 0, 255))
        layer = Image.new("RGBA", (6, 6), (255, 255, 255, 255))

        paste_clipped(canvas, layer, (-3, -3))

        assert canvas.getpixel((0, 0)) == (255, 255, 255, 255)
        assert canvas.getpixel((2, 2)) == (255, 255, 255, 255)
        assert canvas.getpixel((3, 3)) == (0, 0, 0, 255)

    def test_paste_clipped_fully_outside_is_noop(self):
        """Test overlays entirely outside the canvas leave it untouched."""
        canvas = Image.new("RGBA", (10, 10), (0, 0, 0, 255))
        paste_clipped(canvas, Image.new("RGBA", (5, 5), (255, 0, 0, 255)), (20, 20))
        assert canvas.getcolors() == [(100, (0, 0, 0, 255))]


class TestEncodeImage:
    """Tests for encode_image function."""

    @pytest.mark.parametrize("format_name", ["JPEG", "PNG", "WEBP"])
    def test_format_preserved(self, format_name):
        """Test output uses the requested format family."""
        output = io.BytesIO()
        encode_image(Image.new("RGBA", (20, 20), (10, 200, 10, 255)), format_name, output)

        output.seek(0)
        assert Image.open(output).format == format_name

    def test_png_keeps_alpha_when_source_had_it(self):
        """Test PNG output retains transparency for transparent sources."""
        output = io.BytesIO()
        encode_image(Image.new("RGBA", (8, 8), (0, 0, 0, 0)), "PNG", output, keep_alpha=True)

        output.seek(0)
        assert Image.open(output).mode == "RGBA"

    def test_jpeg_is_flattened_to_rgb(self):
        """Test JPEG output drops alpha."""
        output = io.BytesIO()
        encode_image(Image.new("RGBA", (8, 8), (0, 0, 0, 0)), "JPEG", output, keep_alpha=True)

        output.seek(0)
        assert Image.open(output).mode == "RGB"

    def test_unsupported_format_raises(self):
        """Test formats outside JPEG/PNG/WebP are rejected."""
        with pytest.raises(ImageProcessingError, match="Unsupported"):
            encode_image(Image.new("RGB", (4, 4)), "GIF", io.BytesIO())


class TestFormatHelpers:
    """Tests for has_alpha and normalize_format."""

    def test_has_alpha(self):
        """Test alpha detection by mode."""
        assert has_alpha(Image.new("RGBA", (1, 1)))
        assert not has_alpha(Image.new("RGB", (1, 1)))

    @pytest.mark.parametrize("name, expected", [("jpeg", "JPEG"), ("MPO", "JPEG"), ("webp", "WEBP"), (None, None)])
    def test_normalize_format(self, name, expected):
        """Test Pillow format names map to supported families."""
        assert normalize_format(name) == expected
