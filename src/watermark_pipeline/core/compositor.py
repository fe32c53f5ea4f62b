"""Logo and text overlay layers and format-preserving composition."""

import io
import math
from dataclasses import dataclass
from typing import IO, List, Optional, Tuple
from xml.sax.saxutils import escape

from PIL import Image, ImageOps

from .exceptions import ImageProcessingError, batch_error_handler
from .image_utils import (
    apply_opacity,
    crop_to_content,
    encode_image,
    has_alpha,
    normalize_format,
    paste_clipped,
    rotate_layer,
)
from .models import ImageMetadata, WatermarkSettings
from .positioning import compute_position

BASE_REFERENCE_WIDTH = 800
TEXT_MARGIN = 20
TEXT_STROKE_WIDTH = 4
MIN_TEXT_STROKE_WIDTH = 2
TEXT_LINE_HEIGHT = 1.6


@dataclass
class Layer:
    """A rendered RGBA overlay and where its top-left corner lands."""

    kind: str
    image: "Image.Image"
    position: Tuple[int, int]

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size


def resolution_factor(width: int) -> float:
    return width / BASE_REFERENCE_WIDTH


def build_text_svg(
    text: str,
    font_family: str,
    font_size: int,
    color: str,
    outline_color: Optional[str],
    stroke_width: int,
) -> str:
    """
    SVG document for one line of text.

    The outline is a separate stroked pass painted before the fill pass.
    """
    pad = stroke_width * 2
    width = math.ceil(len(text) * font_size) + pad * 2
    height = math.ceil(font_size * TEXT_LINE_HEIGHT) + pad * 2
    baseline = pad + round(font_size * 1.15)
    content = escape(text)
    font = escape(font_family, {"'": "&apos;", '"': "&quot;"})
    common = (
        f'x="{width / 2:.1f}" y="{baseline}" text-anchor="middle" '
        f"font-family=\"'{font}', Arial, sans-serif\" font-size=\"{font_size}\" font-weight=\"bold\""
    )

    parts = [
        f'<svg xmlns="http://www.w3.org/2000/svg" width="{width}" height="{height}">'
    ]
    if outline_color:
        parts.append(
            f'<text {common} fill="none" stroke="{outline_color}" '
            f'stroke-width="{stroke_width}" stroke-linejoin="round">{content}</text>'
        )
    parts.append(f'<text {common} fill="{color}">{content}</text>')
    parts.append("</svg>")
    return "".join(parts)


def render_svg(svg: str) -> "Image.Image":
    """Rasterize an SVG document to RGBA."""
    import cairosvg  # native cairo is only needed when text layers are used

    png_bytes = cairosvg.svg2png(bytestring=svg.encode("utf-8"))
    image = Image.open(io.BytesIO(png_bytes))
    image.load()
    return image.convert("RGBA")


class LayerCompositor:
    """
    Builds overlay layers for a source image and composites them.

    One compositor is created per job; the decoded logo is shared by every
    image of that job.
    """

    def __init__(
        self,
        settings: WatermarkSettings,
        logo: Optional["Image.Image"] = None,
        svg_renderer=render_svg,
    ):
        if settings.logo_enabled and logo is None:
            raise ImageProcessingError("Logo layer enabled but no logo image was loaded")
        self.settings = settings
        self._logo = logo.convert("RGBA") if logo is not None else None
        self._render_svg = svg_renderer

    @classmethod
    def from_logo_bytes(
        cls, settings: WatermarkSettings, logo_bytes: Optional[bytes], **kwargs
    ) -> "LayerCompositor":
        logo = None
        if logo_bytes:
            with batch_error_handler():
                logo = Image.open(io.BytesIO(logo_bytes))
                logo.load()
        return cls(settings, logo=logo, **kwargs)

    def prepare_layers(self, metadata: ImageMetadata) -> List[Layer]:
        layers: List[Layer] = []
        if self.settings.logo_enabled and self._logo is not None:
            layers.append(self._logo_layer(metadata.width, metadata.height))
        if self.settings.text_enabled:
            layers.append(self._text_layer(metadata.width, metadata.height))
        return layers

    def _logo_layer(self, width: int, height: int) -> Layer:
        s = self.settings
        mobile = s.use_mobile_profile(width, height)
        scale = s.mobile_scale if mobile else s.logo_scale
        anchor = s.mobile_position if mobile else s.logo_position
        res = resolution_factor(width)

        target_w = max(1, math.floor(width * scale))
        target_h = max(1, round(self._logo.height * target_w / self._logo.width))
        logo = self._logo.resize((target_w, target_h), Image.Resampling.LANCZOS)
        logo = rotate_layer(logo, s.logo_rotation)
        logo = apply_opacity(logo, s.logo_opacity)

        custom = (s.logo_x, s.logo_y) if s.use_custom_placement else None
        margin = math.floor(s.logo_margin * res)
        position = compute_position(anchor, (width, height), logo.size, margin, custom)
        return Layer("logo", logo, position)

    def _text_layer(self, width: int, height: int) -> Layer:
        s = self.settings
        mobile = s.use_mobile_profile(width, height)
        scale = s.mobile_scale if mobile else 1.0
        anchor = s.mobile_position if mobile else s.text_position
        res = resolution_factor(width)

        font_size = max(1, math.floor(s.text_size * scale * res))
        stroke = max(MIN_TEXT_STROKE_WIDTH, math.floor(TEXT_STROKE_WIDTH * res))
        svg = build_text_svg(
            s.text_content,
            s.text_font,
            font_size,
            s.text_color,
            s.text_outline_color if s.text_outline else None,
            stroke,
        )
        with batch_error_handler():
            text = crop_to_content(self._render_svg(svg))
        text = rotate_layer(text, s.text_rotation)
        text = apply_opacity(text, s.text_opacity)

        custom = (s.text_x, s.text_y) if s.use_custom_placement else None
        margin = math.floor(TEXT_MARGIN * res)
        position = compute_position(anchor, (width, height), text.size, margin, custom)
        return Layer("text", text, position)

    def composite_to(
        self, source: IO[bytes], output: IO[bytes], layers: Optional[List[Layer]] = None
    ) -> ImageMetadata:
        """
        Decode ``source``, draw the overlays and encode into ``output``.

        Layers are prepared from the decoded size when not supplied.
        """
        with batch_error_handler():
            image = Image.open(source)
            format_name = normalize_format(image.format)
            icc_profile = image.info.get("icc_profile")
            keep_alpha = has_alpha(image)
            image = ImageOps.exif_transpose(image)
            metadata = ImageMetadata(
                width=image.width, height=image.height, format=format_name
            )
            if layers is None:
                layers = self.prepare_layers(metadata)

            canvas = image.convert("RGBA")
            for layer in layers:
                paste_clipped(canvas, layer.image, layer.position)

            encode_image(canvas, format_name, output, keep_alpha, icc_profile)
        return metadata

    def composite(self, source_bytes: bytes, layers: List[Layer]) -> bytes:
        output = io.BytesIO()
        self.composite_to(io.BytesIO(source_bytes), output, layers)
        return output.getvalue()
