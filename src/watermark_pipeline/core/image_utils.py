"""Pixel-level helpers shared by the compositor and the fetch pipeline."""

import math
from typing import IO, Any, Dict, Optional, Tuple

import numpy as np
from PIL import Image

from .exceptions import ImageProcessingError

TRANSPARENT = (0, 0, 0, 0)

# Encoder options per format family. Output never changes format.
ENCODE_OPTIONS: Dict[str, Dict[str, Any]] = {
    "JPEG": {"quality": 90, "progressive": True, "optimize": True},
    "PNG": {"compress_level": 9, "optimize": False},
    "WEBP": {"quality": 85, "method": 4},
}


def apply_opacity(layer: "Image.Image", opacity: float) -> "Image.Image":
    """
    Multiply the alpha channel of an RGBA layer by ``opacity``.

    Args:
        layer: PIL Image in any mode; converted to RGBA
        opacity: Factor in [0, 1]

    Returns:
        New RGBA image
    """
    rgba = layer.convert("RGBA")
    if opacity >= 1.0:
        return rgba
    pixels = np.array(rgba, dtype=np.float32)
    pixels[..., 3] *= max(opacity, 0.0)
    return Image.fromarray(np.clip(pixels, 0, 255).astype(np.uint8), "RGBA")


def rotate_layer(layer: "Image.Image", degrees: float) -> "Image.Image":
    """Rotate clockwise about the center, padding with transparency."""
    if not degrees or math.isclose(degrees % 360, 0.0):
        return layer
    return layer.convert("RGBA").rotate(
        -degrees,
        resample=Image.Resampling.BICUBIC,
        expand=True,
        fillcolor=TRANSPARENT,
    )


def crop_to_content(layer: "Image.Image") -> "Image.Image":
    """Trim fully transparent borders."""
    bbox = layer.getchannel("A").getbbox()
    if bbox is None:
        return layer
    return layer.crop(bbox)


def paste_clipped(
    canvas: "Image.Image", layer: "Image.Image", position: Tuple[int, int]
) -> None:
    """
    Alpha-composite ``layer`` onto ``canvas`` in place.

    Parts of the layer falling outside the canvas are cut away, so negative
    offsets are allowed.
    """
    x, y = position
    left = max(x, 0)
    top = max(y, 0)
    right = min(x + layer.width, canvas.width)
    bottom = min(y + layer.height, canvas.height)
    if right <= left or bottom <= top:
        return
    visible = layer.crop((left - x, top - y, right - x, bottom - y))
    canvas.alpha_composite(visible, dest=(left, top))


def has_alpha(image: "Image.Image") -> bool:
    return image.mode in ("RGBA", "LA", "PA") or "transparency" in image.info


def encode_image(
    image: "Image.Image",
    format_name: str,
    output: IO[bytes],
    keep_alpha: bool = False,
    icc_profile: Optional[bytes] = None,
) -> None:
    """
    Encode ``image`` in its source format family.

    JPEG is always flattened to RGB. PNG and WebP keep an alpha channel only
    when the source had one.
    """
    options = ENCODE_OPTIONS.get(format_name)
    if options is None:
        raise ImageProcessingError(f"Unsupported output format: {format_name}")

    if format_name == "JPEG" or not keep_alpha:
        if image.mode == "RGBA":
            background = Image.new("RGB", image.size, (255, 255, 255))
            background.paste(image, mask=image.getchannel("A"))
            image = background
        else:
            image = image.convert("RGB")
    else:
        image = image.convert("RGBA")

    save_kwargs = dict(options)
    if icc_profile:
        save_kwargs["icc_profile"] = icc_profile
    image.save(output, format=format_name, **save_kwargs)


SUPPORTED_FORMATS = ("JPEG", "PNG", "WEBP")
FORMAT_ALIASES = {"MPO": "JPEG"}


def normalize_format(format_name: Optional[str]) -> Optional[str]:
    """Map Pillow format names onto the supported format families."""
    if format_name is None:
        return None
    upper = format_name.upper()
    return FORMAT_ALIASES.get(upper, upper)
