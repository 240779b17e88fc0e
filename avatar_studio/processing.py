# avatar_studio/processing.py
"""
Client-side image pipeline: load and pre-flight a source photo, map the
visible stage region back to source pixels, render the fixed-size square
bitmap and encode it.
"""

import base64
import io
from dataclasses import dataclass, field
from typing import Optional, Sequence

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from avatar_studio.crop import CropTransform, StageGeometry
from avatar_studio.errors import FileTooLargeError, ValidationError
from avatar_studio.signatures import (
    ALLOWED_MIME_TYPES,
    detect_image_format,
    is_allowed_mime,
    matches_declared_type,
)


# ==========================
# SOURCE IMAGE
# ==========================

@dataclass(frozen=True, eq=False)
class SourceImage:
    data: bytes = field(repr=False)
    mimetype: str
    filename: str
    width: int
    height: int
    pixels: np.ndarray = field(repr=False)  # H x W x 3, uint8 RGB

    @property
    def size(self) -> int:
        return len(self.data)


def preflight_check(
    data: bytes,
    mimetype: str,
    max_bytes: int,
    allowed: Sequence[str] = ALLOWED_MIME_TYPES,
) -> str:
    """
    Size, declared type and signature checks, in that order.

    Returns the detected format. Raises the same error classes the server
    uses so callers can render them identically.
    """
    if len(data) > max_bytes:
        raise FileTooLargeError(
            f"Source image is {len(data)} bytes; the limit is {max_bytes // (1024 * 1024)} MiB"
        )
    if not is_allowed_mime(mimetype, allowed):
        raise ValidationError("Only JPEG, PNG and WebP images are supported")
    if not matches_declared_type(data, mimetype):
        raise ValidationError("File contents do not match a supported image format")
    return detect_image_format(data)


def pil_to_numpy(img: Image.Image) -> np.ndarray:
    """Return H x W x C numpy array."""
    return np.array(img)


def numpy_to_pil(image_np: np.ndarray) -> Image.Image:
    if image_np.ndim == 2:
        return Image.fromarray(image_np.astype("uint8"), "L")
    if image_np.shape[2] == 4:
        return Image.fromarray(image_np.astype("uint8"), "RGBA")
    return Image.fromarray(image_np.astype("uint8"), "RGB")


def flatten_to_rgb(img: Image.Image) -> Image.Image:
    """Composite transparent images over white, convert everything else to RGB."""
    if img.mode == "P":
        img = img.convert("RGBA")
    if img.mode in ("RGBA", "LA"):
        background = Image.new("RGB", img.size, (255, 255, 255))
        background.paste(img, mask=img.split()[-1])
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def load_source_image(
    data: bytes,
    mimetype: str,
    filename: str = "",
    max_bytes: int = 15 * 1024 * 1024,
    allowed: Sequence[str] = ALLOWED_MIME_TYPES,
) -> SourceImage:
    """Pre-flight, decode and orient an uploaded photo."""
    preflight_check(data, mimetype, max_bytes, allowed)

    try:
        with Image.open(io.BytesIO(data)) as opened:
            oriented = ImageOps.exif_transpose(opened)
            rgb = flatten_to_rgb(oriented)
            rgb.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ValidationError(f"Image could not be decoded: {exc}") from exc

    pixels = pil_to_numpy(rgb)
    height, width = pixels.shape[:2]

    return SourceImage(
        data=data,
        mimetype=mimetype.split(";", 1)[0].strip().lower(),
        filename=filename,
        width=width,
        height=height,
        pixels=pixels,
    )


# ==========================
# RASTERIZER
# ==========================

@dataclass(frozen=True)
class SourceRect:
    x: float
    y: float
    width: float
    height: float


def visible_source_rect(geometry: StageGeometry, transform: CropTransform) -> SourceRect:
    """
    Invert the display transform: which source pixels are on the stage.

    The stage is a display-space convenience; this is recomputed from the
    transform every time so a different stage size never desynchronizes
    what is shown from what is exported.
    """
    factor = geometry.base_scale * transform.scale
    visible_w = geometry.stage_size / factor
    visible_h = geometry.stage_size / factor

    max_x = max(0.0, geometry.natural_width - visible_w)
    max_y = max(0.0, geometry.natural_height - visible_h)
    src_x = max(0.0, min(max_x, -transform.offset_x / factor))
    src_y = max(0.0, min(max_y, -transform.offset_y / factor))

    return SourceRect(x=src_x, y=src_y, width=visible_w, height=visible_h)


def rasterize(
    pixels: np.ndarray,
    geometry: StageGeometry,
    transform: CropTransform,
    output_size: int = 512,
    interpolation: int = cv2.INTER_LINEAR,
) -> np.ndarray:
    """
    Render the visible source rectangle into an output_size x output_size
    bitmap.

    A single affine warp maps the source rectangle onto the output square;
    the destination size is passed explicitly, so the result is exactly
    square whatever the source aspect ratio or zoom.
    """
    rect = visible_source_rect(geometry, transform)
    k = output_size / rect.width

    M = np.array(
        [
            [k, 0.0, -rect.x * k],
            [0.0, k, -rect.y * k],
        ],
        dtype=np.float64,
    )

    return cv2.warpAffine(
        pixels,
        M,
        (output_size, output_size),
        flags=interpolation,
        borderMode=cv2.BORDER_REPLICATE,
    )


# ==========================
# ENCODING
# ==========================

def quality_to_jpeg(quality: float) -> int:
    """Map a (0, 1] quality onto Pillow's 1..100 JPEG scale."""
    if not 0 < quality <= 1:
        raise ValueError(f"quality must be in (0, 1], got {quality}")
    return max(1, min(100, int(round(quality * 100))))


def encode_jpeg(bitmap: np.ndarray, quality: float) -> bytes:
    img = flatten_to_rgb(numpy_to_pil(bitmap))
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality_to_jpeg(quality), optimize=True)
    return buf.getvalue()


def to_data_uri(data: bytes, mimetype: str = "image/jpeg") -> str:
    """Encode bytes as data:<mimetype>;base64,... for previews."""
    b64 = base64.b64encode(data).decode("ascii")
    return f"data:{mimetype};base64,{b64}"


def decode_dimensions(data: bytes) -> Optional[tuple]:
    """(width, height) of an encoded image, or None if it does not decode."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError):
        return None
