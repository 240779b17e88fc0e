# avatar_studio/signatures.py
"""
Magic-number sniffing for the three supported raster formats.

The same functions back the client pre-flight check and the server's
post-write validation, so the two boundaries can never disagree about what
counts as a real image. The declared MIME type is only a cheap pre-filter;
the leading bytes are the binding check.
"""

import os
from typing import Optional, Union

# Number of leading bytes needed to tell every supported format apart
SIGNATURE_LENGTH = 12

ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp")

MIME_BY_FORMAT = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
}

EXTENSION_BY_FORMAT = {
    "jpeg": ".jpg",
    "png": ".png",
    "webp": ".webp",
}


def detect_image_format(head: bytes) -> Optional[str]:
    """
    Return "jpeg", "png" or "webp" for a recognised signature, else None.

    Only the first SIGNATURE_LENGTH bytes are inspected; shorter input can
    still match JPEG or PNG but never WebP.
    """
    buf = bytes(head[:SIGNATURE_LENGTH])

    if buf[:3] == b"\xff\xd8\xff":
        return "jpeg"
    if buf[:4] == b"\x89PNG":
        return "png"
    if len(buf) >= 12 and buf[:4] == b"RIFF" and buf[8:12] == b"WEBP":
        return "webp"
    return None


def is_supported_image(head: bytes) -> bool:
    return detect_image_format(head) is not None


def is_allowed_mime(mimetype: Optional[str], allowed=ALLOWED_MIME_TYPES) -> bool:
    """Declared-type pre-filter. Parameters such as '; charset=' are ignored."""
    if not mimetype:
        return False
    base = mimetype.split(";", 1)[0].strip().lower()
    return base in allowed


def matches_declared_type(head: bytes, mimetype: Optional[str]) -> bool:
    """
    True when the bytes carry a supported signature AND that signature agrees
    with the declared MIME type.

    A PNG body declared as image/jpeg is rejected even though each half is
    individually acceptable.
    """
    fmt = detect_image_format(head)
    if fmt is None or not mimetype:
        return False
    base = mimetype.split(";", 1)[0].strip().lower()
    return MIME_BY_FORMAT[fmt] == base


def read_signature(path: Union[str, os.PathLike]) -> bytes:
    """Read the leading signature bytes of a file on disk."""
    with open(path, "rb") as fh:
        return fh.read(SIGNATURE_LENGTH)
