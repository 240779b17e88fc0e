# avatar_studio/storage.py
"""
Flat upload directory helpers.

Stored names are "{epoch_millis}_{sanitized_basename}{ext}" where ext always
comes from the validated image type, never from the client's filename. Bytes
are first written to a ".part" sibling; the final name only appears once the
caller renames it after validation, so a reader never sees a half-validated
file.
"""

import os
import re
import time
import uuid
from pathlib import Path
from typing import Dict, Optional, Tuple

from avatar_studio.logger import console
from avatar_studio.signatures import EXTENSION_BY_FORMAT, MIME_BY_FORMAT

PART_SUFFIX = ".part"
MAX_BASENAME_LENGTH = 64
EXTENSION_BY_MIME = {MIME_BY_FORMAT[fmt]: ext for fmt, ext in EXTENSION_BY_FORMAT.items()}

_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


def ensure_directory(path: Path) -> Path:
    if not path.exists():
        path.mkdir(parents=True, exist_ok=True)
        console.log(f"[blue]Directory created: {path}[/blue]")
    return path


def sanitize_basename(original_name: Optional[str]) -> str:
    """
    Reduce a client-supplied filename to a safe stem: directory parts and the
    extension are dropped, anything outside [A-Za-z0-9_-] collapses to '_'.
    """
    name = (original_name or "").replace("\\", "/").rsplit("/", 1)[-1]
    stem, _ = os.path.splitext(name)
    stem = _UNSAFE.sub("_", stem).strip("_")
    return stem[:MAX_BASENAME_LENGTH] or "upload"


def pick_extension(mimetype: str) -> str:
    """Extension for an allowlisted image MIME type."""
    try:
        return EXTENSION_BY_MIME[mimetype]
    except KeyError:
        raise ValueError(f"no stored extension for {mimetype!r}") from None


def build_filename(original_name: Optional[str], mimetype: str, now_ms: Optional[int] = None) -> str:
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{now_ms}_{sanitize_basename(original_name)}{pick_extension(mimetype)}"


def reserve_path(directory: Path, filename: str) -> Tuple[Path, Path]:
    """
    Claim (final_path, part_path) for a new upload.

    The part file is created with O_EXCL; if another request got the same
    millisecond and basename, a short random suffix is added instead of
    coordinating with it.
    """
    stem, ext = os.path.splitext(filename)
    candidate = filename
    for _ in range(5):
        final_path = directory / candidate
        part_path = directory / (candidate + PART_SUFFIX)
        if not final_path.exists():
            try:
                fd = os.open(part_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                pass
            else:
                os.close(fd)
                return final_path, part_path
        candidate = f"{stem}-{uuid.uuid4().hex[:8]}{ext}"
    raise FileExistsError(f"could not reserve a unique name for {filename}")


def commit_file(part_path: Path, final_path: Path) -> Path:
    os.replace(part_path, final_path)
    return final_path


def delete_file(path: Optional[Path]) -> bool:
    """Delete a file if present. Returns True when something was removed."""
    if path is None:
        return False
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    console.log(f"[yellow]File deleted: {path}[/yellow]")
    return True


def file_info(path: Path) -> Optional[Dict[str, object]]:
    if not path.is_file():
        return None
    stats = path.stat()
    return {
        "size": stats.st_size,
        "mtime": stats.st_mtime,
        "is_file": True,
        "extension": path.suffix.lower(),
    }
