# avatar_studio/ingest.py
"""
Server-side avatar ingest.

Steps, each short-circuiting to a typed error:
  1. resolve the session token (before any body is read)
  2. declared-type allowlist and byte ceiling
  3. write the bytes to a reserved ".part" file
  4. post-write validation hooks (magic numbers, optionally a full decode)
  5. rename to the final name and rebind the session avatar

Any failure after step 3 has started deletes whatever was written before the
error leaves this module.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from fastapi import UploadFile
from starlette.concurrency import run_in_threadpool
from PIL import Image, UnidentifiedImageError

from avatar_studio.auth import resolve_session
from avatar_studio.config import Settings
from avatar_studio.errors import (
    AvatarError,
    FileTooLargeError,
    InvalidSessionError,
    ServerError,
    ValidationError,
)
from avatar_studio.logger import console
from avatar_studio.metrics import INGEST_SECONDS, ORPHANS_REMOVED, UPLOAD_BYTES
from avatar_studio.models import FileInfo, FileRecord, UploadResponse, UploadSession
from avatar_studio.sessions import SessionStore
from avatar_studio.signatures import (
    MIME_BY_FORMAT,
    detect_image_format,
    is_allowed_mime,
    matches_declared_type,
    read_signature,
)
from avatar_studio import storage

# Slack for multipart framing when comparing Content-Length with the ceiling
MULTIPART_OVERHEAD = 64 * 1024
WRITE_CHUNK = 64 * 1024

# A hook gets the written file and the declared MIME type and raises
# ValidationError to reject it.
ValidationHook = Callable[[Path, str], None]


def signature_hook(path: Path, mimetype: str) -> None:
    """Authoritative magic-number check against the persisted bytes."""
    head = read_signature(path)
    if not matches_declared_type(head, mimetype):
        found = detect_image_format(head) or "unknown"
        raise ValidationError(
            f"File contents ({found}) do not match the declared type {mimetype}"
        )


def decode_hook(path: Path, mimetype: str) -> None:
    """Reject bodies with a valid signature that Pillow cannot parse."""
    try:
        with Image.open(path) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, Image.DecompressionBombError) as exc:
        raise ValidationError("Uploaded image is corrupt or truncated") from exc


def default_hooks(settings: Settings) -> List[ValidationHook]:
    hooks: List[ValidationHook] = [signature_hook]
    if settings.verify_image_decode:
        hooks.append(decode_hook)
    return hooks


@dataclass
class IngestResult:
    response: UploadResponse
    record: FileRecord
    session: UploadSession


def normalize_mime(mimetype: Optional[str]) -> str:
    return (mimetype or "").split(";", 1)[0].strip().lower()


class IngestGate:
    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        hooks: Optional[Sequence[ValidationHook]] = None,
    ):
        self.settings = settings
        self.store = store
        self.hooks = list(hooks) if hooks is not None else default_hooks(settings)

    @property
    def upload_dir(self) -> Path:
        return Path(self.settings.upload_dir)

    # ---- step 1 ----

    def authenticate(self, token: Optional[str]) -> UploadSession:
        return resolve_session(self.store, token)

    # ---- step 2 ----

    def check_content_length(self, header_value: Optional[str]) -> None:
        """Cheap early refusal when the client announces an oversized body."""
        if not header_value:
            return
        try:
            length = int(header_value)
        except ValueError:
            raise ValidationError("Invalid Content-Length header")
        if length > self.settings.max_upload_bytes + MULTIPART_OVERHEAD:
            raise FileTooLargeError()

    def prefilter(self, upload: UploadFile) -> str:
        mimetype = normalize_mime(upload.content_type)
        if not is_allowed_mime(mimetype, self.settings.allowed_mime_types):
            raise ValidationError(
                f"Unsupported file type '{mimetype or 'unknown'}'; only JPEG, PNG and WebP are accepted"
            )
        if upload.size is not None and upload.size > self.settings.max_upload_bytes:
            raise FileTooLargeError()
        return mimetype

    # ---- steps 3-4 ----

    async def _write(self, upload: UploadFile, part_path: Path) -> int:
        """Copy the upload into part_path; disk writes run in the threadpool."""
        size = 0
        await upload.seek(0)
        fh = await run_in_threadpool(open, part_path, "wb")
        try:
            while True:
                chunk = await upload.read(WRITE_CHUNK)
                if not chunk:
                    break
                size += len(chunk)
                if size > self.settings.max_upload_bytes:
                    raise FileTooLargeError()
                await run_in_threadpool(fh.write, chunk)
        finally:
            await run_in_threadpool(fh.close)
        return size

    def validate(self, path: Path, mimetype: str) -> str:
        """Run the hooks and return the detected format.

        The stored extension is derived from the declared type, so the
        detected format must agree with it whatever hooks are configured.
        """
        for hook in self.hooks:
            hook(path, mimetype)
        detected = detect_image_format(read_signature(path))
        if detected is None or MIME_BY_FORMAT[detected] != mimetype:
            raise ValidationError(f"File contents do not match the declared type {mimetype}")
        return detected

    def _discard(self, *paths: Path) -> None:
        for path in paths:
            if storage.delete_file(path):
                ORPHANS_REMOVED.inc()

    # ---- full sequence ----

    async def ingest(self, token: str, upload: UploadFile) -> IngestResult:
        """Run steps 2-5 for an already authenticated token."""
        mimetype = self.prefilter(upload)

        started = time.perf_counter()
        try:
            storage.ensure_directory(self.upload_dir)
            filename = storage.build_filename(upload.filename, mimetype)
            final_path, part_path = storage.reserve_path(self.upload_dir, filename)
        except (OSError, ValueError) as exc:
            raise ServerError("Could not prepare upload storage") from exc

        try:
            size = await self._write(upload, part_path)
            detected = self.validate(part_path, mimetype)
            storage.commit_file(part_path, final_path)
            stored = storage.file_info(final_path)
            if stored is None:
                raise FileNotFoundError(final_path)

            temp_url = f"{self.settings.normalized_prefix}/{final_path.name}"
            session = self.store.update_avatar(token, temp_url)
            if session is None:
                raise InvalidSessionError("Session ended before the upload completed")
        except AvatarError as exc:
            self._discard(part_path, final_path)
            console.log(f"[yellow]Rejected upload {filename}: {exc.code} {exc.message}[/yellow]")
            raise
        except OSError as exc:
            self._discard(part_path, final_path)
            console.log(f"[red]I/O failure while ingesting {filename}: {exc}[/red]")
            raise ServerError("Failed to store the uploaded file") from exc
        except BaseException:
            # Unexpected errors and cancellation (client went away) alike
            self._discard(part_path, final_path)
            raise
        finally:
            INGEST_SECONDS.observe(time.perf_counter() - started)

        UPLOAD_BYTES.observe(size)
        record = FileRecord(
            path=str(final_path),
            filename=final_path.name,
            declared_mimetype=mimetype,
            detected_format=detected,
            size=stored["size"],
            created_at=int(stored["mtime"] * 1000),
        )
        console.log(
            f"[green]Stored {record.filename} ({size} bytes, {detected}) for {session.username}[/green]"
        )
        response = UploadResponse(
            tempUrl=temp_url,
            fileInfo=FileInfo(filename=record.filename, size=size, mimetype=mimetype),
        )
        return IngestResult(response=response, record=record, session=session)
