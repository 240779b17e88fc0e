# avatar_studio/studio.py
"""
Avatar capture flow.

The whole client-side flow lives in one immutable CaptureState value that
only changes through reduce(state, event). reduce() is pure: rendering,
encoding and network I/O happen in AvatarStudio, which feeds their results
back in as events.

Stages: selecting -> cropping -> previewing, with previewing -> cropping
(back) and cropping/previewing -> selecting (reset).
"""

import asyncio
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np

from avatar_studio import crop
from avatar_studio.compression import CompressionController, OutputArtifact
from avatar_studio.config import StudioConfig
from avatar_studio.crop import CropTransform, StageGeometry
from avatar_studio.errors import AvatarError, BudgetExceededError, TransitionError, UploadError
from avatar_studio.logger import console
from avatar_studio.processing import SourceImage, load_source_image, rasterize
from avatar_studio.transport import UploadResult, UploadTransport


class Stage(str, Enum):
    SELECTING = "selecting"
    CROPPING = "cropping"
    PREVIEWING = "previewing"


# ==========================
# EVENTS
# ==========================

@dataclass(frozen=True)
class FileSelected:
    source: SourceImage
    stage_size: float
    min_zoom: float
    max_zoom: float
    default_quality: float


@dataclass(frozen=True)
class DragStarted:
    x: float
    y: float


@dataclass(frozen=True)
class DragMoved:
    x: float
    y: float


@dataclass(frozen=True)
class DragEnded:
    pass


@dataclass(frozen=True)
class ZoomChanged:
    scale: float


@dataclass(frozen=True, eq=False)
class CropCommitted:
    bitmap: np.ndarray
    artifact: OutputArtifact


@dataclass(frozen=True)
class QualityChanged:
    artifact: OutputArtifact


@dataclass(frozen=True)
class BackToCrop:
    pass


@dataclass(frozen=True)
class Reset:
    pass


@dataclass(frozen=True)
class UploadStarted:
    pass


@dataclass(frozen=True)
class UploadProgressed:
    fraction: float


@dataclass(frozen=True)
class UploadSucceeded:
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class UploadFailed:
    message: str
    retryable: bool = True
    cancelled: bool = False


@dataclass(frozen=True)
class ErrorRaised:
    """A client-local failure (pre-flight, decode, render) shown inline."""

    message: str


# ==========================
# STATE
# ==========================

@dataclass(frozen=True, eq=False)
class CaptureState:
    stage: Stage = Stage.SELECTING
    source: Optional[SourceImage] = None
    geometry: Optional[StageGeometry] = None
    transform: Optional[CropTransform] = None
    drag_anchor: Optional[Tuple[float, float]] = None
    quality: float = 0.85
    bitmap: Optional[np.ndarray] = field(default=None, repr=False)
    artifact: Optional[OutputArtifact] = None
    uploading: bool = False
    progress: float = 0.0
    error: Optional[str] = None
    can_retry: bool = False
    avatar_url: Optional[str] = None

    @property
    def dragging(self) -> bool:
        return self.drag_anchor is not None

    @property
    def can_upload(self) -> bool:
        """Mirror of the upload control's enabled state."""
        return (
            self.stage is Stage.PREVIEWING
            and self.artifact is not None
            and self.artifact.within_budget
            and not self.uploading
        )

    @property
    def warning(self) -> Optional[str]:
        return self.artifact.warning if self.artifact is not None else None


def _reject(state: CaptureState, event) -> None:
    raise TransitionError(state.stage.value, type(event).__name__)


def reduce(state: CaptureState, event) -> CaptureState:
    """Apply one event. Raises TransitionError for events the stage refuses."""
    if isinstance(event, UploadProgressed):
        if not state.uploading:
            _reject(state, event)
        return replace(state, progress=max(state.progress, min(1.0, event.fraction)))

    if isinstance(event, UploadSucceeded):
        if not state.uploading:
            _reject(state, event)
        # Back to a clean slate; only the new avatar location survives
        return CaptureState(quality=state.quality, avatar_url=event.avatar_url)

    if isinstance(event, UploadFailed):
        if not state.uploading:
            _reject(state, event)
        # Artifact, bitmap and transform are kept so retry skips crop/compress
        return replace(
            state,
            uploading=False,
            progress=0.0,
            error=event.message,
            can_retry=event.retryable,
        )

    # Nothing else may interleave with an in-flight upload
    if state.uploading:
        _reject(state, event)

    if isinstance(event, ErrorRaised):
        return replace(state, error=event.message, can_retry=False)

    if isinstance(event, FileSelected):
        # Replaces any source already being cropped or previewed
        geometry = StageGeometry(
            stage_size=event.stage_size,
            natural_width=event.source.width,
            natural_height=event.source.height,
            min_zoom=event.min_zoom,
            max_zoom=event.max_zoom,
        )
        return CaptureState(
            stage=Stage.CROPPING,
            source=event.source,
            geometry=geometry,
            transform=crop.initial_transform(geometry),
            quality=event.default_quality,
        )

    if isinstance(event, Reset):
        return CaptureState(quality=state.quality, avatar_url=state.avatar_url)

    if isinstance(event, (DragStarted, DragMoved, DragEnded, ZoomChanged, CropCommitted)):
        if state.stage is not Stage.CROPPING:
            _reject(state, event)

        if isinstance(event, DragStarted):
            anchor = crop.drag_anchor(state.transform, event.x, event.y)
            return replace(state, drag_anchor=anchor)

        if isinstance(event, DragMoved):
            if state.drag_anchor is None:
                return state
            moved = crop.pan(state.geometry, state.transform, state.drag_anchor, event.x, event.y)
            return replace(state, transform=moved)

        if isinstance(event, DragEnded):
            return replace(state, drag_anchor=None)

        if isinstance(event, ZoomChanged):
            return replace(state, transform=crop.zoom(state.geometry, state.transform, event.scale))

        return replace(
            state,
            stage=Stage.PREVIEWING,
            drag_anchor=None,
            bitmap=event.bitmap,
            artifact=event.artifact,
            quality=event.artifact.quality,
            error=None,
            can_retry=False,
        )

    if isinstance(event, (QualityChanged, BackToCrop, UploadStarted)):
        if state.stage is not Stage.PREVIEWING:
            _reject(state, event)

        if isinstance(event, QualityChanged):
            return replace(state, artifact=event.artifact, quality=event.artifact.quality)

        if isinstance(event, BackToCrop):
            return replace(
                state,
                stage=Stage.CROPPING,
                bitmap=None,
                artifact=None,
                error=None,
                can_retry=False,
            )

        if state.artifact is None:
            _reject(state, event)
        if not state.artifact.within_budget:
            raise BudgetExceededError(state.artifact.size, state.artifact.budget)
        return replace(state, uploading=True, progress=0.0, error=None, can_retry=False)

    raise TypeError(f"unknown event {event!r}")


# ==========================
# DRIVER
# ==========================

class AvatarStudio:
    """
    Runs the side effects of the capture flow around reduce().

    One instance is one capture session. Listeners get every new state,
    which is how a UI (or a test) follows progress.
    """

    def __init__(
        self,
        transport: UploadTransport,
        config: Optional[StudioConfig] = None,
        on_change: Optional[Callable[[CaptureState], None]] = None,
    ):
        self.transport = transport
        self.config = config or StudioConfig()
        self.on_change = on_change
        self._state = CaptureState(quality=self.config.default_quality)
        self._compressor: Optional[CompressionController] = None
        self._upload_task: Optional[asyncio.Task] = None

    @property
    def state(self) -> CaptureState:
        return self._state

    def dispatch(self, event) -> CaptureState:
        self._state = reduce(self._state, event)
        if self.on_change is not None:
            self.on_change(self._state)
        return self._state

    # ---- selecting ----

    def select_file(self, data: bytes, mimetype: str, filename: str = "") -> CaptureState:
        """
        Pre-flight and decode a photo. Client-local failures are recorded on
        the state (and re-raised) without touching the current crop.
        """
        try:
            source = load_source_image(
                data,
                mimetype,
                filename,
                max_bytes=self.config.max_source_bytes,
                allowed=self.config.allowed_mime_types,
            )
        except AvatarError as exc:
            self.dispatch(ErrorRaised(exc.message))
            raise

        self._compressor = None
        console.log(f"[blue]Loaded {filename or 'image'} ({source.width}x{source.height})[/blue]")
        return self.dispatch(
            FileSelected(
                source=source,
                stage_size=self.config.stage_size,
                min_zoom=self.config.min_zoom,
                max_zoom=self.config.max_zoom,
                default_quality=self.config.default_quality,
            )
        )

    # ---- cropping ----

    def start_drag(self, x: float, y: float) -> CaptureState:
        return self.dispatch(DragStarted(x, y))

    def drag_to(self, x: float, y: float) -> CaptureState:
        return self.dispatch(DragMoved(x, y))

    def end_drag(self) -> CaptureState:
        return self.dispatch(DragEnded())

    def set_zoom(self, scale: float) -> CaptureState:
        return self.dispatch(ZoomChanged(scale))

    def crop(self) -> CaptureState:
        """Rasterize the current transform and encode at the current quality."""
        state = self._state
        if state.stage is not Stage.CROPPING:
            raise TransitionError(state.stage.value, "CropCommitted")

        bitmap = rasterize(
            state.source.pixels,
            state.geometry,
            state.transform,
            output_size=self.config.output_size,
        )
        self._compressor = CompressionController(bitmap, budget=self.config.byte_budget)
        artifact = self._compressor.encode(state.quality)
        if not artifact.within_budget:
            console.log(f"[yellow]{artifact.warning}[/yellow]")
        return self.dispatch(CropCommitted(bitmap=bitmap, artifact=artifact))

    # ---- previewing ----

    def set_quality(self, quality: float) -> CaptureState:
        """Re-encode synchronously; an over-budget result only warns."""
        if self._state.stage is not Stage.PREVIEWING or self._compressor is None:
            raise TransitionError(self._state.stage.value, "QualityChanged")
        if self._state.uploading:
            raise TransitionError(self._state.stage.value, "QualityChanged")
        artifact = self._compressor.encode(quality)
        return self.dispatch(QualityChanged(artifact))

    def auto_quality(self) -> CaptureState:
        """Pick the highest quality that fits the budget, if any does."""
        if self._state.stage is not Stage.PREVIEWING or self._compressor is None:
            raise TransitionError(self._state.stage.value, "QualityChanged")
        artifact = self._compressor.find_quality(
            min_quality=self.config.min_quality,
            max_quality=1.0,
            step=self.config.quality_step,
        )
        if artifact is None:
            artifact = self._compressor.encode(self.config.min_quality)
        return self.dispatch(QualityChanged(artifact))

    def back_to_crop(self) -> CaptureState:
        self._compressor = None
        return self.dispatch(BackToCrop())

    def reset(self) -> CaptureState:
        self._compressor = None
        return self.dispatch(Reset())

    # ---- uploading ----

    async def upload(self) -> Optional[UploadResult]:
        """
        Send the current artifact. Returns the result on success and None when
        the upload failed or was cancelled; the failure is on the state.
        """
        self.dispatch(UploadStarted())
        artifact = self._state.artifact

        def progress(fraction: float) -> None:
            if self._state.uploading:
                self.dispatch(UploadProgressed(fraction))

        self._upload_task = asyncio.ensure_future(
            self.transport.send(artifact.data, artifact.mimetype, on_progress=progress)
        )
        try:
            result = await self._upload_task
        except asyncio.CancelledError:
            self.dispatch(UploadFailed("Upload cancelled", retryable=True, cancelled=True))
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return None
        except UploadError as exc:
            console.log(f"[red]Avatar upload failed: {exc.message}[/red]")
            self.dispatch(UploadFailed(exc.message, retryable=exc.retryable))
            return None
        except Exception as exc:
            # Leave the flow retryable before the error propagates
            console.log(f"[red]Avatar upload crashed: {exc!r}[/red]")
            self.dispatch(UploadFailed(str(exc) or type(exc).__name__, retryable=True))
            raise
        finally:
            self._upload_task = None

        self._compressor = None
        self.dispatch(UploadSucceeded(avatar_url=result.temp_url))
        return result

    def cancel_upload(self) -> bool:
        """Abort the in-flight request. The preserved artifact is untouched."""
        task = self._upload_task
        if task is None or task.done():
            return False
        return task.cancel()

    async def retry(self) -> Optional[UploadResult]:
        """Resubmit the preserved artifact without redoing crop or compression."""
        if self._state.uploading:
            raise TransitionError(self._state.stage.value, "UploadStarted")
        return await self.upload()

    def snapshot(self) -> Dict[str, Any]:
        """Plain-data view of the state for display or logging."""
        s = self._state
        return {
            "stage": s.stage.value,
            "transform": None if s.transform is None else {
                "offset_x": s.transform.offset_x,
                "offset_y": s.transform.offset_y,
                "scale": s.transform.scale,
            },
            "quality": s.quality,
            "size": None if s.artifact is None else s.artifact.size,
            "warning": s.warning,
            "can_upload": s.can_upload,
            "uploading": s.uploading,
            "progress": s.progress,
            "error": s.error,
            "avatar_url": s.avatar_url,
        }
