# avatar_studio/crop.py
"""
Pan/zoom geometry for the square crop stage.

All functions are pure: they take the stage geometry plus a transform and
return a new, clamped transform. Containment invariant: the displayed image
rectangle always covers the whole stage, i.e.

    min(0, stage - display_width) <= offset_x <= 0   (same for y)

with display_width = natural_width * base_scale * scale.
"""

from dataclasses import dataclass, replace
from typing import Tuple

# Float slack used by covers(); offsets come out of clamps, not exact math
EPSILON = 1e-6


@dataclass(frozen=True)
class CropTransform:
    offset_x: float
    offset_y: float
    scale: float = 1.0


@dataclass(frozen=True)
class StageGeometry:
    """Fixed facts about one loaded image on one stage."""

    stage_size: float
    natural_width: int
    natural_height: int
    min_zoom: float = 1.0
    max_zoom: float = 3.0

    def __post_init__(self):
        if self.natural_width <= 0 or self.natural_height <= 0:
            raise ValueError("image dimensions must be positive")
        if self.stage_size <= 0:
            raise ValueError("stage_size must be positive")
        if self.min_zoom < 1.0 or self.max_zoom < self.min_zoom:
            raise ValueError("zoom range must satisfy 1 <= min_zoom <= max_zoom")

    @property
    def base_scale(self) -> float:
        """Scale at which the shorter side exactly fills the stage."""
        return self.stage_size / min(self.natural_width, self.natural_height)

    def display_size(self, scale: float) -> Tuple[float, float]:
        factor = self.base_scale * scale
        return self.natural_width * factor, self.natural_height * factor

    def clamp_scale(self, scale: float) -> float:
        return max(self.min_zoom, min(self.max_zoom, float(scale)))


def clamp_offset(value: float, stage_size: float, dimension: float) -> float:
    low = min(0.0, stage_size - dimension)
    return max(low, min(0.0, float(value)))


def clamp(geometry: StageGeometry, transform: CropTransform) -> CropTransform:
    """Bring scale into range, then offsets into the containment band."""
    scale = geometry.clamp_scale(transform.scale)
    width, height = geometry.display_size(scale)
    return CropTransform(
        offset_x=clamp_offset(transform.offset_x, geometry.stage_size, width),
        offset_y=clamp_offset(transform.offset_y, geometry.stage_size, height),
        scale=scale,
    )


def initial_transform(geometry: StageGeometry) -> CropTransform:
    """Scale 1, longer axis centered on the stage."""
    width, height = geometry.display_size(1.0)
    centered = CropTransform(
        offset_x=(geometry.stage_size - width) / 2,
        offset_y=(geometry.stage_size - height) / 2,
        scale=1.0,
    )
    return clamp(geometry, centered)


def drag_anchor(transform: CropTransform, pointer_x: float, pointer_y: float) -> Tuple[float, float]:
    """Pointer position relative to the image origin at drag start."""
    return pointer_x - transform.offset_x, pointer_y - transform.offset_y


def pan(
    geometry: StageGeometry,
    transform: CropTransform,
    anchor: Tuple[float, float],
    pointer_x: float,
    pointer_y: float,
) -> CropTransform:
    moved = replace(
        transform,
        offset_x=pointer_x - anchor[0],
        offset_y=pointer_y - anchor[1],
    )
    return clamp(geometry, moved)


def zoom(geometry: StageGeometry, transform: CropTransform, scale: float) -> CropTransform:
    # Offsets must be re-clamped against the new display size, a bare scale
    # change can uncover the stage when zooming out.
    return clamp(geometry, replace(transform, scale=scale))


def covers(geometry: StageGeometry, transform: CropTransform) -> bool:
    """True when the displayed image leaves no gap anywhere on the stage."""
    width, height = geometry.display_size(transform.scale)
    stage = geometry.stage_size
    return (
        transform.offset_x <= EPSILON
        and transform.offset_y <= EPSILON
        and transform.offset_x + width >= stage - EPSILON
        and transform.offset_y + height >= stage - EPSILON
    )
