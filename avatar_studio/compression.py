# avatar_studio/compression.py
"""
Encode / measure / adjust loop for the rendered avatar bitmap.

The baseline contract is manual: every quality change re-encodes
synchronously and reports whether the artifact fits the byte budget; an
over-budget artifact carries a warning and blocks upload. find_quality()
is the automatic variant that searches for the best quality that fits.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np

from avatar_studio.processing import encode_jpeg, quality_to_jpeg, to_data_uri

DEFAULT_BUDGET = 200 * 1024


@dataclass(frozen=True)
class OutputArtifact:
    data: bytes = field(repr=False)
    quality: float
    width: int
    height: int
    budget: int = DEFAULT_BUDGET
    mimetype: str = "image/jpeg"

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def within_budget(self) -> bool:
        return self.size <= self.budget

    @property
    def overage(self) -> int:
        return max(0, self.size - self.budget)

    @property
    def warning(self) -> Optional[str]:
        if self.within_budget:
            return None
        return (
            f"Estimated size {round(self.size / 1024)} KB exceeds the "
            f"{round(self.budget / 1024)} KB limit; lower the quality"
        )

    def data_uri(self) -> str:
        return to_data_uri(self.data, self.mimetype)


class CompressionController:
    """Owns one rendered bitmap and produces artifacts from it."""

    def __init__(self, bitmap: np.ndarray, budget: int = DEFAULT_BUDGET):
        if budget <= 0:
            raise ValueError("budget must be positive")
        self.bitmap = bitmap
        self.budget = budget
        # Pillow quality is integral, so nearby float qualities share a result
        self._cache: Dict[int, bytes] = {}

    def encode(self, quality: float) -> OutputArtifact:
        key = quality_to_jpeg(quality)
        data = self._cache.get(key)
        if data is None:
            data = encode_jpeg(self.bitmap, quality)
            self._cache[key] = data

        height, width = self.bitmap.shape[:2]
        return OutputArtifact(
            data=data,
            quality=quality,
            width=width,
            height=height,
            budget=self.budget,
        )

    def find_quality(
        self,
        min_quality: float = 0.4,
        max_quality: float = 1.0,
        step: float = 0.05,
    ) -> Optional[OutputArtifact]:
        """
        Binary search over the quality grid min_quality, min_quality + step, ...
        for the highest quality whose artifact fits the budget.

        Returns None when even min_quality is over budget; the caller then
        falls back to the manual warning path.
        """
        steps = int(round((max_quality - min_quality) / step))
        grid = [round(min_quality + i * step, 4) for i in range(steps + 1)]
        grid = [q for q in grid if 0 < q <= 1] or [min_quality]

        best = None
        lo, hi = 0, len(grid) - 1
        while lo <= hi:
            mid = (lo + hi) // 2
            artifact = self.encode(grid[mid])
            if artifact.within_budget:
                best = artifact
                lo = mid + 1
            else:
                hi = mid - 1
        return best
