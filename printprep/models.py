from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from printprep.utils import mm_to_pixels


class ProcessingParameters(BaseModel):
    """Physical print parameters for a single run. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    final_width_mm: float = Field(..., gt=0, description="Trim width in mm.")
    final_height_mm: float = Field(..., gt=0, description="Trim height in mm.")
    bleed_margin_mm: float = Field(
        default=3.0, ge=0, description="Bleed added on every side, in mm."
    )
    dpi: Literal[150, 300] = Field(default=300, description="Output resolution.")
    cut_line_type: Literal["rectangle", "circle"] = Field(
        default="rectangle", description="Shape of the cut guide."
    )
    fill_prompt: str | None = Field(
        default=None,
        max_length=400,
        description="Optional hint passed to AI fill providers.",
    )
    use_external_outpaint: bool = Field(
        default=False,
        description="Extend the whole canvas with the external outpaint service.",
    )


@dataclass(frozen=True, slots=True)
class Rect:
    """Axis aligned pixel rectangle; `right` and `bottom` are exclusive."""

    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    def contains(self, other: Rect) -> bool:
        return (
            self.x <= other.x
            and self.y <= other.y
            and other.right <= self.right
            and other.bottom <= self.bottom
        )

    def union(self, other: Rect) -> Rect:
        x0 = min(self.x, other.x)
        y0 = min(self.y, other.y)
        x1 = max(self.right, other.right)
        y1 = max(self.bottom, other.bottom)
        return Rect(x0, y0, x1 - x0, y1 - y0)

    def to_box(self) -> tuple[int, int, int, int]:
        """PIL style (left, upper, right, lower) box."""
        return (self.x, self.y, self.right, self.bottom)


@dataclass(frozen=True, slots=True)
class CanvasGeometry:
    """Pixel geometry of the canvas: the final (trim) area plus the bleed ring."""

    final_width_px: int
    final_height_px: int
    bleed_px: int

    @classmethod
    def from_parameters(cls, params: ProcessingParameters) -> CanvasGeometry:
        return cls(
            final_width_px=mm_to_pixels(params.final_width_mm, params.dpi),
            final_height_px=mm_to_pixels(params.final_height_mm, params.dpi),
            bleed_px=mm_to_pixels(params.bleed_margin_mm, params.dpi),
        )

    @property
    def width(self) -> int:
        return self.final_width_px + 2 * self.bleed_px

    @property
    def height(self) -> int:
        return self.final_height_px + 2 * self.bleed_px

    @property
    def final_rect(self) -> Rect:
        return Rect(self.bleed_px, self.bleed_px,
                    self.final_width_px, self.final_height_px)


MarginSide = Literal["top", "bottom", "left", "right"]


@dataclass(frozen=True, slots=True)
class MarginArea:
    """One side of the bleed ring plus the content strip that gives it context."""

    side: MarginSide
    target_rect: Rect
    context_rect: Rect

    @property
    def source_rect(self) -> Rect:
        """Region of the canvas sent to a fill provider for this side."""
        return self.target_rect.union(self.context_rect)


@dataclass(frozen=True, slots=True)
class Placement:
    """Where the scaled source landed on the canvas."""

    rect: Rect
    scale: float


@dataclass(frozen=True, slots=True)
class ProcessingProgress:
    step_label: str
    percent: float


@dataclass(frozen=True, slots=True)
class Dimensions:
    width: int
    height: int


@dataclass(slots=True)
class ProcessingResult:
    """Produced exactly once per successful run."""

    raster: bytes
    raster_format: str
    original_dimensions: Dimensions
    final_dimensions_including_bleed: Dimensions
    applied_bleed_mm: float
    debug: dict = field(default_factory=dict)


class WorkflowState(str, Enum):
    """Lifecycle states of a processing run."""

    IDLE = "idle"
    CONVERTING_SOURCE = "converting_source"
    POSITIONING_CONTENT = "positioning_content"
    FILLING_BLEED = "filling_bleed"
    RENDERING_CUT_LINES = "rendering_cut_lines"
    EXPORTING = "exporting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowState.COMPLETED, WorkflowState.CANCELLED,
                        WorkflowState.FAILED)
