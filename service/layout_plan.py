"""Block layout for render_watermark."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Sequence, Tuple

from domain.watermark import INVALID_GEOMETRY_CODE, WatermarkValidationError

INVALID_METRICS_CODE = "render_watermark.layout.invalid_metrics"

LOGGER = logging.getLogger("render_watermark.layout")


@dataclass(frozen=True)
class FontMetrics:
    """Font-level vertical metrics at a given size."""

    ascent: float
    descent: float

    def __post_init__(self) -> None:
        if self.ascent < 0 or self.descent < 0:
            raise WatermarkValidationError(
                INVALID_METRICS_CODE, "ascent and descent must be non-negative"
            )


@dataclass(frozen=True)
class GlyphBox:
    """Ink extents of a string, relative to its left baseline origin."""

    width: float
    height: float
    x_bearing: float
    y_bearing: float

    def __post_init__(self) -> None:
        if self.width < 0 or self.height < 0:
            raise WatermarkValidationError(
                INVALID_METRICS_CODE, "glyph box width and height must be non-negative"
            )


@dataclass(frozen=True)
class MeasuredLine:
    """A text line with its resolved size and metrics."""

    text: str
    point_size: float
    font_metrics: FontMetrics
    glyph_box: GlyphBox

    def __post_init__(self) -> None:
        if not self.text:
            raise WatermarkValidationError(INVALID_METRICS_CODE, "line text is empty")
        if self.point_size <= 0:
            raise WatermarkValidationError(
                INVALID_METRICS_CODE, "point_size must be positive"
            )


@dataclass(frozen=True)
class LinePlacement:
    """Draw origin (left baseline) for one line."""

    line: MeasuredLine
    x: float
    y: float


@dataclass(frozen=True)
class LayoutPlan:
    """Placements for every line of a watermark block."""

    width: int
    height: int
    placements: Tuple[LinePlacement, ...]

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise WatermarkValidationError(
                INVALID_GEOMETRY_CODE, "canvas width and height must be positive"
            )

    @property
    def is_empty(self) -> bool:
        return not self.placements


def compute_block_height(lines: Sequence[MeasuredLine]) -> float:
    """Compute the height of the block from the first ink top to the last ink bottom.

    Summing ascent and descent of every line gives the height of the font
    boxes. The first line's ascent and the last line's descent are then
    replaced by the ink extents of those two lines, so the block hugs the
    glyphs rather than the font's reserved whitespace.
    """
    if not lines:
        return 0.0

    first_line = lines[0]
    last_line = lines[-1]
    raw_height = sum(
        line.font_metrics.ascent + line.font_metrics.descent for line in lines
    )
    return (
        raw_height
        - first_line.font_metrics.ascent
        - last_line.font_metrics.descent
        - first_line.glyph_box.y_bearing
        + last_line.glyph_box.height
        + last_line.glyph_box.y_bearing
    )


def build_layout_plan(
    lines: Sequence[MeasuredLine], canvas_width: int, canvas_height: int
) -> LayoutPlan:
    """Center a block of measured lines on the canvas."""
    if not lines:
        return LayoutPlan(width=canvas_width, height=canvas_height, placements=())

    block_height = compute_block_height(lines)
    first_line = lines[0]

    cursor_y = (canvas_height - block_height) / 2.0
    # first baseline lands the ink top, not the font box top, on the margin
    cursor_y -= first_line.font_metrics.ascent + first_line.glyph_box.y_bearing

    placements: list[LinePlacement] = []
    for line in lines:
        cursor_y += line.font_metrics.ascent
        origin_x = (canvas_width - line.glyph_box.width) / 2.0
        origin_x -= line.glyph_box.x_bearing
        placements.append(LinePlacement(line=line, x=origin_x, y=cursor_y))
        LOGGER.debug(
            "placed %r at (%.2f, %.2f) size %.2f",
            line.text,
            origin_x,
            cursor_y,
            line.point_size,
        )
        cursor_y += line.font_metrics.descent

    return LayoutPlan(
        width=canvas_width, height=canvas_height, placements=tuple(placements)
    )
