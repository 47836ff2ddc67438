"""Domain types and parsing for render_watermark."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import math
import re
from typing import Callable, Iterable, Tuple

INVALID_DIRECTIVE_CODE = "render_watermark.input.invalid_directive"
INVALID_GEOMETRY_CODE = "render_watermark.input.invalid_geometry"
INVALID_COLOR_CODE = "render_watermark.input.invalid_color"
INVALID_FORMAT_CODE = "render_watermark.input.invalid_format"
USAGE_CODE = "render_watermark.input.usage"
FONT_LOAD_CODE = "render_watermark.input.font_load"
UNKNOWN_ROTATION_CODE = "render_watermark.input.unknown_rotation"
UNKNOWN_ORIENTATION_CODE = "render_watermark.input.unknown_orientation"

DEFAULT_POINT_SIZE = 12
FIT_WIDTH_PROBE_SIZE = 1000
PORTRAIT_ASPECT_THRESHOLD = 1.05
LANDSCAPE_ASPECT_THRESHOLD = 0.95
PDF_RASTER_DPI = 600

COMMENT_PREFIX = "#"
DIRECTIVE_SEPARATOR = ":"
LITERAL_SIZE_PATTERN = re.compile(r"[0-9]+")
FIT_WIDTH_PATTERN = re.compile(r"w(?P<value>[0-9]+)(?P<percent>%?)")
GEOMETRY_PATTERN = re.compile(r"(?P<width>[0-9]+)x(?P<height>[0-9]+)")
ROTATION_DEGREES_PATTERN = re.compile(r"[+-]?[0-9]+")

LOGGER = logging.getLogger("render_watermark.domain")


class WatermarkValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class SizeMode(str, Enum):
    """How a size directive resolves to a point size."""

    DEFAULT = "default"
    LITERAL = "literal"
    FIT_WIDTH = "fit_width"


class Orientation(str, Enum):
    """Requested final orientation of the output raster."""

    NONE = "none"
    PORTRAIT = "portrait"
    LANDSCAPE = "landscape"


@dataclass(frozen=True)
class SizeDirective:
    """Parsed size directive for a single line."""

    mode: SizeMode
    value: int = DEFAULT_POINT_SIZE
    percent: bool = False

    def target_width(self, canvas_width: float) -> float:
        """Return the fit-width target in canvas pixels."""
        if self.percent:
            return (self.value / 100.0) * canvas_width
        return float(self.value)


@dataclass(frozen=True)
class SourceLine:
    """One watermark line as read from the input stream."""

    text: str
    directive: str = ""


@dataclass(frozen=True)
class Geometry:
    """Blank canvas dimensions in pixels."""

    width: int
    height: int

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise WatermarkValidationError(
                INVALID_GEOMETRY_CODE,
                f"invalid geometry: {self.width}x{self.height}",
            )


def parse_size_directive(directive: str) -> SizeDirective:
    """Parse a size directive string.

    The grammar is deliberately small: an empty directive selects the default
    size, a run of digits is a literal point size, and ``w<digits>[%]`` asks
    for the line to be scaled to a pixel width or to a percentage of the
    canvas width. Anything else is rejected.
    """
    if directive == "":
        return SizeDirective(mode=SizeMode.DEFAULT)

    if LITERAL_SIZE_PATTERN.fullmatch(directive):
        return SizeDirective(mode=SizeMode.LITERAL, value=int(directive))

    match = FIT_WIDTH_PATTERN.fullmatch(directive)
    if match:
        return SizeDirective(
            mode=SizeMode.FIT_WIDTH,
            value=int(match.group("value")),
            percent=bool(match.group("percent")),
        )

    raise WatermarkValidationError(
        INVALID_DIRECTIVE_CODE, f"invalid format: {directive}"
    )


def resolve_point_size(
    size_directive: SizeDirective,
    canvas_width: float,
    probe: Callable[[float], float],
    raw_directive: str = "",
) -> float:
    """Resolve a parsed directive into a positive point size.

    ``probe`` measures the line's ink width at a given size; it is only
    called for fit-width directives.
    """
    if size_directive.mode == SizeMode.DEFAULT:
        point_size = float(DEFAULT_POINT_SIZE)
    elif size_directive.mode == SizeMode.LITERAL:
        point_size = float(size_directive.value)
    else:
        target_width = size_directive.target_width(canvas_width)
        probe_width = probe(FIT_WIDTH_PROBE_SIZE)
        if probe_width <= 0:
            raise WatermarkValidationError(
                INVALID_DIRECTIVE_CODE,
                f"cannot fit text without visible width: {raw_directive}",
            )
        point_size = FIT_WIDTH_PROBE_SIZE * (target_width / probe_width)

    if point_size <= 0:
        raise WatermarkValidationError(
            INVALID_DIRECTIVE_CODE, f"point size must be positive: {raw_directive}"
        )
    return point_size


def parse_directive(
    directive: str, canvas_width: float, probe: Callable[[float], float]
) -> float:
    """Parse and resolve a size directive in one step."""
    return resolve_point_size(
        parse_size_directive(directive), canvas_width, probe, raw_directive=directive
    )


def parse_source_line(raw_line: str) -> SourceLine | None:
    """Split a raw input line into directive and text.

    Returns None for comment lines.
    """
    if raw_line.startswith(COMMENT_PREFIX):
        return None

    stripped = raw_line.rstrip()
    directive, separator, text = stripped.partition(DIRECTIVE_SEPARATOR)
    if not separator:
        return SourceLine(text=stripped.lstrip())
    return SourceLine(text=text.lstrip(), directive=directive)


def parse_source_lines(raw_lines: Iterable[str]) -> Tuple[SourceLine, ...]:
    """Parse an input stream into source lines, preserving order.

    Lines without text, including blank lines and bare directives such as
    ``12:``, are dropped. They do not add vertical space to the block; use a
    line with visible text at the wanted size to separate blocks.
    """
    source_lines: list[SourceLine] = []
    for line_number, raw_line in enumerate(raw_lines, start=1):
        source_line = parse_source_line(raw_line)
        if source_line is None:
            continue
        if not source_line.text:
            LOGGER.info("skipping line %d: no text", line_number)
            continue
        source_lines.append(source_line)
    return tuple(source_lines)


def parse_geometry(value: str) -> Geometry | None:
    """Parse ``WIDTHxHEIGHT``; return None when the value is not a geometry."""
    match = GEOMETRY_PATTERN.fullmatch(value)
    if not match:
        return None
    return Geometry(width=int(match.group("width")), height=int(match.group("height")))


def resolve_rotation(spec: str, aspect_ratio: float) -> float:
    """Return the text rotation angle in radians.

    Positive angles turn clockwise on screen. The diagonal specs follow the
    canvas diagonal, so they depend on ``aspect_ratio`` (width / height).
    """
    normalized = spec.strip().lower()
    if normalized in ("", "none"):
        return 0.0
    if ROTATION_DEGREES_PATTERN.fullmatch(normalized):
        return int(normalized) * math.pi / 180.0
    if normalized == "ldiag":
        return -math.atan(1.0 / aspect_ratio)
    if normalized == "rdiag":
        return math.atan(1.0 / aspect_ratio)

    LOGGER.warning("%s: unknown rotation: %s", UNKNOWN_ROTATION_CODE, spec)
    return 0.0


def parse_orientation(spec: str) -> Orientation:
    """Parse an orientation name, warning and falling back to NONE."""
    normalized = spec.strip().lower()
    if not normalized:
        return Orientation.NONE
    try:
        return Orientation(normalized)
    except ValueError:
        LOGGER.warning("%s: unknown orientation: %s", UNKNOWN_ORIENTATION_CODE, spec)
        return Orientation.NONE


def resolve_orientation(
    spec: str,
    aspect_ratio: float,
    portrait_threshold: float = PORTRAIT_ASPECT_THRESHOLD,
    landscape_threshold: float = LANDSCAPE_ASPECT_THRESHOLD,
) -> int:
    """Return 90 when the finished raster should be turned, else 0."""
    orientation = parse_orientation(spec)
    if orientation == Orientation.PORTRAIT and aspect_ratio > portrait_threshold:
        return 90
    if orientation == Orientation.LANDSCAPE and aspect_ratio < landscape_threshold:
        return 90
    return 0


def parse_hex_color_to_rgba(color_value: str) -> Tuple[int, int, int, int]:
    """Parse a color token into an RGBA tuple."""
    normalized = color_value.strip()
    if normalized.lower() == "transparent":
        return (0, 0, 0, 0)

    match_value = re.fullmatch(r"#([0-9a-fA-F]{6})", normalized)
    if not match_value:
        raise WatermarkValidationError(
            INVALID_COLOR_CODE,
            f"invalid color value: {color_value!r}",
        )

    rgb_hex = match_value.group(1)
    red_value = int(rgb_hex[0:2], 16)
    green_value = int(rgb_hex[2:4], 16)
    blue_value = int(rgb_hex[4:6], 16)
    return (red_value, green_value, blue_value, 255)
