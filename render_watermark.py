#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1",
#   "pymupdf>=1.24.3"
# ]
# ///
"""Render centered watermark text onto a blank canvas, an image or a PDF page."""

from __future__ import annotations

import argparse
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from functools import partial
import logging
import math
import os
import sys
from typing import BinaryIO, Iterator, NoReturn, Sequence, TextIO, Tuple

import pymupdf as fitz
from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from domain.watermark import (
    FONT_LOAD_CODE,
    INVALID_FORMAT_CODE,
    INVALID_GEOMETRY_CODE,
    PDF_RASTER_DPI,
    USAGE_CODE,
    SourceLine,
    WatermarkValidationError,
    parse_directive,
    parse_geometry,
    parse_hex_color_to_rgba,
    parse_source_lines,
    resolve_orientation,
    resolve_rotation,
)
from service.layout_plan import (
    FontMetrics,
    GlyphBox,
    LayoutPlan,
    MeasuredLine,
    build_layout_plan,
)

__version__ = "0.1.0"

LOGGER = logging.getLogger("render_watermark")

INPUT_FILE_CODE = "render_watermark.io.input"
OUTPUT_FILE_CODE = "render_watermark.io.output"
LOG_FILE_CODE = "render_watermark.io.log"
RENDER_ENGINE_CODE = "render_watermark.render.engine"

STDIO_PATH = "-"
DEFAULT_OUTPUT_FORMAT = "png"
FORMATS_WITHOUT_ALPHA = frozenset({"JPEG", "PPM", "PCX", "EPS"})
POINTS_PER_INCH = 72.0
WHITE_RGBA = (255, 255, 255, 255)
TRANSPARENT_RGBA = (0, 0, 0, 0)

LOG_FORMAT = "%(levelname)s: %(message)s"
VERBOSITY_LEVELS = (
    logging.CRITICAL + 1,
    logging.ERROR,
    logging.WARNING,
    logging.INFO,
    logging.DEBUG,
)
DEFAULT_VERBOSITY = 2


class WatermarkPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class WatermarkRequest:
    """Parsed CLI request and runtime options."""

    source: str
    input_file: str
    output_file: str
    image_format: str
    rotation: str
    orientation: str
    log_file: str | None
    verbosity: int
    font_path: str | None
    text_rgba: Tuple[int, int, int, int]
    background_rgba: Tuple[int, int, int, int]
    antialias: bool
    pdf_dpi: int


@dataclass(frozen=True)
class BlankCanvas:
    """Canvas of a fixed size filled with a single color."""

    width: int
    height: int
    background_rgba: Tuple[int, int, int, int] = TRANSPARENT_RGBA

    def load(self) -> Image.Image:
        return Image.new("RGBA", (self.width, self.height), color=self.background_rgba)

    def describe(self) -> str:
        return f"blank {self.width}x{self.height}"


@dataclass(frozen=True)
class RasterFile:
    """Canvas decoded from a raster image file."""

    path: str

    def load(self) -> Image.Image:
        try:
            with Image.open(self.path) as image:
                return image.convert("RGBA")
        except Exception as exc:
            raise WatermarkPipelineError(RENDER_ENGINE_CODE, str(exc).strip()) from exc

    def describe(self) -> str:
        return f"image {self.path}"


@dataclass(frozen=True)
class PdfPage:
    """Canvas rasterized from the first page of a PDF, painted over white."""

    path: str
    dpi: int = PDF_RASTER_DPI

    def load(self) -> Image.Image:
        zoom = self.dpi / POINTS_PER_INCH
        try:
            with fitz.open(self.path, filetype="pdf") as document:
                if document.page_count < 1:
                    raise WatermarkPipelineError(
                        RENDER_ENGINE_CODE, f"document has no pages: {self.path}"
                    )
                pixmap = document.load_page(0).get_pixmap(
                    matrix=fitz.Matrix(zoom, zoom), alpha=True
                )
                # pixmap samples carry premultiplied alpha
                page_image = Image.frombytes(
                    "RGBa", (pixmap.width, pixmap.height), pixmap.samples
                ).convert("RGBA")
        except WatermarkPipelineError:
            raise
        except Exception as exc:
            raise WatermarkPipelineError(RENDER_ENGINE_CODE, str(exc).strip()) from exc

        background = Image.new("RGBA", page_image.size, WHITE_RGBA)
        return Image.alpha_composite(background, page_image)

    def describe(self) -> str:
        return f"pdf {self.path} page 1 at {self.dpi} dpi"


ImageSource = BlankCanvas | RasterFile | PdfPage


def is_raster_image(path: str) -> bool:
    """Return True when Pillow recognizes the file as an image."""
    try:
        with Image.open(path):
            return True
    except (UnidentifiedImageError, OSError):
        return False


def resolve_image_source(
    spec: str,
    background_rgba: Tuple[int, int, int, int] = TRANSPARENT_RGBA,
    pdf_dpi: int = PDF_RASTER_DPI,
) -> ImageSource:
    """Select the canvas source for a geometry or file path."""
    geometry = parse_geometry(spec)
    if geometry is not None:
        return BlankCanvas(geometry.width, geometry.height, background_rgba)
    if not os.path.isfile(spec):
        raise WatermarkValidationError(INVALID_GEOMETRY_CODE, f"invalid geometry: {spec}")
    if is_raster_image(spec):
        return RasterFile(spec)
    return PdfPage(spec, pdf_dpi)


def load_font_cached(
    font_file_path: str | None,
    font_size: float,
    cache: dict[Tuple[str | None, float], ImageFont.FreeTypeFont],
) -> ImageFont.FreeTypeFont:
    """Load a font and cache by path and size."""
    cache_key = (font_file_path, font_size)
    cached_font = cache.get(cache_key)
    if cached_font is not None:
        return cached_font
    font_name = font_file_path or "default font"
    try:
        if font_file_path is None:
            font = ImageFont.load_default(size=font_size)
        else:
            font = ImageFont.truetype(font_file_path, size=font_size)
    except Exception as exc:
        raise WatermarkValidationError(
            FONT_LOAD_CODE, f"failed to load {font_name} at size {font_size:g}"
        ) from exc
    if not isinstance(font, ImageFont.FreeTypeFont):
        raise WatermarkValidationError(
            FONT_LOAD_CODE, f"{font_name} is not scalable; Pillow lacks FreeType"
        )
    cache[cache_key] = font
    return font


class TextMeasurer:
    """Font and ink metrics measured on one canvas draw context."""

    def __init__(
        self, canvas: Image.Image, font_path: str | None = None, antialias: bool = False
    ) -> None:
        self.draw_context = ImageDraw.Draw(canvas)
        self.draw_context.fontmode = "L" if antialias else "1"
        self.font_path = font_path
        self.font_cache: dict[Tuple[str | None, float], ImageFont.FreeTypeFont] = {}

    @property
    def fontmode(self) -> str:
        return self.draw_context.fontmode

    def font(self, point_size: float) -> ImageFont.FreeTypeFont:
        return load_font_cached(self.font_path, point_size, self.font_cache)

    def measure(self, text: str, point_size: float) -> Tuple[FontMetrics, GlyphBox]:
        """Return font metrics and the ink box of text at point_size.

        The glyph box is the inked area of the rendered mask, relative to
        the baseline origin. Side bearings are not part of it.
        """
        font = self.font(point_size)
        ascent, descent = font.getmetrics()
        mask, (offset_x, offset_y) = font.getmask2(text, self.fontmode, anchor="ls")
        ink_bbox = mask.getbbox()
        if ink_bbox is None:
            return (
                FontMetrics(ascent=float(ascent), descent=float(descent)),
                GlyphBox(width=0.0, height=0.0, x_bearing=0.0, y_bearing=0.0),
            )
        left, top, right, bottom = ink_bbox
        glyph_box = GlyphBox(
            width=float(right - left),
            height=float(bottom - top),
            x_bearing=float(offset_x + left),
            y_bearing=float(offset_y + top),
        )
        return FontMetrics(ascent=float(ascent), descent=float(descent)), glyph_box

    def measure_width(self, text: str, point_size: float) -> float:
        return self.measure(text, point_size)[1].width


def measure_line(
    source_line: SourceLine, measurer: TextMeasurer, canvas_width: int
) -> MeasuredLine:
    """Resolve the line's point size and measure it at that size."""
    point_size = parse_directive(
        source_line.directive,
        canvas_width,
        partial(measurer.measure_width, source_line.text),
    )
    font_metrics, glyph_box = measurer.measure(source_line.text, point_size)
    LOGGER.debug(
        "line %r: directive %r -> size %.3f, ink %gx%g",
        source_line.text,
        source_line.directive,
        point_size,
        glyph_box.width,
        glyph_box.height,
    )
    return MeasuredLine(
        text=source_line.text,
        point_size=point_size,
        font_metrics=font_metrics,
        glyph_box=glyph_box,
    )


def measure_lines(
    source_lines: Sequence[SourceLine], measurer: TextMeasurer, canvas_width: int
) -> Tuple[MeasuredLine, ...]:
    return tuple(
        measure_line(source_line, measurer, canvas_width) for source_line in source_lines
    )


def compute_rotation_padding(width: int, height: int) -> Tuple[int, int]:
    """Return integer padding that lets the canvas rotate around its center unclipped."""
    diagonal = math.hypot(width, height)
    return (
        int(math.ceil((diagonal - width) / 2.0)),
        int(math.ceil((diagonal - height) / 2.0)),
    )


def composite_lines(
    canvas: Image.Image,
    plan: LayoutPlan,
    angle_radians: float,
    measurer: TextMeasurer,
    text_rgba: Tuple[int, int, int, int],
) -> Image.Image:
    """Draw the planned lines around the canvas center, rotated by angle_radians.

    Lines are drawn on a transparent layer, padded to the canvas diagonal
    when rotating so the layer can turn around the shared center without
    clipping. The layer is then cropped back to the canvas and composited
    over it.
    """
    pad_x, pad_y = (
        compute_rotation_padding(plan.width, plan.height) if angle_radians else (0, 0)
    )
    layer = Image.new(
        "RGBA", (plan.width + 2 * pad_x, plan.height + 2 * pad_y), TRANSPARENT_RGBA
    )
    layer_draw = ImageDraw.Draw(layer)
    layer_draw.fontmode = measurer.fontmode

    center_x = pad_x + plan.width / 2.0
    center_y = pad_y + plan.height / 2.0
    for placement in plan.placements:
        # whole-pixel origins render the same mask that was measured
        origin = (
            round(center_x + (placement.x - plan.width / 2.0)),
            round(center_y + (placement.y - plan.height / 2.0)),
        )
        layer_draw.text(
            origin,
            placement.line.text,
            font=measurer.font(placement.line.point_size),
            fill=text_rgba,
            anchor="ls",
        )

    if angle_radians:
        resample = (
            Image.Resampling.BICUBIC
            if measurer.fontmode == "L"
            else Image.Resampling.NEAREST
        )
        # PIL turns counter-clockwise for positive angles
        layer = layer.rotate(-math.degrees(angle_radians), resample=resample)

    layer = layer.crop((pad_x, pad_y, pad_x + plan.width, pad_y + plan.height))
    if canvas.mode != "RGBA":
        canvas = canvas.convert("RGBA")
    return Image.alpha_composite(canvas, layer)


def apply_orientation(image: Image.Image, degrees: int) -> Image.Image:
    """Turn the finished raster clockwise by a quarter when requested."""
    if degrees == 90:
        return image.transpose(Image.Transpose.ROTATE_270)
    return image


def normalize_image_format(value: str) -> str:
    """Map a format name or file extension to a Pillow writer name."""
    Image.init()
    normalized = value.strip().upper()
    if normalized in Image.SAVE:
        return normalized
    extension_format = Image.registered_extensions().get(f".{value.strip().lower()}")
    if extension_format is not None and extension_format in Image.SAVE:
        return extension_format
    raise WatermarkValidationError(
        INVALID_FORMAT_CODE, f"unsupported output format: {value!r}"
    )


def encode_image(image: Image.Image, stream: BinaryIO, image_format: str) -> None:
    """Encode the image into stream, flattening onto white where alpha is unsupported."""
    if image_format in FORMATS_WITHOUT_ALPHA:
        background = Image.new("RGBA", image.size, WHITE_RGBA)
        image = Image.alpha_composite(background, image.convert("RGBA")).convert("RGB")
    image.save(stream, format=image_format)


def write_output(image: Image.Image, output_file: str, image_format: str) -> None:
    """Write the encoded image to a file or stdout."""
    if output_file == STDIO_PATH:
        try:
            encode_image(image, sys.stdout.buffer, image_format)
            sys.stdout.buffer.flush()
        except OSError as exc:
            raise WatermarkPipelineError(
                OUTPUT_FILE_CODE, f"cannot write output ({exc.strerror or exc})"
            ) from exc
        return

    try:
        output_stream = open(output_file, "wb")
    except OSError as exc:
        raise WatermarkPipelineError(
            OUTPUT_FILE_CODE,
            f"cannot open output file ({exc.strerror}): {output_file}",
        ) from exc

    try:
        with output_stream:
            encode_image(image, output_stream, image_format)
    except OSError as exc:
        remove_partial_output(output_file)
        raise WatermarkPipelineError(
            OUTPUT_FILE_CODE,
            f"cannot write output file ({exc.strerror or exc}): {output_file}",
        ) from exc
    except Exception as exc:
        remove_partial_output(output_file)
        raise WatermarkPipelineError(RENDER_ENGINE_CODE, str(exc).strip()) from exc
    LOGGER.info("wrote %s %dx%d to %s", image_format, image.width, image.height, output_file)


def remove_partial_output(output_file: str) -> None:
    try:
        os.remove(output_file)
    except FileNotFoundError:
        pass


def read_source_lines(input_file: str) -> Tuple[SourceLine, ...]:
    """Read and parse watermark lines from a file or stdin."""
    try:
        if input_file == STDIO_PATH:
            return parse_source_lines(sys.stdin)
        with open(input_file, "r", encoding="utf-8") as file_handle:
            return parse_source_lines(file_handle)
    except OSError as exc:
        raise WatermarkPipelineError(
            INPUT_FILE_CODE,
            f"cannot open input file ({exc.strerror}): {input_file}",
        ) from exc
    except UnicodeDecodeError as exc:
        raise WatermarkPipelineError(
            INPUT_FILE_CODE,
            f"cannot decode input as {exc.encoding} at byte {exc.start}: {input_file}",
        ) from exc


def render_watermark(request: WatermarkRequest) -> bool:
    """Run the watermark pipeline; return False when there was nothing to draw."""
    source = resolve_image_source(
        request.source, request.background_rgba, request.pdf_dpi
    )
    source_lines = read_source_lines(request.input_file)

    with source.load() as canvas:
        LOGGER.info("canvas %dx%d from %s", canvas.width, canvas.height, source.describe())
        measurer = TextMeasurer(canvas, request.font_path, request.antialias)
        lines = measure_lines(source_lines, measurer, canvas.width)
        plan = build_layout_plan(lines, canvas.width, canvas.height)
        if plan.is_empty:
            LOGGER.info("no lines to render; nothing written")
            return False

        aspect_ratio = canvas.width / canvas.height
        angle_radians = resolve_rotation(request.rotation, aspect_ratio)
        orientation_degrees = resolve_orientation(request.orientation, aspect_ratio)
        LOGGER.debug(
            "rotation %.4f rad, orientation %d deg", angle_radians, orientation_degrees
        )

        composed = composite_lines(
            canvas, plan, angle_radians, measurer, request.text_rgba
        )
        final_image = apply_orientation(composed, orientation_degrees)
        write_output(final_image, request.output_file, request.image_format)
    return True


@contextmanager
def configure_logging(verbosity: int, log_stream: TextIO) -> Iterator[logging.Logger]:
    """Route render_watermark log records to log_stream for the enclosed block."""
    level = VERBOSITY_LEVELS[max(0, min(verbosity, len(VERBOSITY_LEVELS) - 1))]
    handler = logging.StreamHandler(log_stream)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    saved_handlers = LOGGER.handlers[:]
    saved_level = LOGGER.level
    saved_propagate = LOGGER.propagate
    LOGGER.handlers = [handler]
    LOGGER.setLevel(level)
    LOGGER.propagate = False
    try:
        yield LOGGER
    finally:
        handler.flush()
        LOGGER.handlers = saved_handlers
        LOGGER.setLevel(saved_level)
        LOGGER.propagate = saved_propagate


def open_log_stream(log_file: str | None, resources: ExitStack) -> TextIO:
    """Open the log destination, registering it for release on exit."""
    if log_file is None or log_file == STDIO_PATH:
        return sys.stderr
    try:
        log_stream = open(log_file, "a", encoding="utf-8")
    except OSError as exc:
        raise WatermarkPipelineError(
            LOG_FILE_CODE, f"cannot open log file ({exc.strerror}): {log_file}"
        ) from exc
    return resources.enter_context(log_stream)


class WatermarkArgumentParser(argparse.ArgumentParser):
    """Argument parser that reports usage errors as validation errors."""

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        raise WatermarkValidationError(USAGE_CODE, message)


def parse_args(argv: Sequence[str]) -> WatermarkRequest:
    """Parse CLI arguments into a WatermarkRequest."""
    parser = WatermarkArgumentParser(
        prog="render_watermark.py",
        description="Render watermark text onto a blank canvas, an image or a PDF page.",
    )
    parser.add_argument("source", help="WIDTHxHEIGHT, a raster image or a PDF file")
    parser.add_argument(
        "input_file",
        nargs="?",
        default=STDIO_PATH,
        help="watermark text, one [SIZE:]TEXT per line; blank lines are ignored "
        "and add no spacing (default: stdin)",
    )
    parser.add_argument("-o", "--output", default=STDIO_PATH, help="output file (default: stdout)")
    parser.add_argument("-f", "--format", default=DEFAULT_OUTPUT_FORMAT)
    parser.add_argument("-r", "--rotate", default="none", help="none, DEGREES, ldiag or rdiag")
    parser.add_argument("-O", "--orientation", default="none", help="none, portrait or landscape")
    parser.add_argument("-l", "--log", default=None, help="log file (default: stderr)")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("-q", "--quiet", action="store_true")
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--font", default=None, help="TrueType/OpenType font file")
    parser.add_argument("--color", default="#000000", help="text color #RRGGBB")
    parser.add_argument(
        "--background", default="transparent", help="blank canvas fill: transparent or #RRGGBB"
    )
    parser.add_argument("--antialias", action="store_true")
    parser.add_argument("--pdf-dpi", type=int, default=PDF_RASTER_DPI)

    parsed = parser.parse_args(argv)
    if parsed.pdf_dpi <= 0:
        raise WatermarkValidationError(USAGE_CODE, "pdf-dpi must be positive")
    verbosity = 0 if parsed.quiet else DEFAULT_VERBOSITY + parsed.verbose

    return WatermarkRequest(
        source=parsed.source,
        input_file=parsed.input_file,
        output_file=parsed.output,
        image_format=normalize_image_format(parsed.format),
        rotation=parsed.rotate,
        orientation=parsed.orientation,
        log_file=parsed.log,
        verbosity=verbosity,
        font_path=parsed.font,
        text_rgba=parse_hex_color_to_rgba(parsed.color),
        background_rgba=parse_hex_color_to_rgba(parsed.background),
        antialias=parsed.antialias,
        pdf_dpi=parsed.pdf_dpi,
    )


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entrypoint."""
    with ExitStack() as resources:
        resources.enter_context(configure_logging(DEFAULT_VERBOSITY, sys.stderr))
        try:
            request = parse_args(sys.argv[1:] if argv is None else argv)
            log_stream = open_log_stream(request.log_file, resources)
            resources.enter_context(configure_logging(request.verbosity, log_stream))
            render_watermark(request)
            return 0
        except WatermarkValidationError as exc:
            LOGGER.error("%s: %s", exc.code, str(exc).strip())
            return 1
        except WatermarkPipelineError as exc:
            LOGGER.error("%s: %s", exc.code, str(exc).strip())
            return 1
        except Exception as exc:
            LOGGER.error("render_watermark.unhandled_error: %s", str(exc).strip())
            return 1


if __name__ == "__main__":
    raise SystemExit(main())
