"""
caption_engine.py - speech bubble captions over a background image
- Greedy paragraph-aware word wrap measured with a bound Pillow font
- Bubble and free paragraph geometry, bottom bubble anchored to the canvas edge
- One responsive scale factor for canvas, font sizes and positions
- Scene composed as ordered draw ops, painted onto a Pillow surface
- Parameter resolution and background loading joined before composing
"""

from __future__ import annotations

import asyncio
import io
import logging
import math
import os
import random
import re
from dataclasses import dataclass, field, replace
from functools import lru_cache
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import requests
from dotenv import load_dotenv
from PIL import Image, ImageColor, ImageDraw, ImageFont

from param_resolver import (
    RANDOM_SENTINEL,
    RenderParameters,
    ResolvedRender,
    WisdomEntry,
    resolve_from_sources,
)
from wisdom_sources import SOURCE_TIMEOUT_S, SourceError, is_remote, resolve_local_path

BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")

IMAGES_ROOT = Path(os.getenv("IMAGES_ROOT", str(BASE_DIR)))
FONTS_DIR = os.getenv("FONTS_DIR", "").strip()
BOTTOM_ANCHOR = os.getenv("CAPTION_BOTTOM_ANCHOR", "canvas").strip().lower()
VIEWPORT_WIDTH = int(os.getenv("CAPTION_VIEWPORT_WIDTH", "1080"))
VIEWPORT_HEIGHT = int(os.getenv("CAPTION_VIEWPORT_HEIGHT", "1080"))
FALLBACK_BACKGROUND = os.getenv("CAPTION_FALLBACK_BACKGROUND", "#202020")
FALLBACK_IMAGE_SIZE = (1080, 1080)
MAX_VIEWPORT = int(os.getenv("CAPTION_MAX_VIEWPORT", "4096"))
MAX_FONT_SIZE = 2048

BUBBLE_PADDING = 20
LINE_GAP = 10
BUBBLE_FILL = "white"
BUBBLE_STROKE = "black"
BUBBLE_TEXT_COLOR = "black"
BOTTOM_ANCHOR_MODES = ("canvas", "position")

PARAGRAPH_BREAK_RE = re.compile(r"%0A|\n")

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("[caption_engine] %(levelname)s %(message)s"))
    logger.addHandler(handler)
logger.setLevel(logging.DEBUG)
logger.propagate = False

Measure = Callable[[str], float]
MeasurerFactory = Callable[[str, int, str], Measure]


# ---------- Fonts ----------

@dataclass(frozen=True)
class FontSpec:
    family: str
    size: int
    style: str = "normal"


STYLE_SUFFIXES: Dict[Tuple[bool, bool], Tuple[str, ...]] = {
    (False, False): ("", "-Regular"),
    (True, False): ("bd", "-Bold", "_Bold"),
    (False, True): ("i", "-Italic", "-Oblique", "_Italic"),
    (True, True): ("bi", "-BoldItalic", "-BoldOblique", "_Bold_Italic"),
}
FAMILY_FALLBACKS = ("DejaVuSans", "LiberationSans")


def parse_font_style(style: str) -> Tuple[bool, bool]:
    tokens = (style or "").lower().split()
    bold = any(t in {"bold", "bolder"} or (t.isdigit() and int(t) >= 600) for t in tokens)
    italic = any(t in {"italic", "oblique"} for t in tokens)
    return bold, italic


def font_candidates(family: str, style: str) -> List[str]:
    suffixes = STYLE_SUFFIXES[parse_font_style(style)]
    names: List[str] = []
    for fam in (family, *FAMILY_FALLBACKS):
        for base in dict.fromkeys((fam, fam.lower(), fam.replace(" ", ""))):
            for suffix in suffixes:
                names.append(f"{base}{suffix}.ttf")
    if FONTS_DIR:
        names = [str(Path(FONTS_DIR) / name) for name in names] + names
    return names


@lru_cache(maxsize=128)
def load_font(family: str, size: int, style: str = "normal") -> ImageFont.FreeTypeFont:
    if size > MAX_FONT_SIZE:
        logger.warning("font size %s clamped to %s", size, MAX_FONT_SIZE)
        size = MAX_FONT_SIZE
    for candidate in font_candidates(family, style):
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    logger.debug("no font file for family=%s style=%s, using Pillow default", family, style)
    return ImageFont.load_default(size=size)


class PillowTextMeasurer:
    """Text Measurer bound to one family/size/style."""

    def __init__(self, family: str, size: int, style: str = "normal"):
        self.font = load_font(family, size, style)

    def __call__(self, text: str) -> float:
        return float(self.font.getlength(text))


def measurer_for(family: str, size: int, style: str = "normal") -> Measure:
    return PillowTextMeasurer(family, size, style)


# ---------- Layout ----------

def split_paragraphs(text: str) -> List[str]:
    return PARAGRAPH_BREAK_RE.split(text)


def wrap_text(text: str, max_width: float, measure: Measure, trailing_gap: bool = True) -> List[str]:
    """
    Greedy word wrap, paragraph by paragraph.

    A candidate line is accepted only while its measured width is strictly
    below ``max_width``. Every paragraph is followed by an empty gap line;
    with ``trailing_gap=False`` the gap after the last paragraph is dropped.
    A single word wider than ``max_width`` keeps a line of its own.
    """
    if not text:
        return [""]
    paragraphs = split_paragraphs(text)
    lines: List[str] = []
    for idx, paragraph in enumerate(paragraphs):
        words = paragraph.split()
        current = words[0] if words else ""
        for word in words[1:]:
            candidate = f"{current} {word}"
            if measure(candidate) < max_width:
                current = candidate
            else:
                lines.append(current)
                current = word
        lines.append(current)
        if trailing_gap or idx < len(paragraphs) - 1:
            lines.append("")
    return lines


# ---------- Geometry ----------

@dataclass(frozen=True)
class CanvasSize:
    width: int
    height: int


@dataclass(frozen=True)
class BubbleLayout:
    x: int
    y: int
    width: int
    height: int
    lines: Tuple[str, ...]
    baselines: Tuple[int, ...]
    text_x: float
    font: FontSpec


@dataclass(frozen=True)
class ParagraphLayout:
    lines: Tuple[str, ...]
    baselines: Tuple[float, ...]
    text_x: float
    block_height: int
    font: FontSpec


def line_height(font_size: int) -> int:
    return font_size + LINE_GAP


def bubble_height(lines: Sequence[str], font_size: int, padding: int = BUBBLE_PADDING) -> int:
    return len(lines) * line_height(font_size) + 2 * padding


def line_baselines(lines: Sequence[str], origin_y: int, font_size: int, padding: int = BUBBLE_PADDING) -> List[int]:
    step = line_height(font_size)
    return [origin_y + padding + (idx + 1) * step for idx in range(len(lines))]


def bottom_origin(canvas_height: int, block_height: int, padding: int = BUBBLE_PADDING) -> int:
    return canvas_height - block_height - padding


def align_anchor_x(align: str, canvas_width: int, padding: int = BUBBLE_PADDING) -> float:
    if align == "start":
        return padding
    if align == "end":
        return canvas_width - padding
    return canvas_width / 2


def layout_bubble(
    text: str,
    font: FontSpec,
    canvas: CanvasSize,
    origin_y: int = 0,
    anchor_bottom: bool = False,
    measurer_factory: MeasurerFactory = measurer_for,
    padding: int = BUBBLE_PADDING,
) -> BubbleLayout:
    x = padding
    width = canvas.width - 2 * padding
    measure = measurer_factory(font.family, font.size, font.style)
    lines = wrap_text(text, width - 2 * padding, measure)
    height = bubble_height(lines, font.size, padding)
    y = bottom_origin(canvas.height, height, padding) if anchor_bottom else origin_y
    return BubbleLayout(
        x=x,
        y=y,
        width=width,
        height=height,
        lines=tuple(lines),
        baselines=tuple(line_baselines(lines, y, font.size, padding)),
        text_x=x + width / 2,
        font=font,
    )


def layout_paragraph(
    text: str,
    font: FontSpec,
    canvas: CanvasSize,
    align: str = "center",
    measurer_factory: MeasurerFactory = measurer_for,
    padding: int = BUBBLE_PADDING,
) -> ParagraphLayout:
    measure = measurer_factory(font.family, font.size, font.style)
    lines = wrap_text(text, canvas.width - 2 * padding, measure, trailing_gap=False)
    step = line_height(font.size)
    block = len(lines) * step
    start_y = (canvas.height - block) / 2
    return ParagraphLayout(
        lines=tuple(lines),
        baselines=tuple(start_y + idx * step for idx in range(len(lines))),
        text_x=align_anchor_x(align, canvas.width, padding),
        block_height=block,
        font=font,
    )


# ---------- Responsive scaling ----------

SCALED_SIZE_FIELDS = ("top_font_size", "center_font_size", "bottom_font_size", "font_size")
SCALED_POSITION_FIELDS = ("top_position", "center_position", "bottom_position")


def scale_factor(viewport_width: float, viewport_height: float, image_width: float, image_height: float) -> float:
    if min(viewport_width, viewport_height, image_width, image_height) <= 0:
        raise ValueError(
            f"dimensions must be positive: viewport={viewport_width}x{viewport_height} "
            f"image={image_width}x{image_height}"
        )
    return min(viewport_width / image_width, viewport_height / image_height)


def canvas_size(image_width: int, image_height: int, factor: float) -> CanvasSize:
    return CanvasSize(max(1, math.floor(image_width * factor)), max(1, math.floor(image_height * factor)))


def scale_parameters(params: RenderParameters, factor: float, max_size: Optional[int] = None) -> RenderParameters:
    """
    Multiply font sizes and positions by ``factor`` and floor them; allowed once per render.

    Font sizes stay within 1..max_size (default MAX_FONT_SIZE).
    """
    if params.scaled:
        raise ValueError("render parameters are already scaled")
    if factor <= 0:
        raise ValueError(f"scale factor must be positive, got {factor}")
    changes: Dict[str, int] = {}
    for name in SCALED_SIZE_FIELDS:
        changes[name] = min(max(1, math.floor(getattr(params, name) * factor)), max_size or MAX_FONT_SIZE)
    for name in SCALED_POSITION_FIELDS:
        changes[name] = math.floor(getattr(params, name) * factor)
    return replace(params, scale=factor, scaled=True, **changes)


# ---------- Drawing surface ----------

TEXT_ANCHORS = {"start": "ls", "center": "ms", "end": "rs"}


class PillowSurface:
    """Drawing surface backed by an RGBA Pillow image."""

    def __init__(self, canvas: CanvasSize, background: Optional[Image.Image] = None, fallback_color: str = FALLBACK_BACKGROUND):
        self.canvas = canvas
        self.background = background
        self.fallback_color = fallback_color
        self.image = Image.new("RGBA", (canvas.width, canvas.height), fallback_color)
        self.draw = ImageDraw.Draw(self.image)

    def draw_background(self, width: int, height: int) -> None:
        if self.background is None:
            self.draw.rectangle([0, 0, width, height], fill=self.fallback_color)
            return
        bgi = self.background.convert("RGBA").resize((width, height), Image.LANCZOS)
        self.image.paste(bgi, (0, 0))

    def fill_rect(self, x: float, y: float, width: float, height: float, color: str) -> None:
        self.draw.rectangle([x, y, x + width, y + height], fill=color)

    def stroke_rect(self, x: float, y: float, width: float, height: float, color: str) -> None:
        self.draw.rectangle([x, y, x + width, y + height], outline=color, width=1)

    def fill_text(self, text: str, x: float, y: float, font: FontSpec, color: str, align: str) -> None:
        try:
            ImageColor.getrgb(color)
        except ValueError:
            logger.warning("unknown text color %r, using white", color)
            color = "white"
        pil_font = load_font(font.family, font.size, font.style)
        anchor = TEXT_ANCHORS.get(align, "ms") if isinstance(pil_font, ImageFont.FreeTypeFont) else None
        self.draw.text((x, y), text, font=pil_font, fill=color, anchor=anchor)


# ---------- Scene ----------

@dataclass(frozen=True)
class DrawBackground:
    width: int
    height: int

    def paint(self, surface: PillowSurface) -> None:
        surface.draw_background(self.width, self.height)


@dataclass(frozen=True)
class FillRect:
    x: float
    y: float
    width: float
    height: float
    color: str

    def paint(self, surface: PillowSurface) -> None:
        surface.fill_rect(self.x, self.y, self.width, self.height, self.color)


@dataclass(frozen=True)
class StrokeRect:
    x: float
    y: float
    width: float
    height: float
    color: str

    def paint(self, surface: PillowSurface) -> None:
        surface.stroke_rect(self.x, self.y, self.width, self.height, self.color)


@dataclass(frozen=True)
class FillText:
    text: str
    x: float
    y: float
    font: FontSpec
    color: str
    align: str = "center"

    def paint(self, surface: PillowSurface) -> None:
        surface.fill_text(self.text, self.x, self.y, self.font, self.color, self.align)


DrawOp = Union[DrawBackground, FillRect, StrokeRect, FillText]


def bubble_ops(layout: BubbleLayout) -> List[DrawOp]:
    ops: List[DrawOp] = [
        FillRect(layout.x, layout.y, layout.width, layout.height, BUBBLE_FILL),
        StrokeRect(layout.x, layout.y, layout.width, layout.height, BUBBLE_STROKE),
    ]
    for line, baseline in zip(layout.lines, layout.baselines):
        if line:
            ops.append(FillText(line, layout.text_x, baseline, layout.font, BUBBLE_TEXT_COLOR, "center"))
    return ops


def compose_scene(
    params: RenderParameters,
    canvas: CanvasSize,
    measurer_factory: MeasurerFactory = measurer_for,
    bottom_anchor: str = BOTTOM_ANCHOR,
) -> List[DrawOp]:
    """
    Ordered draw ops: background, top, center and bottom bubbles, then the
    free paragraph. The paragraph is drawn last so bubbles never cover it.
    """
    if bottom_anchor not in BOTTOM_ANCHOR_MODES:
        raise ValueError(f"bottom_anchor must be one of {BOTTOM_ANCHOR_MODES}, got {bottom_anchor!r}")

    ops: List[DrawOp] = [DrawBackground(canvas.width, canvas.height)]
    bubbles = (
        (params.top_text, FontSpec(params.top_font, params.top_font_size, params.top_font_style), params.top_position, False),
        (params.center_text, FontSpec(params.center_font, params.center_font_size, params.center_font_style), params.center_position, False),
        (params.bottom_text, FontSpec(params.bottom_font, params.bottom_font_size, params.bottom_font_style), params.bottom_position, bottom_anchor == "canvas"),
    )
    for text, font, position, anchored in bubbles:
        if not text:
            continue
        layout = layout_bubble(text, font, canvas, origin_y=position, anchor_bottom=anchored, measurer_factory=measurer_factory)
        ops.extend(bubble_ops(layout))

    if params.free_paragraph:
        font = FontSpec(params.font_family, params.font_size, params.font_style)
        layout = layout_paragraph(params.free_paragraph, font, canvas, params.text_align, measurer_factory)
        for line, baseline in zip(layout.lines, layout.baselines):
            if line:
                ops.append(FillText(line, layout.text_x, baseline, font, params.text_color, params.text_align))
    return ops


def paint_scene(ops: Sequence[DrawOp], canvas: CanvasSize, background: Optional[Image.Image] = None) -> Image.Image:
    surface = PillowSurface(canvas, background)
    for op in ops:
        op.paint(surface)
    return surface.image


# ---------- Background ----------

class BackgroundLoadError(Exception):
    """The background bitmap could not be fetched or decoded."""


def load_background(ref: str) -> Image.Image:
    try:
        if is_remote(ref):
            resp = requests.get(ref, timeout=SOURCE_TIMEOUT_S)
            resp.raise_for_status()
            image = Image.open(io.BytesIO(resp.content))
        else:
            image = Image.open(resolve_local_path(ref, IMAGES_ROOT))
        image.load()
    except (requests.RequestException, OSError, Image.DecompressionBombError, SourceError) as exc:
        raise BackgroundLoadError(f"{ref}: {exc}") from exc
    return image


def save_image(image: Image.Image, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.suffix.lower() in {".jpg", ".jpeg"}:
        image = image.convert("RGB")
    image.save(path)


def encode_png(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


# ---------- Core engine ----------

@dataclass
class CaptionRenderRequest:
    overrides: Dict[str, str] = field(default_factory=dict)
    viewport_width: int = VIEWPORT_WIDTH
    viewport_height: int = VIEWPORT_HEIGHT
    bottom_anchor: str = BOTTOM_ANCHOR
    output_path: Optional[str] = None


@dataclass
class CaptionRender:
    resolved: RenderParameters
    params: RenderParameters
    canvas: CanvasSize
    ops: List[DrawOp]
    image: Image.Image
    background_loaded: bool
    wisdom: Optional[WisdomEntry] = None


class CaptionEngine:
    def __init__(
        self,
        request: CaptionRenderRequest,
        rng: Optional[random.Random] = None,
        resolver: Callable[..., ResolvedRender] = resolve_from_sources,
        background_loader: Callable[[str], Image.Image] = load_background,
        measurer_factory: MeasurerFactory = measurer_for,
    ):
        self.request = request
        self.rng = rng
        self.resolver = resolver
        self.background_loader = background_loader
        self.measurer_factory = measurer_factory

    async def _load_background(self, ref: str) -> Optional[Image.Image]:
        try:
            return await asyncio.to_thread(self.background_loader, ref)
        except BackgroundLoadError as exc:
            logger.warning(f"background load failed, drawing on solid fallback: {exc}")
            return None

    async def _gather_inputs(self) -> Tuple[ResolvedRender, Optional[Image.Image]]:
        overrides = self.request.overrides
        explicit_bg = overrides.get("bg")
        if explicit_bg and explicit_bg != RANDOM_SENTINEL:
            resolved, background = await asyncio.gather(
                asyncio.to_thread(self.resolver, overrides, self.rng),
                self._load_background(explicit_bg),
            )
            if resolved.params.background_ref != explicit_bg:
                background = await self._load_background(resolved.params.background_ref)
            return resolved, background
        resolved = await asyncio.to_thread(self.resolver, overrides, self.rng)
        background = await self._load_background(resolved.params.background_ref)
        return resolved, background

    async def render_async(self) -> CaptionRender:
        resolved, background = await self._gather_inputs()
        params = resolved.params
        logger.info(f"Starting render - bg: {params.background_ref}")

        image_w, image_h = background.size if background is not None else FALLBACK_IMAGE_SIZE
        viewport_w = min(self.request.viewport_width, MAX_VIEWPORT)
        viewport_h = min(self.request.viewport_height, MAX_VIEWPORT)
        factor = scale_factor(viewport_w, viewport_h, image_w, image_h)
        canvas = canvas_size(image_w, image_h, factor)
        scaled = scale_parameters(params, factor, max_size=min(canvas.height, MAX_FONT_SIZE))
        logger.debug(f"Canvas {canvas.width}x{canvas.height} scale={factor:.4f}")

        ops = compose_scene(scaled, canvas, self.measurer_factory, self.request.bottom_anchor)
        image = paint_scene(ops, canvas, background)

        if self.request.output_path:
            await asyncio.to_thread(save_image, image, Path(self.request.output_path))
            logger.info(f"Render saved to {self.request.output_path}")

        return CaptionRender(
            resolved=params,
            params=scaled,
            canvas=canvas,
            ops=ops,
            image=image,
            background_loaded=background is not None,
            wisdom=resolved.wisdom,
        )

    def render(self) -> CaptionRender:
        return asyncio.run(self.render_async())


# ---------- Public API ----------

def render_caption(
    overrides: Optional[Dict[str, str]] = None,
    output_path: Optional[str] = None,
    viewport_width: int = VIEWPORT_WIDTH,
    viewport_height: int = VIEWPORT_HEIGHT,
    bottom_anchor: str = BOTTOM_ANCHOR,
) -> CaptionRender:
    """Main engine entrypoint."""
    request = CaptionRenderRequest(
        overrides=dict(overrides or {}),
        viewport_width=viewport_width,
        viewport_height=viewport_height,
        bottom_anchor=bottom_anchor,
        output_path=output_path,
    )
    return CaptionEngine(request).render()
