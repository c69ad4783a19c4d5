"""
param_resolver.py - resolve render parameters from prioritized sources
- Per-field precedence: request override > settings record > wisdom entry > built-in literal
- "random()" sentinel samples the wisdom corpus (text) or the background set (bg)
- Fetch failures fall back to the built-in parameters and are only logged
"""

from __future__ import annotations

import logging
import os
import random
import re
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from dotenv import load_dotenv

from wisdom_sources import SourceBundle, SourceError, fetch_sources

BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")

RANDOM_SENTINEL = "random()"

DEFAULT_TOP_TEXT = "Teď mě dobře poslouchej, mé dítě."
DEFAULT_BOTTOM_TEXT = "Nikdy se nevzdávej."
DEFAULT_DESCRIPTION = "Rada otce"

DEFAULT_BACKGROUNDS: Tuple[str, ...] = (
    "images/image.png",
    "images/image1.webp",
    "images/image2.webp",
    "images/image3.webp",
    "images/image4.webp",
    "images/image5.webp",
    "images/image6.webp",
    "images/image7.webp",
    "images/image8.webp",
    "images/image9.webp",
    "images/image10.webp",
)
BACKGROUND_IMAGES: Tuple[str, ...] = tuple(
    item.strip() for item in os.getenv("CAPTION_IMAGES", "").split(",") if item.strip()
) or DEFAULT_BACKGROUNDS

TEXT_ALIGNMENTS = {"start": "start", "left": "start", "center": "center", "end": "end", "right": "end"}

logger = logging.getLogger(__name__)


# ---------- Field table ----------

@dataclass(frozen=True)
class ParamField:
    attr: str
    query_key: str
    record_keys: Tuple[str, ...]
    kind: str = "text"


PARAM_FIELDS: Tuple[ParamField, ...] = (
    ParamField("top_text", "top", ("topText", "top")),
    ParamField("center_text", "center", ("centerText", "center")),
    ParamField("bottom_text", "bottom", ("bottomText", "bottom")),
    ParamField("free_paragraph", "text", ("text", "freeParagraph")),
    ParamField("background_ref", "bg", ("bg", "background")),
    ParamField("top_font_size", "topFontSize", ("topFontSize",), "size"),
    ParamField("top_font_style", "topFontStyle", ("topFontStyle",)),
    ParamField("top_font", "topFont", ("topFont",)),
    ParamField("top_position", "topPosition", ("topPosition",), "position"),
    ParamField("center_font_size", "centerFontSize", ("centerFontSize",), "size"),
    ParamField("center_font_style", "centerFontStyle", ("centerFontStyle",)),
    ParamField("center_font", "centerFont", ("centerFont",)),
    ParamField("center_position", "centerPosition", ("centerPosition",), "position"),
    ParamField("bottom_font_size", "bottomFontSize", ("bottomFontSize",), "size"),
    ParamField("bottom_font_style", "bottomFontStyle", ("bottomFontStyle",)),
    ParamField("bottom_font", "bottomFont", ("bottomFont",)),
    ParamField("bottom_position", "bottomPosition", ("bottomPosition",), "position"),
    ParamField("font_size", "fontSize", ("fontSize",), "size"),
    ParamField("font_style", "fontStyle", ("fontStyle",)),
    ParamField("font_family", "fontFamily", ("fontFamily",)),
    ParamField("text_color", "textColor", ("textColor",)),
    ParamField("text_align", "textAlign", ("textAlign",), "align"),
)
FIELDS_BY_ATTR: Dict[str, ParamField] = {f.attr: f for f in PARAM_FIELDS}
ATTR_BY_KEY: Dict[str, str] = {}
for _f in PARAM_FIELDS:
    ATTR_BY_KEY.setdefault(_f.query_key, _f.attr)
    for _key in _f.record_keys:
        ATTR_BY_KEY.setdefault(_key, _f.attr)

TEXT_SLOTS = {"top_text": "top", "center_text": "center", "bottom_text": "bottom"}

# Center bubble style defaults to the resolved top bubble style.
INHERITED_STYLE = {
    "center_font_size": "top_font_size",
    "center_font_style": "top_font_style",
    "center_font": "top_font",
}

BUILTIN_DEFAULTS: Dict[str, Any] = {
    "top_text": DEFAULT_TOP_TEXT,
    "center_text": "",
    "bottom_text": DEFAULT_BOTTOM_TEXT,
    "free_paragraph": "",
    "background_ref": None,
    "top_font_size": 40,
    "top_font_style": "bold",
    "top_font": "Arial",
    "top_position": 50,
    "center_font_size": None,
    "center_font_style": None,
    "center_font": None,
    "center_position": 100,
    "bottom_font_size": 40,
    "bottom_font_style": "italic",
    "bottom_font": "Arial",
    "bottom_position": 150,
    "font_size": 40,
    "font_style": "bold",
    "font_family": "Arial",
    "text_color": "white",
    "text_align": "center",
}


@dataclass(frozen=True)
class RenderParameters:
    top_text: str
    center_text: str
    bottom_text: str
    free_paragraph: str
    background_ref: str
    top_font_size: int
    top_font_style: str
    top_font: str
    top_position: int
    center_font_size: int
    center_font_style: str
    center_font: str
    center_position: int
    bottom_font_size: int
    bottom_font_style: str
    bottom_font: str
    bottom_position: int
    font_size: int
    font_style: str
    font_family: str
    text_color: str
    text_align: str
    scale: float = 1.0
    scaled: bool = False

    def to_settings(self) -> Dict[str, Any]:
        """Settings record for the remote store; the free paragraph is not saved."""
        out: Dict[str, Any] = {}
        for f in PARAM_FIELDS:
            if f.attr == "free_paragraph":
                continue
            out[f.record_keys[0]] = getattr(self, f.attr)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------- Wisdom entries ----------

@dataclass(frozen=True)
class PlainBottom:
    text: str
    tag: str = field(default="plain_bottom", init=False)

    def slots(self) -> Dict[str, str]:
        return {"top": "", "center": "", "bottom": self.text}

    def carried(self) -> Dict[str, Any]:
        return {"bottom_text": self.text}


@dataclass(frozen=True)
class TopBottom:
    top: str
    bottom: str
    tag: str = field(default="top_bottom", init=False)

    def slots(self) -> Dict[str, str]:
        return {"top": self.top, "center": "", "bottom": self.bottom}

    def carried(self) -> Dict[str, Any]:
        return {"top_text": self.top, "bottom_text": self.bottom}


@dataclass(frozen=True)
class TopCenterBottom:
    top: str
    center: str
    bottom: str
    tag: str = field(default="top_center_bottom", init=False)

    def slots(self) -> Dict[str, str]:
        return {"top": self.top, "center": self.center, "bottom": self.bottom}

    def carried(self) -> Dict[str, Any]:
        return {"top_text": self.top, "center_text": self.center, "bottom_text": self.bottom}


@dataclass(frozen=True)
class Structured:
    top_text: str = ""
    center_text: str = ""
    bottom_text: str = ""
    bg: str = ""
    overrides: Mapping[str, Any] = field(default_factory=dict)
    tag: str = field(default="structured", init=False)

    def slots(self) -> Dict[str, str]:
        return {"top": self.top_text, "center": self.center_text, "bottom": self.bottom_text}

    def carried(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for key, value in self.overrides.items():
            attr = ATTR_BY_KEY.get(key)
            if attr and attr not in TEXT_SLOTS and attr != "background_ref":
                values[attr] = value
        values.update(
            top_text=self.top_text,
            center_text=self.center_text,
            bottom_text=self.bottom_text,
            background_ref=self.bg,
        )
        return values


WisdomEntry = Union[PlainBottom, TopBottom, TopCenterBottom, Structured]

STRUCTURED_KEYS = {"topText", "centerText", "bottomText", "bg"}


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return ""


def parse_wisdom_entry(raw: Any) -> WisdomEntry:
    if isinstance(raw, str):
        return PlainBottom(raw)
    if isinstance(raw, list):
        items = [_as_text(item) for item in raw]
        if len(items) == 2:
            return TopBottom(*items)
        if len(items) == 3:
            return TopCenterBottom(*items)
    elif isinstance(raw, dict):
        return Structured(
            top_text=_as_text(raw.get("topText")),
            center_text=_as_text(raw.get("centerText")),
            bottom_text=_as_text(raw.get("bottomText")),
            bg=_as_text(raw.get("bg")),
            overrides={k: v for k, v in raw.items() if k not in STRUCTURED_KEYS},
        )
    logger.debug("malformed wisdom entry %r, using empty fields", raw)
    return Structured()


def sample_wisdom(corpus: Sequence[Any], rng: Optional[random.Random] = None) -> Optional[WisdomEntry]:
    if not corpus:
        return None
    rng = rng or random.Random()
    return parse_wisdom_entry(corpus[rng.randrange(len(corpus))])


def sample_background(rng: Optional[random.Random] = None, images: Optional[Sequence[str]] = None) -> str:
    rng = rng or random.Random()
    pool = list(images or BACKGROUND_IMAGES)
    return pool[rng.randrange(len(pool))]


# ---------- Coercion ----------

_LEADING_INT_RE = re.compile(r"^\s*([-+]?\d+)")


def _coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        match = _LEADING_INT_RE.match(value)
        if match:
            return int(match.group(1))
    return None


def _coerce(spec: ParamField, value: Any) -> Any:
    """Return the usable value for a field, or None when it falls through."""
    if value is None:
        return None
    if spec.kind in {"size", "position"}:
        number = _coerce_int(value)
        if number is None or (spec.kind == "size" and number <= 0):
            if value != "":
                logger.warning("ignoring invalid %s=%r", spec.query_key, value)
            return None
        return number
    text = _as_text(value)
    if text == "":
        return None
    if spec.kind == "align":
        aligned = TEXT_ALIGNMENTS.get(text.strip().lower())
        if aligned is None:
            logger.warning("ignoring invalid %s=%r", spec.query_key, value)
        return aligned
    return text


def _record_value(record: Mapping[str, Any], spec: ParamField) -> Any:
    for key in spec.record_keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


# ---------- Resolution ----------

@dataclass(frozen=True)
class ResolvedRender:
    params: RenderParameters
    wisdom: Optional[WisdomEntry] = None


def resolve(
    overrides: Mapping[str, Any],
    settings_record: Optional[Mapping[str, Any]] = None,
    builtin_defaults: Optional[Mapping[str, Any]] = None,
    corpus: Sequence[Any] = (),
    rng: Optional[random.Random] = None,
    backgrounds: Optional[Sequence[str]] = None,
) -> ResolvedRender:
    """
    Merge request overrides, the settings record, one wisdom entry and the
    built-in literals into a fully populated RenderParameters.

    A wisdom entry is sampled when any text override is ``random()`` or when
    neither overrides nor the record provide top/center/bottom text. In the
    first case the entry only feeds the ``random()`` slots; in the second it
    feeds every field it carries.
    """
    rng = rng or random.Random()
    record = settings_record or {}
    defaults = dict(BUILTIN_DEFAULTS)
    if builtin_defaults:
        defaults.update(builtin_defaults)

    random_slots = {
        attr for attr in TEXT_SLOTS if overrides.get(FIELDS_BY_ATTR[attr].query_key) == RANDOM_SENTINEL
    }
    has_text = False
    for attr in TEXT_SLOTS:
        spec = FIELDS_BY_ATTR[attr]
        if attr not in random_slots and _coerce(spec, overrides.get(spec.query_key)) is not None:
            has_text = True
        if _coerce(spec, _record_value(record, spec)) is not None:
            has_text = True

    entry: Optional[WisdomEntry] = None
    entry_fills_all = False
    if random_slots or not has_text:
        entry = sample_wisdom(corpus, rng)
        entry_fills_all = not has_text
        if entry is not None:
            logger.debug("sampled wisdom entry %s fills_all=%s", entry.tag, entry_fills_all)

    slot_values = entry.slots() if entry is not None else {}
    carried = entry.carried() if (entry is not None and entry_fills_all) else {}

    values: Dict[str, Any] = {}
    for spec in PARAM_FIELDS:
        override = overrides.get(spec.query_key)
        if spec.attr in random_slots:
            candidates: List[Any] = [slot_values.get(TEXT_SLOTS[spec.attr])]
        else:
            candidates = [override]
        candidates += [_record_value(record, spec), carried.get(spec.attr), defaults.get(spec.attr)]

        resolved = None
        for candidate in candidates:
            if spec.attr == "background_ref" and candidate == RANDOM_SENTINEL:
                resolved = sample_background(rng, backgrounds)
                break
            resolved = _coerce(spec, candidate)
            if resolved is not None:
                break
        values[spec.attr] = resolved

    for attr, parent in INHERITED_STYLE.items():
        if values[attr] is None:
            values[attr] = values[parent]
    if values["background_ref"] is None:
        values["background_ref"] = sample_background(rng, backgrounds)
    for attr in TEXT_SLOTS:
        if values[attr] is None:
            values[attr] = ""
    if values["free_paragraph"] is None:
        values["free_paragraph"] = ""

    return ResolvedRender(params=RenderParameters(**values), wisdom=entry)


def builtin_parameters(rng: Optional[random.Random] = None, backgrounds: Optional[Sequence[str]] = None) -> RenderParameters:
    """Literal top/bottom text, empty center, default styles, one sampled background."""
    values = dict(BUILTIN_DEFAULTS)
    for attr, parent in INHERITED_STYLE.items():
        values[attr] = values[parent]
    values["background_ref"] = sample_background(rng, backgrounds)
    return RenderParameters(**values)


def resolve_from_sources(
    overrides: Mapping[str, Any],
    rng: Optional[random.Random] = None,
    fetch: Callable[[Optional[str], Optional[str]], SourceBundle] = fetch_sources,
) -> ResolvedRender:
    """Fetch the corpus/record named by ``json``/``data`` and resolve; never raises on fetch failure."""
    corpus_locator = _as_text(overrides.get("json")) or None
    settings_locator = _as_text(overrides.get("data")) or None
    try:
        bundle = fetch(corpus_locator, settings_locator)
    except SourceError as exc:
        logger.error("Error fetching parameters: %s", exc)
        return ResolvedRender(params=builtin_parameters(rng))
    return resolve(overrides, bundle.settings, corpus=bundle.wisdoms, rng=rng)


# ---------- Shareable locator & page metadata ----------

SHARE_KEYS = ("top", "center", "bottom", "bg")


def share_query(params: RenderParameters) -> Dict[str, str]:
    query: Dict[str, str] = {}
    for key, value in (
        ("top", params.top_text),
        ("center", params.center_text),
        ("bottom", params.bottom_text),
        ("bg", params.background_ref),
    ):
        if value:
            query[key] = value
    return query


def share_url(url: str, params: RenderParameters) -> str:
    """Rewrite ``url`` so its query pins the resolved top/center/bottom/bg values."""
    parts = urlsplit(url)
    kept = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in SHARE_KEYS]
    query = kept + list(share_query(params).items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def page_metadata(params: RenderParameters) -> Dict[str, str]:
    return {
        "title": params.top_text or DEFAULT_TOP_TEXT,
        "description": params.bottom_text or DEFAULT_DESCRIPTION,
        "image": params.background_ref or BACKGROUND_IMAGES[0],
    }


__all__ = [
    "RANDOM_SENTINEL",
    "RenderParameters",
    "ResolvedRender",
    "PlainBottom",
    "TopBottom",
    "TopCenterBottom",
    "Structured",
    "parse_wisdom_entry",
    "sample_wisdom",
    "sample_background",
    "resolve",
    "resolve_from_sources",
    "builtin_parameters",
    "share_query",
    "share_url",
    "page_metadata",
]
