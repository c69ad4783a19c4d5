#!/usr/bin/env python3
"""
Command-line entrypoint for the caption renderer.

Examples:
    # Random wisdom on a random background
    python cli/caption_renderer.py --output out.png

    # Explicit captions, newline inside the top bubble
    python cli/caption_renderer.py --output out.png --top "Listen%0Ason" --bottom "random()"

    # Any request parameter as key=value
    python cli/caption_renderer.py --output out.png --param bottomFontSize=52 --param bg=images/image3.webp

    # Render for a phone-sized viewport, all bubbles top-anchored
    python cli/caption_renderer.py --output out.png --width 390 --height 844 --bottom-anchor position
"""

from __future__ import annotations

import argparse
import json
import random
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from caption_engine import (  # noqa: E402
    BOTTOM_ANCHOR,
    BOTTOM_ANCHOR_MODES,
    MAX_VIEWPORT,
    VIEWPORT_HEIGHT,
    VIEWPORT_WIDTH,
    CaptionEngine,
    CaptionRenderRequest,
)
from param_resolver import page_metadata, resolve_from_sources, share_query  # noqa: E402

SHORTCUT_KEYS = ("top", "center", "bottom", "bg", "text", "json", "data")


def _parse_param(raw: str) -> Tuple[str, str]:
    if "=" not in raw:
        raise argparse.ArgumentTypeError("Parameters must be provided as key=value")
    key, value = raw.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError("Parameter key cannot be empty")
    return key, value


def _collect_overrides(raw_items: Optional[Iterable[str]], shortcuts: Dict[str, Optional[str]]) -> Dict[str, str]:
    overrides: Dict[str, str] = {}
    for raw in raw_items or []:
        key, value = _parse_param(raw)
        overrides[key] = value
    # Shortcut flags win over --param for the same key.
    for key, value in shortcuts.items():
        if value is not None:
            overrides[key] = value
    return overrides


def _format_preview(overrides: Dict[str, str], rng: Optional[random.Random]) -> str:
    resolved = resolve_from_sources(overrides, rng)
    payload = {
        "overrides": overrides,
        "params": resolved.params.to_dict(),
        "wisdom": resolved.wisdom.tag if resolved.wisdom is not None else None,
        "share_query": share_query(resolved.params),
        "meta": page_metadata(resolved.params),
    }
    return json.dumps(payload, ensure_ascii=False, indent=2)


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an integer, got {raw!r}")
    if value <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    if value > MAX_VIEWPORT:
        raise argparse.ArgumentTypeError(f"expected at most {MAX_VIEWPORT}, got {value}")
    return value


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Render speech bubble captions over a background image.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --output out.png
  %(prog)s --output out.png --top "Listen%%0Ason" --bottom "random()"
  %(prog)s --output out.png --param topFontSize=48 --param textColor=yellow --text "Free paragraph"
        """,
    )
    parser.add_argument("--output", help="Destination image path (PNG or JPEG).")

    text_group = parser.add_argument_group("caption options")
    text_group.add_argument("--top", help="Top bubble text, or random().")
    text_group.add_argument("--center", help="Center bubble text, or random().")
    text_group.add_argument("--bottom", help="Bottom bubble text, or random().")
    text_group.add_argument("--bg", help="Background image path or URL, or random().")
    text_group.add_argument("--text", help="Free paragraph text.")
    text_group.add_argument("--json", help="Alternate wisdom corpus locator.")
    text_group.add_argument("--data", help="Settings record locator in the remote store.")
    parser.add_argument(
        "--param",
        action="append",
        default=[],
        help="Request parameter as key=value (e.g. topFontSize=48). Repeat for multiple parameters.",
    )

    layout_group = parser.add_argument_group("layout options")
    layout_group.add_argument("--width", type=_positive_int, default=VIEWPORT_WIDTH, help=f"Viewport width (default: {VIEWPORT_WIDTH}).")
    layout_group.add_argument("--height", type=_positive_int, default=VIEWPORT_HEIGHT, help=f"Viewport height (default: {VIEWPORT_HEIGHT}).")
    layout_group.add_argument(
        "--bottom-anchor",
        choices=BOTTOM_ANCHOR_MODES,
        default=BOTTOM_ANCHOR if BOTTOM_ANCHOR in BOTTOM_ANCHOR_MODES else "canvas",
        help="canvas: bottom bubble sits on the canvas edge; position: use bottomPosition from the top.",
    )
    parser.add_argument("--seed", type=int, help="Seed for random() selections.")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Resolve parameters and print them without rendering.",
    )
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)

    try:
        overrides = _collect_overrides(args.param, {key: getattr(args, key) for key in SHORTCUT_KEYS})
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
    rng = random.Random(args.seed) if args.seed is not None else None

    if args.dry_run:
        print(_format_preview(overrides, rng))
        return 0

    if not args.output:
        parser.error("--output is required unless --dry-run is given")

    request = CaptionRenderRequest(
        overrides=overrides,
        viewport_width=args.width,
        viewport_height=args.height,
        bottom_anchor=args.bottom_anchor,
        output_path=str(Path(args.output)),
    )
    result = CaptionEngine(request, rng=rng).render()
    if not result.background_loaded:
        print(f"[caption_renderer] Background {result.resolved.background_ref} not loaded, used fallback color")
    print(f"[caption_renderer] Rendered {args.output} ({result.canvas.width}x{result.canvas.height})")
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
