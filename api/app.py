"""
FastAPI application serving captioned images.
"""

from __future__ import annotations

import asyncio
import html
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR.parent / ".env")

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, Response
from pydantic import BaseModel, Field

import caption_engine
import param_resolver
import wisdom_sources


API_PREFIX = "/api/v1"
API_KEY = os.getenv("API_KEY")
VIEWPORT_KEYS = {"width", "height"}

LOG = logging.getLogger(__name__)

router = APIRouter(prefix=API_PREFIX)


def verify_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    if API_KEY and x_api_key != API_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


class SaveSettingsRequest(BaseModel):
    params: Dict[str, str] = Field(default_factory=dict)


class SaveSettingsResponse(BaseModel):
    ok: bool
    data: Optional[str] = None
    settings: Dict[str, Any]
    share_query: Dict[str, str]


def request_overrides(request: Request) -> Dict[str, str]:
    return {k: v for k, v in request.query_params.items() if k not in VIEWPORT_KEYS}


async def resolve_overrides(overrides: Dict[str, str]) -> param_resolver.ResolvedRender:
    return await asyncio.to_thread(param_resolver.resolve_from_sources, overrides)


async def render_request(request: Request, width: int, height: int) -> caption_engine.CaptionRender:
    caption_request = caption_engine.CaptionRenderRequest(
        overrides=request_overrides(request),
        viewport_width=width,
        viewport_height=height,
    )
    return await caption_engine.CaptionEngine(caption_request).render_async()


def describe(resolved: param_resolver.ResolvedRender, url: str) -> Dict[str, Any]:
    params = resolved.params
    return {
        "params": params.to_dict(),
        "wisdom": resolved.wisdom.tag if resolved.wisdom is not None else None,
        "share_query": param_resolver.share_query(params),
        "share_url": param_resolver.share_url(url, params),
        "meta": param_resolver.page_metadata(params),
    }


@router.get("/caption.png")
async def caption_png(
    request: Request,
    width: int = Query(default=caption_engine.VIEWPORT_WIDTH, gt=0, le=caption_engine.MAX_VIEWPORT),
    height: int = Query(default=caption_engine.VIEWPORT_HEIGHT, gt=0, le=caption_engine.MAX_VIEWPORT),
) -> Response:
    result = await render_request(request, width, height)
    share = urlencode(param_resolver.share_query(result.resolved))
    headers = {"X-Share-Query": share, "Cache-Control": "no-store"}
    return Response(content=caption_engine.encode_png(result.image), media_type="image/png", headers=headers)


@router.get("/caption")
async def caption_params(request: Request) -> JSONResponse:
    resolved = await resolve_overrides(request_overrides(request))
    return JSONResponse(describe(resolved, str(request.url)))


@router.post("/settings", response_model=SaveSettingsResponse, dependencies=[Depends(verify_api_key)])
async def save_settings(body: SaveSettingsRequest) -> SaveSettingsResponse:
    resolved = await resolve_overrides(body.params)
    settings = resolved.params.to_settings()
    locator = await asyncio.to_thread(wisdom_sources.save_settings, settings)
    if locator is None:
        LOG.warning("settings were not stored; render continues without a data locator")
    return SaveSettingsResponse(
        ok=locator is not None,
        data=locator,
        settings=settings,
        share_query=param_resolver.share_query(resolved.params),
    )


PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="cs">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{title}</title>
<meta property="og:title" content="{title}">
<meta property="og:description" content="{description}">
<meta property="og:image" content="{image}">
<link rel="canonical" href="{canonical}">
<style>html,body{{margin:0;background:#000;}}img{{display:block;margin:0 auto;max-width:100vw;max-height:100vh;}}</style>
</head>
<body>
<img src="{src}" alt="{description}">
</body>
</html>
"""


def render_page(resolved: param_resolver.ResolvedRender, request: Request) -> str:
    params = resolved.params
    meta = param_resolver.page_metadata(params)
    pinned = {k: v for k, v in request.query_params.items() if k not in param_resolver.SHARE_KEYS}
    pinned.update(param_resolver.share_query(params))
    return PAGE_TEMPLATE.format(
        title=html.escape(meta["title"]),
        description=html.escape(meta["description"]),
        image=html.escape(meta["image"]),
        canonical=html.escape(param_resolver.share_url(str(request.url), params)),
        src=html.escape(f"{API_PREFIX}/caption.png?{urlencode(pinned)}"),
    )


APP = FastAPI(title="Advice Bubbles", version="1.0.0")

APP.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@APP.get("/", response_class=HTMLResponse)
async def page(request: Request) -> HTMLResponse:
    resolved = await resolve_overrides(request_overrides(request))
    return HTMLResponse(render_page(resolved, request))


APP.include_router(router)

__all__ = ["APP"]
