"""
Settings record and wisdom corpus sources.

Locators are either HTTP(S) URLs, fetched with requests, or filesystem paths
resolved against the project root. The remote settings store is addressed
with a fixed access key header.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")

WISDOM_CORPUS_PATH = os.getenv("WISDOM_CORPUS_PATH", "data/wisdoms.json").strip()
SETTINGS_STORE_URL = os.getenv("SETTINGS_STORE_URL", "").strip()
SETTINGS_ACCESS_KEY = os.getenv("SETTINGS_ACCESS_KEY", "").strip()
SOURCE_TIMEOUT_S = float(os.getenv("SOURCE_TIMEOUT_S", "10"))

ACCESS_KEY_HEADER = "X-Access-Key"

LOG = logging.getLogger(__name__)


class SourceError(Exception):
    """A settings record or corpus could not be fetched or parsed."""


@dataclass
class SourceBundle:
    settings: Dict[str, Any] = field(default_factory=dict)
    wisdoms: List[Any] = field(default_factory=list)


def is_remote(locator: str) -> bool:
    return urlparse(locator).scheme in {"http", "https"}


def same_origin(locator: str, base_url: str) -> bool:
    if not base_url:
        return False
    target, base = urlparse(locator), urlparse(base_url)
    return (target.scheme, target.netloc.lower()) == (base.scheme, base.netloc.lower())


def configured_path(locator: str) -> Path:
    """Path from server configuration; may be absolute."""
    path = Path(locator)
    if path.is_absolute():
        return path
    return BASE_DIR / path


def resolve_local_path(locator: str, root: Optional[Path] = None) -> Path:
    """
    Resolve a request-supplied relative path inside ``root`` (default BASE_DIR).

    Absolute paths and paths escaping the root raise SourceError.
    """
    base = Path(root or BASE_DIR).resolve()
    path = Path(locator)
    if path.is_absolute() or path.drive:
        raise SourceError(f"{locator}: absolute paths are not allowed")
    candidate = (base / path).resolve()
    if not candidate.is_relative_to(base):
        raise SourceError(f"{locator}: path escapes {base}")
    return candidate


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8-sig") as handle:
        return json.load(handle)


def _access_headers(locator: Optional[str] = None) -> Dict[str, str]:
    """Accept header, plus the access key when talking to the configured store."""
    headers = {"Accept": "application/json"}
    if SETTINGS_ACCESS_KEY and (locator is None or same_origin(locator, SETTINGS_STORE_URL)):
        headers[ACCESS_KEY_HEADER] = SETTINGS_ACCESS_KEY
    return headers


def load_json_document(locator: str, headers: Optional[Dict[str, str]] = None, trusted: bool = False) -> Dict[str, Any]:
    """
    Load a JSON object from a URL or a local path, raising SourceError on any failure.

    Untrusted local paths must stay inside BASE_DIR; ``trusted`` locators come
    from configuration and may be absolute.
    """
    if is_remote(locator):
        try:
            resp = requests.get(locator, headers=headers, timeout=SOURCE_TIMEOUT_S)
            resp.raise_for_status()
            payload = resp.json()
        except requests.HTTPError as exc:
            status = exc.response.status_code if exc.response is not None else "unknown"
            raise SourceError(f"{locator}: http status={status}") from exc
        except ValueError as exc:
            raise SourceError(f"{locator}: response is not JSON") from exc
        except requests.RequestException as exc:
            raise SourceError(f"{locator}: {exc}") from exc
    else:
        path = configured_path(locator) if trusted else resolve_local_path(locator)
        try:
            payload = _read_json(path)
        except FileNotFoundError as exc:
            raise SourceError(f"{path}: not found") from exc
        except (OSError, ValueError) as exc:
            raise SourceError(f"{path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise SourceError(f"{locator}: expected a JSON object, got {type(payload).__name__}")
    return payload


def unwrap_record(payload: Dict[str, Any]) -> Dict[str, Any]:
    record = payload.get("record")
    if isinstance(record, dict):
        return record
    return payload


def fetch_settings_record(locator: str) -> Dict[str, Any]:
    payload = load_json_document(locator, headers=_access_headers(locator))
    record = unwrap_record(payload)
    LOG.debug("settings record %s keys=%s", locator, sorted(record))
    return record


def load_corpus_document(locator: Optional[str] = None) -> Dict[str, Any]:
    if locator:
        return load_json_document(locator)
    return load_json_document(WISDOM_CORPUS_PATH, trusted=True)


def fetch_sources(corpus_locator: Optional[str] = None, settings_locator: Optional[str] = None) -> SourceBundle:
    """
    Gather the settings record and wisdom corpus for one render.

    Non-``wisdoms`` keys of the corpus document count as settings; a record
    fetched from ``settings_locator`` overrides them key by key and may carry
    its own ``wisdoms`` list.
    """
    document = load_corpus_document(corpus_locator)
    wisdoms = document.get("wisdoms")
    settings = {k: v for k, v in document.items() if k != "wisdoms"}

    if settings_locator:
        record = fetch_settings_record(settings_locator)
        if isinstance(record.get("wisdoms"), list):
            wisdoms = record["wisdoms"]
        settings.update({k: v for k, v in record.items() if k != "wisdoms"})

    if not isinstance(wisdoms, list):
        LOG.warning("corpus %s has no wisdoms list", corpus_locator or WISDOM_CORPUS_PATH)
        wisdoms = []
    return SourceBundle(settings=settings, wisdoms=wisdoms)


def save_settings(settings: Dict[str, Any], url: Optional[str] = None) -> Optional[str]:
    """
    POST resolved settings to the remote store.

    Returns a locator usable as the ``data`` request parameter, or None when
    the store is not configured or the write failed. Failures are only logged.
    """
    target = (url or SETTINGS_STORE_URL).strip()
    if not target:
        LOG.info("settings save skipped: SETTINGS_STORE_URL not configured")
        return None

    headers = _access_headers()
    headers["Content-Type"] = "application/json"
    try:
        resp = requests.post(target, headers=headers, json=settings, timeout=SOURCE_TIMEOUT_S)
        resp.raise_for_status()
        data = resp.json() if resp.content else {}
    except requests.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else "unknown"
        body = exc.response.text[:200] if exc.response is not None else ""
        LOG.warning("settings save failed http status=%s body=%r", status, body)
        return None
    except (requests.RequestException, ValueError) as exc:
        LOG.warning("settings save failed: %s", exc)
        return None

    record_id = None
    if isinstance(data, dict):
        metadata = data.get("metadata")
        if isinstance(metadata, dict):
            record_id = metadata.get("id")
        record_id = record_id or data.get("id")
    if record_id:
        locator = f"{target.rstrip('/')}/{record_id}"
    else:
        locator = resp.headers.get("Location")
    LOG.info("settings saved locator=%s", locator)
    return locator
