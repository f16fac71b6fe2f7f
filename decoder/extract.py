"""
Document Text Extractor (/api/extract)

OCR of an uploaded image or PDF through Azure AI Document Intelligence
(prebuilt-read). Submission walks three URL shapes, newest API first:

  1. /documentintelligence/...:analyze   (2024-07-31)
  2. /formrecognizer/...:analyze         (2023-10-31)
  3. /formrecognizer/v2.1/layout/analyze (legacy)

then polls the returned Operation-Location until the analysis settles.
Results are cached in memory for 5 minutes, keyed by SHA-256 of mime + payload.
"""

import asyncio
import base64
import binascii
import hashlib
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from decoder.config import Settings
from decoder.errors import (
    ConfigurationError,
    DecoderError,
    ProviderError,
    ProviderTimeout,
    ValidationError,
)
from decoder.schemas import ExtractRequest, ExtractResponse

log = logging.getLogger("decoder.pipeline")

# ─── Constants ────────────────────────────────────────────────────────────────

DOCINTEL_API_VERSION = "2024-07-31"
FORMRECOGNIZER_API_VERSION = "2023-10-31"
REQUEST_TIMEOUT_S = 30.0
POLL_INTERVAL_S = 0.8
MAX_WAIT_S = 60.0
CACHE_TTL_S = 300.0


# ─── Cache ────────────────────────────────────────────────────────────────────

class ExtractCache:
    """Per-process text cache with a fixed time-to-live."""

    def __init__(self, ttl: float = CACHE_TTL_S):
        self.ttl = ttl
        self._entries: Dict[str, Tuple[str, int, float]] = {}

    def get(self, key: str, now: Optional[float] = None) -> Optional[Tuple[str, int]]:
        now = time.monotonic() if now is None else now
        entry = self._entries.get(key)
        if entry is None:
            return None
        text, pages, stored = entry
        if now - stored >= self.ttl:
            del self._entries[key]
            return None
        return text, pages

    def put(self, key: str, text: str, pages: int, now: Optional[float] = None) -> None:
        self._entries[key] = (text, pages, time.monotonic() if now is None else now)

    def clear(self) -> None:
        self._entries.clear()


_cache = ExtractCache()


def cache_key(mime_type: str, file_base64: str) -> str:
    return hashlib.sha256(f"{mime_type}:{file_base64}".encode("utf-8")).hexdigest()


# ─── Result parsing ───────────────────────────────────────────────────────────

def lines_from_result(result: Dict[str, Any]) -> Tuple[str, int]:
    """
    Joined line text and page count from an analyze result.

    Handles both the v3+ ``analyzeResult.pages[].lines[].content`` shape and
    the v2.1 ``analyzeResult.readResults[].lines[].text`` shape.
    """
    analyze = result.get("analyzeResult") or result.get("documents") or result
    if not isinstance(analyze, dict):
        return "", 0

    lines: List[str] = []
    if isinstance(analyze.get("pages"), list):
        pages, field = analyze["pages"], "content"
    elif isinstance(analyze.get("readResults"), list):
        pages, field = analyze["readResults"], "text"
    else:
        return "", 0

    for page in pages:
        for line in (page or {}).get("lines") or []:
            if isinstance(line, dict) and line.get(field):
                lines.append(str(line[field]))
    return "\n".join(lines), len(pages)


def analyze_urls(endpoint: str) -> List[str]:
    return [
        f"{endpoint}/documentintelligence/documentModels/prebuilt-read:analyze"
        f"?api-version={DOCINTEL_API_VERSION}",
        f"{endpoint}/formrecognizer/documentModels/prebuilt-read:analyze"
        f"?api-version={FORMRECOGNIZER_API_VERSION}",
    ]


# ─── Submit / poll ────────────────────────────────────────────────────────────

async def _submit(client: httpx.AsyncClient, endpoint: str, key: str, body: bytes, mime_type: str) -> httpx.Response:
    last_error = ""
    for url in analyze_urls(endpoint):
        response = await client.post(
            url,
            headers={"Content-Type": "application/octet-stream", "Ocp-Apim-Subscription-Key": key},
            content=body,
        )
        if response.is_success:
            return response
        log.warning(f"[EXTRACT] submit {response.status_code} at {url.split('?')[0]}")
        last_error = response.text

    legacy = await client.post(
        f"{endpoint}/formrecognizer/v2.1/layout/analyze",
        headers={"Content-Type": mime_type or "application/octet-stream", "Ocp-Apim-Subscription-Key": key},
        content=body,
    )
    if legacy.is_success:
        return legacy
    raise DecoderError("analyze submit failed", status_code=404, details=legacy.text or last_error)


async def _poll(
    client: httpx.AsyncClient,
    location: str,
    key: str,
    poll_interval: float,
    max_wait: float,
) -> Dict[str, Any]:
    deadline = time.monotonic() + max_wait
    while time.monotonic() < deadline:
        response = await client.get(location, headers={"Ocp-Apim-Subscription-Key": key})
        if not response.is_success:
            raise ProviderError("poll failed", status_code=response.status_code, details=response.text)
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise ProviderError("poll failed", details=response.text[:500])
        status = str(data.get("status") or data.get("operationState") or "").lower()
        if status == "succeeded":
            return data
        if status == "failed":
            raise ProviderError("analyze failed", details=data)
        await asyncio.sleep(poll_interval)
    raise ProviderTimeout("timeout waiting for analysis")


# ─── Main entry point ─────────────────────────────────────────────────────────

async def extract_text(
    settings: Settings,
    request: ExtractRequest,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    cache: Optional[ExtractCache] = None,
    poll_interval: float = POLL_INTERVAL_S,
    max_wait: float = MAX_WAIT_S,
) -> ExtractResponse:
    """
    OCR one document.

    Raises:
        ValidationError:    missing or undecodable payload / mime type
        ConfigurationError: Document Intelligence endpoint or key not set
        DecoderError:       every submit URL rejected the document (404)
        ProviderError:      poll non-2xx, analysis failed, service unreachable
        ProviderTimeout:    analysis did not settle within ``max_wait``
    """
    cache = _cache if cache is None else cache
    payload = (request.file_base64 or "").strip()
    mime_type = (request.mime_type or "").strip()
    if not payload or not mime_type:
        raise ValidationError("Missing fileBase64 or mimeType")

    key = cache_key(mime_type, payload)
    hit = cache.get(key)
    if hit is not None:
        log.info(f"[EXTRACT] cache hit {key[:12]}")
        return ExtractResponse(text=hit[0], pages=hit[1], cached=True)

    if not settings.docintel_endpoint or not settings.docintel_key:
        raise ConfigurationError("Missing AZURE_DOCINTEL_ENDPOINT or AZURE_DOCINTEL_KEY")

    try:
        body = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("Invalid base64 in fileBase64", details=str(e)) from e

    t0 = time.perf_counter()
    try:
        async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_S, transport=transport) as client:
            submitted = await _submit(client, settings.docintel_endpoint, settings.docintel_key, body, mime_type)
            location = submitted.headers.get("operation-location")
            if not location:
                raise ProviderError("Missing Operation-Location header")
            result = await _poll(client, location, settings.docintel_key, poll_interval, max_wait)
    except httpx.HTTPError as e:
        raise ProviderError("Document Intelligence unreachable", details=str(e)) from e

    text, pages = lines_from_result(result)
    cache.put(key, text, pages)
    log.info(f"[EXTRACT] {pages} page(s), {len(text)} chars in {time.perf_counter() - t0:.1f}s")
    return ExtractResponse(text=text, pages=pages)
