"""
Decoder Router — /api

Endpoints:
  POST /api/ai-decode        — problem → N scaffolded MCQs + solution summary
  POST /api/ai-refine        — re-run solution synthesis + pitfalls on caller data
  POST /api/ai-refine-hints  — rewrite MCQ hints with discriminative cues
  POST /api/augment          — clean OCR text of a problem into one statement
  POST /api/extract          — OCR an image or PDF via Azure Document Intelligence

Errors are answered as {error, code?, details?} with the DecoderError's
status; anything unexpected becomes 500 {error: "Server error", details}.
"""

import logging
from typing import Any, Callable

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from decoder.augment import augment_text
from decoder.config import Settings, load_settings
from decoder.context import RequestContext
from decoder.errors import DecoderError
from decoder.extract import extract_text
from decoder.gpt_client import get_chat_client
from decoder.hints import refine_hints
from decoder.pipeline import debug_response, run_decode
from decoder.sanitizer import build_header, clamp_marks
from decoder.schemas import (
    AugmentRequest,
    AugmentResponse,
    DecodeRequest,
    DecodeResponse,
    ExtractRequest,
    ExtractResponse,
    HintRefineRequest,
    HintRefineResponse,
    RefineRequest,
    RefineResponse,
)
from decoder.solution import refine_solution

router = APIRouter(prefix="/api", tags=["decoder"])

# Use Python's standard logger so output appears in the uvicorn console
log = logging.getLogger("decoder.pipeline")
logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(levelname)s  %(message)s")


# ─── Dependencies ──────────────────────────────────────────────────────────────

def get_settings() -> Settings:
    return load_settings()


def get_client_factory() -> Callable[[Settings], Any]:
    """Resolved lazily inside the handlers so the debug bypass needs no provider config."""
    return get_chat_client


def error_response(e: Exception, tag: str) -> JSONResponse:
    if isinstance(e, DecoderError):
        log.warning(f"[{tag}] {e.status_code} {e.message}")
        return JSONResponse(status_code=e.status_code, content=e.to_payload())
    log.exception(f"[{tag}] Unexpected error: {e}")
    return JSONResponse(status_code=500, content={"error": "Server error", "details": str(e)})


# ─── Decode ────────────────────────────────────────────────────────────────────

@router.post("/ai-decode", response_model=DecodeResponse)
async def ai_decode(
    body: DecodeRequest,
    settings: Settings = Depends(get_settings),
    client_factory: Callable[[Settings], Any] = Depends(get_client_factory),
):
    """
    **Decode one exam problem into scaffolded MCQ steps.**

    - `marks` (1–8, default 3) sets the number of steps
    - `maxTokens` caps the total provider tokens for the whole request
      (omitted or 0 = unlimited); a tight budget degrades the output
      instead of failing it
    - text that bundles several questions is rejected with
      `code: "MULTIPLE_QUESTIONS"` unless an image is attached
    """
    if settings.debug_bypass:
        return debug_response(clamp_marks(body.marks))
    try:
        client = client_factory(settings)
        return await run_decode(body, client, settings)
    except Exception as e:
        return error_response(e, "DECODE")


# ─── Refine ────────────────────────────────────────────────────────────────────

@router.post("/ai-refine", response_model=RefineResponse)
async def ai_refine(
    body: RefineRequest,
    settings: Settings = Depends(get_settings),
    client_factory: Callable[[Settings], Any] = Depends(get_client_factory),
):
    """Working steps, key points and pitfalls for an existing MCQ set."""
    try:
        ctx = RequestContext(client_factory(settings))
        header = build_header(body.subject or "", body.syllabus or "", body.level or "")
        return await refine_solution(ctx, body, header=header)
    except Exception as e:
        return error_response(e, "REFINE")


@router.post("/ai-refine-hints", response_model=HintRefineResponse)
async def ai_refine_hints(
    body: HintRefineRequest,
    settings: Settings = Depends(get_settings),
    client_factory: Callable[[Settings], Any] = Depends(get_client_factory),
):
    try:
        return await refine_hints(client_factory(settings), body)
    except Exception as e:
        return error_response(e, "HINTS")


# ─── Augment ───────────────────────────────────────────────────────────────────

@router.post("/augment", response_model=AugmentResponse)
async def augment(
    body: AugmentRequest,
    settings: Settings = Depends(get_settings),
    client_factory: Callable[[Settings], Any] = Depends(get_client_factory),
):
    try:
        return await augment_text(client_factory(settings), body)
    except Exception as e:
        return error_response(e, "AUGMENT")


# ─── Extract ───────────────────────────────────────────────────────────────────

@router.post("/extract", response_model=ExtractResponse, response_model_exclude_none=True)
async def extract(
    body: ExtractRequest,
    settings: Settings = Depends(get_settings),
):
    """
    **OCR an uploaded image or PDF.**

    - `fileBase64`: raw base64, no `data:` prefix
    - `mimeType`: e.g. `image/png`, `application/pdf`

    Repeated uploads of the same file within 5 minutes are answered from
    cache with `cached: true`.
    """
    try:
        return await extract_text(settings, body)
    except Exception as e:
        return error_response(e, "EXTRACT")
