"""
Decode pipeline orchestrator.

  0. sanitize            (400 on empty / multi-question input)
  1. parse  ∥ retrieval  (both best-effort)
  2. generate            (fallback chain; skipped → empty 200 response)
     filter → replace    (one top-up call when short)
     normalize           (exactly-4 options, answer 0..3, at most N items)
  3. synth  ∥ 4. pitfalls
  5. finalize            (only when finalAnswer is still empty)

All state (budget, usage) is request-local and owned by one RequestContext.
"""

import asyncio
import logging
import time
from typing import Any, List, Optional

import httpx

from decoder.budget import BudgetManager
from decoder.config import Settings
from decoder.context import RequestContext
from decoder.final_answer import format_final_answer, resolve_final_answer
from decoder.normalizer import clean_text, normalize_mcqs
from decoder.problem_parser import parse_problem
from decoder.quality_filter import filter_candidates
from decoder.replacement import request_replacements, should_replace
from decoder.retrieval import RETRIEVAL_TIMEOUT_S, fetch_snippets
from decoder.sanitizer import SanitizedInput, sanitize_request
from decoder.schemas import (
    CalculationStep,
    DecodeMeta,
    DecodeRequest,
    DecodeResponse,
    MCQItem,
    RetrievalMeta,
    RetrievalSnippet,
    SolutionSummary,
)
from decoder.solution import EnrichmentInput, enrich_solution, mcq_formulas, merge_key_formulas
from decoder.step_generator import GenerationInput, generate_steps, resolve_mode

log = logging.getLogger("decoder.pipeline")


# ─── Retrieval ─────────────────────────────────────────────────────────────────

async def _retrieve(
    settings: Settings,
    clean: SanitizedInput,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> List[RetrievalSnippet]:
    try:
        return await asyncio.wait_for(
            fetch_snippets(
                settings, clean.text, clean.subject, clean.syllabus, clean.level,
                transport=transport,
            ),
            timeout=RETRIEVAL_TIMEOUT_S + 0.5,
        )
    except asyncio.TimeoutError:
        log.warning("[RETRIEVAL] timed out")
        return []


def retrieval_meta(snippets: List[RetrievalSnippet]) -> RetrievalMeta:
    return RetrievalMeta(
        used=bool(snippets),
        count=len(snippets),
        docs=[{"name": s.name, "subject": s.subject, "syllabus": s.syllabus} for s in snippets],
    )


def _strings(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value] if isinstance(value, list) else []


# ─── Main entry point ──────────────────────────────────────────────────────────

async def run_decode(
    request: DecodeRequest,
    client: Any,
    settings: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> DecodeResponse:
    """
    Full decode of one problem into at most N MCQs + a solution summary.

    Raises:
        ValidationError:   empty / multi-question input
        ProviderError:     generation failed outright
        EmptyContentError: generation returned empty content on every attempt
    """
    t0 = time.perf_counter()
    clean = sanitize_request(request)
    n = clean.marks
    ctx = RequestContext(client, BudgetManager(clean.budget))
    log.info(
        f"[DECODE] marks={n} budget={clean.budget or 'unlimited'} "
        f"images={len(clean.images)} chars={len(clean.text)}"
    )

    # ── Stage 1 ∥ retrieval ──────────────────────────────────────────────────
    summary, snippets = await asyncio.gather(
        parse_problem(ctx, clean.text, clean.images, n),
        _retrieve(settings, clean, transport),
    )
    mode = resolve_mode(summary, clean.has_digits)
    retrieval = retrieval_meta(snippets)

    # ── Stage 2 ──────────────────────────────────────────────────────────────
    outcome = await generate_steps(ctx, GenerationInput(
        text=clean.text,
        summary=summary,
        n=n,
        mode=mode,
        header=clean.header,
        syllabus=clean.syllabus,
        level=clean.level,
        images=clean.images,
        snippets=snippets,
    ))
    if outcome.skipped:
        log.info("[DECODE] generation skipped for budget; returning empty response")
        return DecodeResponse(
            usage=ctx.usage.report(),
            meta=DecodeMeta(**ctx.budget.snapshot(), retrieval=retrieval),
        )

    kept, _ = filter_candidates(outcome.candidates, mode)
    if should_replace(ctx, len(kept), n, outcome.hit_cap):
        kept += await request_replacements(
            ctx,
            text=clean.text,
            summary=summary,
            existing=kept,
            shortfall=n - len(kept),
            mode=mode,
            header=clean.header,
        )
    mcqs = normalize_mcqs(kept, n)

    # ── Stages 3 ∥ 4 ─────────────────────────────────────────────────────────
    generated = outcome.solution
    key_formulas = merge_key_formulas(
        _strings(generated.get("keyFormulas")), mcq_formulas(mcqs), summary.relations
    )
    base = SolutionSummary(
        final_answer=format_final_answer(generated.get("finalAnswer")),
        unit=clean_text(generated.get("unit")),
        key_formulas=key_formulas,
    )
    solution = await enrich_solution(ctx, EnrichmentInput(
        mcqs=mcqs,
        base=base,
        mode=mode,
        header=clean.header,
        text=clean.text,
        summary=summary,
        relations=summary.relations or key_formulas,
    ))

    # ── Stage 5 ──────────────────────────────────────────────────────────────
    if not solution.final_answer:
        answer, unit = await resolve_final_answer(ctx, clean.text, mcqs, clean.header)
        if answer:
            solution = solution.model_copy(update={"final_answer": answer, "unit": unit or solution.unit})

    log.info(
        f"[DECODE] done in {time.perf_counter() - t0:.2f}s, mcqs={len(mcqs)}/{n} "
        f"mode={mode} hit_cap={outcome.hit_cap} remaining={ctx.budget.snapshot()['remaining_budget']}"
    )
    return DecodeResponse(
        mcqs=mcqs,
        solution=solution,
        usage=ctx.usage.report(),
        meta=DecodeMeta(
            hit_generate_cap=outcome.hit_cap,
            **ctx.budget.snapshot(),
            retrieval=retrieval,
        ),
    )


# ─── Debug bypass ──────────────────────────────────────────────────────────────

def debug_response(n: int = 1) -> DecodeResponse:
    """Canned response used when DECODER_DEBUG_BYPASS is set; no provider call."""
    mcq = MCQItem(
        id="mcq-1",
        question="A car accelerates uniformly from 2 m/s to 10 m/s in 4 s. Which relation links these quantities?",
        options=["v = u + at", "s = ut + 0.5at^2", "v^2 = u^2 + 2as", "F = ma"],
        correct_answer=0,
        hint="Hint: You know u, v and t; pick the relation that uses exactly those.",
        explanation="v = u + at links initial speed, final speed, acceleration and time.",
        step=1,
        calculation_step=CalculationStep(formula="v = u + at", substitution="10 = 2 + a(4)", result="a = 2 m/s^2"),
    )
    solution = SolutionSummary(
        final_answer="2",
        unit="m/s^2",
        working_steps=["Write down v = u + at", "Substitute 10 = 2 + 4a", "Solve for a = 2 m/s^2"],
        key_formulas=["v=u+at"],
        key_points=["Uniform acceleration", "SI units throughout"],
    )
    log.info(f"[DECODE] debug bypass (marks={n})")
    return DecodeResponse(mcqs=[mcq], solution=solution, meta=DecodeMeta(debug=True))
