"""
Step 2 — Step Generator

Generates exactly N MCQ candidates that follow the stage-1 plan.

Budget:   the prompt is trimmed (retrieval block first, then the raw text)
          until a minimum viable completion fits; otherwise the stage is
          skipped and the orchestrator returns an empty response.
Fallback: on empty 2xx content the call is retried down a declarative
          chain of (deployment, response_format) attempts; a non-2xx on
          the image-bearing structured call is retried once without image.
Cap hit:  a truncated response (finish_reason == "length") yields NO
          candidates, partial JSON is never trusted.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from decoder.board_profiles import board_guidance
from decoder.budget import StageBudget
from decoder.context import RequestContext
from decoder.errors import EmptyContentError, ProviderError, ProviderTimeout
from decoder.gpt_client import ChatResult, system_message, user_message
from decoder.problem_parser import compact_summary
from decoder.quality_filter import CONCEPTUAL, QUANTITATIVE
from decoder.salvage import parse_json_object, salvage_mcqs
from decoder.schemas import ImageInput, ProblemSummary, RetrievalSnippet

log = logging.getLogger("decoder.pipeline")

GENERATE_TIMEOUT_S = 12.0
GENERATE_MINIMUM = 400
SUMMARY_CHARS = 1800
TEXT_CHARS = 1500
RETRIEVAL_CHARS = 1200


def generate_budget(n: int) -> StageBudget:
    return StageBudget(cap=min(2600, 300 + 320 * n), minimum=GENERATE_MINIMUM)


def resolve_mode(summary: ProblemSummary, text_has_digits: bool) -> str:
    """quantitative | conceptual; 'mixed' becomes conceptual when the text has no digits."""
    if summary.subject_hint == "quantitative":
        return QUANTITATIVE
    if summary.subject_hint == "conceptual":
        return CONCEPTUAL
    return QUANTITATIVE if text_has_digits else CONCEPTUAL


# ─── Prompt ────────────────────────────────────────────────────────────────────

GENERATE_PROMPT = """You are an expert exam tutor who scaffolds ONE problem into {n} multiple-choice steps.

Generate EXACTLY {n} MCQs, one per plan step, in plan order. Each MCQ moves the student one step closer to the final answer.

OUTPUT FORMAT — respond with ONLY a valid JSON object, no markdown, no explanation:
{{
  "mcqs": [
    {{
      "step": <1..{n}>,
      "question": "<specific question for this step>",
      "options": ["<option>", "<option>", "<option>", "<option>"],
      "correctAnswer": <0-3>,
      "hint": "<one sentence cue, do not reveal the answer>",
      "explanation": "<why the correct option is right>",
      "calculationStep": {{"formula": "<str|null>", "substitution": "<str|null>", "result": "<str|null>"}}
    }}
  ],
  "solution": {{"finalAnswer": "<str>", "unit": "<str>", "keyFormulas": ["<formula>"]}}
}}

RULES:
1. Exactly 4 options per MCQ; exactly ONE is correct; distractors are plausible mistakes.
2. NEVER use meta options such as "State the formula", "Substitute values", "Compute result", "None of the above", "All of the above".
3. Do NOT ask the student to read back a value that the problem already states.
{mode_rules}
"""

QUANTITATIVE_RULES = """4. QUANTITATIVE: every hint or explanation names the governing relation (e.g. v = u + at, F = ma) and shows the substitution with numbers and units.
5. Numeric options share the same unit and differ by realistic slips (sign, unit conversion, wrong relation)."""

CONCEPTUAL_RULES = """4. CONCEPTUAL: each MCQ tests exactly ONE atomic fact. Never ask for "both", "two" or "multiple" facts in one question.
5. Options are short noun phrases of similar length."""


def format_snippets(snippets: List[RetrievalSnippet], limit: int = RETRIEVAL_CHARS) -> str:
    lines = []
    for i, s in enumerate(snippets, start=1):
        source = " / ".join(p for p in (s.name, s.subject, s.syllabus) if p)
        lines.append(f"[{i}] {source}\n{s.text}" if source else f"[{i}] {s.text}")
    return "\n\n".join(lines)[:limit]


@dataclass
class GenerationInput:
    text: str
    summary: ProblemSummary
    n: int
    mode: str
    header: str = ""
    syllabus: str = ""
    level: str = ""
    images: List[ImageInput] = field(default_factory=list)
    snippets: List[RetrievalSnippet] = field(default_factory=list)


def build_messages(
    gen: GenerationInput,
    *,
    text_chars: int = TEXT_CHARS,
    retrieval_chars: int = RETRIEVAL_CHARS,
    with_images: bool = True,
) -> List[Dict[str, Any]]:
    texts = []
    if gen.header:
        texts.append(gen.header)
    texts.append(board_guidance(gen.syllabus, gen.level, gen.n))
    texts.append(f"Problem summary:\n{compact_summary(gen.summary, SUMMARY_CHARS)}")
    if gen.text and text_chars > 0:
        texts.append(f"Original text (trimmed):\n{gen.text[:text_chars]}")
    if gen.snippets and retrieval_chars > 0:
        texts.append(
            "Reference material (ground facts in it; do not copy verbatim):\n"
            + format_snippets(gen.snippets, retrieval_chars)
        )
    rules = QUANTITATIVE_RULES if gen.mode == QUANTITATIVE else CONCEPTUAL_RULES
    texts.append(GENERATE_PROMPT.format(n=gen.n, mode_rules=rules))
    return [
        system_message("You write exam-quality scaffolded MCQs. Output only valid JSON."),
        user_message(texts, gen.images[:1] if with_images else []),
    ]


# (text_chars, retrieval_chars), tried in order until the budget fits.
TRIM_LEVELS = [
    (TEXT_CHARS, RETRIEVAL_CHARS),
    (TEXT_CHARS, 400),
    (TEXT_CHARS, 0),
    (600, 0),
    (200, 0),
]


def fit_messages(ctx: RequestContext, gen: GenerationInput) -> Optional[Dict[str, Any]]:
    """Least-trimmed prompt whose completion ceiling meets the minimum, or None."""
    stage = generate_budget(gen.n)
    for text_chars, retrieval_chars in TRIM_LEVELS:
        messages = build_messages(gen, text_chars=text_chars, retrieval_chars=retrieval_chars)
        if ctx.allocate(messages, stage) is not None:
            if (text_chars, retrieval_chars) != TRIM_LEVELS[0]:
                log.info(f"[GENERATE] trimmed prompt to text={text_chars}, retrieval={retrieval_chars}")
            return {"text_chars": text_chars, "retrieval_chars": retrieval_chars}
    return None


# ─── Fallback chain ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Attempt:
    deployment: Optional[str]
    response_format: str


def attempt_chain(primary: str, fallback: Optional[str]) -> List[Attempt]:
    """Ordered attempts; the loop stops at the first non-empty content."""
    chain = [Attempt(primary, "json_object"), Attempt(primary, "text")]
    if fallback:
        chain += [Attempt(fallback, "json_object"), Attempt(fallback, "text")]
    return chain


@dataclass
class GenerationOutcome:
    candidates: List[Dict[str, Any]] = field(default_factory=list)
    solution: Dict[str, Any] = field(default_factory=dict)
    hit_cap: bool = False
    skipped: bool = False
    salvaged: bool = False
    deployment: str = ""


def _mcq_list(data: Dict[str, Any]) -> Optional[List[Any]]:
    for key in ("mcqs", "questions", "items", "steps"):
        if isinstance(data.get(key), list):
            return data[key]
    return None


def interpret_content(result: ChatResult) -> GenerationOutcome:
    """Turn one non-empty generation response into candidates."""
    outcome = GenerationOutcome(deployment=result.deployment)
    if result.hit_cap:
        log.warning("[GENERATE] hit token cap; discarding all candidates")
        outcome.hit_cap = True
        return outcome

    parsed = parse_json_object(result.content)
    if parsed.ok:
        mcqs = _mcq_list(parsed.value)
        solution = parsed.value.get("solution")
        outcome.solution = solution if isinstance(solution, dict) else {}
        if mcqs is not None:
            outcome.candidates = [m for m in mcqs if isinstance(m, dict)]
            return outcome

    log.warning(f"[GENERATE] malformed output ({parsed.error or 'no mcq list'}); salvaging")
    outcome.candidates = salvage_mcqs(result.content)
    outcome.salvaged = True
    return outcome


async def generate_steps(ctx: RequestContext, gen: GenerationInput) -> GenerationOutcome:
    """
    Stage 2: N MCQ candidates (pre-filter).

    Returns:
        GenerationOutcome; ``skipped`` when the budget cannot cover a
        minimum viable completion even after trimming.

    Raises:
        ProviderError:     non-2xx that the image-less retry did not fix
        EmptyContentError: every attempt in the chain came back empty
    """
    trim = fit_messages(ctx, gen)
    if trim is None:
        log.info("[GENERATE] skipped: budget cannot cover a minimum completion")
        return GenerationOutcome(skipped=True)

    stage = generate_budget(gen.n)
    with_images = bool(gen.images)
    chain = attempt_chain(ctx.client.primary_deployment, ctx.client.fallback_deployment)
    tried: List[str] = []

    async def run(attempt: Attempt, images_on: bool) -> Optional[ChatResult]:
        label = f"{attempt.deployment}:{attempt.response_format}"
        tried.append(label if images_on or not gen.images else f"{label}:no-image")
        return await ctx.call(
            "generate",
            build_messages(gen, with_images=images_on, **trim),
            stage,
            timeout=GENERATE_TIMEOUT_S,
            response_format=attempt.response_format,
            temperature=0.3,
            deployment=attempt.deployment,
        )

    for index, attempt in enumerate(chain):
        try:
            try:
                result = await run(attempt, with_images)
            except ProviderError as e:
                if isinstance(e, ProviderTimeout) or not (index == 0 and with_images):
                    raise
                log.warning(f"[GENERATE] {e.status_code} with image; retrying without image")
                with_images = False
                result = await run(attempt, False)
        except ProviderTimeout as e:
            log.warning(f"[GENERATE] {tried[-1]} timed out: {e.message}")
            continue
        except ProviderError as e:
            if index == 0:
                raise
            log.warning(f"[GENERATE] {tried[-1]} failed ({e.status_code}); continuing chain")
            continue

        if result is None:
            log.info("[GENERATE] budget exhausted mid-chain")
            break
        if not result.empty:
            log.info(f"[GENERATE] content from {tried[-1]} ({len(result.content)} chars, finish={result.finish_reason})")
            return interpret_content(result)
        log.warning(f"[GENERATE] empty content from {tried[-1]}")

    raise EmptyContentError(
        "Empty response from Azure",
        details={"attempts": tried, "budget": ctx.budget.snapshot()},
    )
