"""
Steps 3 + 4 — Solution Synthesizer / Pitfall Generator

Runs two small enrichment calls concurrently once the MCQ list is final:

  synth     →  workingSteps (3–6 imperative actions), keyPoints (2–4 short
               noun phrases), applications (≤4)
  pitfalls  →  up to 5 common mistakes

Budget:  both allocations are reserved one after the other before the
         calls are launched, so the second one sees the first one's hold.
Failure: a skipped, failed or unparseable call leaves its fields to the
         deterministic fallbacks below; enrichment is never fatal.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from decoder.budget import StageBudget
from decoder.context import RequestContext, Reservation
from decoder.errors import ProviderError
from decoder.gpt_client import system_message, user_message
from decoder.normalizer import clean_text, normalize_mcqs
from decoder.quality_filter import CONCEPTUAL, QUANTITATIVE
from decoder.salvage import parse_json_object
from decoder.schemas import MCQItem, ProblemSummary, RefineRequest, RefineResponse, SolutionSummary

log = logging.getLogger("decoder.pipeline")

SYNTH_BUDGET = StageBudget(cap=320, minimum=120)
PITFALLS_BUDGET = StageBudget(cap=220, minimum=80)
SYNTH_TIMEOUT_S = 4.5
PITFALLS_TIMEOUT_S = 3.5
CONTEXT_CHARS = 3500

MIN_STEPS = 3
MAX_STEPS = 6
MAX_KEY_POINTS = 4
MAX_APPLICATIONS = 4
MAX_PITFALLS = 5
MAX_KEY_FORMULAS = 3
KEY_POINT_WORDS = 10


# ─── Post-processing ───────────────────────────────────────────────────────────

GENERIC = re.compile(
    r"proceed step[- ]by[- ]step"
    r"|use the correct (?:formula|equation)"
    r"|substitute (?:the )?numbers"
    r"|read the question carefully"
    r"|show (?:all )?(?:your )?working"
    r"|check your (?:answer|work)",
    re.IGNORECASE,
)

STEP_LIKE = re.compile(
    r"^\s*(?:substitute|compute|calculate|use|apply|identify|recogni[sz]e|derive|select|"
    r"rearrange|evaluate|find|write|determine|solve)\b",
    re.IGNORECASE,
)

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+(?=[A-Z(])")
_RELATION = re.compile(r"\b[A-Za-z]\w*\s*=\s*[A-Za-z(]")
_SUBSTITUTION = re.compile(r"=\s*[-+(]?\s*\d")


def _strings(value: Any) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [clean_text(v) for v in value if clean_text(v)]


def _dedupe(items: Iterable[str]) -> List[str]:
    seen = set()
    out = []
    for item in items:
        key = item.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out


def clean_steps(raw: Any) -> List[str]:
    steps = [s[:200] for s in _strings(raw) if not GENERIC.search(s)]
    return _dedupe(steps)[:MAX_STEPS]


def simplify_point(text: str) -> str:
    """Trim trailing punctuation and cap at KEY_POINT_WORDS words."""
    words = clean_text(text).rstrip(".;:").split()
    return " ".join(words[:KEY_POINT_WORDS])


def clean_key_points(raw: Any, steps: List[str]) -> List[str]:
    """Short, non-generic points that never repeat a working step (case-insensitive)."""
    taken = {s.lower() for s in steps}
    points = []
    for point in _strings(raw):
        short = simplify_point(point)
        if not short or GENERIC.search(short) or short.lower() in taken:
            continue
        points.append(short)
    return _dedupe(points)[:MAX_KEY_POINTS]


def clean_applications(raw: Any) -> List[str]:
    apps = [a[:160] for a in _strings(raw) if not STEP_LIKE.search(a) and not GENERIC.search(a)]
    return _dedupe(apps)[:MAX_APPLICATIONS]


def clean_pitfalls(raw: Any) -> List[str]:
    pits = [p[:200] for p in _strings(raw) if not STEP_LIKE.search(p) and not GENERIC.search(p)]
    return _dedupe(pits)[:MAX_PITFALLS]


# ─── Deterministic fallbacks ───────────────────────────────────────────────────

GOAL_PHRASES = {
    "identify_knowns": "List the known quantities with their units",
    "select_relation": "Select the relation that links the knowns to the unknown",
    "rearrange": "Rearrange the relation to make the unknown the subject",
    "substitute": "Substitute the known values with units",
    "evaluate": "Evaluate the expression to get the result",
    "check_units": "Check the units and round to sensible significant figures",
    "recall_fact": "Recall the key fact the question depends on",
    "interpret": "Interpret the result in the context of the question",
}


def steps_from_plan(summary: Optional[ProblemSummary]) -> List[str]:
    if summary is None:
        return []
    steps = []
    for entry in summary.plan:
        phrase = GOAL_PHRASES.get(entry.goal)
        if entry.goal == "select_relation" and summary.relations:
            phrase = f"Select the relation {summary.relations[0]}"
        if phrase:
            steps.append(phrase)
    return _dedupe(steps)[:MAX_STEPS]


def split_sentences(text: str) -> List[str]:
    """Sentence split that leaves decimals such as 2.5 intact."""
    return [s.strip() for s in _SENTENCE_SPLIT.split(clean_text(text)) if s.strip()]


def steps_from_mcqs(mcqs: List[MCQItem]) -> List[str]:
    steps = []
    for mcq in mcqs:
        sentences = split_sentences(mcq.explanation) or split_sentences(mcq.question)
        if sentences:
            steps.append(sentences[0].rstrip(".")[:160])
    return _dedupe(s for s in steps if not GENERIC.search(s))[:MAX_STEPS]


QUANTITATIVE_CLOSING = [
    GOAL_PHRASES["evaluate"],
    GOAL_PHRASES["check_units"],
    GOAL_PHRASES["interpret"],
]
CONCEPTUAL_CLOSING = [
    GOAL_PHRASES["recall_fact"],
    "Eliminate the options that contradict that fact",
    GOAL_PHRASES["interpret"],
]


def top_up_steps(steps: List[str], *sources: List[str]) -> List[str]:
    """Extend ``steps`` from each source in turn until it holds MIN_STEPS entries."""
    out = _dedupe(steps)
    for source in sources:
        for step in source:
            if len(out) >= MIN_STEPS:
                return out[:MAX_STEPS]
            if step.lower() not in {s.lower() for s in out}:
                out.append(step)
    return out[:MAX_STEPS]


def ensure_quantitative_steps(
    steps: List[str],
    relations: List[str],
    substitutions: List[str],
) -> List[str]:
    """Guarantee one step naming the governing relation and one numeric substitution."""
    out = list(steps)
    if relations and not any(_RELATION.search(s) for s in out):
        out.insert(0, f"Write down the governing relation {relations[0]}")
    if substitutions and not any(_SUBSTITUTION.search(s) for s in out):
        out.insert(min(2, len(out)), f"Substitute the known values: {substitutions[0]}")
    return out[:MAX_STEPS]


def compact_formula(formula: str) -> str:
    return re.sub(r"\s+", "", formula or "")


def merge_key_formulas(*sources: Iterable[str]) -> List[str]:
    """Whitespace-free, de-duplicated formulas (must contain '='), at most 3."""
    merged = []
    for source in sources:
        for formula in source or []:
            compact = compact_formula(str(formula or ""))
            if "=" in compact and len(compact) <= 80 and compact not in merged:
                merged.append(compact)
    return merged[:MAX_KEY_FORMULAS]


def mcq_formulas(mcqs: List[MCQItem]) -> List[str]:
    return [m.calculation_step.formula for m in mcqs if m.calculation_step and m.calculation_step.formula]


def mcq_substitutions(mcqs: List[MCQItem]) -> List[str]:
    return [
        m.calculation_step.substitution for m in mcqs
        if m.calculation_step and m.calculation_step.substitution
    ]


# ─── Prompts ───────────────────────────────────────────────────────────────────

SYNTH_PROMPT = """Return ONLY JSON: {{"workingSteps": string[], "keyPoints": string[], "applications": string[]}}.
Rules:
- workingSteps: 3-6 ordered, imperative, concrete actions.{quantitative}
- keyPoints: 2-4 DISTINCT, SHORT noun phrases (<= 10 words each). No leading verbs. No overlap with workingSteps. Avoid generic advice. Prefer constants or laws (e.g. 'g = 9.81 m/s^2 near Earth').
- applications: up to 4 real-world situations where this idea is used, as noun phrases."""

SYNTH_QUANTITATIVE = (
    " Include (1) the governing relation (e.g. F = ma, v = u + at) and"
    " (2) one explicit numeric substitution with units."
)

PITFALLS_PROMPT = """Return ONLY JSON: {"pitfalls": string[]}.
Rules:
- 3-5 common mistakes SPECIFIC to the formulas and steps above.
- Each item <= 14 words and starts with a noun phrase (no verbs like 'use' or 'apply').
- No duplicates, no generic advice."""


def solution_context(mcqs: List[MCQItem], base: SolutionSummary, text: str = "") -> str:
    compact_mcqs = [
        {
            "step": m.step,
            "question": m.question[:400],
            "explanation": m.explanation[:400],
            "correct": m.options[m.correct_answer][:120],
            "formula": m.calculation_step.formula if m.calculation_step else None,
            "substitution": m.calculation_step.substitution if m.calculation_step else None,
            "result": m.calculation_step.result if m.calculation_step else None,
        }
        for m in mcqs[:10]
    ]
    payload = {
        "problem": (text or "")[:800],
        "finalAnswer": base.final_answer,
        "formulas": base.key_formulas,
        "steps": base.working_steps,
        "mcqs": compact_mcqs,
    }
    return json.dumps(payload, ensure_ascii=False)[:CONTEXT_CHARS]


# ─── Stages ────────────────────────────────────────────────────────────────────

@dataclass
class EnrichmentInput:
    mcqs: List[MCQItem]
    base: SolutionSummary
    mode: str = CONCEPTUAL
    header: str = ""
    text: str = ""
    summary: Optional[ProblemSummary] = None
    relations: List[str] = field(default_factory=list)


async def _run_stage(
    ctx: RequestContext,
    name: str,
    messages: List[Dict[str, Any]],
    reservation: Optional[Reservation],
    stage: StageBudget,
    timeout: float,
) -> Optional[Dict[str, Any]]:
    tag = f"[{name.upper()}]"
    if reservation is None:
        log.info(f"{tag} skipped: budget exhausted")
        return None
    try:
        result = await ctx.call(name, messages, stage, timeout=timeout, reservation=reservation)
    except ProviderError as e:
        log.warning(f"{tag} provider failure ({e.status_code}): {e.message}")
        return None
    if result is None or result.empty:
        log.warning(f"{tag} no content")
        return None
    parsed = parse_json_object(result.content)
    if not parsed.ok:
        log.warning(f"{tag} {parsed.error}; raw: {result.content[:300]}")
        return None
    return parsed.value


async def enrich_solution(ctx: RequestContext, inp: EnrichmentInput) -> SolutionSummary:
    """
    Stages 3 + 4 run concurrently; returns ``inp.base`` with workingSteps,
    keyPoints, applications and pitfalls filled in.
    """
    context = solution_context(inp.mcqs, inp.base, inp.text)
    quantitative = SYNTH_QUANTITATIVE if inp.mode == QUANTITATIVE else ""
    synth_messages = [
        system_message("You summarise worked solutions for students. Output only valid JSON."),
        user_message([inp.header, f"Context:\n{context}", SYNTH_PROMPT.format(quantitative=quantitative)]),
    ]
    pitfall_messages = [
        system_message("You list common student mistakes. Output only valid JSON."),
        user_message([inp.header, f"Context:\n{context}", PITFALLS_PROMPT]),
    ]

    # Serial reservations, concurrent calls.
    synth_hold = ctx.reserve(synth_messages, SYNTH_BUDGET)
    pitfall_hold = ctx.reserve(pitfall_messages, PITFALLS_BUDGET)

    results = await asyncio.gather(
        _run_stage(ctx, "synth", synth_messages, synth_hold, SYNTH_BUDGET, SYNTH_TIMEOUT_S),
        _run_stage(ctx, "pitfalls", pitfall_messages, pitfall_hold, PITFALLS_BUDGET, PITFALLS_TIMEOUT_S),
        return_exceptions=True,
    )
    synth = _settled("synth", results[0]) or {}
    pitfalls = _settled("pitfalls", results[1]) or {}

    chain = [
        clean_steps(synth.get("workingSteps")),
        clean_steps(inp.base.working_steps),
        steps_from_plan(inp.summary),
        steps_from_mcqs(inp.mcqs),
    ]
    closing = QUANTITATIVE_CLOSING if inp.mode == QUANTITATIVE else CONCEPTUAL_CLOSING
    steps = next((source for source in chain if source), [])
    steps = top_up_steps(steps, *chain, closing)
    if inp.mode == QUANTITATIVE:
        steps = ensure_quantitative_steps(
            steps,
            inp.relations or inp.base.key_formulas or mcq_formulas(inp.mcqs),
            mcq_substitutions(inp.mcqs),
        )

    key_points = clean_key_points(synth.get("keyPoints") or inp.base.key_points, steps)
    applications = clean_applications(synth.get("applications") or inp.base.applications)
    pitfall_list = clean_pitfalls(pitfalls.get("pitfalls")) or clean_pitfalls(inp.base.pitfalls)

    log.info(
        f"[SYNTH] steps={len(steps)} keyPoints={len(key_points)} "
        f"applications={len(applications)} pitfalls={len(pitfall_list)}"
    )
    return inp.base.model_copy(update={
        "working_steps": steps,
        "key_points": key_points,
        "applications": applications,
        "pitfalls": pitfall_list,
    })


def _settled(name: str, result: Any) -> Optional[Dict[str, Any]]:
    if isinstance(result, BaseException):
        log.warning(f"[{name.upper()}] failed: {result!r}")
        return None
    return result


# ─── Standalone refine (/api/ai-refine) ────────────────────────────────────────

def base_solution_from(raw: Dict[str, Any]) -> SolutionSummary:
    """Caller-supplied solution block, tolerant of missing or mistyped fields."""
    raw = raw if isinstance(raw, dict) else {}
    return SolutionSummary(
        final_answer=clean_text(raw.get("finalAnswer")),
        unit=clean_text(raw.get("unit")),
        working_steps=_strings(raw.get("workingSteps"))[:8],
        key_formulas=_strings(raw.get("keyFormulas"))[:6],
        key_points=_strings(raw.get("keyPoints"))[:6],
        applications=_strings(raw.get("applications"))[:6],
        pitfalls=_strings(raw.get("pitfalls"))[:6],
    )


async def refine_solution(ctx: RequestContext, request: RefineRequest, header: str = "") -> RefineResponse:
    mcqs = normalize_mcqs(request.mcqs, limit=10)
    base = base_solution_from(request.solution)
    text = request.original_text or ""
    formulas = merge_key_formulas(base.key_formulas, mcq_formulas(mcqs))
    mode = QUANTITATIVE if formulas or re.search(r"\d", text) else CONCEPTUAL

    solution = await enrich_solution(ctx, EnrichmentInput(
        mcqs=mcqs,
        base=base,
        mode=mode,
        header=header,
        text=text,
        relations=formulas,
    ))
    return RefineResponse(
        working_steps=solution.working_steps,
        key_points=solution.key_points,
        pitfalls=solution.pitfalls,
        usage=ctx.usage.report(),
    )
