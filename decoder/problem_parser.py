"""
Step 1 — Problem Parser

Extracts a structured ProblemSummary (quantities, relations, targets,
constraints, subject hint and a plan of exactly N steps) from the
sanitized problem text and at most one image.

Never fatal: budget skip, provider failure or unparseable output all fall
back to a minimal summary whose plan still has N generic steps.
"""

import json
import logging
import re
from typing import Any, Dict, List

from decoder.budget import StageBudget
from decoder.context import RequestContext
from decoder.errors import ProviderError
from decoder.gpt_client import system_message, user_message
from decoder.salvage import parse_json_object
from decoder.schemas import PLAN_GOALS, ImageInput, PlanStep, ProblemSummary, Quantity

log = logging.getLogger("decoder.pipeline")

PARSE_BUDGET = StageBudget(cap=700, minimum=150)
PARSE_TIMEOUT_S = 8.0
TEXT_PREFIX_CHARS = 1800

# Default step goals, in solving order; cycled for long plans.
DEFAULT_GOALS = ("identify_knowns", "select_relation", "rearrange", "substitute", "evaluate", "check_units")


# ── Prompt ────────────────────────────────────────────────────────────────────

PARSE_PROMPT = """\
You analyse ONE exam problem and plan how a student should solve it in exactly {n} steps.

PROBLEM:
---
{text}
---

Output ONLY valid JSON with this schema:
{{
  "quantities": [{{"name": "<str>", "symbol": "<str|null>", "value": <number|str|null>, "unit": "<str|null>", "known": <bool>, "type": "numeric|symbolic"}}],
  "relations": ["<governing relation, e.g. v = u + at>"],
  "targets": ["<what must be found>"],
  "constraints": ["<assumptions / conditions>"],
  "context": "<one sentence setting>",
  "subjectHint": "quantitative|conceptual|mixed",
  "plan": [{{"step": <1..{n}>, "goal": "{goals}", "mustProduce": "number|formula|fact", "note": "<short>"}}]
}}

RULES:
1. "plan" has EXACTLY {n} entries, numbered 1..{n}, in solving order.
2. Use only quantities stated in the problem or visible in the image.
3. subjectHint = "quantitative" when the answer is numeric or algebraic, "conceptual" for fact / explanation questions.
4. Output ONLY the JSON object. No markdown.
"""


# ── Fallbacks ─────────────────────────────────────────────────────────────────

def default_plan(n: int) -> List[PlanStep]:
    plan = []
    for i in range(n):
        goal = DEFAULT_GOALS[i % len(DEFAULT_GOALS)]
        plan.append(PlanStep(step=i + 1, goal=goal, must_produce="formula" if goal == "select_relation" else "number"))
    return plan


def fallback_summary(n: int) -> ProblemSummary:
    """Minimal summary used whenever stage 1 cannot produce one."""
    return ProblemSummary(subject_hint="mixed", plan=default_plan(n))


# ── Coercion ──────────────────────────────────────────────────────────────────

_GOAL_KEYWORDS = [
    (re.compile(r"known|given|identify|list", re.I), "identify_knowns"),
    (re.compile(r"relation|formula|law|equation|select|choose", re.I), "select_relation"),
    (re.compile(r"rearrang|subject of|isolate|make .* subject", re.I), "rearrange"),
    (re.compile(r"substitut|plug", re.I), "substitute"),
    (re.compile(r"unit|check|sig|verify", re.I), "check_units"),
    (re.compile(r"recall|fact|define|state|name", re.I), "recall_fact"),
    (re.compile(r"interpret|explain|conclude|compare", re.I), "interpret"),
    (re.compile(r"evaluat|calculat|compute|solve|find|determine", re.I), "evaluate"),
]


def normalize_goal(goal: Any) -> str:
    text = str(goal or "").strip().lower().replace(" ", "_")
    if text in PLAN_GOALS:
        return text
    for pattern, mapped in _GOAL_KEYWORDS:
        if pattern.search(text.replace("_", " ")):
            return mapped
    return "evaluate"


def _str_list(value: Any, limit: int = 8) -> List[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(v).strip()[:200] for v in value if str(v or "").strip()][:limit]


def _quantities(raw: Any) -> List[Quantity]:
    out = []
    for q in raw if isinstance(raw, list) else []:
        if not isinstance(q, dict) or not str(q.get("name") or q.get("symbol") or "").strip():
            continue
        value = q.get("value")
        if not isinstance(value, (int, float, str)) or isinstance(value, bool):
            value = None
        out.append(Quantity(
            name=str(q.get("name") or q.get("symbol")).strip()[:80],
            symbol=(str(q["symbol"]).strip()[:20] or None) if q.get("symbol") else None,
            value=value,
            unit=(str(q["unit"]).strip()[:20] or None) if q.get("unit") else None,
            known=bool(q.get("known", value is not None)),
            type="symbolic" if str(q.get("type", "")).lower() == "symbolic" else "numeric",
        ))
    return out[:12]


def coerce_plan(raw: Any, n: int) -> List[PlanStep]:
    """Exactly n steps: model steps first (re-numbered), padded with defaults."""
    steps: List[PlanStep] = []
    for entry in raw if isinstance(raw, list) else []:
        if len(steps) >= n:
            break
        if isinstance(entry, str):
            entry = {"goal": entry}
        if not isinstance(entry, dict):
            continue
        goal = normalize_goal(entry.get("goal"))
        must = str(entry.get("mustProduce") or entry.get("must_produce") or "").lower()
        if must not in ("number", "formula", "fact"):
            must = "fact" if goal in ("recall_fact", "interpret") else "formula" if goal == "select_relation" else "number"
        note = str(entry.get("note") or "").strip()[:160] or None
        steps.append(PlanStep(step=len(steps) + 1, goal=goal, must_produce=must, note=note))

    defaults = default_plan(n)
    while len(steps) < n:
        filler = defaults[len(steps)]
        steps.append(PlanStep(step=len(steps) + 1, goal=filler.goal, must_produce=filler.must_produce))
    return steps


def coerce_summary(data: Dict[str, Any], n: int) -> ProblemSummary:
    hint = str(data.get("subjectHint") or data.get("subject_hint") or "mixed").lower()
    if hint not in ("quantitative", "conceptual", "mixed"):
        hint = "mixed"
    return ProblemSummary(
        quantities=_quantities(data.get("quantities")),
        relations=_str_list(data.get("relations")),
        targets=_str_list(data.get("targets")),
        constraints=_str_list(data.get("constraints")),
        context=str(data.get("context") or "").strip()[:300],
        subject_hint=hint,
        plan=coerce_plan(data.get("plan"), n),
    )


def compact_summary(summary: ProblemSummary, limit: int = 1800) -> str:
    """Size-capped JSON of the summary for downstream prompts."""
    text = json.dumps(summary.model_dump(by_alias=True, exclude_none=True), ensure_ascii=False)
    return text[:limit]


# ── Main entry point ──────────────────────────────────────────────────────────

async def parse_problem(
    ctx: RequestContext,
    text: str,
    images: List[ImageInput],
    n: int,
) -> ProblemSummary:
    """
    Stage 1: structured summary + N-step plan.

    Returns fallback_summary(n) on budget skip, provider failure, timeout
    or unparseable output.
    """
    prompt = PARSE_PROMPT.format(
        n=n,
        text=(text or "(see image)")[:TEXT_PREFIX_CHARS],
        goals="|".join(PLAN_GOALS),
    )
    messages = [
        system_message("You are a precise exam problem analyser. Output only valid JSON."),
        user_message([prompt], images[:1]),
    ]

    try:
        result = await ctx.call("parse", messages, PARSE_BUDGET, timeout=PARSE_TIMEOUT_S, temperature=0.1)
    except ProviderError as e:
        log.warning(f"[PARSE] provider failure ({e.status_code}): {e.message}")
        return fallback_summary(n)

    if result is None or result.empty:
        log.info("[PARSE] no content; using fallback summary")
        return fallback_summary(n)

    parsed = parse_json_object(result.content, lenient=True)
    if not parsed.ok:
        log.warning(f"[PARSE] {parsed.error}; raw: {result.content[:300]}")
        return fallback_summary(n)

    summary = coerce_summary(parsed.value, n)
    log.info(f"[PARSE] OK, hint={summary.subject_hint}, plan={[s.goal for s in summary.plan]}")
    return summary
