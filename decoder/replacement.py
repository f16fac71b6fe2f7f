"""
Replacement Requester

When the quality filter leaves fewer than N candidates, asks the model once
for exactly the shortfall. Only runs when the generation call did not hit
its token cap and enough budget remains.

Enrichment only: any provider failure or malformed output is logged and
the shortfall simply stays unfilled.
"""

import logging
from typing import Any, Dict, List

from decoder.budget import StageBudget
from decoder.context import RequestContext
from decoder.errors import ProviderError
from decoder.gpt_client import system_message, user_message
from decoder.problem_parser import compact_summary
from decoder.quality_filter import QUANTITATIVE, filter_candidates
from decoder.salvage import parse_json_object
from decoder.schemas import ProblemSummary

log = logging.getLogger("decoder.pipeline")

REPLACE_TIMEOUT_S = 8.0
REPLACE_MIN_REMAINING = 600
REPLACE_SUMMARY_CHARS = 1200


def replace_budget(shortfall: int) -> StageBudget:
    return StageBudget(cap=220 * shortfall + 200, minimum=300)


REPLACE_PROMPT = """Write EXACTLY {k} NEW multiple-choice question(s) that fill gaps in an existing step-by-step scaffold.

Respond with ONLY a JSON object:
{{"mcqs": [{{"question": "<str>", "options": ["<str>", "<str>", "<str>", "<str>"], "correctAnswer": <0-3>, "hint": "<str>", "explanation": "<str>"}}]}}

RULES:
1. Exactly 4 options, exactly one correct.
2. Never use "State the formula", "Substitute values", "Compute result", "None of the above" or "All of the above" as options.
3. Do not repeat or rephrase any existing question.
4. Do not ask the student to read back a value the problem states.
{guidance}
"""

QUANTITATIVE_GUIDANCE = (
    "5. Each question advances the calculation: name the governing relation in the hint "
    "and show the numeric substitution in the explanation."
)
CONCEPTUAL_GUIDANCE = (
    '5. Each question tests ONE atomic fact; never ask for "both", "two" or "multiple" facts.'
)


def existing_questions_block(existing: List[Dict[str, Any]], limit: int = 8) -> str:
    questions = [str(m.get("question") or "").strip() for m in existing if isinstance(m, dict)]
    lines = [f"- {q[:160]}" for q in questions if q][:limit]
    return "Existing questions (do not repeat):\n" + "\n".join(lines) if lines else ""


def _question_key(item: Dict[str, Any]) -> str:
    return " ".join(str(item.get("question") or "").lower().split())


def should_replace(ctx: RequestContext, kept: int, n: int, hit_cap: bool) -> bool:
    if kept >= n or hit_cap:
        return False
    return ctx.budget.can_afford(REPLACE_MIN_REMAINING)


async def request_replacements(
    ctx: RequestContext,
    *,
    text: str,
    summary: ProblemSummary,
    existing: List[Dict[str, Any]],
    shortfall: int,
    mode: str,
    header: str = "",
) -> List[Dict[str, Any]]:
    """
    One call for ``shortfall`` extra candidates, filtered with the same mode.

    Returns:
        Surviving replacement dicts (possibly []); never raises for provider
        or parse failures.
    """
    if shortfall <= 0:
        return []

    guidance = QUANTITATIVE_GUIDANCE if mode == QUANTITATIVE else CONCEPTUAL_GUIDANCE
    texts = [
        header,
        f"Problem:\n{text[:1200]}" if text else "",
        f"Problem summary:\n{compact_summary(summary, REPLACE_SUMMARY_CHARS)}",
        existing_questions_block(existing),
        REPLACE_PROMPT.format(k=shortfall, guidance=guidance),
    ]
    messages = [
        system_message("You write exam-quality MCQs. Output only valid JSON."),
        user_message(texts),
    ]

    try:
        result = await ctx.call(
            "replace", messages, replace_budget(shortfall),
            timeout=REPLACE_TIMEOUT_S, temperature=0.4,
        )
    except ProviderError as e:
        log.warning(f"[REPLACE] provider failure ({e.status_code}): {e.message}")
        return []

    if result is None or result.empty:
        log.warning("[REPLACE] no content")
        return []
    if result.hit_cap:
        log.warning("[REPLACE] hit token cap; discarding replacements")
        return []

    parsed = parse_json_object(result.content)
    if not parsed.ok or not isinstance(parsed.value.get("mcqs"), list):
        log.warning(f"[REPLACE] malformed output ({parsed.error or 'no mcqs'}): {result.content[:300]}")
        return []

    existing_keys = {_question_key(m) for m in existing if isinstance(m, dict)}
    fresh = [
        m for m in parsed.value["mcqs"]
        if isinstance(m, dict) and _question_key(m) not in existing_keys
    ]
    kept, _ = filter_candidates(fresh, mode)
    log.info(f"[REPLACE] requested {shortfall}, got {len(kept)} usable")
    return kept[:shortfall]
