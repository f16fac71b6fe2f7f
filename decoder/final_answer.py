"""
Step 5 — Final Answer Resolver

One minimal call for ``{finalAnswer, unit}`` when generation left the final
answer empty and some budget is still left. Failure leaves both empty.
"""

import json
import logging
from typing import Any, Dict, List, Tuple

from decoder.budget import StageBudget
from decoder.context import RequestContext
from decoder.errors import ProviderError
from decoder.gpt_client import system_message, user_message
from decoder.normalizer import clean_text
from decoder.salvage import parse_json_object
from decoder.schemas import MCQItem

log = logging.getLogger("decoder.pipeline")

FINALIZE_BUDGET = StageBudget(cap=60, minimum=40)
FINALIZE_TIMEOUT_S = 2.5
FINALIZE_MIN_REMAINING = 150

FINALIZE_PROMPT = (
    'Return ONLY JSON: {"finalAnswer": "<value or short statement>", "unit": "<unit or empty>"}. '
    "No working, no explanation."
)


def format_final_answer(value: Any) -> str:
    """Scalars as text; an object such as {"x": 2, "y": 3} becomes 'x: 2, y: 3'."""
    if isinstance(value, dict):
        return ", ".join(f"{k}: {clean_text(v)}" for k, v in value.items() if clean_text(v))
    if isinstance(value, list):
        return ", ".join(clean_text(v) for v in value if clean_text(v))
    return clean_text(value)


def _last_results(mcqs: List[MCQItem]) -> List[str]:
    return [
        m.calculation_step.result for m in mcqs
        if m.calculation_step and m.calculation_step.result
    ][-3:]


async def resolve_final_answer(
    ctx: RequestContext,
    text: str,
    mcqs: List[MCQItem],
    header: str = "",
) -> Tuple[str, str]:
    """
    Stage 5: (finalAnswer, unit); ("", "") when skipped or failed.
    """
    if not ctx.budget.can_afford(FINALIZE_MIN_REMAINING):
        log.info("[FINALIZE] skipped: remaining budget below threshold")
        return "", ""

    context: Dict[str, Any] = {
        "problem": (text or "")[:900],
        "lastStep": mcqs[-1].question[:300] if mcqs else "",
        "stepResults": _last_results(mcqs),
    }
    messages = [
        system_message("You state final answers tersely. Output only valid JSON."),
        user_message([header, f"Context: {json.dumps(context, ensure_ascii=False)}", FINALIZE_PROMPT]),
    ]

    try:
        result = await ctx.call("finalize", messages, FINALIZE_BUDGET, timeout=FINALIZE_TIMEOUT_S, temperature=0)
    except ProviderError as e:
        log.warning(f"[FINALIZE] provider failure ({e.status_code}): {e.message}")
        return "", ""

    if result is None or result.empty:
        log.warning("[FINALIZE] no content")
        return "", ""

    parsed = parse_json_object(result.content, lenient=True)
    if not parsed.ok:
        log.warning(f"[FINALIZE] {parsed.error}; raw: {result.content[:300]}")
        return "", ""

    answer = format_final_answer(parsed.value.get("finalAnswer"))
    unit = clean_text(parsed.value.get("unit"))
    log.info(f"[FINALIZE] finalAnswer='{answer}' unit='{unit}'")
    return answer, unit
