"""
Hint Refiner (/api/ai-refine-hints)

Rewrites MCQ hints with discriminative cues in a single call. Unparseable
model output yields no hints; a non-2xx from the provider propagates.
"""

import json
import logging
from typing import Any, List

from decoder.gpt_client import user_message
from decoder.salvage import parse_json_object
from decoder.schemas import HintRefineRequest, HintRefineResponse, RefinedHint

log = logging.getLogger("decoder.pipeline")

MAX_ITEMS = 20
MAX_HINT_CHARS = 180
HEADER_CHARS = 120
ORIGINAL_CHARS = 600
HINTS_TIMEOUT_S = 15.0

HINTS_PROMPT = """Rewrite hints with discriminative cues. Output JSON only: {{"hints": [{{"id": "<mcq id>", "hint": "<rewritten>"}}, ...]}}. Rules:
- Start with 'Hint: ' and keep 11-18 words.
- Reference the stem concept (key term) or focus (e.g. time scale) explicitly.
- Use a MIX of cue types across hints: (a) key attribute, mechanism or time scale, (b) elimination rule, (c) limited contrast vs a common distractor.
- Vary verbs: Note/Use/Check/Look for/Consider.
- Avoid generic or meta phrasing and do not reveal the exact answer text.
Input: {items}"""


def clean_hints(raw: Any) -> List[RefinedHint]:
    if not isinstance(raw, list):
        return []
    hints = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        hints.append(RefinedHint(
            id=str(entry.get("id") or ""),
            hint=str(entry.get("hint") or "")[:MAX_HINT_CHARS],
        ))
    return hints


async def refine_hints(client: Any, request: HintRefineRequest) -> HintRefineResponse:
    """
    Raises:
        ProviderError: provider non-2xx / timeout (status propagated)
    """
    items = [item.model_dump(exclude_none=True) for item in request.items[:MAX_ITEMS]]
    texts = [
        (request.header or "")[:HEADER_CHARS],
        f"Original text (trimmed):\n{(request.original_text or '')[:ORIGINAL_CHARS]}",
        HINTS_PROMPT.format(items=json.dumps(items, ensure_ascii=False)),
    ]
    result = await client.complete(
        [user_message(texts)],
        response_format="text",
        temperature=0.2,
        timeout=HINTS_TIMEOUT_S,
    )

    parsed = parse_json_object(result.content)
    if not parsed.ok or not isinstance(parsed.value.get("hints"), list):
        log.warning(f"[HINTS] unusable output ({parsed.error or 'no hints list'}): {result.content[:300]}")
        return HintRefineResponse()

    hints = clean_hints(parsed.value["hints"])
    log.info(f"[HINTS] refined {len(hints)} of {len(items)} hint(s)")
    return HintRefineResponse(hints=hints)
