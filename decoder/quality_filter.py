"""
Quality Filter

Drops MCQ candidates that break content rules:
- option count != 4
- an option is a meta-phrase ("state the formula", "none of the above", ...)
- the question only asks to read back a given value ("what is the mass given")
- conceptual mode: the question asks for several facts at once

Patterns are tuned to English mechanics / physics style problems.
"""

import logging
import re
from typing import Any, Dict, List, Tuple

from decoder.normalizer import clean_text, coerce_option_list

log = logging.getLogger("decoder.pipeline")

QUANTITATIVE = "quantitative"
CONCEPTUAL = "conceptual"


BANNED_OPTION = re.compile(
    r"state (?:the )?(?:relevant |governing )?(?:formula|law|equation)"
    r"|substitut\w* (?:the )?(?:given |known )?values"
    r"|compute (?:the )?(?:intermediate |final )?result"
    r"|none of the (?:above|these)"
    r"|all of the (?:above|these)"
    r"|cannot be determined"
    r"|not enough information",
    re.IGNORECASE,
)

VERBATIM_RECALL = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"what is the (?:mass|value|speed|velocity|time|distance|force|angle|height|length|"
        r"acceleration|temperature|charge|current|voltage)\b[^?]*\bgiven\b",
        r"refer to the (?:statement|question|problem|text)",
        r"according to the (?:question|problem|statement)",
        r"as (?:stated|given) in the (?:question|problem|statement)",
        r"which (?:value|quantity|number) is (?:given|stated|provided)",
        r"what (?:value|number) (?:is|was) (?:given|stated|provided)",
    )
]

MULTI_FACT = re.compile(r"\b(?:both|two|multiple|several|all three)\b", re.IGNORECASE)


def rejection_reason(item: Dict[str, Any], mode: str) -> str:
    """Empty string when the item passes, otherwise a short reason."""
    question = clean_text(item.get("question") or item.get("stem"))
    if not question:
        return "missing question"
    options = coerce_option_list(item.get("options", item.get("choices")))
    if len(options) != 4:
        return f"{len(options)} options"
    for option in options:
        if BANNED_OPTION.search(option):
            return f"meta option '{option[:40]}'"
    for pattern in VERBATIM_RECALL:
        if pattern.search(question):
            return "verbatim recall"
    if mode == CONCEPTUAL and MULTI_FACT.search(question):
        return "multi-fact conceptual"
    return ""


def filter_candidates(items: List[Dict[str, Any]], mode: str) -> Tuple[List[Dict[str, Any]], List[str]]:
    """Returns (kept, reasons for the dropped ones)."""
    kept: List[Dict[str, Any]] = []
    dropped: List[str] = []
    for item in items:
        if not isinstance(item, dict):
            dropped.append("not an object")
            continue
        reason = rejection_reason(item, mode)
        if reason:
            dropped.append(reason)
        else:
            kept.append(item)
    if dropped:
        log.info(f"[FILTER] kept {len(kept)}, dropped {len(dropped)}: {dropped}")
    return kept, dropped
