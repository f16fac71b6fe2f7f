"""
Step 6 — Response Normalizer

Coerces loosely-shaped MCQ dicts (model output, salvaged items, or an
already-normalised response) into canonical MCQItem objects:

- options: list of strings, list of {text|value|label} objects, or an
  {A,B,C,D} object → exactly 4 trimmed strings, letter prefixes stripped
- correctAnswer: int, numeric string or letter label → 0..3
- hint / explanation: defaulted when missing, length-capped
- list: de-duplicated, sliced to N (never padded), steps renumbered 1..k

Pure functions only: normalising twice yields the same result.
"""

import math
import re
from typing import Any, Dict, Iterable, List, Optional

from decoder.schemas import (
    MAX_EXPLANATION_CHARS,
    MAX_HINT_CHARS,
    MAX_QUESTION_CHARS,
    CalculationStep,
    MCQItem,
)

PLACEHOLDER_OPTIONS = [
    "Apply the governing relation to the given data",
    "Rearrange for the unknown before substituting",
    "Check units and significant figures",
    "Re-read what the question asks for",
]

LETTERS = "ABCD"

_LABEL_PREFIX = re.compile(r"^\s*(?:\(\s*[A-Da-d]\s*\)|[A-Da-d]\s*[).:\]])\s*")
_BARE_LETTER = re.compile(r"^\s*\(?\s*(?:option\s+)?[A-Da-d]\s*\)?\s*[.:)]?\s*$", re.IGNORECASE)
_LETTER_LABEL = re.compile(r"^\s*\(?\s*(?:option\s+)?([A-Da-d])\s*\)?\s*[.:)]?\s*$", re.IGNORECASE)
_NUMERIC = re.compile(r"^\s*[-+]?\d+(?:\.0+)?\s*$")


# ─── Strings ───────────────────────────────────────────────────────────────────

def clean_text(value: Any) -> str:
    if value is None:
        return ""
    return re.sub(r"\s+", " ", str(value)).strip()


def truncate(value: Any, limit: int) -> str:
    text = clean_text(value)
    if len(text) <= limit:
        return text
    return text[:limit].rstrip()


def strip_option_label(text: Any) -> str:
    cleaned = clean_text(text)
    stripped = _LABEL_PREFIX.sub("", cleaned, count=1).strip()
    # Never strip a label that *is* the whole option.
    return stripped or cleaned


def is_bare_letter(text: str) -> bool:
    return not text or bool(_BARE_LETTER.match(text))


# ─── Options ───────────────────────────────────────────────────────────────────

def _option_text(item: Any) -> str:
    if isinstance(item, dict):
        for key in ("text", "value", "label", "option", "content"):
            if item.get(key) not in (None, ""):
                return clean_text(item[key])
        return ""
    return clean_text(item)


def coerce_option_list(raw: Any) -> List[str]:
    """Best-effort list of option strings from any of the accepted shapes (no padding)."""
    if isinstance(raw, dict):
        upper = {str(k).strip().upper(): v for k, v in raw.items()}
        if any(letter in upper for letter in LETTERS):
            items = [upper[letter] for letter in LETTERS if letter in upper]
        else:
            items = list(raw.values())
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        return []

    options = []
    for item in items:
        text = _option_text(item)
        if text:
            options.append(strip_option_label(text))
    return options


def normalize_options(raw: Any) -> List[str]:
    """Exactly 4 option strings; the placeholder set when the input is unusable."""
    options = coerce_option_list(raw)
    if len(options) < 4 or all(is_bare_letter(o) for o in options[:4]):
        return list(PLACEHOLDER_OPTIONS)
    return [truncate(o, 200) for o in options[:4]]


def is_placeholder(options: List[str]) -> bool:
    return list(options) == PLACEHOLDER_OPTIONS


# ─── Answer index ──────────────────────────────────────────────────────────────

def letter_to_index(value: Any) -> Optional[int]:
    match = _LETTER_LABEL.match(str(value or ""))
    if not match:
        return None
    return LETTERS.index(match.group(1).upper())


def coerce_answer_index(value: Any, options: Iterable[str] = ()) -> int:
    """
    0-based correct answer from an int, numeric string, letter label or the
    option text itself. Clamped to [0, 3]; 0 when nothing is recognisable.
    """
    index: Optional[int] = None
    if isinstance(value, bool):
        index = None
    elif isinstance(value, int):
        index = value
    elif isinstance(value, float):
        # json.loads accepts NaN / Infinity
        index = int(value) if math.isfinite(value) else None
    elif isinstance(value, str):
        if _NUMERIC.match(value):
            index = int(float(value))
        else:
            index = letter_to_index(value)
            if index is None and value.strip():
                target = strip_option_label(value).lower()
                for i, option in enumerate(options):
                    if option.lower() == target:
                        index = i
                        break
    if index is None:
        return 0
    return max(0, min(3, index))


# ─── Hints / explanations ──────────────────────────────────────────────────────

_HINT_RULES = [
    (re.compile(r"differentiat|derivative|d/dx|dy/dx|rate of change|gradient", re.I),
     "Hint: Differentiate term by term; bring the power down and reduce it by one."),
    (re.compile(r"integrat|area under|antiderivative|\bintegral\b", re.I),
     "Hint: Raise the power by one, divide by the new power, and apply the limits."),
    (re.compile(r"vector|resultant|component|magnitude|\bi\s*\+\s*\w*\s*j\b", re.I),
     "Hint: Resolve into perpendicular components, then combine with Pythagoras."),
    (re.compile(r"force|newton|tension|friction|weight|reaction|F\s*=\s*ma|\bmg\b", re.I),
     "Hint: Resolve forces along the motion and apply F = ma to the net force."),
]

GENERIC_HINT = "Hint: Decide what this step must produce, then build on the previous step's result."


def default_hint(question: str) -> str:
    for pattern, hint in _HINT_RULES:
        if pattern.search(question or ""):
            return hint
    return GENERIC_HINT


def default_explanation(options: List[str], correct: int) -> str:
    return f"The correct choice is: {options[correct]}."


# ─── Items ─────────────────────────────────────────────────────────────────────

def _first(raw: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) not in (None, ""):
            return raw[key]
    return None


def _calculation_step(raw: Any) -> Optional[CalculationStep]:
    if not isinstance(raw, dict):
        return None
    fields = {k: truncate(raw.get(k), 200) or None for k in ("formula", "substitution", "result")}
    if not any(fields.values()):
        return None
    return CalculationStep(**fields)


def normalize_mcq(raw: Dict[str, Any], step: int) -> Optional[MCQItem]:
    """One canonical MCQItem, or None when there is no question text."""
    question = truncate(_first(raw, "question", "stem", "prompt"), MAX_QUESTION_CHARS)
    if not question:
        return None

    raw_options = _first(raw, "options", "choices")
    options = normalize_options(raw_options)
    if is_placeholder(options):
        correct = 0
    else:
        correct = coerce_answer_index(
            _first(raw, "correctAnswer", "correct_answer", "correctIndex", "correct_index",
                   "answer", "answer_key", "correct"),
            options,
        )

    hint = truncate(raw.get("hint"), MAX_HINT_CHARS) or default_hint(question)
    explanation = (
        truncate(_first(raw, "explanation", "rationale"), MAX_EXPLANATION_CHARS)
        or truncate(default_explanation(options, correct), MAX_EXPLANATION_CHARS)
    )
    item_id = clean_text(raw.get("id"))[:64] or f"mcq-{step}"

    return MCQItem(
        id=item_id,
        question=question,
        options=options,
        correct_answer=correct,
        hint=hint,
        explanation=explanation,
        step=step,
        calculation_step=_calculation_step(_first(raw, "calculationStep", "calculation_step")),
    )


def _dedupe_key(item: MCQItem) -> str:
    return f"{item.question.lower()}|{'||'.join(item.options)}|{item.correct_answer}"


def normalize_mcqs(raw_items: Iterable[Any], limit: int) -> List[MCQItem]:
    """Canonical, de-duplicated list of at most ``limit`` items, steps 1..k."""
    out: List[MCQItem] = []
    seen = set()
    for raw in raw_items or []:
        if len(out) >= limit:
            break
        if isinstance(raw, MCQItem):
            raw = raw.model_dump(by_alias=True)
        if not isinstance(raw, dict):
            continue
        item = normalize_mcq(raw, step=len(out) + 1)
        if item is None:
            continue
        key = _dedupe_key(item)
        if key in seen:
            continue
        seen.add(key)
        out.append(item)
    return out
