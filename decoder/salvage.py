"""
Output parsing + lenient recovery of malformed model output.

Strict path:   whole string → json, else first balanced {...} substring.
Lenient path:  (stage-1 / enrichment only) json_repair on the first {...}.
Salvage path:  (stage 2, only when the call did not hit its token cap)
               mine ``"question": "..."`` occurrences for options / answer.

Nothing here raises on bad input: parse functions return a ParseResult,
``salvage_mcqs`` returns a (possibly empty) list of 4-option dicts.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import json_repair

from decoder.normalizer import (
    PLACEHOLDER_OPTIONS,
    coerce_answer_index,
    coerce_option_list,
    is_bare_letter,
    letter_to_index,
)

log = logging.getLogger("decoder.pipeline")


@dataclass(frozen=True)
class ParseResult:
    """Either ``value`` (a dict) or ``error`` (why parsing failed)."""
    value: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


# ─── Strict parsing ────────────────────────────────────────────────────────────

def strip_code_fences(raw: str) -> str:
    text = (raw or "").strip()
    text = re.sub(r"^```(?:json)?\s*", "", text, flags=re.MULTILINE)
    text = re.sub(r"\s*```$", "", text, flags=re.MULTILINE)
    return text.strip()


def _balanced_end(text: str, start: int, open_ch: str, close_ch: str) -> int:
    """Index just past the bracket closing the one at ``start``; -1 if unbalanced."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == open_ch:
            depth += 1
        elif ch == close_ch:
            depth -= 1
            if depth == 0:
                return i + 1
    return -1


def first_balanced_object(text: str) -> Optional[str]:
    start = text.find("{")
    if start == -1:
        return None
    end = _balanced_end(text, start, "{", "}")
    return text[start:end] if end != -1 else None


def _loads_dict(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def parse_json_object(raw: str, *, lenient: bool = False) -> ParseResult:
    text = strip_code_fences(raw)
    if not text:
        return ParseResult(error="empty content")

    data = _loads_dict(text)
    if data is not None:
        return ParseResult(value=data)

    block = first_balanced_object(text)
    if block:
        data = _loads_dict(block)
        if data is not None:
            return ParseResult(value=data)

    if lenient:
        match = re.search(r"\{[\s\S]*\}", text)
        if match:
            try:
                repaired = json_repair.loads(match.group(0))
            except Exception as e:
                return ParseResult(error=f"json_repair failed: {e}")
            if isinstance(repaired, dict) and repaired:
                return ParseResult(value=repaired)

    return ParseResult(error="no JSON object found")


# ─── Salvage ───────────────────────────────────────────────────────────────────

_QUESTION = re.compile(r'"question"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_ARRAY_START = {
    "options": re.compile(r'"options"\s*:\s*\['),
    "choices": re.compile(r'"choices"\s*:\s*\['),
}
_LETTERED_LINE = re.compile(r"^\s*\(?([A-D])\s*[).:]\s*(.+?)\s*$", re.MULTILINE)
_NUMERIC_ANSWER = re.compile(
    r'"(?:correctAnswer|correct_answer|correctIndex|correct_index|answerIndex|answer_index)"'
    r'\s*:\s*"?(-?\d+)"?'
)
_LETTER_ANSWER = re.compile(
    r'"(?:correctAnswer|correct_answer|answer|answer_key|correct|correctOption|correct_option)"'
    r'\s*:\s*"\s*\(?([A-Da-d])\)?\s*"'
)


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except (json.JSONDecodeError, TypeError):
        return value.replace('\\"', '"').replace("\\n", " ")


def _string_field(span: str, key: str) -> str:
    match = re.search(rf'"{key}"\s*:\s*"((?:[^"\\]|\\.)*)"', span, re.DOTALL)
    return _unescape(match.group(1)) if match else ""


def _array_fragment(span: str, key: str) -> Optional[List[Any]]:
    match = _ARRAY_START[key].search(span)
    if not match:
        return None
    start = match.end() - 1
    end = _balanced_end(span, start, "[", "]")
    if end == -1:
        return None
    try:
        data = json.loads(span[start:end])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, list) else None


def _options_from_lettered_lines(span: str) -> List[str]:
    text = span.replace("\\n", "\n")
    found: Dict[str, str] = {}
    for letter, body in _LETTERED_LINE.findall(text):
        found.setdefault(letter, body.strip().rstrip('",'))
    if all(letter in found for letter in "ABCD"):
        return [found[letter] for letter in "ABCD"]
    return []


def _recover_options(span: str) -> List[str]:
    for key in ("options", "choices"):
        fragment = _array_fragment(span, key)
        if fragment:
            options = coerce_option_list(fragment)
            if len(options) >= 4:
                return options[:4]
    return _options_from_lettered_lines(span)


def _recover_answer(span: str, options: List[str]) -> int:
    numeric = _NUMERIC_ANSWER.search(span)
    if numeric:
        return coerce_answer_index(int(numeric.group(1)))
    letter = _LETTER_ANSWER.search(span)
    if letter:
        return letter_to_index(letter.group(1)) or 0
    return 0


def salvage_mcqs(raw: str) -> List[Dict[str, Any]]:
    """
    Best-effort MCQ dicts from quasi-JSON text. Every returned item has
    exactly 4 options; unrecoverable option sets become the placeholder set
    with ``correctAnswer = 0``.
    """
    text = raw or ""
    matches = list(_QUESTION.finditer(text))
    items: List[Dict[str, Any]] = []
    for idx, match in enumerate(matches):
        end = matches[idx + 1].start() if idx + 1 < len(matches) else len(text)
        span = text[match.end():end]
        question = _unescape(match.group(1)).strip()
        if not question:
            continue

        options = _recover_options(span)
        if len(options) != 4 or all(is_bare_letter(o) for o in options):
            options, correct = list(PLACEHOLDER_OPTIONS), 0
        else:
            correct = _recover_answer(span, options)

        items.append({
            "question": question,
            "options": options,
            "correctAnswer": correct,
            "hint": _string_field(span, "hint"),
            "explanation": _string_field(span, "explanation"),
        })

    log.info(f"[SALVAGE] recovered {len(items)} item(s) from {len(matches)} question marker(s)")
    return items
