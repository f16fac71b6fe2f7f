"""
Step 0 — Input Sanitizer

- Clamps marks (1–8) and the token budget (200–1e6, None/0 = unlimited)
- Rejects empty submissions and text that bundles several questions
- Normalises unicode math glyphs to ASCII-safe equivalents

Pure transform + classification; no I/O.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional

from decoder.errors import ValidationError
from decoder.schemas import (
    DEFAULT_MARKS,
    MAX_BUDGET,
    MAX_MARKS,
    MIN_BUDGET,
    MIN_MARKS,
    DecodeRequest,
    ImageInput,
)

MULTIPLE_QUESTIONS = "MULTIPLE_QUESTIONS"


# ─── Glyph table ───────────────────────────────────────────────────────────────

# Order matters: multi-character sequences first.
_GLYPH_REGEX = [
    (re.compile(r"°\s*C\b"), " degC"),
    (re.compile(r"°\s*F\b"), " degF"),
    (re.compile(r"°"), " deg"),
    (re.compile(r"µ(?=[A-Za-z])"), "u"),   # micro sign before a unit: µF → uF
]

_GLYPHS = {
    "×": "*", "·": "*", "⋅": "*", "÷": "/",
    "µ": "mu", "μ": "mu",
    "Ω": "ohm", "±": "+/-", "∓": "-/+",
    "–": "-", "—": "-", "−": "-", "‐": "-", "‑": "-",
    "“": '"', "”": '"', "„": '"', "‘": "'", "’": "'", "′": "'", "″": '"',
    "²": "^2", "³": "^3", "⁻¹": "^-1", "√": "sqrt",
    "≤": "<=", "≥": ">=", "≠": "!=", "≈": "~=", "→": "->",
    "π": "pi", "θ": "theta", "α": "alpha", "β": "beta", "λ": "lambda",
    "Δ": "delta", "ω": "omega", "ρ": "rho",
    " ": " ", " ": " ", " ": " ", "​": "",
}


def normalize_math_text(text: str) -> str:
    """Replace unicode math glyphs with ASCII-safe equivalents (keeps newlines)."""
    out = text or ""
    for pattern, repl in _GLYPH_REGEX:
        out = pattern.sub(repl, out)
    for glyph, repl in _GLYPHS.items():
        if glyph in out:
            out = out.replace(glyph, repl)
    return out


def collapse_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


# ─── Multiple-question detection ───────────────────────────────────────────────

_NUMBERED_LINE = re.compile(r"^\s*(?:Q(?:uestion)?\s*)?\d{1,2}\s*[.)]\s+\S", re.IGNORECASE | re.MULTILINE)
# Part labels count only at the start of a line or sentence.
_LETTERED_PART = re.compile(r"(?:^\s*|[.?:]\s*)\(([a-h])\)\s*\S", re.MULTILINE)
_LETTERED_LINE = re.compile(r"^\s*([a-h])[.)]\s+\S", re.MULTILINE)
_ROMAN_PART = re.compile(r"(?:^\s*|[.?:]\s*)\((i{1,3}|iv|v|vi)\)\s*\S", re.MULTILINE)
_INLINE_MARKER = re.compile(r"(?:^|\s)\(?(?:\d{1,2}|[a-h]|i{1,3}|iv)\)\s")


def _lettered_run(letters) -> int:
    """Length of the consecutive run a, b, c, ... present in ``letters``."""
    run = 0
    for letter in "abcdefgh":
        if letter not in letters:
            break
        run += 1
    return run


def looks_like_multiple_questions(text: str) -> bool:
    """
    True when free text enumerates two or more sub-questions:
    numbered lines, lettered parts starting at (a), roman sub-parts,
    or ≥3 inline markers.
    """
    if not text:
        return False
    if len(_NUMBERED_LINE.findall(text)) >= 2:
        return True
    letters = set(_LETTERED_PART.findall(text)) | set(_LETTERED_LINE.findall(text))
    if _lettered_run(letters) >= 2:
        return True
    if len(set(_ROMAN_PART.findall(text))) >= 2:
        return True
    return len(_INLINE_MARKER.findall(text)) >= 3


# ─── Clamps ────────────────────────────────────────────────────────────────────

def clamp_marks(marks: Optional[int]) -> int:
    if marks is None:
        return DEFAULT_MARKS
    return max(MIN_MARKS, min(MAX_MARKS, int(marks)))


def clamp_budget(max_tokens: Optional[int]) -> int:
    """0 means unlimited."""
    if not max_tokens:
        return 0
    return max(MIN_BUDGET, min(MAX_BUDGET, int(max_tokens)))


# ─── Main entry ────────────────────────────────────────────────────────────────

@dataclass
class SanitizedInput:
    text: str
    marks: int
    budget: int = 0
    images: List[ImageInput] = field(default_factory=list)
    subject: str = ""
    syllabus: str = ""
    level: str = ""

    @property
    def has_digits(self) -> bool:
        return bool(re.search(r"\d", self.text))

    @property
    def header(self) -> str:
        return build_header(self.subject, self.syllabus, self.level)


def build_header(subject: str = "", syllabus: str = "", level: str = "") -> str:
    """'Subject: x • Syllabus: y • Level: z' (blank parts omitted)."""
    parts = [
        f"Subject: {subject}" if subject else "",
        f"Syllabus: {syllabus}" if syllabus else "",
        f"Level: {level}" if level else "",
    ]
    return " • ".join(p for p in parts if p)


def sanitize_request(request: DecodeRequest) -> SanitizedInput:
    """
    Validate + normalise a decode request.

    Raises:
        ValidationError: empty submission, or MULTIPLE_QUESTIONS (text only).
    """
    images = [
        img for img in (request.images or [])
        if (img.data or "").strip() and (img.mime_type or "").strip()
    ]
    normalized = normalize_math_text(request.text or "")

    if not normalized.strip() and not images:
        raise ValidationError("Provide 'text' or at least one image")

    if not images and looks_like_multiple_questions(normalized):
        raise ValidationError(
            "Submission contains multiple questions; submit one question at a time",
            code=MULTIPLE_QUESTIONS,
        )

    return SanitizedInput(
        text=collapse_whitespace(normalized),
        marks=clamp_marks(request.marks),
        budget=clamp_budget(request.max_tokens),
        images=images,
        subject=(request.subject or "").strip(),
        syllabus=(request.syllabus or "").strip(),
        level=(request.level or "").strip(),
    )
