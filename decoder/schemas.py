"""
Pydantic schemas for the question decoder.

Wire format is camelCase (``correctAnswer``, ``workingSteps``, ``maxTokens``)
for the MCQ / solution / request models; usage and meta blocks stay
snake_case (``hit_generate_cap``, ``total_tokens``).

Layer 1:  HTTP request / response models
Layer 2:  internal pipeline types (ProblemSummary, RetrievalSnippet)
"""

from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─── Limits ────────────────────────────────────────────────────────────────────

MAX_QUESTION_CHARS = 500
MAX_HINT_CHARS = 300
MAX_EXPLANATION_CHARS = 600
MAX_SNIPPET_CHARS = 500
MIN_MARKS, MAX_MARKS, DEFAULT_MARKS = 1, 8, 3
MIN_BUDGET, MAX_BUDGET = 200, 1_000_000

PLAN_GOALS = (
    "identify_knowns",
    "select_relation",
    "rearrange",
    "substitute",
    "evaluate",
    "check_units",
    "recall_fact",
    "interpret",
)

SubjectHint = Literal["quantitative", "conceptual", "mixed"]


# ─── Request ───────────────────────────────────────────────────────────────────

class ImageInput(CamelModel):
    data: str = Field("", alias="base64", description="Raw base64 payload, no data: prefix")
    mime_type: str = Field("", description="e.g. image/png")


class DecodeRequest(CamelModel):
    """Body of POST /api/ai-decode."""
    text: Optional[str] = None
    images: Optional[List[ImageInput]] = None
    marks: Optional[int] = Field(None, description="Number of MCQ steps, clamped to 1–8")
    subject: Optional[str] = None
    syllabus: Optional[str] = None
    level: Optional[str] = None
    max_tokens: Optional[int] = Field(None, description="Total token budget, clamped to 200–1e6")


# ─── Internal pipeline types ───────────────────────────────────────────────────

class Quantity(BaseModel):
    name: str
    symbol: Optional[str] = None
    value: Optional[Union[float, str]] = None
    unit: Optional[str] = None
    known: bool = False
    type: Literal["numeric", "symbolic"] = "numeric"


class PlanStep(CamelModel):
    step: int
    goal: str = "evaluate"
    must_produce: Literal["number", "formula", "fact"] = "number"
    note: Optional[str] = None


class ProblemSummary(CamelModel):
    """Stage 1 output: structured view of the problem + step plan."""
    quantities: List[Quantity] = Field(default_factory=list)
    relations: List[str] = Field(default_factory=list)
    targets: List[str] = Field(default_factory=list)
    constraints: List[str] = Field(default_factory=list)
    context: str = ""
    subject_hint: SubjectHint = "mixed"
    plan: List[PlanStep] = Field(default_factory=list)


class RetrievalSnippet(BaseModel):
    text: str = Field(..., max_length=MAX_SNIPPET_CHARS)
    name: Optional[str] = None
    subject: Optional[str] = None
    syllabus: Optional[str] = None


# ─── Output types ──────────────────────────────────────────────────────────────

class CalculationStep(CamelModel):
    formula: Optional[str] = None
    substitution: Optional[str] = None
    result: Optional[str] = None


class MCQItem(CamelModel):
    """One scaffolded step. Always exactly 4 options, 0-based answer."""
    id: str
    question: str = Field(..., max_length=MAX_QUESTION_CHARS)
    options: List[str] = Field(..., min_length=4, max_length=4)
    correct_answer: int = Field(0, ge=0, le=3)
    hint: str = Field("", max_length=MAX_HINT_CHARS)
    explanation: str = Field("", max_length=MAX_EXPLANATION_CHARS)
    step: int = Field(1, ge=1)
    calculation_step: Optional[CalculationStep] = None


class SolutionSummary(CamelModel):
    final_answer: str = ""
    unit: str = ""
    working_steps: List[str] = Field(default_factory=list)
    key_formulas: List[str] = Field(default_factory=list)
    key_points: List[str] = Field(default_factory=list)
    applications: List[str] = Field(default_factory=list)
    pitfalls: List[str] = Field(default_factory=list)


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class UsageReport(BaseModel):
    stages: Dict[str, Optional[TokenUsage]] = Field(default_factory=dict)
    totals: TokenUsage = Field(default_factory=TokenUsage)


class RetrievalMeta(BaseModel):
    used: bool = False
    count: int = 0
    docs: List[Dict[str, Optional[str]]] = Field(default_factory=list)


class DecodeMeta(BaseModel):
    hit_generate_cap: bool = False
    global_budget: Optional[int] = None
    remaining_budget: Optional[int] = None
    retrieval: RetrievalMeta = Field(default_factory=RetrievalMeta)
    debug: bool = False


class DecodeResponse(BaseModel):
    """Body of a 200 from POST /api/ai-decode."""
    mcqs: List[MCQItem] = Field(default_factory=list)
    solution: SolutionSummary = Field(default_factory=SolutionSummary)
    usage: UsageReport = Field(default_factory=UsageReport)
    meta: DecodeMeta = Field(default_factory=DecodeMeta)


# ─── Refine (standalone stages 3 + 4) ──────────────────────────────────────────

class RefineRequest(CamelModel):
    subject: Optional[str] = None
    syllabus: Optional[str] = None
    level: Optional[str] = None
    original_text: Optional[str] = None
    mcqs: List[Dict[str, Any]] = Field(default_factory=list)
    solution: Dict[str, Any] = Field(default_factory=dict)


class RefineResponse(CamelModel):
    working_steps: List[str] = Field(default_factory=list)
    key_points: List[str] = Field(default_factory=list)
    pitfalls: List[str] = Field(default_factory=list)
    usage: UsageReport = Field(default_factory=UsageReport)


# ─── Hint refinement ───────────────────────────────────────────────────────────

class HintItem(BaseModel):
    id: str
    question: str = ""
    options: List[str] = Field(default_factory=list)
    hint: Optional[str] = None


class HintRefineRequest(CamelModel):
    header: Optional[str] = None
    original_text: Optional[str] = None
    items: List[HintItem] = Field(default_factory=list)


class RefinedHint(BaseModel):
    id: str
    hint: str


class HintRefineResponse(BaseModel):
    hints: List[RefinedHint] = Field(default_factory=list)


# ─── OCR augmentation ──────────────────────────────────────────────────────────

class AugmentRequest(CamelModel):
    text: str = ""
    image_base64: Optional[str] = None
    image_mime_type: Optional[str] = None


class AugmentResponse(BaseModel):
    text: str


# ─── Document text extraction ──────────────────────────────────────────────────

class ExtractRequest(CamelModel):
    file_base64: str = Field("", description="Raw base64 payload, no data: prefix")
    mime_type: str = Field("", description="e.g. image/png, application/pdf")


class ExtractResponse(BaseModel):
    text: str
    pages: Optional[int] = None
    cached: Optional[bool] = None
