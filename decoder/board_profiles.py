"""
Exam-board profiles for MCQ generation.

Maps syllabus / level to assessment objectives, command words and
conventions; the Step Generator injects the resolved profile into its
prompt so distractors and wording follow the board's style.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class BoardProfile:
    board: str
    level: Optional[str]
    ao_mapping: Dict[str, str]
    command_words: Dict[str, List[str]]
    sig_figs: Optional[int] = 3
    g_value: Optional[str] = "9.81"
    units: Optional[str] = "SI"
    distractor_style: Optional[str] = None
    notes: str = ""
    key: str = field(default="GENERIC", compare=False)


_STANDARD_AO = {
    "AO1": "Demonstrate knowledge and understanding",
    "AO2": "Apply knowledge and understanding",
    "AO3": "Analyse, interpret and evaluate",
}


BOARD_PROFILES: Dict[str, BoardProfile] = {
    "AQA_A_LEVEL": BoardProfile(
        key="AQA_A_LEVEL",
        board="AQA",
        level="A-level",
        ao_mapping={**_STANDARD_AO, "AO3": "Analyse, interpret and evaluate scientific information"},
        command_words={
            "AO1": ["state", "define", "recall", "name", "identify"],
            "AO2": ["describe", "explain", "calculate", "derive", "determine"],
            "AO3": ["evaluate", "assess", "discuss", "suggest", "justify"],
        },
        units="SI preferred",
        distractor_style="Common calculation errors, wrong formula applications",
        notes="Quality of written communication valued; typical calc marks 3–6.",
    ),
    "EDEXCEL_A_LEVEL": BoardProfile(
        key="EDEXCEL_A_LEVEL",
        board="Edexcel",
        level="A-level",
        ao_mapping=_STANDARD_AO,
        command_words={
            "AO1": ["state", "define", "name", "identify"],
            "AO2": ["explain", "calculate", "show that", "derive", "determine"],
            "AO3": ["assess", "evaluate", "comment on significance", "discuss"],
        },
        distractor_style="Multi-step clarity errors, unit mismatches",
        notes="Strong emphasis on multi-step calculation clarity.",
    ),
    "OCR_A_A_LEVEL": BoardProfile(
        key="OCR_A_A_LEVEL",
        board="OCR A",
        level="A-level",
        ao_mapping=_STANDARD_AO,
        command_words={
            "AO1": ["state", "define", "name"],
            "AO2": ["suggest", "explain", "calculate", "determine", "state and explain"],
            "AO3": ["evaluate", "discuss", "assess"],
        },
        distractor_style="Diagram interpretation errors, reasoning gaps",
        notes='Frequent "suggest/state and explain" pairs; diagrams commonly credited.',
    ),
    "OCR_B_A_LEVEL": BoardProfile(
        key="OCR_B_A_LEVEL",
        board="OCR B (Advancing Physics)",
        level="A-level",
        ao_mapping={**_STANDARD_AO, "AO2": "Apply knowledge to real contexts"},
        command_words={
            "AO1": ["state", "define", "recall"],
            "AO2": ["explain in context", "apply", "estimate", "model"],
            "AO3": ["evaluate", "assess significance", "discuss limitations"],
        },
        distractor_style="Context mismatches, reasoning chain breaks",
        notes="Context-led; expects reasoning chains tied to real scenarios.",
    ),
    "CIE_9702": BoardProfile(
        key="CIE_9702",
        board="CIE (Cambridge)",
        level="A-level",
        ao_mapping={
            "AO1": "Knowledge and understanding",
            "AO2": "Handling, applying and evaluating information",
            "AO3": "Experimental skills and investigations",
        },
        command_words={
            "AO1": ["state", "define", "describe"],
            "AO2": ["explain", "calculate", "determine", "deduce", "predict"],
            "AO3": ["suggest", "evaluate", "discuss"],
        },
        distractor_style="Unit errors, sig fig violations, data interpretation failures",
        notes="Frequent data/units/sig-fig checks; experimental design questions.",
    ),
    "WJEC_A_LEVEL": BoardProfile(
        key="WJEC_A_LEVEL",
        board="WJEC",
        level="A-level",
        ao_mapping=_STANDARD_AO,
        command_words={
            "AO1": ["state", "define", "name", "identify"],
            "AO2": ["describe", "explain", "calculate", "show"],
            "AO3": ["evaluate", "assess", "discuss", "justify"],
        },
        distractor_style="Similar to AQA; QWC cues",
        notes="Explicit quality of written communication cues.",
    ),
    "IB_DP": BoardProfile(
        key="IB_DP",
        board="IB DP",
        level="HL/SL",
        ao_mapping={
            "AO1": "Knowledge and understanding",
            "AO2": "Application and analysis",
            "AO3": "Synthesis and evaluation",
        },
        command_words={
            "AO1": ["define", "state", "outline", "list"],
            "AO2": ["explain", "apply", "analyse", "derive", "calculate"],
            "AO3": ["evaluate", "discuss", "compare and contrast", "to what extent"],
        },
        distractor_style="Reasoning gaps, missing assumptions, incomplete justifications",
        notes="Command terms strictly defined; markbands reward reasoning and assumptions.",
    ),
    "GENERIC": BoardProfile(
        key="GENERIC",
        board="Generic",
        level=None,
        ao_mapping={
            "AO1": "Recall and understanding",
            "AO2": "Application and problem solving",
            "AO3": "Analysis and evaluation",
        },
        command_words={
            "AO1": ["state", "define", "identify"],
            "AO2": ["explain", "calculate", "determine"],
            "AO3": ["evaluate", "assess", "discuss"],
        },
        distractor_style="Common errors, formula misapplication",
        notes="Fallback when no specific board is provided.",
    ),
}

# (syllabus substring, profile key), checked with an A-level level first, then alone.
_BOARD_KEYWORDS = [
    (("aqa",), "AQA_A_LEVEL"),
    (("edexcel",), "EDEXCEL_A_LEVEL"),
    (("ocr a",), "OCR_A_A_LEVEL"),
    (("ocr b",), "OCR_B_A_LEVEL"),
    (("cie", "cambridge"), "CIE_9702"),
    (("wjec",), "WJEC_A_LEVEL"),
]


def resolve_board_profile(syllabus: Optional[str] = None, level: Optional[str] = None) -> BoardProfile:
    """Best matching profile for syllabus/level, GENERIC when nothing matches."""
    syl = (syllabus or "").strip().lower()
    lev = (level or "").strip().lower()

    if "a-level" in lev:
        for needles, key in _BOARD_KEYWORDS:
            if any(n in syl for n in needles):
                return BOARD_PROFILES[key]
    if "ib" in syl or "ib" in lev:
        return BOARD_PROFILES["IB_DP"]

    # Partial (board only); any OCR falls back to OCR A.
    for needles, key in _BOARD_KEYWORDS:
        if key == "OCR_B_A_LEVEL":
            continue
        if any(n in syl for n in needles) or (key == "OCR_A_A_LEVEL" and "ocr" in syl):
            return BOARD_PROFILES[key]
    return BOARD_PROFILES["GENERIC"]


def ao_distribution(marks: int) -> str:
    if marks <= 2:
        return "Distribute: primarily AO1 recall, with one AO2 if marks >= 2."
    if marks <= 4:
        return "Distribute: at least 1 AO1, 1-2 AO2, 1 AO3 if marks >= 4."
    if marks <= 6:
        return "Distribute: 1-2 AO1, 2-3 AO2, 1-2 AO3. Majority should be AO2 application."
    return (
        "Distribute: 1-2 AO1 (early steps), 3-4 AO2 (mid steps), 2-3 AO3 (later steps). "
        "Ensure progression from recall -> application -> evaluation."
    )


def format_command_words(profile: BoardProfile) -> str:
    lines = []
    for ao in ("AO1", "AO2", "AO3"):
        words = profile.command_words.get(ao) or ["evaluate", "discuss"]
        label = profile.ao_mapping.get(ao, "Analysis & evaluation")
        lines.append(f"{ao} ({label}): {', '.join(words)}")
    return "\n".join(lines)


def format_conventions(profile: BoardProfile) -> str:
    parts = []
    if profile.sig_figs:
        parts.append(f"{profile.sig_figs} sig figs")
    if profile.g_value:
        parts.append(f"g = {profile.g_value} m/s^2")
    if profile.units:
        parts.append(profile.units)
    if profile.distractor_style:
        parts.append(f"Distractors: {profile.distractor_style}")
    return "; ".join(parts)


def board_guidance(syllabus: Optional[str], level: Optional[str], marks: int) -> str:
    """Prompt block combining profile, AO distribution, command words, conventions."""
    profile = resolve_board_profile(syllabus, level)
    header = f"Board: {profile.board}" + (f" ({profile.level})" if profile.level else "")
    return "\n".join([
        header,
        ao_distribution(marks),
        format_command_words(profile),
        f"Conventions: {format_conventions(profile)}",
    ])
