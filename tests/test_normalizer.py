from decoder.normalizer import (
    GENERIC_HINT,
    PLACEHOLDER_OPTIONS,
    coerce_answer_index,
    default_hint,
    normalize_mcqs,
    normalize_options,
)
from decoder.quality_filter import CONCEPTUAL, QUANTITATIVE, filter_candidates, rejection_reason


def _item(question="Which relation applies?", options=None, **extra):
    item = {"question": question, "options": options or ["v = u + at", "F = ma", "p = mv", "W = Fd"]}
    item.update(extra)
    return item


def test_options_from_letter_object():
    raw = {"d": "four", "A": "one", "B": "two", "C": "three"}
    assert normalize_options(raw) == ["one", "two", "three", "four"]


def test_options_from_objects_with_prefixes():
    raw = [{"text": "A) 2 m/s^2"}, {"value": "(B) 3 m/s^2"}, {"label": "C. 4 m/s^2"}, "D: 5 m/s^2"]
    assert normalize_options(raw) == ["2 m/s^2", "3 m/s^2", "4 m/s^2", "5 m/s^2"]


def test_unusable_options_become_placeholder():
    assert normalize_options(["only", "three", "here"]) == PLACEHOLDER_OPTIONS
    assert normalize_options(["A", "B", "C", "D"]) == PLACEHOLDER_OPTIONS
    assert normalize_options(None) == PLACEHOLDER_OPTIONS


def test_answer_index_forms():
    options = ["one", "two", "three", "four"]
    assert coerce_answer_index(2) == 2
    assert coerce_answer_index("3") == 3
    assert coerce_answer_index("B") == 1
    assert coerce_answer_index("(d)") == 3
    assert coerce_answer_index("three", options) == 2
    assert coerce_answer_index(9) == 3
    assert coerce_answer_index(-1) == 0
    assert coerce_answer_index(None) == 0


def test_question_aware_default_hints():
    assert "Differentiate" in default_hint("Find dy/dx for y = x^3")
    assert "power by one" in default_hint("Evaluate the integral of 2x from 0 to 1")
    assert "components" in default_hint("Find the resultant of the two vectors")
    assert "F = ma" in default_hint("Find the tension in the string")
    assert default_hint("Name the capital of France") == GENERIC_HINT


def test_normalize_mcqs_shape_and_limit():
    raw = [
        _item("Q1", correctAnswer="C"),
        _item("Q2", hint="", explanation=None),
        _item("Q1", correctAnswer="C"),
        {"question": ""},
        "garbage",
        _item("Q3"),
        _item("Q4"),
    ]
    mcqs = normalize_mcqs(raw, limit=3)
    assert [m.question for m in mcqs] == ["Q1", "Q2", "Q3"]
    assert [m.step for m in mcqs] == [1, 2, 3]
    assert [m.id for m in mcqs] == ["mcq-1", "mcq-2", "mcq-3"]
    assert mcqs[0].correct_answer == 2
    assert mcqs[1].hint == GENERIC_HINT
    assert mcqs[1].explanation.startswith("The correct choice is")
    for m in mcqs:
        assert len(m.options) == 4 and 0 <= m.correct_answer <= 3


def test_short_lists_are_not_padded():
    assert len(normalize_mcqs([_item("Only one")], limit=5)) == 1


def test_normalization_is_idempotent():
    raw = [
        _item("Q1", options={"A": "a) x", "B": "y", "C": "z", "D": "w"}, correctAnswer="D", hint="h" * 400),
        _item("Q2", options=["A", "B", "C", "D"], correctAnswer=3, calculationStep={"formula": "v = u + at"}),
    ]
    once = normalize_mcqs(raw, limit=3)
    twice = normalize_mcqs(once, limit=3)
    assert [m.model_dump() for m in once] == [m.model_dump() for m in twice]
    wire = [m.model_dump(by_alias=True) for m in once]
    assert [m.model_dump() for m in normalize_mcqs(wire, limit=3)] == [m.model_dump() for m in once]


def test_filter_drops_meta_options():
    bad = _item(options=["State the formula", "Substitute values", "Compute result", "None of the above"])
    assert rejection_reason(bad, QUANTITATIVE).startswith("meta option")


def test_filter_drops_verbatim_recall():
    item = _item("What is the mass given in the question?")
    assert rejection_reason(item, QUANTITATIVE) == "verbatim recall"
    assert rejection_reason(_item("Refer to the statement: which law applies?"), CONCEPTUAL) == "verbatim recall"


def test_filter_multi_fact_only_in_conceptual_mode():
    item = _item("Which two properties define a vector?")
    assert rejection_reason(item, CONCEPTUAL) == "multi-fact conceptual"
    assert rejection_reason(item, QUANTITATIVE) == ""


def test_filter_option_count():
    assert rejection_reason(_item(options=["a", "b", "c"]), QUANTITATIVE) == "3 options"


def test_filter_candidates_split():
    kept, dropped = filter_candidates([_item(), _item("What is the time given?"), "x"], QUANTITATIVE)
    assert len(kept) == 1
    assert dropped == ["verbatim recall", "not an object"]


def test_placeholder_options_pass_the_filter():
    assert rejection_reason(_item(options=list(PLACEHOLDER_OPTIONS)), QUANTITATIVE) == ""


def test_non_finite_answer_index_falls_back_to_first():
    assert coerce_answer_index(float("nan")) == 0
    assert coerce_answer_index(float("inf")) == 0
    assert coerce_answer_index(2.0) == 2
    mcqs = normalize_mcqs([_item(correctAnswer=float("nan"))], limit=1)
    assert mcqs[0].correct_answer == 0
