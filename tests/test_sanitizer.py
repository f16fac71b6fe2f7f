import pytest

from decoder.errors import ValidationError
from decoder.sanitizer import (
    build_header,
    clamp_budget,
    clamp_marks,
    looks_like_multiple_questions,
    normalize_math_text,
    sanitize_request,
)
from decoder.schemas import DecodeRequest, ImageInput


def test_math_glyphs_become_ascii():
    out = normalize_math_text("F = m × a, θ = 30°, 5 µF, x² ≤ 4 − y")
    assert "*" in out and "theta" in out
    assert "30 deg" in out
    assert "5 uF" in out
    assert "x^2 <= 4 - y" in out


def test_degree_celsius_kept_as_unit():
    assert normalize_math_text("heated to 40 °C") == "heated to 40  degC"


def test_lettered_parts_are_multiple_questions():
    assert looks_like_multiple_questions("(a) Find x. (b) Find y.")
    assert looks_like_multiple_questions("a) Find the tension.\nb) Find the acceleration.")


def test_numbered_lines_are_multiple_questions():
    assert looks_like_multiple_questions("1. Define work.\n2. Define power.")


def test_single_question_is_not_flagged():
    assert not looks_like_multiple_questions(
        "A car accelerates from 2 m/s to 10 m/s over 4 s. Find acceleration."
    )
    assert not looks_like_multiple_questions("Show that (a + b)^2 = a^2 + 2ab + b^2.")


def test_symbol_labels_are_not_parts():
    assert not looks_like_multiple_questions(
        "A ball is dropped from a height (h) of 20 m. Taking the gravitational field "
        "strength (g) as 9.8 N/kg, find the time to reach the ground."
    )
    assert not looks_like_multiple_questions("A resistor carries current (i) at voltage (v). Find the power.")


def test_lettered_parts_must_start_at_a():
    assert not looks_like_multiple_questions("(g) Take g as 9.8. (h) Is the height.")
    assert looks_like_multiple_questions("Answer both parts: (a) find u. (b) find v.")


def test_clamps():
    assert clamp_marks(None) == 3
    assert clamp_marks(0) == 1
    assert clamp_marks(20) == 8
    assert clamp_budget(None) == 0
    assert clamp_budget(0) == 0
    assert clamp_budget(50) == 200
    assert clamp_budget(5_000_000) == 1_000_000


def test_empty_submission_rejected():
    with pytest.raises(ValidationError) as exc:
        sanitize_request(DecodeRequest(text="   "))
    assert exc.value.status_code == 400


def test_multiple_questions_rejected_without_image():
    with pytest.raises(ValidationError) as exc:
        sanitize_request(DecodeRequest(text="(a) Find x. (b) Find y."))
    assert exc.value.code == "MULTIPLE_QUESTIONS"


def test_multiple_questions_allowed_with_image():
    image = ImageInput(data="aGVsbG8=", mime_type="image/png")
    clean = sanitize_request(DecodeRequest(text="(a) Find x. (b) Find y.", images=[image]))
    assert clean.images == [image]


def test_images_without_payload_are_dropped():
    clean = sanitize_request(
        DecodeRequest(text="Find x.", images=[ImageInput(data="", mime_type="image/png")])
    )
    assert clean.images == []


def test_sanitized_fields(car_problem):
    clean = sanitize_request(DecodeRequest(text=car_problem + "\n\n", marks=12, max_tokens=0, subject="Physics"))
    assert clean.text == car_problem
    assert clean.marks == 8
    assert clean.budget == 0
    assert clean.has_digits
    assert clean.header == "Subject: Physics"


def test_header_skips_blank_parts():
    assert build_header("Physics", "", "A-level") == "Subject: Physics • Level: A-level"
    assert build_header() == ""
