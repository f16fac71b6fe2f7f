import asyncio

from conftest import FakeChatClient, chat

from decoder.budget import BudgetManager
from decoder.context import RequestContext
from decoder.errors import ProviderError, ProviderTimeout
from decoder.final_answer import format_final_answer, resolve_final_answer
from decoder.normalizer import normalize_mcqs
from decoder.problem_parser import fallback_summary
from decoder.quality_filter import CONCEPTUAL, QUANTITATIVE
from decoder.schemas import PlanStep, ProblemSummary, RefineRequest, SolutionSummary
from decoder.solution import (
    EnrichmentInput,
    clean_applications,
    clean_key_points,
    clean_pitfalls,
    clean_steps,
    enrich_solution,
    ensure_quantitative_steps,
    merge_key_formulas,
    refine_solution,
    split_sentences,
    steps_from_mcqs,
    steps_from_plan,
    top_up_steps,
)


def _mcqs():
    return normalize_mcqs([
        {
            "question": "Which relation applies?",
            "options": ["v = u + at", "F = ma", "p = mv", "W = Fd"],
            "correctAnswer": 0,
            "explanation": "The speed rises by 2.5 m/s each second. So use v = u + at.",
            "calculationStep": {"formula": "v = u + at", "substitution": "10 = 2 + 4a"},
        },
    ], limit=3)


# ─── Post-processing ───────────────────────────────────────────────────────────

def test_clean_steps_drops_generic_and_duplicates():
    raw = ["Proceed step-by-step", "Write v = u + at", "write v = u + at", "", 3]
    assert clean_steps(raw) == ["Write v = u + at", "3"]
    assert len(clean_steps([f"Step {i}" for i in range(10)])) == 6


def test_key_points_disjoint_from_steps():
    steps = ["Write down v = u + at", "Substitute the values"]
    points = clean_key_points(
        ["write down V = u + at", "Uniform acceleration near the surface of the Earth in a vacuum chamber",
         "Use the correct formula", "SI units"],
        steps,
    )
    assert points == ["Uniform acceleration near the surface of the Earth in a", "SI units"]
    assert not {p.lower() for p in points} & {s.lower() for s in steps}


def test_applications_and_pitfalls_exclude_step_like_phrasing():
    assert clean_applications(["Vehicle braking", "Apply the formula", "Projectile sports"]) == [
        "Vehicle braking", "Projectile sports",
    ]
    pits = clean_pitfalls(["Sign error on u", "Substitute carefully", "Unit mix-ups"] + [f"Slip {i}" for i in range(5)])
    assert pits[:2] == ["Sign error on u", "Unit mix-ups"]
    assert len(pits) == 5


def test_steps_from_plan_uses_relation():
    summary = ProblemSummary(
        relations=["v = u + at"],
        plan=[PlanStep(step=1, goal="identify_knowns"), PlanStep(step=2, goal="select_relation")],
    )
    assert steps_from_plan(summary) == [
        "List the known quantities with their units",
        "Select the relation v = u + at",
    ]
    assert steps_from_plan(None) == []


def test_sentence_split_keeps_decimals():
    assert split_sentences("Speed rises by 2.5 m/s each second. So use v = u + at.") == [
        "Speed rises by 2.5 m/s each second.",
        "So use v = u + at.",
    ]
    assert steps_from_mcqs(_mcqs()) == ["The speed rises by 2.5 m/s each second"]


def test_quantitative_steps_get_relation_and_substitution():
    steps = ensure_quantitative_steps(["Find the acceleration"], ["v = u + at"], ["10 = 2 + 4a"])
    assert steps == [
        "Write down the governing relation v = u + at",
        "Find the acceleration",
        "Substitute the known values: 10 = 2 + 4a",
    ]
    already = ["Use v = u + at", "Put 10 = 2 + 4a"]
    assert ensure_quantitative_steps(already, ["v = u + at"], ["10 = 2 + 4a"]) == already


def test_merge_key_formulas():
    merged = merge_key_formulas(["v = u + at", "not a formula"], ["v=u+at", "F = m a"], ["s = ut + 0.5 a t^2", "p = mv"])
    assert merged == ["v=u+at", "F=ma", "s=ut+0.5at^2"]


# ─── Concurrent stages ─────────────────────────────────────────────────────────

def test_enrich_solution_uses_both_stages():
    client = FakeChatClient({
        "synth": [chat({"workingSteps": ["Write v = u + at", "Put 10 = 2 + 4a", "Solve a = 2"],
                        "keyPoints": ["Write v = u + at", "Constant acceleration"],
                        "applications": ["Car safety testing"]})],
        "pitfalls": [chat({"pitfalls": ["Mixing up u and v"]})],
    })
    ctx = RequestContext(client)
    base = SolutionSummary(final_answer="2", unit="m/s^2", key_formulas=["v=u+at"])
    solution = asyncio.run(enrich_solution(ctx, EnrichmentInput(mcqs=_mcqs(), base=base, mode=QUANTITATIVE)))

    assert solution.working_steps == ["Write v = u + at", "Put 10 = 2 + 4a", "Solve a = 2"]
    assert solution.key_points == ["Constant acceleration"]
    assert solution.applications == ["Car safety testing"]
    assert solution.pitfalls == ["Mixing up u and v"]
    assert solution.final_answer == "2"
    assert sorted(client.stages()) == ["pitfalls", "synth"]
    assert ctx.usage.report().stages["synth"].total_tokens == 100


def test_one_stage_failing_does_not_block_the_other():
    client = FakeChatClient({
        "synth": [ProviderTimeout("timed out")],
        "pitfalls": [chat({"pitfalls": ["Forgetting units"]})],
    })
    ctx = RequestContext(client)
    solution = asyncio.run(enrich_solution(ctx, EnrichmentInput(
        mcqs=_mcqs(), base=SolutionSummary(), mode=CONCEPTUAL, summary=fallback_summary(2),
    )))
    assert solution.pitfalls == ["Forgetting units"]
    assert solution.working_steps == [
        "List the known quantities with their units",
        "Select the relation that links the knowns to the unknown",
        "The speed rises by 2.5 m/s each second",
    ]


def test_second_reservation_sees_the_first():
    client = FakeChatClient({"synth": [chat({"workingSteps": ["A step"]})]})
    ctx = RequestContext(client, BudgetManager(700))
    asyncio.run(enrich_solution(ctx, EnrichmentInput(mcqs=_mcqs(), base=SolutionSummary())))
    # room for one prompt + ceiling only: synth runs, pitfalls is skipped
    assert client.stages() == ["synth"]
    assert ctx.budget.remaining == 600


def test_short_synthesis_is_topped_up_from_the_plan():
    client = FakeChatClient({
        "synth": [chat({"workingSteps": ["Recall the definition of inertia", "Match it to the options"]})],
    })
    solution = asyncio.run(enrich_solution(RequestContext(client), EnrichmentInput(
        mcqs=[], base=SolutionSummary(), mode=CONCEPTUAL, summary=fallback_summary(1),
    )))
    assert solution.working_steps == [
        "Recall the definition of inertia",
        "Match it to the options",
        "List the known quantities with their units",
    ]


def test_no_step_source_still_yields_three_steps():
    solution = asyncio.run(enrich_solution(
        RequestContext(FakeChatClient()), EnrichmentInput(mcqs=[], base=SolutionSummary()),
    ))
    assert 3 <= len(solution.working_steps) <= 6


def test_top_up_skips_duplicates_and_stops_at_three():
    steps = top_up_steps(["Find a"], ["find a", "Find b"], ["Find c", "Find d"])
    assert steps == ["Find a", "Find b", "Find c"]
    assert len(top_up_steps([f"Step {i}" for i in range(8)])) == 6


def test_refine_falls_back_to_callers_fields():
    client = FakeChatClient({"synth": [ProviderError("boom", status_code=500)], "pitfalls": [chat("not json")]})
    request = RefineRequest.model_validate({
        "originalText": "Why is the sky blue?",
        "mcqs": [],
        "solution": {"workingSteps": ["Recall Rayleigh scattering"], "keyPoints": ["Short wavelengths scatter more"],
                     "pitfalls": ["Confusing reflection with scattering"]},
    })
    response = asyncio.run(refine_solution(RequestContext(client), request))
    assert response.working_steps[0] == "Recall Rayleigh scattering"
    assert len(response.working_steps) == 3
    assert response.key_points == ["Short wavelengths scatter more"]
    assert response.pitfalls == ["Confusing reflection with scattering"]


# ─── Final answer ──────────────────────────────────────────────────────────────

def test_format_final_answer():
    assert format_final_answer({"x": 2, "y": "3"}) == "x: 2, y: 3"
    assert format_final_answer(2.5) == "2.5"
    assert format_final_answer(None) == ""


def test_final_answer_call_and_threshold():
    client = FakeChatClient({"finalize": [chat({"finalAnswer": {"a": 2}, "unit": "m/s^2"})]})
    answer = asyncio.run(resolve_final_answer(RequestContext(client), "Find a.", _mcqs()))
    assert answer == ("a: 2", "m/s^2")

    starved = RequestContext(FakeChatClient(), BudgetManager(200))
    starved.budget.consume({"total_tokens": 100})
    assert asyncio.run(resolve_final_answer(starved, "Find a.", [])) == ("", "")
    assert starved.client.calls == []
