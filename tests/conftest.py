import json
import os

import pytest

from decoder.config import Settings
from decoder.gpt_client import ChatResult

# Never pick up a developer's real provider config from the environment.
os.environ.pop("DECODER_DEBUG_BYPASS", None)


# System-prompt fragments that identify which stage issued a call.
STAGE_MARKERS = {
    "parse": "exam problem analyser",
    "generate": "scaffolded MCQs",
    "replace": "You write exam-quality MCQs.",
    "synth": "summarise worked solutions",
    "pitfalls": "common student mistakes",
    "finalize": "final answers tersely",
    "augment": "rewrite OCR output",
}


def stage_of(messages):
    system = next((m["content"] for m in messages if m.get("role") == "system"), "")
    for stage, marker in STAGE_MARKERS.items():
        if marker in system:
            return stage
    return "other"


def chat(content="", finish_reason="stop", prompt_tokens=50, completion_tokens=50, deployment="primary"):
    if not isinstance(content, str):
        content = json.dumps(content)
    return ChatResult(
        content=content,
        finish_reason=finish_reason,
        usage={
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
        deployment=deployment,
    )


class FakeChatClient:
    """
    Scripted stand-in for AzureChatClient.

    ``script`` is either a list (served in order to any caller) or a dict of
    stage name -> list. Items are ChatResults or exceptions to raise. An
    exhausted queue answers with empty content.
    """

    def __init__(self, script=None, primary="primary", fallback=None):
        self.script = script if script is not None else []
        self.calls = []
        self.primary_deployment = primary
        self.fallback_deployment = fallback

    def _next(self, stage):
        queue = self.script if isinstance(self.script, list) else self.script.get(stage, [])
        return queue.pop(0) if queue else None

    async def complete(self, messages, *, deployment=None, response_format="json_object",
                       temperature=0.2, max_tokens=None, timeout=10.0):
        stage = stage_of(messages)
        model = deployment or self.primary_deployment
        self.calls.append({
            "stage": stage,
            "messages": messages,
            "deployment": model,
            "response_format": response_format,
            "max_tokens": max_tokens,
        })
        item = self._next(stage)
        if isinstance(item, BaseException):
            raise item
        if item is None:
            return ChatResult(content="", finish_reason="stop", usage=None, deployment=model)
        item.deployment = model
        return item

    def stages(self):
        return [c["stage"] for c in self.calls]


def has_image(messages):
    for message in messages:
        content = message.get("content")
        if isinstance(content, list) and any(p.get("type") == "image_url" for p in content):
            return True
    return False


@pytest.fixture()
def settings():
    return Settings(
        endpoint="https://example.openai.azure.com",
        api_key="test_key",
        deployment="primary",
        fallback_deployment="",
        api_version="2024-06-01",
        use_max_completion_tokens=False,
        search_endpoint="",
        search_index="",
        search_key="",
        search_api_version="2023-11-01",
        debug_bypass=False,
    )


@pytest.fixture()
def car_problem():
    return "A car accelerates from 2 m/s to 10 m/s over 4 s. Find acceleration."


@pytest.fixture()
def car_script():
    """Provider responses for the uniformly-accelerating car problem."""
    parse = {
        "quantities": [
            {"name": "initial velocity", "symbol": "u", "value": 2, "unit": "m/s", "known": True},
            {"name": "final velocity", "symbol": "v", "value": 10, "unit": "m/s", "known": True},
            {"name": "time", "symbol": "t", "value": 4, "unit": "s", "known": True},
            {"name": "acceleration", "symbol": "a", "known": False},
        ],
        "relations": ["v = u + at"],
        "targets": ["acceleration"],
        "constraints": ["uniform acceleration"],
        "context": "A car speeding up uniformly.",
        "subjectHint": "quantitative",
        "plan": [
            {"step": 1, "goal": "select_relation", "mustProduce": "formula"},
            {"step": 2, "goal": "substitute", "mustProduce": "number"},
            {"step": 3, "goal": "evaluate", "mustProduce": "number"},
        ],
    }
    generate = {
        "mcqs": [
            {
                "step": 1,
                "question": "Which relation links initial velocity, final velocity, acceleration and time?",
                "options": ["v = u + at", "s = ut + 0.5at^2", "v^2 = u^2 + 2as", "F = ma"],
                "correctAnswer": 0,
                "hint": "Hint: You know u, v and t.",
                "explanation": "v = u + at uses exactly u, v, a and t.",
                "calculationStep": {"formula": "v = u + at"},
            },
            {
                "step": 2,
                "question": "Putting the numbers into the relation, which equation is correct?",
                "options": ["10 = 2 + 4a", "2 = 10 + 4a", "10 = 2a + 4", "10 = 2 + a/4"],
                "correctAnswer": "A",
                "hint": "Hint: u is the starting speed.",
                "explanation": "From v = u + at with u = 2, v = 10 and t = 4: 10 = 2 + 4a.",
                "calculationStep": {"formula": "v = u + at", "substitution": "10 = 2 + 4a"},
            },
            {
                "step": 3,
                "question": "What is the acceleration of the car?",
                "options": ["A) 2 m/s^2", "B) 3 m/s^2", "C) 0.5 m/s^2", "D) 8 m/s^2"],
                "correctAnswer": 0,
                "hint": "Hint: Rearrange 10 = 2 + 4a.",
                "explanation": "Rearranging v = u + at gives a = (10 - 2) / 4 = 2 m/s^2.",
                "calculationStep": {"formula": "a = (v - u) / t", "result": "2 m/s^2"},
            },
        ],
        "solution": {"finalAnswer": "2", "unit": "m/s^2", "keyFormulas": ["v = u + at"]},
    }
    synth = {
        "workingSteps": [
            "Write down v = u + at",
            "Substitute 10 = 2 + 4a",
            "Solve for a = 2 m/s^2",
        ],
        "keyPoints": ["Uniform acceleration assumed", "Write down v = u + at", "SI units throughout"],
        "applications": ["Vehicle braking distances", "Use the formula twice"],
    }
    pitfalls = {
        "pitfalls": [
            "Swapping initial and final velocity",
            "Dividing by time before subtracting u",
            "Apply F = ma instead",
        ]
    }
    return {
        "parse": [chat(parse)],
        "generate": [chat(generate, completion_tokens=600)],
        "synth": [chat(synth)],
        "pitfalls": [chat(pitfalls)],
    }
