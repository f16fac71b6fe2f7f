"""
Usage Tracker

Collects provider-reported token usage per pipeline stage so the response
can report ``usage.stages`` and ``usage.totals``.
"""

from typing import Any, Dict, Mapping, Optional

from decoder.schemas import TokenUsage, UsageReport

STAGES = ("parse", "generate", "replace", "synth", "pitfalls", "finalize")
_FIELDS = ("prompt_tokens", "completion_tokens", "total_tokens")


def _as_usage(raw: Optional[Mapping[str, Any]]) -> Optional[TokenUsage]:
    if not raw:
        return None
    prompt = int(raw.get("prompt_tokens") or 0)
    completion = int(raw.get("completion_tokens") or 0)
    total = raw.get("total_tokens")
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=int(total) if total is not None else prompt + completion,
    )


class UsageTracker:

    def __init__(self, stages=STAGES):
        self._stages: Dict[str, Optional[TokenUsage]] = {name: None for name in stages}

    def record(self, stage: str, usage: Optional[Mapping[str, Any]]) -> None:
        """Add one call's usage to ``stage`` (several calls in a stage are summed)."""
        incoming = _as_usage(usage)
        if incoming is None:
            return
        current = self._stages.get(stage)
        if current is None:
            self._stages[stage] = incoming
            return
        self._stages[stage] = TokenUsage(
            **{f: getattr(current, f) + getattr(incoming, f) for f in _FIELDS}
        )

    def report(self) -> UsageReport:
        totals = TokenUsage()
        for usage in self._stages.values():
            if usage is None:
                continue
            totals = TokenUsage(**{f: getattr(totals, f) + getattr(usage, f) for f in _FIELDS})
        return UsageReport(stages=dict(self._stages), totals=totals)
