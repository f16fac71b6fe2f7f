"""
Per-request token budget.

``remaining`` starts at the caller's total budget (0 = unlimited) and only
ever decreases. Each stage asks ``allocate`` for a completion ceiling
before calling the provider and reports the provider's usage through
``consume`` afterwards.

Concurrent stages (synthesis + pitfalls) first ``hold`` their full
allocation one after the other, so the second allocation already sees the
first; the holds are released when their usage is consumed.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

log = logging.getLogger("decoder.pipeline")

CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 12
IMAGE_TOKEN_ESTIMATE = 850


def estimate_tokens(*texts: str, images: int = 0) -> int:
    """Length-based prompt estimate (chars / 4, rounded up) plus fixed overheads."""
    chars = sum(len(t or "") for t in texts)
    return -(-chars // CHARS_PER_TOKEN) + MESSAGE_OVERHEAD_TOKENS + images * IMAGE_TOKEN_ESTIMATE


def usage_total(usage: Optional[Mapping[str, Any]]) -> int:
    """Provider ``total_tokens``, or prompt + completion when no total is reported."""
    if not usage:
        return 0
    total = usage.get("total_tokens")
    if total is None:
        total = int(usage.get("prompt_tokens") or 0) + int(usage.get("completion_tokens") or 0)
    return max(0, int(total or 0))


@dataclass(frozen=True)
class StageBudget:
    """Completion-token cap + minimum viable completion for one stage."""
    cap: int
    minimum: int


class BudgetManager:

    def __init__(self, global_budget: int = 0):
        self.global_budget = max(0, int(global_budget or 0))
        self.remaining = self.global_budget
        self._held = 0

    @property
    def unlimited(self) -> bool:
        return self.global_budget == 0

    @property
    def available(self) -> int:
        return max(0, self.remaining - self._held)

    def allocate(self, prompt_tokens: int, stage: StageBudget) -> Optional[int]:
        """
        Completion ceiling for a call whose prompt is ~``prompt_tokens`` long.

        Unlimited budget → ``stage.cap``. Otherwise
        ``min(cap, available - prompt_tokens)``, or None when that falls
        below ``stage.minimum`` (the caller skips the call).
        """
        if self.unlimited:
            return stage.cap
        ceiling = max(0, self.available - max(0, prompt_tokens))
        if ceiling < stage.minimum:
            log.info(
                f"[BUDGET] skip: need {stage.minimum}+{prompt_tokens}, available {self.available}"
            )
            return None
        return min(stage.cap, ceiling)

    def can_afford(self, tokens: int) -> bool:
        return self.unlimited or self.available >= tokens

    def hold(self, tokens: int) -> int:
        """Reserve tokens for an in-flight call; returns the amount held."""
        if self.unlimited or tokens <= 0:
            return 0
        amount = min(tokens, self.available)
        self._held += amount
        return amount

    def consume(self, usage: Optional[Mapping[str, Any]], held: int = 0) -> int:
        """Deduct reported usage (floored at 0) and release ``held``. Returns tokens deducted."""
        self._held = max(0, self._held - max(0, held))
        spent = usage_total(usage)
        if self.unlimited:
            return spent
        deducted = min(spent, self.remaining)
        self.remaining -= deducted
        return deducted

    def snapshot(self) -> dict:
        if self.unlimited:
            return {"global_budget": None, "remaining_budget": None}
        return {"global_budget": self.global_budget, "remaining_budget": self.remaining}
