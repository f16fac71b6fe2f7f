"""
Request-scoped state shared by the pipeline stages.

One RequestContext per decode request: it owns the BudgetManager and the
UsageTracker, and funnels every provider call through ``call`` so that
allocation, usage recording and budget deduction happen the same way for
every stage.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from decoder.budget import BudgetManager, StageBudget, estimate_tokens
from decoder.gpt_client import ChatResult
from decoder.usage_tracker import UsageTracker

log = logging.getLogger("decoder.pipeline")


def estimate_messages(messages: List[Dict[str, Any]]) -> int:
    texts: List[str] = []
    images = 0
    for message in messages:
        content = message.get("content")
        if isinstance(content, str):
            texts.append(content)
            continue
        for part in content or []:
            if part.get("type") == "image_url":
                images += 1
            else:
                texts.append(str(part.get("text") or ""))
    return estimate_tokens(*texts, images=images)


@dataclass(frozen=True)
class Reservation:
    max_tokens: int
    held: int


class RequestContext:

    def __init__(self, client: Any, budget: Optional[BudgetManager] = None):
        self.client = client
        self.budget = budget or BudgetManager(0)
        self.usage = UsageTracker()

    def allocate(self, messages: List[Dict[str, Any]], stage: StageBudget) -> Optional[int]:
        return self.budget.allocate(estimate_messages(messages), stage)

    def reserve(self, messages: List[Dict[str, Any]], stage: StageBudget) -> Optional[Reservation]:
        """Allocate and hold prompt + ceiling before a concurrent call is launched."""
        prompt = estimate_messages(messages)
        ceiling = self.budget.allocate(prompt, stage)
        if ceiling is None:
            return None
        return Reservation(max_tokens=ceiling, held=self.budget.hold(prompt + ceiling))

    async def call(
        self,
        stage_name: str,
        messages: List[Dict[str, Any]],
        stage: StageBudget,
        *,
        timeout: float,
        response_format: Optional[str] = "json_object",
        temperature: float = 0.2,
        deployment: Optional[str] = None,
        reservation: Optional[Reservation] = None,
    ) -> Optional[ChatResult]:
        """
        Budget-gated provider call.

        Returns None when the budget cannot cover ``stage.minimum``.
        Provider errors propagate; the hold (if any) is always released.
        """
        held = 0
        if reservation is not None:
            max_tokens, held = reservation.max_tokens, reservation.held
        else:
            max_tokens = self.allocate(messages, stage)
            if max_tokens is None:
                log.info(f"[{stage_name.upper()}] skipped: budget exhausted")
                return None

        result: Optional[ChatResult] = None
        try:
            result = await self.client.complete(
                messages,
                deployment=deployment,
                response_format=response_format,
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=timeout,
            )
        finally:
            usage = result.usage if result is not None else None
            self.usage.record(stage_name, usage)
            self.budget.consume(usage, held=held)
        return result
