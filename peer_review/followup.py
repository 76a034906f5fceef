"""Follow-up conversation pinned to the winning provider of a prior result."""

import asyncio
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable

from peer_review.errors import FollowupLimitError, PipelineError, ValidationError
from peer_review.models import FollowupContext, FollowupHistoryItem, FollowupResult, Result
from peer_review.retry import DEFAULT_RETRY, RetryPolicy, run_with_retry
from peer_review.roster import ModelRoster

logger = logging.getLogger(__name__)

STAGE_FOLLOWUP = "followup"

MAX_FOLLOWUPS = 5
FULL_RUN_COST = 3.0            # rough cost of one full pipeline run, USD
FOLLOWUP_COST_MULTIPLIER = 0.17


def estimate_followup_cost(
    full_run_cost: float = FULL_RUN_COST,
    cost_multiplier: float = FOLLOWUP_COST_MULTIPLIER,
) -> float:
    """Static estimate: a fixed fraction of a full run, not measured usage."""
    return full_run_cost * cost_multiplier


def context_from_result(result: Result) -> FollowupContext:
    """Seed a follow-up chain from a finished pipeline result."""
    return FollowupContext(
        original_query=result.query,
        chosen_answer=result.best_answer,
        chosen_provider=result.best_provider,
        score=result.aggregated_scores.get(result.best_provider, 0.0),
        followup_chain=(),
    )


def build_followup_prompt(context: FollowupContext, followup_query: str) -> str:
    parts = [
        "You are an expert coding assistant. You previously answered this query:",
        f"**Original Query:** {context.original_query}",
        f"**Your Answer (Score: {context.score:.1f}/10):**\n{context.chosen_answer}",
    ]
    if context.followup_chain:
        turns = [
            f"{n}. Q: {item.question}\n   A: {item.answer}"
            for n, item in enumerate(context.followup_chain, start=1)
        ]
        parts.append("**Previous Follow-up Conversation:**\n" + "\n\n".join(turns))
    parts.append(f"**New Follow-up Question:** {followup_query}")
    parts.append(
        "Please provide a clear, accurate, and complete answer to this follow-up question. "
        "Build upon your previous answer and the conversation history. "
        "Include code snippets if relevant, and explain any changes or additions clearly."
    )
    return "\n\n".join(parts)


class FollowupEngine:
    """Extends a chosen answer turn by turn; never mutates the caller's context."""

    def __init__(
        self,
        roster: ModelRoster,
        retry: RetryPolicy = DEFAULT_RETRY,
        max_followups: int = MAX_FOLLOWUPS,
        full_run_cost: float = FULL_RUN_COST,
        cost_multiplier: float = FOLLOWUP_COST_MULTIPLIER,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._roster = roster
        self._retry = retry
        self._max_followups = max_followups
        self._full_run_cost = full_run_cost
        self._cost_multiplier = cost_multiplier
        self._clock = clock
        self._sleep = sleep

    @property
    def max_followups(self) -> int:
        return self._max_followups

    def estimate_cost(self) -> float:
        return estimate_followup_cost(self._full_run_cost, self._cost_multiplier)

    def remaining(self, context: FollowupContext) -> int:
        return max(0, self._max_followups - len(context.followup_chain))

    def _validate(self, followup_query: str, context: FollowupContext) -> int:
        if not followup_query or not followup_query.strip():
            raise ValidationError("Follow-up query cannot be empty")
        if not context.original_query or not context.chosen_answer or not context.chosen_provider:
            raise ValidationError("Invalid context: missing required fields")
        if len(context.followup_chain) >= self._max_followups:
            raise FollowupLimitError(self._max_followups)
        index = self._roster.index_of(context.chosen_provider)
        if index is None:
            raise ValidationError(f"Unknown provider in context: {context.chosen_provider}")
        return index

    async def process(self, followup_query: str, context: FollowupContext) -> FollowupResult:
        """Ask the winning provider a follow-up question with the full chain as context.

        Raises:
            ValidationError: Empty question, incomplete context or unknown provider.
            FollowupLimitError: The chain already holds max_followups turns.
            PipelineError: The provider call failed after retries.
        """
        index = self._validate(followup_query, context)
        provider_name = self._roster[index].name()
        logger.info("Processing follow-up for provider: %s", provider_name)

        prompt = build_followup_prompt(context, followup_query)
        try:
            response = await run_with_retry(
                lambda: self._roster.invoke(index, prompt, STAGE_FOLLOWUP),
                self._retry,
                label=f"{STAGE_FOLLOWUP}/{provider_name}",
                sleep=self._sleep,
            )
        except Exception as exc:
            raise PipelineError(STAGE_FOLLOWUP, str(exc), provider=provider_name) from exc

        now = self._clock()
        updated = dataclasses.replace(
            context,
            followup_chain=(
                *context.followup_chain,
                FollowupHistoryItem(question=followup_query, answer=response.content, timestamp=now),
            ),
        )
        logger.info("Follow-up completed. Chain length: %d", len(updated.followup_chain))

        return FollowupResult(
            followup_query=followup_query,
            answer=response.content,
            provider=context.chosen_provider,
            estimated_cost=self.estimate_cost(),
            timestamp=now,
            context=updated,
        )
