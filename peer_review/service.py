"""Submission service: cache lookup, pipeline run, cache store, history append."""

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable

from config.config_loader import PromptsConfig
from peer_review.cache import ResultCache
from peer_review.errors import ValidationError
from peer_review.events import PipelineObserver
from peer_review.followup import FollowupEngine
from peer_review.history import DEFAULT_USER, HistoryLedger
from peer_review.models import FollowupContext, FollowupResult, HistoryEntry, Result
from peer_review.pipeline import run_peer_review
from peer_review.retry import DEFAULT_RETRY, RetryPolicy
from peer_review.roster import ModelRoster

logger = logging.getLogger(__name__)


class PeerReviewService:
    """Request-scoped entry point; the cache and ledger are the only shared state."""

    def __init__(
        self,
        roster: ModelRoster,
        prompts: PromptsConfig,
        cache: ResultCache,
        ledger: HistoryLedger,
        followups: FollowupEngine | None = None,
        retry: RetryPolicy = DEFAULT_RETRY,
        timeout_sec: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.roster = roster
        self.prompts = prompts
        self.cache = cache
        self.ledger = ledger
        self.followups = followups or FollowupEngine(roster, retry=retry, sleep=sleep)
        self._retry = retry
        self._timeout_sec = timeout_sec
        self._sleep = sleep

    async def submit(
        self,
        query: str,
        user_id: str | None = None,
        on_event: PipelineObserver | None = None,
    ) -> Result:
        """Answer a query, from cache when possible, and record it in history."""
        entry = await self.submit_entry(query, user_id, on_event)
        return entry.result

    async def submit_entry(
        self,
        query: str,
        user_id: str | None = None,
        on_event: PipelineObserver | None = None,
    ) -> HistoryEntry:
        """Like submit, but returns the HistoryEntry recorded for the query.

        Raises:
            ValidationError: Empty query.
            PipelineError: Any stage failed; nothing is cached or recorded.
            LedgerError: The history write failed.
        """
        query = (query or "").strip()
        if not query:
            raise ValidationError("Query cannot be empty")
        user_id = user_id or DEFAULT_USER

        cached = await self.cache.get(query)
        if cached is not None:
            result = dataclasses.replace(cached, from_cache=True)
        else:
            result = await run_peer_review(
                query,
                self.roster,
                self.prompts,
                retry=self._retry,
                timeout_sec=self._timeout_sec,
                on_event=on_event,
                sleep=self._sleep,
            )
            await self.cache.set(query, result)

        entry = await self.ledger.append(user_id, query, result, cache_hit=result.from_cache)
        logger.info(
            "Query answered (%s), best=%s",
            "cache" if result.from_cache else "pipeline",
            result.best_provider,
        )
        return entry

    async def followup(self, followup_query: str, context: FollowupContext) -> FollowupResult:
        return await self.followups.process(followup_query, context)

    def estimate_followup_cost(self) -> float:
        return self.followups.estimate_cost()
