"""Three-stage peer-review pipeline: generate, cross-review, rate, then aggregate."""

import asyncio
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from config.config_loader import PromptsConfig
from peer_review.errors import PipelineError, PipelineTimeoutError, ValidationError
from peer_review.events import (
    ERROR,
    STAGE_END,
    STAGE_START,
    PipelineEvent,
    PipelineObserver,
    log_event,
)
from peer_review.models import Answer, Rating, Result
from peer_review.retry import DEFAULT_RETRY, RetryPolicy, run_with_retry
from peer_review.roster import ModelRoster, provider_key

logger = logging.getLogger(__name__)

STAGE_GENERATE = "generate"
STAGE_REVIEW = "review"
STAGE_RATE = "rate"
STAGE_AGGREGATE = "aggregate"

MIN_SCORE = 0.0
MAX_SCORE = 10.0

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*(.*?)\s*```$", re.DOTALL)


# --- Prompt builders -------------------------------------------------------

def build_initial_prompt(prompts: PromptsConfig, query: str) -> str:
    return prompts.initial.format(query=query)


def build_peer_review_prompt(
    prompts: PromptsConfig,
    query: str,
    own_answer: str,
    peer_answers: Sequence[str],
) -> str:
    """Peers are labelled positionally (Peer 1, Peer 2, ...) in roster order after the reviewer."""
    peers_block = "\n".join(
        f"Peer {n} answer: {content}" for n, content in enumerate(peer_answers, start=1)
    )
    return prompts.peer_review.format(
        query=query,
        own_answer=own_answer,
        peer_answers=peers_block,
    )


def build_rating_prompt(prompts: PromptsConfig, query: str, finals: Sequence[Answer]) -> str:
    final_block = "\n".join(
        f"{n}. {answer.provider}: {answer.content}" for n, answer in enumerate(finals, start=1)
    )
    score_template = json.dumps(
        {
            "scores": {provider_key(a.provider): 8 for a in finals},
            "feedback": "Brief overall thoughts.",
        }
    )
    return prompts.rating.format(
        query=query,
        count=len(finals),
        final_answers=final_block,
        score_template=score_template,
    )


# --- Rating decoding -------------------------------------------------------

@dataclass(frozen=True)
class ParsedScores:
    """Rater output decoded as a score object."""
    scores: dict[str, float]
    feedback: str


@dataclass(frozen=True)
class RawFeedback:
    """Rater output that was not a well-formed score object."""
    text: str


def _coerce_score(value: Any) -> float:
    if isinstance(value, bool):
        return MIN_SCORE
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return MIN_SCORE
    else:
        return MIN_SCORE
    if number != number:  # NaN
        return MIN_SCORE
    return max(MIN_SCORE, min(MAX_SCORE, number))


def parse_rating(text: str, keys: Iterable[str]) -> ParsedScores | RawFeedback:
    """Decode untrusted rater output. Never raises.

    A well-formed object yields a score for every key in `keys` (missing or
    non-numeric entries become 0, values are clamped to [0, 10]). Anything
    else comes back as RawFeedback carrying the whole text.
    """
    candidate = text.strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group(1)

    try:
        parsed = json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return RawFeedback(text)
    if not isinstance(parsed, dict):
        return RawFeedback(text)

    raw_scores = parsed.get("scores")
    if not isinstance(raw_scores, dict):
        raw_scores = {}
    by_key = {str(k).lower(): v for k, v in raw_scores.items()}

    feedback = parsed.get("feedback")
    return ParsedScores(
        scores={k: _coerce_score(by_key.get(k, MIN_SCORE)) for k in keys},
        feedback=feedback if isinstance(feedback, str) else "",
    )


def rating_from_output(from_provider: str, text: str, keys: Iterable[str]) -> Rating:
    decoded = parse_rating(text, keys)
    if isinstance(decoded, RawFeedback):
        logger.warning("Rating from %s is not valid JSON; keeping raw text as feedback", from_provider)
        return Rating(from_provider=from_provider, scores={}, feedback=decoded.text)
    return Rating(from_provider=from_provider, scores=decoded.scores, feedback=decoded.feedback)


# --- Aggregation -----------------------------------------------------------

def aggregate_scores(keys: Sequence[str], ratings: Sequence[Rating]) -> dict[str, float]:
    """Mean score per provider key across all raters; missing scores count as 0."""
    if not ratings:
        return {k: 0.0 for k in keys}
    return {
        k: sum(r.scores.get(k, 0.0) for r in ratings) / len(ratings)
        for k in keys
    }


def pick_best(scores: dict[str, float]) -> str:
    """Key with the highest score; the first in insertion (roster) order wins ties."""
    best_key: str | None = None
    best_score = float("-inf")
    for key, score in scores.items():
        if score > best_score:
            best_key, best_score = key, score
    if best_key is None:
        raise ValueError("No scores to pick from")
    return best_key


def best_answer_for(best_provider: str, finals: Sequence[Answer]) -> str:
    for answer in finals:
        if provider_key(answer.provider) == best_provider:
            return answer.content
    logger.warning("No final answer matches best provider %r; falling back to first", best_provider)
    return finals[0].content


# --- Orchestration ---------------------------------------------------------

async def _gather_all(aws: Iterable[Awaitable[Any]]) -> list[Any]:
    """Join on every awaitable; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.ensure_future(a) for a in aws]
    try:
        return list(await asyncio.gather(*tasks))
    except Exception:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class _PipelineRun:
    """State for a single query; nothing here is shared across requests."""

    def __init__(
        self,
        query: str,
        roster: ModelRoster,
        prompts: PromptsConfig,
        retry: RetryPolicy,
        on_event: PipelineObserver | None,
        sleep: Callable[[float], Awaitable[None]],
    ) -> None:
        self.query = query
        self.roster = roster
        self.prompts = prompts
        self.retry = retry
        self.on_event = on_event
        self.sleep = sleep
        self.stage = STAGE_GENERATE
        self._stage_started = time.monotonic()

    def emit(self, kind: str, provider: str | None = None, detail: str = "") -> None:
        event = PipelineEvent(
            kind=kind,
            stage=self.stage,
            query=self.query,
            provider=provider,
            detail=detail,
            elapsed_sec=time.monotonic() - self._stage_started,
        )
        log_event(event)
        if self.on_event is not None:
            self.on_event(event)

    def begin(self, stage: str) -> None:
        self.stage = stage
        self._stage_started = time.monotonic()
        self.emit(STAGE_START)

    async def call(self, index: int, prompt: str) -> str:
        stage = self.stage
        name = self.roster[index].name()
        try:
            response = await run_with_retry(
                lambda: self.roster.invoke(index, prompt, stage),
                self.retry,
                label=f"{stage}/{name}",
                sleep=self.sleep,
            )
        except Exception as exc:
            self.emit(ERROR, provider=name, detail=str(exc))
            raise PipelineError(stage, str(exc), provider=name) from exc
        return response.content

    async def execute(self) -> Result:
        n = len(self.roster)
        names = self.roster.names()
        keys = self.roster.keys()

        self.begin(STAGE_GENERATE)
        initial_prompt = build_initial_prompt(self.prompts, self.query)
        contents = await _gather_all(self.call(i, initial_prompt) for i in range(n))
        initials = [Answer(provider=names[i], content=c) for i, c in enumerate(contents)]
        self.emit(STAGE_END, detail=f"{n} initial answers")

        self.begin(STAGE_REVIEW)
        review_prompts = [
            build_peer_review_prompt(
                self.prompts,
                self.query,
                initials[i].content,
                [initials[j].content for j in self.roster.peer_indices(i)],
            )
            for i in range(n)
        ]
        contents = await _gather_all(self.call(i, review_prompts[i]) for i in range(n))
        finals = [Answer(provider=names[i], content=c) for i, c in enumerate(contents)]
        self.emit(STAGE_END, detail=f"{n} refined answers")

        self.begin(STAGE_RATE)
        rating_prompt = build_rating_prompt(self.prompts, self.query, finals)
        outputs = await _gather_all(self.call(i, rating_prompt) for i in range(n))
        ratings = [rating_from_output(names[i], text, keys) for i, text in enumerate(outputs)]
        unparsed = sum(1 for r in ratings if not r.scores)
        self.emit(STAGE_END, detail=f"{n - unparsed}/{n} ratings parsed")

        self.begin(STAGE_AGGREGATE)
        aggregated = aggregate_scores(keys, ratings)
        best_provider = pick_best(aggregated)
        result = Result(
            query=self.query,
            initials=initials,
            finals=finals,
            ratings=ratings,
            aggregated_scores=aggregated,
            best_answer=best_answer_for(best_provider, finals),
            best_provider=best_provider,
            from_cache=False,
        )
        self.emit(STAGE_END, detail=f"best={best_provider} ({aggregated[best_provider]:.2f})")
        return result


async def run_peer_review(
    query: str,
    roster: ModelRoster,
    prompts: PromptsConfig,
    retry: RetryPolicy = DEFAULT_RETRY,
    timeout_sec: float | None = None,
    on_event: PipelineObserver | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Result:
    """Run generate → cross-review → rate → aggregate for one query.

    Args:
        query: The coding question.
        roster: Providers taking part, in pairing/tie-break order.
        prompts: Prompt templates from config.
        retry: Retry policy applied to every model call.
        timeout_sec: Optional deadline for the whole pipeline.
        on_event: Optional observer for stage start/end/error events.
        sleep: Backoff coroutine passed to the retry executor.

    Returns:
        A complete Result with from_cache=False.

    Raises:
        ValidationError: If the query is empty.
        PipelineTimeoutError: If the deadline expires (in-flight calls are cancelled).
        PipelineError: If any model call fails after retries.
    """
    if not query or not query.strip():
        raise ValidationError("Query cannot be empty")

    logger.info("Starting peer review sequence with %d providers", len(roster))
    run = _PipelineRun(query, roster, prompts, retry, on_event, sleep)

    if timeout_sec is None:
        return await run.execute()

    try:
        return await asyncio.wait_for(run.execute(), timeout=timeout_sec)
    except TimeoutError as exc:
        run.emit(ERROR, detail=f"deadline of {timeout_sec:g}s exceeded")
        raise PipelineTimeoutError(run.stage, timeout_sec) from exc
