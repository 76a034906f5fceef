"""Tests for peer_review/pipeline.py."""

import json

import pytest

from peer_review.errors import PipelineError, PipelineTimeoutError, ValidationError
from peer_review.events import ERROR, STAGE_END, STAGE_START
from peer_review.models import Answer, Rating
from peer_review.pipeline import (
    ParsedScores,
    RawFeedback,
    aggregate_scores,
    best_answer_for,
    build_peer_review_prompt,
    build_rating_prompt,
    parse_rating,
    pick_best,
    run_peer_review,
)
from tests.conftest import NO_DELAY, EventRecorder, StagedProvider, make_roster


# --- parse_rating ----------------------------------------------------------

def test_parse_rating_fills_every_key():
    parsed = parse_rating('{"scores": {"a": 7}, "feedback": "fine"}', ["a", "b"])
    assert parsed == ParsedScores(scores={"a": 7.0, "b": 0.0}, feedback="fine")


def test_parse_rating_unwraps_code_fence():
    text = '```json\n{"scores": {"a": 6, "b": 4}}\n```'
    parsed = parse_rating(text, ["a", "b"])
    assert isinstance(parsed, ParsedScores)
    assert parsed.scores == {"a": 6.0, "b": 4.0}
    assert parsed.feedback == ""


def test_parse_rating_matches_keys_case_insensitively():
    parsed = parse_rating('{"scores": {"Claude": 9}}', ["claude"])
    assert parsed.scores == {"claude": 9.0}


def test_parse_rating_coerces_and_clamps():
    text = json.dumps({"scores": {"a": 15, "b": -3, "c": "7.5", "d": True, "e": "n/a"}})
    parsed = parse_rating(text, ["a", "b", "c", "d", "e"])
    assert parsed.scores == {"a": 10.0, "b": 0.0, "c": 7.5, "d": 0.0, "e": 0.0}


def test_parse_rating_non_object_is_raw():
    assert parse_rating("[1, 2, 3]", ["a"]) == RawFeedback("[1, 2, 3]")


def test_parse_rating_prose_is_raw():
    text = "I think B is clearly the best answer."
    assert parse_rating(text, ["a", "b"]) == RawFeedback(text)


# --- aggregation -----------------------------------------------------------

def test_aggregate_counts_missing_scores_as_zero():
    ratings = [
        Rating("a", {"a": 9.0, "b": 6.0}, ""),
        Rating("b", {"a": 9.0, "b": 6.0}, ""),
        Rating("c", {}, "unparsed prose"),
    ]
    assert aggregate_scores(["a", "b"], ratings) == {"a": 6.0, "b": 4.0}


def test_aggregate_without_ratings_is_all_zero():
    assert aggregate_scores(["a", "b"], []) == {"a": 0.0, "b": 0.0}


def test_pick_best_first_wins_ties():
    assert pick_best({"a": 9.0, "b": 9.0, "c": 8.0}) == "a"
    assert pick_best({"a": 0.0, "b": 0.0}) == "a"
    assert pick_best({"a": 7.0, "b": 9.0, "c": 9.0}) == "b"


def test_best_answer_falls_back_to_first_final():
    finals = [Answer("A", "first"), Answer("B", "second")]
    assert best_answer_for("b", finals) == "second"
    assert best_answer_for("zzz", finals) == "first"


# --- prompt builders -------------------------------------------------------

def test_peer_prompt_labels_peers_in_order(sample_prompts_config):
    prompt = build_peer_review_prompt(sample_prompts_config, "Q", "mine", ["p1", "p2"])
    assert "Own: mine" in prompt
    assert "Peer 1 answer: p1\nPeer 2 answer: p2" in prompt


def test_rating_prompt_lists_finals_and_template(sample_prompts_config):
    finals = [Answer("A", "one"), Answer("B", "two")]
    prompt = build_rating_prompt(sample_prompts_config, "Q", finals)
    assert "2 answers:" in prompt
    assert "1. A: one\n2. B: two" in prompt
    assert '"scores": {"a": 8, "b": 8}' in prompt


# --- run_peer_review -------------------------------------------------------

async def test_full_run_picks_highest_mean(three_providers, sample_prompts_config):
    roster = make_roster(*three_providers)
    result = await run_peer_review("Implement a binary search", roster, sample_prompts_config, retry=NO_DELAY)

    assert len(result.initials) == len(result.finals) == len(result.ratings) == 3
    assert [a.provider for a in result.finals] == ["A", "B", "C"]
    assert result.aggregated_scores == {"a": 8.0, "b": 9.0, "c": 7.0}
    assert result.best_provider == "b"
    assert result.best_answer == "Final from B"
    assert result.from_cache is False
    for p in three_providers:
        assert p.calls("generate") == p.calls("review") == p.calls("rate") == 1


async def test_tie_goes_to_first_in_roster(sample_prompts_config):
    rating = '{"scores": {"a": 9, "b": 9, "c": 8}}'
    roster = make_roster(*(StagedProvider(n, rating=rating) for n in ("A", "B", "C")))
    result = await run_peer_review("q", roster, sample_prompts_config, retry=NO_DELAY)
    assert result.best_provider == "a"
    assert result.best_answer == "Final from A"


async def test_unparseable_rating_kept_as_feedback(sample_prompts_config):
    good = '{"scores": {"a": 9, "b": 6, "c": 3}}'
    providers = [
        StagedProvider("A", rating=good),
        StagedProvider("B", rating=good),
        StagedProvider("C", rating="I prefer A, honestly."),
    ]
    result = await run_peer_review("q", make_roster(*providers), sample_prompts_config, retry=NO_DELAY)

    raw = result.ratings[2]
    assert raw.scores == {}
    assert raw.feedback == "I prefer A, honestly."
    assert result.aggregated_scores == {"a": 6.0, "b": 4.0, "c": 2.0}
    assert result.best_provider == "a"


async def test_reviewer_sees_peers_after_itself(three_providers, sample_prompts_config):
    await run_peer_review("q", make_roster(*three_providers), sample_prompts_config, retry=NO_DELAY)

    [prompt_b] = three_providers[1].prompts_for("review")
    assert "Own: Initial from B" in prompt_b
    assert prompt_b.index("Peer 1 answer: Initial from C") < prompt_b.index("Peer 2 answer: Initial from A")


async def test_stages_run_as_barriers(sample_prompts_config):
    log: list[tuple[str, str]] = []
    providers = [StagedProvider(n, call_log=log) for n in ("A", "B", "C")]
    await run_peer_review("q", make_roster(*providers), sample_prompts_config, retry=NO_DELAY)

    stages = [stage for stage, _ in log]
    assert stages == ["generate"] * 3 + ["review"] * 3 + ["rate"] * 3


async def test_transient_failure_is_retried(sample_prompts_config):
    providers = [StagedProvider("A"), StagedProvider("B", failures={"review": 2})]
    result = await run_peer_review("q", make_roster(*providers), sample_prompts_config, retry=NO_DELAY)
    assert providers[1].calls("review") == 3
    assert result.finals[1].content == "Final from B"


async def test_exhausted_call_fails_whole_run(sample_prompts_config):
    providers = [StagedProvider("A"), StagedProvider("B", failures={"generate": 99})]
    with pytest.raises(PipelineError) as info:
        await run_peer_review("q", make_roster(*providers), sample_prompts_config, retry=NO_DELAY)

    assert info.value.stage == "generate"
    assert info.value.provider == "B"
    assert providers[1].calls("generate") == NO_DELAY.max_attempts
    # Nothing after the failed stage was attempted
    assert providers[0].calls("review") == 0


async def test_rating_call_failure_is_fatal(sample_prompts_config):
    providers = [StagedProvider("A", failures={"rate": 99}), StagedProvider("B")]
    with pytest.raises(PipelineError) as info:
        await run_peer_review("q", make_roster(*providers), sample_prompts_config, retry=NO_DELAY)
    assert info.value.stage == "rate"


async def test_events_cover_every_stage(three_providers, sample_prompts_config):
    recorder = EventRecorder()
    await run_peer_review(
        "q", make_roster(*three_providers), sample_prompts_config, retry=NO_DELAY, on_event=recorder
    )
    assert recorder.kinds() == [
        (STAGE_START, "generate"), (STAGE_END, "generate"),
        (STAGE_START, "review"), (STAGE_END, "review"),
        (STAGE_START, "rate"), (STAGE_END, "rate"),
        (STAGE_START, "aggregate"), (STAGE_END, "aggregate"),
    ]


async def test_error_event_names_provider(sample_prompts_config):
    recorder = EventRecorder()
    providers = [StagedProvider("A"), StagedProvider("B", failures={"generate": 99})]
    with pytest.raises(PipelineError):
        await run_peer_review(
            "q", make_roster(*providers), sample_prompts_config, retry=NO_DELAY, on_event=recorder
        )
    errors = [e for e in recorder.events if e.kind == ERROR]
    assert len(errors) == 1
    assert errors[0].provider == "B"
    assert errors[0].stage == "generate"


async def test_deadline_raises_timeout(sample_prompts_config):
    providers = [StagedProvider("A"), StagedProvider("B", delay_sec=5.0)]
    with pytest.raises(PipelineTimeoutError) as info:
        await run_peer_review(
            "q", make_roster(*providers), sample_prompts_config, retry=NO_DELAY, timeout_sec=0.05
        )
    assert isinstance(info.value, PipelineError)
    assert info.value.stage == "generate"


async def test_empty_query_rejected_before_any_call(three_providers, sample_prompts_config):
    with pytest.raises(ValidationError):
        await run_peer_review("   ", make_roster(*three_providers), sample_prompts_config)
    assert all(not p.prompts for p in three_providers)
