"""Dict/JSON conversion for dataclasses that are persisted or cached."""

import json
from dataclasses import asdict
from typing import Any

from peer_review.models import (
    Answer,
    FollowupContext,
    FollowupHistoryItem,
    HistoryEntry,
    Rating,
    Result,
)


def to_dict(obj: Any) -> dict[str, Any]:
    """Convert any of the model dataclasses to a JSON-ready dict."""
    return asdict(obj)


def result_from_dict(raw: dict[str, Any]) -> Result:
    return Result(
        query=raw["query"],
        initials=[Answer(**a) for a in raw["initials"]],
        finals=[Answer(**a) for a in raw["finals"]],
        ratings=[
            Rating(
                from_provider=r["from_provider"],
                scores={k: float(v) for k, v in r["scores"].items()},
                feedback=r["feedback"],
            )
            for r in raw["ratings"]
        ],
        aggregated_scores={k: float(v) for k, v in raw["aggregated_scores"].items()},
        best_answer=raw["best_answer"],
        best_provider=raw["best_provider"],
        from_cache=bool(raw.get("from_cache", False)),
    )


def history_entry_from_dict(raw: dict[str, Any]) -> HistoryEntry:
    return HistoryEntry(
        id=raw["id"],
        query=raw["query"],
        result=result_from_dict(raw["result"]),
        user_id=raw["user_id"],
        timestamp=float(raw["timestamp"]),
        cache_hit=bool(raw["cache_hit"]),
    )


def followup_context_from_dict(raw: dict[str, Any]) -> FollowupContext:
    """Build a FollowupContext from caller-supplied data.

    Missing text fields become empty strings so that the follow-up engine can
    reject them with a validation error instead of a KeyError.
    """
    chain = tuple(
        FollowupHistoryItem(
            question=item["question"],
            answer=item["answer"],
            timestamp=float(item["timestamp"]),
        )
        for item in raw.get("followup_chain") or ()
    )
    return FollowupContext(
        original_query=raw.get("original_query") or "",
        chosen_answer=raw.get("chosen_answer") or "",
        chosen_provider=raw.get("chosen_provider") or "",
        score=float(raw.get("score") or 0.0),
        followup_chain=chain,
    )


def result_to_json(result: Result) -> str:
    return json.dumps(to_dict(result))


def result_from_json(data: str | bytes) -> Result:
    return result_from_dict(json.loads(data))
