"""Canned follow-up suggestions derived from keywords in the chosen answer."""

from peer_review.models import FollowupContext

MAX_SUGGESTIONS = 3

# Category order decides precedence once the list is truncated.
_CATEGORIES: list[tuple[tuple[str, ...], tuple[str, str]]] = [
    # state / lifecycle
    (("hook", "usehook"), (
        "How do I handle cleanup in this hook?",
        "Can you show me how to test this hook?",
    )),
    # asynchronous code
    (("async", "await"), (
        "How should I handle errors in this async code?",
        "Can you add loading states?",
    )),
    # reusable units
    (("component",), (
        "How can I make this component more reusable?",
        "Can you add type annotations for the inputs?",
    )),
    # network endpoints
    (("api", "endpoint"), (
        "How do I add authentication to this endpoint?",
        "Can you show me how to add rate limiting?",
    )),
]

_GENERIC = (
    "Can you explain this in more detail?",
    "How would I optimize this for performance?",
    "Are there any edge cases I should consider?",
)


def generate_suggestions(context: FollowupContext) -> list[str]:
    answer = context.chosen_answer.lower()
    suggestions: list[str] = []
    for keywords, canned in _CATEGORIES:
        if any(k in answer for k in keywords):
            suggestions.extend(canned)
    if not suggestions:
        suggestions.extend(_GENERIC)
    return suggestions[:MAX_SUGGESTIONS]
