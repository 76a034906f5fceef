"""Pure dataclasses for the peer-review pipeline, cache, history and follow-ups. No logic, no deps."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class ModelResponse:
    provider: str          # roster name, e.g. "claude", "gpt", "gemini"
    model: str             # actual model string used
    stage: str             # "generate", "review", "rate", "followup", "healthcheck"
    content: str
    latency_sec: float
    token_count: int | None


@dataclass(frozen=True)
class Answer:
    provider: str
    content: str


@dataclass(frozen=True)
class Rating:
    from_provider: str
    scores: dict[str, float]   # provider key -> score in [0, 10]
    feedback: str


@dataclass(frozen=True)
class Result:
    query: str
    initials: list[Answer]
    finals: list[Answer]
    ratings: list[Rating]
    aggregated_scores: dict[str, float]   # lowercase provider key -> mean score
    best_answer: str
    best_provider: str
    from_cache: bool = False


@dataclass
class CacheStats:
    total_queries: int = 0
    hits: int = 0
    misses: int = 0


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    query: str
    result: Result
    user_id: str
    timestamp: float       # unix seconds
    cache_hit: bool


@dataclass(frozen=True)
class HistoryFilter:
    start_date: float | None = None
    end_date: float | None = None
    min_score: float | None = None
    max_score: float | None = None
    search_query: str | None = None


@dataclass(frozen=True)
class ProviderPerformance:
    count: int
    mean_score: float


@dataclass(frozen=True)
class HistoryStats:
    total_queries: int
    cache_hits: int
    cache_misses: int
    cache_hit_rate: float
    avg_score: float
    provider_performance: dict[str, ProviderPerformance] = field(default_factory=dict)


@dataclass(frozen=True)
class FollowupHistoryItem:
    question: str
    answer: str
    timestamp: float


@dataclass(frozen=True)
class FollowupContext:
    original_query: str
    chosen_answer: str
    chosen_provider: str
    score: float
    followup_chain: tuple[FollowupHistoryItem, ...] = ()


@dataclass(frozen=True)
class FollowupResult:
    followup_query: str
    answer: str
    provider: str
    estimated_cost: float
    timestamp: float
    context: FollowupContext
