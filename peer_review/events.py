"""Structured stage events emitted by the pipeline to an injected observer."""

import logging
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

STAGE_START = "stage_start"
STAGE_END = "stage_end"
ERROR = "error"


@dataclass(frozen=True)
class PipelineEvent:
    kind: str                  # STAGE_START, STAGE_END or ERROR
    stage: str                 # "generate", "review", "rate", "aggregate"
    query: str
    provider: str | None = None
    detail: str = ""
    elapsed_sec: float = 0.0


PipelineObserver = Callable[[PipelineEvent], None]


def log_event(event: PipelineEvent) -> None:
    """Default observer: one log line per event."""
    if event.kind == ERROR:
        logger.error(
            "Stage %s failed%s: %s",
            event.stage,
            f" ({event.provider})" if event.provider else "",
            event.detail,
        )
    elif event.kind == STAGE_START:
        logger.info("Stage %s started", event.stage)
    else:
        logger.info("Stage %s complete in %.2fs%s", event.stage, event.elapsed_sec,
                    f" — {event.detail}" if event.detail else "")
