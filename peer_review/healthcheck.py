"""Provider health checks: ping each roster member before a run."""

import asyncio
import logging

from peer_review.providers.base import AIProvider

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


async def _check_one(provider: AIProvider) -> tuple[str, bool, str]:
    """Ping a single provider. Returns (name, ok, error_message)."""
    try:
        await asyncio.wait_for(
            provider.generate(_PING_PROMPT, stage="healthcheck"),
            timeout=_TIMEOUT_SEC,
        )
        return provider.name(), True, ""
    except Exception as exc:
        logger.debug("Health check failed for %s: %s", provider.name(), exc)
        return provider.name(), False, str(exc) or type(exc).__name__


async def run_health_checks(providers: list[AIProvider]) -> dict[str, tuple[bool, str]]:
    """Ping all providers in parallel.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(p) for p in providers))
    return {name: (ok, err) for name, ok, err in results}
