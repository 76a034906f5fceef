"""Fixed, ordered roster of providers with deterministic peer lookups."""

import logging
from collections.abc import Sequence

from peer_review.errors import ValidationError
from peer_review.models import ModelResponse
from peer_review.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)

MIN_ROSTER_SIZE = 2


def provider_key(name: str) -> str:
    """Score-map key for a provider name."""
    return name.lower()


class ModelRoster:
    """Read-only, ordered list of providers shared by every request."""

    def __init__(self, providers: Sequence[AIProvider]) -> None:
        if len(providers) < MIN_ROSTER_SIZE:
            raise ValidationError(
                f"Roster needs at least {MIN_ROSTER_SIZE} providers, got {len(providers)}"
            )
        keys = [provider_key(p.name()) for p in providers]
        duplicates = sorted({k for k in keys if keys.count(k) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate provider keys in roster: {', '.join(duplicates)}")

        self._providers: tuple[AIProvider, ...] = tuple(providers)
        self._index = {k: i for i, k in enumerate(keys)}

    def __len__(self) -> int:
        return len(self._providers)

    def __iter__(self):
        return iter(self._providers)

    def __getitem__(self, index: int) -> AIProvider:
        return self._providers[index]

    def names(self) -> list[str]:
        return [p.name() for p in self._providers]

    def keys(self) -> list[str]:
        return [provider_key(p.name()) for p in self._providers]

    def index_of(self, name: str) -> int | None:
        return self._index.get(provider_key(name))

    def get(self, name: str) -> AIProvider | None:
        """Resolve a provider by case-insensitive name."""
        idx = self.index_of(name)
        return None if idx is None else self._providers[idx]

    def peers_of(self, index: int) -> list[AIProvider]:
        """The other N-1 members, starting just after `index` and wrapping around."""
        n = len(self._providers)
        if not 0 <= index < n:
            raise IndexError(f"Roster index {index} out of range (size {n})")
        return [self._providers[(index + offset) % n] for offset in range(1, n)]

    def peer_indices(self, index: int) -> list[int]:
        n = len(self._providers)
        if not 0 <= index < n:
            raise IndexError(f"Roster index {index} out of range (size {n})")
        return [(index + offset) % n for offset in range(1, n)]

    async def invoke(self, member: int | str, prompt: str, stage: str) -> ModelResponse:
        """Call one member, by index or name, and insist on non-empty content."""
        index = member if isinstance(member, int) else self.index_of(member)
        if index is None:
            raise ValidationError(f"Unknown provider: {member}")
        provider = self._providers[index]
        response = await provider.generate(prompt, stage)
        if not response.content or not response.content.strip():
            raise ProviderError(provider.name(), f"Empty response in {stage}")
        return response
