"""Abstract base for all AI model providers."""

from abc import ABC, abstractmethod

from peer_review.models import ModelResponse


class ProviderError(Exception):
    """Raised when a provider call fails or returns no usable text."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


class AIProvider(ABC):
    """Abstract base for all AI model providers.

    Instances must be safe to call concurrently; the pipeline fans out one
    call per roster member at a time.
    """

    @abstractmethod
    def name(self) -> str:
        """Return the short roster name (e.g. 'claude', 'gpt')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    async def generate(self, prompt: str, stage: str) -> ModelResponse:
        """Generate a response for the given prompt.

        Args:
            prompt: The full prompt text to send.
            stage: Pipeline stage label, used for logging and metadata.

        Returns:
            ModelResponse with stripped, non-empty content.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...
