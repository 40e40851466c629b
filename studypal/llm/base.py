from abc import ABC, abstractmethod


class BaseLLM(ABC):
    """Abstract base class for chat-completion providers."""

    @abstractmethod
    async def complete(
        self,
        messages: list[dict],
        max_tokens: int = 500,
        temperature: float = 0.7,
    ) -> str:
        """Return the full reply to ``messages``.

        Args:
            messages: List of message dicts with "role" and "content" keys.

        Raises:
            Whatever the provider SDK raises; callers decide how to degrade.
        """
        ...

    async def close(self):
        """Release network clients."""
        pass
