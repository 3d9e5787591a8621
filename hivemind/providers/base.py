"""Capability interface shared by all model providers."""

from abc import ABC, abstractmethod

from hivemind.models import StreamCallbacks

ChatMessage = dict[str, str]  # {"role": "user" | "assistant", "content": str}


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str, status_code: int | None = None) -> None:
        self.provider_name = provider_name
        self.status_code = status_code
        super().__init__(f"[{provider_name}] {message}")


def status_code_of(exc: BaseException) -> int | None:
    """Return the HTTP status an SDK exception carries, if any."""
    for attr in ("status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


class AIProvider(ABC):
    """Abstract base for all AI model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the short provider name (e.g. 'openai', 'google')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the configured model identifier string."""
        ...

    @abstractmethod
    async def chat(
        self,
        messages: list[ChatMessage],
        model: str | None = None,
        callbacks: StreamCallbacks | None = None,
    ) -> str:
        """Run one chat completion and return the full text.

        Args:
            messages: Conversation history, oldest first.
            model: Model override; defaults to model_string().
            callbacks: Optional streaming observer. When on_token is set the
                provider streams and reports each text delta.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...

    @abstractmethod
    async def validate_key(self) -> bool:
        """Return True if the vendor accepts the credential. Never raises."""
        ...
