"""Provider adapter interface.

An adapter turns one chat request into an async stream of TokenChunks for a
single provider family. Adapters raise on failure; timeouts, retries and
fallback are the execution engine's job, never the adapter's.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass

from llm_broker.registry import ModelDescriptor, ProviderKind

Message = dict[str, str]


@dataclass(frozen=True)
class TokenChunk:
    """A piece of streamed output.

    Adapters that learn the provider's real usage numbers report them on the
    last chunk; otherwise the engine estimates token counts from the text.
    """

    text: str
    input_tokens: int | None = None
    output_tokens: int | None = None


class ProviderAdapter(ABC):
    """Streams completions from one provider family."""

    kind: ProviderKind

    @abstractmethod
    def send(
        self,
        messages: list[Message],
        *,
        model: ModelDescriptor,
        max_tokens: int,
        temperature: float,
    ) -> AsyncIterator[TokenChunk]:
        """Stream the completion for ``messages`` from ``model``.

        Implementations are async generators. Any exception means the attempt
        failed.
        """

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float | None:
        """Provider-specific cost, or None to use the registry's pricing."""
        return None

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""
        return None
